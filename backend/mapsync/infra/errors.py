"""Error taxonomy shared by the engine and its storage/realtime collaborators."""

from __future__ import annotations


class SyncError(Exception):
	"""Base class for engine errors; ``reason`` is a stable machine-readable code."""

	reason: str = "unknown"

	def __init__(self, reason: str | None = None) -> None:
		super().__init__(reason or self.reason)
		if reason:
			self.reason = reason


class TransientNetworkFailure(SyncError):
	"""A backend read or write failed; reads retry on the next poll cycle."""

	reason = "network"


class ConflictViolation(SyncError):
	"""Duplicate insert on a unique relationship or block row."""

	reason = "conflict"


class StaleReference(SyncError):
	"""A write referenced a relationship row that no longer exists."""

	reason = "stale_reference"
