"""In-memory storage collaborator publishing row changes to a ChangeFeed.

Used for local development and tests. It enforces the same constraints as the real
backend (one relationship row per unordered pair, unique blocks) and raises the same
errors; failures and slow calls can be injected per operation.
"""

from __future__ import annotations

import asyncio
from collections import defaultdict
from copy import deepcopy
from typing import Any, Dict, List, Mapping, Optional, Tuple

import ulid

from mapsync.domain.common.timeutil import utcnow
from mapsync.infra.backend import Row
from mapsync.infra.errors import ConflictViolation, StaleReference, TransientNetworkFailure
from mapsync.infra.realtime import (
	BLOCKS_TABLE,
	MESSAGES_TABLE,
	PROFILES_TABLE,
	RELATIONSHIPS_TABLE,
	ChangeEvent,
	ChangeFeed,
)


def _pair(user_a: str, user_b: str) -> Tuple[str, str]:
	return (user_a, user_b) if user_a <= user_b else (user_b, user_a)


def _is_visible_row(row: Mapping[str, Any]) -> bool:
	return (
		row.get("latitude") is not None
		and row.get("longitude") is not None
		and row.get("is_location_on") is not False
		and not row.get("is_ghost_mode")
	)


class InMemoryBackend:
	def __init__(self, feed: Optional[ChangeFeed] = None) -> None:
		self._lock = asyncio.Lock()
		self.feed = feed or ChangeFeed()
		self.profiles: Dict[str, Row] = {}
		self.relationships: Dict[str, Row] = {}
		self.blocks: Dict[Tuple[str, str], Row] = {}
		self.messages: Dict[str, Row] = {}
		self.calls: Dict[str, int] = defaultdict(int)
		self._failures: Dict[str, List[Exception]] = defaultdict(list)
		self._gates: Dict[str, asyncio.Event] = {}

	# --- test hooks ---------------------------------------------------------

	def fail_next(self, op: str, exc: Optional[Exception] = None, *, times: int = 1) -> None:
		"""Make the next ``times`` calls of ``op`` raise ``exc`` (network failure by default)."""
		for _ in range(times):
			self._failures[op].append(exc or TransientNetworkFailure())

	def hold(self, op: str) -> asyncio.Event:
		"""Block calls of ``op`` until the returned event is set."""
		gate = asyncio.Event()
		self._gates[op] = gate
		return gate

	def reset(self) -> None:
		self.profiles.clear()
		self.relationships.clear()
		self.blocks.clear()
		self.messages.clear()
		self.calls.clear()
		self._failures.clear()
		self._gates.clear()

	async def _enter(self, op: str) -> None:
		self.calls[op] += 1
		gate = self._gates.pop(op, None)
		if gate is not None:
			await gate.wait()
		if self._failures.get(op):
			raise self._failures[op].pop(0)

	def _publish(self, table: str, event_type: str, old: Optional[Row] = None, new: Optional[Row] = None) -> None:
		self.feed.publish(
			ChangeEvent(table=table, event_type=event_type, old=deepcopy(old or {}), new=deepcopy(new or {}))
		)

	# --- seeding (no events) -----------------------------------------------------

	def seed_profile(self, user_id: str, **fields: Any) -> Row:
		row: Row = {"id": user_id, "username": user_id, "is_location_on": True, "is_ghost_mode": False}
		row.update(fields)
		self.profiles[user_id] = row
		return deepcopy(row)

	def seed_relationship(self, requester_id: str, receiver_id: str, status: str = "pending") -> Row:
		row = self._new_relationship(requester_id, receiver_id, status)
		self.relationships[row["id"]] = row
		return deepcopy(row)

	def seed_block(self, blocker_id: str, blocked_id: str) -> Row:
		row = {"id": str(ulid.new()), "blocker_id": blocker_id, "blocked_id": blocked_id}
		self.blocks[(blocker_id, blocked_id)] = row
		return deepcopy(row)

	# --- profiles ---------------------------------------------------------------

	async def get_profile(self, user_id: str) -> Optional[Row]:
		await self._enter("get_profile")
		row = self.profiles.get(user_id)
		return deepcopy(row) if row else None

	async def patch_profile(self, user_id: str, fields: Mapping[str, Any]) -> Row:
		await self._enter("patch_profile")
		async with self._lock:
			old = self.profiles.get(user_id)
			if old is None:
				raise StaleReference()
			new = {**old, **fields}
			self.profiles[user_id] = new
		self._publish(PROFILES_TABLE, "update", old, new)
		return deepcopy(new)

	async def fetch_visible_profiles(self, exclude_id: str) -> List[Row]:
		await self._enter("fetch_visible_profiles")
		return [
			deepcopy(row)
			for user_id, row in self.profiles.items()
			if user_id != exclude_id and _is_visible_row(row)
		]

	# --- relationships ------------------------------------------------------------

	def _new_relationship(self, requester_id: str, receiver_id: str, status: str) -> Row:
		if any(
			_pair(row["requester_id"], row["receiver_id"]) == _pair(requester_id, receiver_id)
			for row in self.relationships.values()
		):
			raise ConflictViolation()
		return {
			"id": str(ulid.new()),
			"requester_id": requester_id,
			"receiver_id": receiver_id,
			"status": status,
			"created_at": utcnow().isoformat(),
			"requester_muted_until": None,
			"receiver_muted_until": None,
		}

	async def list_relationships(self, user_id: str) -> List[Row]:
		await self._enter("list_relationships")
		return [
			deepcopy(row)
			for row in self.relationships.values()
			if user_id in (row["requester_id"], row["receiver_id"])
		]

	async def find_relationship(self, user_a: str, user_b: str) -> Optional[Row]:
		await self._enter("find_relationship")
		for row in self.relationships.values():
			if _pair(row["requester_id"], row["receiver_id"]) == _pair(user_a, user_b):
				return deepcopy(row)
		return None

	async def insert_relationship(self, requester_id: str, receiver_id: str, status: str) -> Row:
		await self._enter("insert_relationship")
		async with self._lock:
			row = self._new_relationship(requester_id, receiver_id, status)
			self.relationships[row["id"]] = row
		self._publish(RELATIONSHIPS_TABLE, "insert", None, row)
		return deepcopy(row)

	async def update_relationship(self, relationship_id: str, fields: Mapping[str, Any]) -> Row:
		await self._enter("update_relationship")
		async with self._lock:
			old = self.relationships.get(relationship_id)
			if old is None:
				raise StaleReference()
			new = {**old, **fields}
			self.relationships[relationship_id] = new
		self._publish(RELATIONSHIPS_TABLE, "update", old, new)
		return deepcopy(new)

	async def delete_relationship(self, relationship_id: str) -> None:
		await self._enter("delete_relationship")
		async with self._lock:
			old = self.relationships.pop(relationship_id, None)
			if old is None:
				raise StaleReference()
		self._publish(RELATIONSHIPS_TABLE, "delete", old, None)

	# --- blocks -----------------------------------------------------------------

	async def list_blocks(self, user_id: str) -> List[Row]:
		await self._enter("list_blocks")
		return [deepcopy(row) for key, row in self.blocks.items() if user_id in key]

	async def insert_block(self, blocker_id: str, blocked_id: str) -> Row:
		await self._enter("insert_block")
		async with self._lock:
			if (blocker_id, blocked_id) in self.blocks:
				raise ConflictViolation()
			row = {"id": str(ulid.new()), "blocker_id": blocker_id, "blocked_id": blocked_id}
			self.blocks[(blocker_id, blocked_id)] = row
		self._publish(BLOCKS_TABLE, "insert", None, row)
		return deepcopy(row)

	async def delete_block(self, blocker_id: str, blocked_id: str) -> None:
		await self._enter("delete_block")
		async with self._lock:
			old = self.blocks.pop((blocker_id, blocked_id), None)
			if old is None:
				raise StaleReference()
		self._publish(BLOCKS_TABLE, "delete", old, None)

	# --- messages -----------------------------------------------------------------

	async def list_messages_for(self, user_id: str) -> List[Row]:
		await self._enter("list_messages_for")
		return [deepcopy(row) for row in self.messages.values() if row["receiver_id"] == user_id]

	async def insert_message(
		self,
		sender_id: str,
		receiver_id: str,
		content: str = "",
		*,
		message_type: str = "text",
		is_read: bool = False,
	) -> Row:
		await self._enter("insert_message")
		row = {
			"id": str(ulid.new()),
			"sender_id": sender_id,
			"receiver_id": receiver_id,
			"content": content,
			"message_type": message_type,
			"is_read": is_read,
			"deleted_for": [],
			"created_at": utcnow().isoformat(),
		}
		self.messages[row["id"]] = row
		self._publish(MESSAGES_TABLE, "insert", None, row)
		return deepcopy(row)

	async def update_message(self, message_id: str, fields: Mapping[str, Any]) -> Row:
		await self._enter("update_message")
		old = self.messages.get(message_id)
		if old is None:
			raise StaleReference()
		new = {**old, **fields}
		self.messages[message_id] = new
		self._publish(MESSAGES_TABLE, "update", old, new)
		return deepcopy(new)
