"""Interfaces of the storage and device collaborators consumed by the engine.

Rows are plain mappings keyed by backend column names. Implementations raise
:class:`~mapsync.infra.errors.TransientNetworkFailure` when a call cannot complete,
:class:`~mapsync.infra.errors.ConflictViolation` on unique violations and
:class:`~mapsync.infra.errors.StaleReference` when an update targets a missing row.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Callable, Dict, List, Mapping, Optional, Protocol

if TYPE_CHECKING:
	from mapsync.domain.geo.models import Position

Row = Dict[str, Any]


class ProfileBackend(Protocol):
	async def get_profile(self, user_id: str) -> Optional[Row]:
		...

	async def patch_profile(self, user_id: str, fields: Mapping[str, Any]) -> Row:
		...


class RosterBackend(Protocol):
	async def fetch_visible_profiles(self, exclude_id: str) -> List[Row]:
		"""Profiles with a position, location sharing on and ghost mode off."""
		...

	async def list_blocks(self, user_id: str) -> List[Row]:
		"""Block rows where ``user_id`` is either the blocker or the blocked party."""
		...

	async def list_relationships(self, user_id: str) -> List[Row]:
		...


class RelationshipBackend(Protocol):
	async def find_relationship(self, user_a: str, user_b: str) -> Optional[Row]:
		...

	async def insert_relationship(self, requester_id: str, receiver_id: str, status: str) -> Row:
		...

	async def update_relationship(self, relationship_id: str, fields: Mapping[str, Any]) -> Row:
		...

	async def delete_relationship(self, relationship_id: str) -> None:
		...

	async def insert_block(self, blocker_id: str, blocked_id: str) -> Row:
		...

	async def delete_block(self, blocker_id: str, blocked_id: str) -> None:
		...


class MessageBackend(Protocol):
	async def list_messages_for(self, user_id: str) -> List[Row]:
		"""Messages addressed to ``user_id``."""
		...


class StorageBackend(ProfileBackend, RosterBackend, RelationshipBackend, MessageBackend, Protocol):
	"""Everything the engine needs from one storage collaborator."""


class GeolocationDevice(Protocol):
	"""Device location API.

	Failures are raised (or passed to ``on_error``) as
	:class:`~mapsync.domain.geo.exceptions.GeoError` subclasses.
	"""

	async def get_current_position(self, *, high_accuracy: bool, timeout: float) -> "Position":
		...

	def watch_position(
		self,
		on_position: Callable[["Position"], None],
		on_error: Callable[[Exception], None],
	) -> int:
		"""Start continuous updates; returns a watch id for :meth:`clear_watch`."""
		...

	def clear_watch(self, watch_id: int) -> None:
		...
