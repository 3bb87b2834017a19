"""Roster store: the single shared mutable structure of the engine."""

from __future__ import annotations

import logging
from types import MappingProxyType
from typing import Any, Iterable, Mapping, Optional

from mapsync.domain.roster import merge
from mapsync.domain.roster.models import BlockedSet, Entity, RelationshipChange, RosterState
from mapsync.domain.social.models import RelationshipFields
from mapsync.infra.realtime import ChangeEvent
from mapsync.obs import metrics as obs_metrics

logger = logging.getLogger(__name__)


class RosterStore:
	"""Holds the current :class:`RosterState` and swaps it on every mutation.

	All merging lives in :mod:`mapsync.domain.roster.merge`; this class only tracks the
	current state, records metrics and exposes a read-only view.
	"""

	def __init__(self, self_id: str) -> None:
		self._state = RosterState(self_id=self_id)

	@property
	def self_id(self) -> str:
		return self._state.self_id

	@property
	def state(self) -> RosterState:
		return self._state

	@property
	def roster(self) -> Mapping[str, Entity]:
		"""Insertion-ordered, read-only mapping of entity id to entity."""
		return MappingProxyType(self._state.entities)

	@property
	def blocked(self) -> BlockedSet:
		return self._state.blocked

	def get(self, entity_id: str) -> Optional[Entity]:
		return self._state.entities.get(entity_id)

	def relationship_for(self, counterpart_id: str) -> RelationshipFields:
		return self._state.relationship_for(counterpart_id)

	def counterpart_of(self, relationship_id: str) -> Optional[str]:
		return self._state.relationship_owners.get(relationship_id)

	def _commit(self, state: RosterState, source: str) -> None:
		before = self._state.entities
		self._state = state
		after = state.entities
		if before == after:
			obs_metrics.inc_roster_event(source, "ignored")
		else:
			added = len(after.keys() - before.keys())
			removed = len(before.keys() - after.keys())
			if added:
				obs_metrics.inc_roster_event(source, "insert")
			if removed:
				obs_metrics.inc_roster_event(source, "remove")
			if not added and not removed:
				obs_metrics.inc_roster_event(source, "update")
		obs_metrics.set_roster_size(len(after))

	# --- snapshot channel -------------------------------------------------

	def begin_snapshot(self) -> int:
		state, tick = merge.begin_snapshot(self._state)
		self._state = state
		return tick

	def apply_snapshot(self, rows: Iterable[Mapping[str, Any]], issued_at: Optional[int] = None) -> None:
		self._commit(merge.apply_snapshot(self._state, list(rows), issued_at), "snapshot")

	def apply_relationship_snapshot(self, rows: Iterable[Mapping[str, Any]], issued_at: int) -> None:
		self._commit(merge.apply_relationship_snapshot(self._state, list(rows), issued_at), "relationship_snapshot")

	def replace_blocked(self, blocked: BlockedSet, issued_at: int) -> None:
		self._commit(merge.replace_blocked(self._state, blocked, issued_at), "blocks_snapshot")

	# --- push channel -----------------------------------------------------

	def apply_change_event(self, event: ChangeEvent) -> None:
		self._commit(merge.apply_change_event(self._state, event), "change")

	def apply_relationship_event(self, event: ChangeEvent) -> Optional[RelationshipChange]:
		state, change = merge.apply_relationship_event(self._state, event)
		self._commit(state, "relationship")
		if change is not None:
			logger.debug(
				"relationship changed",
				extra={
					"counterpart_id": change.counterpart_id,
					"status": change.current.status.value if change.current.status else None,
				},
			)
		return change

	def apply_block_event(self, event: ChangeEvent) -> None:
		self._commit(merge.apply_block_event(self._state, event), "block")

	# --- optimistic channel -----------------------------------------------

	def set_relationship(self, counterpart_id: str, fields: RelationshipFields) -> None:
		self._commit(merge.set_relationship(self._state, counterpart_id, fields), "optimistic")

	def forget_relationship_id(self, relationship_id: str) -> None:
		self._state = merge.forget_relationship_id(self._state, relationship_id)

	def remember_relationship_id(self, relationship_id: str, counterpart_id: str) -> None:
		self._state = merge.remember_relationship_id(self._state, relationship_id, counterpart_id)

	def block_locally(self, user_id: str) -> None:
		self._commit(merge.block_locally(self._state, user_id), "optimistic")

	def unblock_locally(self, user_id: str) -> None:
		self._commit(merge.unblock_locally(self._state, user_id), "optimistic")

	def restore_entity(self, entity: Entity) -> None:
		self._commit(merge.restore_entity(self._state, entity), "rollback")

	def reset(self) -> None:
		"""Drop everything; used when the local user changes."""
		self._state = RosterState(self_id=self._state.self_id)
		obs_metrics.set_roster_size(0)
