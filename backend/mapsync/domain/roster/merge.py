"""Pure merge functions: (roster state, input) -> roster state.

Three channels feed the roster: full snapshots, push change events and optimistic
local edits. They race, so every write is field-level and carries a logical tick:
a snapshot only wins for fields (and removals) older than the tick at which it was
issued. Nothing here performs I/O, which keeps replay deterministic.
"""

from __future__ import annotations

from dataclasses import replace
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple

from mapsync.domain.roster.models import (
	BlockedSet,
	Entity,
	RelationshipChange,
	RosterState,
	extract_fields,
	is_visible,
)
from mapsync.domain.social.models import Relationship, RelationshipFields, RelationshipStatus
from mapsync.infra.realtime import BLOCKS_TABLE, PROFILES_TABLE, RELATIONSHIPS_TABLE, ChangeEvent

_NONE = RelationshipFields.none()


class _Draft:
	"""Mutable copy of a state used while one merge runs."""

	def __init__(self, state: RosterState, tick: int) -> None:
		self.state = state
		self.tick = tick
		self.entities: Dict[str, Entity] = dict(state.entities)
		self.stamps: Dict[str, Dict[str, int]] = {key: dict(value) for key, value in state.stamps.items()}
		self.tombstones: Dict[str, int] = dict(state.tombstones)
		self.relationships: Dict[str, RelationshipFields] = dict(state.relationships)
		self.relationship_stamps: Dict[str, int] = dict(state.relationship_stamps)
		self.owners: Dict[str, str] = dict(state.relationship_owners)
		self.blocked: set[str] = set(state.blocked.ids)
		self.block_stamps: Dict[str, int] = dict(state.block_stamps)
		self.profiles_synced_at = state.profiles_synced_at
		self.relationships_synced_at = state.relationships_synced_at
		self.blocks_synced_at = state.blocks_synced_at

	def relationship_for(self, counterpart_id: str) -> RelationshipFields:
		return self.relationships.get(counterpart_id, _NONE)

	def remove_entity(self, entity_id: str, at: int) -> None:
		self.entities.pop(entity_id, None)
		self.stamps.pop(entity_id, None)
		self.tombstones[entity_id] = max(self.tombstones.get(entity_id, -1), at)

	def put_entity(self, entity: Entity, stamps: Dict[str, int]) -> None:
		self.entities[entity.id] = entity
		self.stamps[entity.id] = stamps
		self.tombstones.pop(entity.id, None)

	def set_relationship(self, counterpart_id: str, fields: RelationshipFields, at: int) -> None:
		previous = self.relationship_for(counterpart_id)
		if previous.relationship_id and self.owners.get(previous.relationship_id) == counterpart_id:
			del self.owners[previous.relationship_id]
		if fields.is_none:
			self.relationships.pop(counterpart_id, None)
		else:
			self.relationships[counterpart_id] = fields
			if fields.relationship_id:
				self.owners[fields.relationship_id] = counterpart_id
		self.relationship_stamps[counterpart_id] = at
		entity = self.entities.get(counterpart_id)
		if entity is not None and entity.relationship != fields:
			self.entities[counterpart_id] = replace(entity, relationship=fields)

	def block(self, user_id: str, at: int) -> None:
		self.blocked.add(user_id)
		self.block_stamps[user_id] = at
		self.remove_entity(user_id, at)

	def unblock(self, user_id: str, at: int) -> None:
		self.blocked.discard(user_id)
		self.block_stamps[user_id] = at

	def build(self) -> RosterState:
		return RosterState(
			self_id=self.state.self_id,
			entities=self.entities,
			stamps=self.stamps,
			tombstones=self.tombstones,
			relationships=self.relationships,
			relationship_stamps=self.relationship_stamps,
			relationship_owners=self.owners,
			blocked=BlockedSet(frozenset(self.blocked)),
			block_stamps=self.block_stamps,
			clock=max(self.state.clock, self.tick),
			profiles_synced_at=self.profiles_synced_at,
			relationships_synced_at=self.relationships_synced_at,
			blocks_synced_at=self.blocks_synced_at,
		)


def _draft(state: RosterState) -> _Draft:
	return _Draft(state, state.clock + 1)


def _prune(stamps: Dict[str, int], issued_at: int) -> None:
	for key in [key for key, tick in stamps.items() if tick <= issued_at]:
		del stamps[key]


def begin_snapshot(state: RosterState) -> Tuple[RosterState, int]:
	"""Advance the clock and return the tick a snapshot fetch issued now should carry."""
	tick = state.clock + 1
	return replace(state, clock=tick), tick


def apply_snapshot(
	state: RosterState,
	rows: Iterable[Mapping[str, Any]],
	issued_at: Optional[int] = None,
) -> RosterState:
	"""Field-level upsert of a full re-fetch result.

	Fields written after ``issued_at`` are kept, entities removed after ``issued_at``
	stay removed, and entities missing from the result that nothing touched since
	``issued_at`` are pruned. A listing issued before the last applied one is dropped.
	"""
	if issued_at is None:
		state, issued_at = begin_snapshot(state)
	if issued_at <= state.profiles_synced_at:
		return state
	draft = _Draft(state, state.clock)
	seen: set[str] = set()
	for row in rows:
		raw_id = row.get("id")
		if raw_id is None:
			continue
		entity_id = str(raw_id)
		if entity_id == state.self_id or entity_id in draft.blocked:
			continue
		seen.add(entity_id)
		if draft.tombstones.get(entity_id, -1) > issued_at:
			continue
		entity_stamps = dict(draft.stamps.get(entity_id, {}))
		accepted = {
			attr: value
			for attr, value in extract_fields(row).items()
			if entity_stamps.get(attr, -1) <= issued_at
		}
		existing = draft.entities.get(entity_id)
		base = existing or Entity(id=entity_id, relationship=draft.relationship_for(entity_id))
		candidate = replace(base, **accepted)
		for attr in accepted:
			entity_stamps[attr] = issued_at
		if is_visible(candidate, draft.blocked):
			draft.put_entity(candidate, entity_stamps)
		else:
			draft.remove_entity(entity_id, issued_at)
	for entity_id in list(draft.entities):
		if entity_id in seen:
			continue
		last_touch = max(draft.stamps.get(entity_id, {}).values(), default=-1)
		if last_touch <= issued_at:
			draft.remove_entity(entity_id, issued_at)
	_prune(draft.tombstones, issued_at)
	draft.profiles_synced_at = issued_at
	return draft.build()


def apply_change_event(state: RosterState, event: ChangeEvent) -> RosterState:
	"""Merge a profiles-table change event."""
	if event.table != PROFILES_TABLE:
		return state
	entity_id = event.row_id
	if entity_id is None or entity_id == state.self_id:
		return state
	if entity_id in state.blocked:
		return state
	draft = _draft(state)
	if event.event_type == "delete":
		draft.remove_entity(entity_id, draft.tick)
		return draft.build()
	fields = extract_fields(event.record)
	existing = draft.entities.get(entity_id)
	base = existing or Entity(id=entity_id, relationship=draft.relationship_for(entity_id))
	candidate = replace(base, **fields)
	if not is_visible(candidate, draft.blocked):
		draft.remove_entity(entity_id, draft.tick)
		return draft.build()
	entity_stamps = dict(draft.stamps.get(entity_id, {}))
	for attr in fields:
		entity_stamps[attr] = draft.tick
	draft.put_entity(candidate, entity_stamps)
	return draft.build()


def apply_relationship_event(
	state: RosterState,
	event: ChangeEvent,
) -> Tuple[RosterState, Optional[RelationshipChange]]:
	"""Patch the counterpart's relationship fields from a relationships-table event."""
	if event.table != RELATIONSHIPS_TABLE:
		return state, None
	if event.event_type == "delete":
		relationship_id = event.row_id
		counterpart_id = state.relationship_owners.get(relationship_id or "")
		# Unknown ids are rows this client already let go of (own cancel, re-poke reset).
		if counterpart_id is None:
			return state, None
		previous = state.relationship_for(counterpart_id)
		draft = _draft(state)
		if previous.relationship_id != relationship_id:
			draft.owners.pop(relationship_id, None)
			return draft.build(), None
		draft.set_relationship(counterpart_id, _NONE, draft.tick)
		return draft.build(), RelationshipChange(counterpart_id, previous, _NONE)
	try:
		relationship = Relationship.from_record(event.new)
	except (KeyError, ValueError):
		return state, None
	counterpart_id = relationship.counterpart(state.self_id)
	if counterpart_id is None:
		return state, None
	previous = state.relationship_for(counterpart_id)
	fields = relationship.fields()
	draft = _draft(state)
	draft.set_relationship(counterpart_id, fields, draft.tick)
	if relationship.status is RelationshipStatus.BLOCKED:
		draft.block(counterpart_id, draft.tick)
	change = RelationshipChange(counterpart_id, previous, fields) if previous != fields else None
	return draft.build(), change


def apply_block_event(state: RosterState, event: ChangeEvent) -> RosterState:
	"""Blocks-table insert hides the other party; delete lifts the block."""
	if event.table != BLOCKS_TABLE:
		return state
	row = event.record
	blocker_id = str(row.get("blocker_id"))
	blocked_id = str(row.get("blocked_id"))
	if blocker_id == state.self_id:
		other = blocked_id
	elif blocked_id == state.self_id:
		other = blocker_id
	else:
		return state
	draft = _draft(state)
	if event.event_type == "delete":
		draft.unblock(other, draft.tick)
	else:
		draft.block(other, draft.tick)
	return draft.build()


def apply_relationship_snapshot(
	state: RosterState,
	rows: Iterable[Mapping[str, Any]],
	issued_at: int,
) -> RosterState:
	"""Re-derive relationship fields from a full listing, skipping newer or in-flight writes."""
	if issued_at <= state.relationships_synced_at:
		return state
	snapshot: Dict[str, RelationshipFields] = {}
	for row in rows:
		try:
			relationship = Relationship.from_record(row)
		except (KeyError, ValueError):
			continue
		counterpart_id = relationship.counterpart(state.self_id)
		if counterpart_id:
			snapshot[counterpart_id] = relationship.fields()
	draft = _Draft(state, state.clock)
	for counterpart_id in set(draft.relationships) | set(snapshot):
		if draft.relationship_stamps.get(counterpart_id, -1) > issued_at:
			continue
		current = draft.relationship_for(counterpart_id)
		if current.is_temporary:
			continue
		incoming = snapshot.get(counterpart_id, _NONE)
		if incoming != current:
			draft.set_relationship(counterpart_id, incoming, issued_at)
	_prune(draft.relationship_stamps, issued_at)
	draft.relationships_synced_at = issued_at
	return draft.build()


def replace_blocked(state: RosterState, blocked: BlockedSet, issued_at: int) -> RosterState:
	"""Swap in a freshly queried blocked set, keeping block changes newer than the query."""
	if issued_at <= state.blocks_synced_at:
		return state
	ids = set(blocked.ids)
	for user_id, stamp in state.block_stamps.items():
		if stamp > issued_at:
			if user_id in state.blocked:
				ids.add(user_id)
			else:
				ids.discard(user_id)
	ids.discard(state.self_id)
	draft = _Draft(state, state.clock)
	draft.blocked = ids
	for user_id in ids:
		if user_id in draft.entities:
			draft.remove_entity(user_id, issued_at)
	_prune(draft.block_stamps, issued_at)
	draft.blocks_synced_at = issued_at
	return draft.build()


def set_relationship(state: RosterState, counterpart_id: str, fields: RelationshipFields) -> RosterState:
	"""Local (optimistic or confirmed) write of one counterpart's relationship fields."""
	draft = _draft(state)
	draft.set_relationship(counterpart_id, fields, draft.tick)
	return draft.build()


def forget_relationship_id(state: RosterState, relationship_id: str) -> RosterState:
	if relationship_id not in state.relationship_owners:
		return state
	owners = dict(state.relationship_owners)
	del owners[relationship_id]
	return replace(state, relationship_owners=owners)


def remember_relationship_id(state: RosterState, relationship_id: str, counterpart_id: str) -> RosterState:
	owners = dict(state.relationship_owners)
	owners[relationship_id] = counterpart_id
	return replace(state, relationship_owners=owners)


def block_locally(state: RosterState, user_id: str) -> RosterState:
	draft = _draft(state)
	draft.block(user_id, draft.tick)
	return draft.build()


def unblock_locally(state: RosterState, user_id: str) -> RosterState:
	draft = _draft(state)
	draft.unblock(user_id, draft.tick)
	return draft.build()


def restore_entity(state: RosterState, entity: Entity) -> RosterState:
	"""Put back an entity captured before an optimistic removal, if it may still render."""
	if entity.id == state.self_id or entity.id in state.entities:
		return state
	draft = _draft(state)
	restored = replace(entity, relationship=draft.relationship_for(entity.id))
	if not is_visible(restored, draft.blocked):
		return state
	# "id" is not a row field, so this stamp only guards against pruning by an older snapshot
	draft.put_entity(restored, {"id": draft.tick})
	return draft.build()
