"""Domain models used by the roster store."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, FrozenSet, Iterable, Mapping, Optional

from mapsync.domain.common.timeutil import parse_timestamp
from mapsync.domain.social.models import Relationship, RelationshipFields, RelationshipStatus

# Entity attribute -> profile row column
ROW_COLUMNS: Dict[str, str] = {
	"lat": "latitude",
	"lng": "longitude",
	"location_visible": "is_location_on",
	"ghost_mode": "is_ghost_mode",
	"last_active": "last_active",
	"status_text": "status_message",
	"status_at": "status_updated_at",
	"avatar_url": "avatar_url",
	"gender": "gender",
	"is_public": "is_public",
	"has_story": "has_story",
	"has_unseen_story": "has_unseen_story",
	"story_at": "story_created_at",
}
_NAME_COLUMNS = ("username", "full_name")
_TIMESTAMP_ATTRS = frozenset({"last_active", "status_at", "story_at"})
_FLOAT_ATTRS = frozenset({"lat", "lng"})
# Attributes whose null column value means "use the column default"
_DEFAULT_TRUE_ATTRS = frozenset({"location_visible", "is_public"})
_BOOL_ATTRS = frozenset({"ghost_mode", "has_story", "has_unseen_story"})


@dataclass(frozen=True, slots=True)
class Entity:
	"""A remote user as rendered on the map."""

	id: str
	display_name: str = "User"
	lat: Optional[float] = None
	lng: Optional[float] = None
	location_visible: bool = True
	ghost_mode: bool = False
	last_active: Optional[datetime] = None
	status_text: Optional[str] = None
	status_at: Optional[datetime] = None
	avatar_url: Optional[str] = None
	gender: Optional[str] = None
	is_public: bool = True
	has_story: bool = False
	has_unseen_story: bool = False
	# Creation time of the newest story
	story_at: Optional[datetime] = None
	relationship: RelationshipFields = field(default_factory=RelationshipFields)

	@property
	def has_position(self) -> bool:
		return self.lat is not None and self.lng is not None


def _coerce(attr: str, value: Any) -> Any:
	if attr in _FLOAT_ATTRS:
		return None if value is None else float(value)
	if attr in _TIMESTAMP_ATTRS:
		return parse_timestamp(value)
	if attr in _DEFAULT_TRUE_ATTRS:
		return True if value is None else bool(value)
	if attr in _BOOL_ATTRS:
		return bool(value)
	return value


def extract_fields(row: Mapping[str, Any]) -> Dict[str, Any]:
	"""Map the columns present in ``row`` to entity attributes.

	Columns missing from the row are left out so callers can merge field by field.
	"""
	fields: Dict[str, Any] = {}
	if any(column in row for column in _NAME_COLUMNS):
		fields["display_name"] = row.get("username") or row.get("full_name") or "User"
	for attr, column in ROW_COLUMNS.items():
		if column in row:
			fields[attr] = _coerce(attr, row[column])
	return fields


def is_visible(entity: Entity, blocked: Iterable[str] = ()) -> bool:
	"""An entity renders iff location sharing is on, ghost mode is off, it has a position and is not blocked."""
	return (
		entity.location_visible
		and not entity.ghost_mode
		and entity.has_position
		and entity.id not in blocked
	)


@dataclass(frozen=True, slots=True)
class BlockedSet:
	"""User ids hidden in both directions."""

	ids: FrozenSet[str] = frozenset()

	@classmethod
	def from_rows(
		cls,
		self_id: str,
		block_rows: Iterable[Mapping[str, Any]] = (),
		relationship_rows: Iterable[Mapping[str, Any]] = (),
	) -> "BlockedSet":
		ids: set[str] = set()
		for row in block_rows:
			blocker = str(row.get("blocker_id"))
			blocked = str(row.get("blocked_id"))
			# users I blocked
			if blocker == self_id:
				ids.add(blocked)
			# users who blocked me
			elif blocked == self_id:
				ids.add(blocker)
		for row in relationship_rows:
			if row.get("status") != RelationshipStatus.BLOCKED.value:
				continue
			counterpart = Relationship.from_record(row).counterpart(self_id)
			if counterpart:
				ids.add(counterpart)
		ids.discard(self_id)
		return cls(frozenset(ids))

	def __contains__(self, user_id: object) -> bool:
		return user_id in self.ids

	def __iter__(self):
		return iter(self.ids)

	def __len__(self) -> int:
		return len(self.ids)


@dataclass(frozen=True)
class RosterState:
	"""Everything the merge functions need; replaced wholesale on every mutation.

	``stamps`` records, per entity and attribute, the logical tick of the last write so
	that a snapshot issued before that write cannot overwrite it. ``tombstones`` records
	when an entity was removed for the same reason.
	A snapshot older than the last one applied on its channel is dropped, so tombstones
	and relationship or block stamps at or below that tick guard nothing and are pruned.
	"""

	self_id: str
	entities: Mapping[str, Entity] = field(default_factory=dict)
	stamps: Mapping[str, Mapping[str, int]] = field(default_factory=dict)
	tombstones: Mapping[str, int] = field(default_factory=dict)
	relationships: Mapping[str, RelationshipFields] = field(default_factory=dict)
	relationship_stamps: Mapping[str, int] = field(default_factory=dict)
	relationship_owners: Mapping[str, str] = field(default_factory=dict)
	blocked: BlockedSet = field(default_factory=BlockedSet)
	block_stamps: Mapping[str, int] = field(default_factory=dict)
	clock: int = 0
	# Issue tick of the newest snapshot applied on each channel
	profiles_synced_at: int = -1
	relationships_synced_at: int = -1
	blocks_synced_at: int = -1

	def relationship_for(self, counterpart_id: str) -> RelationshipFields:
		return self.relationships.get(counterpart_id, RelationshipFields.none())


@dataclass(frozen=True, slots=True)
class RelationshipChange:
	"""Transition of the relationship with one counterpart caused by a push event."""

	counterpart_id: str
	previous: RelationshipFields
	current: RelationshipFields
