"""Domain models for pokes, friendships and blocks."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Mapping, Optional

from mapsync.domain.common.timeutil import parse_timestamp


class RelationshipStatus(str, Enum):
	"""Friendship states tracked on the relationship row."""

	PENDING = "pending"
	ACCEPTED = "accepted"
	DECLINED = "declined"
	BLOCKED = "blocked"


TEMP_ID_PREFIX = "temp-"
MUTE_FIELD_REQUESTER = "requester_muted_until"
MUTE_FIELD_RECEIVER = "receiver_muted_until"


@dataclass(frozen=True, slots=True)
class RelationshipFields:
	"""Projection of a relationship row onto the roster entry of the counterpart."""

	status: Optional[RelationshipStatus] = None
	requester_id: Optional[str] = None
	relationship_id: Optional[str] = None

	@classmethod
	def none(cls) -> "RelationshipFields":
		return cls()

	@property
	def is_none(self) -> bool:
		return self.status is None

	@property
	def is_temporary(self) -> bool:
		return bool(self.relationship_id and self.relationship_id.startswith(TEMP_ID_PREFIX))

	def is_outgoing(self, self_id: str) -> bool:
		return self.requester_id is not None and self.requester_id == self_id

	def is_incoming(self, self_id: str) -> bool:
		return self.requester_id is not None and self.requester_id != self_id


@dataclass(slots=True)
class Relationship:
	"""A relationship row between a requester and a receiver."""

	id: str
	requester_id: str
	receiver_id: str
	status: RelationshipStatus
	requester_muted_until: Optional[datetime] = None
	receiver_muted_until: Optional[datetime] = None

	@classmethod
	def from_record(cls, record: Mapping[str, Any]) -> "Relationship":
		return cls(
			id=str(record["id"]),
			requester_id=str(record["requester_id"]),
			receiver_id=str(record["receiver_id"]),
			status=RelationshipStatus(record["status"]),
			requester_muted_until=parse_timestamp(record.get(MUTE_FIELD_REQUESTER)),
			receiver_muted_until=parse_timestamp(record.get(MUTE_FIELD_RECEIVER)),
		)

	def involves(self, user_id: str) -> bool:
		return user_id in (self.requester_id, self.receiver_id)

	def counterpart(self, user_id: str) -> Optional[str]:
		if user_id == self.requester_id:
			return self.receiver_id
		if user_id == self.receiver_id:
			return self.requester_id
		return None

	def fields(self) -> RelationshipFields:
		return RelationshipFields(
			status=self.status,
			requester_id=self.requester_id,
			relationship_id=self.id,
		)

	def mute_field_for(self, party_id: str) -> str:
		if party_id == self.requester_id:
			return MUTE_FIELD_REQUESTER
		if party_id == self.receiver_id:
			return MUTE_FIELD_RECEIVER
		raise ValueError("party is not part of this relationship")

	def muted_until_for(self, party_id: str) -> Optional[datetime]:
		if self.mute_field_for(party_id) == MUTE_FIELD_REQUESTER:
			return self.requester_muted_until
		return self.receiver_muted_until
