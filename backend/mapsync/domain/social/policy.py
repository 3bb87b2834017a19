"""Guard checks for relationship actions."""

from __future__ import annotations

from mapsync.domain.social.exceptions import NotPendingError, SelfTargetError
from mapsync.domain.social.models import RelationshipFields, RelationshipStatus


def guard_not_self(user_id: str, target_id: str) -> None:
	if str(user_id) == str(target_id):
		raise SelfTargetError()


def guard_incoming_pending(user_id: str, fields: RelationshipFields) -> None:
	if fields.status is not RelationshipStatus.PENDING or not fields.is_incoming(user_id):
		raise NotPendingError()
	if not fields.relationship_id or fields.is_temporary:
		raise NotPendingError("unconfirmed")
