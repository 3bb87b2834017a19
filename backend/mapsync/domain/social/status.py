"""Status visibility, status ring and presence helpers.

Expiry is a wall-clock comparison against ``now`` at read time; nothing schedules the
transition back, so callers pass the current time in.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

from mapsync.domain.common.timeutil import utcnow
from mapsync.domain.roster.models import Entity
from mapsync.domain.social.models import Relationship, RelationshipStatus
from mapsync.settings import settings


class StatusRing(str, Enum):
	ACTIVE = "active"
	VIEWED = "viewed"
	DEFAULT = "default"


def _expired(posted_at: Optional[datetime], ttl_seconds: int, now: datetime) -> bool:
	if posted_at is None:
		return False
	return now - posted_at > timedelta(seconds=ttl_seconds)


def has_active_status(entity: Entity, now: Optional[datetime] = None) -> bool:
	now = now or utcnow()
	has_story = entity.has_story and not _expired(entity.story_at, settings.story_ttl_seconds, now)
	has_thought = bool(entity.status_text and entity.status_text.strip())
	if has_thought and _expired(entity.status_at, settings.status_ttl_seconds, now):
		has_thought = False
	return has_story or has_thought


def can_view_status(viewer_id: str, entity: Entity, now: Optional[datetime] = None) -> bool:
	if viewer_id == entity.id:
		return True
	if not has_active_status(entity, now):
		return False
	is_friend = entity.relationship.status is RelationshipStatus.ACCEPTED
	return is_friend or entity.is_public


def status_ring(viewer_id: str, entity: Entity, now: Optional[datetime] = None) -> StatusRing:
	if viewer_id == entity.id:
		if entity.has_unseen_story:
			return StatusRing.ACTIVE
		if entity.has_story:
			return StatusRing.VIEWED
		return StatusRing.DEFAULT
	if has_active_status(entity, now) and can_view_status(viewer_id, entity, now):
		return StatusRing.ACTIVE if entity.has_unseen_story else StatusRing.VIEWED
	return StatusRing.DEFAULT


def _plural(count: int, unit: str) -> str:
	return f"{count} {unit}{'s' if count > 1 else ''}"


def format_last_seen(last_active: Optional[datetime], now: Optional[datetime] = None) -> str:
	if last_active is None:
		return "Last seen recently"
	now = now or utcnow()
	minutes = int((now - last_active).total_seconds() // 60)
	if minutes < 1:
		return "Last seen just now"
	if minutes < 60:
		return f"Last seen {minutes} min ago"
	hours = minutes // 60
	if hours < 24:
		return f"Last seen {_plural(hours, 'hour')} ago"
	days = hours // 24
	if days < 7:
		return f"Last seen {_plural(days, 'day')} ago"
	weeks = days // 7
	if weeks < 4:
		return f"Last seen {_plural(weeks, 'week')} ago"
	return "Last seen a while ago"


def is_muted(relationship: Relationship, party_id: str, now: Optional[datetime] = None) -> bool:
	"""True while ``party_id``'s mute-until timestamp lies in the future."""
	until = relationship.muted_until_for(party_id)
	if until is None:
		return False
	return until > (now or utcnow())
