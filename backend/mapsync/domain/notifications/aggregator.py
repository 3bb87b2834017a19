"""Badge counts derived from relationship and message rows."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Protocol

from mapsync.domain.social.models import Relationship, RelationshipStatus
from mapsync.infra.backend import Row
from mapsync.infra.realtime import MESSAGES_TABLE, RELATIONSHIPS_TABLE, ChangeEvent, ChangeFeed, Subscription
from mapsync.obs import metrics as obs_metrics

logger = logging.getLogger(__name__)

SYSTEM_MESSAGE_TYPES = frozenset({"system", "call_log"})


class BadgeBackend(Protocol):
	async def list_relationships(self, user_id: str) -> List[Row]:
		...

	async def list_messages_for(self, user_id: str) -> List[Row]:
		...


@dataclass(frozen=True, slots=True)
class BadgeCounts:
	pending: int = 0
	unread: int = 0


def count_pending(self_id: str, relationships: Iterable[Mapping[str, Any]]) -> int:
	"""Relationships where the local user is the receiver and status is pending."""
	return sum(
		1
		for row in relationships
		if str(row.get("receiver_id")) == self_id and row.get("status") == RelationshipStatus.PENDING.value
	)


def count_unread_senders(self_id: str, messages: Iterable[Mapping[str, Any]]) -> int:
	"""Distinct senders of unread, non-system messages the local user has not deleted."""
	senders = set()
	for row in messages:
		if str(row.get("receiver_id")) != self_id or row.get("is_read"):
			continue
		if row.get("message_type") in SYSTEM_MESSAGE_TYPES:
			continue
		if self_id in {str(item) for item in (row.get("deleted_for") or ())}:
			continue
		senders.add(str(row.get("sender_id")))
	return len(senders)


class NotificationAggregator:
	"""Holds current relationship and message rows and re-derives badge counts.

	Counts are recomputed from the rows after every relevant feed event and after every
	full refresh; payload counts are never trusted.
	"""

	def __init__(self, self_id: str, backend: BadgeBackend) -> None:
		self.self_id = self_id
		self._backend = backend
		self._relationships: Dict[str, Dict[str, Any]] = {}
		self._messages: Dict[str, Dict[str, Any]] = {}
		self._counts = BadgeCounts()
		self._listeners: List[Callable[[BadgeCounts], None]] = []
		self._in_flight: Optional[List[ChangeEvent]] = None

	@property
	def counts(self) -> BadgeCounts:
		return self._counts

	@property
	def pending_count(self) -> int:
		return self._counts.pending

	@property
	def unread_count(self) -> int:
		return self._counts.unread

	def add_listener(self, listener: Callable[[BadgeCounts], None]) -> None:
		self._listeners.append(listener)

	def subscribe(self, feed: ChangeFeed) -> Subscription:
		return feed.subscribe((RELATIONSHIPS_TABLE, MESSAGES_TABLE), self.handle_event)

	def relationship_with(self, counterpart_id: str) -> Optional[Relationship]:
		for row in self._relationships.values():
			relationship = Relationship.from_record(row)
			if relationship.counterpart(self.self_id) == counterpart_id:
				return relationship
		return None

	def _involves_self(self, table: str, row: Mapping[str, Any]) -> bool:
		if table == MESSAGES_TABLE:
			return str(row.get("receiver_id")) == self.self_id
		return self.self_id in (str(row.get("requester_id")), str(row.get("receiver_id")))

	def _apply(self, event: ChangeEvent) -> bool:
		if event.table == RELATIONSHIPS_TABLE:
			rows = self._relationships
		elif event.table == MESSAGES_TABLE:
			rows = self._messages
		else:
			return False
		row_id = event.row_id
		if row_id is None:
			return False
		if event.event_type == "delete" or not self._involves_self(event.table, event.new):
			return rows.pop(row_id, None) is not None
		rows[row_id] = dict(event.new)
		return True

	def handle_event(self, event: ChangeEvent) -> None:
		if self._in_flight is not None:
			self._in_flight.append(event)
		if self._apply(event):
			self._recompute("event")

	async def refresh(self) -> BadgeCounts:
		"""Full re-fetch; events that arrive meanwhile are replayed over the result."""
		self._in_flight = []
		try:
			relationships, messages = await asyncio.gather(
				self._backend.list_relationships(self.self_id),
				self._backend.list_messages_for(self.self_id),
			)
			replay = self._in_flight
		finally:
			self._in_flight = None
		self._relationships = {str(row["id"]): dict(row) for row in relationships}
		self._messages = {str(row["id"]): dict(row) for row in messages if self._involves_self(MESSAGES_TABLE, row)}
		for event in replay:
			self._apply(event)
		self._recompute("timer")
		return self._counts

	def _recompute(self, trigger: str) -> None:
		obs_metrics.inc_badge_recompute(trigger)
		counts = BadgeCounts(
			pending=count_pending(self.self_id, self._relationships.values()),
			unread=count_unread_senders(self.self_id, self._messages.values()),
		)
		if counts == self._counts:
			return
		self._counts = counts
		logger.debug("badge counts changed", extra={"pending": counts.pending, "unread": counts.unread})
		for listener in list(self._listeners):
			listener(counts)

	def reset(self) -> None:
		self._relationships.clear()
		self._messages.clear()
		self._counts = BadgeCounts()
