"""In-process change feed: subscribe, receive row-change records, unsubscribe."""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Literal, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from mapsync.obs import metrics as obs_metrics

logger = logging.getLogger(__name__)

PROFILES_TABLE = "profiles"
RELATIONSHIPS_TABLE = "friendships"
BLOCKS_TABLE = "blocks"
MESSAGES_TABLE = "messages"

EventType = Literal["insert", "update", "delete"]


class ChangeEvent(BaseModel):
	"""One row-level mutation delivered by the realtime collaborator."""

	model_config = ConfigDict(frozen=True, populate_by_name=True)

	table: str
	event_type: EventType = Field(validation_alias=AliasChoices("event_type", "eventType"))
	old: Dict[str, Any] = Field(default_factory=dict)
	new: Dict[str, Any] = Field(default_factory=dict)

	@field_validator("event_type", mode="before")
	def _normalise_event_type(cls, value: Any) -> Any:
		if isinstance(value, str):
			return value.strip().lower()
		return value

	@field_validator("old", "new", mode="before")
	def _none_to_empty(cls, value: Any) -> Any:
		return {} if value is None else value

	@property
	def record(self) -> Dict[str, Any]:
		"""The row image that describes the outcome of the event."""
		if self.event_type == "delete":
			return self.old
		return self.new

	@property
	def row_id(self) -> Optional[str]:
		raw = self.new.get("id") if self.new else None
		if raw is None:
			raw = self.old.get("id")
		return str(raw) if raw is not None else None


Callback = Callable[[ChangeEvent], None]


class Subscription:
	"""Handle returned by :meth:`ChangeFeed.subscribe`; cancel with :meth:`unsubscribe`."""

	def __init__(self, feed: "ChangeFeed", tables: FrozenSet[str], callback: Callback) -> None:
		self._feed = feed
		self.tables = tables
		self.callback = callback
		self._active = True

	@property
	def active(self) -> bool:
		return self._active

	def unsubscribe(self) -> None:
		if not self._active:
			return
		self._active = False
		self._feed._remove(self)

	def __enter__(self) -> "Subscription":
		return self

	def __exit__(self, *exc_info: object) -> None:
		self.unsubscribe()


class ChangeFeed:
	"""Fan-out of change events to table-scoped subscribers on the running loop."""

	def __init__(self) -> None:
		self._subscriptions: List[Subscription] = []

	def subscribe(self, tables: Iterable[str], callback: Callback) -> Subscription:
		scope = frozenset(tables)
		if not scope:
			raise ValueError("subscription needs at least one table")
		subscription = Subscription(self, scope, callback)
		self._subscriptions.append(subscription)
		obs_metrics.feed_subscribed()
		return subscription

	def publish(self, event: ChangeEvent) -> int:
		"""Deliver ``event`` to every active subscriber of its table; returns deliveries."""
		obs_metrics.feed_event(event.table, event.event_type)
		delivered = 0
		for subscription in list(self._subscriptions):
			if not subscription.active or event.table not in subscription.tables:
				continue
			try:
				subscription.callback(event)
			except Exception:
				obs_metrics.feed_reject("callback_error")
				logger.exception("change feed callback failed", extra={"table": event.table, "event": event.event_type})
				continue
			delivered += 1
		return delivered

	@property
	def subscriber_count(self) -> int:
		return len(self._subscriptions)

	def _remove(self, subscription: Subscription) -> None:
		try:
			self._subscriptions.remove(subscription)
		except ValueError:
			return
		obs_metrics.feed_unsubscribed()
