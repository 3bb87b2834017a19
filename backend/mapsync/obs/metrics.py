"""Central registry for Prometheus metrics used across the engine."""

from __future__ import annotations

from prometheus_client import Counter, Gauge

ROSTER_EVENTS = Counter(
	"mapsync_roster_events_total",
	"Roster merge inputs processed",
	["source", "outcome"],
)

ROSTER_SIZE = Gauge(
	"mapsync_roster_size",
	"Entities currently rendered in the roster",
)

POLL_CYCLES = Counter(
	"mapsync_poll_cycles_total",
	"Roster re-fetch cycles",
	["result"],
)

FEED_EVENTS = Counter(
	"mapsync_feed_events_total",
	"Change feed events dispatched",
	["table", "event"],
)

FEED_REJECTS = Counter(
	"mapsync_feed_rejects_total",
	"Change feed payloads dropped",
	["reason"],
)

FEED_SUBSCRIPTIONS = Gauge(
	"mapsync_feed_subscriptions_active",
	"Active change feed subscriptions",
)

POKES = Counter(
	"mapsync_pokes_total",
	"Poke actions by outcome",
	["result"],
)

RELATIONSHIP_ACTIONS = Counter(
	"mapsync_relationship_actions_total",
	"Relationship actions other than poke",
	["action", "result"],
)

BLOCKS_TOTAL = Counter(
	"mapsync_blocks_total",
	"Block list mutations",
	["action"],
)

OPTIMISTIC_ROLLBACKS = Counter(
	"mapsync_optimistic_rollbacks_total",
	"Optimistic mutations rolled back after a failed write",
	["command"],
)

GEO_TRANSITIONS = Counter(
	"mapsync_geo_transitions_total",
	"Geo tracker state transitions",
	["state"],
)

GEO_WRITES = Counter(
	"mapsync_geo_writes_total",
	"Remote position writes",
	["result"],
)

BADGE_RECOMPUTES = Counter(
	"mapsync_badge_recomputes_total",
	"Badge count derivations",
	["trigger"],
)

SUPERVISED_FAILURES = Counter(
	"mapsync_supervised_failures_total",
	"Failures caught by the supervisor",
	["task"],
)

CACHE_FAILURES = Counter(
	"mapsync_cache_failures_total",
	"Local profile cache operations that failed",
	["op"],
)


def inc_roster_event(source: str, outcome: str) -> None:
	ROSTER_EVENTS.labels(source=source, outcome=outcome).inc()


def set_roster_size(size: int) -> None:
	ROSTER_SIZE.set(size)


def inc_poll_cycle(result: str) -> None:
	POLL_CYCLES.labels(result=result).inc()


def feed_event(table: str, event: str) -> None:
	FEED_EVENTS.labels(table=table, event=event).inc()


def feed_reject(reason: str) -> None:
	FEED_REJECTS.labels(reason=reason).inc()


def feed_subscribed() -> None:
	FEED_SUBSCRIPTIONS.inc()


def feed_unsubscribed() -> None:
	FEED_SUBSCRIPTIONS.dec()


def inc_poke(result: str) -> None:
	POKES.labels(result=result).inc()


def inc_relationship_action(action: str, result: str) -> None:
	RELATIONSHIP_ACTIONS.labels(action=action, result=result).inc()


def inc_block(action: str) -> None:
	BLOCKS_TOTAL.labels(action=action).inc()


def inc_rollback(command: str) -> None:
	OPTIMISTIC_ROLLBACKS.labels(command=command).inc()


def inc_geo_transition(state: str) -> None:
	GEO_TRANSITIONS.labels(state=state).inc()


def inc_geo_write(result: str) -> None:
	GEO_WRITES.labels(result=result).inc()


def inc_badge_recompute(trigger: str) -> None:
	BADGE_RECOMPUTES.labels(trigger=trigger).inc()


def inc_supervised_failure(task: str) -> None:
	SUPERVISED_FAILURES.labels(task=task).inc()


def inc_cache_failure(op: str) -> None:
	CACHE_FAILURES.labels(op=op).inc()
