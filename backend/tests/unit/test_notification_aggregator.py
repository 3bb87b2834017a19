import asyncio

import pytest

from mapsync.domain.notifications.aggregator import (
    BadgeCounts,
    NotificationAggregator,
    count_pending,
    count_unread_senders,
)

SELF = "me"


def test_count_pending_only_counts_incoming():
    rows = [
        {"id": "1", "requester_id": "alice", "receiver_id": SELF, "status": "pending"},
        {"id": "2", "requester_id": SELF, "receiver_id": "bob", "status": "pending"},
        {"id": "3", "requester_id": "carol", "receiver_id": SELF, "status": "accepted"},
    ]
    assert count_pending(SELF, rows) == 1


def test_count_unread_senders_skips_read_system_and_deleted():
    rows = [
        {"id": "1", "sender_id": "alice", "receiver_id": SELF, "is_read": False},
        {"id": "2", "sender_id": "alice", "receiver_id": SELF, "is_read": False},
        {"id": "3", "sender_id": "bob", "receiver_id": SELF, "is_read": True},
        {"id": "4", "sender_id": "carol", "receiver_id": SELF, "is_read": False, "message_type": "call_log"},
        {"id": "5", "sender_id": "dave", "receiver_id": SELF, "is_read": False, "deleted_for": [SELF]},
        {"id": "6", "sender_id": "erin", "receiver_id": "someone", "is_read": False},
    ]
    assert count_unread_senders(SELF, rows) == 1


@pytest.mark.asyncio
async def test_refresh_derives_counts_from_rows(backend):
    backend.seed_relationship("alice", SELF)
    backend.seed_relationship(SELF, "bob")
    await backend.insert_message("alice", SELF, "hi")
    await backend.insert_message("alice", SELF, "again")
    await backend.insert_message("carol", SELF, "", message_type="system")
    aggregator = NotificationAggregator(SELF, backend)
    assert await aggregator.refresh() == BadgeCounts(pending=1, unread=1)
    assert aggregator.pending_count == 1
    assert aggregator.unread_count == 1


@pytest.mark.asyncio
async def test_feed_events_recompute_and_notify(backend, feed):
    aggregator = NotificationAggregator(SELF, backend)
    seen = []
    aggregator.add_listener(seen.append)
    aggregator.subscribe(feed)
    await aggregator.refresh()

    await backend.insert_relationship("alice", SELF, "pending")
    assert aggregator.pending_count == 1
    message = await backend.insert_message("bob", SELF, "hey")
    assert aggregator.unread_count == 1
    await backend.update_message(message["id"], {"is_read": True})
    assert aggregator.unread_count == 0
    assert seen == [
        BadgeCounts(pending=1, unread=0),
        BadgeCounts(pending=1, unread=1),
        BadgeCounts(pending=1, unread=0),
    ]


@pytest.mark.asyncio
async def test_events_for_other_users_do_not_change_counts(backend, feed):
    aggregator = NotificationAggregator(SELF, backend)
    seen = []
    aggregator.add_listener(seen.append)
    aggregator.subscribe(feed)
    await backend.insert_relationship("x", "y", "pending")
    await backend.insert_message("x", "y", "hello")
    assert aggregator.counts == BadgeCounts()
    assert seen == []


@pytest.mark.asyncio
async def test_event_during_refresh_is_replayed(backend, feed):
    row = backend.seed_relationship("alice", SELF)
    aggregator = NotificationAggregator(SELF, backend)
    aggregator.subscribe(feed)
    gate = backend.hold("list_messages_for")
    refresh = asyncio.create_task(aggregator.refresh())
    for _ in range(5):
        await asyncio.sleep(0)
    # the relationship list is already fetched and still contains the row
    await backend.delete_relationship(row["id"])
    gate.set()
    counts = await refresh
    assert counts.pending == 0


@pytest.mark.asyncio
async def test_relationship_with_and_reset(backend):
    row = backend.seed_relationship(SELF, "alice", "accepted")
    aggregator = NotificationAggregator(SELF, backend)
    await aggregator.refresh()
    relationship = aggregator.relationship_with("alice")
    assert relationship is not None
    assert relationship.id == row["id"]
    assert aggregator.relationship_with("bob") is None
    aggregator.reset()
    assert aggregator.relationship_with("alice") is None
    assert aggregator.counts == BadgeCounts()
