import pytest
from pydantic import ValidationError

from mapsync.infra.errors import ConflictViolation, StaleReference
from mapsync.infra.realtime import ChangeEvent, ChangeFeed
from mapsync.infra.sockets import ROW_CHANGE_EVENT, SocketChangeBridge
from mapsync.settings import settings


class DummySocketClient:
    def __init__(self):
        self.handlers = {}
        self.connected = False
        self.connect_calls = []

    def on(self, event, handler=None, namespace=None):
        self.handlers[(event, namespace)] = handler

    async def connect(self, url, namespaces=None, auth=None):
        self.connect_calls.append((url, namespaces, auth))
        self.connected = True

    async def disconnect(self):
        self.connected = False


def test_change_event_accepts_camel_case_and_upper_case_type():
    event = ChangeEvent.model_validate(
        {"table": "profiles", "eventType": "UPDATE", "new": {"id": "a"}, "old": None}
    )
    assert event.event_type == "update"
    assert event.old == {}
    assert event.row_id == "a"


def test_change_event_rejects_unknown_type():
    with pytest.raises(ValidationError):
        ChangeEvent(table="profiles", event_type="upsert")


def test_delete_event_describes_old_row():
    event = ChangeEvent(table="friendships", event_type="DELETE", old={"id": "r1", "status": "pending"})
    assert event.record == {"id": "r1", "status": "pending"}
    assert event.row_id == "r1"


def test_subscription_is_scoped_to_tables():
    feed = ChangeFeed()
    received = []
    subscription = feed.subscribe(["profiles"], received.append)
    feed.publish(ChangeEvent(table="blocks", event_type="insert", new={"id": "b"}))
    feed.publish(ChangeEvent(table="profiles", event_type="insert", new={"id": "p"}))
    assert [event.row_id for event in received] == ["p"]
    subscription.unsubscribe()
    feed.publish(ChangeEvent(table="profiles", event_type="update", new={"id": "p"}))
    assert len(received) == 1
    assert feed.subscriber_count == 0


def test_subscription_context_manager_unsubscribes():
    feed = ChangeFeed()
    with feed.subscribe(["profiles"], lambda event: None) as subscription:
        assert subscription.active
    assert not subscription.active
    assert feed.subscriber_count == 0


def test_empty_subscription_is_rejected():
    with pytest.raises(ValueError):
        ChangeFeed().subscribe([], lambda event: None)


def test_failing_callback_does_not_starve_others():
    feed = ChangeFeed()
    received = []

    def _boom(event):
        raise RuntimeError("boom")

    feed.subscribe(["profiles"], _boom)
    feed.subscribe(["profiles"], received.append)
    delivered = feed.publish(ChangeEvent(table="profiles", event_type="insert", new={"id": "p"}))
    assert delivered == 1
    assert len(received) == 1


def test_bridge_publishes_valid_payloads_only():
    feed = ChangeFeed()
    received = []
    feed.subscribe(["profiles"], received.append)
    bridge = SocketChangeBridge(feed, "me", client=DummySocketClient())
    assert bridge.handle_payload("nope") is False
    assert bridge.handle_payload({"table": "profiles"}) is False
    assert bridge.handle_payload({"table": "profiles", "eventType": "INSERT", "new": {"id": "x"}}) is True
    assert [event.row_id for event in received] == ["x"]


@pytest.mark.asyncio
async def test_bridge_registers_handlers_and_sends_auth(monkeypatch):
    monkeypatch.setattr(settings, "realtime_token", "secret-token")
    feed = ChangeFeed()
    received = []
    feed.subscribe(["blocks"], received.append)
    client = DummySocketClient()
    bridge = SocketChangeBridge(feed, "me", client=client, url="http://rt", namespace="/ns")

    await bridge.connect()
    assert client.connect_calls == [("http://rt", ["/ns"], {"userId": "me", "token": "secret-token"})]
    assert bridge.connected

    handler = client.handlers[(ROW_CHANGE_EVENT, "/ns")]
    await handler({"table": "blocks", "event_type": "insert", "new": {"id": "b1"}})
    assert [event.row_id for event in received] == ["b1"]

    await bridge.disconnect()
    assert not bridge.connected


@pytest.mark.asyncio
async def test_memory_backend_enforces_row_constraints(backend, feed):
    received = []
    feed.subscribe(["friendships", "blocks"], received.append)
    await backend.insert_relationship("a", "b", "pending")
    with pytest.raises(ConflictViolation):
        await backend.insert_relationship("b", "a", "pending")
    with pytest.raises(StaleReference):
        await backend.update_relationship("missing", {"status": "accepted"})
    await backend.insert_block("a", "b")
    with pytest.raises(ConflictViolation):
        await backend.insert_block("a", "b")
    with pytest.raises(StaleReference):
        await backend.delete_block("b", "a")
    assert [(event.table, event.event_type) for event in received] == [
        ("friendships", "insert"),
        ("blocks", "insert"),
    ]
