from itertools import permutations

from mapsync.domain.roster import merge
from mapsync.domain.roster.models import BlockedSet, Entity, RosterState, extract_fields, is_visible
from mapsync.domain.social.models import RelationshipFields, RelationshipStatus
from mapsync.infra.realtime import ChangeEvent

SELF = "me"


def _row(user_id, **overrides):
    row = {
        "id": user_id,
        "username": user_id,
        "latitude": 45.5,
        "longitude": -73.5,
        "is_location_on": True,
        "is_ghost_mode": False,
    }
    row.update(overrides)
    return row


def _profile_event(event_type, new=None, old=None):
    return ChangeEvent(table="profiles", event_type=event_type, new=new or {}, old=old or {})


def _relationship_event(event_type, new=None, old=None):
    return ChangeEvent(table="friendships", event_type=event_type, new=new or {}, old=old or {})


def _relationship_row(rel_id, requester, receiver, status="pending"):
    return {"id": rel_id, "requester_id": requester, "receiver_id": receiver, "status": status}


def _state(**kwargs):
    return RosterState(self_id=SELF, **kwargs)


def test_extract_fields_only_maps_present_columns():
    fields = extract_fields({"id": "a", "latitude": "45.1", "status_message": "coffee?"})
    assert fields == {"lat": 45.1, "status_text": "coffee?"}


def test_extract_fields_defaults_for_null_flags():
    fields = extract_fields({"is_location_on": None, "is_ghost_mode": None, "full_name": "Ada"})
    assert fields["location_visible"] is True
    assert fields["ghost_mode"] is False
    assert fields["display_name"] == "Ada"


def test_is_visible_requires_every_condition():
    entity = Entity(id="a", lat=1.0, lng=2.0)
    assert is_visible(entity)
    assert not is_visible(Entity(id="a", lat=1.0, lng=None))
    assert not is_visible(Entity(id="a", lat=1.0, lng=2.0, ghost_mode=True))
    assert not is_visible(Entity(id="a", lat=1.0, lng=2.0, location_visible=False))
    assert not is_visible(entity, {"a"})


def test_snapshot_keeps_only_visible_rows():
    state = _state(blocked=BlockedSet(frozenset({"b"})))
    state = merge.apply_snapshot(
        state,
        [
            _row(SELF),
            _row("a"),
            _row("b"),
            _row("c", is_ghost_mode=True),
            _row("d", latitude=None),
            _row("e", is_location_on=False),
        ],
    )
    assert list(state.entities) == ["a"]


def test_snapshot_preserves_relationship_fields():
    fields = RelationshipFields(RelationshipStatus.PENDING, SELF, "r1")
    state = merge.set_relationship(_state(), "a", fields)
    state = merge.apply_snapshot(state, [_row("a")])
    assert state.entities["a"].relationship == fields
    state = merge.apply_snapshot(state, [_row("a", latitude=46.0)])
    assert state.entities["a"].relationship == fields
    assert state.entities["a"].lat == 46.0


def test_snapshot_prunes_entities_missing_from_result():
    state = merge.apply_snapshot(_state(), [_row("a"), _row("b")])
    state = merge.apply_snapshot(state, [_row("a")])
    assert list(state.entities) == ["a"]


def test_snapshot_keeps_entity_touched_after_issue():
    state = merge.apply_snapshot(_state(), [_row("a"), _row("b")])
    state, issued_at = merge.begin_snapshot(state)
    state = merge.apply_change_event(state, _profile_event("update", {"id": "b", "latitude": 40.0}))
    state = merge.apply_snapshot(state, [_row("a")], issued_at)
    assert set(state.entities) == {"a", "b"}
    assert state.entities["b"].lat == 40.0


def test_stale_snapshot_does_not_resurrect_entity_hidden_by_push():
    state = merge.apply_snapshot(_state(), [_row("a")])
    state, issued_at = merge.begin_snapshot(state)
    state = merge.apply_change_event(state, _profile_event("update", {"id": "a", "is_location_on": False}))
    assert "a" not in state.entities
    # the in-flight snapshot still lists "a" as visible
    state = merge.apply_snapshot(state, [_row("a")], issued_at)
    assert "a" not in state.entities


def test_stale_snapshot_does_not_overwrite_newer_field():
    state = merge.apply_snapshot(_state(), [_row("a", latitude=45.0)])
    state, issued_at = merge.begin_snapshot(state)
    state = merge.apply_change_event(state, _profile_event("update", {"id": "a", "latitude": 50.0}))
    state = merge.apply_snapshot(state, [_row("a", latitude=45.0, status_message="new")], issued_at)
    assert state.entities["a"].lat == 50.0
    assert state.entities["a"].status_text == "new"


def test_snapshot_issued_after_push_wins():
    state = merge.apply_snapshot(_state(), [_row("a", latitude=45.0)])
    state = merge.apply_change_event(state, _profile_event("update", {"id": "a", "latitude": 50.0}))
    state = merge.apply_snapshot(state, [_row("a", latitude=60.0)])
    assert state.entities["a"].lat == 60.0


def test_change_event_removes_entity_when_visibility_turns_off():
    state = merge.apply_snapshot(_state(), [_row("a")])
    state = merge.apply_change_event(state, _profile_event("update", {"id": "a", "is_ghost_mode": True}))
    assert "a" not in state.entities


def test_change_event_carries_forward_missing_fields():
    state = merge.apply_snapshot(_state(), [_row("a", status_message="hi", has_story=True)])
    state = merge.apply_change_event(state, _profile_event("update", {"id": "a", "latitude": 46.0}))
    entity = state.entities["a"]
    assert entity.lat == 46.0
    assert entity.lng == -73.5
    assert entity.status_text == "hi"
    assert entity.has_story is True
    assert entity.display_name == "a"


def test_insert_event_without_location_flag_is_visible():
    state = merge.apply_change_event(
        _state(),
        _profile_event("insert", {"id": "n", "latitude": 1.0, "longitude": 2.0}),
    )
    assert "n" in state.entities


def test_blocked_and_self_events_are_dropped():
    state = _state(blocked=BlockedSet(frozenset({"x"})))
    after = merge.apply_change_event(state, _profile_event("insert", _row("x")))
    assert after is state
    after = merge.apply_change_event(state, _profile_event("insert", _row(SELF)))
    assert after is state


def test_delete_event_removes_entity():
    state = merge.apply_snapshot(_state(), [_row("a")])
    state = merge.apply_change_event(state, _profile_event("delete", old={"id": "a"}))
    assert state.entities == {}


def test_update_is_idempotent():
    state = merge.apply_snapshot(_state(), [_row("a")])
    event = _profile_event("update", {"id": "a", "latitude": 47.0, "status_message": "hey"})
    once = merge.apply_change_event(state, event)
    twice = merge.apply_change_event(once, event)
    assert twice.entities == once.entities


def test_events_on_distinct_ids_commute():
    base = merge.apply_snapshot(_state(), [_row("a"), _row("b")])
    a1 = _profile_event("update", {"id": "a", "latitude": 10.0})
    a2 = _profile_event("update", {"id": "a", "is_location_on": False})
    b1 = _profile_event("update", {"id": "b", "status_message": "here"})
    c1 = _profile_event("insert", _row("c", latitude=11.0))

    def replay(events):
        state = base
        for event in events:
            state = merge.apply_change_event(state, event)
        return state

    first = replay([a1, b1, a2, c1])
    second = replay([b1, c1, a1, a2])
    third = replay([c1, a1, a2, b1])
    assert dict(first.entities) == dict(second.entities) == dict(third.entities)
    assert "a" not in first.entities


def _block_event(event_type, blocker, blocked):
    row = {"blocker_id": blocker, "blocked_id": blocked}
    if event_type == "delete":
        return ChangeEvent(table="blocks", event_type=event_type, old=row)
    return ChangeEvent(table="blocks", event_type=event_type, new=row)


def _apply_poll(state, issued_at, block_rows, relationship_rows, profile_rows):
    state = merge.replace_blocked(state, BlockedSet.from_rows(SELF, block_rows, relationship_rows), issued_at)
    state = merge.apply_relationship_snapshot(state, relationship_rows, issued_at)
    return merge.apply_snapshot(state, profile_rows, issued_at)


def _assert_only_visible(state):
    for entity in state.entities.values():
        assert is_visible(entity, state.blocked), entity.id


def test_mixed_channels_commute_and_never_render_hidden_entities():
    ids = ("a", "b", "c", "d", "e")
    base = merge.apply_snapshot(_state(), [_row(user_id) for user_id in ids if user_id != "d"])
    base, issued_at = merge.begin_snapshot(base)
    temp = RelationshipFields(RelationshipStatus.PENDING, SELF, "temp-1")
    # listing fetched at issued_at: everyone visible, nobody blocked, no relationships
    stale_rows = [_row(user_id) for user_id in ids]

    steps = {
        "a_move": lambda s: merge.apply_change_event(s, _profile_event("update", {"id": "a", "latitude": 10.0})),
        "a_hide": lambda s: merge.apply_change_event(s, _profile_event("update", {"id": "a", "is_location_on": False})),
        "b_blocks_me": lambda s: merge.apply_block_event(s, _block_event("insert", "b", SELF)),
        "c_pokes": lambda s: merge.apply_relationship_event(
            s, _relationship_event("insert", _relationship_row("r1", "c", SELF))
        )[0],
        "d_blocked": lambda s: merge.block_locally(s, "d"),
        "e_poked": lambda s: merge.set_relationship(s, "e", temp),
        "poll": lambda s: _apply_poll(s, issued_at, [], [], stale_rows),
    }

    results = []
    for order in permutations(steps):
        if order.index("a_move") > order.index("a_hide"):
            continue
        state = base
        for name in order:
            state = steps[name](state)
            _assert_only_visible(state)
        results.append((order, state))

    _, expected = results[0]
    assert set(expected.entities) == {"c", "e"}
    assert set(expected.blocked) == {"b", "d"}
    assert expected.entities["c"].relationship.relationship_id == "r1"
    assert expected.entities["e"].relationship == temp
    for order, state in results:
        assert dict(state.entities) == dict(expected.entities), order
        assert set(state.blocked) == set(expected.blocked), order
        assert dict(state.relationships) == dict(expected.relationships), order


def test_block_event_interleaved_with_in_flight_poll():
    base = merge.apply_snapshot(_state(), [_row("a"), _row("b")])
    block = _block_event("insert", "a", SELF)

    # event lands while the poll is in flight, before its results are applied
    state, issued_at = merge.begin_snapshot(base)
    state = merge.apply_block_event(state, block)
    state = _apply_poll(state, issued_at, [], [], [_row("a"), _row("b")])
    assert "a" in state.blocked
    assert set(state.entities) == {"b"}

    # the poll is issued after the event and already reflects it
    state = merge.apply_block_event(base, block)
    state, issued_at = merge.begin_snapshot(state)
    state = _apply_poll(state, issued_at, [{"blocker_id": "a", "blocked_id": SELF}], [], [_row("b")])
    assert "a" in state.blocked
    assert set(state.entities) == {"b"}

    # the unblock arrives while a poll that still lists the block is in flight
    state, issued_at = merge.begin_snapshot(state)
    state = merge.apply_block_event(state, _block_event("delete", "a", SELF))
    state = _apply_poll(state, issued_at, [{"blocker_id": "a", "blocked_id": SELF}], [], [_row("b")])
    assert "a" not in state.blocked


def test_relationship_insert_patches_counterpart():
    state = merge.apply_snapshot(_state(), [_row("a")])
    state, change = merge.apply_relationship_event(
        state,
        _relationship_event("insert", _relationship_row("r1", "a", SELF)),
    )
    expected = RelationshipFields(RelationshipStatus.PENDING, "a", "r1")
    assert state.entities["a"].relationship == expected
    assert state.relationship_owners["r1"] == "a"
    assert change.previous.is_none
    assert change.current == expected


def test_relationship_delete_clears_fields():
    state, _ = merge.apply_relationship_event(
        _state(),
        _relationship_event("insert", _relationship_row("r1", SELF, "a")),
    )
    state, change = merge.apply_relationship_event(state, _relationship_event("delete", old={"id": "r1"}))
    assert state.relationship_for("a").is_none
    assert "r1" not in state.relationship_owners
    assert change.current.is_none


def test_delete_for_forgotten_id_is_ignored():
    state, _ = merge.apply_relationship_event(
        _state(),
        _relationship_event("insert", _relationship_row("r1", SELF, "a")),
    )
    # local re-poke replaces the row; the old id is dropped from the owner cache
    temp = RelationshipFields(RelationshipStatus.PENDING, SELF, "temp-1")
    state = merge.set_relationship(state, "a", temp)
    after, change = merge.apply_relationship_event(state, _relationship_event("delete", old={"id": "r1"}))
    assert change is None
    assert after.relationship_for("a") == temp


def test_delete_for_superseded_id_only_drops_mapping():
    state, _ = merge.apply_relationship_event(
        _state(),
        _relationship_event("insert", _relationship_row("r1", SELF, "a")),
    )
    state = merge.remember_relationship_id(state, "r0", "a")
    after, change = merge.apply_relationship_event(state, _relationship_event("delete", old={"id": "r0"}))
    assert change is None
    assert "r0" not in after.relationship_owners
    assert after.relationship_for("a").relationship_id == "r1"


def test_blocked_relationship_hides_counterpart():
    state = merge.apply_snapshot(_state(), [_row("a")])
    state, _ = merge.apply_relationship_event(
        state,
        _relationship_event("update", _relationship_row("r1", "a", SELF, "blocked")),
    )
    assert "a" in state.blocked
    assert "a" not in state.entities


def test_relationship_event_for_other_pair_is_ignored():
    state = _state()
    after, change = merge.apply_relationship_event(
        state,
        _relationship_event("insert", _relationship_row("r9", "x", "y")),
    )
    assert after is state
    assert change is None


def test_block_events_toggle_blocked_set():
    state = merge.apply_snapshot(_state(), [_row("a")])
    insert = ChangeEvent(table="blocks", event_type="insert", new={"blocker_id": "a", "blocked_id": SELF})
    state = merge.apply_block_event(state, insert)
    assert "a" in state.blocked
    assert "a" not in state.entities
    delete = ChangeEvent(table="blocks", event_type="delete", old={"blocker_id": "a", "blocked_id": SELF})
    state = merge.apply_block_event(state, delete)
    assert "a" not in state.blocked


def test_relationship_snapshot_skips_in_flight_fields():
    temp = RelationshipFields(RelationshipStatus.PENDING, SELF, "temp-1")
    state = merge.set_relationship(_state(), "a", temp)
    state, issued_at = merge.begin_snapshot(state)
    state = merge.apply_relationship_snapshot(state, [], issued_at)
    assert state.relationship_for("a") == temp


def test_relationship_snapshot_does_not_undo_newer_push():
    state, _ = merge.apply_relationship_event(
        _state(),
        _relationship_event("insert", _relationship_row("r1", SELF, "a")),
    )
    state, issued_at = merge.begin_snapshot(state)
    state, _ = merge.apply_relationship_event(
        state,
        _relationship_event("update", _relationship_row("r1", SELF, "a", "accepted")),
    )
    state = merge.apply_relationship_snapshot(state, [_relationship_row("r1", SELF, "a")], issued_at)
    assert state.relationship_for("a").status is RelationshipStatus.ACCEPTED


def test_relationship_snapshot_clears_rows_gone_from_backend():
    state, _ = merge.apply_relationship_event(
        _state(),
        _relationship_event("insert", _relationship_row("r1", "a", SELF)),
    )
    state, issued_at = merge.begin_snapshot(state)
    state = merge.apply_relationship_snapshot(state, [], issued_at)
    assert state.relationship_for("a").is_none


def test_replace_blocked_keeps_newer_local_blocks():
    state, issued_at = merge.begin_snapshot(_state())
    state = merge.block_locally(state, "x")
    state = merge.replace_blocked(state, BlockedSet(frozenset({"y"})), issued_at)
    assert set(state.blocked) == {"x", "y"}


def test_blocked_set_from_rows_covers_both_directions():
    blocked = BlockedSet.from_rows(
        SELF,
        [
            {"blocker_id": SELF, "blocked_id": "a"},
            {"blocker_id": "b", "blocked_id": SELF},
            {"blocker_id": "c", "blocked_id": "d"},
        ],
        [
            _relationship_row("r1", "e", SELF, "blocked"),
            _relationship_row("r2", "f", SELF, "accepted"),
        ],
    )
    assert set(blocked) == {"a", "b", "e"}


def test_restore_entity_puts_back_removed_entity_once():
    state = merge.apply_snapshot(_state(), [_row("a")])
    entity = state.entities["a"]
    state = merge.block_locally(state, "a")
    state = merge.unblock_locally(state, "a")
    state = merge.restore_entity(state, entity)
    assert state.entities["a"].lat == entity.lat
    assert merge.restore_entity(state, entity) is state


def test_snapshots_prune_stamps_they_supersede():
    state = merge.apply_snapshot(_state(), [_row("a"), _row("b")])
    state = merge.apply_change_event(state, _profile_event("delete", old={"id": "a"}))
    state, _ = merge.apply_relationship_event(
        state,
        _relationship_event("insert", _relationship_row("r1", SELF, "b")),
    )
    state = merge.block_locally(state, "x")
    assert state.tombstones and state.relationship_stamps and state.block_stamps

    state, issued_at = merge.begin_snapshot(state)
    state = _apply_poll(
        state,
        issued_at,
        [{"blocker_id": SELF, "blocked_id": "x"}],
        [_relationship_row("r1", SELF, "b")],
        [_row("b")],
    )
    assert state.tombstones == {}
    assert state.relationship_stamps == {}
    assert state.block_stamps == {}
    assert set(state.entities) == {"b"}
    assert state.relationship_for("b").relationship_id == "r1"
    assert set(state.blocked) == {"x"}


def test_stamps_newer_than_snapshot_survive_pruning():
    state = merge.apply_snapshot(_state(), [_row("a")])
    state, issued_at = merge.begin_snapshot(state)
    state = merge.apply_change_event(state, _profile_event("delete", old={"id": "a"}))
    state = merge.apply_snapshot(state, [_row("a")], issued_at)
    assert "a" not in state.entities
    assert "a" in state.tombstones


def test_snapshot_older_than_applied_one_is_dropped():
    state = merge.apply_snapshot(_state(), [_row("a")])
    state, older = merge.begin_snapshot(state)
    state = merge.apply_change_event(state, _profile_event("delete", old={"id": "a"}))
    state, newer = merge.begin_snapshot(state)
    state = _apply_poll(state, newer, [], [], [])
    assert state.tombstones == {}
    # the slower listing from before the delete still shows "a"
    after = _apply_poll(state, older, [], [_relationship_row("r1", SELF, "a")], [_row("a")])
    assert after is state
    assert "a" not in after.entities
