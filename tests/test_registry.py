import random
from datetime import datetime, timedelta, timezone

import pytest

from errors import ValidationError
from registry import RoomIndex, Session, SessionRegistry, all_room_ids, normalize_room_id


def assert_consistent(registry: SessionRegistry) -> None:
    for session in registry:
        assert session.id in registry.rooms.members_of(session.room_id)
        others = [room for room, _ in registry.rooms.list_rooms() if room != session.room_id]
        assert all(session.id not in registry.rooms.members_of(room) for room in others)
    for room, count in registry.rooms.list_rooms():
        assert count > 0
        assert all(registry.get(sid).room_id == room for sid in registry.rooms.members_of(room))


@pytest.mark.parametrize("raw, expected", [("001", "001"), ("005", "005"), ("100", "100"), ("042", "042")])
def test_normalize_room_id_accepts_range(raw, expected):
    assert normalize_room_id(raw) == expected


@pytest.mark.parametrize("raw", ["000", "101", "999", "5", "0005", "abc", "", " 01", None, 5])
def test_normalize_room_id_rejects(raw):
    with pytest.raises(ValidationError):
        normalize_room_id(raw)


def test_all_room_ids_covers_namespace():
    ids = all_room_ids()
    assert ids[0] == "001"
    assert ids[-1] == "100"
    assert len(ids) == 100


def test_connect_uses_defaults():
    registry = SessionRegistry()
    session = registry.connect()

    assert session.display_name == "Guest"
    assert session.room_id == "001"
    assert session.is_privileged is False
    assert session.mute_until is None
    assert registry.rooms.members_of("001") == {session.id}


def test_connect_rejects_duplicate_id():
    registry = SessionRegistry()
    registry.connect("abc")
    with pytest.raises(ValueError):
        registry.connect("abc")


def test_unknown_ids_are_noops():
    registry = SessionRegistry()
    assert registry.get("missing") is None
    assert registry.set_name("missing", "ann") is None
    assert registry.move("missing", "002") is None
    assert registry.remove("missing") is None


def test_set_name_defaults_to_guest():
    registry = SessionRegistry()
    session = registry.connect()
    registry.set_name(session.id, "ann")
    assert session.display_name == "ann"
    registry.set_name(session.id, "")
    assert session.display_name == "Guest"


def test_move_updates_index_and_drops_empty_room():
    registry = SessionRegistry()
    session = registry.connect()

    assert registry.move(session.id, "007") == "001"
    assert session.room_id == "007"
    assert "001" not in registry.rooms
    assert registry.rooms.members_of("007") == {session.id}
    assert registry.move(session.id, "007") is None


def test_remove_cleans_membership_and_moderation():
    registry = SessionRegistry()
    session = registry.connect()
    session.is_privileged = True
    session.mute_until = datetime.now(timezone.utc) + timedelta(minutes=5)

    removed = registry.remove(session.id)

    assert removed is session
    assert session.id not in registry
    assert registry.rooms.list_rooms() == []
    assert removed.is_privileged is False
    assert removed.mute_until is None


def test_list_rooms_sorted_with_counts():
    registry = SessionRegistry()
    a, b, c = registry.connect(), registry.connect(), registry.connect()
    registry.move(a.id, "050")
    registry.move(b.id, "003")

    assert registry.rooms.list_rooms() == [("001", 1), ("003", 1), ("050", 1)]
    registry.move(c.id, "003")
    assert registry.rooms.list_rooms() == [("003", 2), ("050", 1)]


def test_find_by_name_is_case_sensitive_first_match():
    registry = SessionRegistry()
    first, second, third = registry.connect(), registry.connect(), registry.connect()
    registry.set_name(first.id, "alice")
    registry.set_name(second.id, "alice")
    registry.set_name(third.id, "Alice")

    assert registry.find_by_name("alice") is first
    assert registry.find_by_name("Alice") is third
    assert registry.find_by_name("ALICE") is None


def test_sessions_in_keeps_connection_order():
    registry = SessionRegistry()
    sessions = [registry.connect() for _ in range(3)]
    registry.move(sessions[1].id, "002")

    assert registry.sessions_in("001") == [sessions[0], sessions[2]]


def test_room_index_leave_unknown_room_is_noop():
    index = RoomIndex()
    index.leave("x", "001")
    assert index.list_rooms() == []


def test_membership_invariant_under_random_churn():
    rng = random.Random(1234)
    registry = SessionRegistry()
    live = []

    for _ in range(500):
        action = rng.choice(["connect", "move", "move", "remove"])
        if action == "connect" or not live:
            live.append(registry.connect().id)
        elif action == "move":
            registry.move(rng.choice(live), f"{rng.randint(1, 5):03d}")
        else:
            registry.remove(live.pop(rng.randrange(len(live))))
        assert_consistent(registry)

    assert registry.count() == len(live)
    assert sum(count for _, count in registry.rooms.list_rooms()) == len(live)


def test_session_mute_remaining_rounds_up():
    now = datetime(2026, 1, 1, tzinfo=timezone.utc)
    session = Session(id="s")
    assert session.mute_remaining(now) == 0

    session.mute_for(300, now)
    assert session.is_muted(now)
    assert session.mute_remaining(now + timedelta(seconds=0.5)) == 300
    assert not session.is_muted(now + timedelta(seconds=300))
