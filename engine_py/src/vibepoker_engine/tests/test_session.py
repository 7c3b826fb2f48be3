"""
Tests for the session engine.
"""

import asyncio
import json

import pytest
from vibepoker_engine.errors import CloseReason
from vibepoker_engine.rules import create_config
from vibepoker_engine.session import RateLimiter, SessionManager
from vibepoker_engine.store import RoomStore


class FakeBroadcaster:
    """Records outbound messages instead of sending them."""

    def __init__(self):
        self.broadcasts = []
        self.sent = []

    def broadcast(self, room_id, message):
        self.broadcasts.append((room_id, message))

    def send(self, room_id, connection_id, message):
        self.sent.append((room_id, connection_id, message))

    def snapshots(self, room_id):
        return [m["data"] for r, m in self.broadcasts if r == room_id]


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def _session(clock=None, **overrides):
    overrides.setdefault("room_grace_seconds", 0.05)
    config = create_config(**overrides)
    broadcaster = FakeBroadcaster()
    session = SessionManager(RoomStore(config), broadcaster, config, clock=clock or FakeClock())
    return session, broadcaster


def _msg(type_, **payload):
    return json.dumps({"type": type_, **payload})


async def _room_with(session, *names, room_id="room-1", deck_type=None):
    for i, name in enumerate(names):
        outcome = await session.connect(f"c{i}", room_id, name, deck_type)
        assert outcome.accepted
    return room_id


@pytest.mark.asyncio
async def test_connect_broadcasts_state():
    session, broadcaster = _session()
    outcome = await session.connect("c0", "room-1", "Alice", "fibonacci")

    assert outcome.accepted
    assert session.room_of("c0") == "room-1"
    assert len(broadcaster.broadcasts) == 1
    room_id, message = broadcaster.broadcasts[0]
    assert room_id == "room-1"
    assert message["type"] == "room-state"
    assert message["data"]["hostId"] == "c0"
    assert message["data"]["deckType"] == "fibonacci"
    assert message["data"]["players"] == [
        {"id": "c0", "name": "Alice", "selectedCard": None, "isHost": True}
    ]
    await session.store.close()


@pytest.mark.asyncio
@pytest.mark.parametrize("name, reason", [
    (None, CloseReason.NAME_REQUIRED),
    ("", CloseReason.NAME_REQUIRED),
    ("   ", CloseReason.INVALID_NAME),
    ("x" * 60, CloseReason.INVALID_NAME),
])
async def test_bad_name_rejected_before_room_exists(name, reason):
    session, broadcaster = _session()
    outcome = await session.connect("c0", "room-1", name)

    assert not outcome.accepted
    assert outcome.reason == reason
    assert "room-1" not in session.store
    assert broadcaster.broadcasts == []
    await session.store.close()


@pytest.mark.asyncio
async def test_name_taken_and_room_full_do_not_touch_room():
    session, broadcaster = _session(max_players_per_room=2)
    await _room_with(session, "Alice")
    version = session.store.get("room-1").version
    broadcasts = len(broadcaster.broadcasts)

    taken = await session.connect("c9", "room-1", "ALICE")
    assert taken.reason == CloseReason.NAME_TAKEN
    assert session.store.get("room-1").version == version
    assert len(broadcaster.broadcasts) == broadcasts
    assert session.room_of("c9") is None

    assert (await session.connect("c1", "room-1", "Bob")).accepted
    version = session.store.get("room-1").version
    broadcasts = len(broadcaster.broadcasts)

    full = await session.connect("c8", "room-1", "Carol")
    assert full.reason == CloseReason.ROOM_FULL

    room = session.store.get("room-1")
    assert room.version == version
    assert [p.name for p in room.players] == ["Alice", "Bob"]
    assert len(broadcaster.broadcasts) == broadcasts
    await session.store.close()


@pytest.mark.asyncio
async def test_on_joined_runs_before_join_broadcast():
    session, broadcaster = _session()
    seen = []

    def on_joined():
        seen.append(len(broadcaster.broadcasts))

    outcome = await session.connect("c0", "room-1", "Alice", on_joined=on_joined)
    assert outcome.accepted
    assert seen == [0]
    assert len(broadcaster.broadcasts) == 1
    await session.store.close()


@pytest.mark.asyncio
async def test_on_joined_skipped_for_refused_joins():
    session, _ = _session(max_players_per_room=2)
    await _room_with(session, "Alice")
    calls = []

    assert not (await session.connect("c5", "room-1", "", on_joined=lambda: calls.append("c5"))).accepted
    assert not (await session.connect("c6", "room-1", "alice", on_joined=lambda: calls.append("c6"))).accepted
    assert (await session.connect("c7", "room-1", "Bob", on_joined=lambda: calls.append("c7"))).accepted
    assert not (await session.connect("c8", "room-1", "Carol", on_joined=lambda: calls.append("c8"))).accepted
    assert calls == ["c7"]
    await session.store.close()


@pytest.mark.asyncio
async def test_on_joined_failure_commits_nothing():
    session, broadcaster = _session()

    def broken():
        raise RuntimeError("socket gone")

    outcome = await session.connect("c0", "room-1", "Alice", on_joined=broken)
    assert outcome.reason == CloseReason.INTERNAL_ERROR
    assert "room-1" not in session.store
    assert session.room_of("c0") is None
    assert broadcaster.broadcasts == []
    await session.store.close()


@pytest.mark.asyncio
async def test_too_many_rooms():
    session, _ = _session(max_rooms=1)
    await _room_with(session, "Alice", room_id="room-1")
    outcome = await session.connect("c5", "room-2", "Bob")
    assert outcome.reason == CloseReason.TOO_MANY_ROOMS
    await session.store.close()


@pytest.mark.asyncio
async def test_redundant_selection_broadcasts_once():
    session, broadcaster = _session()
    await _room_with(session, "Alice")
    before = len(broadcaster.broadcasts)

    assert await session.handle_message("c0", _msg("select-card", card="5"))
    assert not await session.handle_message("c0", _msg("select-card", card="5"))
    assert len(broadcaster.broadcasts) == before + 1
    await session.store.close()


@pytest.mark.asyncio
async def test_deselect():
    session, broadcaster = _session()
    await _room_with(session, "Alice")
    await session.handle_message("c0", _msg("select-card", card="8"))
    assert await session.handle_message("c0", _msg("select-card", card=None))
    assert broadcaster.snapshots("room-1")[-1]["players"][0]["selectedCard"] is None
    await session.store.close()


@pytest.mark.asyncio
@pytest.mark.parametrize("message", [
    _msg("update-topic", topic="Hijack"),
    _msg("reveal-cards"),
    _msg("accept-estimation", value="5"),
    _msg("reset-round"),
    _msg("revote"),
])
async def test_non_host_actions_are_dropped(message):
    session, broadcaster = _session()
    await _room_with(session, "Host", "Guest")
    version = session.store.get("room-1").version
    before = len(broadcaster.broadcasts)

    assert not await session.handle_message("c1", message)
    assert session.store.get("room-1").version == version
    assert len(broadcaster.broadcasts) == before
    await session.store.close()


@pytest.mark.asyncio
@pytest.mark.parametrize("raw", [
    "not json",
    "[1, 2]",
    '{"card": "5"}',
    '{"type": "select-card"}',
    b"\xff\xfe",
])
async def test_malformed_messages_are_dropped(raw):
    session, broadcaster = _session()
    await _room_with(session, "Alice")
    before = len(broadcaster.broadcasts)

    assert not await session.handle_message("c0", raw)
    assert len(broadcaster.broadcasts) == before
    # The connection keeps working afterwards
    assert await session.handle_message("c0", _msg("select-card", card="3"))
    await session.store.close()


@pytest.mark.asyncio
async def test_unknown_type_ignored():
    session, broadcaster = _session()
    await _room_with(session, "Alice")
    before = len(broadcaster.broadcasts)
    assert not await session.handle_message("c0", _msg("dance", style="tango"))
    assert len(broadcaster.broadcasts) == before
    await session.store.close()


@pytest.mark.asyncio
async def test_oversized_frame_dropped():
    session, _ = _session(max_message_bytes=64)
    await _room_with(session, "Alice")
    assert not await session.handle_message("c0", _msg("update-topic", topic="x" * 100))
    assert session.store.get("room-1").topic is None
    await session.store.close()


@pytest.mark.asyncio
async def test_frame_limit_counts_utf8_bytes():
    session, broadcaster = _session(max_message_bytes=64)
    await _room_with(session, "Alice")
    before = len(broadcaster.broadcasts)

    # 62 characters but 112 bytes once encoded
    frame = json.dumps({"type": "update-topic", "topic": "☕" * 25}, ensure_ascii=False)
    assert len(frame) <= 64 < len(frame.encode("utf-8"))

    assert not await session.handle_message("c0", frame)
    assert session.store.get("room-1").topic is None
    assert len(broadcaster.broadcasts) == before

    # The same limit applies to binary frames
    assert not await session.handle_message("c0", frame.encode("utf-8"))
    assert await session.handle_message("c0", _msg("update-topic", topic="☕"))
    await session.store.close()


@pytest.mark.asyncio
async def test_message_from_unjoined_connection():
    session, broadcaster = _session()
    assert not await session.handle_message("stranger", _msg("reveal-cards"))
    assert broadcaster.broadcasts == []


@pytest.mark.asyncio
async def test_request_state_answers_sender_only():
    session, broadcaster = _session()
    await _room_with(session, "Alice", "Bob")
    before = len(broadcaster.broadcasts)

    assert not await session.handle_message("c1", _msg("request-state"))
    assert len(broadcaster.broadcasts) == before
    assert len(broadcaster.sent) == 1
    room_id, connection_id, message = broadcaster.sent[0]
    assert (room_id, connection_id) == ("room-1", "c1")
    assert message["data"]["players"][1]["name"] == "Bob"
    await session.store.close()


@pytest.mark.asyncio
async def test_full_round():
    session, broadcaster = _session()
    await _room_with(session, "Alice", "Bob", deck_type="scrum")

    await session.handle_message("c0", _msg("update-topic", topic="Login"))
    await session.handle_message("c0", _msg("select-card", card="1"))
    await session.handle_message("c1", _msg("select-card", card=3))
    await session.handle_message("c0", _msg("reveal-cards"))
    await session.handle_message("c0", _msg("accept-estimation", value="2"))

    snapshot = broadcaster.snapshots("room-1")[-1]
    assert snapshot["isRevealed"]
    assert snapshot["results"]["average"] == 2
    assert snapshot["results"]["suggestion"] == 2
    assert snapshot["results"]["acceptedValue"] == "2"
    assert snapshot["history"][0]["topic"] == "Login"
    assert snapshot["history"][0]["value"] == "2"

    await session.handle_message("c0", _msg("revote"))
    snapshot = broadcaster.snapshots("room-1")[-1]
    assert snapshot["topic"] == "Login"
    assert snapshot["results"] is None
    assert all(p["selectedCard"] is None for p in snapshot["players"])
    await session.store.close()


@pytest.mark.asyncio
async def test_disconnect_promotes_next_player():
    session, broadcaster = _session()
    await _room_with(session, "A", "B", "C")

    await session.disconnect("c0")
    snapshot = broadcaster.snapshots("room-1")[-1]
    assert snapshot["hostId"] == "c1"
    assert session.room_of("c0") is None
    assert session.connection_count == 2

    # Unknown or repeated disconnects are harmless
    await session.disconnect("c0")
    await session.disconnect("never-seen")
    await session.store.close()


@pytest.mark.asyncio
async def test_rejoin_after_refresh_within_grace():
    session, _ = _session()
    await _room_with(session, "Alice")
    await session.handle_message("c0", _msg("update-topic", topic="Kept"))
    await session.disconnect("c0")

    outcome = await session.connect("c0-new", "room-1", "Alice")
    assert outcome.accepted
    assert outcome.room.host_id == "c0-new"
    assert outcome.room.topic == "Kept"

    await asyncio.sleep(0.2)
    assert "room-1" in session.store
    await session.store.close()


@pytest.mark.asyncio
async def test_select_rate_limit():
    clock = FakeClock()
    session, _ = _session(clock=clock, select_rate_per_sec=3)
    await _room_with(session, "Alice")

    cards = ["1", "2", "3", "5", "8"]
    changed = [await session.handle_message("c0", _msg("select-card", card=c)) for c in cards]
    assert changed == [True, True, True, False, False]

    clock.now += 1.0
    assert await session.handle_message("c0", _msg("select-card", card="13"))
    await session.store.close()


@pytest.mark.asyncio
async def test_rate_limit_buckets_are_separate():
    clock = FakeClock()
    session, _ = _session(clock=clock, select_rate_per_sec=1, control_rate_per_sec=1)
    await _room_with(session, "Alice")

    assert await session.handle_message("c0", _msg("select-card", card="1"))
    assert await session.handle_message("c0", _msg("update-topic", topic="A"))
    assert not await session.handle_message("c0", _msg("update-topic", topic="B"))
    assert not await session.handle_message("c0", _msg("select-card", card="2"))
    await session.store.close()


def test_rate_limiter_window():
    clock = FakeClock()
    limiter = RateLimiter({"select": 2}, clock=clock)
    assert limiter.allow("c0", "select")
    assert limiter.allow("c0", "select")
    assert not limiter.allow("c0", "select")
    assert limiter.allow("c1", "select")

    clock.now += 0.999
    assert not limiter.allow("c0", "select")
    clock.now += 0.002
    assert limiter.allow("c0", "select")

    limiter.forget("c0")
    assert limiter.allow("c0", "select")


@pytest.mark.asyncio
async def test_concurrent_selections_all_applied():
    session, broadcaster = _session(max_players_per_room=30)
    names = [f"Player {i}" for i in range(20)]
    await _room_with(session, *names)
    before = len(broadcaster.broadcasts)

    results = await asyncio.gather(*[
        session.handle_message(f"c{i}", _msg("select-card", card="5")) for i in range(20)
    ])
    assert all(results)
    snapshots = broadcaster.snapshots("room-1")[before:]
    assert len(snapshots) == 20
    # Each broadcast reflects exactly one more selection than the previous one
    versions = [s["version"] for s in snapshots]
    assert versions == sorted(versions) and len(set(versions)) == 20
    counts = [sum(p["selectedCard"] == "5" for p in s["players"]) for s in snapshots]
    assert counts == list(range(1, 21))
    await session.store.close()


@pytest.mark.asyncio
async def test_disconnect_racing_reveal():
    session, broadcaster = _session()
    await _room_with(session, "A", "B")
    await session.handle_message("c1", _msg("select-card", card="8"))

    await asyncio.gather(
        session.handle_message("c0", _msg("reveal-cards")),
        session.disconnect("c1"),
    )
    room = session.store.get("room-1")
    assert room.is_revealed
    assert [p.id for p in room.players] == ["c0"]
    versions = [s["version"] for s in broadcaster.snapshots("room-1")]
    assert versions == sorted(versions)
    await session.store.close()


@pytest.mark.asyncio
async def test_rooms_are_isolated():
    session, broadcaster = _session()
    await session.connect("a0", "alpha", "Alice")
    await session.connect("b0", "beta", "Alice")

    await session.handle_message("a0", _msg("reveal-cards"))
    assert session.store.get("alpha").is_revealed
    assert not session.store.get("beta").is_revealed
    assert len(broadcaster.snapshots("beta")) == 1
    await session.store.close()
