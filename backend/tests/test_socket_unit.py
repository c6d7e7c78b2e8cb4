"""
Unit tests for socket_manager.py and room_registry.py.
Uses mock WebSockets to test intent validation, room creation and joining,
error routing, the lobby list, stats, and disconnect/cleanup handling.
"""
import sys
import os
import asyncio
import random

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from game_room import GAME_OVER, Timings
from question_bank import Question, QuestionBank
from socket_manager import SocketManager
import config


SLOW = Timings(start_delay=3600, turn_prompt_delay=3600, spin_delay=3600,
               result_delay=3600, answer_grace=None)


# ---------------------------------------------------------------------------
# Mock WebSocket
# ---------------------------------------------------------------------------

class MockWebSocket:
    """Lightweight mock for fastapi.WebSocket."""
    def __init__(self):
        self.sent_messages: list[dict] = []
        self.closed = False
        self.close_code = None

    async def send_json(self, data: dict):
        self.sent_messages.append(data)

    async def close(self, code: int = 1000):
        self.closed = True
        self.close_code = code

    def last(self, msg_type: str) -> dict | None:
        """Return the last sent message of a given type."""
        for msg in reversed(self.sent_messages):
            if msg.get("type") == msg_type:
                return msg
        return None

    def all(self, msg_type: str) -> list[dict]:
        """Return all sent messages of a given type."""
        return [m for m in self.sent_messages if m.get("type") == msg_type]


class BrokenWebSocket(MockWebSocket):
    async def send_json(self, data: dict):
        raise RuntimeError("socket closed")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def make_bank(topics=("History", "Science", "Art", "Music"), per_topic=5):
    questions = [
        Question(id=i + 1, topic=t, text=f"{t} question {i + 1}?",
                 options=["A", "B", "C", "D"], answer_index=0, difficulty=1)
        for t in topics
        for i in range(per_topic)
    ]
    return QuestionBank(questions, random.Random(0))


def make_manager():
    return SocketManager(bank=make_bank(), timings=SLOW, rng=random.Random(3))


def connect(sm, client_id):
    """Register a mock connection the way SocketManager.connect does."""
    ws = MockWebSocket()
    sm.connections[client_id] = ws
    return ws


def configure_msg(name, topics):
    return {"type": "configure-player", "name": name, "avatar": "fox", "topics": list(topics)}


async def setup_lobby(sm, code="duel"):
    """Two connected players in one waiting room. Returns (room, ws1, ws2)."""
    ws1 = connect(sm, "p1")
    ws2 = connect(sm, "p2")
    await sm.handle_message("p1", {"type": "create-room", "roomName": code})
    await sm.handle_message("p2", {"type": "join-room", "roomCode": code})
    return sm.registry.rooms[code.upper()], ws1, ws2


async def setup_match(sm, code="duel"):
    """Two configured players with the match already started."""
    room, ws1, ws2 = await setup_lobby(sm, code)
    await sm.handle_message("p1", configure_msg("Alice", ["History", "Science"]))
    await sm.handle_message("p2", configure_msg("Bob", ["Art", "Music"]))
    await room.start_game()
    return room, ws1, ws2


# ===========================================================================
# Room creation
# ===========================================================================

class TestCreateRoom:
    @pytest.mark.asyncio
    async def test_create_with_generated_code(self):
        sm = make_manager()
        ws = connect(sm, "p1")
        await sm.handle_message("p1", {"type": "create-room"})
        msg = ws.last("room-creation-result")
        assert msg["success"] is True
        assert msg["slot"] == 0
        code = msg["roomCode"]
        assert len(code) == config.ROOM_CODE_LENGTH
        assert code.isupper() or code.isdigit()
        assert sm.registry.player_rooms["p1"] == code
        assert sm.registry.rooms[code].players["p1"].slot == 0

    @pytest.mark.asyncio
    async def test_room_name_becomes_upper_case_code(self):
        sm = make_manager()
        ws = connect(sm, "p1")
        await sm.handle_message("p1", {"type": "create-room", "roomName": "<b>duel</b>"})
        assert ws.last("room-creation-result")["roomCode"] == "DUEL"
        assert "DUEL" in sm.registry.rooms

    @pytest.mark.asyncio
    async def test_empty_room_name_generates_code(self):
        sm = make_manager()
        ws = connect(sm, "p1")
        await sm.handle_message("p1", {"type": "create-room", "roomName": "   "})
        assert len(ws.last("room-creation-result")["roomCode"]) == config.ROOM_CODE_LENGTH

    @pytest.mark.asyncio
    async def test_duplicate_code_rejected(self):
        sm = make_manager()
        connect(sm, "p1")
        ws2 = connect(sm, "p2")
        await sm.handle_message("p1", {"type": "create-room", "roomName": "duel"})
        await sm.handle_message("p2", {"type": "create-room", "roomName": "DUEL"})
        msg = ws2.last("room-creation-result")
        assert msg["success"] is False
        assert msg["error"] == "Room code already exists"
        assert "p2" not in sm.registry.player_rooms

    @pytest.mark.asyncio
    async def test_already_in_room_rejected(self):
        sm = make_manager()
        ws = connect(sm, "p1")
        await sm.handle_message("p1", {"type": "create-room", "roomName": "one"})
        await sm.handle_message("p1", {"type": "create-room", "roomName": "two"})
        msg = ws.last("room-creation-result")
        assert msg["success"] is False
        assert msg["error"] == "You are already in a room"
        assert list(sm.registry.rooms) == ["ONE"]

    @pytest.mark.asyncio
    async def test_room_limit(self, monkeypatch):
        monkeypatch.setattr(config, "MAX_ROOMS", 1)
        sm = make_manager()
        connect(sm, "p1")
        ws2 = connect(sm, "p2")
        await sm.handle_message("p1", {"type": "create-room"})
        await sm.handle_message("p2", {"type": "create-room"})
        msg = ws2.last("room-creation-result")
        assert msg["success"] is False
        assert "Too many active rooms" in msg["error"]

    @pytest.mark.asyncio
    async def test_create_broadcasts_room_list_to_everyone(self):
        sm = make_manager()
        connect(sm, "p1")
        lurker = connect(sm, "lurker")
        await sm.handle_message("p1", {"type": "create-room", "roomName": "duel"})
        rooms = lurker.last("room-list-updated")["rooms"]
        assert [r["code"] for r in rooms] == ["DUEL"]
        assert rooms[0]["playerCount"] == 1
        assert rooms[0]["joinable"] is True

    @pytest.mark.asyncio
    async def test_new_room_after_finished_match(self):
        sm = make_manager()
        room, ws1, _ = await setup_match(sm)
        room.state = GAME_OVER
        await sm.handle_message("p1", {"type": "create-room", "roomName": "rematch"})
        assert ws1.last("room-creation-result")["success"] is True
        assert sm.registry.player_rooms["p1"] == "REMATCH"
        assert "p1" not in room.players

    @pytest.mark.asyncio
    async def test_new_room_after_opponent_left(self):
        sm = make_manager()
        room, ws1, _ = await setup_match(sm)
        await sm.disconnect("p2")
        await sm.handle_message("p1", {"type": "create-room", "roomName": "next"})
        assert ws1.last("room-creation-result")["success"] is True
        assert sm.registry.player_rooms == {"p1": "NEXT"}
        assert "DUEL" not in sm.registry.rooms
        assert room.closed is True

    @pytest.mark.asyncio
    async def test_join_after_opponent_left(self):
        sm = make_manager()
        await setup_match(sm)
        await sm.disconnect("p2")
        connect(sm, "p3")
        await sm.handle_message("p3", {"type": "create-room", "roomName": "next"})
        await sm.handle_message("p1", {"type": "join-room", "roomCode": "next"})
        assert sm.connections["p1"].last("room-join-result")["slot"] == 1
        assert sm.registry.player_rooms == {"p1": "NEXT", "p3": "NEXT"}


class TestGenerateRoomCode:
    def test_code_alphabet(self):
        sm = make_manager()
        code = sm.registry.generate_room_code()
        assert len(code) == config.ROOM_CODE_LENGTH
        assert all(c.isupper() or c.isdigit() for c in code)

    def test_gives_up_after_collisions(self):
        class StuckRandom(random.Random):
            def choices(self, population, weights=None, *, cum_weights=None, k=1):
                return ["A"] * k

        sm = SocketManager(bank=make_bank(), timings=SLOW, rng=StuckRandom())
        sm.registry.rooms["A" * config.ROOM_CODE_LENGTH] = object()
        with pytest.raises(RuntimeError):
            sm.registry.generate_room_code()


# ===========================================================================
# Joining
# ===========================================================================

class TestJoinRoom:
    @pytest.mark.asyncio
    async def test_join_as_second_player(self):
        sm = make_manager()
        room, ws1, ws2 = await setup_lobby(sm)
        msg = ws2.last("room-join-result")
        assert msg["success"] is True
        assert msg["roomCode"] == "DUEL"
        assert msg["slot"] == 1
        assert len(ws1.last("room-updated")["players"]) == 2
        assert sm.registry.room_for("p2") is room

    @pytest.mark.asyncio
    async def test_unknown_room(self):
        sm = make_manager()
        ws = connect(sm, "p1")
        await sm.handle_message("p1", {"type": "join-room", "roomCode": "NOPE"})
        msg = ws.last("room-join-result")
        assert msg["success"] is False
        assert msg["error"] == "Room not found"

    @pytest.mark.asyncio
    async def test_full_room(self):
        sm = make_manager()
        await setup_lobby(sm)
        ws3 = connect(sm, "p3")
        await sm.handle_message("p3", {"type": "join-room", "roomCode": "DUEL"})
        msg = ws3.last("room-join-result")
        assert msg["success"] is False
        assert msg["error"] == "Room is full"
        assert "p3" not in sm.registry.player_rooms

    @pytest.mark.asyncio
    async def test_started_room(self):
        sm = make_manager()
        room, _, _ = await setup_match(sm)
        await sm.disconnect("p2")
        ws3 = connect(sm, "p3")
        await sm.handle_message("p3", {"type": "join-room", "roomCode": "DUEL"})
        msg = ws3.last("room-join-result")
        assert msg["success"] is False
        assert msg["error"] == "The match has already started"

    @pytest.mark.asyncio
    async def test_join_loses_race_with_teardown(self):
        sm = make_manager()
        connect(sm, "p1")
        ws2 = connect(sm, "p2")
        await sm.handle_message("p1", {"type": "create-room", "roomName": "duel"})
        room = sm.registry.rooms["DUEL"]

        # Queue the creator's teardown ahead of the join on the room lock
        await room.lock.acquire()
        leave = asyncio.create_task(sm.disconnect("p1"))
        join = asyncio.create_task(sm.handle_message("p2", {"type": "join-room", "roomCode": "duel"}))
        await asyncio.sleep(0.01)
        room.lock.release()
        await asyncio.gather(leave, join)

        msg = ws2.last("room-join-result")
        assert msg["success"] is False
        assert msg["error"] == "Room not found"
        assert sm.registry.rooms == {}
        assert sm.registry.player_rooms == {}
        assert room.players == {}

    @pytest.mark.asyncio
    async def test_full_room_listed_as_full(self):
        sm = make_manager()
        await setup_lobby(sm)
        (summary,) = sm.registry.list_public_rooms()
        assert summary.status == "full"
        assert summary.joinable is False
        assert summary.player_count == 2


# ===========================================================================
# Inbound validation and routing
# ===========================================================================

class TestInboundValidation:
    @pytest.mark.asyncio
    async def test_unknown_type_dropped(self):
        sm = make_manager()
        ws = connect(sm, "p1")
        await sm.handle_message("p1", {"type": "launch-missiles"})
        assert ws.sent_messages == []

    @pytest.mark.asyncio
    async def test_non_object_dropped(self):
        sm = make_manager()
        ws = connect(sm, "p1")
        await sm.handle_message("p1", ["create-room"])
        assert ws.sent_messages == []

    @pytest.mark.asyncio
    async def test_configure_needs_two_distinct_topics(self):
        sm = make_manager()
        room, ws1, _ = await setup_lobby(sm)
        ws1.sent_messages.clear()
        await sm.handle_message("p1", configure_msg("Alice", ["History"]))
        await sm.handle_message("p1", configure_msg("Alice", ["History", "History"]))
        await sm.handle_message("p1", configure_msg("Alice", ["History", "Art", "Music"]))
        assert room.players["p1"].ready is False
        assert ws1.sent_messages == []

    @pytest.mark.asyncio
    async def test_configure_rejects_blank_name(self):
        sm = make_manager()
        room, _, _ = await setup_lobby(sm)
        await sm.handle_message("p1", configure_msg("<i></i>", ["History", "Art"]))
        assert room.players["p1"].ready is False

    @pytest.mark.asyncio
    async def test_configure_sanitizes_text(self):
        sm = make_manager()
        room, _, _ = await setup_lobby(sm)
        await sm.handle_message("p1", configure_msg("<b>Alice</b>", ["<i>History</i>", "Art"]))
        player = room.players["p1"]
        assert player.name == "Alice"
        assert player.topics == ["History", "Art"]

    @pytest.mark.asyncio
    async def test_answer_without_index_dropped(self):
        sm = make_manager()
        room, ws1, _ = await setup_match(sm)
        await room.spin_wheel("p1")
        await room.reveal_question()
        await sm.handle_message("p1", {"type": "answer-question"})
        assert ws1.last("round-result") is None

    @pytest.mark.asyncio
    async def test_room_intent_outside_room_ignored(self):
        sm = make_manager()
        ws = connect(sm, "loner")
        await sm.handle_message("loner", {"type": "spin-wheel"})
        await sm.handle_message("loner", configure_msg("Eve", ["History", "Art"]))
        assert ws.sent_messages == []


class TestTurnRouting:
    @pytest.mark.asyncio
    async def test_violation_reported_only_to_offender(self):
        sm = make_manager()
        room, ws1, ws2 = await setup_match(sm)
        ws1.sent_messages.clear()
        await sm.handle_message("p2", {"type": "spin-wheel"})
        assert ws2.last("error-message")["text"] == "It's not your turn"
        assert ws1.sent_messages == []

    @pytest.mark.asyncio
    async def test_spin_twice_reports_error(self):
        sm = make_manager()
        room, ws1, ws2 = await setup_match(sm)
        await sm.handle_message("p1", {"type": "spin-wheel"})
        await sm.handle_message("p1", {"type": "spin-wheel"})
        assert ws1.last("error-message") is not None
        assert len(ws2.all("wheel-spun")) == 1

    @pytest.mark.asyncio
    async def test_legacy_choice_idx_accepted(self):
        sm = make_manager()
        room, ws1, ws2 = await setup_match(sm)
        await sm.handle_message("p1", {"type": "spin-wheel"})
        await room.reveal_question()
        await sm.handle_message("p1", {"type": "answer-question", "choiceIdx": 0})
        msg = ws2.last("round-result")
        assert msg["correct"] is True
        assert msg["players"][1]["life"] == 85

    @pytest.mark.asyncio
    async def test_timeout_intent_grants_second_chance(self):
        sm = make_manager()
        room, ws1, ws2 = await setup_match(sm)
        await sm.handle_message("p1", {"type": "spin-wheel"})
        await room.reveal_question()
        await sm.handle_message("p1", {"type": "question-timeout"})
        assert ws2.last("second-chance")["newActivePlayer"] == 1

    @pytest.mark.asyncio
    async def test_events_reach_only_room_members(self):
        sm = make_manager()
        await setup_match(sm)
        outsider = connect(sm, "outsider")
        await sm.handle_message("p1", {"type": "spin-wheel"})
        assert outsider.last("wheel-spun") is None

    @pytest.mark.asyncio
    async def test_failed_send_does_not_break_broadcast(self):
        sm = make_manager()
        room, ws1, _ = await setup_match(sm)
        sm.connections["p2"] = BrokenWebSocket()
        await sm.handle_message("p1", {"type": "spin-wheel"})
        assert ws1.last("wheel-spun") is not None


# ===========================================================================
# Lobby list and stats
# ===========================================================================

class TestRoomList:
    @pytest.mark.asyncio
    async def test_request_room_list(self):
        sm = make_manager()
        ws = connect(sm, "p1")
        await sm.handle_message("p1", {"type": "request-room-list"})
        assert ws.last("room-list-updated")["rooms"] == []

    @pytest.mark.asyncio
    async def test_newest_first(self):
        sm = make_manager()
        for cid, code in (("a", "old"), ("b", "mid"), ("c", "new")):
            connect(sm, cid)
            await sm.handle_message(cid, {"type": "create-room", "roomName": code})
        sm.registry.rooms["OLD"].created_at = 100.0
        sm.registry.rooms["MID"].created_at = 200.0
        sm.registry.rooms["NEW"].created_at = 300.0
        assert [r.code for r in sm.registry.list_public_rooms()] == ["NEW", "MID", "OLD"]

    @pytest.mark.asyncio
    async def test_started_rooms_hidden(self):
        sm = make_manager()
        await setup_match(sm)
        connect(sm, "c")
        await sm.handle_message("c", {"type": "create-room", "roomName": "open"})
        assert [r.code for r in sm.registry.list_public_rooms()] == ["OPEN"]

    @pytest.mark.asyncio
    async def test_game_start_refreshes_room_list(self):
        sm = make_manager()
        lurker = connect(sm, "lurker")
        await setup_match(sm)
        assert lurker.last("room-list-updated")["rooms"] == []


class TestServerStats:
    @pytest.mark.asyncio
    async def test_stats_counts(self):
        sm = make_manager()
        await setup_match(sm)
        ws = connect(sm, "c")
        await sm.handle_message("c", {"type": "create-room", "roomName": "open"})
        await sm.handle_message("c", {"type": "get-server-stats"})
        msg = ws.last("server-stats")
        assert msg == {
            "type": "server-stats",
            "totalRooms": 2,
            "activeGames": 1,
            "waitingRooms": 1,
            "totalPlayers": 3,
        }


# ===========================================================================
# Disconnects and cleanup
# ===========================================================================

class TestDisconnect:
    @pytest.mark.asyncio
    async def test_last_player_leaving_removes_room(self):
        sm = make_manager()
        connect(sm, "p1")
        await sm.handle_message("p1", {"type": "create-room", "roomName": "duel"})
        await sm.disconnect("p1")
        assert sm.registry.rooms == {}
        assert sm.registry.player_rooms == {}
        assert "p1" not in sm.connections

    @pytest.mark.asyncio
    async def test_waiting_room_torn_down_when_opponent_leaves(self):
        sm = make_manager()
        room, ws1, _ = await setup_lobby(sm)
        await sm.handle_message("p1", configure_msg("Alice", ["History", "Science"]))
        await sm.handle_message("p2", configure_msg("Bob", ["Art", "Music"]))
        assert "start" in room.pending_timers()
        await sm.disconnect("p2")
        assert "DUEL" not in sm.registry.rooms
        assert sm.registry.player_rooms == {}
        assert room.closed is True
        assert room.pending_timers() == []
        assert ws1.last("player-disconnected") is not None

    @pytest.mark.asyncio
    async def test_started_room_kept_for_remaining_player(self):
        sm = make_manager()
        room, ws1, _ = await setup_match(sm)
        await sm.disconnect("p2")
        assert sm.registry.rooms["DUEL"] is room
        assert sm.registry.player_rooms == {"p1": "DUEL"}
        await sm.handle_message("p1", {"type": "spin-wheel"})
        assert ws1.last("error-message")["text"] == "Your opponent left the match"

    @pytest.mark.asyncio
    async def test_unknown_client_disconnect(self):
        sm = make_manager()
        await sm.disconnect("ghost")
        assert sm.registry.rooms == {}

    @pytest.mark.asyncio
    async def test_expired_rooms_removed(self, monkeypatch):
        sm = make_manager()
        room, _, _ = await setup_match(sm)
        monkeypatch.setattr(config, "ROOM_TTL_SECONDS", -1)
        expired = await sm.registry.remove_expired_rooms()
        assert expired == ["DUEL"]
        assert sm.registry.rooms == {}
        assert sm.registry.player_rooms == {}
        assert room.closed is True

    @pytest.mark.asyncio
    async def test_fresh_rooms_survive_cleanup(self):
        sm = make_manager()
        await setup_lobby(sm)
        assert await sm.registry.remove_expired_rooms() == []
        assert "DUEL" in sm.registry.rooms

    @pytest.mark.asyncio
    async def test_shutdown_closes_all_rooms(self):
        sm = make_manager()
        room, _, _ = await setup_match(sm)
        sm.registry.start_cleanup_loop()
        sm.registry.shutdown()
        assert sm.registry.rooms == {}
        assert room.closed is True
        assert sm.registry._cleanup_task is None
