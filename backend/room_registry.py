import asyncio
import logging
import random
import string
from typing import Dict, List, Optional

import config
from errors import (
    AlreadyInRoomError,
    DuplicateCodeError,
    RoomNotFoundError,
    TooManyRoomsError,
)
from game_room import GAME_OVER, Room, Timings
from messages import RoomListUpdated, RoomSummary, ServerStats
from question_bank import QuestionBank

logger = logging.getLogger(__name__)


class RoomRegistry:
    """Directory of live rooms and the connection -> room reverse index."""

    def __init__(self, bank: QuestionBank, notifier, timings: Optional[Timings] = None,
                 rng: Optional[random.Random] = None):
        self.bank = bank
        self.notifier = notifier  # send(client_id, event) / send_all(event) coroutines
        self.timings = timings or Timings()
        self.rng = rng or random.Random()
        self.rooms: Dict[str, Room] = {}
        self.player_rooms: Dict[str, str] = {}  # client_id -> room code
        self._cleanup_task: Optional[asyncio.Task] = None

    def generate_room_code(self) -> str:
        """Generate a unique 6-character room code, checking for collisions."""
        for _ in range(config.MAX_ROOM_CODE_ATTEMPTS):
            code = ''.join(self.rng.choices(string.ascii_uppercase + string.digits, k=config.ROOM_CODE_LENGTH))
            if code not in self.rooms:
                return code
        raise RuntimeError("Failed to generate unique room code")

    def room_for(self, client_id: str) -> Optional[Room]:
        code = self.player_rooms.get(client_id)
        return self.rooms.get(code) if code else None

    async def _leave_current_room(self, client_id: str):
        """Drop a finished or abandoned match before creating/joining another one."""
        room = self.room_for(client_id)
        if room is None:
            self.player_rooms.pop(client_id, None)
            return
        if room.state != GAME_OVER and not room.abandoned:
            raise AlreadyInRoomError()
        await self.route_disconnect(client_id)

    async def create_room(self, client_id: str, room_name: Optional[str] = None) -> Room:
        await self._leave_current_room(client_id)
        if len(self.rooms) >= config.MAX_ROOMS:
            raise TooManyRoomsError()

        code = room_name.upper() if room_name else self.generate_room_code()
        if code in self.rooms:
            raise DuplicateCodeError()

        room = Room(code, self.bank, self.notifier, name=room_name,
                    timings=self.timings,
                    rng=random.Random(self.rng.random()),
                    on_change=self._on_room_change)
        self.rooms[code] = room
        await room.join(client_id, slot=0)
        self.player_rooms[client_id] = code
        logger.info("Room %s created by %s", code, client_id)
        await self.broadcast_room_list()
        return room

    async def join_room(self, client_id: str, room_code: str) -> int:
        await self._leave_current_room(client_id)
        code = room_code.upper()
        room = self.rooms.get(code)
        if room is None:
            raise RoomNotFoundError()
        slot = await room.join(client_id)
        self.player_rooms[client_id] = code
        logger.info("%s joined room %s", client_id, code)
        await self.broadcast_room_list()
        return slot

    def list_public_rooms(self) -> List[RoomSummary]:
        summaries = [
            RoomSummary(
                code=room.code,
                name=room.name,
                player_count=len(room.players),
                status="full" if room.is_full else "waiting",
                joinable=not room.is_full,
                created_at=room.created_at,
            )
            for room in self.rooms.values()
            if not room.started
        ]
        return sorted(summaries, key=lambda r: r.created_at, reverse=True)

    async def broadcast_room_list(self):
        await self.notifier.send_all(RoomListUpdated(rooms=self.list_public_rooms()))

    async def _on_room_change(self, room: Room):
        await self.broadcast_room_list()

    async def route_disconnect(self, client_id: str):
        code = self.player_rooms.pop(client_id, None)
        if code is None:
            return
        room = self.rooms.get(code)
        if room is None:
            return
        await room.disconnect(client_id)
        if room.should_close:
            self.remove_room(code)
            await self.broadcast_room_list()

    def remove_room(self, code: str):
        room = self.rooms.pop(code, None)
        if room is None:
            return
        for client_id in list(room.players):
            if self.player_rooms.get(client_id) == code:
                del self.player_rooms[client_id]
        room.close()
        logger.info("Room %s removed", code)

    def get_stats(self) -> ServerStats:
        rooms = list(self.rooms.values())
        return ServerStats(
            total_rooms=len(rooms),
            active_games=sum(1 for r in rooms if r.started),
            waiting_rooms=sum(1 for r in rooms if not r.started),
            total_players=sum(len(r.players) for r in rooms),
        )

    def start_cleanup_loop(self):
        """Start the background room cleanup task."""
        if self._cleanup_task is None:
            self._cleanup_task = asyncio.create_task(self._cleanup_expired_rooms())

    async def _cleanup_expired_rooms(self):
        """Periodically remove expired rooms."""
        while True:
            try:
                await asyncio.sleep(config.ROOM_CLEANUP_INTERVAL)
                await self.remove_expired_rooms()
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Error in room cleanup loop")

    async def remove_expired_rooms(self) -> List[str]:
        expired = [code for code, room in self.rooms.items() if room.is_expired()]
        for code in expired:
            self.remove_room(code)
            logger.info("Cleaned up expired room %s", code)
        if expired:
            await self.broadcast_room_list()
        return expired

    def shutdown(self):
        if self._cleanup_task:
            self._cleanup_task.cancel()
            self._cleanup_task = None
        for code in list(self.rooms):
            self.remove_room(code)
