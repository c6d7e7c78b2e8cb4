from fastapi import WebSocket, WebSocketDisconnect
from pydantic import ValidationError
from typing import Dict, List, Optional
import json
import random
import time
import logging

import config
from errors import CapacityViolation, TurnViolation
from game_room import Timings
from messages import (
    AnswerQuestion,
    ConfigurePlayer,
    CreateRoom,
    ErrorMessage,
    GetServerStats,
    JoinRoom,
    QuestionTimeout,
    RequestRoomList,
    RoomCreationResult,
    RoomJoinResult,
    RoomListUpdated,
    SpinWheel,
    WireModel,
    encode,
    intent_adapter,
)
from question_bank import QuestionBank, question_bank
from room_registry import RoomRegistry

logger = logging.getLogger(__name__)


class SocketManager:
    """WebSocket boundary: validates intents, dispatches them, fans out events."""

    def __init__(self, bank: Optional[QuestionBank] = None, timings: Optional[Timings] = None,
                 rng: Optional[random.Random] = None):
        self.connections: Dict[str, WebSocket] = {}
        self.msg_timestamps: Dict[str, list] = {}  # client_id -> recent message times
        self.allowed_origins: List[str] = []
        self.registry = RoomRegistry(bank if bank is not None else question_bank, self,
                                     timings=timings, rng=rng)

    # --- Outbound ----------------------------------------------------------

    async def send(self, client_id: str, event: WireModel):
        ws = self.connections.get(client_id)
        if ws is None:
            return
        try:
            await ws.send_json(encode(event))
        except Exception:
            # The receive loop notices the dead socket and cleans up
            logger.debug("Send to %s failed", client_id)

    async def send_all(self, event: WireModel):
        message = encode(event)
        for client_id, ws in list(self.connections.items()):
            try:
                await ws.send_json(message)
            except Exception:
                logger.debug("Send to %s failed", client_id)

    # --- Connection lifecycle ---------------------------------------------

    async def connect(self, websocket: WebSocket, client_id: str):
        # Validate WebSocket origin
        origin = websocket.headers.get("origin", "")
        if self.allowed_origins and origin not in self.allowed_origins:
            logger.warning("Rejected WebSocket from unauthorized origin: %s", origin)
            await websocket.close(code=1008)
            return

        await websocket.accept()
        if client_id in self.connections:
            await websocket.send_json(encode(ErrorMessage(text="Connection id already in use")))
            await websocket.close(code=1008)
            return

        self.connections[client_id] = websocket
        logger.info("Client %s connected", client_id)
        await self.send(client_id, RoomListUpdated(rooms=self.registry.list_public_rooms()))

        try:
            while True:
                data = await websocket.receive_text()

                # Enforce message size limit
                if len(data) > config.MAX_WS_MESSAGE_SIZE:
                    await self.send(client_id, ErrorMessage(text="Message too large"))
                    continue

                # Per-client rate limiting
                now = time.time()
                timestamps = self.msg_timestamps.setdefault(client_id, [])
                timestamps[:] = [t for t in timestamps if now - t < 1.0]
                if len(timestamps) >= config.WS_RATE_LIMIT_PER_SEC:
                    await self.send(client_id, ErrorMessage(text="Too many messages"))
                    continue
                timestamps.append(now)

                try:
                    message = json.loads(data)
                except json.JSONDecodeError:
                    logger.warning("Malformed JSON from client %s: %s", client_id, data[:100])
                    continue

                await self.handle_message(client_id, message)
        except WebSocketDisconnect:
            logger.info("Client %s disconnected", client_id)
        except Exception:
            logger.exception("WebSocket error for client %s", client_id)
        finally:
            await self.disconnect(client_id)

    async def disconnect(self, client_id: str):
        self.connections.pop(client_id, None)
        self.msg_timestamps.pop(client_id, None)
        await self.registry.route_disconnect(client_id)

    # --- Inbound -----------------------------------------------------------

    async def handle_message(self, client_id: str, message):
        try:
            intent = intent_adapter.validate_python(message)
        except ValidationError as e:
            msg_type = message.get("type") if isinstance(message, dict) else None
            logger.warning("Dropped invalid '%s' message from %s (%d errors)", msg_type, client_id, e.error_count())
            return

        if isinstance(intent, CreateRoom):
            try:
                room = await self.registry.create_room(client_id, intent.room_name)
            except CapacityViolation as e:
                await self.send(client_id, RoomCreationResult(success=False, error=e.text))
                return
            await self.send(client_id, RoomCreationResult(success=True, room_code=room.code, slot=0))

        elif isinstance(intent, JoinRoom):
            try:
                slot = await self.registry.join_room(client_id, intent.room_code)
            except CapacityViolation as e:
                await self.send(client_id, RoomJoinResult(success=False, error=e.text))
                return
            await self.send(client_id, RoomJoinResult(success=True, room_code=intent.room_code, slot=slot))

        elif isinstance(intent, RequestRoomList):
            await self.send(client_id, RoomListUpdated(rooms=self.registry.list_public_rooms()))

        elif isinstance(intent, GetServerStats):
            await self.send(client_id, self.registry.get_stats())

        else:
            room = self.registry.room_for(client_id)
            if room is None:
                logger.info("Ignoring '%s' from %s: not in a room", intent.type, client_id)
                return
            try:
                if isinstance(intent, ConfigurePlayer):
                    await room.configure(client_id, intent.name, intent.avatar, intent.topics)
                elif isinstance(intent, SpinWheel):
                    await room.spin_wheel(client_id)
                elif isinstance(intent, AnswerQuestion):
                    await room.answer(client_id, intent.choice_index)
                elif isinstance(intent, QuestionTimeout):
                    await room.handle_timeout(client_id)
            except TurnViolation as e:
                logger.info("Rejected '%s' from %s in room %s: %s", intent.type, client_id, room.code, e.text)
                await self.send(client_id, ErrorMessage(text=e.text))


socket_manager = SocketManager(rng=random.Random(config.RANDOM_SEED) if config.RANDOM_SEED else None)
