"""Wire messages: one pydantic model per inbound intent and outbound event.

Every message is a JSON object with a ``type`` discriminator. Field names are
snake_case in Python and camelCase on the wire.
"""
import re
from typing import Annotated, List, Literal, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, TypeAdapter, field_validator
from pydantic.alias_generators import to_camel

import config


def _sanitize_text(text: str) -> str:
    """Strip HTML tags and control characters from client-supplied text."""
    text = re.sub(r'<[^>]+>', '', text)
    text = re.sub(r'[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]', '', text)
    return text.strip()


class WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


def encode(event: WireModel) -> dict:
    return event.model_dump(by_alias=True)


# ---------------------------------------------------------------------------
# Inbound intents (client -> server)
# ---------------------------------------------------------------------------

class CreateRoom(WireModel):
    type: Literal["create-room"]
    room_name: Optional[str] = None

    @field_validator("room_name")
    @classmethod
    def validate_room_name(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        v = _sanitize_text(v)
        if len(v) > config.MAX_ROOM_NAME_LENGTH:
            raise ValueError(f"Room name must be at most {config.MAX_ROOM_NAME_LENGTH} characters")
        return v or None


class JoinRoom(WireModel):
    type: Literal["join-room"]
    room_code: str

    @field_validator("room_code")
    @classmethod
    def validate_room_code(cls, v: str) -> str:
        v = _sanitize_text(v).upper()
        if not v or len(v) > config.MAX_ROOM_NAME_LENGTH:
            raise ValueError("Invalid room code")
        return v


class RequestRoomList(WireModel):
    type: Literal["request-room-list"]


class ConfigurePlayer(WireModel):
    type: Literal["configure-player"]
    name: str
    avatar: str
    topics: List[str]

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        v = _sanitize_text(v)
        if not v or len(v) > config.MAX_NAME_LENGTH:
            raise ValueError(f"Name must be 1-{config.MAX_NAME_LENGTH} characters")
        return v

    @field_validator("avatar")
    @classmethod
    def validate_avatar(cls, v: str) -> str:
        v = re.sub(r'[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]', '', v).strip()
        if not v or len(v) > config.MAX_AVATAR_LENGTH:
            raise ValueError("Invalid avatar")
        return v

    @field_validator("topics")
    @classmethod
    def validate_topics(cls, v: List[str]) -> List[str]:
        v = [_sanitize_text(t)[:config.MAX_TOPIC_LENGTH] for t in v]
        if len(v) != 2 or len(set(v)) != 2 or not all(v):
            raise ValueError("Exactly 2 distinct topics are required")
        return v


class SpinWheel(WireModel):
    type: Literal["spin-wheel"]


class AnswerQuestion(WireModel):
    type: Literal["answer-question"]
    choice_index: int = Field(validation_alias=AliasChoices("choiceIndex", "choiceIdx", "choice_index"))


class QuestionTimeout(WireModel):
    type: Literal["question-timeout"]


class GetServerStats(WireModel):
    type: Literal["get-server-stats"]


Intent = Annotated[
    Union[
        CreateRoom,
        JoinRoom,
        RequestRoomList,
        ConfigurePlayer,
        SpinWheel,
        AnswerQuestion,
        QuestionTimeout,
        GetServerStats,
    ],
    Field(discriminator="type"),
]

intent_adapter = TypeAdapter(Intent)


# ---------------------------------------------------------------------------
# Shared payloads
# ---------------------------------------------------------------------------

class PlayerView(WireModel):
    slot: int
    name: Optional[str]
    avatar: Optional[str]
    topics: List[str]
    life: int
    max_life: int
    ready: bool
    joined_at: float


class WinnerView(WireModel):
    slot: int
    name: Optional[str]
    avatar: Optional[str]


class QuestionPayload(WireModel):
    id: int
    topic: str
    text: str
    options: List[str]
    difficulty: int
    time_limit: int


class RoomSummary(WireModel):
    code: str
    name: str
    player_count: int
    status: str
    joinable: bool
    created_at: float


# ---------------------------------------------------------------------------
# Outbound events (server -> client)
# ---------------------------------------------------------------------------

class RoomListUpdated(WireModel):
    type: Literal["room-list-updated"] = "room-list-updated"
    rooms: List[RoomSummary]


class RoomCreationResult(WireModel):
    type: Literal["room-creation-result"] = "room-creation-result"
    success: bool
    room_code: Optional[str] = None
    slot: Optional[int] = None
    error: Optional[str] = None


class RoomJoinResult(WireModel):
    type: Literal["room-join-result"] = "room-join-result"
    success: bool
    room_code: Optional[str] = None
    slot: Optional[int] = None
    error: Optional[str] = None


class RoomUpdated(WireModel):
    type: Literal["room-updated"] = "room-updated"
    players: List[PlayerView]
    started: bool
    all_ready: Optional[bool] = None


class GameStarted(WireModel):
    type: Literal["game-started"] = "game-started"
    players: List[PlayerView]
    topics_in_play: List[str]
    active_player: int
    round: int


class TurnUpdated(WireModel):
    type: Literal["turn-updated"] = "turn-updated"
    active_player: int
    players: List[PlayerView]
    round: int
    message: str


class WheelSpun(WireModel):
    type: Literal["wheel-spun"] = "wheel-spun"
    topic: str
    topic_index: int
    topics_in_play: List[str]
    spinning_player: int


class QuestionShown(WireModel):
    type: Literal["question-shown"] = "question-shown"
    question: QuestionPayload
    active_player: int
    is_second_chance: bool


class SecondChance(WireModel):
    type: Literal["second-chance"] = "second-chance"
    damage: int
    players: List[PlayerView]
    new_active_player: int
    original_player: Optional[int]
    question: QuestionPayload
    message: str


class RoundResult(WireModel):
    type: Literal["round-result"] = "round-result"
    correct: bool
    damage: int
    players: List[PlayerView]
    game_over: bool
    winner: Optional[WinnerView] = None
    round: int
    is_second_chance: bool


class TimeoutFinal(WireModel):
    type: Literal["timeout-final"] = "timeout-final"
    damage: int
    players: List[PlayerView]
    game_over: bool
    winner: Optional[WinnerView] = None
    round: int


class ErrorMessage(WireModel):
    type: Literal["error-message"] = "error-message"
    text: str


class PlayerDisconnected(WireModel):
    type: Literal["player-disconnected"] = "player-disconnected"
    players: List[PlayerView]


class ServerStats(WireModel):
    type: Literal["server-stats"] = "server-stats"
    total_rooms: int
    active_games: int
    waiting_rooms: int
    total_players: int
