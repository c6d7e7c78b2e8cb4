import asyncio
import logging
import math
import random
import time
from typing import Awaitable, Callable, Dict, List, Optional

import config
from errors import (
    AlreadyInProgressError,
    AlreadyStartedError,
    GameNotActiveError,
    NotYourTurnError,
    OpponentMissingError,
    RoomFullError,
    RoomNotFoundError,
)
from messages import (
    GameStarted,
    PlayerDisconnected,
    PlayerView,
    QuestionShown,
    RoomUpdated,
    RoundResult,
    SecondChance,
    TimeoutFinal,
    TurnUpdated,
    WheelSpun,
    WinnerView,
    WireModel,
)
from question_bank import Question, QuestionBank

logger = logging.getLogger(__name__)

# Match states
WAITING = "WAITING"
IN_PROGRESS = "IN_PROGRESS"
GAME_OVER = "GAME_OVER"

# Turn phases within IN_PROGRESS
IDLE = "IDLE"  # waiting for the active player to spin
SPINNING = "SPINNING"  # wheel animation, no input accepted
QUESTION = "QUESTION"  # active player may answer or time out
RESOLVED = "RESOLVED"  # result shown, waiting for the next turn


def compute_damage(base: int, second_chance: bool) -> int:
    """Scale base damage and round half up (2.5 -> 3)."""
    factor = config.SECOND_CHANCE_FACTOR if second_chance else 1
    return int(math.floor(base * factor + 0.5))


class Timings:
    """Phase delays for a room, in seconds.

    ``answer_grace`` is added to a question's time limit to get the server
    deadline; None disables the server-side deadline.
    """

    def __init__(self, start_delay: float = config.START_DELAY,
                 turn_prompt_delay: float = config.TURN_PROMPT_DELAY,
                 spin_delay: float = config.SPIN_ANIMATION_DELAY,
                 result_delay: float = config.RESULT_DELAY,
                 answer_grace: Optional[float] = (
                     config.SERVER_TIMEOUT_GRACE if config.SERVER_TIMER_ENABLED else None)):
        self.start_delay = start_delay
        self.turn_prompt_delay = turn_prompt_delay
        self.spin_delay = spin_delay
        self.result_delay = result_delay
        self.answer_grace = answer_grace


class Player:
    def __init__(self, client_id: str, slot: int):
        self.client_id = client_id
        self.slot = slot
        self.name: Optional[str] = None
        self.avatar: Optional[str] = None
        self.topics: List[str] = []
        self.max_life = config.MAX_LIFE
        self.life = self.max_life
        self.ready = False
        self.joined_at = time.time()

    def take_damage(self, amount: int):
        self.life = max(0, self.life - amount)

    def view(self) -> PlayerView:
        return PlayerView(
            slot=self.slot,
            name=self.name,
            avatar=self.avatar,
            topics=list(self.topics),
            life=self.life,
            max_life=self.max_life,
            ready=self.ready,
            joined_at=self.joined_at,
        )


class Room:
    """One two-player match.

    Public operations take ``self.lock`` so a room's state is only ever
    mutated by one handler at a time. Delayed transitions run as named
    asyncio tasks (see ``_schedule``); scheduling a name again or closing the
    room cancels the pending task, and a task that wakes up after being
    superseded does nothing.
    """

    def __init__(self, code: str, bank: QuestionBank, notifier, name: Optional[str] = None,
                 timings: Optional[Timings] = None, rng: Optional[random.Random] = None,
                 on_change: Optional[Callable[["Room"], Awaitable[None]]] = None):
        self.code = code
        self.name = name or code
        self.bank = bank
        self.notifier = notifier  # send(client_id, event) coroutine
        self.timings = timings or Timings()
        self.rng = rng or random.Random()
        self.on_change = on_change
        self.created_at = time.time()
        self.last_activity = self.created_at
        self.lock = asyncio.Lock()
        self.closed = False

        self.players: Dict[str, Player] = {}  # client_id -> Player, insertion order = slot order
        self.state = WAITING
        self.phase = IDLE
        self.topics_in_play: List[str] = []
        self.current_topic: Optional[str] = None
        self.current_question: Optional[Question] = None
        self.active_player = 0
        self.round = 1
        self.is_second_chance = False
        self.turn_origin: Optional[int] = None
        self.winner: Optional[Player] = None
        self._timers: Dict[str, asyncio.Task] = {}

    # --- State helpers -----------------------------------------------------

    @property
    def started(self) -> bool:
        return self.state != WAITING

    @property
    def spinning(self) -> bool:
        return self.phase == SPINNING

    @property
    def question_active(self) -> bool:
        return self.phase == QUESTION

    @property
    def is_full(self) -> bool:
        return len(self.players) >= config.MAX_PLAYERS_PER_ROOM

    @property
    def abandoned(self) -> bool:
        return self.started and len(self.players) < config.MAX_PLAYERS_PER_ROOM

    @property
    def should_close(self) -> bool:
        return not self.players or (not self.started and len(self.players) < config.MAX_PLAYERS_PER_ROOM)

    def touch(self):
        self.last_activity = time.time()

    def is_expired(self) -> bool:
        return time.time() - self.last_activity > config.ROOM_TTL_SECONDS

    def player_list(self) -> List[Player]:
        return list(self.players.values())

    def public_players(self) -> List[PlayerView]:
        return [p.view() for p in self.players.values()]

    def _index_of(self, client_id: str) -> int:
        return list(self.players).index(client_id)

    def _current_player(self) -> Player:
        return self.player_list()[self.active_player]

    def _winner_view(self) -> Optional[WinnerView]:
        if self.winner is None:
            return None
        return WinnerView(slot=self.winner.slot, name=self.winner.name, avatar=self.winner.avatar)

    async def broadcast(self, event: WireModel):
        for client_id in list(self.players):
            await self.notifier.send(client_id, event)

    # --- Timers ------------------------------------------------------------

    def _schedule(self, name: str, delay: float, callback: Callable[[], Awaitable[None]]):
        self._cancel_timer(name)
        self._timers[name] = asyncio.create_task(self._run_timer(name, delay, callback))

    async def _run_timer(self, name: str, delay: float, callback: Callable[[], Awaitable[None]]):
        try:
            await asyncio.sleep(delay)
            async with self.lock:
                if self.closed or self._timers.get(name) is not asyncio.current_task():
                    return
                del self._timers[name]
                await callback()
        except asyncio.CancelledError:
            pass
        except Exception:
            logger.exception("Timer '%s' failed in room %s", name, self.code)

    def _cancel_timer(self, name: str):
        task = self._timers.pop(name, None)
        if task and task is not asyncio.current_task():
            task.cancel()

    def _cancel_timers(self):
        for name in list(self._timers):
            self._cancel_timer(name)

    def pending_timers(self) -> List[str]:
        return list(self._timers)

    def close(self):
        """Tear down: cancel pending timers and release question marks."""
        self.closed = True
        self._cancel_timers()
        self.bank.release(self.code)

    # --- Lobby -------------------------------------------------------------

    async def join(self, client_id: str, slot: Optional[int] = None) -> int:
        async with self.lock:
            if self.closed:
                raise RoomNotFoundError()
            if self.is_full:
                raise RoomFullError()
            if self.started:
                raise AlreadyStartedError()
            slot = len(self.players) if slot is None else slot
            self.players[client_id] = Player(client_id, slot)
            self.touch()
            logger.info("Player %s joined room %s as player %d", client_id, self.code, slot + 1)
            await self.broadcast(RoomUpdated(players=self.public_players(), started=self.started))
            return slot

    async def configure(self, client_id: str, name: str, avatar: str, topics: List[str]):
        async with self.lock:
            player = self.players.get(client_id)
            if player is None:
                return
            if self.started:
                logger.info("Ignoring profile change from %s: room %s already started", client_id, self.code)
                return
            player.name = name
            player.avatar = avatar
            player.topics = list(topics)
            player.ready = True
            self.touch()
            logger.info("Player '%s' configured in room %s (topics: %s)", name, self.code, ", ".join(topics))

            all_ready = self.is_full and all(p.ready for p in self.players.values())
            await self.broadcast(RoomUpdated(
                players=self.public_players(),
                started=self.started,
                all_ready=all_ready,
            ))
            if all_ready:
                self._schedule("start", self.timings.start_delay, self._start_game)

    async def start_game(self):
        async with self.lock:
            self._cancel_timer("start")
            await self._start_game()

    async def _start_game(self):
        if self.started or len(self.players) != config.MAX_PLAYERS_PER_ROOM:
            return
        # Union of both players' topics, first appearance wins
        self.topics_in_play = list(dict.fromkeys(t for p in self.players.values() for t in p.topics))
        self.state = IN_PROGRESS
        self.round = 1
        self.active_player = 0
        self._reset_turn()
        logger.info("Game started in room %s with topics %s", self.code, self.topics_in_play)

        await self.broadcast(GameStarted(
            players=self.public_players(),
            topics_in_play=list(self.topics_in_play),
            active_player=self.active_player,
            round=self.round,
        ))
        if self.on_change:
            await self.on_change(self)
        self._schedule("turn", self.timings.turn_prompt_delay, self._prompt_first_turn)

    async def _prompt_first_turn(self):
        if self.state != IN_PROGRESS or len(self.players) < config.MAX_PLAYERS_PER_ROOM:
            return
        await self.broadcast(TurnUpdated(
            active_player=self.active_player,
            players=self.public_players(),
            round=self.round,
            message=f"{self._current_player().name}'s turn - spin the wheel!",
        ))

    def _reset_turn(self):
        self.phase = IDLE
        self.is_second_chance = False
        self.current_topic = None
        self.current_question = None
        self.turn_origin = None

    # --- Turn --------------------------------------------------------------

    async def spin_wheel(self, client_id: str):
        async with self.lock:
            if client_id not in self.players:
                return
            if self.state != IN_PROGRESS:
                raise GameNotActiveError()
            if len(self.players) < config.MAX_PLAYERS_PER_ROOM:
                raise OpponentMissingError()
            if self._index_of(client_id) != self.active_player:
                raise NotYourTurnError()
            if self.phase == SPINNING:
                raise AlreadyInProgressError("The wheel is already spinning")
            if self.phase == QUESTION:
                raise AlreadyInProgressError("Answer the current question before spinning again")
            if self.phase == RESOLVED:
                raise AlreadyInProgressError("Wait for the next turn")

            self._cancel_timer("turn")
            self.touch()
            self.phase = SPINNING
            self.turn_origin = self.active_player
            topic_index = self.rng.randrange(len(self.topics_in_play))
            self.current_topic = self.topics_in_play[topic_index]
            self.current_question = self.bank.select_question(self.current_topic, scope=self.code, rng=self.rng)
            logger.info("Room %s: player %d spun '%s'", self.code, self.active_player + 1, self.current_topic)

            await self.broadcast(WheelSpun(
                topic=self.current_topic,
                topic_index=topic_index,
                topics_in_play=list(self.topics_in_play),
                spinning_player=self.active_player,
            ))
            self._schedule("reveal", self.timings.spin_delay, self._reveal_question)

    async def reveal_question(self):
        async with self.lock:
            self._cancel_timer("reveal")
            await self._reveal_question()

    async def _reveal_question(self):
        if self.phase != SPINNING:
            return
        if self.current_question is None:
            logger.error("No questions for topic '%s' in room %s; turn aborted", self.current_topic, self.code)
            topic = self.current_topic
            self._reset_turn()
            await self.broadcast(TurnUpdated(
                active_player=self.active_player,
                players=self.public_players(),
                round=self.round,
                message=f"No questions available for {topic} - spin again!",
            ))
            return

        self.phase = QUESTION
        await self.broadcast(QuestionShown(
            question=self.current_question.to_payload(),
            active_player=self.active_player,
            is_second_chance=self.is_second_chance,
        ))
        self._arm_deadline()

    def _arm_deadline(self):
        if self.timings.answer_grace is None or self.current_question is None:
            return
        delay = self.current_question.time_limit + self.timings.answer_grace
        self._schedule("deadline", delay, self._expire_question)

    async def expire_question(self):
        async with self.lock:
            self._cancel_timer("deadline")
            await self._expire_question()

    async def _expire_question(self):
        if self.phase != QUESTION:
            return
        logger.info("Room %s: answer deadline passed for player %d", self.code, self.active_player + 1)
        await self._resolve_timeout()

    async def answer(self, client_id: str, choice_index: int):
        async with self.lock:
            if client_id not in self.players or self.phase != QUESTION or self.current_question is None:
                return
            if self._index_of(client_id) != self.active_player:
                return
            question = self.current_question
            if not 0 <= choice_index < len(question.options):
                return

            self.touch()
            self._cancel_timer("deadline")
            player = self.players[client_id]
            correct = choice_index == question.answer_index
            if correct:
                damage = compute_damage(config.CORRECT_DAMAGE, self.is_second_chance)
                target = self.player_list()[1 - self.active_player]
            else:
                damage = compute_damage(config.WRONG_DAMAGE, self.is_second_chance)
                target = player
            target.take_damage(damage)
            logger.info("Room %s: '%s' answered %s, '%s' loses %d (%d/%d)", self.code, player.name,
                        "correctly" if correct else "wrong", target.name, damage, target.life, target.max_life)

            self.current_question = None
            self.phase = RESOLVED
            game_over = self._check_game_over()
            await self.broadcast(RoundResult(
                correct=correct,
                damage=damage,
                players=self.public_players(),
                game_over=game_over,
                winner=self._winner_view(),
                round=self.round,
                is_second_chance=self.is_second_chance,
            ))
            if not game_over:
                self._schedule("turn", self.timings.result_delay, self._next_turn)

    async def handle_timeout(self, client_id: str):
        async with self.lock:
            if client_id not in self.players or self.phase != QUESTION:
                return
            if self._index_of(client_id) != self.active_player:
                return
            self.touch()
            await self._resolve_timeout()

    async def _resolve_timeout(self):
        self._cancel_timer("deadline")
        player = self._current_player()
        damage = compute_damage(config.TIMEOUT_DAMAGE, self.is_second_chance)
        player.take_damage(damage)

        if not self.is_second_chance and player.life > 0:
            self.is_second_chance = True
            self.active_player = 1 - self.active_player
            next_player = self._current_player()
            logger.info("Room %s: '%s' timed out (-%d), second chance for '%s'",
                        self.code, player.name, damage, next_player.name)
            await self.broadcast(SecondChance(
                damage=damage,
                players=self.public_players(),
                new_active_player=self.active_player,
                original_player=self.turn_origin,
                question=self.current_question.to_payload(),
                message=f"Second chance for {next_player.name}",
            ))
            self._arm_deadline()
            return

        logger.info("Room %s: '%s' timed out (-%d), turn over", self.code, player.name, damage)
        self.is_second_chance = False
        self.current_question = None
        self.phase = RESOLVED
        game_over = self._check_game_over()
        await self.broadcast(TimeoutFinal(
            damage=damage,
            players=self.public_players(),
            game_over=game_over,
            winner=self._winner_view(),
            round=self.round,
        ))
        if not game_over:
            self._schedule("turn", self.timings.result_delay, self._next_turn)

    def _check_game_over(self) -> bool:
        if not any(p.life == 0 for p in self.players.values()):
            return False
        self.state = GAME_OVER
        self.winner = next((p for p in self.players.values() if p.life > 0), None)
        self._cancel_timers()
        logger.info("Game over in room %s after %d rounds, winner: %s", self.code, self.round,
                    self.winner.name if self.winner else None)
        return True

    async def next_turn(self):
        async with self.lock:
            self._cancel_timer("turn")
            await self._next_turn()

    async def _next_turn(self):
        if self.state != IN_PROGRESS or len(self.players) < config.MAX_PLAYERS_PER_ROOM:
            return
        self._reset_turn()
        self.active_player = 1 - self.active_player
        self.round += 1
        logger.info("Room %s: round %d, player %d to spin", self.code, self.round, self.active_player + 1)
        await self.broadcast(TurnUpdated(
            active_player=self.active_player,
            players=self.public_players(),
            round=self.round,
            message=f"Round {self.round} - {self._current_player().name}'s turn",
        ))

    # --- Leaving -----------------------------------------------------------

    async def disconnect(self, client_id: str):
        async with self.lock:
            player = self.players.pop(client_id, None)
            if player is None:
                return
            logger.info("Player '%s' left room %s", player.name or client_id, self.code)
            self._cancel_timer("start")
            if self.state == IN_PROGRESS:
                # Match cannot continue with one player
                self._cancel_timers()
                self._reset_turn()
            if self.players:
                await self.broadcast(PlayerDisconnected(players=self.public_players()))
