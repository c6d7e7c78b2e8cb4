import json
import logging
import random
import threading
from typing import Dict, List, Optional, Set

from pydantic import BaseModel, ValidationError, field_validator, model_validator

import config
from messages import QuestionPayload

logger = logging.getLogger(__name__)

GLOBAL_SCOPE = "*"


def time_limit_for(difficulty: int) -> int:
    """Seconds a player gets to answer a question of the given difficulty."""
    return max(config.MIN_TIME_LIMIT, config.BASE_TIME_LIMIT - config.TIME_LIMIT_STEP * difficulty)


class Question(BaseModel):
    id: int
    topic: str
    text: str
    options: List[str]
    answer_index: int
    difficulty: int = 1

    @field_validator("options")
    @classmethod
    def validate_options(cls, v: List[str]) -> List[str]:
        if len(v) < 2:
            raise ValueError("Question must have at least 2 options")
        return v

    @field_validator("difficulty")
    @classmethod
    def validate_difficulty(cls, v: int) -> int:
        if v not in (1, 2, 3):
            raise ValueError("Difficulty must be 1, 2 or 3")
        return v

    @model_validator(mode="after")
    def validate_answer_index(self):
        if not 0 <= self.answer_index < len(self.options):
            raise ValueError("Invalid answer_index")
        return self

    @property
    def time_limit(self) -> int:
        return time_limit_for(self.difficulty)

    def to_payload(self) -> QuestionPayload:
        """Player-facing view; the correct index is never sent."""
        return QuestionPayload(
            id=self.id,
            topic=self.topic,
            text=self.text,
            options=list(self.options),
            difficulty=self.difficulty,
            time_limit=self.time_limit,
        )


class QuestionBank:
    """Read-only question set with per-scope "used" tracking.

    Each room selects within its own scope, so one room exhausting and
    resetting a topic never changes what another room has left to draw.
    """

    def __init__(self, questions: List[Question], rng: Optional[random.Random] = None):
        self.questions = list(questions)
        self.rng = rng or random.Random()
        self._by_topic: Dict[str, List[Question]] = {}
        for q in self.questions:
            self._by_topic.setdefault(q.topic, []).append(q)
        self._used: Dict[str, Dict[str, Set[int]]] = {}  # scope -> topic -> question ids
        self._lock = threading.Lock()

    @classmethod
    def from_file(cls, path: str, rng: Optional[random.Random] = None) -> "QuestionBank":
        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError):
            logger.exception("Could not load questions from %s", path)
            return cls([], rng)

        raw = data.get("questions", []) if isinstance(data, dict) else data
        questions = []
        seen = set()
        for item in raw:
            try:
                question = Question.model_validate(item)
            except ValidationError as e:
                logger.warning("Skipping invalid question %s: %s", item.get("id") if isinstance(item, dict) else item, e.errors()[0]["msg"])
                continue
            if (question.topic, question.id) in seen:
                logger.warning("Skipping duplicate question id %s in topic '%s'", question.id, question.topic)
                continue
            seen.add((question.topic, question.id))
            questions.append(question)
        bank = cls(questions, rng)
        logger.info("Loaded %d questions across %d topics from %s", len(questions), len(bank._by_topic), path)
        return bank

    def topics(self) -> Dict[str, int]:
        return {topic: len(qs) for topic, qs in sorted(self._by_topic.items())}

    def select_question(self, topic: str, scope: str = GLOBAL_SCOPE,
                        rng: Optional[random.Random] = None) -> Optional[Question]:
        """Pick a random unused question for ``topic`` within ``scope``.

        Once every question of the topic has been used, the topic's marks are
        cleared and selection starts over. Returns None only when the topic
        has no questions at all.
        """
        pool = self._by_topic.get(topic)
        if not pool:
            return None
        rng = rng or self.rng
        with self._lock:
            used = self._used.setdefault(scope, {}).setdefault(topic, set())
            available = [q for q in pool if q.id not in used]
            if not available:
                used.clear()
                available = list(pool)
                logger.info("Question pool reset for topic '%s' (scope %s)", topic, scope)
            question = rng.choice(available)
            used.add(question.id)
        return question

    def is_used(self, question: Question, scope: str = GLOBAL_SCOPE) -> bool:
        with self._lock:
            return question.id in self._used.get(scope, {}).get(question.topic, set())

    def release(self, scope: str):
        """Forget all used marks of a scope (room teardown)."""
        with self._lock:
            self._used.pop(scope, None)


def _default_rng() -> random.Random:
    if config.RANDOM_SEED:
        return random.Random(config.RANDOM_SEED)
    return random.Random()


question_bank = QuestionBank.from_file(config.QUESTIONS_FILE, _default_rng())
