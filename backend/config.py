"""Centralized configuration — all env vars in one place."""
import os
import logging
from dotenv import load_dotenv

load_dotenv()

BASE_DIR = os.path.dirname(os.path.abspath(__file__))

# --- Server ---
HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", "8000"))
ALLOWED_ORIGINS = os.getenv("ALLOWED_ORIGINS", "")

# --- WebSocket Security ---
WS_RATE_LIMIT_PER_SEC = 10  # max messages per second per client
MAX_WS_MESSAGE_SIZE = 4096  # bytes
MAX_NAME_LENGTH = 20
MAX_AVATAR_LENGTH = 200  # emoji or image path
MAX_ROOM_NAME_LENGTH = 20
MAX_TOPIC_LENGTH = 50

# --- Storage Limits ---
MAX_ROOMS = int(os.getenv("MAX_ROOMS", "50"))
ROOM_TTL_SECONDS = int(os.getenv("ROOM_TTL_SECONDS", "1800"))
ROOM_CLEANUP_INTERVAL = 60  # seconds
ROOM_CODE_LENGTH = 6
MAX_ROOM_CODE_ATTEMPTS = 10

# --- Question bank ---
QUESTIONS_FILE = os.getenv("QUESTIONS_FILE", os.path.join(BASE_DIR, "data", "questions.json"))
RANDOM_SEED = os.getenv("RANDOM_SEED", "")  # empty = nondeterministic

# --- Game rules ---
MAX_PLAYERS_PER_ROOM = 2
MAX_LIFE = 100
CORRECT_DAMAGE = 15  # dealt to the opponent
WRONG_DAMAGE = 8  # dealt to the answering player
TIMEOUT_DAMAGE = 5  # dealt to the player who ran out of time
SECOND_CHANCE_FACTOR = 0.5
MIN_TIME_LIMIT = 10
BASE_TIME_LIMIT = 17
TIME_LIMIT_STEP = 2  # seconds removed per difficulty level

# --- Phase delays (seconds) ---
START_DELAY = float(os.getenv("START_DELAY", "1"))
TURN_PROMPT_DELAY = float(os.getenv("TURN_PROMPT_DELAY", "1"))
SPIN_ANIMATION_DELAY = float(os.getenv("SPIN_ANIMATION_DELAY", "4"))
RESULT_DELAY = float(os.getenv("RESULT_DELAY", "3"))

# --- Server-side question deadline ---
SERVER_TIMER_ENABLED = os.getenv("SERVER_TIMER_ENABLED", "true").lower() in ("1", "true", "yes")
SERVER_TIMEOUT_GRACE = float(os.getenv("SERVER_TIMEOUT_GRACE", "2"))

# --- Logging ---
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FILE = os.getenv("LOG_FILE", "")  # empty = stdout only


def setup_logging():
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if LOG_FILE:
        handlers.append(logging.FileHandler(LOG_FILE))
    logging.basicConfig(
        level=getattr(logging, LOG_LEVEL, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=handlers,
    )
