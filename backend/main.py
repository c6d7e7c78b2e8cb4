from fastapi import FastAPI, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
import uvicorn
import logging
import socket as socketlib

import config
config.setup_logging()

from messages import encode
from question_bank import question_bank
from socket_manager import socket_manager

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    topics = question_bank.topics()
    logger.info("Starting trivia duel backend (%d questions, %d topics)",
                sum(topics.values()), len(topics))
    socket_manager.registry.start_cleanup_loop()
    yield
    logger.info("Shutting down trivia duel backend")
    socket_manager.registry.shutdown()


app = FastAPI(title="Trivia Duel Backend", lifespan=lifespan)


def get_local_ip():
    try:
        s = socketlib.socket(socketlib.AF_INET, socketlib.SOCK_DGRAM)
        s.connect(("8.8.8.8", 80))
        ip = s.getsockname()[0]
        s.close()
        return ip
    except Exception:
        return "127.0.0.1"


@app.get("/rooms")
async def list_rooms():
    return {"rooms": [encode(r) for r in socket_manager.registry.list_public_rooms()]}


@app.get("/stats")
async def server_stats():
    stats = encode(socket_manager.registry.get_stats())
    stats.pop("type")
    return stats


@app.get("/topics")
async def list_topics():
    """Topic labels with question counts, for the topic picker."""
    return {"topics": [{"name": name, "questions": count}
                       for name, count in socket_manager.registry.bank.topics().items()]}


@app.websocket("/ws/{client_id}")
async def websocket_endpoint(websocket: WebSocket, client_id: str):
    await socket_manager.connect(websocket, client_id)


# Configure CORS
if config.ALLOWED_ORIGINS.strip():
    origins = [o.strip() for o in config.ALLOWED_ORIGINS.split(",")]
else:
    local_ip = get_local_ip()
    origins = [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
        f"http://{local_ip}:3000",
    ]
socket_manager.allowed_origins = origins

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=False,
    allow_methods=["GET"],
    allow_headers=["Content-Type"],
)


@app.get("/")
async def root():
    return {"message": "Trivia Duel API is running"}


@app.get("/health")
async def health():
    return {"status": "healthy"}


if __name__ == "__main__":
    uvicorn.run("main:app", host=config.HOST, port=config.PORT, reload=True)
