import os

REDIS_HOST = os.getenv("REDIS_HOST", "localhost")
REDIS_PORT = int(os.getenv("REDIS_PORT", 6379))
REDIS_PASSWORD = os.getenv("REDIS_PASSWORD", None)
REDIS_DB = int(os.getenv("REDIS_DB", 0))

# "redis" or "memory"
STORE_BACKEND = os.getenv("STORE_BACKEND", "redis")

ROOM_TTL_SECONDS = int(os.getenv("ROOM_TTL_SECONDS", 300))
MESSAGE_TTL_SECONDS = int(os.getenv("MESSAGE_TTL_SECONDS", 60))

BASE_PATH = os.getenv("BASE_PATH", "").rstrip("/")

SIGNALING_URL = os.getenv("SIGNALING_URL", "http://localhost:8000")
POLL_INTERVAL_SECONDS = float(os.getenv("POLL_INTERVAL_SECONDS", 0.5))
POLL_INITIAL_DELAY_SECONDS = float(os.getenv("POLL_INITIAL_DELAY_SECONDS", 1.0))
SEND_QUEUE_SIZE = int(os.getenv("SEND_QUEUE_SIZE", 100))

CANDIDATE_SKIP = int(os.getenv("CANDIDATE_SKIP", 0))
CANDIDATE_PACING_SECONDS = float(os.getenv("CANDIDATE_PACING_SECONDS", 0.01))

ICE_SERVERS = [
    url.strip()
    for url in os.getenv("ICE_SERVERS", "stun:stun.l.google.com:19302").split(",")
    if url.strip()
]
