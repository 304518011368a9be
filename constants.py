import os

REDIS_HOST = os.getenv("REDIS_HOST", "localhost")
REDIS_PORT = int(os.getenv("REDIS_PORT", 6379))
REDIS_PASSWORD = os.getenv("REDIS_PASSWORD", None)

JWT_SECRET = os.getenv("JWT_SECRET", "your-secret-key")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
JWT_USER_CLAIM = os.getenv("JWT_USER_CLAIM", "userId")

# Keepalive: ping after HEARTBEAT_INTERVAL idle seconds, drop after HEARTBEAT_TIMEOUT
HEARTBEAT_INTERVAL = float(os.getenv("HEARTBEAT_INTERVAL", 25))
HEARTBEAT_TIMEOUT = float(os.getenv("HEARTBEAT_TIMEOUT", 60))

OUTBOX_SIZE = int(os.getenv("OUTBOX_SIZE", 256))
DEDUP_CACHE_SIZE = int(os.getenv("DEDUP_CACHE_SIZE", 10000))

HISTORY_PAGE_SIZE = int(os.getenv("HISTORY_PAGE_SIZE", 50))
SEARCH_LIMIT = int(os.getenv("SEARCH_LIMIT", 20))

ALLOWED_REACTIONS = ("👍", "❤️", "😊", "😂", "😮", "😢", "😡")

PRIVATE_ROOM_PREFIX = "private"

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FILE = os.getenv("LOG_FILE", None)

HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", 8000))
RELOAD = os.getenv("RELOAD", "false").lower() in ("1", "true", "yes")
