import os

REDIS_HOST = os.getenv("REDIS_HOST", "localhost")
REDIS_PORT = int(os.getenv("REDIS_PORT", 6379))
REDIS_PASSWORD = os.getenv("REDIS_PASSWORD", None)

REDIS_URL = os.getenv(
    "REDIS_URL",
    f"redis://:{REDIS_PASSWORD}@{REDIS_HOST}:{REDIS_PORT}" if REDIS_PASSWORD else f"redis://{REDIS_HOST}:{REDIS_PORT}",
)

HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", 3000))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FILE = os.getenv("LOG_FILE", None)

# Static admin credential table, "user:pass,user2:pass2"
ADMIN_CREDENTIALS = os.getenv("ADMIN_CREDENTIALS", "admin:changeme")

# Rooms
DEFAULT_ROOM = "001"
DEFAULT_USERNAME = "Guest"
MIN_ROOM = 1
MAX_ROOM = 100

# Message log
MESSAGE_LIMIT = int(os.getenv("MESSAGE_LIMIT", 200))
MESSAGE_TTL_SECONDS = int(os.getenv("MESSAGE_TTL_SECONDS", 6 * 60 * 60))
# Redis list outlives its newest entry by this much
MESSAGE_TTL_BUFFER_SECONDS = int(os.getenv("MESSAGE_TTL_BUFFER_SECONDS", 60 * 60))
MAX_MESSAGE_LENGTH = int(os.getenv("MAX_MESSAGE_LENGTH", 1000))
SWEEP_INTERVAL_SECONDS = int(os.getenv("SWEEP_INTERVAL_SECONDS", 60 * 60))

# Durable backend circuit breaker
BACKEND_TIMEOUT_SECONDS = float(os.getenv("BACKEND_TIMEOUT_SECONDS", 2.0))
BACKEND_RETRY_SECONDS = float(os.getenv("BACKEND_RETRY_SECONDS", 30))

# Keep-alive
KEEP_ALIVE_INTERVAL_SECONDS = int(os.getenv("KEEP_ALIVE_INTERVAL_SECONDS", 14 * 60))

# Moderation
COMMAND_PREFIX = "server!"
AUTH_PREFIX = "admin-login#"
MUTE_SECONDS = 5 * 60
BAN_SECONDS = 24 * 60 * 60
DISCONNECT_GRACE_SECONDS = float(os.getenv("DISCONNECT_GRACE_SECONDS", 1.0))
