import os

REDIS_HOST = os.getenv("REDIS_HOST", "localhost")
REDIS_PORT = int(os.getenv("REDIS_PORT", 6379))
REDIS_PASSWORD = os.getenv("REDIS_PASSWORD", None)

# Seconds of silence after which a user's typing indicator is cleared
TYPING_IDLE_SECONDS = float(os.getenv("TYPING_IDLE_SECONDS", 5))
# Debounce before an emptied room is re-checked and deleted
EMPTY_ROOM_CHECK_DELAY = float(os.getenv("EMPTY_ROOM_CHECK_DELAY", 1.0))
MESSAGE_HISTORY_LIMIT = int(os.getenv("MESSAGE_HISTORY_LIMIT", 50))

USER_COLORS = [
    "#3B82F6",  # blue
    "#10B981",  # emerald
    "#F59E0B",  # amber
    "#EF4444",  # red
    "#8B5CF6",  # violet
    "#06B6D4",  # cyan
    "#F97316",  # orange
    "#84CC16",  # lime
]

SYSTEM_USER_ID = "system"
SYSTEM_USERNAME = "System"
SYSTEM_COLOR = "#6B7280"
