import random
import string
import time
import uuid

from constants import USER_COLORS


def now_ms() -> int:
    return int(time.time() * 1000)


def generate_random_slug(length: int = 9) -> str:
    return ''.join(random.choices(string.ascii_lowercase + string.digits, k=length))


def generate_user_id() -> str:
    return f"user_{now_ms()}_{generate_random_slug(9)}"


def generate_user_color() -> str:
    return random.choice(USER_COLORS)


def generate_room_id() -> str:
    return uuid.uuid4().hex
