from contextlib import contextmanager
from dataclasses import dataclass
from typing import Dict, Optional, Set, Tuple

from errors import AlreadyJoining
from logging_config import get_logger

logger = get_logger(__name__)

SessionKey = Tuple[str, str]


@dataclass
class SessionEntry:
    room_id: str
    user_id: str
    timestamp: int


class SessionRegistry:
    """Users this client believes are connected, keyed by (room_id, username).

    Also holds the set of keys with a join in flight. Both are local to one client
    connection: they guard against re-entrant joins from the same client, not
    against other clients.
    """

    def __init__(self):
        self._sessions: Dict[SessionKey, SessionEntry] = {}
        self._joining: Set[SessionKey] = set()

    @staticmethod
    def session_key(room_id: str, username: str) -> SessionKey:
        return (room_id, username)

    def is_joining(self, key: SessionKey) -> bool:
        return key in self._joining

    @contextmanager
    def joining(self, key: SessionKey, bypass: bool = False):
        """Mark ``key`` as joining for the duration of the block.

        Raises AlreadyJoining if a join for the key is already in flight, unless
        ``bypass`` is set. The mark is cleared on every exit path.
        """
        if not bypass and key in self._joining:
            logger.warning(f"Join already in flight for {key[1]} in room {key[0]}")
            raise AlreadyJoining()
        self._joining.add(key)
        try:
            yield
        finally:
            self._joining.discard(key)

    def get(self, key: SessionKey) -> Optional[SessionEntry]:
        return self._sessions.get(key)

    def set(self, key: SessionKey, entry: SessionEntry):
        self._sessions[key] = entry

    def pop(self, key: SessionKey) -> Optional[SessionEntry]:
        return self._sessions.pop(key, None)

    def __len__(self):
        return len(self._sessions)

    def __contains__(self, key):
        return key in self._sessions

    def clear(self):
        self._sessions.clear()
        self._joining.clear()
