"""Typing state per course room.

Entries expire after a quiet period; the app lifespan runs a sweeper that
calls ``sweep()`` and tells the room who stopped typing. Only the
connection registry mutates a tracker.
"""
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple


@dataclass
class TypingEntry:
    user_id: str
    display_name: str
    last_seen: float


class TypingTracker:
    """Ephemeral (room, user) -> last typing activity map.

    Args:
        timeout_seconds: Quiet period after which an entry expires.
        clock: Monotonic time source, injectable for tests.
    """

    def __init__(
        self,
        timeout_seconds: float = 3.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.timeout_seconds = timeout_seconds
        self._clock = clock
        self._rooms: Dict[str, Dict[str, TypingEntry]] = {}

    def start(self, course_id: str, user_id: str, display_name: str) -> bool:
        """Record or refresh typing activity.

        Returns:
            True only if the user was not already typing in the room.
        """
        room = self._rooms.setdefault(course_id, {})
        entry = room.get(user_id)
        if entry is not None:
            entry.last_seen = self._clock()
            return False
        room[user_id] = TypingEntry(user_id, display_name, self._clock())
        return True

    def stop(self, course_id: str, user_id: str) -> Optional[TypingEntry]:
        """Clear an entry; returns it if one existed."""
        room = self._rooms.get(course_id)
        if not room:
            return None
        entry = room.pop(user_id, None)
        if not room:
            del self._rooms[course_id]
        return entry

    def sweep(self, now: Optional[float] = None) -> List[Tuple[str, TypingEntry]]:
        """Remove and return every entry quiet for longer than the timeout."""
        now = self._clock() if now is None else now
        expired: List[Tuple[str, TypingEntry]] = []
        for course_id in list(self._rooms):
            room = self._rooms[course_id]
            for user_id in list(room):
                entry = room[user_id]
                if now - entry.last_seen > self.timeout_seconds:
                    expired.append((course_id, room.pop(user_id)))
            if not room:
                del self._rooms[course_id]
        return expired

    def typing_in(self, course_id: str) -> List[TypingEntry]:
        return list(self._rooms.get(course_id, {}).values())

    def is_typing(self, course_id: str, user_id: str) -> bool:
        return user_id in self._rooms.get(course_id, {})
