"""Connection registry and per-course room router.

This module tracks every authenticated WebSocket connection and groups them
into one room per course id for fan-out. It also owns the typing tracker,
since typing state lives and dies with room membership.

Key features:
    - One active room per connection (joining another room leaves the old one)
    - Membership gated by the course directory (instructor, enrolled, admin)
    - recent-messages snapshot on join, user-joined/user-left presence events
    - Concurrent fan-out with asyncio.gather()
    - Dead connections evicted when a send fails
    - Typing indicators with server-side expiry

Ordering:
    Each room has an ``asyncio.Lock``. Membership changes and broadcasts
    both take it, and a broadcast snapshots membership and finishes every
    send before releasing. Broadcasts for one room therefore reach each
    member in the order they were issued, and a member added by a join
    never sees half of a broadcast.

Thread Safety:
    Designed for a single event loop. Not safe for use from multiple
    threads.
"""
import asyncio
import logging
import uuid
from typing import Any, Callable, Dict, List, Optional

from app.auth.schemas import Identity
from app.config import get_config
from app.courses.schemas import CourseAccess
from app.courses.service import CourseDirectory
from app.errors import AccessDenied, ValidationError

from .presence import TypingTracker
from .store import MessageStore

logger = logging.getLogger(__name__)


# =============================================================================
# Data Models
# =============================================================================


class Connection:
    """One authenticated socket.

    Attributes:
        id: Server-assigned connection id.
        websocket: Anything with an async ``send_json(dict)``.
        identity: The verified user behind the socket.
        course_id: Room currently joined, or None.
    """

    def __init__(self, websocket: Any, identity: Identity, connection_id: Optional[str] = None):
        self.id = connection_id or str(uuid.uuid4())
        self.websocket = websocket
        self.identity = identity
        self.course_id: Optional[str] = None
        self.closed = False

    @property
    def user_id(self) -> str:
        return self.identity.user_id

    @property
    def display_name(self) -> str:
        return self.identity.display_name

    def __repr__(self) -> str:
        return f"Connection(id={self.id!r}, user={self.user_id!r}, room={self.course_id!r})"


class Room:
    """Connections currently joined to one course, in join order."""

    def __init__(self, course_id: str):
        self.course_id = course_id
        self.connections: Dict[str, Connection] = {}
        self.lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self.connections)

    def users(self) -> List[dict]:
        """Distinct users present, in order of first join."""
        seen: Dict[str, dict] = {}
        for conn in self.connections.values():
            if conn.user_id not in seen:
                seen[conn.user_id] = conn.identity.presence()
        return list(seen.values())


# =============================================================================
# Connection Registry
# =============================================================================


class ConnectionRegistry:
    """Live connections, course rooms and typing state.

    Args:
        directory: Course membership oracle (defaults to the singleton).
        store: Message store used for the join snapshot (defaults to the
            singleton).
        typing: Typing tracker; built from config when omitted.
    """

    def __init__(
        self,
        directory: Optional[CourseDirectory] = None,
        store: Optional[MessageStore] = None,
        typing: Optional[TypingTracker] = None,
    ) -> None:
        self._directory = directory
        self._store = store
        self._typing = typing
        self._connections: Dict[str, Connection] = {}
        self._rooms: Dict[str, Room] = {}

    @property
    def directory(self) -> CourseDirectory:
        return self._directory or CourseDirectory.get_instance()

    @property
    def store(self) -> MessageStore:
        return self._store or MessageStore.get_instance()

    @property
    def typing(self) -> TypingTracker:
        if self._typing is None:
            self._typing = TypingTracker(get_config().chat.typing_timeout_seconds)
        return self._typing

    def reset(self) -> None:
        """Forget all connections, rooms and typing state (tests)."""
        self._connections.clear()
        self._rooms.clear()
        self._typing = None

    # =========================================================================
    # Connections
    # =========================================================================

    def register(self, websocket: Any, identity: Identity) -> Connection:
        """Register a socket whose credential has already been verified."""
        conn = Connection(websocket, identity)
        self._connections[conn.id] = conn
        logger.info(f"[Registry] Connected {conn.id} as user {conn.user_id}")
        return conn

    def get(self, connection_id: str) -> Optional[Connection]:
        return self._connections.get(connection_id)

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    async def disconnect(self, conn: Connection) -> None:
        """Leave the current room and drop the connection. Idempotent."""
        conn.closed = True
        if self._connections.pop(conn.id, None) is None and conn.course_id is None:
            return
        await self.leave_room(conn)
        logger.info(f"[Registry] Disconnected {conn.id} (user {conn.user_id})")

    # =========================================================================
    # Rooms
    # =========================================================================

    def room_size(self, course_id: str) -> int:
        room = self._rooms.get(course_id)
        return len(room) if room else 0

    def presence(self, course_id: str) -> List[dict]:
        room = self._rooms.get(course_id)
        return room.users() if room else []

    def members(self, course_id: str) -> List[Connection]:
        room = self._rooms.get(course_id)
        return list(room.connections.values()) if room else []

    async def join_room(self, conn: Connection, course_id: str) -> CourseAccess:
        """Join a course room.

        Sends the recent-messages snapshot to the joining connection and
        user-joined to everyone else, then leaves the previous room.
        Re-joining the current room only re-sends the snapshot. A failed
        check leaves the connection where it was.

        Raises:
            NotFound: The course does not exist.
            AccessDenied: Not instructor, enrolled or admin.
            ValidationError: The room is at capacity.
        """
        if not course_id:
            raise ValidationError("courseId is required")

        access = self.directory.get_course_access(conn.user_id, course_id)
        if not access.can_access:
            raise AccessDenied("Access denied to this course")

        if conn.course_id == course_id:
            room = self._rooms[course_id]
            async with room.lock:
                await self._send_snapshot(conn, course_id)
            return access

        previous = conn.course_id
        room = await self._acquire_room(course_id)
        try:
            limit = get_config().chat.max_connections_per_room
            if limit and len(room) >= limit:
                raise ValidationError("This course chat is full")

            room.connections[conn.id] = conn
            conn.course_id = course_id
            await self._send_snapshot(conn, course_id)
            await self._fanout(
                room,
                {
                    "type": "user-joined",
                    "courseId": course_id,
                    **conn.identity.presence(),
                    "users": room.users(),
                },
                exclude=conn,
            )
        finally:
            self._drop_if_empty(room)
            room.lock.release()

        logger.info(f"[Registry] {conn.user_id} joined course {course_id} ({len(room)} connections)")
        if previous is not None:
            await self._remove(conn, previous)
        return access

    async def leave_room(self, conn: Connection, course_id: Optional[str] = None) -> bool:
        """Leave the current room (or ``course_id``, if it is the current one).

        Returns:
            True if the connection was in a room and left it.
        """
        current = conn.course_id
        if current is None or (course_id is not None and course_id != current):
            return False
        conn.course_id = None
        return await self._remove(conn, current)

    async def _acquire_room(self, course_id: str) -> Room:
        """Get or create a room and take its lock."""
        while True:
            room = self._rooms.get(course_id)
            if room is None:
                room = self._rooms[course_id] = Room(course_id)
            await room.lock.acquire()
            # The room may have been emptied and dropped while we waited
            if self._rooms.get(course_id) is room:
                return room
            room.lock.release()

    async def _remove(self, conn: Connection, course_id: str) -> bool:
        room = self._rooms.get(course_id)
        if room is None:
            return False

        async with room.lock:
            if room.connections.pop(conn.id, None) is None:
                return False
            for event in self._departure_events(room, conn.identity):
                await self._fanout(room, event)
            self._drop_if_empty(room)

        logger.info(f"[Registry] {conn.user_id} left course {course_id}")
        return True

    def _departure_events(self, room: Room, identity: Identity) -> List[dict]:
        """Events for a connection that just left ``room``.

        Nothing is announced while the same user still has another
        connection in the room. Caller holds the lock.
        """
        if any(c.user_id == identity.user_id for c in room.connections.values()):
            return []

        events = []
        if self.typing.stop(room.course_id, identity.user_id) is not None:
            events.append(self._stopped_typing_event(room.course_id, identity))
        events.append(
            {
                "type": "user-left",
                "courseId": room.course_id,
                **identity.presence(),
                "users": room.users(),
            }
        )
        return events

    def _drop_if_empty(self, room: Room) -> None:
        if not room.connections and self._rooms.get(room.course_id) is room:
            del self._rooms[room.course_id]

    # =========================================================================
    # Typing
    # =========================================================================

    def _require_member(self, conn: Connection, course_id: Optional[str]) -> str:
        if not course_id or conn.course_id != course_id:
            raise AccessDenied("Join the course chat first")
        return course_id

    @staticmethod
    def _stopped_typing_event(course_id: str, identity: Identity) -> dict:
        return {
            "type": "user-stopped-typing",
            "courseId": course_id,
            "userId": identity.user_id,
            "userName": identity.display_name,
        }

    async def start_typing(self, conn: Connection, course_id: Optional[str]) -> None:
        course_id = self._require_member(conn, course_id)
        if self.typing.start(course_id, conn.user_id, conn.display_name):
            await self.broadcast_except(
                course_id,
                {
                    "type": "user-typing",
                    "courseId": course_id,
                    "userId": conn.user_id,
                    "userName": conn.display_name,
                },
                conn,
            )

    async def stop_typing(self, conn: Connection, course_id: Optional[str]) -> None:
        course_id = self._require_member(conn, course_id)
        if self.typing.stop(course_id, conn.user_id) is not None:
            await self.broadcast_except(
                course_id, self._stopped_typing_event(course_id, conn.identity), conn
            )

    async def sweep_typing(self, now: Optional[float] = None) -> int:
        """Expire quiet typing entries and announce them.

        Returns:
            Number of expired entries.
        """
        expired = self.typing.sweep(now)
        for course_id, entry in expired:
            await self.broadcast(
                course_id,
                {
                    "type": "user-stopped-typing",
                    "courseId": course_id,
                    "userId": entry.user_id,
                    "userName": entry.display_name,
                },
            )
        return len(expired)

    # =========================================================================
    # Fan-out
    # =========================================================================

    async def broadcast(self, course_id: str, event: dict) -> None:
        """Send an event to every connection in a course room."""
        room = self._rooms.get(course_id)
        if room is None:
            return
        async with room.lock:
            await self._fanout(room, event)

    async def broadcast_except(self, course_id: str, event: dict, exclude: Connection) -> None:
        """Send an event to every connection in a room except ``exclude``."""
        room = self._rooms.get(course_id)
        if room is None:
            return
        async with room.lock:
            await self._fanout(room, event, exclude=exclude)

    async def send_to(self, conn: Connection, event: dict) -> bool:
        return await self._safe_send(conn, event)

    async def _send_snapshot(self, conn: Connection, course_id: str) -> None:
        limit = get_config().chat.recent_messages_limit
        recent = self.store.list_recent(course_id, limit)
        await self._safe_send(
            conn,
            {
                "type": "recent-messages",
                "courseId": course_id,
                "messages": [m.to_payload() for m in reversed(recent)],
            },
        )

    async def _fanout(
        self, room: Room, event: dict, exclude: Optional[Connection] = None
    ) -> None:
        """Send to a membership snapshot concurrently. Caller holds the lock.

        Connections that fail are evicted, and their departure is announced
        to the members that remain.
        """
        pending = [(event, exclude)]
        while pending:
            event, exclude = pending.pop(0)
            targets = [c for c in room.connections.values() if c is not exclude]
            if not targets:
                continue

            results = await asyncio.gather(
                *[self._safe_send(conn, event) for conn in targets],
                return_exceptions=True,
            )

            for conn, ok in zip(targets, results):
                if ok is not True:
                    pending.extend((e, None) for e in self._evict(room, conn))
        self._drop_if_empty(room)

    async def _safe_send(self, conn: Connection, event: dict) -> bool:
        """Send to one connection.

        Returns:
            True if successful, False if the connection failed.
        """
        if conn.closed:
            return False
        try:
            await conn.websocket.send_json(event)
            return True
        except Exception as e:
            logger.debug(f"[Registry] Failed to send to {conn.id}: {e}")
            return False

    def _evict(self, room: Room, conn: Connection) -> List[dict]:
        """Drop a dead connection and return the events announcing it."""
        if room.connections.pop(conn.id, None) is None:
            return []
        if conn.course_id == room.course_id:
            conn.course_id = None
        conn.closed = True
        self._connections.pop(conn.id, None)
        logger.info(f"[Registry] Evicted dead connection {conn.id} from {room.course_id}")
        return self._departure_events(room, conn.identity)


# =============================================================================
# Typing sweeper
# =============================================================================


async def run_typing_sweeper(
    registry: "ConnectionRegistry",
    interval_seconds: float,
    sleep: Callable[[float], Any] = asyncio.sleep,
) -> None:
    """Periodically expire typing indicators until cancelled."""
    logger.info(f"[Registry] Typing sweeper running every {interval_seconds}s")
    while True:
        await sleep(interval_seconds)
        try:
            await registry.sweep_typing()
        except Exception:
            logger.exception("[Registry] Typing sweep failed")


# Global registry instance
registry = ConnectionRegistry()
