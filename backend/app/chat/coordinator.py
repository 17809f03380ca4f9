"""Message lifecycle coordinator.

Every state change to a message goes through here, whether it arrives on
the socket or through the REST mirrors:

    validate -> persist -> re-read -> broadcast

A rejected request raises before anything is written, and a failed write
raises before anything is broadcast. Broadcast payloads are always built
from the record the store returned after the write, never from the
request.
"""
import logging
from datetime import datetime, timedelta
from typing import Callable, Iterable, List, Optional, Tuple, Union

from app.auth.schemas import Identity
from app.config import ChatSettings, get_config
from app.courses.schemas import CourseAccess
from app.courses.service import CourseDirectory
from app.errors import AccessDenied, NotFound, ValidationError

from . import lifecycle
from .manager import ConnectionRegistry, registry as default_registry
from .schemas import ChatMessage, MessageType
from .store import MessageStore, utcnow

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100


class MessageCoordinator:
    """Create, edit, delete, react and read, plus the history queries.

    Args:
        registry: Room router used for broadcasts.
        store: Message persistence (defaults to the singleton).
        directory: Course membership oracle (defaults to the singleton).
        clock: Returns naive-UTC "now"; creation and edit times come from it.
        settings: Chat limits (defaults to the loaded config).
    """

    def __init__(
        self,
        registry: Optional[ConnectionRegistry] = None,
        store: Optional[MessageStore] = None,
        directory: Optional[CourseDirectory] = None,
        clock: Callable[[], datetime] = utcnow,
        settings: Optional[ChatSettings] = None,
    ) -> None:
        self._registry = registry
        self._store = store
        self._directory = directory
        self._clock = clock
        self._settings = settings

    @property
    def registry(self) -> ConnectionRegistry:
        return self._registry or default_registry

    @property
    def store(self) -> MessageStore:
        return self._store or MessageStore.get_instance()

    @property
    def directory(self) -> CourseDirectory:
        return self._directory or CourseDirectory.get_instance()

    @property
    def settings(self) -> ChatSettings:
        return self._settings or get_config().chat

    # =========================================================================
    # Helpers
    # =========================================================================

    def require_access(self, user_id: str, course_id: str) -> CourseAccess:
        if not course_id:
            raise ValidationError("courseId is required")
        access = self.directory.get_course_access(user_id, course_id)
        if not access.can_access:
            raise AccessDenied("Access denied to this course")
        return access

    def _load(self, message_id: Optional[str]) -> ChatMessage:
        if not message_id:
            raise ValidationError("messageId is required")
        message = self.store.get(message_id)
        if message is None:
            raise NotFound("Message not found")
        return message

    def _page_size(self, limit: Optional[int], default: int) -> int:
        if limit is None:
            return default
        if not 1 <= limit <= MAX_PAGE_SIZE:
            raise ValidationError(f"limit must be between 1 and {MAX_PAGE_SIZE}")
        return limit

    # =========================================================================
    # Transitions
    # =========================================================================

    async def send(
        self,
        identity: Identity,
        course_id: str,
        content: Optional[str],
        message_type: Union[MessageType, str, None] = None,
        reply_to: Optional[str] = None,
        is_announcement: bool = False,
    ) -> ChatMessage:
        """Persist a new message and broadcast new-message to the whole room.

        Raises:
            NotFound: Unknown course.
            AccessDenied: No access to the course, or announcing as a student.
            ValidationError: Bad content, type or reply target.
        """
        access = self.require_access(identity.user_id, course_id)
        text = lifecycle.validate_content(content, self.settings.max_content_length)
        if isinstance(message_type, MessageType):
            kind = message_type
        else:
            kind = lifecycle.parse_message_type(message_type)
        announcing = lifecycle.check_announcement(kind, bool(is_announcement), access)
        if reply_to:
            lifecycle.check_reply_target(self.store.get(reply_to), course_id)

        message = self.store.create(
            ChatMessage(
                courseId=course_id,
                senderId=identity.user_id,
                senderName=identity.display_name,
                senderRole=identity.role.value,
                content=text,
                type=kind,
                replyTo=reply_to or None,
                mentions=lifecycle.extract_mentions(text),
                isAnnouncement=announcing,
                createdAt=self._clock(),
            )
        )
        logger.info(f"[Coordinator] {identity.user_id} sent {message.id} to {course_id}")

        await self.registry.broadcast(
            course_id,
            {"type": "new-message", "courseId": course_id, "message": message.to_payload()},
        )
        return message

    async def edit(
        self, identity: Identity, message_id: Optional[str], content: Optional[str]
    ) -> ChatMessage:
        """Edit a message's content.

        An edit that leaves the content unchanged returns the message as is
        and broadcasts nothing.

        Raises:
            NotFound: Unknown message.
            AccessDenied: Caller is not the sender.
            ValidationError: Message deleted, or bad content.
            EditWindowExpired: Older than the edit window.
        """
        message = self._load(message_id)
        now = self._clock()
        window = timedelta(minutes=self.settings.edit_window_minutes)
        lifecycle.check_edit(message, identity.user_id, now, window)
        text = lifecycle.validate_content(content, self.settings.max_content_length)
        if text == message.content:
            return message

        updated = self.store.update_content(
            message.id, text, lifecycle.extract_mentions(text), now
        )
        await self.registry.broadcast(
            updated.courseId,
            {"type": "message-edited", "courseId": updated.courseId, "message": updated.to_payload()},
        )
        return updated

    async def soft_delete(self, identity: Identity, message_id: Optional[str]) -> ChatMessage:
        """Replace content with the placeholder and keep the row.

        Deleting an already-deleted message succeeds without a broadcast.

        Raises:
            NotFound: Unknown message.
            AccessDenied: Not the sender, course instructor or admin.
        """
        message = self._load(message_id)
        access = self.directory.get_course_access(identity.user_id, message.courseId)
        lifecycle.check_delete(message, identity.user_id, access)
        if message.isDeleted:
            return message

        deleted = self.store.soft_delete(message.id, self._clock())
        logger.info(f"[Coordinator] {identity.user_id} deleted {message.id}")
        await self.registry.broadcast(
            deleted.courseId,
            {
                "type": "message-deleted",
                "courseId": deleted.courseId,
                "messageId": deleted.id,
                "message": deleted.to_payload(),
            },
        )
        return deleted

    async def react(
        self, identity: Identity, message_id: Optional[str], reaction: Optional[str]
    ) -> ChatMessage:
        """Toggle the caller's reaction.

        Same kind again removes it; a different kind replaces it.

        Raises:
            ValidationError: Unknown kind, or the message is deleted.
            NotFound: Unknown message.
            AccessDenied: No access to the message's course.
        """
        kind = lifecycle.parse_reaction_kind(reaction)
        message = self._load(message_id)
        self.require_access(identity.user_id, message.courseId)
        if message.isDeleted:
            raise ValidationError("Cannot react to a deleted message")

        next_kind = lifecycle.toggle_reaction(message.reaction_of(identity.user_id), kind)
        updated = self.store.set_reaction(message.id, identity.user_id, next_kind, self._clock())
        await self.registry.broadcast(
            updated.courseId,
            {"type": "message-reaction-updated", **updated.reactions_payload()},
        )
        return updated

    async def mark_read(self, identity: Identity, message_ids: Iterable[str]) -> int:
        """Record read receipts. Unknown ids are skipped; nothing is broadcast.

        Returns:
            Number of newly recorded reads.

        Raises:
            ValidationError: ``message_ids`` is not a list of strings.
            AccessDenied: Some message belongs to a course the caller cannot access.
        """
        if isinstance(message_ids, str) or message_ids is None:
            raise ValidationError("messageIds must be a list")
        ids = list(message_ids)
        if not all(isinstance(i, str) for i in ids):
            raise ValidationError("messageIds must be a list of strings")

        messages = self.store.get_many(ids)
        for course_id in {m.courseId for m in messages}:
            self.require_access(identity.user_id, course_id)
        return self.store.mark_read([m.id for m in messages], identity.user_id, self._clock())

    # =========================================================================
    # Queries
    # =========================================================================

    def list_recent(
        self,
        identity: Identity,
        course_id: str,
        limit: Optional[int] = None,
        before: Optional[datetime] = None,
    ) -> Tuple[List[ChatMessage], bool]:
        """One page of history.

        Returns:
            (messages in chronological order, whether older messages exist)
        """
        self.require_access(identity.user_id, course_id)
        limit = self._page_size(limit, self.settings.recent_messages_limit)
        rows = self.store.list_recent(course_id, limit + 1, before)
        has_more = len(rows) > limit
        return list(reversed(rows[:limit])), has_more

    def search(
        self,
        identity: Identity,
        course_id: str,
        query: Optional[str],
        limit: Optional[int] = None,
    ) -> List[ChatMessage]:
        self.require_access(identity.user_id, course_id)
        term = (query or "").strip()
        minimum = self.settings.min_search_length
        if len(term) < minimum:
            raise ValidationError(f"Search query must be at least {minimum} characters")
        limit = self._page_size(limit, self.settings.default_search_limit)
        return self.store.search(course_id, term, limit)

    def unread_count(self, identity: Identity, course_id: str) -> int:
        self.require_access(identity.user_id, course_id)
        return self.store.unread_count(course_id, identity.user_id)


# ---------------------------------------------------------------------------
# Singleton
# ---------------------------------------------------------------------------

_coordinator: Optional[MessageCoordinator] = None


def get_coordinator() -> MessageCoordinator:
    global _coordinator
    if _coordinator is None:
        _coordinator = MessageCoordinator()
    return _coordinator


def set_coordinator(coordinator: Optional[MessageCoordinator]) -> None:
    """Set (or clear, with None) the global coordinator."""
    global _coordinator
    _coordinator = coordinator
