"""Pure message lifecycle rules.

Nothing here touches the store or a socket; the coordinator calls these
checks before persisting, so a rejected request never writes or
broadcasts anything.
"""
import re
from datetime import datetime, timedelta
from typing import List, Optional

from app.courses.schemas import CourseAccess
from app.errors import AccessDenied, EditWindowExpired, ValidationError

from .schemas import ChatMessage, MessageType, ReactionKind

_MENTION_RE = re.compile(r"@(\w+)")


def validate_content(content: Optional[str], max_length: int) -> str:
    """Trim message content and enforce the non-empty / max length rules.

    Returns:
        The trimmed content.

    Raises:
        ValidationError: Empty after trimming, or longer than ``max_length``.
    """
    if not isinstance(content, str):
        raise ValidationError("Message content is required")
    text = content.strip()
    if not text:
        raise ValidationError("Message content cannot be empty")
    if len(text) > max_length:
        raise ValidationError(f"Message content cannot exceed {max_length} characters")
    return text


def parse_message_type(value: Optional[str]) -> MessageType:
    if value is None or value == "":
        return MessageType.TEXT
    try:
        return MessageType(value)
    except ValueError:
        raise ValidationError(f"Unknown message type: {value}")


def check_announcement(
    message_type: MessageType, is_announcement: bool, access: CourseAccess
) -> bool:
    """Resolve the announcement flag and enforce who may announce.

    Returns:
        Whether the message is an announcement.
    """
    announcing = is_announcement or message_type == MessageType.ANNOUNCEMENT
    if announcing and not access.can_announce:
        raise AccessDenied("Only instructors can send announcements")
    return announcing


def check_reply_target(parent: Optional[ChatMessage], course_id: str) -> None:
    """A reply must point at a live message in the same course."""
    if parent is None or parent.courseId != course_id:
        raise ValidationError("Reply target not found in this course")
    if parent.isDeleted:
        raise ValidationError("Cannot reply to a deleted message")


def check_edit(
    message: ChatMessage, user_id: str, now: datetime, window: timedelta
) -> None:
    """Only the sender, only while live, only inside the edit window.

    The window is inclusive: a message exactly ``window`` old may still be
    edited.
    """
    if message.senderId != user_id:
        raise AccessDenied("Only the sender can edit this message")
    if message.isDeleted:
        raise ValidationError("Cannot edit a deleted message")
    if now - message.createdAt > window:
        raise EditWindowExpired(
            f"Message can only be edited within {int(window.total_seconds() // 60)} minutes"
        )


def check_delete(message: ChatMessage, user_id: str, access: CourseAccess) -> None:
    if message.senderId == user_id or access.can_moderate:
        return
    raise AccessDenied("Not authorized to delete this message")


def parse_reaction_kind(value: Optional[str]) -> ReactionKind:
    try:
        return ReactionKind(value)
    except ValueError:
        allowed = ", ".join(k.value for k in ReactionKind)
        raise ValidationError(f"Invalid reaction type; expected one of: {allowed}")


def toggle_reaction(
    current: Optional[ReactionKind], requested: ReactionKind
) -> Optional[ReactionKind]:
    """Next reaction for a user: same kind again removes, otherwise set."""
    if current == requested:
        return None
    return requested


def extract_mentions(content: str) -> List[str]:
    """Distinct ``@handle`` tokens in order of first appearance."""
    return list(dict.fromkeys(_MENTION_RE.findall(content)))
