"""Pydantic schemas for course chat messages.

``ChatMessage`` is both the record returned by the message store and the
payload broadcast to clients; ``to_payload()`` drops the read-by map, which
is only ever served through the unread-count query.

These schemas are used by:
    - MessageStore: DuckDB persistence layer
    - MessageCoordinator: lifecycle transitions and broadcasts
    - /chat REST endpoints and the /ws/chat socket
"""
import uuid
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, computed_field

# Content that replaces a soft-deleted message
DELETED_PLACEHOLDER = "[Message deleted]"


class MessageType(str, Enum):
    """Type of chat message.

    Attributes:
        TEXT: Regular text message.
        FILE: File attachment notice.
        IMAGE: Image attachment notice.
        ANNOUNCEMENT: Instructor/admin announcement.
    """
    TEXT = "text"
    FILE = "file"
    IMAGE = "image"
    ANNOUNCEMENT = "announcement"


class ReactionKind(str, Enum):
    LIKE = "like"
    LOVE = "love"
    LAUGH = "laugh"
    WOW = "wow"
    SAD = "sad"
    ANGRY = "angry"


class Reaction(BaseModel):
    """One user's reaction to a message (at most one per user)."""
    userId: str
    kind: ReactionKind
    createdAt: datetime


class ReplyPreview(BaseModel):
    """Snapshot of the message being replied to."""
    id: str
    content: str
    senderId: str
    senderName: str = ""
    isDeleted: bool = False


class ChatMessage(BaseModel):
    """Complete chat message with all metadata.

    Attributes:
        id: Unique message identifier (UUID).
        courseId: Course (room) the message belongs to; never changes.
        senderId: Author's user id.
        senderName: Author's display name at send time.
        senderRole: Author's platform role at send time.
        content: Message text, or the placeholder once deleted.
        type: text, file, image or announcement.
        replyTo: Id of the message this one replies to (same course).
        replyPreview: Current state of the replied-to message.
        reactions: Per-user reactions, oldest first.
        mentions: ``@handle`` tokens found in the content.
        isAnnouncement: Sent as an announcement.
        isEdited / editedAt: Set by a successful edit.
        isDeleted / deletedAt: Set by soft delete.
        createdAt: Server-assigned creation time (UTC); ordering key.
        readBy: user id -> read time. Never broadcast.
    """
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    courseId: str
    senderId: str
    senderName: str = ""
    senderRole: str = ""
    content: str
    type: MessageType = MessageType.TEXT
    replyTo: Optional[str] = None
    replyPreview: Optional[ReplyPreview] = None
    reactions: List[Reaction] = Field(default_factory=list)
    mentions: List[str] = Field(default_factory=list)
    isAnnouncement: bool = False
    isEdited: bool = False
    editedAt: Optional[datetime] = None
    isDeleted: bool = False
    deletedAt: Optional[datetime] = None
    createdAt: datetime
    readBy: Dict[str, datetime] = Field(default_factory=dict)

    @computed_field
    @property
    def reactionCounts(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for reaction in self.reactions:
            counts[reaction.kind.value] = counts.get(reaction.kind.value, 0) + 1
        return counts

    def reaction_of(self, user_id: str) -> Optional[ReactionKind]:
        for reaction in self.reactions:
            if reaction.userId == user_id:
                return reaction.kind
        return None

    def to_payload(self) -> dict:
        """JSON-serializable form sent to clients."""
        return self.model_dump(mode="json", exclude={"readBy"})

    def reactions_payload(self) -> dict:
        """Full reaction state for message-reaction-updated events."""
        return {
            "messageId": self.id,
            "courseId": self.courseId,
            "reactions": [r.model_dump(mode="json") for r in self.reactions],
            "reactionCounts": self.reactionCounts,
        }


# =============================================================================
# REST request bodies
# =============================================================================


class SendMessageRequest(BaseModel):
    """Body of POST /chat/courses/{course_id}/messages."""
    content: str = ""
    # Validated by the coordinator (400, not 422)
    messageType: Optional[str] = None
    replyTo: Optional[str] = None
    isAnnouncement: bool = False


class EditMessageRequest(BaseModel):
    content: str = ""


class ReactRequest(BaseModel):
    # Validated against ReactionKind by the coordinator (400, not 422)
    reaction: str = ""


class MarkReadRequest(BaseModel):
    messageIds: List[str] = Field(default_factory=list)
