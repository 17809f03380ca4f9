"""Tests for the message lifecycle coordinator.

Connections are FakeSockets joined through a private ConnectionRegistry,
so every broadcast can be inspected without a running server.
"""
import pytest

from app.chat.coordinator import MessageCoordinator
from app.chat.manager import ConnectionRegistry
from app.chat.schemas import DELETED_PLACEHOLDER, MessageType, ReactionKind
from app.errors import AccessDenied, EditWindowExpired, NotFound, ValidationError


@pytest.fixture
def rooms():
    return ConnectionRegistry()


@pytest.fixture
def coordinator(rooms, clock):
    return MessageCoordinator(registry=rooms, clock=clock)


async def joined(rooms, fake_socket, identity, course_id="course-1"):
    """Register a FakeSocket for ``identity`` and join it to a course."""
    socket = fake_socket()
    conn = rooms.register(socket, identity)
    await rooms.join_room(conn, course_id)
    socket.clear()
    return socket


class TestSend:
    @pytest.mark.asyncio
    async def test_broadcasts_to_every_member_including_sender(
        self, coordinator, rooms, fake_socket, identity_of
    ):
        sam = identity_of("student-1")
        sam_socket = await joined(rooms, fake_socket, sam)
        teacher_socket = await joined(rooms, fake_socket, identity_of("teacher-1"))
        sam_socket.clear()

        message = await coordinator.send(sam, "course-1", "  Hello class  ")

        assert message.content == "Hello class"
        assert message.senderName == "Sam"
        assert message.senderRole == "student"
        for socket in (sam_socket, teacher_socket):
            assert socket.sent == [
                {"type": "new-message", "courseId": "course-1", "message": message.to_payload()}
            ]

    @pytest.mark.asyncio
    async def test_announcement_from_instructor(
        self, coordinator, rooms, fake_socket, identity_of
    ):
        """A student in the room sees the instructor's announcement."""
        sam_socket = await joined(rooms, fake_socket, identity_of("student-1"))

        await coordinator.send(
            identity_of("teacher-1"), "course-1", "Welcome to the course",
            message_type="announcement",
        )

        [event] = sam_socket.of_type("new-message")
        assert event["message"]["isAnnouncement"] is True
        assert event["message"]["type"] == "announcement"
        assert event["message"]["content"] == "Welcome to the course"

    @pytest.mark.asyncio
    async def test_student_cannot_announce(self, coordinator, identity_of, store):
        with pytest.raises(AccessDenied):
            await coordinator.send(
                identity_of("student-1"), "course-1", "I am the teacher now",
                is_announcement=True,
            )
        assert store.count("course-1") == 0

    @pytest.mark.asyncio
    async def test_non_member_cannot_send(self, coordinator, identity_of, store):
        with pytest.raises(AccessDenied):
            await coordinator.send(identity_of("student-3"), "course-1", "hi")
        with pytest.raises(AccessDenied):
            await coordinator.send(identity_of("dropped-1"), "course-1", "hi")
        assert store.count("course-1") == 0

    @pytest.mark.asyncio
    async def test_admin_can_send_anywhere(self, coordinator, identity_of):
        message = await coordinator.send(identity_of("admin-1"), "course-2", "Maintenance tonight")
        assert message.courseId == "course-2"

    @pytest.mark.asyncio
    async def test_unknown_course(self, coordinator, identity_of):
        with pytest.raises(NotFound):
            await coordinator.send(identity_of("admin-1"), "no-such-course", "hi")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("content", ["", "   ", None])
    async def test_empty_content_rejected(self, coordinator, identity_of, content):
        with pytest.raises(ValidationError):
            await coordinator.send(identity_of("student-1"), "course-1", content)

    @pytest.mark.asyncio
    async def test_content_length_limit(self, coordinator, identity_of):
        sam = identity_of("student-1")
        message = await coordinator.send(sam, "course-1", "x" * 2000)
        assert len(message.content) == 2000

        with pytest.raises(ValidationError):
            await coordinator.send(sam, "course-1", "x" * 2001)

    @pytest.mark.asyncio
    async def test_unknown_message_type(self, coordinator, identity_of):
        with pytest.raises(ValidationError):
            await coordinator.send(identity_of("student-1"), "course-1", "hi", message_type="video")

    @pytest.mark.asyncio
    async def test_reply_must_stay_in_course(self, coordinator, identity_of):
        other = await coordinator.send(identity_of("student-3"), "course-2", "over here")
        with pytest.raises(ValidationError):
            await coordinator.send(
                identity_of("student-1"), "course-1", "replying", reply_to=other.id
            )
        with pytest.raises(ValidationError):
            await coordinator.send(
                identity_of("student-1"), "course-1", "replying", reply_to="missing"
            )

    @pytest.mark.asyncio
    async def test_reply_carries_preview(self, coordinator, identity_of):
        question = await coordinator.send(identity_of("student-1"), "course-1", "When is the exam?")
        answer = await coordinator.send(
            identity_of("teacher-1"), "course-1", "Friday", reply_to=question.id
        )
        assert answer.replyTo == question.id
        assert answer.replyPreview.content == "When is the exam?"
        assert answer.replyPreview.senderName == "Sam"

    @pytest.mark.asyncio
    async def test_mentions_extracted(self, coordinator, identity_of):
        message = await coordinator.send(
            identity_of("student-1"), "course-1", "@riley and @ada, see @riley's notes"
        )
        assert message.mentions == ["riley", "ada"]

    @pytest.mark.asyncio
    async def test_broadcasts_keep_issue_order(
        self, coordinator, rooms, fake_socket, identity_of
    ):
        socket = await joined(rooms, fake_socket, identity_of("teacher-1"))
        sam = identity_of("student-1")

        for i in range(10):
            await coordinator.send(sam, "course-1", f"message {i}")

        contents = [e["message"]["content"] for e in socket.of_type("new-message")]
        assert contents == [f"message {i}" for i in range(10)]

    @pytest.mark.asyncio
    async def test_failed_persist_broadcasts_nothing(
        self, coordinator, rooms, fake_socket, identity_of, store, monkeypatch
    ):
        socket = await joined(rooms, fake_socket, identity_of("teacher-1"))

        def broken_create(message):
            raise RuntimeError("disk full")

        monkeypatch.setattr(store, "create", broken_create)
        with pytest.raises(RuntimeError):
            await coordinator.send(identity_of("student-1"), "course-1", "lost")
        assert socket.sent == []


class TestEdit:
    @pytest.mark.asyncio
    async def test_edit_inside_window(self, coordinator, clock, identity_of):
        sam = identity_of("student-1")
        message = await coordinator.send(sam, "course-1", "Hi")

        clock.advance(minutes=14, seconds=59)
        edited = await coordinator.edit(sam, message.id, "Hi there")

        assert edited.content == "Hi there"
        assert edited.isEdited is True
        assert edited.editedAt == clock.now

    @pytest.mark.asyncio
    async def test_edit_window_is_inclusive(self, coordinator, clock, identity_of):
        sam = identity_of("student-1")
        message = await coordinator.send(sam, "course-1", "Hi")

        clock.advance(minutes=15)
        edited = await coordinator.edit(sam, message.id, "Still in time")
        assert edited.content == "Still in time"

    @pytest.mark.asyncio
    async def test_edit_after_window_expired(self, coordinator, clock, identity_of, store):
        sam = identity_of("student-1")
        message = await coordinator.send(sam, "course-1", "Hi")

        clock.advance(minutes=15, seconds=1)
        with pytest.raises(EditWindowExpired):
            await coordinator.edit(sam, message.id, "Hi there")

    @pytest.mark.asyncio
    async def test_late_edit_leaves_content(
        self, coordinator, rooms, fake_socket, clock, identity_of, store
    ):
        """An edit sixteen minutes later fails and changes nothing."""
        sam = identity_of("student-1")
        socket = await joined(rooms, fake_socket, identity_of("teacher-1"))
        message = await coordinator.send(sam, "course-1", "Hi")
        socket.clear()

        clock.advance(minutes=16)
        with pytest.raises(EditWindowExpired):
            await coordinator.edit(sam, message.id, "Hi there")

        stored = store.get(message.id)
        assert stored.content == "Hi"
        assert stored.isEdited is False
        assert socket.sent == []

    @pytest.mark.asyncio
    async def test_only_sender_can_edit(self, coordinator, clock, identity_of):
        message = await coordinator.send(identity_of("student-1"), "course-1", "Hi")

        with pytest.raises(AccessDenied):
            await coordinator.edit(identity_of("student-2"), message.id, "hijacked")
        with pytest.raises(AccessDenied):
            await coordinator.edit(identity_of("teacher-1"), message.id, "moderated")

        clock.advance(hours=2)
        with pytest.raises(AccessDenied):
            await coordinator.edit(identity_of("student-2"), message.id, "hijacked")

    @pytest.mark.asyncio
    async def test_edit_broadcasts_message_edited(
        self, coordinator, rooms, fake_socket, identity_of
    ):
        sam = identity_of("student-1")
        socket = await joined(rooms, fake_socket, identity_of("teacher-1"))
        message = await coordinator.send(sam, "course-1", "Hi @ada")
        socket.clear()

        await coordinator.edit(sam, message.id, "Hi @riley")

        [event] = socket.sent
        assert event["type"] == "message-edited"
        assert event["message"]["id"] == message.id
        assert event["message"]["content"] == "Hi @riley"
        assert event["message"]["mentions"] == ["riley"]
        assert event["message"]["isEdited"] is True

    @pytest.mark.asyncio
    async def test_identical_edit_is_noop(self, coordinator, rooms, fake_socket, identity_of):
        sam = identity_of("student-1")
        socket = await joined(rooms, fake_socket, identity_of("teacher-1"))
        message = await coordinator.send(sam, "course-1", "Hi")
        socket.clear()

        result = await coordinator.edit(sam, message.id, "  Hi ")

        assert result.isEdited is False
        assert socket.sent == []

    @pytest.mark.asyncio
    async def test_cannot_edit_deleted(self, coordinator, identity_of):
        sam = identity_of("student-1")
        message = await coordinator.send(sam, "course-1", "oops")
        await coordinator.soft_delete(sam, message.id)

        with pytest.raises(ValidationError):
            await coordinator.edit(sam, message.id, "resurrected")

    @pytest.mark.asyncio
    async def test_unknown_message(self, coordinator, identity_of):
        with pytest.raises(NotFound):
            await coordinator.edit(identity_of("student-1"), "missing", "x")


class TestSoftDelete:
    @pytest.mark.asyncio
    async def test_delete_replaces_content_and_keeps_row(
        self, coordinator, rooms, fake_socket, identity_of, store
    ):
        sam = identity_of("student-1")
        socket = await joined(rooms, fake_socket, identity_of("teacher-1"))
        message = await coordinator.send(sam, "course-1", "regrettable")
        socket.clear()

        deleted = await coordinator.soft_delete(sam, message.id)

        assert deleted.content == DELETED_PLACEHOLDER
        assert deleted.isDeleted is True
        assert deleted.deletedAt is not None
        assert store.get(message.id) is not None
        [event] = socket.sent
        assert event["type"] == "message-deleted"
        assert event["messageId"] == message.id
        assert event["message"]["content"] == DELETED_PLACEHOLDER

    @pytest.mark.asyncio
    async def test_reply_chain_survives_delete(self, coordinator, identity_of, store):
        sam = identity_of("student-1")
        parent = await coordinator.send(sam, "course-1", "original question")
        reply = await coordinator.send(identity_of("teacher-1"), "course-1", "answer", reply_to=parent.id)

        await coordinator.soft_delete(sam, parent.id)

        reloaded = store.get(reply.id)
        assert reloaded.replyTo == parent.id
        assert reloaded.replyPreview.isDeleted is True
        assert reloaded.replyPreview.content == DELETED_PLACEHOLDER

    @pytest.mark.asyncio
    @pytest.mark.parametrize("moderator", ["teacher-1", "admin-1"])
    async def test_instructor_and_admin_can_delete(self, coordinator, identity_of, moderator):
        message = await coordinator.send(identity_of("student-1"), "course-1", "spam")
        deleted = await coordinator.soft_delete(identity_of(moderator), message.id)
        assert deleted.isDeleted is True

    @pytest.mark.asyncio
    @pytest.mark.parametrize("other", ["student-2", "teacher-2"])
    async def test_others_cannot_delete(self, coordinator, identity_of, other):
        message = await coordinator.send(identity_of("student-1"), "course-1", "mine")
        with pytest.raises(AccessDenied):
            await coordinator.soft_delete(identity_of(other), message.id)

    @pytest.mark.asyncio
    async def test_second_delete_is_noop(self, coordinator, rooms, fake_socket, identity_of):
        sam = identity_of("student-1")
        socket = await joined(rooms, fake_socket, identity_of("teacher-1"))
        message = await coordinator.send(sam, "course-1", "bye")
        first = await coordinator.soft_delete(sam, message.id)
        socket.clear()

        second = await coordinator.soft_delete(sam, message.id)

        assert second.deletedAt == first.deletedAt
        assert socket.sent == []


class TestReactions:
    @pytest.mark.asyncio
    async def test_same_kind_twice_removes(self, coordinator, identity_of):
        sam = identity_of("student-1")
        message = await coordinator.send(identity_of("teacher-1"), "course-1", "Quiz tomorrow")

        once = await coordinator.react(sam, message.id, "like")
        assert [(r.userId, r.kind) for r in once.reactions] == [("student-1", ReactionKind.LIKE)]

        twice = await coordinator.react(sam, message.id, "like")
        assert twice.reactions == []
        assert twice.reactionCounts == {}

    @pytest.mark.asyncio
    async def test_different_kind_replaces(self, coordinator, identity_of):
        sam = identity_of("student-1")
        message = await coordinator.send(identity_of("teacher-1"), "course-1", "Quiz tomorrow")

        await coordinator.react(sam, message.id, "like")
        result = await coordinator.react(sam, message.id, "love")

        assert [(r.userId, r.kind) for r in result.reactions] == [("student-1", ReactionKind.LOVE)]

    @pytest.mark.asyncio
    async def test_two_students_then_one_changes(
        self, coordinator, rooms, fake_socket, identity_of
    ):
        u1, u2 = identity_of("student-1"), identity_of("student-2")
        socket = await joined(rooms, fake_socket, identity_of("teacher-1"))
        message = await coordinator.send(identity_of("teacher-1"), "course-1", "Grades are out")

        await coordinator.react(u1, message.id, "like")
        both = await coordinator.react(u2, message.id, "like")
        assert both.reactionCounts == {"like": 2}

        changed = await coordinator.react(u1, message.id, "love")
        assert {r.userId: r.kind.value for r in changed.reactions} == {
            "student-1": "love",
            "student-2": "like",
        }

        last = socket.of_type("message-reaction-updated")[-1]
        assert last["messageId"] == message.id
        assert last["reactionCounts"] == {"love": 1, "like": 1}
        assert len(last["reactions"]) == 2

    @pytest.mark.asyncio
    async def test_unknown_kind(self, coordinator, identity_of):
        message = await coordinator.send(identity_of("teacher-1"), "course-1", "hi")
        with pytest.raises(ValidationError):
            await coordinator.react(identity_of("student-1"), message.id, "thumbs")

    @pytest.mark.asyncio
    async def test_cannot_react_to_deleted(self, coordinator, identity_of):
        message = await coordinator.send(identity_of("student-1"), "course-1", "gone soon")
        await coordinator.soft_delete(identity_of("teacher-1"), message.id)
        with pytest.raises(ValidationError):
            await coordinator.react(identity_of("student-2"), message.id, "like")

    @pytest.mark.asyncio
    async def test_outsider_cannot_react(self, coordinator, identity_of):
        message = await coordinator.send(identity_of("teacher-1"), "course-1", "hi")
        with pytest.raises(AccessDenied):
            await coordinator.react(identity_of("student-3"), message.id, "like")


class TestReads:
    @pytest.mark.asyncio
    async def test_mark_read_is_idempotent(self, coordinator, identity_of):
        sam = identity_of("student-1")
        message = await coordinator.send(identity_of("teacher-1"), "course-1", "Read chapter 3")
        assert coordinator.unread_count(sam, "course-1") == 1

        assert await coordinator.mark_read(sam, [message.id]) == 1
        after_first = coordinator.unread_count(sam, "course-1")
        assert await coordinator.mark_read(sam, [message.id]) == 0
        assert coordinator.unread_count(sam, "course-1") == after_first == 0

    @pytest.mark.asyncio
    async def test_unknown_ids_skipped(self, coordinator, identity_of):
        sam = identity_of("student-1")
        message = await coordinator.send(identity_of("teacher-1"), "course-1", "hello")
        assert await coordinator.mark_read(sam, ["missing", message.id, message.id]) == 1

    @pytest.mark.asyncio
    async def test_inaccessible_course(self, coordinator, identity_of):
        message = await coordinator.send(identity_of("student-3"), "course-2", "private")
        with pytest.raises(AccessDenied):
            await coordinator.mark_read(identity_of("student-1"), [message.id])

    @pytest.mark.asyncio
    async def test_mark_read_does_not_broadcast(
        self, coordinator, rooms, fake_socket, identity_of
    ):
        socket = await joined(rooms, fake_socket, identity_of("teacher-1"))
        message = await coordinator.send(identity_of("teacher-1"), "course-1", "hello")
        socket.clear()

        await coordinator.mark_read(identity_of("student-1"), [message.id])
        assert socket.sent == []

    @pytest.mark.asyncio
    async def test_message_ids_must_be_a_list(self, coordinator, identity_of):
        with pytest.raises(ValidationError):
            await coordinator.mark_read(identity_of("student-1"), "abc")

    @pytest.mark.asyncio
    async def test_unread_count_excludes_own_and_deleted(self, coordinator, identity_of):
        sam, teacher = identity_of("student-1"), identity_of("teacher-1")
        await coordinator.send(sam, "course-1", "my own")
        first = await coordinator.send(teacher, "course-1", "one")
        await coordinator.send(teacher, "course-1", "two")
        third = await coordinator.send(teacher, "course-1", "three")

        await coordinator.soft_delete(teacher, third.id)
        await coordinator.mark_read(sam, [first.id])

        assert coordinator.unread_count(sam, "course-1") == 1


class TestQueries:
    @pytest.mark.asyncio
    async def test_list_recent_pages_backwards(self, coordinator, clock, identity_of):
        sam = identity_of("student-1")
        for i in range(5):
            await coordinator.send(sam, "course-1", f"m{i}")
            clock.advance(seconds=1)

        page, has_more = coordinator.list_recent(sam, "course-1", limit=2)
        assert [m.content for m in page] == ["m3", "m4"]
        assert has_more is True

        older, has_more = coordinator.list_recent(sam, "course-1", limit=2, before=page[0].createdAt)
        assert [m.content for m in older] == ["m1", "m2"]
        assert has_more is True

        oldest, has_more = coordinator.list_recent(sam, "course-1", limit=2, before=older[0].createdAt)
        assert [m.content for m in oldest] == ["m0"]
        assert has_more is False

    @pytest.mark.asyncio
    async def test_list_recent_skips_deleted(self, coordinator, identity_of):
        sam = identity_of("student-1")
        keep = await coordinator.send(sam, "course-1", "keep")
        drop = await coordinator.send(sam, "course-1", "drop")
        await coordinator.soft_delete(sam, drop.id)

        page, _ = coordinator.list_recent(sam, "course-1")
        assert [m.id for m in page] == [keep.id]

    def test_list_recent_limit_bounds(self, coordinator, identity_of):
        with pytest.raises(ValidationError):
            coordinator.list_recent(identity_of("student-1"), "course-1", limit=0)
        with pytest.raises(ValidationError):
            coordinator.list_recent(identity_of("student-1"), "course-1", limit=101)

    @pytest.mark.asyncio
    async def test_search(self, coordinator, clock, identity_of):
        sam, teacher = identity_of("student-1"), identity_of("teacher-1")
        first = await coordinator.send(teacher, "course-1", "Assignment 1 is posted")
        clock.advance(minutes=1)
        await coordinator.send(sam, "course-1", "no match here")
        clock.advance(minutes=1)
        second = await coordinator.send(sam, "course-1", "question about the ASSIGNMENT")
        clock.advance(minutes=1)
        gone = await coordinator.send(sam, "course-1", "assignment rant")
        await coordinator.soft_delete(sam, gone.id)

        with pytest.raises(ValidationError):
            coordinator.search(sam, "course-1", "a", 20)
        with pytest.raises(ValidationError):
            coordinator.search(sam, "course-1", "  a  ", 20)

        results = coordinator.search(sam, "course-1", "assignment", 20)
        assert [m.id for m in results] == [second.id, first.id]

    @pytest.mark.asyncio
    async def test_search_default_limit(self, coordinator, identity_of):
        sam = identity_of("student-1")
        for i in range(25):
            await coordinator.send(sam, "course-1", f"lab report {i}")
        assert len(coordinator.search(sam, "course-1", "lab")) == 20

    def test_queries_require_access(self, coordinator, identity_of):
        outsider = identity_of("student-3")
        with pytest.raises(AccessDenied):
            coordinator.list_recent(outsider, "course-1")
        with pytest.raises(AccessDenied):
            coordinator.search(outsider, "course-1", "assignment")
        with pytest.raises(AccessDenied):
            coordinator.unread_count(outsider, "course-1")

    @pytest.mark.asyncio
    async def test_message_type_enum_accepted(self, coordinator, identity_of):
        message = await coordinator.send(
            identity_of("student-1"), "course-1", "diagram.png", message_type=MessageType.IMAGE
        )
        assert message.type == MessageType.IMAGE
