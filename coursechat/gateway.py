"""
Message store gateway.

One gateway serves every deployment variant of the chat service; the
variant is described by GatewayOptions. The gateway enforces ownership and
soft-delete rules and routes every store failure through FallbackPolicy.

Concurrent edits are last-writer-wins: update and delete do one lookup and
one unconditional write, with no version check.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from sqlalchemy.orm import Session

from coursechat import storage
from coursechat.errors import ForbiddenError, NotFoundError, ValidationError
from coursechat.fallback import FallbackPolicy, attempt
from coursechat.schemas import REDACTED_TEXT, Message, MessagePatch, Preference
from coursechat.utils import format_timestamp, new_message_id, utc_now

logger = logging.getLogger(__name__)


class IdentityMode(str, Enum):
    """Where the acting identity of a request comes from."""

    SESSION = "session"  # logged-in session user
    SHARED = "shared"  # asserted by the client in the request
    ANONYMOUS = "anonymous"  # everyone is the same anonymous user


@dataclass(frozen=True)
class Author:
    """Acting identity of a request."""

    user_id: str
    display_name: str


ANONYMOUS = Author(user_id="anonymous", display_name="Anonymous")


@dataclass(frozen=True)
class GatewayOptions:
    require_auth: bool = True
    identity_mode: IdentityMode = IdentityMode.SESSION
    persist_preferences: bool = True
    default_course: str = "mathematik"

    @classmethod
    def from_settings(cls, settings) -> "GatewayOptions":
        return cls(
            require_auth=settings.REQUIRE_AUTH,
            identity_mode=IdentityMode(settings.IDENTITY_MODE),
            persist_preferences=settings.PERSIST_PREFERENCES,
            default_course=settings.DEFAULT_COURSE,
        )


def _require(value: Optional[str], field_name: str) -> str:
    if value is None or not value.strip():
        raise ValidationError(f"{field_name} is required")
    return value


class MessageGateway:
    """Create/list/update/soft-delete messages and read/write preferences."""

    def __init__(
        self,
        db: Session,
        options: Optional[GatewayOptions] = None,
        policy: Optional[FallbackPolicy] = None,
    ):
        self.db = db
        self.options = options or GatewayOptions()
        self.policy = policy or FallbackPolicy(default_course=self.options.default_course)

    # -------------------------------------------------------------------------
    # Store access, each call returning plain schema objects
    # -------------------------------------------------------------------------

    def _fetch_course(self, course_id: str) -> list[Message]:
        return [Message.from_row(row) for row in storage.fetch_course_messages(self.db, course_id)]

    def _find(self, message_id: str) -> Optional[Message]:
        row = storage.find_message(self.db, message_id)
        return Message.from_row(row) if row is not None else None

    def _insert(self, message: Message) -> Message:
        row = storage.insert_message(
            self.db,
            message_id=message.id,
            course_id=message.course_id,
            text=message.text,
            author_id=message.author_id,
            author_display_name=message.author_display_name,
            ts=format_timestamp(message.timestamp),
        )
        return Message.from_row(row)

    def _write(self, message_id: str, fields: dict) -> Optional[Message]:
        if not storage.update_message_fields(self.db, message_id, fields):
            raise NotFoundError("Message not found")
        return self._find(message_id)

    def _find_preference(self, user_id: str) -> Optional[Preference]:
        row = storage.find_preference(self.db, user_id)
        if row is None:
            return None
        return Preference(user_id=row.user_id, selected_course=row.selected_course)

    # -------------------------------------------------------------------------
    # Messages
    # -------------------------------------------------------------------------

    def list_messages(self, course_id: str) -> list[Message]:
        """
        All messages of a course, oldest first.

        Deleted messages are included with their redacted text. Never fails:
        an unreachable store yields a single welcome message.
        """
        messages = self.policy.messages(attempt(self._fetch_course, course_id), course_id)
        logger.debug(f"Listing {len(messages)} messages for course {course_id}")
        return messages

    def create_message(self, course_id: Optional[str], text: Optional[str], author: Author) -> Message:
        """
        Create a message authored by ``author``.

        Persistence is best effort: the constructed message is returned even
        when the store rejects the write.
        """
        course_id = _require(course_id, "courseId")
        text = _require(text, "text")

        message = Message(
            id=new_message_id(),
            course_id=course_id,
            text=text,
            author_id=author.user_id,
            author_display_name=author.display_name,
            timestamp=utc_now(),
            is_deleted=False,
        )
        created = self.policy.written("create_message", attempt(self._insert, message), message)
        logger.info(f"Message created: id={created.id}, course={course_id}, author={author.user_id}")
        return created

    def _owned_message(self, message_id: str, author: Author, stand_in_text: Optional[str]) -> Message:
        lookup = attempt(self._find, message_id)
        message = self.policy.message_lookup(
            lookup, message_id, author.user_id, author.display_name, text=stand_in_text
        )
        if message is None:
            raise NotFoundError("Message not found")
        if message.author_id != author.user_id:
            logger.warning(f"User {author.user_id} tried to modify message {message_id} of {message.author_id}")
            raise ForbiddenError("You can only modify your own messages")
        return message

    @staticmethod
    def _redaction(message: Message, supplied_original: Optional[str] = None) -> dict:
        """Columns that soft-delete ``message``; an existing original_text wins."""
        if message.is_deleted:
            original = message.original_text
        else:
            original = message.original_text or supplied_original or message.text
        fields = {"is_deleted": True, "text": REDACTED_TEXT}
        if original is not None:
            fields["original_text"] = original
        return fields

    def _patch_fields(self, message: Message, patch: MessagePatch) -> dict:
        changes = patch.changes()

        if changes.get("is_deleted") is True:
            return self._redaction(message, changes.get("original_text"))
        if changes.get("is_deleted") is False and message.is_deleted:
            raise ValidationError("Deleted messages cannot be restored")
        if "original_text" in changes:
            raise ValidationError("originalText can only be set when deleting a message")

        fields = {}
        if "text" in changes:
            if message.is_deleted:
                raise ValidationError("Deleted messages cannot be edited")
            fields["text"] = _require(changes["text"], "text")
        return fields

    def update_message(self, message_id: str, author: Author, patch: MessagePatch) -> Message:
        """
        Apply the fields present in ``patch`` to a message owned by ``author``.

        Raises:
            NotFoundError: no message with that id
            ForbiddenError: author is not the owner
            ValidationError: the patch would break the soft-delete rules
        """
        message = self._owned_message(message_id, author, stand_in_text=patch.text)
        fields = self._patch_fields(message, patch)
        if not fields:
            return message

        local = message.model_copy(update=fields)
        updated = self.policy.written("update_message", attempt(self._write, message_id, fields), local)
        logger.info(f"Message updated: id={message_id}, fields={sorted(fields)}")
        return updated

    def delete_message(self, message_id: str, author: Author) -> bool:
        """
        Soft-delete a message owned by ``author``.

        Idempotent: deleting again keeps the first original_text.
        """
        message = self._owned_message(message_id, author, stand_in_text="Message to delete")
        fields = self._redaction(message)
        self.policy.written("delete_message", attempt(self._write, message_id, fields), message)
        logger.info(f"Message deleted: id={message_id}, author={author.user_id}")
        return True

    # -------------------------------------------------------------------------
    # Preferences
    # -------------------------------------------------------------------------

    def get_preference(self, user_id: str) -> Preference:
        """Stored preference, or the default course. Never fails."""
        if not self.options.persist_preferences:
            return self.policy.default_preference(user_id)
        return self.policy.preference(attempt(self._find_preference, user_id), user_id)

    def set_preference(self, user_id: str, selected_course: Optional[str]) -> bool:
        """
        Upsert the selected course of a user.

        Always acknowledged once validated; a lost preference is not fatal.
        """
        selected_course = _require(selected_course, "selectedCourse")
        if not self.options.persist_preferences:
            logger.debug(f"Preferences not persisted, ignoring {selected_course} for {user_id}")
            return True
        result = attempt(storage.upsert_preference, self.db, user_id, selected_course)
        return self.policy.written("set_preference", result, True)
