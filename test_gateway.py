"""
Tests for the message store gateway.

Tests cover:
- Message creation and validation
- Ordering of listed messages
- Ownership rules for update and delete
- Soft-delete semantics and idempotency
- Preferences with default fallback
- Behaviour while the store is unreachable
- Deployment options
"""

from datetime import datetime, timedelta, timezone

import pytest

from coursechat import storage
from coursechat.errors import ForbiddenError, NotFoundError, ValidationError
from coursechat.fallback import FallbackPolicy
from coursechat.gateway import Author, GatewayOptions, MessageGateway
from coursechat.schemas import REDACTED_TEXT, MessagePatch
from coursechat.utils import format_timestamp


ALICE = Author(user_id="alice", display_name="Alice")
BOB = Author(user_id="bob", display_name="Bob")


@pytest.fixture
def gateway(db):
    return MessageGateway(db)


@pytest.fixture
def offline_gateway(broken_db):
    return MessageGateway(broken_db)


class TestCreateMessage:
    """Test message creation."""

    def test_create_returns_fresh_message(self, gateway):
        """Created messages get an id, the author and a current timestamp."""
        before = datetime.now(timezone.utc)
        message = gateway.create_message("mathematik", "Hello", ALICE)

        assert message.id
        assert message.course_id == "mathematik"
        assert message.text == "Hello"
        assert message.author_id == "alice"
        assert message.author_display_name == "Alice"
        assert message.is_deleted is False
        assert message.original_text is None
        assert message.timestamp >= before

    def test_ids_are_unique(self, gateway):
        ids = {gateway.create_message("mathematik", f"m{i}", ALICE).id for i in range(20)}
        assert len(ids) == 20

    def test_created_message_is_listed(self, gateway):
        """Scenario: create "Hello" as A, then list the course."""
        gateway.create_message("mathematik", "Hello", ALICE)

        messages = gateway.list_messages("mathematik")

        assert any(
            m.text == "Hello" and m.author_id == "alice" and not m.is_deleted
            for m in messages
        )

    @pytest.mark.parametrize("course_id,text", [
        ("", "Hello"),
        (None, "Hello"),
        ("mathematik", ""),
        ("mathematik", "   "),
        ("mathematik", None),
    ])
    def test_missing_fields_rejected(self, gateway, course_id, text):
        with pytest.raises(ValidationError):
            gateway.create_message(course_id, text, ALICE)

    def test_create_without_store_returns_message(self, offline_gateway):
        """Persistence failure still acknowledges the constructed message."""
        message = offline_gateway.create_message("mathematik", "Hello", ALICE)

        assert message.id
        assert message.text == "Hello"
        assert message.is_deleted is False


class TestListMessages:
    """Test listing and ordering."""

    def test_messages_are_scoped_to_course(self, gateway):
        gateway.create_message("mathematik", "math", ALICE)
        gateway.create_message("betriebssysteme", "os", ALICE)

        texts = [m.text for m in gateway.list_messages("mathematik")]

        assert texts == ["math"]

    def test_ordered_by_timestamp(self, db, gateway):
        """Rows inserted out of order are listed oldest first."""
        base = datetime(2025, 1, 15, 10, 0, tzinfo=timezone.utc)
        for minutes, message_id in [(5, "late"), (0, "early"), (2, "middle")]:
            storage.insert_message(
                db, message_id, "mathematik", message_id, "alice", "Alice",
                format_timestamp(base + timedelta(minutes=minutes)),
            )

        messages = gateway.list_messages("mathematik")

        assert [m.id for m in messages] == ["early", "middle", "late"]
        timestamps = [m.timestamp for m in messages]
        assert timestamps == sorted(timestamps)

    def test_timestamp_ties_keep_insertion_order(self, db, gateway):
        ts = format_timestamp(datetime(2025, 1, 15, 10, 0, tzinfo=timezone.utc))
        for message_id in ["first", "second", "third"]:
            storage.insert_message(db, message_id, "mathematik", message_id, "alice", "Alice", ts)

        assert [m.id for m in gateway.list_messages("mathematik")] == ["first", "second", "third"]

    def test_deleted_messages_are_listed_redacted(self, gateway):
        message = gateway.create_message("mathematik", "secret", ALICE)
        gateway.delete_message(message.id, ALICE)

        [listed] = gateway.list_messages("mathematik")

        assert listed.is_deleted is True
        assert listed.text == REDACTED_TEXT

    def test_unreachable_store_returns_welcome_message(self, offline_gateway):
        [welcome] = offline_gateway.list_messages("mathematik")

        assert welcome.id == "welcome-mathematik"
        assert welcome.text == "Welcome to the chat for mathematik"
        assert welcome.author_id == "system"
        assert welcome.is_deleted is False

    def test_welcome_message_is_stable_between_calls(self, broken_db):
        """Repeated fallback listings compare equal, so polling clients stay quiet."""
        policy = FallbackPolicy()
        first = MessageGateway(broken_db, policy=policy).list_messages("mathematik")
        second = MessageGateway(broken_db, policy=policy).list_messages("mathematik")

        assert first == second


class TestUpdateMessage:
    """Test partial updates and ownership."""

    def test_author_can_edit_text(self, gateway):
        message = gateway.create_message("mathematik", "Helo", ALICE)

        updated = gateway.update_message(message.id, ALICE, MessagePatch(text="Hello"))

        assert updated.text == "Hello"
        assert updated.id == message.id
        assert updated.author_id == "alice"
        assert gateway.list_messages("mathematik")[0].text == "Hello"

    def test_non_author_is_forbidden(self, gateway):
        message = gateway.create_message("mathematik", "Hello", ALICE)

        with pytest.raises(ForbiddenError):
            gateway.update_message(message.id, BOB, MessagePatch(text="Hijacked"))

        [unchanged] = gateway.list_messages("mathematik")
        assert unchanged == message

    def test_unknown_message_not_found(self, gateway):
        with pytest.raises(NotFoundError):
            gateway.update_message("does-not-exist", ALICE, MessagePatch(text="x"))

    def test_only_present_fields_change(self, gateway):
        message = gateway.create_message("mathematik", "Hello", ALICE)

        updated = gateway.update_message(message.id, ALICE, MessagePatch())

        assert updated == message

    def test_empty_text_rejected(self, gateway):
        message = gateway.create_message("mathematik", "Hello", ALICE)

        with pytest.raises(ValidationError):
            gateway.update_message(message.id, ALICE, MessagePatch(text="  "))

    def test_patch_deleting_redacts(self, gateway):
        message = gateway.create_message("mathematik", "Hello", ALICE)

        updated = gateway.update_message(message.id, ALICE, MessagePatch(is_deleted=True))

        assert updated.is_deleted is True
        assert updated.text == REDACTED_TEXT
        assert updated.original_text == "Hello"

    def test_undelete_rejected(self, gateway):
        message = gateway.create_message("mathematik", "Hello", ALICE)
        gateway.delete_message(message.id, ALICE)

        with pytest.raises(ValidationError):
            gateway.update_message(message.id, ALICE, MessagePatch(is_deleted=False))

    def test_editing_deleted_message_rejected(self, gateway):
        message = gateway.create_message("mathematik", "Hello", ALICE)
        gateway.delete_message(message.id, ALICE)

        with pytest.raises(ValidationError):
            gateway.update_message(message.id, ALICE, MessagePatch(text="Back"))

    def test_original_text_without_delete_rejected(self, gateway):
        message = gateway.create_message("mathematik", "Hello", ALICE)

        with pytest.raises(ValidationError):
            gateway.update_message(message.id, ALICE, MessagePatch(original_text="forged"))

    def test_update_without_store_uses_stand_in(self, offline_gateway):
        """While the store is down the caller owns a synthesized stand-in."""
        updated = offline_gateway.update_message("m1", ALICE, MessagePatch(text="Edited"))

        assert updated.id == "m1"
        assert updated.text == "Edited"
        assert updated.author_id == "alice"


class TestDeleteMessage:
    """Test soft delete."""

    def test_delete_redacts_and_keeps_original(self, gateway):
        """Scenario: A deletes own message M."""
        message = gateway.create_message("mathematik", "Hello", ALICE)

        assert gateway.delete_message(message.id, ALICE) is True

        [deleted] = gateway.list_messages("mathematik")
        assert deleted.is_deleted is True
        assert deleted.text == "Message deleted"
        assert deleted.original_text == "Hello"

    def test_delete_twice_keeps_original_text(self, gateway):
        message = gateway.create_message("mathematik", "Hello", ALICE)

        gateway.delete_message(message.id, ALICE)
        gateway.delete_message(message.id, ALICE)

        [deleted] = gateway.list_messages("mathematik")
        assert deleted.original_text == "Hello"
        assert deleted.text == REDACTED_TEXT

    def test_patch_delete_after_delete_keeps_original_text(self, gateway):
        message = gateway.create_message("mathematik", "Hello", ALICE)
        gateway.delete_message(message.id, ALICE)

        updated = gateway.update_message(
            message.id, ALICE, MessagePatch(is_deleted=True, original_text="other")
        )

        assert updated.original_text == "Hello"

    def test_non_author_cannot_delete(self, gateway):
        """Scenario: B deletes A's message."""
        message = gateway.create_message("mathematik", "Hello", ALICE)

        with pytest.raises(ForbiddenError):
            gateway.delete_message(message.id, BOB)

        [still_there] = gateway.list_messages("mathematik")
        assert still_there.is_deleted is False
        assert still_there.text == "Hello"

    def test_unknown_message_not_found(self, gateway):
        with pytest.raises(NotFoundError):
            gateway.delete_message("does-not-exist", ALICE)

    def test_delete_without_store_acknowledged(self, offline_gateway):
        assert offline_gateway.delete_message("m1", ALICE) is True


class TestPreferences:
    """Test preference read/write."""

    def test_default_preference(self, gateway):
        """Scenario: no stored preference yields "mathematik"."""
        preference = gateway.get_preference("alice")

        assert preference.selected_course == "mathematik"

    def test_set_then_get(self, gateway):
        assert gateway.set_preference("alice", "betriebssysteme") is True

        assert gateway.get_preference("alice").selected_course == "betriebssysteme"

    def test_set_overwrites(self, gateway):
        gateway.set_preference("alice", "betriebssysteme")
        gateway.set_preference("alice", "algorithmenUndProgrammiertechniken")

        assert gateway.get_preference("alice").selected_course == "algorithmenUndProgrammiertechniken"
        assert gateway.get_preference("bob").selected_course == "mathematik"

    def test_empty_course_rejected(self, gateway):
        with pytest.raises(ValidationError):
            gateway.set_preference("alice", "")

    def test_unreachable_store(self, offline_gateway):
        assert offline_gateway.set_preference("alice", "betriebssysteme") is True
        assert offline_gateway.get_preference("alice").selected_course == "mathematik"

    def test_preferences_not_persisted(self, db):
        gateway = MessageGateway(db, options=GatewayOptions(persist_preferences=False))

        assert gateway.set_preference("alice", "betriebssysteme") is True
        assert gateway.get_preference("alice").selected_course == "mathematik"

    def test_configured_default_course(self, db):
        gateway = MessageGateway(db, options=GatewayOptions(default_course="betriebssysteme"))

        assert gateway.get_preference("alice").selected_course == "betriebssysteme"
