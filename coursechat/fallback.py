"""
Store results and the policy that substitutes fallback values.

Store calls are wrapped by ``attempt`` into a ``StoreResult`` holding either
the value or the StoreUnavailableError. The gateway never catches store
errors itself: it hands failed results to ``FallbackPolicy``, which decides
the substitute value, logs it and counts it.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Generic, Optional, TypeVar

from coursechat.errors import StoreUnavailableError
from coursechat.metrics import record_store_fallback
from coursechat.schemas import Message, Preference
from coursechat.utils import utc_now

logger = logging.getLogger(__name__)

T = TypeVar("T")

SYSTEM_AUTHOR_ID = "system"
SYSTEM_AUTHOR_NAME = "System"


@dataclass(frozen=True)
class StoreResult(Generic[T]):
    """Outcome of one store call: a value, or the reason the store failed."""

    value: Optional[T] = None
    error: Optional[StoreUnavailableError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def attempt(operation: Callable[..., T], *args, **kwargs) -> StoreResult[T]:
    """Run a store operation, capturing StoreUnavailableError as a result."""
    try:
        return StoreResult(value=operation(*args, **kwargs))
    except StoreUnavailableError as e:
        return StoreResult(error=e)


class FallbackPolicy:
    """
    Deterministic substitutes used while the store is unreachable.

    The welcome message timestamp is fixed when the policy is created so
    that consecutive fallback listings compare equal on the client.
    """

    def __init__(self, default_course: str = "mathematik", started_at: Optional[datetime] = None):
        self.default_course = default_course
        self.started_at = started_at or utc_now()

    def _fell_back(self, operation: str, result: StoreResult) -> None:
        logger.warning(f"Store unavailable during {operation}, using fallback: {result.error}")
        record_store_fallback(operation)

    def messages(self, result: StoreResult[list], course_id: str) -> list[Message]:
        """Listing, or a single welcome message for the course."""
        if result.ok:
            return result.value
        self._fell_back("list_messages", result)
        return [
            Message(
                id=f"welcome-{course_id}",
                course_id=course_id,
                text=f"Welcome to the chat for {course_id}",
                author_id=SYSTEM_AUTHOR_ID,
                author_display_name=SYSTEM_AUTHOR_NAME,
                timestamp=self.started_at,
                is_deleted=False,
            )
        ]

    def message_lookup(
        self,
        result: StoreResult[Optional[Message]],
        message_id: str,
        author_id: str,
        author_display_name: str,
        text: Optional[str] = None,
    ) -> Optional[Message]:
        """
        Stored message, or a stand-in owned by the caller.

        The stand-in keeps update/delete usable while the store is down;
        None from a reachable store still means the id is unknown.
        """
        if result.ok:
            return result.value
        self._fell_back("find_message", result)
        return Message(
            id=message_id,
            course_id="",
            text=text or "Original text",
            author_id=author_id,
            author_display_name=author_display_name,
            timestamp=utc_now(),
            is_deleted=False,
        )

    def written(self, operation: str, result: StoreResult, local: T) -> T:
        """
        Acknowledge a write with the locally constructed result.

        A failed write is not retried; the caller receives what would have
        been stored.
        """
        if result.ok and result.value is not None:
            return result.value
        if not result.ok:
            self._fell_back(operation, result)
        return local

    def preference(self, result: StoreResult[Optional[Preference]], user_id: str) -> Preference:
        """Stored preference, or the default course."""
        if not result.ok:
            self._fell_back("get_preference", result)
        elif result.value is not None:
            return result.value
        return self.default_preference(user_id)

    def default_preference(self, user_id: Optional[str]) -> Preference:
        return Preference(user_id=user_id, selected_course=self.default_course)
