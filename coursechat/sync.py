"""
Client synchronization loop.

A CourseView keeps the local copy of one course's messages consistent with
the server. It owns the message cache, the current course, the interaction
state and the PeriodicTask that drives reconciliation; the renderer is
anything implementing the ChatView protocol.

Every write is followed by a full reload of the course, so a reconciliation
tick racing a submit or delete converges on the server's list either way.
Reconciliation is suspended only while a message is being edited.
"""

import asyncio
import enum
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Protocol

from coursechat.config import get_client_settings
from coursechat.errors import CourseChatError, UnauthorizedError
from coursechat.schemas import Message

logger = logging.getLogger(__name__)

DELETE_PROMPT = "Are you sure you want to delete this message?"


class ViewState(str, enum.Enum):
    IDLE = "idle"
    LOADING = "loading"
    EDITING = "editing"


@dataclass(frozen=True)
class ScrollPosition:
    """Scroll metrics of the message list, in pixels."""

    offset: float
    content_height: float
    viewport_height: float

    def near_bottom(self, threshold: float) -> bool:
        return self.content_height - self.viewport_height <= self.offset + threshold


class ChatView(Protocol):
    """What the loop needs from a renderer."""

    def render(self, messages: list[Message]) -> None: ...

    def scroll_position(self) -> ScrollPosition: ...

    def scroll_to(self, offset: float) -> None: ...

    def scroll_to_bottom(self) -> None: ...

    def set_loading(self, loading: bool) -> None: ...

    def clear_input(self) -> None: ...

    def confirm(self, prompt: str) -> bool: ...

    def notify(self, message: str) -> None: ...


class ChatApi(Protocol):
    """Subset of ChatApiClient used by the loop."""

    async def list_messages(self, course_id: str) -> list[Message]: ...

    async def create_message(self, course_id: str, text: str) -> Message: ...

    async def update_message(self, message_id: str, **changes) -> Message: ...

    async def delete_message(self, message_id: str) -> None: ...

    async def get_preference(self): ...

    async def set_preference(self, course_id: str) -> None: ...


class PeriodicTask:
    """
    Run a coroutine function every ``period`` seconds until stopped.

    Each start gets a fresh stop token; ``stop`` sets it and cancels the
    running task, so no tick fires after it returns. Failed ticks are logged
    and retried next period, except UnauthorizedError, which ends the task
    and is handed to ``on_unauthorized``.
    """

    def __init__(
        self,
        callback: Callable[[], Awaitable[object]],
        name: str = "periodic",
        on_unauthorized: Optional[Callable[[UnauthorizedError], object]] = None,
    ):
        self._callback = callback
        self._name = name
        self._on_unauthorized = on_unauthorized
        self._task: Optional[asyncio.Task] = None
        self._stop_token: Optional[asyncio.Event] = None
        self.period: Optional[float] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self, period: float) -> None:
        """(Re)start with the given period."""
        self.stop()
        self.period = period
        self._stop_token = asyncio.Event()
        self._task = asyncio.create_task(self._run(period, self._stop_token), name=self._name)
        logger.debug(f"{self._name} started, period={period}s")

    def stop(self) -> None:
        if self._stop_token is not None:
            self._stop_token.set()
        if self._task is not None and not self._task.done():
            self._task.cancel()
            logger.debug(f"{self._name} stopped")
        self._task = None
        self._stop_token = None

    async def _run(self, period: float, stop_token: asyncio.Event) -> None:
        while not stop_token.is_set():
            try:
                await asyncio.wait_for(stop_token.wait(), timeout=period)
            except asyncio.TimeoutError:
                try:
                    await self._callback()
                except UnauthorizedError as e:
                    # Polling cannot recover without a new login
                    logger.warning(f"{self._name} stopped, session no longer valid: {e}")
                    if self._on_unauthorized is not None:
                        self._on_unauthorized(e)
                    return
                except CourseChatError as e:
                    logger.warning(f"{self._name} tick failed: {e}")
                except Exception:
                    logger.exception(f"{self._name} tick failed unexpectedly, retrying next period")


class CourseView:
    """
    Local view of one course, kept in sync with the server.

    Use as an async context manager so the refresh timer is always cancelled:

        async with CourseView(api, view) as course_view:
            await course_view.open()
            ...

    ``on_unauthorized`` is called when the session expires during background
    refresh, so the host can show its login screen.
    """

    def __init__(
        self,
        api: ChatApi,
        view: ChatView,
        refresh_interval: Optional[float] = None,
        scroll_threshold: Optional[float] = None,
        on_unauthorized: Optional[Callable[[UnauthorizedError], object]] = None,
    ):
        client_settings = get_client_settings()
        self.api = api
        self.view = view
        self.refresh_interval = refresh_interval or client_settings.REFRESH_INTERVAL
        self.scroll_threshold = (
            scroll_threshold if scroll_threshold is not None else client_settings.SCROLL_BOTTOM_THRESHOLD
        )
        self.default_course = client_settings.DEFAULT_COURSE
        self.course_id: Optional[str] = None
        self.messages: list[Message] = []
        self.state = ViewState.IDLE
        self.editing_id: Optional[str] = None
        self.visible = True
        self.timer = PeriodicTask(self.reconcile, name="reconciliation", on_unauthorized=on_unauthorized)

    async def __aenter__(self) -> "CourseView":
        return self

    async def __aexit__(self, *exc_info) -> None:
        self.close()

    @property
    def current_period(self) -> float:
        return self.refresh_interval if self.visible else self.refresh_interval * 2

    def _resume_timer(self) -> None:
        self.timer.start(self.current_period)

    def close(self) -> None:
        """Tear the view down; no reconciliation runs afterwards."""
        self.timer.stop()
        self.state = ViewState.IDLE
        self.editing_id = None

    # -------------------------------------------------------------------------
    # Loading
    # -------------------------------------------------------------------------

    async def load(self, course_id: str) -> list[Message]:
        """
        Fetch a course with the loading indicator shown.

        Failures are surfaced to the user and yield an empty list.
        """
        self.state = ViewState.LOADING
        self.view.set_loading(True)
        try:
            return await self.api.list_messages(course_id)
        except UnauthorizedError:
            raise
        except CourseChatError as e:
            logger.error(f"Error loading messages for {course_id}: {e}")
            self.view.notify(f"Failed to load messages: {e.detail}")
            return []
        finally:
            self.view.set_loading(False)
            self.state = ViewState.IDLE

    def _show(self, messages: list[Message]) -> None:
        self.messages = messages
        self.view.render(messages)

    async def open(self, course_id: Optional[str] = None) -> None:
        """
        Initial load: stored preference (unless a course is given), its
        messages, scroll to the newest, start the timer.
        """
        if course_id is None:
            course_id = await self._preferred_course()
        self.course_id = course_id
        self._show(await self.load(course_id))
        self.view.scroll_to_bottom()
        self._resume_timer()

    async def _preferred_course(self) -> str:
        try:
            preference = await self.api.get_preference()
            return preference.selected_course
        except UnauthorizedError:
            raise
        except CourseChatError as e:
            logger.error(f"Failed to load preferences: {e}")
            return self.default_course

    # -------------------------------------------------------------------------
    # Reconciliation
    # -------------------------------------------------------------------------

    async def reconcile(self) -> bool:
        """
        Silently re-fetch the course and re-render if anything changed.

        Comparison covers every field of every message. The view stays pinned
        to the bottom if it was near the bottom, otherwise the absolute
        offset is kept.

        Returns:
            True if the view was re-rendered

        Raises:
            UnauthorizedError: the session expired; the timer hands it to
                ``on_unauthorized`` and stops
        """
        if self.course_id is None or self.state == ViewState.EDITING:
            return False

        course_id = self.course_id
        try:
            fresh = await self.api.list_messages(course_id)
        except UnauthorizedError:
            raise
        except CourseChatError as e:
            logger.info(f"Silent refresh failed, will try again later: {e}")
            return False

        if course_id != self.course_id or self.state == ViewState.EDITING:
            # Course switched or edit started while the request was in flight
            return False
        if fresh == self.messages:
            return False

        position = self.view.scroll_position()
        was_at_bottom = position.near_bottom(self.scroll_threshold)
        self._show(fresh)
        if was_at_bottom:
            self.view.scroll_to_bottom()
        else:
            self.view.scroll_to(position.offset)
        logger.debug(f"Reconciled {course_id}: {len(fresh)} messages")
        return True

    async def set_visible(self, visible: bool) -> None:
        """
        Hidden views refresh at half the rate; becoming visible restores the
        nominal rate without forcing an immediate refresh.
        """
        self.visible = visible
        if self.state != ViewState.EDITING and self.timer.running:
            self._resume_timer()

    # -------------------------------------------------------------------------
    # User actions
    # -------------------------------------------------------------------------

    async def submit(self, text: str) -> Optional[Message]:
        """Post a message, then reload the whole course. Ignored while editing."""
        text = text.strip()
        if not text or self.course_id is None or self.state == ViewState.EDITING:
            return None

        self.state = ViewState.LOADING
        self.view.set_loading(True)
        try:
            created = await self.api.create_message(self.course_id, text)
        except UnauthorizedError:
            raise
        except CourseChatError as e:
            logger.error(f"Failed to send message: {e}")
            self.view.notify(f"Failed to send message: {e.detail}")
            return None
        finally:
            self.view.set_loading(False)
            self.state = ViewState.IDLE

        self._show(await self.load(self.course_id))
        self.view.clear_input()
        self.view.scroll_to_bottom()
        return created

    def begin_edit(self, message_id: str) -> Optional[str]:
        """
        Enter edit mode for a message, pausing reconciliation.

        Returns:
            The current text to prefill the edit field, or None when the
            message is unknown or deleted.
        """
        message = next((m for m in self.messages if m.id == message_id), None)
        if message is None or message.is_deleted:
            return None
        self.timer.stop()
        self.state = ViewState.EDITING
        self.editing_id = message_id
        return message.text

    def cancel_edit(self) -> None:
        """Leave edit mode, restoring the cached rendering without a request."""
        if self.state != ViewState.EDITING:
            return
        self.state = ViewState.IDLE
        self.editing_id = None
        self.view.render(self.messages)
        self._resume_timer()

    async def save_edit(self, new_text: str) -> Optional[Message]:
        """
        Save the edit in progress and reload the course.

        Empty text keeps the view in edit mode.
        """
        new_text = new_text.strip()
        if self.state != ViewState.EDITING or not new_text:
            return None

        message_id = self.editing_id
        self.state = ViewState.LOADING
        self.editing_id = None
        self.view.set_loading(True)
        updated = None
        try:
            updated = await self.api.update_message(message_id, text=new_text)
        except UnauthorizedError:
            self.state = ViewState.IDLE
            raise
        except CourseChatError as e:
            logger.error(f"Failed to update message {message_id}: {e}")
            self.view.notify(f"Failed to update message: {e.detail}")
        finally:
            self.view.set_loading(False)

        if updated is not None:
            position = self.view.scroll_position()
            self._show(await self.load(self.course_id))
            self.view.scroll_to(position.offset)
        self.state = ViewState.IDLE
        self._resume_timer()
        return updated

    async def delete(self, message_id: str) -> bool:
        """
        Ask for confirmation, soft-delete, then reload keeping the scroll offset.

        Refused while a message is being edited.
        """
        if self.state == ViewState.EDITING or not self.view.confirm(DELETE_PROMPT):
            return False

        self.state = ViewState.LOADING
        self.view.set_loading(True)
        try:
            await self.api.delete_message(message_id)
        except UnauthorizedError:
            raise
        except CourseChatError as e:
            logger.error(f"Failed to delete message {message_id}: {e}")
            self.view.notify(f"Failed to delete message: {e.detail}")
            return False
        finally:
            self.view.set_loading(False)
            self.state = ViewState.IDLE

        position = self.view.scroll_position()
        self._show(await self.load(self.course_id))
        self.view.scroll_to(position.offset)
        return True

    async def switch_course(self, course_id: str) -> None:
        """
        Show another course: stop the timer, remember the choice (best
        effort), load and render it, restart the timer.
        """
        self.timer.stop()
        self.state = ViewState.IDLE
        self.editing_id = None
        self.course_id = course_id
        try:
            await self.api.set_preference(course_id)
        except UnauthorizedError:
            raise
        except CourseChatError as e:
            logger.error(f"Failed to save preferences: {e}")

        self._show(await self.load(course_id))
        self.view.scroll_to_bottom()
        self._resume_timer()
