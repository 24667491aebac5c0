from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional, Protocol, Tuple

from .client import AuthExpiredError, MessagingError
from .config import SyncConfig
from .engine import MessagingSync
from .hub import TOPIC_AUTH, TOPIC_SELECTION, ChatEvent, Subscription

logger = logging.getLogger(__name__)

PURPOSE_ROSTER = "roster"
PURPOSE_THREAD = "thread"
ROSTER_KEY = "*"

TickKey = Tuple[str, str]


@dataclass(eq=False)
class PollHandle:
    """A surface's claim on polling; pass it back to ``SyncScheduler.stop``."""

    surface: str
    active: bool = True


class SyncDriver(Protocol):
    def start(self, surface: str = ...) -> PollHandle:
        ...

    async def stop(self, handle: Optional[PollHandle] = None) -> None:
        ...


class SyncScheduler:
    """Timer-driven polling on the running event loop.

    The roster cadence refreshes conversations and unread counts; the thread
    cadence refreshes the selected conversation and restarts whenever the
    selection changes. Polling runs while at least one surface holds an
    active handle. Each tick runs as its own task and is skipped while the
    previous tick for the same ``(conversation_id, purpose)`` is in flight.
    An expired session halts everything and is forwarded to
    ``on_auth_expired``; other errors are logged and retried on the next tick.
    """

    def __init__(
        self,
        engine: MessagingSync,
        config: Optional[SyncConfig] = None,
        *,
        on_auth_expired: Optional[Callable[[ChatEvent], None]] = None,
        poll_roster: bool = True,
    ) -> None:
        self.engine = engine
        self.config = config or SyncConfig()
        self.on_auth_expired = on_auth_expired
        self.poll_roster = poll_roster
        self.skipped_ticks = 0
        self._handles: Dict[str, PollHandle] = {}
        self._timers: Dict[str, asyncio.Task] = {}
        self._in_flight: Dict[TickKey, asyncio.Task] = {}
        self._subscriptions: List[Subscription] = []

    @property
    def running(self) -> bool:
        return bool(self._handles)

    def in_flight(self) -> List[TickKey]:
        return [key for key, task in self._in_flight.items() if not task.done()]

    def start(self, surface: str = "default") -> PollHandle:
        handle = self._handles.get(surface)
        if handle is not None and handle.active:
            return handle
        handle = PollHandle(surface=surface)
        self._handles[surface] = handle
        if not self._subscriptions:
            hub = self.engine.hub
            self._subscriptions = [
                hub.subscribe("scheduler", TOPIC_SELECTION, self._on_selection),
                hub.subscribe("scheduler", TOPIC_AUTH, self._on_auth),
            ]
        if self.poll_roster and PURPOSE_ROSTER not in self._timers:
            self._timers[PURPOSE_ROSTER] = asyncio.create_task(self._run_roster())
        if PURPOSE_THREAD not in self._timers:
            self._restart_thread_timer()
        return handle

    async def stop(self, handle: Optional[PollHandle] = None) -> None:
        """Release ``handle`` (or every handle); timers stop with the last one."""

        if handle is not None:
            handle.active = False
            if self._handles.get(handle.surface) is handle:
                del self._handles[handle.surface]
            if self._handles:
                return
        pending = self._halt()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    def _halt(self) -> List[asyncio.Task]:
        for handle in self._handles.values():
            handle.active = False
        self._handles.clear()
        for subscription in self._subscriptions:
            self.engine.hub.unsubscribe(subscription)
        self._subscriptions = []
        tasks = list(self._timers.values()) + list(self._in_flight.values())
        self._timers.clear()
        self._in_flight.clear()
        current = asyncio.current_task()
        pending = [task for task in tasks if task is not current and not task.done()]
        for task in pending:
            task.cancel()
        return pending

    def _restart_thread_timer(self) -> None:
        timer = self._timers.pop(PURPOSE_THREAD, None)
        if timer is not None and timer is not asyncio.current_task():
            timer.cancel()
        conversation_id = self.engine.selected_conversation_id
        if conversation_id is not None:
            self._timers[PURPOSE_THREAD] = asyncio.create_task(self._run_thread(conversation_id))

    async def _run_roster(self) -> None:
        try:
            while self.running:
                self._fire((ROSTER_KEY, PURPOSE_ROSTER), self.engine.refresh_roster)
                await asyncio.sleep(self.config.roster_poll_interval_s)
        except asyncio.CancelledError:
            return

    async def _run_thread(self, conversation_id: str) -> None:
        try:
            while self.running:
                await asyncio.sleep(self.config.thread_poll_interval_s)
                if self.engine.selected_conversation_id != conversation_id:
                    return
                self._fire(
                    (conversation_id, PURPOSE_THREAD),
                    lambda: self.engine.refresh_thread(conversation_id),
                )
        except asyncio.CancelledError:
            return

    def _fire(self, key: TickKey, refresh: Callable[[], Awaitable[object]]) -> bool:
        previous = self._in_flight.get(key)
        if previous is not None and not previous.done():
            self.skipped_ticks += 1
            logger.debug("skipping %s tick for %s; previous tick still in flight", key[1], key[0])
            return False
        self._in_flight[key] = asyncio.create_task(self._tick(key, refresh))
        return True

    async def _tick(self, key: TickKey, refresh: Callable[[], Awaitable[object]]) -> None:
        try:
            await refresh()
        except AuthExpiredError as exc:
            logger.warning("%s refresh rejected, session expired: %s", key[1], exc)
            self._auth_expired(ChatEvent(TOPIC_AUTH, message=str(exc)))
        except MessagingError as exc:
            logger.warning("%s refresh for %s failed, retrying next tick: %s", key[1], key[0], exc)
        except Exception:
            logger.exception("%s refresh for %s crashed, retrying next tick", key[1], key[0])
        finally:
            if self._in_flight.get(key) is asyncio.current_task():
                del self._in_flight[key]

    def _on_selection(self, event: ChatEvent) -> None:
        if self.running:
            self._restart_thread_timer()

    def _on_auth(self, event: ChatEvent) -> None:
        self._auth_expired(event)

    def _auth_expired(self, event: ChatEvent) -> None:
        if not self.running:
            return
        self._halt()
        if self.on_auth_expired is not None:
            self.on_auth_expired(event)
