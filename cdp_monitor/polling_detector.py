"""Generic fixed-interval poller: snapshot -> dedup key -> notify."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Generic, Optional, TypeVar

from .callbacks import invoke_callback
from .cdp_session import CdpError, CdpSession, CdpTransportError
from .dom_scripts import build_click_expression
from .models import ClickResult

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _current_task() -> Optional[asyncio.Task]:
    try:
        return asyncio.current_task()
    except RuntimeError:
        return None


class PollingDetector(Generic[T]):
    """
    Polls the remote page for one kind of UI state and reports changes.

    Each tick fetches a snapshot (None when the state is absent) and derives
    a dedup key from it:
    - new key (and cooldown elapsed): on_detected(snapshot) fires
    - same key: stored snapshot refreshed silently
    - no snapshot after a detection: state reset, on_resolved() fires

    Subclasses provide ``snapshot_expression`` + ``parse_snapshot`` and
    ``compute_key``; the same hooks can be passed as constructor arguments
    instead. Ticks run strictly one after another: the next sleep only starts
    once the current fetch and its callbacks have settled.
    """

    name = "detector"
    default_poll_interval = 2.0
    snapshot_expression: Optional[str] = None

    def __init__(
        self,
        session: CdpSession,
        on_detected: Callable[[T], Any],
        poll_interval: Optional[float] = None,
        on_resolved: Optional[Callable[[], Any]] = None,
        cooldown_seconds: float = 0,
        fetch_snapshot: Optional[Callable[[CdpSession], Awaitable[Optional[T]]]] = None,
        compute_key: Optional[Callable[[T], str]] = None,
        prime_on_start: bool = False,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.session = session
        self.on_detected = on_detected
        self.on_resolved = on_resolved
        self.poll_interval = poll_interval if poll_interval is not None else self.default_poll_interval
        self.cooldown_seconds = cooldown_seconds
        self.prime_on_start = prime_on_start
        self.clock = clock
        self._fetch_override = fetch_snapshot
        self._key_override = compute_key

        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._generation = 0
        self._priming = False
        self._last_detected_key: Optional[str] = None
        self._last_detected_info: Optional[T] = None
        self._last_notified_at: Optional[float] = None

    # -----------------------
    # Hooks
    # -----------------------
    async def fetch_snapshot(self) -> Optional[T]:
        if self._fetch_override:
            return await self._fetch_override(self.session)
        if self.snapshot_expression is None:
            raise NotImplementedError(f"{type(self).__name__} has no snapshot source")
        raw = await self.session.evaluate(self.snapshot_expression)
        return self.parse_snapshot(raw)

    def parse_snapshot(self, raw: Any) -> Optional[T]:
        """Turn the raw evaluation value into a typed snapshot (None = absent)."""
        return raw

    def compute_key(self, snapshot: T) -> str:
        if self._key_override:
            return self._key_override(snapshot)
        raise NotImplementedError(f"{type(self).__name__} has no dedup key")

    def should_notify(self, key: str, snapshot: T) -> bool:
        """Last chance to absorb a new key without firing on_detected."""
        return True

    # -----------------------
    # Lifecycle
    # -----------------------
    def start(self):
        """Reset detection state and begin polling."""
        if self._running:
            return
        self._running = True
        self._generation += 1
        self._priming = self.prime_on_start
        self._last_detected_key = None
        self._last_detected_info = None
        self._last_notified_at = None
        self._task = asyncio.create_task(self._poll_loop(self._generation))
        logger.info(f"{self.name} started (interval={self.poll_interval}s)")

    def stop(self):
        """Stop polling. Idempotent; safe to call from inside a callback."""
        if not self._running and self._task is None:
            return
        self._running = False
        self._generation += 1
        task, self._task = self._task, None
        if task and task is not _current_task() and not task.done():
            task.cancel()
        logger.info(f"{self.name} stopped")

    def is_active(self) -> bool:
        return self._running

    @property
    def last_detected_info(self) -> Optional[T]:
        return self._last_detected_info

    async def _poll_loop(self, generation: int):
        while self._running and generation == self._generation:
            await asyncio.sleep(self.poll_interval)
            if not self._running or generation != self._generation:
                break
            await self.poll_once()

    async def poll_once(self):
        """Run one tick. Results that arrive after stop() are dropped."""
        if not self._running:
            return
        generation = self._generation
        try:
            snapshot = await self.fetch_snapshot()
        except CdpTransportError:
            return
        except Exception as e:
            logger.error(f"{self.name} error during polling: {e}")
            return

        if not self._running or generation != self._generation:
            return

        if self._priming:
            # Whatever is already on screen when we attach is not news
            self._priming = False
            if snapshot is not None:
                self._last_detected_key = self.compute_key(snapshot)
                self._last_detected_info = snapshot
            return

        if snapshot is None:
            was_detected = self._last_detected_key is not None
            self._last_detected_key = None
            self._last_detected_info = None
            if was_detected:
                await invoke_callback(self.on_resolved, label=f"{self.name} on_resolved")
            return

        key = self.compute_key(snapshot)
        if key == self._last_detected_key:
            self._last_detected_info = snapshot
            return

        now = self.clock()
        if (
            self.cooldown_seconds
            and self._last_notified_at is not None
            and now - self._last_notified_at < self.cooldown_seconds
        ):
            logger.debug(f"{self.name} change within cooldown, suppressed: {key}")
            return

        self._last_detected_key = key
        self._last_detected_info = snapshot
        if not self.should_notify(key, snapshot):
            return
        self._last_notified_at = now
        await invoke_callback(self.on_detected, snapshot, label=f"{self.name} on_detected")

    # -----------------------
    # Actions
    # -----------------------
    async def run_expression(self, expression: str, await_promise: bool = False) -> Any:
        """Evaluate expression in the primary context; None on failure."""
        try:
            return await self.session.evaluate(expression, await_promise=await_promise)
        except CdpError as e:
            logger.warning(f"{self.name} expression failed: {e}")
            return None

    async def click(self, button_text: str) -> ClickResult:
        """Click the first visible button whose text or aria-label matches."""
        try:
            value = await self.session.evaluate(build_click_expression(button_text))
        except CdpError as e:
            logger.warning(f"{self.name} click '{button_text}' failed: {e}")
            return ClickResult(ok=False, error=str(e))
        result = ClickResult.from_value(value)
        if not result.ok:
            logger.debug(f"{self.name} click '{button_text}' not applied: {result.error}")
        return result

    async def click_button(self, button_text: str) -> bool:
        return (await self.click(button_text)).ok
