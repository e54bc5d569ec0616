"""Tracks one assistant response from prompt submission to completion."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Optional

from .callbacks import invoke_callback
from .cdp_session import CdpError, CdpSession, CdpTransportError
from .dom_scripts import (
    CLICK_STOP_BUTTON,
    PROCESS_LOG_CANDIDATES,
    QUOTA_SNAPSHOT,
    RESPONSE_CANDIDATES,
    RESPONSE_SEGMENTS,
    STOP_BUTTON_SNAPSHOT,
)
from .models import ClickResult, ResponsePhase, StructuredResponse
from .response_extractor import (
    classify_segments,
    detect_quota,
    extract_process_logs,
    is_generating,
    parse_candidates,
    process_log_key,
    select_response_text,
)

logger = logging.getLogger(__name__)

EXTRACTION_LEGACY = "legacy"
EXTRACTION_STRUCTURED = "structured"


def _current_task() -> Optional[asyncio.Task]:
    try:
        return asyncio.current_task()
    except RuntimeError:
        return None


class ResponseMonitor:
    """
    Polls the chat panel while the assistant answers one prompt.

    Phases only move forward within a run:
    waiting -> thinking -> generating -> complete | timeout | quotaReached

    Notes:
    - thinking starts as soon as the stop button shows up, before any text.
    - completion needs stop_gone_confirm_count consecutive ticks without the
      stop button once generation has started (the button flickers).
    - text equal to the answer already on screen at start() is not progress.
    - a quota banner before any text ends the run with on_complete("");
      after text exists it only sets quota_detected.
    - on_complete / on_timeout fire at most once, and never after stop().
    - in structured mode the answer and activity lines come from classified
      message segments; text candidates are read whenever that yields no text.
    """

    name = "ResponseMonitor"

    def __init__(
        self,
        session: CdpSession,
        poll_interval: float = 2.0,
        max_duration_seconds: float = 300,
        stop_gone_confirm_count: int = 3,
        on_progress: Optional[Callable[[str], Any]] = None,
        on_complete: Optional[Callable[[str], Any]] = None,
        on_timeout: Optional[Callable[[str], Any]] = None,
        on_phase_change: Optional[Callable[[ResponsePhase, Optional[str]], Any]] = None,
        on_process_log: Optional[Callable[[str], Any]] = None,
        extraction_mode: str = EXTRACTION_LEGACY,
    ):
        self.session = session
        self.poll_interval = poll_interval
        self.max_duration_seconds = max_duration_seconds
        self.stop_gone_confirm_count = stop_gone_confirm_count
        self.on_progress = on_progress
        self.on_complete = on_complete
        self.on_timeout = on_timeout
        self.on_phase_change = on_phase_change
        self.on_process_log = on_process_log
        self.extraction_mode = extraction_mode

        self._running = False
        self._generation = 0
        self._poll_task: Optional[asyncio.Task] = None
        self._timeout_task: Optional[asyncio.Task] = None
        self._finished = False

        self.phase = ResponsePhase.WAITING
        self.last_text: Optional[str] = None
        self.baseline_text: Optional[str] = None
        self.generation_started = False
        self.stop_gone_count = 0
        self.quota_detected = False
        self._seen_process_log_keys: set[str] = set()
        self.structured_baseline: Optional[str] = None
        self.structured_output: Optional[str] = None
        self.structured_activity: list[str] = []
        self._structured_logged = False

    # -----------------------
    # Lifecycle
    # -----------------------
    async def start(self):
        """Start monitoring a prompt that was just submitted."""
        await self._start(passive=False)

    async def start_passive(self):
        """Attach to a turn that is already generating."""
        await self._start(passive=True)

    async def _start(self, passive: bool):
        if self._running:
            return
        self._running = True
        self._generation += 1
        generation = self._generation
        self._finished = False
        self.last_text = None
        self.baseline_text = None
        self.generation_started = passive
        self.phase = ResponsePhase.GENERATING if passive else ResponsePhase.WAITING
        self.stop_gone_count = 0
        self.quota_detected = False
        self._seen_process_log_keys = set()
        self.structured_baseline = None
        self.structured_output = None
        self.structured_activity = []

        await invoke_callback(self.on_phase_change, self.phase, None, label=f"{self.name} on_phase_change")

        # Whatever is already on screen belongs to earlier turns
        try:
            candidates = parse_candidates(await self.session.evaluate(RESPONSE_CANDIDATES, await_promise=True))
            self.baseline_text = select_response_text(candidates)
        except CdpError as e:
            logger.debug(f"{self.name} baseline text unavailable: {e}")
        try:
            log_candidates = parse_candidates(
                await self.session.evaluate(PROCESS_LOG_CANDIDATES, await_promise=True)
            )
            self._seen_process_log_keys = {
                process_log_key(entry) for entry in extract_process_logs(log_candidates) if process_log_key(entry)
            }
        except CdpError as e:
            logger.debug(f"{self.name} baseline process logs unavailable: {e}")
        if self.extraction_mode == EXTRACTION_STRUCTURED:
            try:
                structured = classify_segments(await self.session.evaluate(RESPONSE_SEGMENTS, await_promise=True))
            except CdpError as e:
                logger.debug(f"{self.name} baseline segments unavailable: {e}")
                structured = None
            if structured is not None:
                self.structured_baseline = structured.output or None
                self._seen_process_log_keys.update(
                    process_log_key(line) for line in structured.activity_lines if process_log_key(line)
                )

        if not self._running or generation != self._generation:
            return

        if self.max_duration_seconds and self.max_duration_seconds > 0:
            self._timeout_task = asyncio.create_task(self._timeout_after(self.max_duration_seconds, generation))
        self._poll_task = asyncio.create_task(self._poll_loop(generation))

        mode = "Passive monitoring" if passive else "Monitoring"
        baseline_len = len(self.baseline_text) if self.baseline_text else 0
        logger.info(
            f"{mode} started (poll={self.poll_interval}s timeout={self.max_duration_seconds}s "
            f"baseline={baseline_len}ch)"
        )

    def stop(self):
        """Stop polling and disarm the timeout. No terminal callback fires afterwards."""
        if not self._running and self._poll_task is None and self._timeout_task is None:
            return
        self._running = False
        self._generation += 1
        current = _current_task()
        for task in (self._poll_task, self._timeout_task):
            if task and task is not current and not task.done():
                task.cancel()
        self._poll_task = None
        self._timeout_task = None

    def is_active(self) -> bool:
        return self._running

    async def _poll_loop(self, generation: int):
        while self._running and generation == self._generation:
            await asyncio.sleep(self.poll_interval)
            if not self._running or generation != self._generation:
                break
            await self.poll_once()

    async def _timeout_after(self, seconds: float, generation: int):
        await asyncio.sleep(seconds)
        if not self._running or generation != self._generation:
            return
        await self._finish(ResponsePhase.TIMEOUT, self.last_text or "", self.on_timeout, "on_timeout")

    async def _finish(self, phase: ResponsePhase, text: str, callback, label: str):
        if self._finished:
            return
        self._finished = True
        await self._set_phase(phase, text)
        self.stop()
        await invoke_callback(callback, text, label=f"{self.name} {label}")

    async def _set_phase(self, phase: ResponsePhase, text: Optional[str]):
        if self.phase == phase:
            return
        self.phase = phase
        length = len(text) if text else 0
        if phase in (ResponsePhase.TIMEOUT, ResponsePhase.QUOTA_REACHED):
            logger.warning(f"{self.name} phase -> {phase.value} ({length} chars)")
        else:
            logger.info(f"{self.name} phase -> {phase.value} ({length} chars)")
        await invoke_callback(self.on_phase_change, phase, text, label=f"{self.name} on_phase_change")

    # -----------------------
    # Polling
    # -----------------------
    async def poll_once(self):
        """One tick: stop button, quota banner, answer text, new process logs."""
        if not self._running:
            return
        generation = self._generation
        structured = None
        try:
            generating = is_generating(await self.session.evaluate(STOP_BUTTON_SNAPSHOT, await_promise=True))
            quota = detect_quota(await self.session.evaluate(QUOTA_SNAPSHOT, await_promise=True))
            if self.extraction_mode == EXTRACTION_STRUCTURED:
                structured = await self._read_segments()
            current_text = (structured.output or None) if structured else None
            if current_text is None:
                candidates = parse_candidates(await self.session.evaluate(RESPONSE_CANDIDATES, await_promise=True))
                current_text = select_response_text(candidates)
        except CdpTransportError:
            return
        except Exception as e:
            logger.error(f"{self.name} poll error: {e}")
            return

        if structured is not None:
            log_entries = structured.activity_lines
        else:
            try:
                log_candidates = parse_candidates(
                    await self.session.evaluate(PROCESS_LOG_CANDIDATES, await_promise=True)
                )
            except CdpError as e:
                logger.debug(f"{self.name} process log read failed: {e}")
                log_candidates = []
            log_entries = extract_process_logs(log_candidates)

        if not self._running or generation != self._generation:
            return

        self.structured_output = structured.output if structured else None
        fresh = await self._emit_new_process_logs(log_entries)
        if structured is not None:
            self.structured_activity.extend(fresh)
        if not self._running:
            return

        if generating:
            if not self.generation_started:
                self.generation_started = True
                await self._set_phase(ResponsePhase.THINKING, None)
            self.stop_gone_count = 0

        if quota:
            if self.last_text and self.last_text.strip():
                if not self.quota_detected:
                    logger.warning(f"{self.name} quota indicator seen after text, continuing")
                self.quota_detected = True
            else:
                logger.warning(f"{self.name} quota reached before any text")
                await self._finish(ResponsePhase.QUOTA_REACHED, "", self.on_complete, "on_complete")
                return

        effective_text = current_text
        if (
            current_text is not None
            and current_text in (self.baseline_text, self.structured_baseline)
            and self.last_text is None
        ):
            effective_text = None

        if effective_text is not None and effective_text != self.last_text:
            self.last_text = effective_text
            if self.phase in (ResponsePhase.WAITING, ResponsePhase.THINKING):
                self.generation_started = True
                await self._set_phase(ResponsePhase.GENERATING, effective_text)
            await invoke_callback(self.on_progress, effective_text, label=f"{self.name} on_progress")
            if not self._running:
                return

        if not generating and self.generation_started:
            self.stop_gone_count += 1
            if self.stop_gone_count >= self.stop_gone_confirm_count:
                await self._finish(ResponsePhase.COMPLETE, self.last_text or "", self.on_complete, "on_complete")

    async def _read_segments(self) -> Optional[StructuredResponse]:
        try:
            raw = await self.session.evaluate(RESPONSE_SEGMENTS, await_promise=True)
        except CdpTransportError:
            raise
        except CdpError as e:
            logger.warning(f"{self.name} segment read failed, using text candidates: {e}")
            return None
        structured = classify_segments(raw)
        if not self._structured_logged:
            self._structured_logged = True
            if structured is not None:
                logger.debug(f"{self.name} structured extraction segments: {structured.segment_counts}")
            else:
                logger.warning(
                    f"{self.name} structured extraction unusable ({type(raw).__name__}), using text candidates"
                )
        return structured

    async def _emit_new_process_logs(self, entries: list[str]) -> list[str]:
        fresh = []
        for entry in entries:
            key = process_log_key(entry)
            if not key or key in self._seen_process_log_keys:
                continue
            self._seen_process_log_keys.add(key)
            fresh.append(entry.replace("\r", "").strip())
        if fresh:
            await invoke_callback(self.on_process_log, "\n\n".join(fresh), label=f"{self.name} on_process_log")
        return fresh

    # -----------------------
    # Actions
    # -----------------------
    async def click_stop_button(self) -> ClickResult:
        """Best-effort click on the cancel button; monitoring stops either way."""
        try:
            value = await self.session.evaluate(CLICK_STOP_BUTTON, await_promise=True)
            result = ClickResult.from_value(value)
        except CdpError as e:
            result = ClickResult(ok=False, error=str(e) or "Failed to click stop button")
        self.stop()
        return result
