"""Inbound interface: start/stop monitoring a workspace, send prompts, press buttons."""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Optional

from .approval_detector import ApprovalDetector
from .callbacks import invoke_callback
from .connection_pool import ConnectionPool
from .delivery_queue import DeliveryQueue
from .error_popup_detector import ErrorPopupDetector
from .models import (
    ApprovalInfo,
    ClickResult,
    DetectorKind,
    ErrorPopupInfo,
    InjectResult,
    PlanningInfo,
    ResponseResult,
    UserMessageInfo,
)
from .planning_detector import PlanningDetector
from .process_log_buffer import ProcessLogBuffer
from .response_monitor import EXTRACTION_LEGACY, ResponseMonitor
from .text_classifier import sanitize_activity_lines, separate_output_for_delivery
from .user_message_detector import UserMessageDetector

logger = logging.getLogger(__name__)

RENDER_QUEUE = "render"
PROCESS_LOG_QUEUE = "process_log"
CLIPBOARD_SETTLE_SECONDS = 0.3


@dataclass
class MonitorCallbacks:
    """Outbound events; every callback receives the workspace key first. Sync or async."""
    on_approval_required: Optional[Callable[[str, ApprovalInfo], Any]] = None
    on_approval_resolved: Optional[Callable[[str], Any]] = None
    on_auto_approved: Optional[Callable[[str, ApprovalInfo, bool], Any]] = None
    on_planning_required: Optional[Callable[[str, PlanningInfo], Any]] = None
    on_error_popup: Optional[Callable[[str, ErrorPopupInfo], Any]] = None
    on_user_message: Optional[Callable[[str, UserMessageInfo], Any]] = None
    on_progress: Optional[Callable[[str, str], Any]] = None
    on_process_log: Optional[Callable[[str, str], Any]] = None
    on_phase_change: Optional[Callable[[str, Any, Optional[str]], Any]] = None
    on_complete: Optional[Callable[[str, ResponseResult], Any]] = None
    on_timeout: Optional[Callable[[str, ResponseResult], Any]] = None


class MonitorBridge:
    """
    Wires the pool, detectors, response monitor and delivery queue together
    for the presentation layer.

    Response events are delivered through the DeliveryQueue: progress renders
    are versioned so a slow consumer only sees the latest text, terminal
    results are finalized, and process logs use their own queue so they
    never hold up renders.
    """

    def __init__(
        self,
        pool: ConnectionPool,
        config: Optional[dict] = None,
        delivery_queue: Optional[DeliveryQueue] = None,
    ):
        self.pool = pool
        self.config = config or {}
        self.delivery_queue = delivery_queue or DeliveryQueue()
        self._callbacks: dict[str, MonitorCallbacks] = {}

        detectors = self.config.get("detectors", {})
        self.approval_config = detectors.get("approval", {})
        self.planning_config = detectors.get("planning", {})
        self.error_popup_config = detectors.get("error_popup", {})
        self.user_message_config = detectors.get("user_message", {})
        self.auto_approve = self.config.get("auto_approve", False)

        timeouts = self.config.get("timeouts", {})
        monitor_config = self.config.get("response_monitor", {})
        self.response_poll_interval = monitor_config.get("poll_interval", 2.0)
        self.stop_gone_confirm_count = monitor_config.get("stop_gone_confirm_count", 3)
        self.extraction_mode = monitor_config.get("extraction_mode", EXTRACTION_LEGACY)
        self.response_max_duration = timeouts.get("response_monitor", {}).get("max_duration_seconds", 300)
        self.echo_ttl_seconds = timeouts.get("user_message", {}).get("echo_ttl_seconds", 60)

    # -----------------------
    # Monitoring lifecycle
    # -----------------------
    async def start_monitoring(self, workspace_path: str, callbacks: MonitorCallbacks) -> str:
        """Connect to the workspace and start all four detectors. Returns the workspace key."""
        session = await self.pool.get_or_connect(workspace_path)
        key = self.pool.extract_dir_name(workspace_path)
        self._callbacks[key] = callbacks

        approval = ApprovalDetector(
            session,
            on_detected=lambda info: self._on_approval(key, info),
            on_resolved=lambda: invoke_callback(
                self._callback(key, "on_approval_resolved"), key, label="on_approval_resolved"
            ),
            poll_interval=self.approval_config.get("poll_interval"),
        )
        planning = PlanningDetector(
            session,
            on_detected=lambda info: invoke_callback(
                self._callback(key, "on_planning_required"), key, info, label="on_planning_required"
            ),
            poll_interval=self.planning_config.get("poll_interval"),
            cooldown_seconds=self.planning_config.get("cooldown_seconds"),
        )
        error_popup = ErrorPopupDetector(
            session,
            on_detected=lambda info: invoke_callback(
                self._callback(key, "on_error_popup"), key, info, label="on_error_popup"
            ),
            poll_interval=self.error_popup_config.get("poll_interval"),
            cooldown_seconds=self.error_popup_config.get("cooldown_seconds"),
        )
        user_message = UserMessageDetector(
            session,
            on_detected=lambda info: invoke_callback(
                self._callback(key, "on_user_message"), key, info, label="on_user_message"
            ),
            poll_interval=self.user_message_config.get("poll_interval"),
            echo_ttl_seconds=self.echo_ttl_seconds,
        )

        for kind, detector in (
            (DetectorKind.APPROVAL, approval),
            (DetectorKind.PLANNING, planning),
            (DetectorKind.ERROR_POPUP, error_popup),
            (DetectorKind.USER_MESSAGE, user_message),
        ):
            self.pool.register_detector(key, kind, detector)
            detector.start()

        logger.info(f"Monitoring started for workspace '{key}'")
        return key

    async def stop_monitoring(self, key: str):
        """Stop every detector and any response monitor for key. The connection stays open."""
        for kind in DetectorKind:
            self.pool.unregister_detector(key, kind)
        self._callbacks.pop(key, None)
        logger.info(f"Monitoring stopped for workspace '{key}'")

    def _callback(self, key: str, name: str) -> Optional[Callable]:
        callbacks = self._callbacks.get(key)
        return getattr(callbacks, name) if callbacks else None

    async def _on_approval(self, key: str, info: ApprovalInfo):
        logger.info(f"Approval requested in '{key}' (allow='{info.approve_text}', deny='{info.deny_text}')")
        if self.auto_approve:
            accepted = await self.click_always_allow(key) or await self.click_approve(key)
            await invoke_callback(
                self._callback(key, "on_auto_approved"), key, info, accepted, label="on_auto_approved"
            )
            if accepted:
                return
        await invoke_callback(self._callback(key, "on_approval_required"), key, info, label="on_approval_required")

    # -----------------------
    # Prompts
    # -----------------------
    async def send_prompt(self, workspace_path: str, text: str, trace_id: Optional[str] = None) -> InjectResult:
        """Inject text into the workspace's chat and monitor the response it produces."""
        session = await self.pool.get_or_connect(workspace_path)
        key = self.pool.extract_dir_name(workspace_path)

        user_message = self.pool.get_user_message_detector(key)
        if user_message:
            user_message.add_echo_hash(text)

        result = await session.inject_message(text)
        if not result.ok:
            logger.warning(f"Prompt injection failed for '{key}': {result.error}")
            return result

        monitor = self._build_response_monitor(key, session, trace_id or uuid.uuid4().hex[:8])
        self.pool.register_response_monitor(key, monitor)
        await monitor.start()
        logger.info(f"Prompt sent to '{key}' via {result.method} (context={result.context_id})")
        return result

    def _build_response_monitor(self, key: str, session, trace_id: str) -> ResponseMonitor:
        render = self.delivery_queue.factory(RENDER_QUEUE, trace_id)
        post_log = self.delivery_queue.factory(PROCESS_LOG_QUEUE, trace_id)
        stream = f"{key}:{trace_id}"
        log_buffer = ProcessLogBuffer()
        monitor: Optional[ResponseMonitor] = None

        def deliver(enqueue, name: str, *args, **options):
            callback = self._callback(key, name)
            if callback is None:
                return
            enqueue(lambda: callback(key, *args), label=name, **options)

        def on_progress(text: str):
            deliver(render, "on_progress", text, stream=stream, version=self.delivery_queue.next_version(stream))

        def on_phase_change(phase, text):
            deliver(render, "on_phase_change", phase, text)

        def on_process_log(text: str):
            lines = sanitize_activity_lines(text)
            if lines:
                # One buffer entry per activity line
                deliver(post_log, "on_process_log", log_buffer.append("\n\n".join(lines.split("\n"))))

        def finish(name: str):
            def handler(text: str):
                split = separate_output_for_delivery(
                    text,
                    dom_output=monitor.structured_output,
                    dom_activity_lines=monitor.structured_activity,
                )
                result = ResponseResult(
                    text=text,
                    output=split.output,
                    logs=split.logs,
                    phase=monitor.phase,
                    quota_detected=monitor.quota_detected,
                )
                self.delivery_queue.next_version(stream)
                deliver(render, name, result, stream=stream, finalized=True)
            return handler

        monitor = ResponseMonitor(
            session,
            poll_interval=self.response_poll_interval,
            max_duration_seconds=self.response_max_duration,
            stop_gone_confirm_count=self.stop_gone_confirm_count,
            on_progress=on_progress,
            on_complete=finish("on_complete"),
            on_timeout=finish("on_timeout"),
            on_phase_change=on_phase_change,
            on_process_log=on_process_log,
            extraction_mode=self.extraction_mode,
        )
        return monitor

    # -----------------------
    # Actions
    # -----------------------
    async def click_approve(self, key: str) -> bool:
        detector = self.pool.get_approval_detector(key)
        return await detector.approve_button() if detector else False

    async def click_always_allow(self, key: str) -> bool:
        detector = self.pool.get_approval_detector(key)
        return await detector.always_allow_button() if detector else False

    async def click_deny(self, key: str) -> bool:
        detector = self.pool.get_approval_detector(key)
        return await detector.deny_button() if detector else False

    async def click_open(self, key: str) -> bool:
        detector = self.pool.get_planning_detector(key)
        return await detector.click_open_button() if detector else False

    async def click_proceed(self, key: str) -> bool:
        detector = self.pool.get_planning_detector(key)
        return await detector.click_proceed_button() if detector else False

    async def extract_plan_content(self, key: str) -> Optional[str]:
        detector = self.pool.get_planning_detector(key)
        return await detector.extract_plan_content() if detector else None

    async def click_dismiss(self, key: str) -> bool:
        detector = self.pool.get_error_popup_detector(key)
        return await detector.click_dismiss_button() if detector else False

    async def click_retry(self, key: str) -> bool:
        detector = self.pool.get_error_popup_detector(key)
        return await detector.click_retry_button() if detector else False

    async def copy_debug_info(self, key: str) -> Optional[str]:
        """Press "Copy debug info" on the error popup and return the clipboard text."""
        detector = self.pool.get_error_popup_detector(key)
        if not detector or not await detector.click_copy_debug_info_button():
            return None
        await asyncio.sleep(CLIPBOARD_SETTLE_SECONDS)
        return await detector.read_clipboard()

    async def stop_generation(self, key: str) -> ClickResult:
        monitor = self.pool.get_response_monitor(key)
        if monitor is None:
            return ClickResult(ok=False, error="No response is being monitored")
        return await monitor.click_stop_button()
