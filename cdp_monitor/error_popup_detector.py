"""Error popup detection (e.g. "Agent terminated due to error")."""

from __future__ import annotations

import logging
from typing import Any, Optional

from .approval_detector import normalize_label
from .dom_scripts import ERROR_POPUP_SNAPSHOT, READ_CLIPBOARD
from .models import ErrorPopupInfo
from .polling_detector import PollingDetector

logger = logging.getLogger(__name__)

ERROR_PATTERNS = [
    "agent terminated",
    "terminated due to error",
    "unexpected error",
    "something went wrong",
    "an error occurred",
]
BODY_LIMIT = 1000


def parse_error_popup_snapshot(raw: Any) -> Optional[ErrorPopupInfo]:
    """First dialog whose text reads like an error and that offers at least one button."""
    if not isinstance(raw, list):
        return None
    for dialog in raw:
        if not isinstance(dialog, dict):
            continue
        full_text = normalize_label(dialog.get("text"))
        if not any(p in full_text for p in ERROR_PATTERNS):
            continue

        title = (dialog.get("heading") or "").strip()
        labels = [(b or "").strip() for b in dialog.get("buttons") or []]
        buttons = [label for label in labels if label]
        if not buttons:
            continue

        excluded = set(labels)
        body_parts = [
            text.strip() for text in dialog.get("textNodes") or []
            if text and text.strip() and text.strip() not in excluded and text.strip() != title
        ]
        return ErrorPopupInfo(title=title or "Error", body=" ".join(body_parts)[:BODY_LIMIT], buttons=buttons)
    return None


class ErrorPopupDetector(PollingDetector[ErrorPopupInfo]):
    """Watches for the assistant's error dialogs; 10s cooldown between notifications."""

    name = "ErrorPopupDetector"
    default_poll_interval = 3.0
    default_cooldown_seconds = 10.0
    snapshot_expression = ERROR_POPUP_SNAPSHOT

    def __init__(self, session, on_detected, cooldown_seconds: Optional[float] = None, **kwargs):
        if cooldown_seconds is None:
            cooldown_seconds = self.default_cooldown_seconds
        super().__init__(session, on_detected, cooldown_seconds=cooldown_seconds, **kwargs)

    def parse_snapshot(self, raw: Any) -> Optional[ErrorPopupInfo]:
        return parse_error_popup_snapshot(raw)

    def compute_key(self, snapshot: ErrorPopupInfo) -> str:
        return f"{snapshot.title}::{snapshot.body[:100]}"

    async def click_dismiss_button(self) -> bool:
        return await self.click_button("Dismiss")

    async def click_retry_button(self) -> bool:
        return await self.click_button("Retry")

    async def click_copy_debug_info_button(self) -> bool:
        return await self.click_button("Copy debug info")

    async def read_clipboard(self) -> Optional[str]:
        """Clipboard text (call shortly after click_copy_debug_info_button)."""
        text = await self.run_expression(READ_CLIPBOARD, await_promise=True)
        return text if isinstance(text, str) else None
