"""Approval prompt detection (Allow / Deny / Always allow)."""

from __future__ import annotations

import asyncio
import logging
import re
from typing import Any, Optional

from .dom_scripts import APPROVAL_SNAPSHOT, EXPAND_ALWAYS_ALLOW_MENU
from .models import ApprovalInfo
from .polling_detector import PollingDetector

logger = logging.getLogger(__name__)

ALLOW_ONCE_PATTERNS = ["allow once", "allow one time", "今回のみ許可", "1回のみ許可", "一度許可"]
ALWAYS_ALLOW_PATTERNS = ["allow this conversation", "allow this chat", "always allow", "常に許可", "この会話を許可"]
ALLOW_PATTERNS = ["allow", "permit", "許可", "承認", "確認"]
DENY_PATTERNS = ["deny", "拒否", "decline"]

ALWAYS_ALLOW_CANDIDATES = ["Allow This Conversation", "Allow This Chat", "Always Allow"]
ALWAYS_ALLOW_ATTEMPTS = 5
ALWAYS_ALLOW_BACKOFF_SECONDS = 0.12


def normalize_label(text: Optional[str]) -> str:
    return re.sub(r"\s+", " ", (text or "").lower()).strip()


def _matches(text: str, patterns: list[str]) -> bool:
    label = normalize_label(text)
    return any(p in label for p in patterns)


def parse_approval_snapshot(raw: Any) -> Optional[ApprovalInfo]:
    """
    Pick the approval prompt out of the visible buttons.

    The approve button is the first "allow once" button, otherwise the first
    plain "allow" button that is not an "always allow" one. The prompt only
    counts when its container also holds a deny button.
    """
    if not isinstance(raw, dict):
        return None
    buttons = [b for b in raw.get("buttons") or [] if isinstance(b, dict)]
    containers = raw.get("containers") or []

    approve = next((b for b in buttons if _matches(b.get("text", ""), ALLOW_ONCE_PATTERNS)), None)
    if approve is None:
        approve = next(
            (
                b for b in buttons
                if _matches(b.get("text", ""), ALLOW_PATTERNS)
                and not _matches(b.get("text", ""), ALWAYS_ALLOW_PATTERNS)
            ),
            None,
        )
    if approve is None:
        return None

    container_index = approve.get("container")
    siblings = [b for b in buttons if b.get("container") == container_index]
    deny = next((b for b in siblings if _matches(b.get("text", ""), DENY_PATTERNS)), None)
    if deny is None:
        return None
    always = next((b for b in siblings if _matches(b.get("text", ""), ALWAYS_ALLOW_PATTERNS)), None)

    container: dict = {}
    if isinstance(container_index, int) and 0 <= container_index < len(containers):
        container = containers[container_index] or {}

    description = (container.get("description") or "").strip()
    if not description:
        text = (container.get("text") or "").strip()
        if 5 < len(text) < 500:
            description = text
    if not description:
        description = (approve.get("aria") or "").strip()

    return ApprovalInfo(
        approve_text=(approve.get("text") or "").strip(),
        deny_text=(deny.get("text") or "").strip(),
        description=description,
        always_allow_text=(always.get("text") or "").strip() if always else "",
    )


class ApprovalDetector(PollingDetector[ApprovalInfo]):
    """
    Watches for tool-permission prompts.

    Dedup key is approve text + description, so the same prompt stays one
    notification while it is on screen.
    """

    name = "ApprovalDetector"
    default_poll_interval = 1.5
    snapshot_expression = APPROVAL_SNAPSHOT

    def parse_snapshot(self, raw: Any) -> Optional[ApprovalInfo]:
        return parse_approval_snapshot(raw)

    def compute_key(self, snapshot: ApprovalInfo) -> str:
        return f"{snapshot.approve_text}::{snapshot.description}"

    async def approve_button(self, button_text: Optional[str] = None) -> bool:
        info = self.last_detected_info
        text = button_text or (info.approve_text if info else None) or "Allow Once"
        return await self.click_button(text)

    async def deny_button(self, button_text: Optional[str] = None) -> bool:
        info = self.last_detected_info
        text = button_text or (info.deny_text if info else None) or "Deny"
        return await self.click_button(text)

    async def always_allow_button(self) -> bool:
        """
        Click the per-conversation allow option.

        Tries the visible candidates first; when none is on screen the split
        button's menu is expanded and the candidates are retried with a short
        backoff while the menu renders.
        """
        if await self._click_always_allow_candidates():
            return True

        expanded = await self.run_expression(EXPAND_ALWAYS_ALLOW_MENU)
        if not isinstance(expanded, dict) or not expanded.get("ok"):
            error = expanded.get("error") if isinstance(expanded, dict) else "no result"
            logger.debug(f"{self.name} always-allow menu not expanded: {error}")
            return False

        for attempt in range(ALWAYS_ALLOW_ATTEMPTS):
            await asyncio.sleep(ALWAYS_ALLOW_BACKOFF_SECONDS)
            if await self._click_always_allow_candidates():
                logger.info(f"{self.name} always-allow clicked after expanding menu (attempt {attempt + 1})")
                return True
        return False

    async def _click_always_allow_candidates(self) -> bool:
        info = self.last_detected_info
        candidates = []
        if info and info.always_allow_text:
            candidates.append(info.always_allow_text)
        candidates.extend(c for c in ALWAYS_ALLOW_CANDIDATES if c not in candidates)
        for text in candidates:
            if await self.click_button(text):
                return True
        return False
