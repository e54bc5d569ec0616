"""Planning mode detection (plan card with Open / Proceed)."""

from __future__ import annotations

import logging
from typing import Any, Optional

from .approval_detector import normalize_label
from .dom_scripts import PLAN_CONTENT, PLANNING_SNAPSHOT
from .models import PlanningInfo
from .polling_detector import PollingDetector

logger = logging.getLogger(__name__)

DESCRIPTION_LIMIT = 500
PLAN_CONTENT_LIMIT = 4000


def parse_planning_snapshot(raw: Any) -> Optional[PlanningInfo]:
    """The notify container counts only when it has both an Open and a Proceed button."""
    if not isinstance(raw, dict):
        return None
    buttons = [b.strip() for b in raw.get("buttons") or [] if isinstance(b, str)]
    open_text = next((b for b in buttons if "open" in normalize_label(b)), None)
    proceed_text = next((b for b in buttons if "proceed" in normalize_label(b)), None)
    if not open_text or not proceed_text:
        return None

    summaries = [s.strip() for s in raw.get("summaries") or [] if isinstance(s, str)]
    plan_summary = " ".join(s for s in summaries if s and s not in (open_text, proceed_text))

    return PlanningInfo(
        open_text=open_text,
        proceed_text=proceed_text,
        plan_title=(raw.get("title") or "").strip(),
        plan_summary=plan_summary,
        description=(raw.get("description") or "").strip()[:DESCRIPTION_LIMIT],
    )


class PlanningDetector(PollingDetector[PlanningInfo]):
    """
    Watches for a plan awaiting review.

    The key is only the button labels, so plans with different titles but the
    same buttons count as one event. A cooldown after each notification
    absorbs the card re-rendering while the plan streams in.
    """

    name = "PlanningDetector"
    default_poll_interval = 2.0
    default_cooldown_seconds = 5.0
    snapshot_expression = PLANNING_SNAPSHOT

    def __init__(self, session, on_detected, cooldown_seconds: Optional[float] = None, **kwargs):
        if cooldown_seconds is None:
            cooldown_seconds = self.default_cooldown_seconds
        super().__init__(session, on_detected, cooldown_seconds=cooldown_seconds, **kwargs)

    def parse_snapshot(self, raw: Any) -> Optional[PlanningInfo]:
        return parse_planning_snapshot(raw)

    def compute_key(self, snapshot: PlanningInfo) -> str:
        return f"{snapshot.open_text}::{snapshot.proceed_text}"

    async def click_open_button(self, button_text: Optional[str] = None) -> bool:
        info = self.last_detected_info
        return await self.click_button(button_text or (info.open_text if info else None) or "Open")

    async def click_proceed_button(self, button_text: Optional[str] = None) -> bool:
        info = self.last_detected_info
        return await self.click_button(button_text or (info.proceed_text if info else None) or "Proceed")

    async def extract_plan_content(self) -> Optional[str]:
        """Plan markdown shown after Open was clicked, or None when not rendered."""
        content = await self.run_expression(PLAN_CONTENT)
        if not isinstance(content, str) or not content:
            return None
        return content[:PLAN_CONTENT_LIMIT]
