"""Detection of messages typed directly into the assistant's chat panel."""

from __future__ import annotations

import hashlib
import logging
import re
from typing import Any, Optional

from .dom_scripts import USER_MESSAGE_SNAPSHOT
from .models import UserMessageInfo
from .polling_detector import PollingDetector

logger = logging.getLogger(__name__)

DEFAULT_ECHO_TTL_SECONDS = 60.0


def normalize_for_hash(text: str) -> str:
    return re.sub(r"\s+", " ", text.strip())[:200]


def compute_echo_hash(text: str) -> str:
    return hashlib.sha256(normalize_for_hash(text).encode("utf-8")).hexdigest()[:16]


def parse_user_message_snapshot(raw: Any) -> Optional[UserMessageInfo]:
    """Latest non-empty user bubble."""
    if not isinstance(raw, list):
        return None
    texts = [t.strip() for t in raw if isinstance(t, str) and t.strip()]
    return UserMessageInfo(text=texts[-1]) if texts else None


class UserMessageDetector(PollingDetector[UserMessageInfo]):
    """
    Reports user messages posted in the app itself (e.g. typed at the desk).

    Text we inject ourselves comes back as a user bubble too; callers register
    it with add_echo_hash() first so it is absorbed instead of reported.
    Echo fingerprints expire after echo_ttl_seconds and are kept across
    stop()/start(). The first poll after start() only records the message
    already on screen.
    """

    name = "UserMessageDetector"
    default_poll_interval = 2.0
    snapshot_expression = USER_MESSAGE_SNAPSHOT

    def __init__(self, session, on_detected, echo_ttl_seconds: float = DEFAULT_ECHO_TTL_SECONDS, **kwargs):
        kwargs.setdefault("prime_on_start", True)
        super().__init__(session, on_detected, **kwargs)
        self.echo_ttl_seconds = echo_ttl_seconds
        self._echo_hashes: dict[str, float] = {}  # hash -> expiry

    def parse_snapshot(self, raw: Any) -> Optional[UserMessageInfo]:
        return parse_user_message_snapshot(raw)

    def compute_key(self, snapshot: UserMessageInfo) -> str:
        return compute_echo_hash(snapshot.text)

    def add_echo_hash(self, text: str) -> str:
        """Mark text as self-injected so its next appearance is not reported."""
        echo_hash = compute_echo_hash(text)
        self._echo_hashes[echo_hash] = self.clock() + self.echo_ttl_seconds
        return echo_hash

    def is_echo(self, echo_hash: str) -> bool:
        self._evict_expired_echoes()
        return echo_hash in self._echo_hashes

    def _evict_expired_echoes(self):
        now = self.clock()
        for echo_hash in [h for h, expiry in self._echo_hashes.items() if expiry <= now]:
            del self._echo_hashes[echo_hash]

    def should_notify(self, key: str, snapshot: UserMessageInfo) -> bool:
        if self.is_echo(key):
            logger.debug(f"{self.name} echo absorbed: {snapshot.text[:40]!r}")
            return False
        return True
