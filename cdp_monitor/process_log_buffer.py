"""Bounded, de-duplicated activity log for display next to a streaming answer."""

import re
from typing import List

DEFAULT_MAX_CHARS = 3500
DEFAULT_MAX_ENTRIES = 120
DEFAULT_MAX_ENTRY_LENGTH = 260

_SERVER_TOOL_RE = re.compile(r"^[a-z0-9._-]+\s*/\s*[a-z0-9._-]+$", re.IGNORECASE)
_LANGUAGE_LABEL_RE = re.compile(
    r"^(json|javascript|typescript|python|bash|sh|html|css|xml|yaml|yml|toml|sql|graphql|markdown|text"
    r"|plaintext|log)$",
    re.IGNORECASE,
)


def _collapse_whitespace(text: str) -> str:
    return re.sub(r"\s+", " ", (text or "").replace("\r", "")).strip()


def parse_blocks(raw: str) -> List[str]:
    """Blank-line separated blocks, or single lines when there are none."""
    normalized = (raw or "").replace("\r", "").strip()
    if not normalized:
        return []
    blocks = [_collapse_whitespace(chunk) for chunk in re.split(r"\n{2,}", normalized)]
    blocks = [b for b in blocks if b]
    if blocks:
        return blocks
    return [line for line in (_collapse_whitespace(l) for l in normalized.split("\n")) if line]


def entry_marker(entry: str) -> str:
    lower = entry.lower()
    if re.match(r"^(?:thought for|thinking)\b", lower):
        return "🧠"
    if re.match(r"^(?:initiating|starting)\b", lower):
        return "🚀"
    if _SERVER_TOOL_RE.match(entry):
        return "🛠️"
    if lower.startswith("title: ") and " url: " in lower:
        return "🔎"
    if _LANGUAGE_LABEL_RE.match(entry):
        return "📦"
    return "•"


class ProcessLogBuffer:
    """
    Keeps the most recent activity entries within display limits.

    Entries are clipped to max_entry_length, prefixed with a marker for their
    type and de-duplicated case-insensitively. The oldest entries are dropped
    first when max_entries or max_chars would be exceeded.
    """

    def __init__(
        self,
        max_chars: int = DEFAULT_MAX_CHARS,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        max_entry_length: int = DEFAULT_MAX_ENTRY_LENGTH,
    ):
        self.max_chars = max_chars
        self.max_entries = max_entries
        self.max_entry_length = max_entry_length
        self._entries: List[str] = []
        self._seen: set = set()

    def _display_entry(self, raw_entry: str) -> str:
        trimmed = _collapse_whitespace(raw_entry)
        if not trimmed:
            return ""
        if len(trimmed) > self.max_entry_length:
            trimmed = trimmed[:max(0, self.max_entry_length - 3)] + "..."
        return f"{entry_marker(trimmed)} {trimmed}"

    def append(self, raw: str) -> str:
        """Add raw log text and return the updated snapshot."""
        for block in parse_blocks(raw):
            display = self._display_entry(block)
            key = display.lower()
            if not display or key in self._seen:
                continue
            self._entries.append(display)
            self._seen.add(key)
        self._trim()
        return self.snapshot()

    def snapshot(self) -> str:
        return "\n".join(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def _trim(self):
        while len(self._entries) > self.max_entries:
            self._drop_oldest()
        while len(self._entries) > 1 and len(self.snapshot()) > self.max_chars:
            self._drop_oldest()
        if len(self._entries) == 1 and len(self._entries[0]) > self.max_chars:
            clipped = self._entries[0][:max(0, self.max_chars - 3)] + "..."
            self._entries[0] = clipped
            self._seen = {clipped.lower()}

    def _drop_oldest(self):
        removed = self._entries.pop(0)
        self._seen.discard(removed.lower())
