"""Separate user-facing answer text from activity / tool-trace noise."""

import re
from typing import Iterable, List, Optional

from .models import SplitResult

# Short status labels the assistant UI renders around (and inside) answers
UI_CHROME_PHRASES = {
    "analyzed", "analyzing", "thinking", "thought", "reading", "read", "writing", "wrote",
    "running", "ran", "searching", "searched", "generating", "working", "loading", "planning",
    "editing", "edited", "processing", "executing", "executed", "created", "updated", "deleted",
    "fetched", "copy", "copied", "show details", "hide details", "show more", "show less",
    "expand", "collapse", "accept", "reject", "accept all", "reject all", "open", "proceed",
    "cancel", "retry", "good", "bad", "good bad", "running command", "command", "output",
    "thought for a few seconds", "mcp tool",
}

_ACTIVITY_VERBS = (
    r"analy[sz]ing|analy[sz]ed|reading|read|writing|wrote|running|ran|searching|searched|planning"
    r"|thinking|processing|loading|executing|executed|testing|tested|debugging|fetching|fetched"
    r"|connecting|connected|creating|created|updating|updated|deleting|deleted|installing|installed"
    r"|building|built|compiling|compiled|checking|checked|scanning|scanned|parsing|parsed|resolving"
    r"|resolved|downloading|downloaded|uploading|uploaded|editing|edited|opened|looked|viewed"
    r"|listed|launched|initiating"
)
_ACTIVITY_LINE_RE = re.compile(rf"^(?:{_ACTIVITY_VERBS})\b\s*\S", re.IGNORECASE)
ACTIVITY_LINE_MAX_LENGTH = 220

_TOOL_TRACE_RE = re.compile(
    r"^(?:mcp tool\b|show details\b|thought for\s*<?\d+s|initiating task execution\b"
    r"|commencing information retrieval\b|tool call:|tool result:|calling tool\b|tool response\b"
    r"|running mcp\b|\[mcp\]|mcp server\b)",
    re.IGNORECASE,
)
_SERVER_TOOL_RE = re.compile(r"^[a-z0-9][a-z0-9._-]*\s*/\s*[a-z0-9][a-z0-9._-]*$", re.IGNORECASE)
_FULL_OUTPUT_RE = re.compile(r"^full output written to\b", re.IGNORECASE)

_STRUCTURAL_CHROME = [
    re.compile(r"^[+-]\d+(?:\s+[+-]\d+)?$"),                                    # diff stats: +12 -3
    re.compile(r"^\d[\d,]*\s*(?:chars?|characters|bytes|lines?|tokens?)$", re.IGNORECASE),
    re.compile(r"^(?:ln|line)\s*\d+\s*,\s*(?:col|column)\s*\d+$", re.IGNORECASE),  # Ln 12, Col 4
    re.compile(r"^l\d+(?:-l?\d+)?$", re.IGNORECASE),                             # L10-L20
    re.compile(r"^[\[\]{}(),]+$"),
    re.compile(r'^"[^"]+"\s*:\s*.+$'),
    re.compile(r"^thought for\s*<?\d+\s*s(?:ec(?:onds?)?)?$", re.IGNORECASE),
    re.compile(r"^output\.[a-z0-9._-]+(?:#l\d+(?:-\d+)?)?$", re.IGNORECASE),
]

BLANK = "blank"
CODE = "code"
CHROME = "chrome"
ACTIVITY = "activity"
OUTPUT = "output"


def _collapse(text: str) -> str:
    return re.sub(r"\s+", " ", text.strip().lower())


def is_tool_call_line(line: str) -> bool:
    """Tool-call/result traces; their presence switches splitting to the last-paragraph rule."""
    trimmed = line.strip()
    if not trimmed:
        return False
    return bool(_TOOL_TRACE_RE.match(trimmed) or _SERVER_TOOL_RE.match(trimmed) or _FULL_OUTPUT_RE.match(trimmed))


def is_ui_chrome_line(line: str) -> bool:
    trimmed = line.strip()
    if not trimmed:
        return False
    if _collapse(trimmed) in UI_CHROME_PHRASES:
        return True
    if is_tool_call_line(trimmed):
        return True
    return any(pattern.match(trimmed) for pattern in _STRUCTURAL_CHROME)


def is_activity_log_line(line: str) -> bool:
    """Progress verb plus an object ("Analyzed foo.py"); a bare verb is chrome instead."""
    trimmed = line.strip()
    if not trimmed or len(trimmed) > ACTIVITY_LINE_MAX_LENGTH:
        return False
    return bool(_ACTIVITY_LINE_RE.match(trimmed))


def _normalize_text(text: str) -> str:
    return re.sub(r"\n{3,}", "\n\n", text.replace("\r", "")).strip()


def classify_lines(text: str) -> List[tuple]:
    """
    Tag every line as blank, code, chrome, activity or output.

    Fence lines and everything between them are code and never reclassified.
    """
    tagged = []
    in_code = False
    for line in text.replace("\r", "").split("\n"):
        trimmed = line.strip()
        if trimmed.startswith("```"):
            in_code = not in_code
            tagged.append((CODE, line))
        elif in_code:
            tagged.append((CODE, line))
        elif not trimmed:
            tagged.append((BLANK, line))
        elif is_ui_chrome_line(trimmed):
            tagged.append((CHROME, line))
        elif is_activity_log_line(trimmed):
            tagged.append((ACTIVITY, line))
        else:
            tagged.append((OUTPUT, line))
    return tagged


def split_output_and_logs(text: str) -> SplitResult:
    """
    Split raw response text into answer output and activity logs.

    Without tool-call traces every line goes where its class says. With
    them, the text is working notes interleaved with tool calls and only the
    last contiguous paragraph is the answer; everything else is logged.
    """
    if not text or not text.strip():
        return SplitResult(output="", logs="")

    tagged = classify_lines(text)
    has_tool_calls = any(kind == CHROME and is_tool_call_line(line) for kind, line in tagged)

    if not has_tool_calls:
        output_lines = [line for kind, line in tagged if kind in (BLANK, CODE, OUTPUT)]
        log_lines = [line.strip() for kind, line in tagged if kind in (CHROME, ACTIVITY)]
        return SplitResult(output=_normalize_text("\n".join(output_lines)), logs="\n".join(log_lines))

    # Last paragraph wins: find the final run of output/code lines
    end = len(tagged) - 1
    while end >= 0 and tagged[end][0] not in (OUTPUT, CODE):
        end -= 1
    start = end
    while start > 0 and tagged[start - 1][0] in (OUTPUT, CODE):
        start -= 1

    output_lines = [line for _, line in tagged[start:end + 1]] if end >= 0 else []
    log_lines = [
        line.strip() for index, (kind, line) in enumerate(tagged)
        if kind != BLANK and not (start <= index <= end) and line.strip()
    ]
    return SplitResult(output=_normalize_text("\n".join(output_lines)), logs="\n".join(log_lines))


def sanitize_activity_lines(text: str) -> str:
    """Trim, drop blanks and chrome, dedupe (first occurrence wins)."""
    kept = []
    seen = set()
    for line in (text or "").replace("\r", "").split("\n"):
        trimmed = line.strip()
        if not trimmed or trimmed in seen:
            continue
        if is_ui_chrome_line(trimmed) and not is_activity_log_line(trimmed):
            continue
        seen.add(trimmed)
        kept.append(trimmed)
    return "\n".join(kept)


def separate_output_for_delivery(
    raw_text: str,
    dom_output: Optional[str] = None,
    dom_activity_lines: Optional[Iterable[str]] = None,
) -> SplitResult:
    """Prefer output already separated from the DOM; otherwise split the raw text."""
    if dom_output is not None:
        output = _normalize_text(dom_output or raw_text or "")
        logs = _normalize_text("\n".join(dom_activity_lines or []))
        return SplitResult(output=output, logs=logs)

    split = split_output_and_logs(raw_text or "")
    return SplitResult(output=split.output, logs=_normalize_text(split.logs))
