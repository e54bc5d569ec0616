"""
Typed rules over raw response snapshots.

The remote side only reports candidate nodes, button labels and alert
texts; which candidate is the assistant's answer, whether generation is
still running and whether the quota ran out is decided here.
"""

import re
from typing import Any, Dict, Iterable, List, Optional

from .dom_scripts import RESPONSE_SELECTORS
from .models import AssistantSegment, ResponseCandidate, SegmentKind, StructuredResponse

SELECTOR_SCORES = dict(RESPONSE_SELECTORS)

MIN_RESPONSE_LENGTH = 2
MIN_PROCESS_LOG_LENGTH = 4
PROCESS_LOG_CLIP = 300
PROCESS_LOG_KEY_LENGTH = 200
MAX_THINKING_SEGMENT_LENGTH = 280

QUOTA_KEYWORDS = ["model quota reached", "rate limit", "quota exceeded", "exhausted your quota", "exhausted quota"]
EXHAUSTED_KEYWORDS = ["exhausted your quota", "exhausted quota"]

STOP_LABELS = {"stop", "stop generating", "stop response", "停止", "生成を停止", "応答を停止"}

_ACTIVITY_RE = re.compile(
    r"^(?:analy[sz]ing|reading|writing|running|searching|planning|thinking|processing|loading|executing"
    r"|testing|debugging|fetching|connecting|creating|updating|deleting|installing|building|compiling"
    r"|deploying|checking|scanning|parsing|resolving|downloading|uploading|analyzed|read|wrote|ran|created"
    r"|updated|deleted|fetched|built|compiled|installed|resolved|downloaded|connected)\b",
    re.IGNORECASE,
)
_SERVER_TOOL_RE = re.compile(r"^[a-z0-9._-]+\s*/\s*[a-z0-9._-]+$", re.IGNORECASE)
_OUTPUT_FILE_RE = re.compile(r"^output\.[a-z0-9._-]+(?:#l\d+(?:-\d+)?)?$", re.IGNORECASE)
_LANGUAGE_LABEL_RE = re.compile(
    r"^(json|javascript|typescript|python|bash|sh|html|css|xml|yaml|yml|toml|sql|graphql|markdown|text"
    r"|plaintext|log|ruby|go|rust|java|c|cpp|csharp|php|swift|kotlin)$",
    re.IGNORECASE,
)
_RESULT_HINT_RE = re.compile(r"tool result|tool-output|result")
_TOOL_HINT_RE = re.compile(r"tool call|tool-call|tool_input|tool")
_TOOL_CALL_TEXT_RE = re.compile(r"tool call|tool-call")
_TOOL_RESULT_TEXT_RE = re.compile(r"full output written to|output\.txt#l")
_THINKING_TEXT_RE = re.compile(r"analyzing|thinking|planning|processing|実行中|思考中|分析中")


def _collapse(text: str) -> str:
    return re.sub(r"\s+", " ", (text or "").strip().lower())


def looks_like_activity_log(text: str) -> bool:
    normalized = (text or "").strip().lower()
    if not normalized:
        return False
    if _ACTIVITY_RE.match(normalized) and len(normalized) <= 220:
        return True
    if (normalized.startswith("initiating ") or normalized.startswith("thought for ")) and len(normalized) <= 500:
        return True
    return False


def looks_like_feedback_footer(text: str) -> bool:
    return _collapse(text) in ("good bad", "good", "bad")


def looks_like_tool_output(text: str) -> bool:
    stripped = (text or "").strip()
    first = stripped.split("\n")[0] if stripped else ""
    if _SERVER_TOOL_RE.match(first):
        return True
    if re.match(r"^full output written to\b", first, re.IGNORECASE):
        return True
    if _OUTPUT_FILE_RE.match(first):
        return True
    lower = stripped.lower()
    if lower.startswith("title: ") and " url: " in lower and " snippet: " in lower:
        return True
    return bool(_LANGUAGE_LABEL_RE.match(first))


def looks_like_quota_popup(text: str) -> bool:
    lower = (text or "").strip().lower()
    if any(k in lower for k in EXHAUSTED_KEYWORDS):
        return True
    if not any(k in lower for k in ("model quota reached", "quota exceeded", "rate limit")):
        return False
    return "dismiss" in lower or "upgrade" in lower


def parse_candidates(raw: Any) -> List[ResponseCandidate]:
    if not isinstance(raw, list):
        return []
    return [ResponseCandidate.from_dict(item) for item in raw if isinstance(item, dict)]


def is_response_candidate(candidate: ResponseCandidate) -> bool:
    """Whether a candidate may hold the assistant's answer (not chrome, logs or popups)."""
    text = candidate.text
    if candidate.excluded or len(text) < MIN_RESPONSE_LENGTH:
        return False
    return not (
        looks_like_activity_log(text)
        or looks_like_feedback_footer(text)
        or looks_like_tool_output(text)
        or looks_like_quota_popup(text)
    )


def select_response_text(candidates: Iterable[ResponseCandidate]) -> Optional[str]:
    """
    Best answer text: highest selector score, most recent node on ties.

    Returns None when no candidate qualifies.
    """
    best = None
    best_rank = None
    for candidate in candidates:
        if not is_response_candidate(candidate):
            continue
        rank = (SELECTOR_SCORES.get(candidate.selector, 0), candidate.order)
        if best_rank is None or rank > best_rank:
            best, best_rank = candidate, rank
    return best.text if best else None


def extract_process_logs(candidates: Iterable[ResponseCandidate]) -> List[str]:
    """Activity-log or tool-output shaped candidates, clipped, in document order."""
    entries = []
    for candidate in sorted(candidates, key=lambda c: c.order):
        text = candidate.text
        if candidate.excluded or len(text) < MIN_PROCESS_LOG_LENGTH:
            continue
        if looks_like_activity_log(text) or looks_like_tool_output(text):
            entries.append(text[:PROCESS_LOG_CLIP])
    return entries


def process_log_key(entry: str) -> str:
    return (entry or "").replace("\r", "").strip()[:PROCESS_LOG_KEY_LENGTH]


def is_stop_label(label: str) -> bool:
    return _collapse(label) in STOP_LABELS


def is_generating(raw: Any) -> bool:
    """Stop affordance present: the cancel tooltip, or any button labelled as stop."""
    if not isinstance(raw, dict):
        return False
    if raw.get("tooltip"):
        return True
    for labels in raw.get("labels") or []:
        if isinstance(labels, str):
            labels = [labels]
        if any(is_stop_label(label) for label in labels or [] if isinstance(label, str)):
            return True
    return False


def detect_quota(raw: Any) -> bool:
    """Quota indicator outside any response body."""
    if not isinstance(raw, dict):
        return False

    def _texts(name):
        return [t.lower() for t in raw.get(name) or [] if isinstance(t, str)]

    if any(k in t for t in _texts("headings") for k in QUOTA_KEYWORDS):
        return True
    if any(k in t for t in _texts("inline") for k in EXHAUSTED_KEYWORDS):
        return True
    return any(k in t for t in _texts("alerts") for k in QUOTA_KEYWORDS)


def infer_segment_kind(
    text: str,
    role: str = "",
    in_details: bool = False,
    in_feedback: bool = False,
    hint: str = "",
) -> SegmentKind:
    """
    Classify one message text node.

    Collapsed <details> blocks hold the assistant's thinking and tool traces;
    their class hints tell calls from results. Outside them, tool and thinking
    traces are recognised by text, and anything else in an assistant message
    is answer body.
    """
    lower = (text or "").strip().lower()
    if not lower:
        return SegmentKind.UNKNOWN
    if in_feedback or looks_like_feedback_footer(lower):
        return SegmentKind.FEEDBACK

    if in_details:
        hint = (hint or "").lower()
        if _RESULT_HINT_RE.search(hint):
            return SegmentKind.TOOL_RESULT
        if _TOOL_HINT_RE.search(hint):
            return SegmentKind.TOOL_CALL
        return SegmentKind.THINKING

    if _TOOL_CALL_TEXT_RE.search(lower) or _SERVER_TOOL_RE.match(lower):
        return SegmentKind.TOOL_CALL
    if _TOOL_RESULT_TEXT_RE.search(lower):
        return SegmentKind.TOOL_RESULT
    if _THINKING_TEXT_RE.search(lower) and len(lower) <= MAX_THINKING_SEGMENT_LENGTH:
        return SegmentKind.THINKING
    if role == "assistant":
        return SegmentKind.ASSISTANT_BODY
    return SegmentKind.UNKNOWN


def _normalize_segment_text(text: Any) -> str:
    if not isinstance(text, str):
        return ""
    return re.sub(r"\n{3,}", "\n\n", text.replace("\r", "")).strip()


def _dedupe(lines: Iterable[str]) -> List[str]:
    seen = set()
    unique = []
    for line in lines:
        if line and line not in seen:
            seen.add(line)
            unique.append(line)
    return unique


def parse_segments(raw: Any) -> Optional[List[AssistantSegment]]:
    """Classified segments, or None when the snapshot is not a segment payload."""
    if not isinstance(raw, dict) or not isinstance(raw.get("segments"), list):
        return None
    segments = []
    for item in raw["segments"]:
        if not isinstance(item, dict):
            continue
        text = _normalize_segment_text(item.get("text"))
        if not text:
            continue
        role = item.get("role") or ""
        kind = infer_segment_kind(
            text,
            role=role,
            in_details=bool(item.get("inDetails")),
            in_feedback=bool(item.get("inFeedback")),
            hint=item.get("hint") or "",
        )
        if kind == SegmentKind.UNKNOWN:
            continue
        segments.append(AssistantSegment(
            kind=kind, text=text, role=role, message_index=int(item.get("messageIndex", 0) or 0)
        ))
    return segments


def classify_segments(raw: Any) -> Optional[StructuredResponse]:
    """
    Split a segment snapshot into answer output, activity lines and feedback.

    Output is the body of the latest message that has any; activity lines
    cover every message so earlier turns can be recognised as already seen.
    Returns None when the snapshot is unusable and text candidates should be
    read instead.
    """
    segments = parse_segments(raw)
    if segments is None:
        return None

    counts: Dict[str, int] = {}
    for segment in segments:
        counts[segment.kind.value] = counts.get(segment.kind.value, 0) + 1

    body = [s for s in segments if s.kind == SegmentKind.ASSISTANT_BODY]
    output = ""
    if body:
        latest = max(s.message_index for s in body)
        output = "\n\n".join(s.text for s in body if s.message_index == latest).strip()

    return StructuredResponse(
        output=output,
        activity_lines=_dedupe(s.text for s in segments if s.kind.is_activity),
        feedback=_dedupe(s.text for s in segments if s.kind == SegmentKind.FEEDBACK),
        segment_counts=counts,
    )
