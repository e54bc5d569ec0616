"""Data models for the CDP monitor."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, List, Optional


class ConnectionState(Enum):
    """CDP connection lifecycle state."""
    DISCONNECTED = "disconnected"  # Socket closed, reconnect may follow
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    FAILED = "failed"              # Reconnect budget spent (terminal)
    CLOSED = "closed"              # disconnect() was called (terminal)


class DetectorKind(Enum):
    """Kinds of per-workspace watchers registered in the pool."""
    APPROVAL = "approval"
    PLANNING = "planning"
    ERROR_POPUP = "error_popup"
    USER_MESSAGE = "user_message"
    RESPONSE = "response"


class ResponsePhase(Enum):
    """Response generation phases."""
    WAITING = "waiting"
    THINKING = "thinking"
    GENERATING = "generating"
    COMPLETE = "complete"
    TIMEOUT = "timeout"
    QUOTA_REACHED = "quotaReached"

    @property
    def is_terminal(self) -> bool:
        return self in (ResponsePhase.COMPLETE, ResponsePhase.TIMEOUT, ResponsePhase.QUOTA_REACHED)


class SegmentKind(Enum):
    """Role of one text segment inside an assistant message."""
    ASSISTANT_BODY = "assistant-body"
    THINKING = "thinking"
    TOOL_CALL = "tool-call"
    TOOL_RESULT = "tool-result"
    FEEDBACK = "feedback"
    UNKNOWN = "unknown"

    @property
    def is_activity(self) -> bool:
        return self in (SegmentKind.THINKING, SegmentKind.TOOL_CALL, SegmentKind.TOOL_RESULT)


@dataclass
class CdpContext:
    """A Runtime execution context reported by the remote page."""
    id: int
    name: str = ""
    url: str = ""
    aux_data: dict = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict) -> "CdpContext":
        return cls(
            id=data["id"],
            name=data.get("name", "") or "",
            url=data.get("origin", "") or data.get("url", "") or "",
            aux_data=data.get("auxData", {}) or {},
        )


@dataclass
class CdpTarget:
    """An inspectable target listed by /json/list."""
    id: str
    title: str = ""
    url: str = ""
    type: str = ""
    ws_url: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict) -> "CdpTarget":
        return cls(
            id=data.get("id", ""),
            title=data.get("title", "") or "",
            url=data.get("url", "") or "",
            type=data.get("type", "") or "",
            ws_url=data.get("webSocketDebuggerUrl"),
        )


@dataclass
class InjectResult:
    """Outcome of injecting a prompt into the chat input."""
    ok: bool
    method: Optional[str] = None  # "click" or "enter"
    context_id: Optional[int] = None
    error: Optional[str] = None


@dataclass
class ClickResult:
    """Outcome of a remote click action."""
    ok: bool
    method: Optional[str] = None
    error: Optional[str] = None

    @classmethod
    def from_value(cls, value: Any) -> "ClickResult":
        if not isinstance(value, dict):
            return cls(ok=False, error="evaluation returned empty")
        return cls(ok=value.get("ok") is True, method=value.get("method"), error=value.get("error"))


@dataclass
class ApprovalInfo:
    """Approval prompt buttons and the action being approved."""
    approve_text: str
    deny_text: str
    description: str = ""
    always_allow_text: str = ""  # Empty when the prompt has no per-conversation option


@dataclass
class PlanningInfo:
    """Plan card awaiting Open / Proceed."""
    open_text: str
    proceed_text: str
    plan_title: str = ""
    plan_summary: str = ""
    description: str = ""


@dataclass
class ErrorPopupInfo:
    """Error dialog shown by the assistant (e.g. "Agent terminated due to error")."""
    title: str
    body: str = ""
    buttons: List[str] = field(default_factory=list)


@dataclass
class UserMessageInfo:
    """Latest user message bubble in the chat panel."""
    text: str


@dataclass
class ResponseCandidate:
    """One text node that may hold the assistant response."""
    selector: str
    text: str
    order: int = 0          # Document order, larger = more recent
    excluded: bool = False  # Inside details/feedback/dialog containers

    @classmethod
    def from_dict(cls, data: dict) -> "ResponseCandidate":
        return cls(
            selector=data.get("selector", "") or "",
            text=(data.get("text", "") or "").replace("\r", "").strip(),
            order=int(data.get("order", 0) or 0),
            excluded=bool(data.get("excluded", False)),
        )


@dataclass
class AssistantSegment:
    """One classified text node of an assistant message."""
    kind: SegmentKind
    text: str
    role: str = ""
    message_index: int = 0


@dataclass
class StructuredResponse:
    """Assistant messages split by segment kind."""
    output: str = ""  # Body text of the latest assistant message
    activity_lines: List[str] = field(default_factory=list)  # Thinking and tool segments, deduplicated
    feedback: List[str] = field(default_factory=list)
    segment_counts: dict = field(default_factory=dict)


@dataclass
class SplitResult:
    """Text split into user-facing output and activity logs."""
    output: str = ""
    logs: str = ""


@dataclass
class ResponseResult:
    """Final outcome of one monitored response, handed to the presentation layer."""
    text: str
    output: str
    logs: str
    phase: ResponsePhase
    quota_detected: bool = False  # Quota indicator seen after text existed (annotation only)
