"""Shared pytest fixtures for CDP monitor tests."""

import asyncio
from typing import Any, Callable, Dict, List, Optional

import pytest

from cdp_monitor.cdp_session import CdpSessionConfig, CdpTransportError
from cdp_monitor.models import InjectResult


class FakeCdpSession:
    """
    Scripted stand-in for CdpSession.

    evaluate() looks the expression up in a table of handlers; unknown
    expressions evaluate to None. Handlers are installed with set() (fixed
    value), script() (values returned in turn, the last one repeating) or
    fail() (raise).
    """

    def __init__(self, workspace_path: str = "/work/proj"):
        self.workspace_path = workspace_path
        self.connected = True
        self.evaluated: List[str] = []
        self.injected: List[str] = []
        self.inject_result = InjectResult(ok=True, method="enter", context_id=1)
        self.connect_calls = 0
        self.disconnect_calls = 0
        self.connect_gate: Optional[asyncio.Event] = None
        self.connect_error: Optional[Exception] = None
        self.on_disconnected = None
        self.on_reconnected = None
        self.on_reconnect_failed = None
        self._handlers: Dict[str, Callable[[], Any]] = {}

    # Scripting
    def set(self, expression: str, value: Any):
        self._handlers[expression] = lambda: value

    def script(self, expression: str, *values: Any):
        remaining = list(values)

        def handler():
            return remaining.pop(0) if len(remaining) > 1 else remaining[0]

        self._handlers[expression] = handler

    def fail(self, expression: str, error: Exception):
        def handler():
            raise error

        self._handlers[expression] = handler

    def count(self, expression: str) -> int:
        return self.evaluated.count(expression)

    # CdpSession surface
    def is_connected(self) -> bool:
        return self.connected

    async def evaluate(self, expression, context_id=None, return_by_value=True, await_promise=False):
        if not self.connected:
            raise CdpTransportError("CDP socket is not connected")
        self.evaluated.append(expression)
        handler = self._handlers.get(expression)
        return handler() if handler else None

    async def inject_message(self, text: str) -> InjectResult:
        self.injected.append(text)
        return self.inject_result

    async def discover_and_connect_for_workspace(self, workspace_path: str) -> bool:
        self.connect_calls += 1
        self.workspace_path = workspace_path
        if self.connect_gate is not None:
            await self.connect_gate.wait()
        if self.connect_error is not None:
            raise self.connect_error
        self.connected = True
        return True

    async def disconnect(self):
        self.disconnect_calls += 1
        self.connected = False


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class CallRecorder:
    """Callable that records its arguments; works as a sync callback."""

    def __init__(self):
        self.calls: List[tuple] = []

    def __call__(self, *args):
        self.calls.append(args)

    @property
    def count(self) -> int:
        return len(self.calls)

    @property
    def last(self) -> Optional[tuple]:
        return self.calls[-1] if self.calls else None


@pytest.fixture
def fake_session() -> FakeCdpSession:
    """
    Scripted CDP session, connected, with no expressions configured.

    Returns:
        FakeCdpSession bound to /work/proj
    """
    return FakeCdpSession()


@pytest.fixture
def clock() -> FakeClock:
    """
    Injectable clock for cooldown and TTL tests.

    Returns:
        FakeClock starting at t=1000
    """
    return FakeClock()


@pytest.fixture
def recorder() -> Callable[[], CallRecorder]:
    """
    Factory for fresh callback recorders.

    Returns:
        Callable returning a new CallRecorder each time
    """
    return CallRecorder


@pytest.fixture
def session_factory():
    """
    Pool session factory that hands out FakeCdpSession instances.

    Returns:
        Factory with a ``created`` list of every session it built
    """
    created: List[FakeCdpSession] = []

    def factory(config: CdpSessionConfig, workspace_path: str) -> FakeCdpSession:
        session = FakeCdpSession(workspace_path)
        session.connected = False
        created.append(session)
        return session

    factory.created = created
    return factory
