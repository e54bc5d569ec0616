"""Chrome DevTools Protocol session (JSON-RPC over WebSocket)."""

from __future__ import annotations

import asyncio
import json
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

import httpx
import websockets

from .callbacks import invoke_callback
from .dom_scripts import CONTEXT_URL_KEYWORD, build_inject_expression
from .models import CdpContext, CdpTarget, ConnectionState, InjectResult

logger = logging.getLogger(__name__)

DEFAULT_PORTS = [9222, 9223, 9333, 9444, 9555, 9666]


class CdpError(RuntimeError):
    """Base class for CDP failures."""


class CdpConnectionError(CdpError):
    """No matching debug target could be found or opened."""


class CdpTransportError(CdpError):
    """The socket is not open (never connected, closed, or dropped mid-call)."""


class CdpTimeoutError(CdpError):
    """No response arrived within the call timeout."""


class CdpEvaluationError(CdpError):
    """The remote side reported a protocol error or a script exception."""


class ReconnectExhaustedError(CdpError):
    """Automatic reconnection gave up after the configured number of attempts."""


@dataclass
class CdpSessionConfig:
    """Configuration for CDP sessions."""
    host: str = "127.0.0.1"
    ports: list[int] = field(default_factory=lambda: list(DEFAULT_PORTS))
    call_timeout_seconds: float = 30
    discovery_timeout_seconds: float = 2
    max_reconnect_attempts: int = 3
    reconnect_delay_seconds: float = 2

    @classmethod
    def from_config(cls, config: Optional[dict]) -> "CdpSessionConfig":
        """Build from the top-level config dict (``cdp`` and ``timeouts.cdp`` sections)."""
        config = config or {}
        cdp = config.get("cdp", {})
        timeouts = config.get("timeouts", {}).get("cdp", {})
        return cls(
            host=cdp.get("host", "127.0.0.1"),
            ports=list(cdp.get("ports", DEFAULT_PORTS)),
            call_timeout_seconds=timeouts.get("call_timeout_seconds", 30),
            discovery_timeout_seconds=timeouts.get("discovery_timeout_seconds", 2),
            max_reconnect_attempts=cdp.get("max_reconnect_attempts", 3),
            reconnect_delay_seconds=timeouts.get("reconnect_delay_seconds", 2),
        )


def extract_dir_name(workspace_path: str) -> str:
    """Workspace key: the last path component ("/home/me/proj/" -> "proj")."""
    return os.path.basename(os.path.normpath(workspace_path)) if workspace_path else ""


def _is_workbench(target: CdpTarget) -> bool:
    return "workbench" in target.url or "Antigravity" in target.title or "Cascade" in target.title


def select_target(targets: list[CdpTarget], workspace_name: Optional[str] = None) -> Optional[CdpTarget]:
    """
    Pick the assistant's workbench page from a /json/list result.

    With a workspace name only a page whose title mentions it qualifies.
    Otherwise prefer a real workbench page, then any workbench-like target,
    and finally accept the Launchpad.
    """
    usable = [t for t in targets if t.ws_url]

    if workspace_name:
        for t in usable:
            if t.type == "page" and workspace_name in t.title:
                return t
        return None

    for t in usable:
        if (
            t.type == "page"
            and "Launchpad" not in t.title
            and "workbench-jetski-agent" not in t.url
            and _is_workbench(t)
        ):
            return t
    for t in usable:
        if _is_workbench(t) and "Launchpad" not in t.title:
            return t
    for t in usable:
        if _is_workbench(t) or "Launchpad" in t.title:
            return t
    return None


class CdpSession:
    """
    One CDP connection to the assistant's workbench page.

    Notes:
    - Runtime.enable is sent right after the socket opens so the page reports
      its execution contexts; the list is kept current from the
      executionContextCreated/Destroyed/Cleared events.
    - An unexpected close fails all pending calls and, if allowed, starts a
      reconnect loop that re-discovers the target for the same workspace.
    """

    def __init__(
        self,
        config: Optional[CdpSessionConfig] = None,
        workspace_path: Optional[str] = None,
        on_disconnected: Optional[Callable[[], Any]] = None,
        on_reconnected: Optional[Callable[[], Any]] = None,
        on_reconnect_failed: Optional[Callable[[ReconnectExhaustedError], Any]] = None,
    ):
        self.config = config or CdpSessionConfig()
        self.workspace_path = workspace_path
        self.on_disconnected = on_disconnected
        self.on_reconnected = on_reconnected
        self.on_reconnect_failed = on_reconnect_failed

        self.state = ConnectionState.DISCONNECTED
        self.target: Optional[CdpTarget] = None
        self._ws = None
        self._reader_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._pending: dict[int, asyncio.Future] = {}
        self._id_counter = 0
        self._contexts: list[CdpContext] = []
        self._max_reconnect_attempts = self.config.max_reconnect_attempts
        self._closing = False
        self.reconnect_attempt_count = 0

    # -----------------------
    # Lifecycle
    # -----------------------
    def is_connected(self) -> bool:
        return self.state == ConnectionState.CONNECTED and self._ws is not None

    async def discover_target(self, workspace_path: Optional[str] = None) -> CdpTarget:
        """Scan the configured debug ports for the workbench page."""
        workspace_name = extract_dir_name(workspace_path) if workspace_path else None
        async with httpx.AsyncClient(timeout=self.config.discovery_timeout_seconds) as client:
            for port in self.config.ports:
                url = f"http://{self.config.host}:{port}/json/list"
                try:
                    response = await client.get(url)
                    response.raise_for_status()
                    entries = response.json()
                except (httpx.HTTPError, ValueError) as e:
                    logger.debug(f"CDP discovery skipped port {port}: {e}")
                    continue
                if not isinstance(entries, list):
                    continue
                targets = [CdpTarget.from_dict(entry) for entry in entries if isinstance(entry, dict)]
                target = select_target(targets, workspace_name)
                if target:
                    logger.debug(f"CDP target on port {port}: {target.title} ({target.url})")
                    return target

        if workspace_name:
            raise CdpConnectionError(f"No CDP target found for workspace '{workspace_name}'")
        raise CdpConnectionError("CDP target not found on any port")

    async def connect(self) -> None:
        """Open the socket to the current target (discovering it first if needed)."""
        if self.is_connected():
            return
        self._closing = False
        self.state = ConnectionState.CONNECTING
        try:
            if not self.target:
                self.target = await self.discover_target(self.workspace_path)
            await self._open_socket(self.target)
        except Exception:
            await self._close_socket()
            raise
        logger.info(f"CDP connected: {self.target.title or self.target.url}")

    async def discover_and_connect_for_workspace(self, workspace_path: str) -> bool:
        """
        Bind this session to the workbench window of workspace_path.

        Idempotent: when already bound to the same target this only checks
        the socket is still open. A different target replaces the current
        socket without firing disconnect events or triggering reconnect.
        """
        target = await self.discover_target(workspace_path)
        self.workspace_path = workspace_path

        if self.is_connected() and self.target and self.target.ws_url == target.ws_url:
            return True

        if self._ws is not None:
            logger.info(f"CDP switching target to {target.title}")
            await self._close_socket()

        self.target = target
        await self.connect()
        return True

    async def disconnect(self) -> None:
        """Close the socket for good: no reconnect, pending calls fail."""
        self._max_reconnect_attempts = 0
        self._closing = True
        if self._reconnect_task and self._reconnect_task is not asyncio.current_task():
            self._reconnect_task.cancel()
        self._reconnect_task = None
        await self._close_socket()
        self.state = ConnectionState.CLOSED

    async def _open_socket(self, target: CdpTarget) -> None:
        if not target.ws_url:
            raise CdpConnectionError(f"Target {target.id} has no webSocketDebuggerUrl")
        try:
            self._ws = await websockets.connect(target.ws_url, max_size=None)
        except (OSError, websockets.exceptions.WebSocketException) as e:
            raise CdpConnectionError(f"Failed to open CDP socket {target.ws_url}: {e}") from e

        self._contexts = []
        self.state = ConnectionState.CONNECTED
        self._reader_task = asyncio.create_task(self._read_loop(self._ws))
        await self.call("Runtime.enable", {})

    async def _close_socket(self) -> None:
        """Close the socket without triggering close handling."""
        ws, self._ws = self._ws, None
        reader, self._reader_task = self._reader_task, None
        if reader and reader is not asyncio.current_task():
            reader.cancel()
        if ws is not None:
            try:
                await ws.close()
            except (OSError, websockets.exceptions.WebSocketException) as e:
                logger.debug(f"CDP socket close error: {e}")
        self._contexts = []
        self._fail_pending(CdpTransportError("CDP connection closed"))
        self.state = ConnectionState.DISCONNECTED

    # -----------------------
    # JSON-RPC helpers
    # -----------------------
    async def call(self, method: str, params: Optional[dict[str, Any]] = None) -> dict:
        """Send one CDP command and wait for its result."""
        if self._ws is None or self.state != ConnectionState.CONNECTED:
            raise CdpTransportError("CDP socket is not connected")

        self._id_counter += 1
        request_id = self._id_counter
        fut: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = fut

        try:
            await self._ws.send(json.dumps({"id": request_id, "method": method, "params": params or {}}))
            return await asyncio.wait_for(fut, timeout=self.config.call_timeout_seconds)
        except asyncio.TimeoutError:
            raise CdpTimeoutError(f"Timeout calling CDP method {method}") from None
        except websockets.exceptions.ConnectionClosed as e:
            raise CdpTransportError(f"CDP socket closed during {method}: {e}") from e
        finally:
            self._pending.pop(request_id, None)

    async def evaluate(
        self,
        expression: str,
        context_id: Optional[int] = None,
        return_by_value: bool = True,
        await_promise: bool = False,
    ) -> Any:
        """Runtime.evaluate; returns result.value. Defaults to the primary context."""
        params: dict[str, Any] = {
            "expression": expression,
            "returnByValue": return_by_value,
            "awaitPromise": await_promise,
        }
        if context_id is None:
            context_id = self.get_primary_context_id()
        if context_id is not None:
            params["contextId"] = context_id

        result = await self.call("Runtime.evaluate", params)
        details = result.get("exceptionDetails")
        if details:
            exception = details.get("exception", {}) or {}
            message = exception.get("description") or details.get("text") or "script exception"
            raise CdpEvaluationError(message)
        return (result.get("result") or {}).get("value")

    def _fail_pending(self, error: Exception):
        for fut in self._pending.values():
            if not fut.done():
                fut.set_exception(error)
        self._pending.clear()

    async def _read_loop(self, ws):
        try:
            async for raw in ws:
                try:
                    message = json.loads(raw)
                except (TypeError, ValueError):
                    logger.debug("CDP: invalid JSON frame")
                    continue
                try:
                    self._dispatch(message)
                except Exception as e:
                    logger.error(f"CDP message handling error: {e}")
        except websockets.exceptions.ConnectionClosed as e:
            logger.debug(f"CDP socket closed: {e}")
        if ws is self._ws:
            await self._handle_close()

    def _dispatch(self, message: dict[str, Any]):
        if "id" in message:
            fut = self._pending.get(message.get("id"))
            if fut and not fut.done():
                if "error" in message:
                    error = message["error"] or {}
                    fut.set_exception(CdpEvaluationError(str(error.get("message", error))))
                else:
                    fut.set_result(message.get("result", {}) or {})
            return

        method = message.get("method")
        params = message.get("params", {}) or {}
        if method == "Runtime.executionContextCreated":
            context = params.get("context")
            if context:
                self._contexts.append(CdpContext.from_dict(context))
        elif method == "Runtime.executionContextDestroyed":
            context_id = params.get("executionContextId")
            self._contexts = [c for c in self._contexts if c.id != context_id]
        elif method == "Runtime.executionContextsCleared":
            self._contexts = []

    async def _handle_close(self):
        self._ws = None
        self._reader_task = None
        self._contexts = []
        self._fail_pending(CdpTransportError("CDP socket closed"))
        if self._closing:
            return

        self.state = ConnectionState.DISCONNECTED
        logger.warning(f"CDP disconnected: {self.target.title if self.target else 'unknown target'}")
        self.target = None
        await invoke_callback(self.on_disconnected, label="on_disconnected")

        if self._max_reconnect_attempts > 0 and self._reconnect_task is None:
            self._reconnect_task = asyncio.create_task(self._reconnect_loop())

    async def _reconnect_loop(self):
        self.state = ConnectionState.RECONNECTING
        self.reconnect_attempt_count = 0
        try:
            while self.reconnect_attempt_count < self._max_reconnect_attempts:
                self.reconnect_attempt_count += 1
                logger.info(
                    f"CDP reconnect attempt {self.reconnect_attempt_count}/{self._max_reconnect_attempts}"
                )
                await asyncio.sleep(self.config.reconnect_delay_seconds)
                if self._closing:
                    return
                try:
                    self.target = await self.discover_target(self.workspace_path)
                    await self._open_socket(self.target)
                except CdpError as e:
                    logger.warning(f"CDP reconnect attempt {self.reconnect_attempt_count} failed: {e}")
                    await self._close_socket()
                    self.state = ConnectionState.RECONNECTING
                    continue

                logger.info("CDP reconnected")
                self.reconnect_attempt_count = 0
                await invoke_callback(self.on_reconnected, label="on_reconnected")
                return

            self.state = ConnectionState.FAILED
            error = ReconnectExhaustedError(
                f"CDP reconnect failed after {self._max_reconnect_attempts} attempts"
            )
            logger.error(str(error))
            await invoke_callback(self.on_reconnect_failed, error, label="on_reconnect_failed")
        finally:
            self._reconnect_task = None

    # -----------------------
    # Contexts
    # -----------------------
    def get_contexts(self) -> list[CdpContext]:
        return list(self._contexts)

    def get_primary_context_id(self) -> Optional[int]:
        """Panel context first, then an Extension context, then whatever exists."""
        for context in self._contexts:
            if CONTEXT_URL_KEYWORD in context.url:
                return context.id
        for context in self._contexts:
            if "Extension" in context.name:
                return context.id
        return self._contexts[0].id if self._contexts else None

    # -----------------------
    # Prompt injection
    # -----------------------
    async def inject_message(self, text: str) -> InjectResult:
        """Type text into the chat input and submit it."""
        if not self.is_connected():
            raise CdpTransportError("CDP is not connected; call connect() first")

        expression = build_inject_expression(text)
        preferred = [c for c in self._contexts if CONTEXT_URL_KEYWORD in c.url or "Extension" in c.name]
        remaining = [c for c in self._contexts if c not in preferred] if preferred else []
        ordered = (preferred or list(self._contexts)) + remaining

        last_error = None
        for context in ordered:
            try:
                value = await self.evaluate(expression, context_id=context.id, await_promise=True)
            except (CdpEvaluationError, CdpTimeoutError) as e:
                last_error = str(e)
                continue
            if isinstance(value, dict) and value.get("ok"):
                return InjectResult(ok=True, method=value.get("method"), context_id=context.id)
            if isinstance(value, dict) and value.get("error"):
                last_error = value["error"]

        error = f"Injection failed in all {len(ordered)} contexts"
        if last_error:
            error = f"{error}: {last_error}"
        return InjectResult(ok=False, error=error)
