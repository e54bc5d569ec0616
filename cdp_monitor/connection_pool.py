"""Per-workspace registry of CDP sessions and the watchers bound to them."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Optional

from .cdp_session import (
    CdpConnectionError,
    CdpSession,
    CdpSessionConfig,
    ReconnectExhaustedError,
    extract_dir_name,
)
from .models import DetectorKind

logger = logging.getLogger(__name__)

SessionFactory = Callable[[CdpSessionConfig, str], CdpSession]


def _default_session_factory(config: CdpSessionConfig, workspace_path: str) -> CdpSession:
    return CdpSession(config=config, workspace_path=workspace_path)


class ConnectionPool:
    """
    Owns one CdpSession per workspace key plus the detectors polling it.

    Workspace key is the directory name of the workspace path. At most one
    connect is in flight per key: concurrent callers share the same task.
    A session whose reconnect budget is spent is evicted together with every
    watcher registered for its key.
    """

    def __init__(
        self,
        config: Optional[dict] = None,
        session_factory: Optional[SessionFactory] = None,
    ):
        self.session_config = CdpSessionConfig.from_config(config)
        self._session_factory = session_factory or _default_session_factory
        self._connections: dict[str, CdpSession] = {}
        self._connecting: dict[str, asyncio.Task] = {}
        self._watchers: dict[str, dict[DetectorKind, Any]] = {}

    @staticmethod
    def extract_dir_name(workspace_path: str) -> str:
        return extract_dir_name(workspace_path) or workspace_path

    # -----------------------
    # Connections
    # -----------------------
    async def get_or_connect(self, workspace_path: str) -> CdpSession:
        """Return a connected session for workspace_path, connecting if needed."""
        key = self.extract_dir_name(workspace_path)

        task = self._connecting.get(key)
        if task is None:
            existing = self._connections.get(key)
            if existing and existing.is_connected():
                # Make sure the open window is still the one for this workspace
                coro = self._revalidate(existing, workspace_path, key)
            else:
                coro = self._create_and_connect(workspace_path, key)
            task = asyncio.create_task(coro)
            self._connecting[key] = task
            task.add_done_callback(lambda t, key=key: self._forget_connect(key, t))

        # Shielded so one caller giving up never aborts the shared handshake
        return await asyncio.shield(task)

    def _forget_connect(self, key: str, task: asyncio.Task):
        if self._connecting.get(key) is task:
            del self._connecting[key]

    async def _revalidate(self, session: CdpSession, workspace_path: str, key: str) -> CdpSession:
        try:
            await session.discover_and_connect_for_workspace(workspace_path)
        except CdpConnectionError as e:
            logger.warning(f"Workspace '{key}' lost its window, removing from pool: {e}")
            if self._connections.get(key) is session:
                del self._connections[key]
                self._stop_watchers(key)
            await session.disconnect()
            raise
        return session

    async def _create_and_connect(self, workspace_path: str, key: str) -> CdpSession:
        old = self._connections.pop(key, None)
        if old:
            await old.disconnect()

        session = self._session_factory(self.session_config, workspace_path)
        session.on_disconnected = lambda: logger.warning(f"Workspace '{key}' disconnected (reconnect may follow)")
        session.on_reconnect_failed = lambda error: self._handle_reconnect_failed(key, session, error)

        await session.discover_and_connect_for_workspace(workspace_path)
        self._connections[key] = session
        logger.info(f"Workspace '{key}' connected")
        return session

    def _handle_reconnect_failed(self, key: str, session: CdpSession, error: ReconnectExhaustedError):
        if self._connections.get(key) is not session:
            return
        logger.error(f"Reconnection failed for workspace '{key}', removing from pool: {error}")
        del self._connections[key]
        self._stop_watchers(key)

    def get_connected(self, key: str) -> Optional[CdpSession]:
        session = self._connections.get(key)
        if session and session.is_connected():
            return session
        return None

    def get_active_workspace_names(self) -> list[str]:
        return [key for key, session in self._connections.items() if session.is_connected()]

    async def disconnect_workspace(self, key: str):
        """Disconnect key's session and stop every watcher registered for it."""
        session = self._connections.pop(key, None)
        self._stop_watchers(key)
        if session:
            try:
                await session.disconnect()
            except Exception as e:
                logger.error(f"Error while disconnecting workspace '{key}': {e}")
            logger.info(f"Workspace '{key}' disconnected")

    async def disconnect_all(self):
        for key in list(self._connections.keys()):
            await self.disconnect_workspace(key)
        for key in list(self._watchers.keys()):
            self._stop_watchers(key)

    # -----------------------
    # Watchers (detectors + response monitor)
    # -----------------------
    def register_detector(self, key: str, kind: DetectorKind, detector: Any):
        """Register detector for key, stopping any previous one of the same kind."""
        watchers = self._watchers.setdefault(key, {})
        existing = watchers.get(kind)
        if existing is not None and existing is not detector and existing.is_active():
            existing.stop()
        watchers[kind] = detector

    def get_detector(self, key: str, kind: DetectorKind) -> Optional[Any]:
        return self._watchers.get(key, {}).get(kind)

    def unregister_detector(self, key: str, kind: DetectorKind) -> Optional[Any]:
        """Stop and remove key's detector of kind."""
        detector = self._watchers.get(key, {}).pop(kind, None)
        if detector is not None:
            detector.stop()
        return detector

    def _stop_watchers(self, key: str):
        watchers = self._watchers.pop(key, {})
        for kind, detector in watchers.items():
            detector.stop()
            logger.debug(f"Stopped {kind.value} watcher for '{key}'")

    def register_approval_detector(self, key: str, detector):
        self.register_detector(key, DetectorKind.APPROVAL, detector)

    def get_approval_detector(self, key: str):
        return self.get_detector(key, DetectorKind.APPROVAL)

    def register_planning_detector(self, key: str, detector):
        self.register_detector(key, DetectorKind.PLANNING, detector)

    def get_planning_detector(self, key: str):
        return self.get_detector(key, DetectorKind.PLANNING)

    def register_error_popup_detector(self, key: str, detector):
        self.register_detector(key, DetectorKind.ERROR_POPUP, detector)

    def get_error_popup_detector(self, key: str):
        return self.get_detector(key, DetectorKind.ERROR_POPUP)

    def register_user_message_detector(self, key: str, detector):
        self.register_detector(key, DetectorKind.USER_MESSAGE, detector)

    def get_user_message_detector(self, key: str):
        return self.get_detector(key, DetectorKind.USER_MESSAGE)

    def register_response_monitor(self, key: str, monitor):
        self.register_detector(key, DetectorKind.RESPONSE, monitor)

    def get_response_monitor(self, key: str):
        return self.get_detector(key, DetectorKind.RESPONSE)
