"""Main entry point - monitors the configured workspaces and logs every event."""

import asyncio
import logging
import signal
import sys
from pathlib import Path
from typing import Optional

import yaml

from .bridge import MonitorBridge, MonitorCallbacks
from .cdp_session import CdpError
from .connection_pool import ConnectionPool

logger = logging.getLogger(__name__)


def load_config(config_path: str = "config.yaml") -> dict:
    """Load configuration from YAML file."""
    path = Path(config_path)

    if not path.exists():
        logger.warning(f"Config file not found: {config_path}, using defaults")
        return {}

    with open(path) as f:
        return yaml.safe_load(f) or {}


def logging_callbacks() -> MonitorCallbacks:
    """Callbacks that only log, for running the monitor without a chat front end."""
    return MonitorCallbacks(
        on_approval_required=lambda key, info: logger.info(
            f"[{key}] approval required: {info.description or info.approve_text}"
        ),
        on_approval_resolved=lambda key: logger.info(f"[{key}] approval resolved"),
        on_auto_approved=lambda key, info, accepted: logger.info(f"[{key}] auto-approve accepted={accepted}"),
        on_planning_required=lambda key, info: logger.info(f"[{key}] plan ready: {info.plan_title or info.open_text}"),
        on_error_popup=lambda key, info: logger.warning(f"[{key}] error popup: {info.title} {info.body[:200]}"),
        on_user_message=lambda key, info: logger.info(f"[{key}] user message: {info.text[:200]}"),
        on_progress=lambda key, text: logger.debug(f"[{key}] progress ({len(text)} chars)"),
        on_process_log=lambda key, text: logger.debug(f"[{key}] activity:\n{text}"),
        on_phase_change=lambda key, phase, text: logger.info(f"[{key}] phase {phase.value}"),
        on_complete=lambda key, result: logger.info(
            f"[{key}] response {result.phase.value} ({len(result.output)} chars, quota={result.quota_detected})"
        ),
        on_timeout=lambda key, result: logger.warning(f"[{key}] response timed out ({len(result.text)} chars)"),
    )


class MonitorApp:
    """Main application orchestrator."""

    def __init__(self, config: dict):
        self.config = config
        self.workspaces = config.get("workspaces", []) or []
        self.pool = ConnectionPool(config)
        self.bridge = MonitorBridge(self.pool, config)
        self._stop_event: Optional[asyncio.Event] = None

    async def start(self):
        """Start monitoring every configured workspace and wait for shutdown."""
        logger.info("Starting CDP monitor...")
        self._stop_event = asyncio.Event()

        callbacks = logging_callbacks()
        for workspace_path in self.workspaces:
            try:
                key = await self.bridge.start_monitoring(workspace_path, callbacks)
                logger.info(f"Monitoring workspace {key} ({workspace_path})")
            except CdpError as e:
                logger.error(f"Could not monitor {workspace_path}: {e}")

        if not self.workspaces:
            logger.warning("No workspaces configured; nothing to monitor")

        await self._stop_event.wait()

    def request_stop(self):
        if self._stop_event:
            self._stop_event.set()

    async def stop(self):
        """Stop all components."""
        logger.info("Stopping CDP monitor...")
        await self.pool.disconnect_all()
        logger.info("Shutdown complete")


def setup_signal_handlers(app: MonitorApp, loop: asyncio.AbstractEventLoop):
    """Set up signal handlers for graceful shutdown."""
    def signal_handler(sig, frame):
        logger.info(f"Received signal {sig}, shutting down...")
        loop.call_soon_threadsafe(app.request_stop)

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)


async def main(config_path: str = "config.yaml"):
    """Main entry point."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    config = load_config(config_path)

    app = MonitorApp(config)
    setup_signal_handlers(app, asyncio.get_running_loop())

    try:
        await app.start()
    finally:
        await app.stop()


def run():
    """Entry point for console script."""
    asyncio.run(main(sys.argv[1] if len(sys.argv) > 1 else "config.yaml"))


if __name__ == "__main__":
    run()
