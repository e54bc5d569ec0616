"""Ordered delivery of UI-facing side effects (renders, log posts)."""

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple, Union

logger = logging.getLogger(__name__)

DeliveryTask = Callable[[], Union[Awaitable[Any], Any]]
QueueKey = Tuple[str, str]


class DeliveryQueue:
    """
    Per-(queue name, trace id) FIFO chains of async tasks.

    Key features:
    - tasks on one key run strictly in submission order
    - different queue names (or traces) never wait on each other
    - a failing task is logged and the chain continues
    - versioned render tasks that were superseded before they ran are
      skipped; finalized tasks always run
    """

    def __init__(self):
        self._tails: Dict[QueueKey, asyncio.Task] = {}
        self._depth: Dict[QueueKey, int] = {}
        self._versions: Dict[str, int] = {}

    def factory(self, queue_name: str, trace_id: str) -> Callable[..., asyncio.Task]:
        """Return an enqueue function bound to (queue_name, trace_id)."""

        def enqueue(
            task: DeliveryTask,
            *,
            label: str = "",
            stream: Optional[str] = None,
            version: Optional[int] = None,
            finalized: bool = False,
        ) -> asyncio.Task:
            return self.enqueue(
                queue_name, trace_id, task,
                label=label, stream=stream, version=version, finalized=finalized,
            )

        return enqueue

    def enqueue(
        self,
        queue_name: str,
        trace_id: str,
        task: DeliveryTask,
        *,
        label: str = "",
        stream: Optional[str] = None,
        version: Optional[int] = None,
        finalized: bool = False,
    ) -> asyncio.Task:
        key = (queue_name, trace_id)
        previous = self._tails.get(key)
        self._depth[key] = self._depth.get(key, 0) + 1
        runner = asyncio.create_task(
            self._run_after(key, previous, task, label, stream, version, finalized)
        )
        self._tails[key] = runner
        return runner

    def next_version(self, stream: str) -> int:
        """Advance the stream's version; renders scheduled with older versions become stale."""
        self._versions[stream] = self._versions.get(stream, 0) + 1
        return self._versions[stream]

    def current_version(self, stream: str) -> int:
        return self._versions.get(stream, 0)

    def depth(self, queue_name: str, trace_id: str) -> int:
        return self._depth.get((queue_name, trace_id), 0)

    def is_stale(self, stream: Optional[str], version: Optional[int]) -> bool:
        if stream is None or version is None:
            return False
        return self.current_version(stream) > version

    async def _run_after(
        self,
        key: QueueKey,
        previous: Optional[asyncio.Task],
        task: DeliveryTask,
        label: str,
        stream: Optional[str],
        version: Optional[int],
        finalized: bool,
    ):
        try:
            if previous is not None and not previous.done():
                await asyncio.wait([previous])

            if not finalized and self.is_stale(stream, version):
                logger.debug(f"Skipping stale delivery {label or key} (v{version} < v{self.current_version(stream)})")
                return

            try:
                result = task()
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Delivery task {label or key} failed: {e}", exc_info=True)
        finally:
            remaining = self._depth.get(key, 1) - 1
            if remaining <= 0:
                self._depth.pop(key, None)
                if self._tails.get(key) is asyncio.current_task():
                    del self._tails[key]
            else:
                self._depth[key] = remaining
