"""Helpers for invoking user-supplied callbacks that may be sync or async."""

import inspect
import logging
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)


async def invoke_callback(callback: Optional[Callable[..., Any]], *args: Any, label: str = "callback") -> None:
    """
    Call a callback and await it if it returned an awaitable.

    Callback failures are logged and swallowed so a broken consumer never
    stops a poll loop.
    """
    if callback is None:
        return
    try:
        result = callback(*args)
        if inspect.isawaitable(result):
            await result
    except Exception as e:
        logger.error(f"{label} failed (non-fatal): {e}", exc_info=True)
