from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Callable

from .logging import log_event


def error_message(error: BaseException, *, fallback: str = "failed") -> str:
    text = str(error).strip()
    return text or fallback


async def guarded_call(
    action: Callable[..., Any],
    *args: Any,
    logger: logging.Logger,
    event: str,
    message: str,
    level: str = "warning",
    **fields: Any,
) -> bool:
    """Call ``action(*args)`` (sync or async) and log instead of raising.

    Returns False when the action failed. Task cancellation still propagates.
    """
    try:
        outcome = action(*args)
        if inspect.isawaitable(outcome):
            await outcome
    except asyncio.CancelledError:
        raise
    except Exception as error:
        log_event(
            logger,
            level=level,
            event=event,
            message=message,
            error=error_message(error),
            error_type=type(error).__name__,
            action=getattr(action, "__qualname__", repr(action)),
            **fields,
        )
        return False
    return True
