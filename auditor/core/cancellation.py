"""
Cooperative cancellation for the audit pipeline.

A single asyncio.Event is threaded from the caller through every stage. Stages check it
before starting and race each outstanding network call against it.
"""

import asyncio
import logging
from collections.abc import Awaitable
from typing import TypeVar

from auditor.core.errors import AuditCancelledError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def raise_if_cancelled(cancel_event: asyncio.Event | None, stage: str = "") -> None:
    """Raise AuditCancelledError if the caller has signalled cancellation."""
    if cancel_event is not None and cancel_event.is_set():
        logger.info("[cancellation] cancelled before stage=%s", stage or "?")
        raise AuditCancelledError(f"Audit cancelled before {stage}" if stage else "Audit cancelled by caller")


async def run_cancellable(
    awaitable: Awaitable[T],
    cancel_event: asyncio.Event | None,
    stage: str = "",
) -> T:
    """
    Await `awaitable`, aborting it as soon as `cancel_event` is set.

    Without an event this is a plain await. When the event fires first the pending
    call is cancelled and AuditCancelledError is raised.
    """
    if cancel_event is None:
        return await awaitable
    if cancel_event.is_set():
        if asyncio.iscoroutine(awaitable):
            awaitable.close()
        raise_if_cancelled(cancel_event, stage)

    work = asyncio.ensure_future(awaitable)
    waiter = asyncio.ensure_future(cancel_event.wait())
    try:
        await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        waiter.cancel()
        if not work.done():
            work.cancel()
            try:
                await work
            except asyncio.CancelledError:
                pass
            logger.info("[cancellation] aborted in-flight call stage=%s", stage or "?")
    if work.cancelled():
        raise AuditCancelledError(f"Audit cancelled during {stage}" if stage else "Audit cancelled by caller")
    return work.result()
