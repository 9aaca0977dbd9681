"""
Pre-call interceptor chain run before the orchestrator.

Each interceptor is an async callable taking the RequestContext; raising short-circuits
the chain and the call. Order matters: authentication, then inference consent, then the
non-blocking token warm-up.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import TypeVar

from auditor.core.errors import NotAuthenticatedError
from auditor.schemas.compliance import ResourceScope
from auditor.services.credential_broker import CredentialBroker

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Strong references to fire-and-forget warm-up tasks until they finish
_background_tasks: set[asyncio.Task] = set()


@dataclass
class RequestContext:
    """Per-request state visible to interceptors."""

    user_assertion: str | None
    broker: CredentialBroker | None
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    background: list[asyncio.Task] = field(default_factory=list)


Interceptor = Callable[[RequestContext], Awaitable[None]]


async def require_authenticated(ctx: RequestContext) -> None:
    if not ctx.user_assertion or ctx.broker is None:
        logger.info("[interceptors:require_authenticated] no signed-in identity")
        raise NotAuthenticatedError()


async def ensure_inference_consent(ctx: RequestContext) -> None:
    """Acquire an inference token up front so missing consent surfaces before any work starts."""
    await ctx.broker.acquire_token(ResourceScope.INFERENCE, ctx.cancel_event)
    logger.debug("[interceptors:ensure_inference_consent] inference token acquired")


async def prewarm_tokens(ctx: RequestContext) -> None:
    """Schedule pre_acquire_all in the background; never awaited by the request."""
    task = asyncio.create_task(ctx.broker.pre_acquire_all())
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)
    ctx.background.append(task)
    logger.debug("[interceptors:prewarm_tokens] warm-up scheduled")


DEFAULT_INTERCEPTORS: tuple[Interceptor, ...] = (
    require_authenticated,
    ensure_inference_consent,
    prewarm_tokens,
)


async def run_with_interceptors(
    ctx: RequestContext,
    interceptors: Sequence[Interceptor],
    call: Callable[[], Awaitable[T]],
) -> T:
    """Run each interceptor in order, then `call`. Interceptor errors propagate unchanged."""
    for interceptor in interceptors:
        await interceptor(ctx)
    return await call()
