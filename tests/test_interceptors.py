"""
Tests for the pre-call interceptor chain.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from auditor.api.interceptors import (
    DEFAULT_INTERCEPTORS,
    RequestContext,
    ensure_inference_consent,
    require_authenticated,
    run_with_interceptors,
)
from auditor.core.errors import ConsentRequiredError, NotAuthenticatedError
from auditor.core.identity import InteractionRequiredError
from auditor.schemas.compliance import ResourceScope
from auditor.services.credential_broker import CredentialBroker

from conftest import FakeAcquirer

pytestmark = pytest.mark.asyncio


async def test_unauthenticated_request_never_reaches_call() -> None:
    call = AsyncMock(return_value="result")
    ctx = RequestContext(user_assertion=None, broker=None)
    with pytest.raises(NotAuthenticatedError):
        await run_with_interceptors(ctx, DEFAULT_INTERCEPTORS, call)
    call.assert_not_called()


async def test_inference_consent_required_short_circuits(settings) -> None:
    broker = CredentialBroker.from_settings(
        FakeAcquirer({ResourceScope.INFERENCE: InteractionRequiredError("consent")}), settings
    )
    call = AsyncMock()
    ctx = RequestContext(user_assertion="assertion", broker=broker)
    with pytest.raises(ConsentRequiredError):
        await run_with_interceptors(ctx, (require_authenticated, ensure_inference_consent), call)
    call.assert_not_called()


async def test_full_chain_runs_call_and_warms_in_background(broker: CredentialBroker, acquirer: FakeAcquirer) -> None:
    ctx = RequestContext(user_assertion="assertion", broker=broker)
    result = await run_with_interceptors(ctx, DEFAULT_INTERCEPTORS, AsyncMock(return_value="done"))
    await asyncio.gather(*ctx.background)

    assert result == "done"
    assert len(ctx.background) == 1
    # one consent check plus one warm-up per resource
    assert len(acquirer.calls) == 1 + len(ResourceScope)


async def test_warm_up_does_not_block_the_call() -> None:
    gate = asyncio.Event()
    broker = MagicMock()
    broker.acquire_token = AsyncMock()

    async def never_finishes():
        await gate.wait()

    broker.pre_acquire_all = never_finishes
    ctx = RequestContext(user_assertion="assertion", broker=broker)
    result = await asyncio.wait_for(
        run_with_interceptors(ctx, DEFAULT_INTERCEPTORS, AsyncMock(return_value="done")), timeout=5
    )

    assert result == "done"
    assert not ctx.background[0].done()
    ctx.background[0].cancel()
