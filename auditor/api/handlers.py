"""
API handlers: build the per-request pipeline, run it, map results/errors to HTTP.

Responsibility: Bridge HTTP types and services. The bearer token on the request is the
user assertion for the on-behalf-of exchange; ConsentRequiredError becomes a 401
challenge the client answers by re-authorizing.
"""

import asyncio
import contextlib
import logging

from fastapi import HTTPException, Request

from auditor.agent.llm import GenerationClient
from auditor.api.interceptors import DEFAULT_INTERCEPTORS, RequestContext, run_with_interceptors
from auditor.core.config import AuditSettings
from auditor.core.errors import (
    AuditCancelledError,
    ConsentRequiredError,
    NotAuthenticatedError,
    TransientError,
)
from auditor.core.identity import OnBehalfOfTokenAcquirer
from auditor.schemas.compliance import ComplianceResult
from auditor.services.compliance_service import ComplianceOrchestrator
from auditor.services.credential_broker import CredentialBroker
from auditor.services.notification_service import NotificationSender
from auditor.services.retrieval_service import RetrievalClient

logger = logging.getLogger(__name__)

DISCONNECT_POLL_SECONDS = 0.5


def bearer_token(request: Request) -> str | None:
    header = request.headers.get("authorization") or ""
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def build_orchestrator(settings: AuditSettings, broker: CredentialBroker) -> ComplianceOrchestrator:
    """Wire the stage clients for one request."""
    return ComplianceOrchestrator(
        settings,
        retrieval=RetrievalClient(broker, settings.retrieval_endpoint, max_results=settings.top_k),
        generation=GenerationClient(broker, settings.inference_endpoint, settings.model, settings.api_version),
        notifier=NotificationSender(broker, settings.graph_base_url),
    )


async def _watch_disconnect(request: Request, cancel_event: asyncio.Event) -> None:
    """Set cancel_event when the client goes away."""
    while not cancel_event.is_set():
        if await request.is_disconnected():
            logger.info("[api:watch_disconnect] client disconnected; cancelling audit")
            cancel_event.set()
            return
        await asyncio.sleep(DISCONNECT_POLL_SECONDS)


async def handle_compliance_check(request: Request, settings: AuditSettings) -> ComplianceResult:
    """Run the interceptor chain and the audit; map passthrough errors to HTTP."""
    assertion = bearer_token(request)
    broker = None
    if assertion:
        acquirer = OnBehalfOfTokenAcquirer(
            settings.tenant_id, settings.client_id, settings.client_secret, assertion
        )
        broker = CredentialBroker.from_settings(acquirer, settings)
    ctx = RequestContext(user_assertion=assertion, broker=broker)

    watcher = asyncio.create_task(_watch_disconnect(request, ctx.cancel_event))
    try:
        result = await run_with_interceptors(
            ctx,
            DEFAULT_INTERCEPTORS,
            lambda: build_orchestrator(settings, broker).run_audit(ctx.cancel_event),
        )
    except NotAuthenticatedError as e:
        raise HTTPException(
            status_code=401, detail=e.message, headers={"WWW-Authenticate": "Bearer"}
        ) from e
    except ConsentRequiredError as e:
        logger.warning("[api:compliance_check] consent required for %s", e.resource.value)
        challenge = f'Bearer error="insufficient_claims", scope="{" ".join(e.scopes)}"'
        if e.claims:
            challenge += f', claims="{e.claims}"'
        raise HTTPException(
            status_code=401,
            detail={"error": "consent_required", "resource": e.resource.value, "scopes": e.scopes},
            headers={"WWW-Authenticate": challenge},
        ) from e
    except AuditCancelledError as e:
        raise HTTPException(status_code=499, detail=e.message) from e
    except TransientError as e:
        raise HTTPException(status_code=503, detail=e.message) from e
    finally:
        watcher.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await watcher
    return result
