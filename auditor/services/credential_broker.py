"""
Credential broker: one keyed interface for tokens to every protected resource.

Responsibility: Map a ResourceScope to its configured scope list, ask the identity
layer for a token, and classify failures as ConsentRequiredError (user must grant
more consent) or TransientError (anything else). Holds no cross-request state.
"""

import asyncio
import logging
from collections.abc import Mapping, Sequence
from datetime import datetime, timezone

from auditor.core.cancellation import run_cancellable
from auditor.core.config import AuditSettings
from auditor.core.errors import AuditCancelledError, ConsentRequiredError, TransientError
from auditor.core.identity import InteractionRequiredError, TokenAcquirer
from auditor.schemas.compliance import ResourceScope, TokenLease

logger = logging.getLogger(__name__)


class CredentialBroker:
    """Acquires TokenLeases for ContentResource and InferenceResource under one identity."""

    def __init__(
        self,
        acquirer: TokenAcquirer,
        resource_scopes: Mapping[ResourceScope, Sequence[str]],
    ) -> None:
        missing = [r.value for r in ResourceScope if not resource_scopes.get(r)]
        if missing:
            raise ValueError(f"No scopes configured for resources: {', '.join(missing)}")
        self._acquirer = acquirer
        self._scopes = {r: list(s) for r, s in resource_scopes.items()}

    @classmethod
    def from_settings(cls, acquirer: TokenAcquirer, settings: AuditSettings) -> "CredentialBroker":
        return cls(
            acquirer,
            {
                ResourceScope.CONTENT: settings.content_scopes,
                ResourceScope.INFERENCE: settings.inference_scopes,
            },
        )

    def scopes_for(self, resource: ResourceScope) -> list[str]:
        return list(self._scopes[resource])

    async def acquire_token(
        self,
        resource: ResourceScope,
        cancel_event: asyncio.Event | None = None,
    ) -> TokenLease:
        """
        Acquire a token for `resource`.

        Raises ConsentRequiredError when the identity lacks authorization for the
        resource's scopes, TransientError for any other acquisition failure.
        """
        scopes = self.scopes_for(resource)
        logger.debug("[broker:acquire_token] IN  resource=%s scopes=%s", resource.value, " ".join(scopes))
        try:
            acquired = await run_cancellable(
                self._acquirer.acquire_token_for_user(scopes),
                cancel_event,
                stage=f"token acquisition ({resource.value})",
            )
        except AuditCancelledError:
            raise
        except InteractionRequiredError as e:
            logger.warning("[broker:acquire_token] %s token requires additional consent: %s", resource.value, e.message)
            raise ConsentRequiredError(resource, scopes, message=e.message, claims=e.claims) from e
        except Exception as e:
            logger.error("[broker:acquire_token] failed to acquire %s token: %s", resource.value, e)
            raise TransientError(f"Failed to acquire {resource.value} token: {e}") from e

        issued_at = datetime.now(timezone.utc)
        expiry = datetime.fromtimestamp(acquired.expires_on, tz=timezone.utc)
        if expiry <= issued_at:
            logger.error("[broker:acquire_token] identity layer returned an expired %s token", resource.value)
            raise TransientError(f"Identity layer returned an expired {resource.value} token")
        logger.debug("[broker:acquire_token] OUT resource=%s expiry=%s", resource.value, expiry.isoformat())
        return TokenLease(token=acquired.access_token, resource=resource, issued_at=issued_at, expiry=expiry)

    async def pre_acquire_all(self) -> dict[ResourceScope, TokenLease | None]:
        """
        Best-effort warm-up: try every resource, log failures, never raise.

        Returns resource -> lease (None where acquisition failed).
        """
        logger.info("[broker:pre_acquire_all] attempting to pre-acquire tokens for all resources")
        leases: dict[ResourceScope, TokenLease | None] = {}
        for resource in ResourceScope:
            try:
                leases[resource] = await self.acquire_token(resource)
                logger.info("[broker:pre_acquire_all] %s token pre-acquired", resource.value)
            except Exception as e:
                logger.warning("[broker:pre_acquire_all] could not pre-acquire %s token: %s", resource.value, e)
                leases[resource] = None
        return leases
