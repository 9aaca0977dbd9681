"""
Unit tests for CredentialBroker: per-resource scopes, error classification, warm-up.
"""

import asyncio
import time
from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from auditor.core.config import CONTENT_SCOPES, INFERENCE_SCOPES
from auditor.core.errors import AuditCancelledError, ConsentRequiredError, TransientError
from auditor.core.identity import AcquiredToken, InteractionRequiredError, TokenAcquisitionError
from auditor.schemas.compliance import ResourceScope, TokenLease
from auditor.services.credential_broker import CredentialBroker

from conftest import FakeAcquirer

SCOPES = {ResourceScope.CONTENT: CONTENT_SCOPES, ResourceScope.INFERENCE: INFERENCE_SCOPES}


class StaleAcquirer:
    """Identity layer that hands back tokens which have already expired."""

    async def acquire_token_for_user(self, scopes: list[str]) -> AcquiredToken:
        return AcquiredToken(access_token="stale", expires_on=time.time() - 3600)


class TestAcquireToken:
    """Tests for acquire_token()."""

    @pytest.mark.asyncio
    async def test_returns_lease_for_requested_resource(self, broker: CredentialBroker, acquirer: FakeAcquirer) -> None:
        lease = await broker.acquire_token(ResourceScope.INFERENCE)
        assert isinstance(lease, TokenLease)
        assert lease.resource is ResourceScope.INFERENCE
        assert lease.token == "inference-token"
        assert lease.expiry > lease.issued_at
        assert acquirer.calls == [list(INFERENCE_SCOPES)]

    @pytest.mark.asyncio
    async def test_content_resource_uses_content_scopes(self, broker: CredentialBroker, acquirer: FakeAcquirer) -> None:
        await broker.acquire_token(ResourceScope.CONTENT)
        assert acquirer.calls == [list(CONTENT_SCOPES)]

    @pytest.mark.asyncio
    async def test_interaction_required_becomes_consent_required(self) -> None:
        acquirer = FakeAcquirer({ResourceScope.INFERENCE: InteractionRequiredError("AADSTS65001", claims="c1")})
        broker = CredentialBroker(acquirer, SCOPES)
        with pytest.raises(ConsentRequiredError) as exc_info:
            await broker.acquire_token(ResourceScope.INFERENCE)
        assert exc_info.value.resource is ResourceScope.INFERENCE
        assert exc_info.value.scopes == list(INFERENCE_SCOPES)
        assert exc_info.value.claims == "c1"

    @pytest.mark.asyncio
    async def test_other_failures_become_transient(self) -> None:
        broker = CredentialBroker(FakeAcquirer({ResourceScope.CONTENT: TokenAcquisitionError("timeout")}), SCOPES)
        with pytest.raises(TransientError):
            await broker.acquire_token(ResourceScope.CONTENT)

    @pytest.mark.asyncio
    async def test_expired_token_is_rejected(self) -> None:
        broker = CredentialBroker(StaleAcquirer(), SCOPES)
        with pytest.raises(TransientError, match="expired content token"):
            await broker.acquire_token(ResourceScope.CONTENT)

    @pytest.mark.asyncio
    async def test_cancelled_before_acquisition(self, broker: CredentialBroker, acquirer: FakeAcquirer) -> None:
        event = asyncio.Event()
        event.set()
        with pytest.raises(AuditCancelledError):
            await broker.acquire_token(ResourceScope.CONTENT, event)
        assert acquirer.calls == []

    def test_missing_scopes_rejected_at_construction(self) -> None:
        with pytest.raises(ValueError):
            CredentialBroker(FakeAcquirer(), {ResourceScope.CONTENT: CONTENT_SCOPES})


class TestTokenLease:
    """TokenLease must expire after it was issued."""

    def test_expiry_before_issue_rejected(self) -> None:
        now = datetime.now(timezone.utc)
        with pytest.raises(ValidationError):
            TokenLease(token="t", resource=ResourceScope.CONTENT, issued_at=now, expiry=now - timedelta(seconds=1))

    def test_expiry_equal_to_issue_rejected(self) -> None:
        now = datetime.now(timezone.utc)
        with pytest.raises(ValidationError):
            TokenLease(token="t", resource=ResourceScope.CONTENT, issued_at=now, expiry=now)


class TestPreAcquireAll:
    """Tests for pre_acquire_all()."""

    @pytest.mark.asyncio
    async def test_acquires_every_resource(self, broker: CredentialBroker) -> None:
        leases = await broker.pre_acquire_all()
        assert set(leases) == set(ResourceScope)
        assert all(lease is not None for lease in leases.values())

    @pytest.mark.asyncio
    async def test_never_raises_when_everything_fails(self) -> None:
        acquirer = FakeAcquirer({
            ResourceScope.CONTENT: InteractionRequiredError("consent"),
            ResourceScope.INFERENCE: TokenAcquisitionError("boom"),
        })
        leases = await CredentialBroker(acquirer, SCOPES).pre_acquire_all()
        assert leases == {ResourceScope.CONTENT: None, ResourceScope.INFERENCE: None}
        assert len(acquirer.calls) == 2

    @pytest.mark.asyncio
    async def test_expired_tokens_do_not_fail_warm_up(self) -> None:
        leases = await CredentialBroker(StaleAcquirer(), SCOPES).pre_acquire_all()
        assert leases == {ResourceScope.CONTENT: None, ResourceScope.INFERENCE: None}

    @pytest.mark.asyncio
    async def test_partial_failure_still_warms_the_rest(self) -> None:
        acquirer = FakeAcquirer({ResourceScope.CONTENT: RuntimeError("unexpected")})
        leases = await CredentialBroker(acquirer, SCOPES).pre_acquire_all()
        assert leases[ResourceScope.CONTENT] is None
        assert leases[ResourceScope.INFERENCE].token == "inference-token"
