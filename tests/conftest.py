"""Shared fakes for the audit pipeline tests."""

import time

import pytest

from auditor.core.config import CONTENT_SCOPES, INFERENCE_SCOPES, AuditSettings
from auditor.core.identity import AcquiredToken, OnBehalfOfTokenAcquirer
from auditor.schemas.compliance import ResourceScope
from auditor.services.credential_broker import CredentialBroker

SCOPE_RESOURCE = {
    CONTENT_SCOPES[0]: ResourceScope.CONTENT,
    INFERENCE_SCOPES[0]: ResourceScope.INFERENCE,
}


class FakeAcquirer:
    """Identity layer stand-in: hands out tokens or raises per resource."""

    def __init__(self, failures: dict[ResourceScope, Exception] | None = None) -> None:
        self.failures = failures or {}
        self.calls: list[list[str]] = []

    async def acquire_token_for_user(self, scopes: list[str]) -> AcquiredToken:
        self.calls.append(list(scopes))
        resource = SCOPE_RESOURCE[scopes[0]]
        if resource in self.failures:
            raise self.failures[resource]
        return AcquiredToken(access_token=f"{resource.value}-token", expires_on=time.time() + 3600)


@pytest.fixture
def settings() -> AuditSettings:
    return AuditSettings(
        rules_query="DataPolicy",
        target_query="Quarterly report",
        filter_expression="",
        inference_endpoint="https://inference.example.com",
        model="gpt-4o",
    )


@pytest.fixture
def acquirer() -> FakeAcquirer:
    return FakeAcquirer()


@pytest.fixture
def broker(acquirer: FakeAcquirer, settings: AuditSettings) -> CredentialBroker:
    return CredentialBroker.from_settings(acquirer, settings)


@pytest.fixture(autouse=True)
def _clear_token_cache():
    OnBehalfOfTokenAcquirer.clear_cache()
    yield
    OnBehalfOfTokenAcquirer.clear_cache()
