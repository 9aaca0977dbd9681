"""Schemas shared by the audit pipeline: resources, leases, documents, and results."""

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, model_validator


class ResourceScope(str, Enum):
    """Protected API a token is minted for."""

    CONTENT = "content"
    INFERENCE = "inference"


class TokenLease(BaseModel):
    """Access token for one resource. Request-local; never persisted."""

    model_config = ConfigDict(frozen=True)

    token: str = Field(..., min_length=1, repr=False)
    resource: ResourceScope
    issued_at: datetime
    expiry: datetime

    @model_validator(mode="after")
    def _expiry_after_issue(self) -> "TokenLease":
        if self.expiry <= self.issued_at:
            raise ValueError("expiry must be later than issued_at")
        return self


class RetrievedDocument(BaseModel):
    """A single search hit with content and attribution metadata."""

    model_config = ConfigDict(frozen=True)

    title: str = ""
    source: str = ""
    content: str = ""
    url: str | None = None
    author: str | None = None


class NotificationOutcome(BaseModel):
    """Result of one notification attempt."""

    success: bool
    message: str = ""


class ComplianceResult(BaseModel):
    """Outcome of one audit. Always carries a human-readable response_text."""

    response_text: str = Field(..., min_length=1)
    file_author: str | None = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    notification_attempted: bool = False
    notification_sent: bool = False
    notification_message: str = ""
