"""
Application errors for the audit pipeline.

ConsentRequiredError and AuditCancelledError are the two errors that must reach the
caller of the orchestrator unchanged. Every catch boundary handles them before a
generic ``except Exception`` so they cannot be absorbed by accident.
"""

from auditor.schemas.compliance import ResourceScope


class AuditError(Exception):
    """Base class for audit pipeline errors."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class ConsentRequiredError(AuditError):
    """The signed-in identity must grant additional consent before a token can be issued."""

    def __init__(
        self,
        resource: ResourceScope,
        scopes: list[str],
        message: str = "",
        claims: str | None = None,
    ) -> None:
        self.resource = resource
        self.scopes = list(scopes)
        self.claims = claims
        super().__init__(message or f"Additional consent required for {resource.value}")


class TransientError(AuditError):
    """Network, timeout, or service failure talking to an external collaborator."""


class ConfigurationError(AuditError):
    """Required configuration is missing or malformed. Raised at startup only."""

    def __init__(self, errors: list[str]) -> None:
        self.errors = errors
        super().__init__("Invalid configuration: " + "; ".join(errors))


class AuditCancelledError(AuditError):
    """The caller cancelled the audit before it completed."""

    def __init__(self, message: str = "Audit cancelled by caller") -> None:
        super().__init__(message)


class NotAuthenticatedError(AuditError):
    """The request carries no signed-in identity."""

    def __init__(self, message: str = "Authentication required") -> None:
        super().__init__(message)


# Errors that pass through every stage boundary unmodified.
PASSTHROUGH_ERRORS = (ConsentRequiredError, AuditCancelledError)
