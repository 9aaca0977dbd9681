"""
Application configuration (env, settings, constants).

Responsibility: Centralize config loading, environment variables, and app-wide
constants. Keeps the rest of the app decoupled from how config is sourced.
Settings are validated once at startup by load_settings(); requests never re-read env.
"""

import os

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from auditor.core.errors import ConfigurationError

load_dotenv()

# Microsoft identity platform
AUTHORITY_HOST: str = "https://login.microsoftonline.com"
OBO_GRANT_TYPE: str = "urn:ietf:params:oauth:grant-type:jwt-bearer"

# Default delegated scopes per protected resource
CONTENT_SCOPES: tuple[str, ...] = (
    "https://graph.microsoft.com/Files.Read.All",
    "https://graph.microsoft.com/Sites.Read.All",
    "https://graph.microsoft.com/Mail.Send",
    "https://graph.microsoft.com/User.Read.All",
)
INFERENCE_SCOPES: tuple[str, ...] = ("https://cognitiveservices.azure.com/.default",)

# Token lifetime when the identity layer does not report one (minutes)
DEFAULT_TOKEN_LIFETIME_MINUTES: int = 55
# Cached tokens are refreshed this long before they expire (seconds)
TOKEN_REFRESH_SKEW_SECONDS: int = 300

# Microsoft Graph
GRAPH_BASE_URL: str = "https://graph.microsoft.com/v1.0"
COPILOT_RETRIEVAL_ENDPOINT: str = "https://graph.microsoft.com/beta/copilot/retrieval"
RETRIEVAL_DATA_SOURCE: str = "sharePoint"
RETRIEVAL_METADATA_FIELDS: tuple[str, ...] = ("title", "author")

# Azure OpenAI-compatible inference
INFERENCE_API_VERSION: str = "2024-10-21"

# API timeouts (seconds)
TOKEN_API_TIMEOUT: float = 15.0
RETRIEVAL_API_TIMEOUT: float = 30.0
LLM_API_TIMEOUT: float = 60.0
MAIL_API_TIMEOUT: float = 15.0

# Notification
NOTIFICATION_TAG: str = "compliance-check"

DEFAULT_SYSTEM_PROMPT: str = """You are an compliance agent that detects policy violations in policy documents. You will be provided the relevant policy rules alongside the file contents at the end of these instructions
Your job is to identify and classify issues with the file contents and produce a summary of all the violations.Use the given rules only as the definitive source of rules. For each violation add a citation to the relevant rule violation. The citation must include the name of the rule book which contains the rule that has been violated and a brief summary of why you think there is a violation. Do not include any other section (such as recommendations, or a total tally count for number of violations) that does not correspond to the sections above
Instructions:
- Complete task based on the provided context
- Be concise and accurate
- If asked about sources, reference the titles and URLs provided
- If the context doesn't contain enough information, be honest about limitations"""


class AuditSettings(BaseModel):
    """Validated, read-only settings for the audit pipeline."""

    model_config = ConfigDict(frozen=True)

    # Identity
    tenant_id: str = ""
    client_id: str = ""
    client_secret: str = Field("", repr=False)
    content_scopes: tuple[str, ...] = CONTENT_SCOPES
    inference_scopes: tuple[str, ...] = INFERENCE_SCOPES

    # Retrieval
    retrieval_endpoint: str = COPILOT_RETRIEVAL_ENDPOINT
    rules_query: str = Field(..., min_length=1)
    target_query: str = Field(..., min_length=1)
    filter_expression: str = ""

    # Generation
    inference_endpoint: str = ""
    model: str = ""
    api_version: str = INFERENCE_API_VERSION
    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    max_tokens: int = Field(1000, gt=0)
    temperature: float = Field(0.7, ge=0.0, le=2.0)
    top_k: int = Field(5, gt=0)

    # Notification
    graph_base_url: str = GRAPH_BASE_URL


def _env(name: str, default: str = "") -> str:
    return os.getenv(name, default).strip()


def _env_list(name: str, default: tuple[str, ...]) -> tuple[str, ...]:
    """Space- or comma-separated list from env, or default when unset."""
    raw = _env(name)
    if not raw:
        return default
    return tuple(s for s in raw.replace(",", " ").split() if s)


def load_settings() -> AuditSettings:
    """
    Read settings from the environment and validate them.

    Raises ConfigurationError naming every invalid field, e.g. a blank
    AUDIT_RULES_QUERY or AUDIT_TARGET_QUERY.
    """
    raw: dict = {
        "tenant_id": _env("AZURE_TENANT_ID"),
        "client_id": _env("AZURE_CLIENT_ID"),
        "client_secret": _env("AZURE_CLIENT_SECRET"),
        "content_scopes": _env_list("CONTENT_SCOPES", CONTENT_SCOPES),
        "inference_scopes": _env_list("INFERENCE_SCOPES", INFERENCE_SCOPES),
        "retrieval_endpoint": _env("RETRIEVAL_ENDPOINT") or COPILOT_RETRIEVAL_ENDPOINT,
        "rules_query": _env("AUDIT_RULES_QUERY"),
        "target_query": _env("AUDIT_TARGET_QUERY"),
        "filter_expression": _env("AUDIT_FILTER_EXPRESSION"),
        "inference_endpoint": _env("INFERENCE_ENDPOINT"),
        "model": _env("INFERENCE_MODEL"),
        "api_version": _env("INFERENCE_API_VERSION") or INFERENCE_API_VERSION,
        "system_prompt": _env("AUDIT_SYSTEM_PROMPT") or DEFAULT_SYSTEM_PROMPT,
        "max_tokens": _env("CHAT_MAX_TOKENS") or 1000,
        "temperature": _env("CHAT_TEMPERATURE") or 0.7,
        "top_k": _env("CHAT_TOP_K") or 5,
        "graph_base_url": _env("GRAPH_BASE_URL") or GRAPH_BASE_URL,
    }
    try:
        return AuditSettings(**raw)
    except ValidationError as e:
        errors = [
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
        ]
        raise ConfigurationError(errors) from e
