"""
Retrieval: query the Microsoft 365 content index for ranked document hits.

Responsibility: Call the Copilot Retrieval API with (query, filter) and map hits to
RetrievedDocument in the order the index returns them. No client-side re-ranking.
"""

import asyncio
import logging
from typing import Any
from urllib.parse import unquote, urlparse

import httpx

from auditor.core.cancellation import raise_if_cancelled, run_cancellable
from auditor.core.config import (
    COPILOT_RETRIEVAL_ENDPOINT,
    RETRIEVAL_API_TIMEOUT,
    RETRIEVAL_DATA_SOURCE,
    RETRIEVAL_METADATA_FIELDS,
)
from auditor.core.errors import TransientError
from auditor.schemas.compliance import ResourceScope, RetrievedDocument
from auditor.services.credential_broker import CredentialBroker

logger = logging.getLogger(__name__)


def _title_from_url(url: str) -> str:
    path = urlparse(url).path.rstrip("/")
    return unquote(path.rsplit("/", 1)[-1]) if path else ""


def hit_to_document(hit: dict[str, Any]) -> RetrievedDocument:
    """Map one retrievalHits entry to a RetrievedDocument."""
    metadata = hit.get("resourceMetadata") or {}
    url = hit.get("webUrl") or None
    extracts = hit.get("extracts") or []
    content = "\n".join((e.get("text") or "").strip() for e in extracts if isinstance(e, dict) and e.get("text"))
    author = metadata.get("author")
    return RetrievedDocument(
        title=metadata.get("title") or (_title_from_url(url) if url else ""),
        source=hit.get("resourceType") or RETRIEVAL_DATA_SOURCE,
        content=content,
        url=url,
        author=author.strip() if isinstance(author, str) and author.strip() else None,
    )


class RetrievalClient:
    """Searches the content index on behalf of the signed-in user."""

    def __init__(
        self,
        broker: CredentialBroker,
        endpoint: str = COPILOT_RETRIEVAL_ENDPOINT,
        max_results: int = 5,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._broker = broker
        self._endpoint = endpoint
        self._max_results = max_results
        self._http_client = http_client

    async def _post(self, payload: dict[str, Any], headers: dict[str, str]) -> httpx.Response:
        if self._http_client is not None:
            return await self._http_client.post(self._endpoint, json=payload, headers=headers)
        async with httpx.AsyncClient(timeout=RETRIEVAL_API_TIMEOUT) as client:
            return await client.post(self._endpoint, json=payload, headers=headers)

    async def search(
        self,
        query: str,
        filter_expression: str = "",
        cancel_event: asyncio.Event | None = None,
    ) -> list[RetrievedDocument]:
        """
        Return hits for (query, filter) in index relevance order. Empty list is a valid outcome.

        ConsentRequiredError and TransientError from the broker pass through unchanged.
        """
        if not query or not query.strip():
            raise ValueError("query must be a non-empty string")
        logger.info("[retrieval:search] IN  query=%r filter=%r", query, filter_expression)
        raise_if_cancelled(cancel_event, "retrieval")

        lease = await self._broker.acquire_token(ResourceScope.CONTENT, cancel_event)
        payload: dict[str, Any] = {
            "queryString": query.strip(),
            "dataSource": RETRIEVAL_DATA_SOURCE,
            "resourceMetadata": list(RETRIEVAL_METADATA_FIELDS),
            "maximumNumberOfResults": self._max_results,
        }
        if filter_expression and filter_expression.strip():
            payload["filterExpression"] = filter_expression.strip()
        headers = {"Authorization": f"Bearer {lease.token}", "Content-Type": "application/json"}

        try:
            response = await run_cancellable(self._post(payload, headers), cancel_event, stage="retrieval")
        except httpx.HTTPError as e:
            logger.warning("[retrieval:search] request failed: %s", e)
            raise TransientError(f"Retrieval request failed: {e}") from e
        if response.status_code != 200:
            logger.warning("[retrieval:search] API error %s: %s", response.status_code, response.text[:200])
            raise TransientError(f"Retrieval API error {response.status_code}")
        try:
            data = response.json()
        except ValueError as e:
            raise TransientError("Retrieval API returned invalid JSON") from e

        hits = (data.get("retrievalHits") or []) if isinstance(data, dict) else []
        documents = [hit_to_document(h) for h in hits if isinstance(h, dict)]
        logger.info("[retrieval:search] OUT documents=%d titles=%s",
                    len(documents), [d.title for d in documents[:5]])
        return documents
