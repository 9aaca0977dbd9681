"""
Generation: build the audit prompt and call the language model.

Authenticates with the signed-in user's delegated token for the inference resource
(no static API key). Model or transport failures degrade to a fixed apology string
so a bad generation never aborts the audit.
"""

import asyncio
import logging
from collections.abc import Callable, Sequence
from typing import Any

from openai import AsyncAzureOpenAI

from auditor.core.cancellation import run_cancellable
from auditor.core.config import INFERENCE_API_VERSION, LLM_API_TIMEOUT
from auditor.core.errors import PASSTHROUGH_ERRORS
from auditor.schemas.compliance import ResourceScope, RetrievedDocument
from auditor.services.credential_broker import CredentialBroker

logger = logging.getLogger(__name__)

EMPTY_RESPONSE_TEXT = "I apologize, but I couldn't generate a response at this time."
ERROR_RESPONSE_TEXT = "I apologize, but an error occurred while processing your request."

ClientFactory = Callable[[str], Any]


def build_user_message(rules_docs: Sequence[RetrievedDocument], target_doc: RetrievedDocument) -> str:
    """
    Rules first (one attribution line + content each), then the file under audit.
    Output is deterministic for the same inputs.
    """
    lines = ["Rules: ", ""]
    for doc in rules_docs:
        lines.append(f"Source: {doc.title} ({doc.source})")
        lines.append(f"Rules to enforce: {doc.content}")
        if doc.url:
            lines.append("")
    lines.append("File contents: ")
    lines.append("")
    lines.append(target_doc.content)
    return "\n".join(lines) + "\n"


class GenerationClient:
    """Calls an Azure OpenAI-compatible chat completions endpoint."""

    def __init__(
        self,
        broker: CredentialBroker,
        endpoint: str,
        model: str,
        api_version: str = INFERENCE_API_VERSION,
        client_factory: ClientFactory | None = None,
    ) -> None:
        self._broker = broker
        self._endpoint = endpoint
        self._model = model
        self._api_version = api_version
        self._client_factory = client_factory or self._default_client

    def _default_client(self, token: str) -> AsyncAzureOpenAI:
        return AsyncAzureOpenAI(
            azure_endpoint=self._endpoint,
            azure_ad_token=token,
            api_version=self._api_version,
            timeout=LLM_API_TIMEOUT,
            max_retries=0,
        )

    async def generate(
        self,
        system_prompt: str,
        rules_docs: Sequence[RetrievedDocument],
        target_doc: RetrievedDocument,
        max_tokens: int,
        temperature: float,
        cancel_event: asyncio.Event | None = None,
    ) -> str:
        """
        Return the model's audit text, or a fixed apology string on any failure.

        Only ConsentRequiredError and AuditCancelledError propagate.
        """
        user_message = build_user_message(rules_docs, target_doc)
        logger.info("[llm:generate] IN  rules=%d prompt_len=%d max_tokens=%d",
                    len(rules_docs), len(user_message), max_tokens)
        try:
            lease = await self._broker.acquire_token(ResourceScope.INFERENCE, cancel_event)
            client = self._client_factory(lease.token)
            response = await run_cancellable(
                client.chat.completions.create(
                    model=self._model,
                    messages=[
                        {"role": "system", "content": system_prompt},
                        {"role": "user", "content": user_message},
                    ],
                    max_tokens=max_tokens,
                    temperature=temperature,
                ),
                cancel_event,
                stage="generation",
            )
            msg = response.choices[0].message if response.choices else None
            out = (getattr(msg, "content", None) or "").strip()
        except PASSTHROUGH_ERRORS:
            raise
        except Exception as e:
            logger.error("[llm:generate] error while generating response: %s", e)
            return ERROR_RESPONSE_TEXT

        if not out:
            logger.warning("[llm:generate] model returned empty content")
            return EMPTY_RESPONSE_TEXT
        logger.info("[llm:generate] OUT response_len=%d", len(out))
        return out
