"""
Compliance audit orchestration: rules retrieval, target retrieval, generation, notification.

Responsibility: Sequence the four stages for one request and always hand back a
ComplianceResult. ConsentRequiredError and AuditCancelledError are the only errors
that reach the caller; everything else degrades to a fixed apology text.
"""

import asyncio
import logging
from datetime import datetime, timezone
from enum import Enum

from auditor.agent.llm import GenerationClient
from auditor.core.cancellation import raise_if_cancelled
from auditor.core.config import NOTIFICATION_TAG, AuditSettings
from auditor.core.errors import PASSTHROUGH_ERRORS
from auditor.schemas.compliance import ComplianceResult, NotificationOutcome
from auditor.services.notification_service import NotificationSender
from auditor.services.retrieval_service import RetrievalClient

logger = logging.getLogger(__name__)

NO_DOCUMENT_TEXT = "I apologize, I could not find any relevant policy documents to audit."
FAILURE_TEXT = "I apologize, but I encountered an error while processing your request. Please try again."
NO_AUTHOR_REASON = "no author"


class AuditState(str, Enum):
    START = "start"
    RULES_RETRIEVED = "rules_retrieved"
    CONTENT_RETRIEVED = "content_retrieved"
    NO_DOCUMENT = "no_document"
    GENERATED = "generated"
    NOTIFIED = "notified"
    DONE = "done"


class ComplianceOrchestrator:
    """Runs one audit per call; holds only read-only settings and stage clients."""

    def __init__(
        self,
        settings: AuditSettings,
        retrieval: RetrievalClient,
        generation: GenerationClient,
        notifier: NotificationSender,
        notification_tag: str = NOTIFICATION_TAG,
    ) -> None:
        self._settings = settings
        self._retrieval = retrieval
        self._generation = generation
        self._notifier = notifier
        self._tag = notification_tag

    async def _notify(self, recipient: str, text: str, cancel_event: asyncio.Event | None) -> NotificationOutcome:
        try:
            return await self._notifier.notify(recipient, text, self._tag, cancel_event)
        except PASSTHROUGH_ERRORS:
            raise
        except Exception as e:
            logger.warning("[compliance:notify] unexpected error while sending notification: %s", e)
            return NotificationOutcome(
                success=False, message="An unexpected error occurred while sending notification"
            )

    async def run_audit(self, cancel_event: asyncio.Event | None = None) -> ComplianceResult:
        """
        Audit the first document matched by the target query against the rule documents.

        Returns a ComplianceResult on every path except consent and cancellation,
        which raise ConsentRequiredError / AuditCancelledError unchanged.
        """
        state = AuditState.START
        s = self._settings
        logger.info("[compliance:run_audit] IN  rules_query=%r target_query=%r", s.rules_query, s.target_query)
        try:
            raise_if_cancelled(cancel_event, "rules retrieval")
            rules_docs = await self._retrieval.search(s.rules_query, s.filter_expression, cancel_event)
            state = AuditState.RULES_RETRIEVED
            logger.info("[compliance:run_audit] state=%s rules=%d", state.value, len(rules_docs))

            raise_if_cancelled(cancel_event, "content retrieval")
            targets = await self._retrieval.search(s.target_query, s.filter_expression, cancel_event)
            if not targets:
                state = AuditState.NO_DOCUMENT
                logger.info("[compliance:run_audit] state=%s", state.value)
                return ComplianceResult(response_text=NO_DOCUMENT_TEXT)

            # Index relevance order decides; no secondary sort.
            target_doc = targets[0]
            state = AuditState.CONTENT_RETRIEVED
            logger.info("[compliance:run_audit] state=%s title=%r author=%r",
                        state.value, target_doc.title, target_doc.author)

            raise_if_cancelled(cancel_event, "generation")
            response_text = await self._generation.generate(
                s.system_prompt,
                rules_docs,
                target_doc,
                max_tokens=s.max_tokens,
                temperature=s.temperature,
                cancel_event=cancel_event,
            )
            state = AuditState.GENERATED
            logger.info("[compliance:run_audit] state=%s response_len=%d", state.value, len(response_text))

            raise_if_cancelled(cancel_event, "notification")
            if target_doc.author:
                outcome = await self._notify(target_doc.author, response_text, cancel_event)
                attempted = True
            else:
                outcome = NotificationOutcome(success=False, message=NO_AUTHOR_REASON)
                attempted = False
            state = AuditState.NOTIFIED
            logger.info("[compliance:run_audit] state=%s attempted=%s sent=%s",
                        state.value, attempted, outcome.success)

            result = ComplianceResult(
                response_text=response_text,
                file_author=target_doc.author,
                timestamp=datetime.now(timezone.utc),
                notification_attempted=attempted,
                notification_sent=outcome.success,
                notification_message=outcome.message,
            )
            state = AuditState.DONE
            logger.info("[compliance:run_audit] OUT state=%s", state.value)
            return result
        except PASSTHROUGH_ERRORS as e:
            logger.warning("[compliance:run_audit] %s at state=%s", type(e).__name__, state.value)
            raise
        except Exception:
            logger.exception("[compliance:run_audit] error processing audit at state=%s", state.value)
            return ComplianceResult(response_text=FAILURE_TEXT)
