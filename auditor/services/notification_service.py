"""
Notification: mail the audit outcome to the document's author via Microsoft Graph.

Responsibility: Resolve the recipient address from document metadata and send one
message per call. All failures become NotificationOutcome(success=False); nothing
raises except cancellation. No retry and no deduplication.
"""

import asyncio
import logging
from typing import Any

import httpx

from auditor.core.cancellation import raise_if_cancelled, run_cancellable
from auditor.core.config import GRAPH_BASE_URL, MAIL_API_TIMEOUT
from auditor.core.errors import AuditCancelledError
from auditor.schemas.compliance import NotificationOutcome, ResourceScope
from auditor.services.credential_broker import CredentialBroker

logger = logging.getLogger(__name__)


class AddressResolutionError(Exception):
    """No mailbox could be found for the author."""


class NotificationSender:
    """Sends audit results by mail as the signed-in user."""

    def __init__(
        self,
        broker: CredentialBroker,
        graph_base_url: str = GRAPH_BASE_URL,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._broker = broker
        self._base_url = graph_base_url.rstrip("/")
        self._http_client = http_client

    async def _request(self, method: str, url: str, token: str, **kwargs: Any) -> httpx.Response:
        headers = {"Authorization": f"Bearer {token}"}
        if self._http_client is not None:
            return await self._http_client.request(method, url, headers=headers, **kwargs)
        async with httpx.AsyncClient(timeout=MAIL_API_TIMEOUT) as client:
            return await client.request(method, url, headers=headers, **kwargs)

    async def resolve_address(self, recipient: str, token: str) -> str:
        """Use `recipient` as-is when it is an address, else look the display name up."""
        recipient = recipient.strip()
        if "@" in recipient:
            return recipient
        escaped = recipient.replace("'", "''")
        response = await self._request(
            "GET",
            f"{self._base_url}/users",
            token,
            params={"$filter": f"displayName eq '{escaped}'", "$select": "mail,userPrincipalName"},
        )
        if response.status_code != 200:
            raise AddressResolutionError(f"User lookup failed with status {response.status_code}")
        for user in response.json().get("value") or []:
            address = user.get("mail") or user.get("userPrincipalName")
            if address:
                return address
        raise AddressResolutionError(f"No mailbox found for {recipient!r}")

    async def notify(
        self,
        recipient: str,
        body: str,
        tag: str,
        cancel_event: asyncio.Event | None = None,
    ) -> NotificationOutcome:
        """Send one message. Returns success/message; never raises except on cancellation."""
        logger.info("[notification:notify] IN  recipient=%r tag=%s body_len=%d", recipient, tag, len(body or ""))
        try:
            raise_if_cancelled(cancel_event, "notification")
            if not recipient or not recipient.strip():
                return NotificationOutcome(success=False, message="No recipient provided")
            lease = await self._broker.acquire_token(ResourceScope.CONTENT, cancel_event)
            address = await run_cancellable(
                self.resolve_address(recipient, lease.token), cancel_event, stage="notification"
            )
            message = {
                "message": {
                    "subject": f"Compliance check results: {tag}",
                    "body": {"contentType": "Text", "content": body},
                    "toRecipients": [{"emailAddress": {"address": address}}],
                },
                "saveToSentItems": True,
            }
            response = await run_cancellable(
                self._request("POST", f"{self._base_url}/me/sendMail", lease.token, json=message),
                cancel_event,
                stage="notification",
            )
        except AuditCancelledError:
            raise
        except AddressResolutionError as e:
            logger.warning("[notification:notify] address resolution failed: %s", e)
            return NotificationOutcome(success=False, message=f"Could not resolve recipient address: {e}")
        except Exception as e:
            logger.warning("[notification:notify] failed to send notification: %s", e)
            return NotificationOutcome(success=False, message=f"Failed to send notification: {e}")

        if response.status_code not in (200, 202):
            logger.warning("[notification:notify] sendMail error %s: %s", response.status_code, response.text[:200])
            return NotificationOutcome(
                success=False, message=f"Mail service returned status {response.status_code}"
            )
        logger.info("[notification:notify] OUT sent to=%s", address)
        return NotificationOutcome(success=True, message=f"Notification sent to {address}")
