"""HTTP delivery gateway for the transport provider.

Posts one JSON request per step to the provider's send endpoint.  The
scheduler's idempotency key travels as the ``Idempotency-Key`` header so the
provider can drop a repeated request for the same (enrollment, step).

Transport failures (connect errors, timeouts) are retried; HTTP error
responses are answers and come back as a rejected receipt.  ``send`` never
raises for provider trouble: the scheduler records whatever it returns.
"""

from __future__ import annotations

import hashlib
import hmac
import re
from typing import Any

import httpx
import structlog

from sequencer.domain.models import Contact, DeliveryReceipt
from sequencer.domain.types import Channel
from sequencer.resilience.retry import resilient_api_call

logger = structlog.get_logger()

_LOCAL_URL_RE = re.compile(r"localhost|127\.0\.0\.1", re.IGNORECASE)

ERROR_TEXT_MAX_LENGTH = 500

SMS_UNSUBSCRIBE_FOOTER = "Reply STOP or visit {url} to unsubscribe"


def unsubscribe_token(contact_id: str, secret: str) -> str:
    """Return ``<contact_id>.<sig>`` where sig is a truncated HMAC-SHA256."""
    signature = hmac.new(secret.encode(), contact_id.encode(), hashlib.sha256).hexdigest()
    return f"{contact_id}.{signature[:12]}"


def verify_unsubscribe_token(token: str, secret: str) -> str | None:
    """Return the contact id carried by *token*, or ``None`` if it is forged."""
    contact_id, _, _ = token.partition(".")
    if not contact_id or token.count(".") != 1:
        return None
    if not hmac.compare_digest(unsubscribe_token(contact_id, secret), token):
        return None
    return contact_id


class HttpDeliveryGateway:
    """Deliver rendered steps through an HTTP provider API.

    Args:
        url: The provider's send endpoint.
        api_key: Bearer token for the provider.
        timeout: Request timeout in seconds.
        app_url: Public base URL for unsubscribe links, which point at
            ``<app_url>/u/<token>`` (served by this service).  Empty or
            localhost URLs disable the link.  Email payloads carry it as
            ``unsubscribe_url``; SMS bodies get a STOP footer with it.
        unsubscribe_secret: HMAC key for unsubscribe tokens.
        client: Optional pre-built ``httpx.Client`` (tests inject a
            ``MockTransport``-backed client).
    """

    def __init__(
        self,
        url: str,
        api_key: str,
        *,
        timeout: float = 10.0,
        app_url: str = "",
        unsubscribe_secret: str = "",
        client: httpx.Client | None = None,
    ) -> None:
        self._url = url
        self._client = client or httpx.Client(timeout=timeout)
        self._headers = {"Authorization": f"Bearer {api_key}"}
        self._app_url = app_url.rstrip("/")
        self._unsubscribe_secret = unsubscribe_secret

    def close(self) -> None:
        self._client.close()

    def send(
        self,
        channel: Channel,
        contact: Contact,
        body: str,
        subject: str | None,
        idempotency_key: str,
    ) -> DeliveryReceipt:
        """Send one message and report whether the provider accepted it."""
        to = contact.phone if channel == Channel.SMS else contact.email
        if not to:
            kind = "phone number" if channel == Channel.SMS else "email address"
            return DeliveryReceipt(accepted=False, error=f"Contact has no {kind}")

        unsubscribe_url = self.unsubscribe_url(contact.id)
        if channel == Channel.SMS and unsubscribe_url:
            body = f"{body}\n\n{SMS_UNSUBSCRIBE_FOOTER.format(url=unsubscribe_url)}"

        payload: dict[str, Any] = {
            "channel": channel.value,
            "to": to,
            "body": body,
            "subject": subject,
            "contact_id": contact.id,
            "idempotency_key": idempotency_key,
        }
        if channel == Channel.EMAIL and unsubscribe_url:
            payload["unsubscribe_url"] = unsubscribe_url

        try:
            response = self._post(payload, idempotency_key)
        except httpx.TransportError as exc:
            return DeliveryReceipt(accepted=False, error=f"Transport error: {exc}")

        if response.is_error:
            logger.warning(
                "Delivery provider rejected message",
                status_code=response.status_code,
                idempotency_key=idempotency_key,
            )
            detail = response.text[:ERROR_TEXT_MAX_LENGTH]
            return DeliveryReceipt(
                accepted=False, error=f"HTTP {response.status_code}: {detail}"
            )

        data = response.json() if response.content else {}
        message_id = data.get("message_id") or data.get("id")
        return DeliveryReceipt(
            accepted=True, message_id=str(message_id) if message_id else None
        )

    def unsubscribe_url(self, contact_id: str) -> str | None:
        """Return the contact's unsubscribe link, or ``None`` when disabled."""
        if not self._app_url or _LOCAL_URL_RE.search(self._app_url):
            return None
        if not self._unsubscribe_secret:
            return None
        return f"{self._app_url}/u/{unsubscribe_token(contact_id, self._unsubscribe_secret)}"

    @resilient_api_call("delivery")
    def _post(self, payload: dict[str, Any], idempotency_key: str) -> httpx.Response:
        return self._client.post(
            self._url,
            json=payload,
            headers={**self._headers, "Idempotency-Key": idempotency_key},
        )
