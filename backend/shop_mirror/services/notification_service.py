"""
Notification Service - operator alerts for replication failures.

Supports:
- Email via Resend API
- Webhook HTTP POST with HMAC signature
"""
import hashlib
import hmac
import html
import json
from datetime import datetime, timezone
from typing import Any, Optional

import httpx

from shop_mirror.core.config import settings
from shop_mirror.core.logging import get_logger

logger = get_logger(__name__)


class NotificationService:
    """
    Out-of-band operator notifications.

    Delivery is best-effort: a failed alert is logged and never raised,
    so it cannot mask the replication error that triggered it.
    """

    RESEND_API_URL = "https://api.resend.com/emails"

    def __init__(
        self,
        resend_api_key: Optional[str] = None,
        sender: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.resend_api_key = resend_api_key if resend_api_key is not None else settings.resend_api_key
        self.sender = sender or settings.notification_from
        self._transport = transport

    async def send_email(
        self,
        to: str,
        subject: str,
        html_content: str,
        text_content: Optional[str] = None,
    ) -> bool:
        """
        Send email via Resend API.

        Returns:
            True if sent successfully
        """
        if not self.resend_api_key:
            logger.warning("Resend API key not configured, skipping email")
            return False

        try:
            async with httpx.AsyncClient(transport=self._transport) as client:
                response = await client.post(
                    self.RESEND_API_URL,
                    headers={
                        "Authorization": f"Bearer {self.resend_api_key}",
                        "Content-Type": "application/json",
                    },
                    json={
                        "from": self.sender,
                        "to": [to],
                        "subject": subject,
                        "html": html_content,
                        "text": text_content or subject,
                    },
                    timeout=10.0,
                )

                if response.status_code == 200:
                    logger.info("Email sent", to=to, subject=subject)
                    return True
                logger.error(
                    "Email send failed",
                    status=response.status_code,
                    response=response.text,
                )
                return False

        except httpx.HTTPError as e:
            logger.error("Email send error", error=str(e))
            return False

    async def send_webhook(
        self,
        url: str,
        payload: dict[str, Any],
        secret: Optional[str] = None,
    ) -> bool:
        """
        Send webhook HTTP POST with optional HMAC signature.

        Returns:
            True if delivered successfully
        """
        try:
            headers = {"Content-Type": "application/json"}
            body = json.dumps(payload, default=str)

            if secret:
                signature = hmac.new(
                    secret.encode(),
                    body.encode(),
                    hashlib.sha256,
                ).hexdigest()
                headers["X-Webhook-Signature"] = f"sha256={signature}"

            async with httpx.AsyncClient(transport=self._transport) as client:
                response = await client.post(
                    url,
                    headers=headers,
                    content=body,
                    timeout=30.0,
                )

                success = 200 <= response.status_code < 300
                if success:
                    logger.info("Webhook delivered", url=url)
                else:
                    logger.warning(
                        "Webhook delivery failed",
                        url=url,
                        status=response.status_code,
                    )
                return success

        except httpx.HTTPError as e:
            logger.error("Webhook error", url=url, error=str(e))
            return False

    def format_failure_email(
        self,
        *,
        source_shop: str,
        target_shop: str,
        source_product_id: int,
        error: str,
        attempts: int,
    ) -> tuple[str, str]:
        """
        Format a replication failure alert.

        Returns:
            Tuple of (html_content, text_content)
        """
        html_body = f"""
<!DOCTYPE html>
<html>
<body style="font-family: system-ui, sans-serif; line-height: 1.5; color: #1f2937;">
    <h2 style="color: #ef4444;">Product replication failed</h2>
    <p>Source product <strong>{source_product_id}</strong> could not be replicated
       from <strong>{html.escape(source_shop)}</strong> to <strong>{html.escape(target_shop)}</strong>
       after {attempts} attempts.</p>
    <pre style="background: #f9fafb; padding: 12px; border-radius: 6px;">{html.escape(error)}</pre>
</body>
</html>
"""
        text = (
            f"Product replication failed for source product {source_product_id} "
            f"(source shop {source_shop}, target shop {target_shop}) after {attempts} attempts.\n"
            f"Error: {error}\n"
        )
        return html_body, text

    def format_failure_payload(
        self,
        *,
        source_shop: str,
        target_shop: str,
        source_product_id: int,
        error: str,
        attempts: int,
    ) -> dict[str, Any]:
        return {
            "event": "replication.failed",
            "source_shop": source_shop,
            "target_shop": target_shop,
            "source_product_id": source_product_id,
            "attempts": attempts,
            "error": error,
            "occurred_at": datetime.now(timezone.utc).isoformat(),
        }

    async def notify_replication_failure(
        self,
        *,
        source_shop: str,
        target_shop: str,
        source_product_id: int,
        error: str,
        attempts: int,
        alert_email: Optional[str] = None,
        webhook_url: Optional[str] = None,
        webhook_secret: Optional[str] = None,
    ) -> list[str]:
        """Alert every configured channel. Returns the channels that accepted the alert."""
        details = {
            "source_shop": source_shop,
            "target_shop": target_shop,
            "source_product_id": source_product_id,
            "error": error,
            "attempts": attempts,
        }
        sent: list[str] = []

        if alert_email:
            html_body, text = self.format_failure_email(**details)
            if await self.send_email(
                to=alert_email,
                subject="Product replication failed",
                html_content=html_body,
                text_content=text,
            ):
                sent.append("email")

        if webhook_url:
            if await self.send_webhook(
                url=webhook_url,
                payload=self.format_failure_payload(**details),
                secret=webhook_secret,
            ):
                sent.append("webhook")

        if not sent:
            logger.warning("Replication failure alert not delivered", **details)
        return sent


# Singleton instance
notification_service = NotificationService()
