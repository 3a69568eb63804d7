"""Email Transport - SendGrid v3 mail send over httpx

The transport makes exactly one attempt per call. Retry is the scheduler's
job: a retryable result leaves the due item pending for the next pass.
"""
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional
import httpx

from ..config.settings import settings
from ..domain.models import TransportResult
from ..utils.logger import get_logger

logger = get_logger(__name__)


class EmailSender(ABC):
    """Email delivery collaborator"""

    @abstractmethod
    def send(
        self,
        to_email: str,
        subject: str,
        html_body: Optional[str],
        text_body: Optional[str],
        from_name: Optional[str] = None,
        reply_to: Optional[str] = None
    ) -> TransportResult: ...


def classify_status(status_code: int) -> bool:
    """True when an HTTP failure is worth retrying on a later pass"""
    return status_code == 429 or status_code >= 500


class SendGridEmailSender(EmailSender):
    """Send email through the SendGrid v3 API"""

    def __init__(
        self,
        api_key: Optional[str] = None,
        from_email: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        client: Optional[httpx.Client] = None
    ):
        self.api_key = api_key if api_key is not None else settings.sendgrid_api_key
        self.from_email = from_email or settings.sendgrid_from_email
        self.base_url = (base_url or settings.sendgrid_base_url).rstrip("/")
        self.timeout = timeout or settings.transport_timeout_seconds
        self._client = client

    def _build_payload(
        self,
        to_email: str,
        subject: str,
        html_body: Optional[str],
        text_body: Optional[str],
        from_name: Optional[str],
        reply_to: Optional[str]
    ) -> Dict[str, Any]:
        content = []
        if text_body:
            content.append({"type": "text/plain", "value": text_body})
        if html_body:
            content.append({"type": "text/html", "value": html_body})

        sender: Dict[str, str] = {"email": self.from_email}
        if from_name:
            sender["name"] = from_name

        payload: Dict[str, Any] = {
            "personalizations": [{"to": [{"email": to_email}]}],
            "from": sender,
            "subject": subject,
            "content": content,
        }
        reply_address = reply_to or settings.sendgrid_reply_to
        if reply_address:
            payload["reply_to"] = {"email": reply_address}
        return payload

    def send(
        self,
        to_email: str,
        subject: str,
        html_body: Optional[str],
        text_body: Optional[str],
        from_name: Optional[str] = None,
        reply_to: Optional[str] = None
    ) -> TransportResult:
        if not self.api_key:
            logger.warning("SendGrid API key not configured, email not sent")
            return TransportResult(success=False, error="Email transport not configured", retryable=True)

        payload = self._build_payload(to_email, subject, html_body, text_body, from_name, reply_to)
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json"
        }

        try:
            if self._client is not None:
                response = self._client.post(f"{self.base_url}/mail/send", headers=headers, json=payload)
            else:
                with httpx.Client(timeout=self.timeout) as client:
                    response = client.post(f"{self.base_url}/mail/send", headers=headers, json=payload)
        except httpx.HTTPError as e:
            logger.warning(f"SendGrid request failed: {e}")
            return TransportResult(success=False, error=f"SendGrid request failed: {e}", retryable=True)

        if response.status_code in (200, 202):
            return TransportResult(
                success=True,
                provider_message_id=response.headers.get("X-Message-Id")
            )

        logger.warning(
            f"SendGrid rejected email: {response.status_code}",
            extra={"status": response.status_code}
        )
        return TransportResult(
            success=False,
            error=f"SendGrid error {response.status_code}: {response.text[:300]}",
            retryable=classify_status(response.status_code)
        )
