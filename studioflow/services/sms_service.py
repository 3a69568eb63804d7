"""SMS Transport - Twilio Messages API over httpx"""
import re
from abc import ABC, abstractmethod
from typing import Optional
import httpx

from ..config.settings import settings
from ..domain.models import TransportResult
from ..utils.logger import get_logger
from .email_service import classify_status

logger = get_logger(__name__)

_NON_DIGITS = re.compile(r"[^\d+]")


def normalize_phone(raw: Optional[str], default_country_code: str = "1") -> Optional[str]:
    """
    Normalise a phone number to E.164

    Args:
        raw: Phone number as entered (spaces, dashes, brackets allowed)
        default_country_code: Prefix for bare 10-digit national numbers

    Returns:
        "+<digits>" or None when the number cannot be a valid E.164 number

    Examples:
        >>> normalize_phone("(555) 123-4567")
        '+15551234567'
        >>> normalize_phone("+44 20 7946 0958")
        '+442079460958'
    """
    if not raw:
        return None
    cleaned = _NON_DIGITS.sub("", raw.strip())
    if cleaned.startswith("00"):
        cleaned = "+" + cleaned[2:]

    if cleaned.startswith("+"):
        digits = cleaned[1:]
    elif len(cleaned) == 10:
        digits = default_country_code + cleaned
    elif len(cleaned) == 11 and cleaned.startswith(default_country_code):
        digits = cleaned
    else:
        digits = cleaned

    if "+" in digits or not digits.isdigit():
        return None
    if not 8 <= len(digits) <= 15 or digits.startswith("0"):
        return None
    return f"+{digits}"


class SmsSender(ABC):
    """SMS delivery collaborator"""

    @abstractmethod
    def send(self, to_number: str, body: str) -> TransportResult: ...


class TwilioSmsSender(SmsSender):
    """Send SMS through the Twilio REST API using an API key pair"""

    def __init__(
        self,
        account_sid: Optional[str] = None,
        api_key: Optional[str] = None,
        api_key_secret: Optional[str] = None,
        from_number: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        client: Optional[httpx.Client] = None
    ):
        self.account_sid = account_sid if account_sid is not None else settings.twilio_account_sid
        self.api_key = api_key if api_key is not None else settings.twilio_api_key
        self.api_key_secret = api_key_secret if api_key_secret is not None else settings.twilio_api_key_secret
        self.from_number = from_number if from_number is not None else settings.twilio_from_number
        self.base_url = (base_url or settings.twilio_base_url).rstrip("/")
        self.timeout = timeout or settings.transport_timeout_seconds
        self._client = client

    @property
    def is_configured(self) -> bool:
        return all([self.account_sid, self.api_key, self.api_key_secret, self.from_number])

    def send(self, to_number: str, body: str) -> TransportResult:
        if not self.is_configured:
            logger.warning("Twilio credentials not configured, SMS not sent")
            return TransportResult(success=False, error="SMS transport not configured", retryable=True)

        url = f"{self.base_url}/Accounts/{self.account_sid}/Messages.json"
        data = {"To": to_number, "From": self.from_number, "Body": body}
        auth = (self.api_key, self.api_key_secret)

        try:
            if self._client is not None:
                response = self._client.post(url, data=data, auth=auth)
            else:
                with httpx.Client(timeout=self.timeout) as client:
                    response = client.post(url, data=data, auth=auth)
        except httpx.HTTPError as e:
            logger.warning(f"Twilio request failed: {e}")
            return TransportResult(success=False, error=f"Twilio request failed: {e}", retryable=True)

        if response.status_code in (200, 201):
            return TransportResult(success=True, provider_message_id=response.json().get("sid"))

        logger.warning(
            f"Twilio rejected SMS: {response.status_code}",
            extra={"status": response.status_code}
        )
        return TransportResult(
            success=False,
            error=f"Twilio error {response.status_code}: {response.text[:300]}",
            retryable=classify_status(response.status_code)
        )
