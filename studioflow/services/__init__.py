"""Service layer - Transports and operator-facing use cases"""
from .email_service import EmailSender, SendGridEmailSender
from .sms_service import SmsSender, TwilioSmsSender, normalize_phone

__all__ = [
    "EmailSender",
    "SendGridEmailSender",
    "SmsSender",
    "TwilioSmsSender",
    "normalize_phone",
]
