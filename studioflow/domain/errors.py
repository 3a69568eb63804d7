"""Domain Errors - Centralized Exception Hierarchy"""
from typing import Any, Dict, Optional


class DomainError(Exception):
    """Base domain error - all errors extend this"""

    error_code: str = "DOMAIN_ERROR"
    http_status: int = 400

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        error_code: Optional[str] = None
    ):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        if error_code:
            self.error_code = error_code

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to API response dict"""
        return {
            "error": {
                "code": self.error_code,
                "message": self.message,
                "details": self.details
            }
        }


# Tenant scoping
class AuthenticationError(DomainError):
    """Tenant header missing or unusable"""
    error_code = "AUTHENTICATION_ERROR"
    http_status = 401


class CrossTenantReferenceError(DomainError):
    """An entity referenced data owned by another tenant"""
    error_code = "CROSS_TENANT_REFERENCE"
    http_status = 403


# Validation Errors
class ValidationError(DomainError):
    """Input validation failed"""
    error_code = "VALIDATION_ERROR"
    http_status = 400


class AutomationConfigError(ValidationError):
    """Automation or campaign is missing required configuration"""
    error_code = "AUTOMATION_CONFIG_ERROR"


# Not Found Errors
class NotFoundError(DomainError):
    """Resource not found"""
    error_code = "NOT_FOUND"
    http_status = 404


class AutomationNotFoundError(NotFoundError):
    """Automation not found"""
    error_code = "AUTOMATION_NOT_FOUND"


class CampaignNotFoundError(NotFoundError):
    """Drip campaign not found"""
    error_code = "CAMPAIGN_NOT_FOUND"


class SubscriptionNotFoundError(NotFoundError):
    """Drip subscription not found"""
    error_code = "SUBSCRIPTION_NOT_FOUND"


class SubjectNotFoundError(NotFoundError):
    """Contact/project not found"""
    error_code = "SUBJECT_NOT_FOUND"


class TemplateNotFoundError(NotFoundError):
    """Message template not found"""
    error_code = "TEMPLATE_NOT_FOUND"


# Conflict Errors
class ConflictError(DomainError):
    """Resource conflict (e.g., concurrent modification)"""
    error_code = "CONFLICT"
    http_status = 409


class InvalidStateError(ConflictError):
    """Action not valid for current state"""
    error_code = "INVALID_STATE"


class AlreadyExistsError(ConflictError):
    """Resource already exists"""
    error_code = "ALREADY_EXISTS"


# Engine Errors
class EngineError(DomainError):
    """Automation engine error"""
    error_code = "ENGINE_ERROR"
    http_status = 500


class ChannelNotConfiguredError(EngineError):
    """No delivery handler registered for a channel"""
    error_code = "CHANNEL_NOT_CONFIGURED"


# Delivery Errors
class DeliveryError(DomainError):
    """Delivery collaborator failure"""
    error_code = "DELIVERY_ERROR"
    http_status = 502
    retryable: bool = True


class TransientDeliveryError(DeliveryError):
    """Provider timeout, rate limit or outage - retried on the next pass"""
    error_code = "TRANSIENT_DELIVERY_ERROR"
    retryable = True


class PermanentDeliveryError(DeliveryError):
    """Invalid recipient or missing consent - not retried"""
    error_code = "PERMANENT_DELIVERY_ERROR"
    retryable = False
