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


# Validation Errors
class ValidationError(DomainError):
    """Input validation failed"""
    error_code = "VALIDATION_ERROR"
    http_status = 400


class FlowValidationError(ValidationError):
    """Flow graph failed structural validation"""
    error_code = "FLOW_VALIDATION_ERROR"


class CampaignValidationError(ValidationError):
    """Drip campaign cannot be launched as configured"""
    error_code = "CAMPAIGN_VALIDATION_ERROR"


# Not Found Errors
class NotFoundError(DomainError):
    """Resource not found"""
    error_code = "NOT_FOUND"
    http_status = 404


class TriggerNotFoundError(NotFoundError):
    """Trigger not found"""
    error_code = "TRIGGER_NOT_FOUND"


class FlowNotFoundError(NotFoundError):
    """Flow definition not found"""
    error_code = "FLOW_NOT_FOUND"


class FlowInstanceNotFoundError(NotFoundError):
    """Flow instance not found (or not in a state the operation accepts)"""
    error_code = "FLOW_INSTANCE_NOT_FOUND"


class CampaignNotFoundError(NotFoundError):
    """Drip campaign not found"""
    error_code = "CAMPAIGN_NOT_FOUND"


class DripRunNotFoundError(NotFoundError):
    """Drip run not found"""
    error_code = "DRIP_RUN_NOT_FOUND"


class StepNotFoundError(NotFoundError):
    """Drip step not found"""
    error_code = "STEP_NOT_FOUND"


# Conflict Errors
class ConflictError(DomainError):
    """Resource conflict (e.g., concurrent modification)"""
    error_code = "CONFLICT"
    http_status = 409


class ConcurrencyError(ConflictError):
    """Optimistic concurrency conflict"""
    error_code = "CONCURRENCY_CONFLICT"


class InvalidStateError(ConflictError):
    """Action not valid for current state"""
    error_code = "INVALID_STATE"


class AlreadyEnrolledError(ConflictError):
    """Contact already has a run in this campaign"""
    error_code = "ALREADY_ENROLLED"


class ReEntryTooSoonError(ConflictError):
    """Re-entry delay has not elapsed since the previous run ended"""
    error_code = "RE_ENTRY_TOO_SOON"


class InstanceLimitError(ConflictError):
    """Flow instance limits reached"""
    error_code = "INSTANCE_LIMIT_REACHED"


class DailyLimitError(ConflictError):
    """Campaign daily enrollment cap reached"""
    error_code = "DAILY_LIMIT_REACHED"
    http_status = 429


# Engine Errors
class EngineError(DomainError):
    """Automation engine error"""
    error_code = "ENGINE_ERROR"
    http_status = 500


class ActionFailure(EngineError):
    """A single action, node or step side effect failed"""
    error_code = "ACTION_FAILURE"


class UnsupportedActionError(ActionFailure):
    """No executor configured for the action type"""
    error_code = "UNSUPPORTED_ACTION"


# External Service Errors
class ExternalServiceError(DomainError):
    """External service failure"""
    error_code = "EXTERNAL_SERVICE_ERROR"
    http_status = 502


class MessageGatewayError(ExternalServiceError):
    """Message gateway rejected or failed the send"""
    error_code = "MESSAGE_GATEWAY_ERROR"
