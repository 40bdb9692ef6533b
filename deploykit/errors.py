# deploykit/errors.py
from enum import Enum
from typing import Optional, Dict, Any


class ErrorCode(Enum):
    """Canonical error codes for safety-core failures"""
    LOCK_HELD = "LOCK_HELD"
    EXTERNAL_STATE_LOCKED = "EXTERNAL_STATE_LOCKED"
    RESOURCE_NOT_FOUND = "RESOURCE_NOT_FOUND"
    VALIDATION_FAILED = "VALIDATION_FAILED"


class DeployKitError(Exception):
    """Structured error with code, message, and optional details"""
    error_code = ErrorCode.VALIDATION_FAILED

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to a serializable dictionary"""
        response = {
            "error_code": self.error_code.value,
            "message": self.message
        }

        if self.details:
            response["details"] = self.details

        return response


class LockHeldError(DeployKitError):
    """
    An active deployment lock already exists for the stage.

    Recoverable by waiting for the lock to expire or by running recovery;
    never retried internally.
    """
    error_code = ErrorCode.LOCK_HELD

    def __init__(self, stage: str, minutes_remaining: Optional[int],
                 message: Optional[str] = None):
        if message is None:
            message = (
                f"Deployment for {stage} is already in progress "
                f"({minutes_remaining} min remaining)"
            )
        super().__init__(message, details={
            "stage": stage,
            "minutes_remaining": minutes_remaining,
            "recovery": f"run recovery for stage '{stage}'"
        })
        self.stage = stage
        self.minutes_remaining = minutes_remaining


class ExternalStateLockedError(LockHeldError):
    """The infrastructure tool holds its own state lock for the stage"""
    error_code = ErrorCode.EXTERNAL_STATE_LOCKED

    def __init__(self, stage: str):
        super().__init__(
            stage,
            None,
            message=(
                f"Infrastructure state for {stage} is locked by the "
                f"infrastructure tool (previous deployment may be incomplete)"
            )
        )


class NotFoundError(DeployKitError):
    """An operation referenced an unknown deployment id or stage"""
    error_code = ErrorCode.RESOURCE_NOT_FOUND

    def __init__(self, resource: str, resource_id: Any):
        super().__init__(
            f"{resource} '{resource_id}' not found",
            details={"resource": resource, "resource_id": resource_id}
        )
        self.resource = resource
        self.resource_id = resource_id


class ValidationError(DeployKitError):
    """Invalid percentage, malformed config, or illegal state transition"""
    error_code = ErrorCode.VALIDATION_FAILED


def validate_percentage(value: Any, field_name: str) -> int:
    """Validate a traffic percentage is an integer within [0, 100]"""
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(
            f"{field_name} must be an integer, got {value!r}",
            details={"field": field_name, "value": value}
        )
    if value < 0 or value > 100:
        raise ValidationError(
            f"Invalid {field_name}: {value} (must be between 0 and 100)",
            details={"field": field_name, "value": value}
        )
    return value


def validate_number(value: Any, field_name: str,
                    minimum: Optional[float] = None,
                    maximum: Optional[float] = None,
                    integer: bool = False) -> float:
    """Validate a numeric setting, rejecting bools, strings and out-of-range values"""
    allowed = int if integer else (int, float)
    if isinstance(value, bool) or not isinstance(value, allowed):
        kind = "an integer" if integer else "a number"
        raise ValidationError(
            f"{field_name} must be {kind}, got {value!r}",
            details={"field": field_name, "value": value}
        )
    if (minimum is not None and value < minimum) or (maximum is not None and value > maximum):
        raise ValidationError(
            f"Invalid {field_name}: {value} (must be between "
            f"{minimum if minimum is not None else '-inf'} and "
            f"{maximum if maximum is not None else 'inf'})",
            details={"field": field_name, "value": value}
        )
    return value
