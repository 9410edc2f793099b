"""
Subscription engine exceptions.

Every expected business condition is raised as a subclass of
:class:`SubscriptionEngineError` tagged with an :class:`ErrorKind`. Callers
branch on ``kind``; the HTTP layer maps it to a status code. Exceptions that
are not ``SubscriptionEngineError`` are unexpected faults and propagate.
"""

import enum
from typing import Any


class ErrorKind(str, enum.Enum):
    NOT_FOUND = "NOT_FOUND"
    CONFLICT = "CONFLICT"
    VALIDATION = "VALIDATION"
    TRANSIENT = "TRANSIENT"


_STATUS_BY_KIND = {
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.CONFLICT: 409,
    ErrorKind.VALIDATION: 422,
    ErrorKind.TRANSIENT: 503,
}


class SubscriptionEngineError(Exception):
    """
    Base error with a kind, a machine-readable code, and context.

    Attributes:
        message: Human-readable reason
        kind: Error category used for propagation decisions
        error_code: Machine-readable code for API responses
        context: Identifiers involved in the failure
    """

    kind: ErrorKind = ErrorKind.CONFLICT
    error_code: str = "SUBSCRIPTION_ERROR"

    def __init__(self, message: str, context: dict[str, Any] | None = None) -> None:
        self.message = message
        self.context = context or {}
        super().__init__(message)

    @property
    def status_code(self) -> int:
        return _STATUS_BY_KIND[self.kind]

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for API responses."""
        return {
            "kind": self.kind.value,
            "error_code": self.error_code,
            "message": self.message,
            "context": {key: str(value) for key, value in self.context.items()},
        }


# --- NotFound ---


class PlanNotFoundError(SubscriptionEngineError):
    kind = ErrorKind.NOT_FOUND
    error_code = "PLAN_NOT_FOUND"

    def __init__(self, plan_id: str | None) -> None:
        message = "Subscription plan not found" if plan_id is None else f"Subscription plan {plan_id!r} not found"
        super().__init__(message, {"plan_id": plan_id})


class SubscriptionNotFoundError(SubscriptionEngineError):
    kind = ErrorKind.NOT_FOUND
    error_code = "SUBSCRIPTION_NOT_FOUND"

    def __init__(self, subscription_id: Any) -> None:
        super().__init__(f"Subscription {subscription_id} not found", {"subscription_id": subscription_id})


# --- Conflict ---


class ActiveSubscriptionExistsError(SubscriptionEngineError):
    kind = ErrorKind.CONFLICT
    error_code = "ACTIVE_SUBSCRIPTION_EXISTS"


class InvalidTransitionError(SubscriptionEngineError):
    kind = ErrorKind.CONFLICT
    error_code = "INVALID_TRANSITION"


class TrialAlreadyUsedError(SubscriptionEngineError):
    kind = ErrorKind.CONFLICT
    error_code = "TRIAL_ALREADY_USED"


class PendingDowngradeError(SubscriptionEngineError):
    kind = ErrorKind.CONFLICT
    error_code = "DOWNGRADE_ALREADY_SCHEDULED"


class SweepInProgressError(SubscriptionEngineError):
    kind = ErrorKind.CONFLICT
    error_code = "SWEEP_IN_PROGRESS"

    def __init__(self, sweep: str) -> None:
        super().__init__(f"Sweep {sweep!r} is already running", {"sweep": sweep})


# --- Validation ---


class InvalidPlanChangeError(SubscriptionEngineError):
    kind = ErrorKind.VALIDATION
    error_code = "INVALID_PLAN_CHANGE"


class InvalidDateError(SubscriptionEngineError):
    kind = ErrorKind.VALIDATION
    error_code = "INVALID_DATE"


class InvalidSubscriberError(SubscriptionEngineError):
    kind = ErrorKind.VALIDATION
    error_code = "INVALID_SUBSCRIBER"


class LimitExceededError(SubscriptionEngineError):
    kind = ErrorKind.VALIDATION
    error_code = "LIMIT_EXCEEDED"


class InvalidTimeframeError(SubscriptionEngineError):
    kind = ErrorKind.VALIDATION
    error_code = "INVALID_TIMEFRAME"

    def __init__(self, timeframe: str) -> None:
        super().__init__(f"Unsupported timeframe {timeframe!r}", {"timeframe": timeframe})


# --- Transient ---


class DependencyUnavailableError(SubscriptionEngineError):
    kind = ErrorKind.TRANSIENT
    error_code = "DEPENDENCY_UNAVAILABLE"
