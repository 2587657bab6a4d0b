"""
Error taxonomy for the onboarding pipeline.

Every error carries a stable ``code`` (the class name) that is used in dispatch
envelopes, turn responses and logs. Retry classification lives in
``loanflow.core.retry``; this module only defines the shapes.
"""
from typing import Any, Dict, List, Optional


class OnboardingError(Exception):
    """Base class for every error raised by the pipeline."""

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message

    @property
    def code(self) -> str:
        return type(self).__name__

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message}


class ValidationError(OnboardingError):
    """Locally detected bad input. Never retried."""

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        if self.field:
            d["field"] = self.field
        return d


class AuthenticationError(OnboardingError):
    """Missing credentials or a signature the provider rejected."""


class RateLimitError(OnboardingError):
    def __init__(self, message: str, retry_after: float):
        super().__init__(message)
        self.retry_after = float(retry_after)

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d["retryAfterSec"] = int(round(self.retry_after))
        return d


class ConflictError(OnboardingError):
    """A step already has an open (non-terminal) reference."""

    def __init__(self, step: str, reference_id: Optional[str], status: Optional[str]):
        super().__init__(
            f"{step} already has an open reference {reference_id} ({status}); "
            f"check its status or resolve the deviation before starting again"
        )
        self.step = step
        self.reference_id = reference_id
        self.status = status


class PreconditionError(OnboardingError):
    def __init__(self, missing: List[str], action: str = "create_loan_account"):
        super().__init__(
            f"Cannot run {action}: these steps are missing or not accepted: {', '.join(missing)}"
        )
        self.missing = list(missing)
        self.action = action

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d["missing"] = list(self.missing)
        return d


class ApiError(OnboardingError):
    """Upstream provider rejected the request (4xx other than 401/429)."""

    def __init__(self, message: str, status: int = 0, details: Any = None):
        super().__init__(message)
        self.status = int(status or 0)
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d["status"] = self.status
        if self.details is not None:
            d["details"] = self.details
        return d


class TransientProviderError(ApiError):
    """Network failure, timeout, 5xx or 429. Retried by the executor."""


class ExecutionError(OnboardingError):
    """Anything unexpected that happened while executing an action."""


class UnknownActionError(OnboardingError):
    def __init__(self, name: str):
        super().__init__(f"Unknown action: {name}")
        self.name = name


class InvalidTransitionError(OnboardingError):
    def __init__(self, source: str, target: str):
        super().__init__(f"Transition {source} -> {target} is not part of the onboarding graph")
        self.source = source
        self.target = target


def user_message_for(code: str, message: str = "") -> str:
    """Text shown to the customer for a failed step or turn, keyed by error code."""
    if code == "ValidationError":
        return f"{message.rstrip('.')}. Please correct it and try again."
    if code == "AuthenticationError":
        return "We're facing a configuration problem on our side. Please try again in a little while."
    if code in ("RateLimitError", "ConflictError", "PreconditionError"):
        return message
    if code in ("ApiError", "TransientProviderError"):
        return f"Our partner service couldn't complete this request ({message}). Please try again."
    return "Something went wrong while processing your request. Please try again."


def user_message(err: BaseException) -> str:
    if isinstance(err, OnboardingError):
        return user_message_for(err.code, err.message)
    return user_message_for("ExecutionError")
