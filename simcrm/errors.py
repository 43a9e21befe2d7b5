from typing import Any, Dict, Optional


class SimCrmError(Exception):
    """Base error carrying a machine-readable code and context."""

    retryable = False
    status = 500

    def __init__(self, code: str, message: str, context: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.context = dict(context or {})

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.__class__.__name__,
            "code": self.code,
            "message": self.message,
            "context": self.context,
            "retryable": self.retryable,
        }


class PlanningError(SimCrmError):
    status = 400


class StepReferenceError(SimCrmError):
    status = 404


class GenerationError(SimCrmError):
    status = 424


class ValidationError(SimCrmError):
    status = 400


class ExternalError(SimCrmError):
    status = 502

    def __init__(
        self,
        code: str,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        status_code: Optional[int] = None,
    ) -> None:
        super().__init__(code, message, context)
        self.status_code = status_code


class ExternalRateLimitError(ExternalError):
    retryable = True
    status = 429

    def __init__(
        self,
        code: str,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        status_code: Optional[int] = 429,
        retry_after_s: Optional[float] = None,
    ) -> None:
        super().__init__(code, message, context, status_code=status_code)
        self.retry_after_s = retry_after_s


class ExternalTransientError(ExternalError):
    retryable = True
    status = 503


class ExternalPermanentError(ExternalError):
    status = 502


NON_RETRYABLE_STEP_ERRORS = (StepReferenceError, GenerationError, ValidationError, ExternalPermanentError, PlanningError)


def is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, SimCrmError) and exc.retryable


def is_non_retryable(exc: BaseException) -> bool:
    """Step failures that will not change on blind retry."""
    return isinstance(exc, NON_RETRYABLE_STEP_ERRORS)


def error_payload(exc: BaseException) -> Dict[str, Any]:
    if isinstance(exc, SimCrmError):
        return exc.to_dict()
    return {
        "error": exc.__class__.__name__,
        "code": "UNEXPECTED_ERROR",
        "message": str(exc),
        "context": {},
        "retryable": False,
    }
