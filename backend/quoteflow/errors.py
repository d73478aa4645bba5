# errors.py
# Error taxonomy shared by the core and the HTTP layer
from typing import Optional


class QuoteflowError(Exception):
    """Base error. `user_message` is safe to show; details go to the log."""

    def __init__(self, user_message: str, details: Optional[str] = None):
        self.user_message = user_message
        self.details = details
        super().__init__(user_message)


class InputError(QuoteflowError):
    """The caller sent something unusable (missing text, empty recipients, ...)."""


class ConsistencyError(QuoteflowError):
    """Requested state does not exist and cannot be rebuilt."""


class ExternalServiceError(QuoteflowError):
    """The AI service failed. Retriable failures are overload / rate-limit class."""

    def __init__(
        self,
        user_message: str,
        retriable: bool = False,
        original_error: Optional[Exception] = None,
    ):
        self.retriable = retriable
        self.original_error = original_error
        details = str(original_error) if original_error is not None else None
        super().__init__(user_message, details)


SERVICE_BUSY_MESSAGE = "AI service is temporarily overloaded. Please wait a moment and try again."
