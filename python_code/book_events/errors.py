"""
Exception types raised by the event pipeline.

Publisher failures carry the ErrorCategory that stopped the retry loop.
Consumer-side delivery failures are typed so that the retry decision can
switch on the type instead of matching message text.
"""

from typing import Optional

from .model import ErrorCategory, ValidationOutcome


class BookEventsError(Exception):
    """Base class for all errors raised by this package."""


class EventValidationError(BookEventsError):
    """Raised when an envelope or event fails structural validation. Never retried."""

    def __init__(self, message: str, outcome: Optional[ValidationOutcome] = None):
        super().__init__(message)
        self.outcome = outcome or ValidationOutcome(is_valid=False, errors=[message])


class PublishError(BookEventsError):
    """
    Terminal publish failure.

    Raised either on the first non-retryable error or after the attempts are
    exhausted. The underlying error is available as `__cause__`.
    """

    def __init__(self, message: str, category: ErrorCategory, attempts: int, event_id: str):
        super().__init__(message)
        self.category = category
        self.attempts = attempts
        self.event_id = event_id


class PublishCancelledError(PublishError):
    """Raised when the publisher's stop event is set during a retry wait."""


class DeliveryError(BookEventsError):
    """A failed email send that may succeed on redelivery."""

    def __init__(self, message: str, category: ErrorCategory = ErrorCategory.UNKNOWN):
        super().__init__(message)
        self.category = category


class PermanentDeliveryError(DeliveryError):
    """The destination itself is unusable (invalid or unverified address, quota exhausted)."""


class SecondaryRecipientError(DeliveryError):
    """A failure that concerns only the CC recipients of a notification."""

    def __init__(
        self,
        message: str,
        permanent: bool,
        category: ErrorCategory = ErrorCategory.UNKNOWN,
    ):
        super().__init__(message, category)
        self.permanent = permanent
