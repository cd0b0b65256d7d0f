"""
Core failure-handling logic for the book workflow event pipeline.

These functions are designed to be "pure" and testable: they perform no I/O,
hold no global state and do not log. Callers (the publisher and the batch
consumer) receive the results and are responsible for logging and metrics,
which keeps every rule here unit-testable in isolation.
"""

import random
import re
from typing import Iterable, List, Optional, Tuple

from botocore.exceptions import ClientError

from .errors import (
    EventValidationError,
    PermanentDeliveryError,
    SecondaryRecipientError,
)
from .model import ErrorCategory, FailureKind, RecipientDeliveryStatus, RetryDecision

DEFAULT_MAX_RETRIES = 3
JITTER_RATIO = 0.25

NETWORK_ERROR_MARKERS = (
    "ECONNREFUSED",
    "ECONNRESET",
    "ENOTFOUND",
    "ETIMEDOUT",
    "Connection refused",
    "Connection reset",
    "Name or service not known",
    "timed out",
    "Could not connect to the endpoint URL",
)
THROTTLING_CODES = frozenset({"Throttling", "ThrottlingException"})
INVALID_PARAMETER_CODES = frozenset({"InvalidParameter", "ValidationException"})
ACCESS_DENIED_CODES = frozenset({"AccessDenied", "UnauthorizedOperation"})
SERVICE_UNAVAILABLE_CODES = frozenset({"ServiceUnavailable", "InternalError"})

RETRYABLE_CATEGORIES = frozenset(
    {
        ErrorCategory.TIMEOUT,
        ErrorCategory.NETWORK_ERROR,
        ErrorCategory.THROTTLING,
        ErrorCategory.SERVICE_UNAVAILABLE,
        ErrorCategory.UNKNOWN,
    }
)
NON_RETRYABLE_CATEGORIES = frozenset(
    {
        ErrorCategory.INVALID_PARAMETER,
        ErrorCategory.ACCESS_DENIED,
        ErrorCategory.TOPIC_NOT_FOUND,
        ErrorCategory.MESSAGE_TOO_LARGE,
        ErrorCategory.VALIDATION_ERROR,
    }
)

VALIDATION_FAILURE_MARKERS = ("validation failed", "Invalid event format", "Event validation failed")
PERMANENT_DESTINATION_MARKERS = (
    "Invalid email address",
    "Email address not verified",
    "Email address is not verified",
    "Sending quota exceeded",
)
SECONDARY_PERMANENT_MARKERS = ("Invalid CC email address", "CC email validation failed")
SECONDARY_TRANSIENT_MARKERS = ("CC delivery failed", "Partial CC failure")
# Word boundaries so that e.g. "SUCCESS" or "ACCESS" do not read as CC.
_SECONDARY_PATTERN = re.compile(r"\bCC\b|carbon copy")

_EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
MAX_EMAIL_LENGTH = 254


# --- Error Classifier ---

def error_code(error: Optional[BaseException]) -> Optional[str]:
    """Returns the machine-readable code of an error, if it carries one."""
    if isinstance(error, ClientError):
        return error.response.get("Error", {}).get("Code")
    code = getattr(error, "code", None)
    return str(code) if code is not None else None


def classify_error(error: Optional[BaseException]) -> ErrorCategory:
    """
    Maps any failure onto the ErrorCategory taxonomy.

    The rules are checked in order and the first match wins. This is a total
    function: None and errors without a code or message fall through to
    UNKNOWN.

    Args:
        error: The exception raised by a transport call.

    Returns:
        Exactly one ErrorCategory.
    """
    if error is None:
        return ErrorCategory.UNKNOWN
    if isinstance(error, EventValidationError):
        return ErrorCategory.VALIDATION_ERROR

    message = str(error)
    code = error_code(error)

    if "timeout" in message or "TIMEOUT" in message:
        return ErrorCategory.TIMEOUT
    if any(marker in message for marker in NETWORK_ERROR_MARKERS):
        return ErrorCategory.NETWORK_ERROR
    if code in THROTTLING_CODES:
        return ErrorCategory.THROTTLING
    if code in INVALID_PARAMETER_CODES:
        return ErrorCategory.INVALID_PARAMETER
    if code in ACCESS_DENIED_CODES:
        return ErrorCategory.ACCESS_DENIED
    if code in SERVICE_UNAVAILABLE_CODES:
        return ErrorCategory.SERVICE_UNAVAILABLE
    if "does not exist" in message or code == "NotFound":
        return ErrorCategory.TOPIC_NOT_FOUND
    if "too large" in message or code == "InvalidParameterValue":
        return ErrorCategory.MESSAGE_TOO_LARGE
    return ErrorCategory.UNKNOWN


def is_retryable(category: ErrorCategory) -> bool:
    """The single retryability table used by both the publisher and the consumer."""
    if category in NON_RETRYABLE_CATEGORIES:
        return False
    return category in RETRYABLE_CATEGORIES


# --- Backoff Scheduler ---

def compute_backoff_delay(
    attempt: int,
    base: float,
    cap: float,
    multiplier: float = 2.0,
    jitter: bool = True,
    rng: Optional[random.Random] = None,
) -> float:
    """
    Computes the wait before the next attempt, in seconds.

    delay = min(base * multiplier ** (attempt - 1), cap). With jitter the delay
    is moved by a uniform draw of up to 25% either way. The result is clamped
    to [0, cap], so it is never negative and never above the cap.

    Args:
        attempt: The 1-based number of the attempt that just failed.
        base: Delay after the first failed attempt.
        cap: Maximum delay.
        multiplier: Growth factor per attempt.
        jitter: Whether to randomize the delay.
        rng: Random source; pass a seeded random.Random for determinism.

    Returns:
        The delay in seconds.
    """
    exponent = max(attempt, 1) - 1
    delay = min(base * (multiplier ** exponent), cap)
    if jitter:
        source = rng if rng is not None else random
        delay += delay * JITTER_RATIO * source.uniform(-1.0, 1.0)
    return min(max(delay, 0.0), cap)


# --- Retry/DLQ Decision ---

def categorize_processing_failure(error: BaseException) -> FailureKind:
    """
    Maps a single-event processing failure onto a FailureKind.

    Typed errors raised by this package are matched first. Errors raised by
    other business code are matched on their message text.
    """
    if isinstance(error, EventValidationError):
        return FailureKind.VALIDATION
    if isinstance(error, SecondaryRecipientError):
        return FailureKind.SECONDARY_PERMANENT if error.permanent else FailureKind.SECONDARY_TRANSIENT
    if isinstance(error, PermanentDeliveryError):
        return FailureKind.PERMANENT_DESTINATION

    message = str(error)
    if any(marker in message for marker in VALIDATION_FAILURE_MARKERS):
        return FailureKind.VALIDATION
    if any(marker in message for marker in PERMANENT_DESTINATION_MARKERS):
        return FailureKind.PERMANENT_DESTINATION
    if _SECONDARY_PATTERN.search(message):
        if any(marker in message for marker in SECONDARY_PERMANENT_MARKERS):
            return FailureKind.SECONDARY_PERMANENT
        if any(marker in message for marker in SECONDARY_TRANSIENT_MARKERS):
            return FailureKind.SECONDARY_TRANSIENT
    return FailureKind.TRANSIENT


def evaluate_retry(
    error: BaseException, receive_count: int, max_retries: int = DEFAULT_MAX_RETRIES
) -> RetryDecision:
    """
    Decides whether a failed record should be redelivered by the queue.

    The rules are evaluated in order:
    1. Validation failures are permanent.
    2. Records at or above the retry ceiling go to the dead-letter path.
    3. Permanent destination problems are not retried.
    4. CC-only failures: configuration errors are permanent, delivery errors
       are retried. Retrying re-runs the whole notification, so the primary
       recipient may receive the email again.
    5. Anything else is assumed transient.

    Args:
        error: The exception raised while processing the record.
        receive_count: The record's ApproximateReceiveCount.
        max_retries: The retry ceiling.

    Returns:
        A RetryDecision naming the matched rule.
    """
    kind = categorize_processing_failure(error)

    if kind is FailureKind.VALIDATION:
        return RetryDecision(False, "validation_error", "Validation errors are permanent failures")
    if receive_count >= max_retries:
        return RetryDecision(
            False,
            "max_attempts_exceeded",
            f"Receive count {receive_count} reached the retry ceiling of {max_retries}",
        )
    if kind is FailureKind.PERMANENT_DESTINATION:
        return RetryDecision(False, "permanent_destination_error", "Email destination error is permanent")
    if kind is FailureKind.SECONDARY_PERMANENT:
        return RetryDecision(False, "permanent_secondary_error", "CC configuration error is permanent")
    if kind is FailureKind.SECONDARY_TRANSIENT:
        return RetryDecision(True, "transient_secondary_error", "CC delivery error may be transient")
    return RetryDecision(True, "transient_error", "Transient error - will retry")


def should_retry(
    error: BaseException, receive_count: int, max_retries: int = DEFAULT_MAX_RETRIES
) -> bool:
    return evaluate_retry(error, receive_count, max_retries).retry


# --- Recipient helpers ---

def is_valid_email(address: Optional[str]) -> bool:
    """Checks the basic shape of an email address."""
    if not address or not isinstance(address, str):
        return False
    if len(address) > MAX_EMAIL_LENGTH or not _EMAIL_PATTERN.match(address):
        return False
    if ".." in address or address.startswith(".") or address.endswith("."):
        return False
    return True


def partition_secondary_recipients(
    primary: str, secondary: Iterable[str]
) -> Tuple[List[str], List[RecipientDeliveryStatus]]:
    """
    Splits CC addresses into the ones to send to and the ones rejected up front.

    Addresses equal (case-insensitively) to the primary or to an earlier CC
    address are dropped silently. Malformed addresses are returned as failed
    statuses and never reach the transport.

    Returns:
        A tuple of (addresses to send, failed statuses for malformed addresses).
    """
    seen = {primary.strip().lower()} if primary else set()
    valid: List[str] = []
    rejected: List[RecipientDeliveryStatus] = []
    for raw in secondary:
        address = (raw or "").strip()
        key = address.lower()
        if key in seen:
            continue
        seen.add(key)
        if is_valid_email(address):
            valid.append(address)
        else:
            rejected.append(
                RecipientDeliveryStatus(
                    address=address,
                    succeeded=False,
                    error=f"Invalid CC email address format: {address}",
                )
            )
    return valid, rejected
