"""
Business processing for one decoded book status change event.

Maps a status transition to a notification, sends it to the configured target
recipient (plus CC recipients) and turns a failed send into a typed error that
the batch consumer's retry decision understands. Redelivery re-runs the whole
notification, so a retried event may email the primary recipient again.
"""

import re
import time
from typing import Optional, Protocol

from aws_lambda_powertools import Logger

from .config import SERVICE_NAME, CCConfiguration
from .core import error_code
from .delivery import MultiRecipientSender
from .errors import DeliveryError, PermanentDeliveryError, SecondaryRecipientError
from .metrics import MetricsSink
from .model import (
    BookStatus,
    BookStatusChangeEvent,
    EmailMessage,
    ErrorCategory,
    MultiRecipientResult,
    NotificationType,
)

logger = Logger(service=SERVICE_NAME, child=True)

STATUS_TO_NOTIFICATION = {
    BookStatus.DRAFT.value: None,
    BookStatus.SUBMITTED_FOR_EDITING.value: NotificationType.BOOK_SUBMITTED,
    BookStatus.READY_FOR_PUBLICATION.value: NotificationType.BOOK_APPROVED,
    BookStatus.PUBLISHED.value: NotificationType.BOOK_PUBLISHED,
}

NOTIFYING_TRANSITIONS = {
    (BookStatus.DRAFT.value, BookStatus.SUBMITTED_FOR_EDITING.value),
    (BookStatus.SUBMITTED_FOR_EDITING.value, BookStatus.READY_FOR_PUBLICATION.value),
    (BookStatus.READY_FOR_PUBLICATION.value, BookStatus.PUBLISHED.value),
    (BookStatus.READY_FOR_PUBLICATION.value, BookStatus.SUBMITTED_FOR_EDITING.value),
}

SUBJECTS = {
    NotificationType.BOOK_SUBMITTED: "Book Submitted for Review: {title}",
    NotificationType.BOOK_APPROVED: "Book Approved for Publication: {title}",
    NotificationType.BOOK_REJECTED: "Book Returned for Revision: {title}",
    NotificationType.BOOK_PUBLISHED: "Book Published: {title}",
}

_QUOTA_CODES = {"LimitExceeded", "DailyQuotaExceeded"}
_CC_PATTERN = re.compile(r"\bCC\b|CcAddresses|carbon copy")


class EventProcessor(Protocol):
    def process(self, event: BookStatusChangeEvent) -> None:
        ...


def notification_type_for(previous_status: Optional[str], new_status: str) -> Optional[NotificationType]:
    """
    Returns the notification for a status transition, or None if it sends none.

    An initial status notifies for anything but DRAFT. A move from
    READY_FOR_PUBLICATION back to SUBMITTED_FOR_EDITING is a rejection.
    """
    if previous_status is None:
        return STATUS_TO_NOTIFICATION.get(new_status)
    if (previous_status, new_status) not in NOTIFYING_TRANSITIONS:
        return None
    if (
        previous_status == BookStatus.READY_FOR_PUBLICATION.value
        and new_status == BookStatus.SUBMITTED_FOR_EDITING.value
    ):
        return NotificationType.BOOK_REJECTED
    return STATUS_TO_NOTIFICATION.get(new_status)


def build_message(notification_type: NotificationType, event: BookStatusChangeEvent) -> EmailMessage:
    data = event.data
    subject = SUBJECTS[notification_type].format(title=data.title)
    lines = [
        f"Book: {data.title}",
        f"Author: {data.author}",
        f"Book ID: {data.book_id}",
        f"Status: {data.new_status}",
        f"Changed by: {data.changed_by}",
    ]
    if data.change_reason:
        lines.append(f"Comments: {data.change_reason}")
    return EmailMessage(subject=subject, text_body="\n".join(lines))


def delivery_failure(result: MultiRecipientResult, has_cc: bool) -> DeliveryError:
    """Maps a failed send onto the typed error the retry decision switches on."""
    error = result.error or "Unknown error"
    category = result.error_category or ErrorCategory.UNKNOWN
    code = error_code(result.cause)

    if result.cause is None:
        # Nothing was sent: the primary address was rejected up front.
        return PermanentDeliveryError(error, ErrorCategory.INVALID_PARAMETER)
    if "not verified" in error:
        return PermanentDeliveryError(f"Email address not verified: {error}", category)
    if code in _QUOTA_CODES or "quota exceeded" in error.lower():
        return PermanentDeliveryError(f"Sending quota exceeded: {error}", category)
    if has_cc and _CC_PATTERN.search(error):
        if code in {"InvalidParameterValue", "MessageRejected"}:
            return SecondaryRecipientError(f"Invalid CC email address: {error}", permanent=True, category=category)
        return SecondaryRecipientError(f"CC delivery failed: {error}", permanent=False, category=category)
    return DeliveryError(f"Failed to send email: {error}", category)


class NotificationProcessor:
    """
    Sends the email notification for a book status change.

    Args:
        sender: The multi-recipient delivery tracker.
        metrics: Receives notification and CC delivery metrics.
        target_email: The primary recipient of every notification.
        cc: CC recipients added to every notification.
    """

    def __init__(
        self,
        sender: MultiRecipientSender,
        metrics: MetricsSink,
        target_email: str,
        cc: Optional[CCConfiguration] = None,
    ):
        self.sender = sender
        self.metrics = metrics
        self.target_email = target_email
        self.cc = cc or CCConfiguration(enabled=False)

    def process(self, event: BookStatusChangeEvent) -> None:
        notification_type = notification_type_for(event.data.previous_status, event.data.new_status)
        context = {
            "eventId": event.event_id,
            "bookId": event.data.book_id,
            "statusTransition": event.status_transition,
        }
        if notification_type is None:
            logger.info("No notification required for event.", extra=context)
            return

        start = time.monotonic()
        cc_emails = self.cc.effective_emails(self.target_email)
        result = self.sender.send_with_recipients(
            self.target_email, cc_emails, build_message(notification_type, event)
        )

        if result.recipient_statuses:
            failed = result.failed_secondaries
            self.metrics.record_cc_delivery(
                notification_type.value,
                len(result.recipient_statuses),
                len(result.delivered_secondaries),
                len(failed),
            )
            if failed and result.primary_succeeded:
                logger.warning(
                    "Partial CC delivery failure.",
                    extra={
                        **context,
                        "failedEmails": [{"email": s.address, "error": s.error} for s in failed],
                        "primaryRecipient": self.target_email,
                    },
                )

        if not result.primary_succeeded:
            failure = delivery_failure(result, bool(cc_emails))
            self.metrics.record_notification_failure(notification_type.value, type(failure).__name__)
            raise failure

        self.metrics.record_notification_success(notification_type.value, int((time.monotonic() - start) * 1000))
        logger.info(
            "Notification sent.",
            extra={**context, "messageId": result.message_id, "notificationType": notification_type.value},
        )
