"""
Sends a notification to one primary recipient plus optional CC recipients.

SES accepts or rejects all addressees of a call together, so there is no
per-address acknowledgment: once the call succeeds, every CC address that was
sent is reported as delivered. Malformed CC addresses are filtered out before
the call and never block the primary delivery.
"""

from typing import Iterable, Optional

from aws_lambda_powertools import Logger

from . import clients
from .config import SERVICE_NAME
from .core import classify_error, is_valid_email, partition_secondary_recipients
from .model import EmailMessage, MultiRecipientResult, RecipientDeliveryStatus

logger = Logger(service=SERVICE_NAME, child=True)


class MultiRecipientSender:
    def __init__(self, transport: clients.EmailTransport):
        self.transport = transport

    def send_with_recipients(
        self,
        primary: str,
        secondary: Optional[Iterable[str]],
        message: EmailMessage,
    ) -> MultiRecipientResult:
        """
        Sends `message` to `primary` with `secondary` on CC.

        Args:
            primary: The main addressee; validated before any network call.
            secondary: CC addresses. Duplicates of the primary (or of each
                       other) are dropped; malformed ones are reported failed.
            message: The rendered email.

        Returns:
            A MultiRecipientResult with one RecipientDeliveryStatus per
            distinct CC address.
        """
        primary = (primary or "").strip()
        valid, statuses = partition_secondary_recipients(primary, secondary or [])

        if not is_valid_email(primary):
            error = f"Invalid email address: {primary}"
            logger.warning("Primary recipient is invalid, nothing sent.", extra={"recipientEmail": primary})
            statuses.extend(
                RecipientDeliveryStatus(address=a, succeeded=False, error=f"Not sent: {error}") for a in valid
            )
            return MultiRecipientResult(primary_succeeded=False, recipient_statuses=statuses, error=error)

        if statuses:
            logger.warning(
                "Skipping malformed CC addresses.",
                extra={"invalidCcEmails": [s.address for s in statuses], "recipientEmail": primary},
            )

        try:
            message_id = self.transport.send(primary, valid, message)
        except Exception as e:
            error = str(e)
            category = classify_error(e)
            logger.error(
                "Email send failed.",
                extra={"recipientEmail": primary, "ccEmails": valid, "errorType": category.value, "error": error},
            )
            statuses.extend(RecipientDeliveryStatus(address=a, succeeded=False, error=error) for a in valid)
            return MultiRecipientResult(
                primary_succeeded=False,
                recipient_statuses=statuses,
                error=error,
                error_category=category,
                cause=e,
            )

        statuses.extend(RecipientDeliveryStatus(address=a, succeeded=True) for a in valid)
        logger.info(
            "Email sent.",
            extra={"messageId": message_id, "recipientEmail": primary, "ccEmailCount": len(valid)},
        )
        return MultiRecipientResult(primary_succeeded=True, message_id=message_id, recipient_statuses=statuses)
