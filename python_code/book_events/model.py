"""
Data models for the book workflow event pipeline.

This module defines the data structures passed between the publisher, the
envelope codec, the batch consumer and the email delivery tracker. Using
dataclasses, enums and TypedDicts keeps the contracts explicit, statically
checked by mypy, and self-documenting.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, TypedDict

from aws_lambda_powertools.utilities.batch.types import PartialItemFailureResponse

EVENT_TYPE_BOOK_STATUS_CHANGED = "book_status_changed"
EVENT_SOURCE_WORKFLOW_SERVICE = "workflow-service"
EVENT_SCHEMA_VERSION = "1.0"


class BookStatus(str, Enum):
    DRAFT = "DRAFT"
    SUBMITTED_FOR_EDITING = "SUBMITTED_FOR_EDITING"
    READY_FOR_PUBLICATION = "READY_FOR_PUBLICATION"
    PUBLISHED = "PUBLISHED"


class NotificationType(str, Enum):
    BOOK_SUBMITTED = "book_submitted"
    BOOK_APPROVED = "book_approved"
    BOOK_REJECTED = "book_rejected"
    BOOK_PUBLISHED = "book_published"


class ErrorCategory(str, Enum):
    """The closed failure taxonomy shared by the publisher and the consumer."""

    TIMEOUT = "TIMEOUT"
    NETWORK_ERROR = "NETWORK_ERROR"
    THROTTLING = "THROTTLING"
    INVALID_PARAMETER = "INVALID_PARAMETER"
    ACCESS_DENIED = "ACCESS_DENIED"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"
    TOPIC_NOT_FOUND = "TOPIC_NOT_FOUND"
    MESSAGE_TOO_LARGE = "MESSAGE_TOO_LARGE"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    UNKNOWN = "UNKNOWN"


class FailureKind(str, Enum):
    """How a single-event processing failure affects redelivery."""

    VALIDATION = "validation"
    PERMANENT_DESTINATION = "permanent_destination"
    SECONDARY_PERMANENT = "secondary_permanent"
    SECONDARY_TRANSIENT = "secondary_transient"
    TRANSIENT = "transient"


class RecordStatus(str, Enum):
    SUCCEEDED = "succeeded"
    RETRY = "retry"
    ABANDONED = "abandoned"


class SQSRecordAttributes(TypedDict, total=False):
    ApproximateReceiveCount: str
    SentTimestamp: str
    SenderId: str
    ApproximateFirstReceiveTimestamp: str


class SQSEventRecord(TypedDict, total=False):
    """
    Represents the structure of a single SQS message record from a Lambda event.

    This provides static type checking for message attributes, ensuring that any
    access to keys like 'messageId' or 'receiptHandle' is validated by mypy.
    """

    messageId: str
    receiptHandle: str
    body: str
    attributes: SQSRecordAttributes
    eventSourceARN: str
    # Other SQS attributes are available but are not used by this application.


@dataclass(frozen=True)
class BookStatusChangeEventData:
    """
    The payload of a book status change.

    `previous_status` is None for the initial status of a newly created book.
    `metadata` is an open key-value map carried through untouched.
    """

    book_id: str
    title: str
    author: str
    previous_status: Optional[str]
    new_status: str
    changed_by: str
    change_reason: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "bookId": self.book_id,
            "title": self.title,
            "author": self.author,
            "previousStatus": self.previous_status,
            "newStatus": self.new_status,
            "changedBy": self.changed_by,
        }
        # Optional keys are only written when set.
        if self.change_reason is not None:
            data["changeReason"] = self.change_reason
        if self.metadata:
            data["metadata"] = dict(self.metadata)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BookStatusChangeEventData":
        return cls(
            book_id=data["bookId"],
            title=data["title"],
            author=data["author"],
            previous_status=data.get("previousStatus"),
            new_status=data["newStatus"],
            changed_by=data["changedBy"],
            change_reason=data.get("changeReason"),
            metadata=dict(data.get("metadata") or {}),
        )


@dataclass(frozen=True)
class BookStatusChangeEvent:
    """
    An immutable fact describing a book status transition.

    The `event_id` is assigned once when the event is created and is the
    idempotency key for downstream consumers. Every retry of the same logical
    publish carries the same id.
    """

    event_id: str
    timestamp: str
    data: BookStatusChangeEventData
    event_type: str = EVENT_TYPE_BOOK_STATUS_CHANGED
    source: str = EVENT_SOURCE_WORKFLOW_SERVICE
    version: str = EVENT_SCHEMA_VERSION

    @property
    def status_transition(self) -> str:
        return f"{self.data.previous_status} -> {self.data.new_status}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "eventType": self.event_type,
            "eventId": self.event_id,
            "timestamp": self.timestamp,
            "source": self.source,
            "version": self.version,
            "data": self.data.to_dict(),
        }

    @classmethod
    def from_dict(cls, event: Dict[str, Any]) -> "BookStatusChangeEvent":
        return cls(
            event_id=event["eventId"],
            timestamp=event["timestamp"],
            data=BookStatusChangeEventData.from_dict(event["data"]),
            event_type=event["eventType"],
            source=event["source"],
            version=event["version"],
        )


@dataclass(frozen=True)
class DeliveryRecord:
    """
    The consumer's view of one queue message.

    Attributes:
        message_id: The SQS message id; this is the identifier reported back
                    in a partial batch failure response.
        receipt_handle: The SQS receipt handle (unused by this code, kept for logs).
        body: The raw message body, an SNS notification envelope.
        receive_count: ApproximateReceiveCount, incremented by SQS on every
                       redelivery.
        source_arn: The ARN of the queue the record came from.
    """

    message_id: str
    receipt_handle: str
    body: str
    receive_count: int = 1
    source_arn: str = ""

    @classmethod
    def from_sqs_record(cls, record: SQSEventRecord) -> "DeliveryRecord":
        attributes = record.get("attributes") or {}
        return cls(
            message_id=record["messageId"],
            receipt_handle=record.get("receiptHandle", ""),
            body=record.get("body", ""),
            receive_count=int(attributes.get("ApproximateReceiveCount", "1")),
            source_arn=record.get("eventSourceARN", ""),
        )


@dataclass(frozen=True)
class ValidationOutcome:
    """Result of a structural check. An event is either fully usable or rejected."""

    is_valid: bool
    errors: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class RetryDecision:
    """
    Whether a failed record should be redelivered.

    Attributes:
        retry: True if the record's id belongs in the partial failure list.
        rule: The short name of the rule that produced the decision, for audit logs.
        reason: A human-readable explanation.
    """

    retry: bool
    rule: str
    reason: str


@dataclass(frozen=True)
class RecordError:
    message_id: str
    error: str


@dataclass(frozen=True)
class RecordOutcome:
    message_id: str
    status: RecordStatus
    error: Optional[str] = None


@dataclass
class BatchResult:
    """
    Aggregates the per-record outcomes of one SQS batch.

    `retry_identifiers` is the only channel for requesting redelivery. Every
    id in it belongs to a record that failed for a retryable reason and is
    still under the retry ceiling; any id not listed is treated by SQS as
    handled and deleted.
    """

    total_records: int = 0
    succeeded: int = 0
    failed: int = 0
    errors: List[RecordError] = field(default_factory=list)
    retry_identifiers: List[str] = field(default_factory=list)
    outcomes: List[RecordOutcome] = field(default_factory=list)

    def outcome_for(self, message_id: str) -> Optional[RecordOutcome]:
        for outcome in self.outcomes:
            if outcome.message_id == message_id:
                return outcome
        return None

    def to_partial_failure_response(self) -> PartialItemFailureResponse:
        return {
            "batchItemFailures": [
                {"itemIdentifier": message_id} for message_id in self.retry_identifiers
            ]
        }


@dataclass(frozen=True)
class EmailMessage:
    subject: str
    text_body: str
    html_body: Optional[str] = None


@dataclass(frozen=True)
class RecipientDeliveryStatus:
    address: str
    succeeded: bool
    error: Optional[str] = None


@dataclass
class MultiRecipientResult:
    """
    Outcome of a send to one primary and zero or more secondary (CC) recipients.

    `cause` keeps the transport exception, if any, so that callers can map it
    onto a typed failure. It is excluded from comparison and repr.
    """

    primary_succeeded: bool
    message_id: Optional[str] = None
    recipient_statuses: List[RecipientDeliveryStatus] = field(default_factory=list)
    error: Optional[str] = None
    error_category: Optional[ErrorCategory] = None
    cause: Optional[BaseException] = field(default=None, compare=False, repr=False)

    @property
    def delivered_secondaries(self) -> List[str]:
        return [s.address for s in self.recipient_statuses if s.succeeded]

    @property
    def failed_secondaries(self) -> List[RecipientDeliveryStatus]:
        return [s for s in self.recipient_statuses if not s.succeeded]


@dataclass(frozen=True)
class PublishResult:
    message_id: str
    retry_count: int
    event_id: str
    duration_ms: int = 0


@dataclass(frozen=True)
class RetryConfig:
    """
    Publisher retry settings. All durations are in seconds.

    Attributes:
        max_attempts: Total publish attempts, including the first.
        base_delay: Delay before the second attempt.
        max_delay: Upper bound for any single delay.
        multiplier: Exponential growth factor between attempts.
        jitter: If True, perturb each delay by up to 25% either way.
        attempt_timeout: Read timeout for a single publish call.
        connect_timeout: Connection timeout for a single publish call.
    """

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 10.0
    multiplier: float = 2.0
    jitter: bool = True
    attempt_timeout: float = 30.0
    connect_timeout: float = 10.0

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be at least 1, got {self.max_attempts}")
