"""
Serialization of book events and of the SNS envelope that carries them.

Events travel as JSON inside the `Message` field of an SNS notification, and
that notification is the body of the SQS record. Decoding is two-stage: the
envelope first, then the event. An event is either fully validated or
rejected with an EventValidationError; callers never see a partial event.
"""

import json
import re
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from aws_lambda_powertools import Logger

from .config import SERVICE_NAME
from .errors import EventValidationError
from .model import (
    EVENT_SCHEMA_VERSION,
    EVENT_TYPE_BOOK_STATUS_CHANGED,
    BookStatus,
    BookStatusChangeEvent,
    ValidationOutcome,
)

logger = Logger(service=SERVICE_NAME, child=True)

INVALID_ENVELOPE = "INVALID_ENVELOPE"
STALE_EVENT_AGE = timedelta(hours=1)

REQUIRED_EVENT_FIELDS = ("eventType", "eventId", "timestamp", "source", "version", "data")
REQUIRED_DATA_FIELDS = ("bookId", "title", "author", "newStatus", "changedBy")
VALID_SOURCES = ("workflow-service", "debug-script")
VALID_STATUSES = tuple(status.value for status in BookStatus)

_UUID4 = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-4[0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$", re.IGNORECASE)
_TEST_EVENT_ID = re.compile(r"^test-direct-\d+$")
_DEBUG_EVENT_ID = re.compile(r"^debug-[a-zA-Z0-9-]+$")


def parse_timestamp(value: str) -> datetime:
    """
    Parses an ISO-8601 instant. Naive timestamps are taken as UTC.

    Raises:
        ValueError: If the value is not a valid ISO-8601 timestamp.
    """
    if not isinstance(value, str) or not value:
        raise ValueError("timestamp must be a non-empty string")
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def is_valid_event_id(event_id: str) -> bool:
    return bool(_UUID4.match(event_id) or _TEST_EVENT_ID.match(event_id) or _DEBUG_EVENT_ID.match(event_id))


def _validate_data(data: Dict[str, Any]) -> List[str]:
    errors: List[str] = []
    for name in REQUIRED_DATA_FIELDS:
        value = data.get(name)
        if not isinstance(value, str) or not value.strip():
            errors.append(f"data.{name} is required and must be a non-empty string")

    new_status = data.get("newStatus")
    if isinstance(new_status, str) and new_status and new_status not in VALID_STATUSES:
        errors.append(f"data.newStatus must be one of: {', '.join(VALID_STATUSES)}")

    previous_status = data.get("previousStatus")
    if previous_status is not None and previous_status not in VALID_STATUSES:
        errors.append(f"data.previousStatus must be null or one of: {', '.join(VALID_STATUSES)}")

    if "changeReason" in data and data["changeReason"] is not None and not isinstance(data["changeReason"], str):
        errors.append("data.changeReason must be a string if provided")
    if "metadata" in data and data["metadata"] is not None and not isinstance(data["metadata"], dict):
        errors.append("data.metadata must be an object if provided")
    return errors


def validate_event(event: Any) -> ValidationOutcome:
    """
    Structurally validates a decoded event object.

    Args:
        event: The result of json.loads on the event JSON.

    Returns:
        A ValidationOutcome listing every problem found.
    """
    if not isinstance(event, dict):
        return ValidationOutcome(is_valid=False, errors=["Event must be a valid object"])

    errors: List[str] = [f"Missing required field: {name}" for name in REQUIRED_EVENT_FIELDS if name not in event]

    if event.get("eventType") != EVENT_TYPE_BOOK_STATUS_CHANGED:
        errors.append(f'eventType must be "{EVENT_TYPE_BOOK_STATUS_CHANGED}"')

    event_id = event.get("eventId")
    if not isinstance(event_id, str) or not event_id.strip():
        errors.append("eventId is required and cannot be empty")
    elif not is_valid_event_id(event_id):
        errors.append("eventId must be a valid UUID v4, test-direct-{timestamp}, or debug-{id}")

    if "timestamp" in event:
        try:
            parse_timestamp(event["timestamp"])
        except (TypeError, ValueError):
            errors.append("timestamp must be in ISO 8601 format")

    if "source" in event and event["source"] not in VALID_SOURCES:
        errors.append(f"source must be one of: {', '.join(VALID_SOURCES)}")

    if event.get("version") != EVENT_SCHEMA_VERSION:
        errors.append(f'version must be "{EVENT_SCHEMA_VERSION}"')

    data = event.get("data")
    if not isinstance(data, dict):
        errors.append("data must be a valid object")
    else:
        errors.extend(_validate_data(data))

    return ValidationOutcome(is_valid=not errors, errors=errors)


def serialize_event(event: BookStatusChangeEvent) -> str:
    """
    Serializes an event to the JSON published on the topic.

    Raises:
        EventValidationError: If the event would not pass validation on the
                              consumer side.
    """
    payload = event.to_dict()
    outcome = validate_event(payload)
    if not outcome.is_valid:
        raise EventValidationError(f"Invalid event: {', '.join(outcome.errors)}", outcome)
    return json.dumps(payload)


def encode_envelope(
    event: BookStatusChangeEvent,
    topic_arn: str = "",
    message_id: str = "",
    subject: Optional[str] = None,
) -> str:
    """Wraps an event in the SNS notification JSON that SQS delivers as the record body."""
    envelope = {
        "Type": "Notification",
        "MessageId": message_id,
        "TopicArn": topic_arn,
        "Subject": subject or f"Book Status Changed: {event.data.title}"[:100],
        "Message": serialize_event(event),
        "Timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
    }
    return json.dumps(envelope)


def extract_message(raw_body: str) -> str:
    """
    Stage one: returns the serialized event from an SNS envelope.

    Raises:
        EventValidationError: If the body is not a JSON object with a string
                              `Message` field.
    """
    try:
        envelope = json.loads(raw_body)
    except (TypeError, ValueError, RecursionError) as e:
        raise EventValidationError(f"{INVALID_ENVELOPE}: Invalid event format: body is not valid JSON ({e})") from e

    if not isinstance(envelope, dict) or not isinstance(envelope.get("Message"), str) or not envelope["Message"]:
        raise EventValidationError(f"{INVALID_ENVELOPE}: Invalid event format: envelope has no Message field")
    return envelope["Message"]


def decode(raw_body: str, now: Optional[datetime] = None) -> BookStatusChangeEvent:
    """
    Decodes an SQS record body into a validated BookStatusChangeEvent.

    An event older than one hour is accepted but logged as stale.

    Args:
        raw_body: The SQS record body.
        now: The current time, for the staleness check; defaults to UTC now.

    Raises:
        EventValidationError: On any envelope or event validation failure.
    """
    message = extract_message(raw_body)
    try:
        payload = json.loads(message)
    except (ValueError, RecursionError) as e:
        raise EventValidationError(f"Invalid event format: Message is not valid JSON ({e})") from e

    outcome = validate_event(payload)
    if not outcome.is_valid:
        raise EventValidationError(f"Event validation failed: {', '.join(outcome.errors)}", outcome)

    event = BookStatusChangeEvent.from_dict(payload)
    age = (now or datetime.now(timezone.utc)) - parse_timestamp(event.timestamp)
    if age > STALE_EVENT_AGE:
        logger.warning(
            "Processing old event.",
            extra={
                "eventId": event.event_id,
                "eventTimestamp": event.timestamp,
                "ageMinutes": round(age.total_seconds() / 60),
            },
        )
    return event
