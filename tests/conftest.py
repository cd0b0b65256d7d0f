import json
import threading
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

import pytest

from book_events.codec import encode_envelope
from book_events.metrics import MetricsSink
from book_events.model import (
    BookStatusChangeEvent,
    BookStatusChangeEventData,
    DeliveryRecord,
    EmailMessage,
)

EVENT_ID = "3f2b8c1e-9a4d-4e5f-8b6a-1c2d3e4f5a6b"
TIMESTAMP = "2026-10-18T09:30:00.000Z"


class RecordingMetrics(MetricsSink):
    """Captures metrics instead of writing EMF records to stdout."""

    def __init__(self):
        super().__init__(namespace="Test", environment="test")
        self.records: List[Tuple[str, float, Dict[str, str]]] = []

    def _put(self, name, value, unit, dimensions):
        self.records.append((name, value, dict(dimensions)))

    def names(self) -> List[str]:
        return [name for name, _, _ in self.records]

    def values(self, name: str) -> List[float]:
        return [value for n, value, _ in self.records if n == name]

    def dimensions(self, name: str) -> List[Dict[str, str]]:
        return [dims for n, _, dims in self.records if n == name]


class FakeTopic:
    """Raises the queued errors in order, then returns message ids."""

    def __init__(self, errors: Optional[List[BaseException]] = None):
        self.errors = list(errors or [])
        self.calls: List[Tuple[str, Dict[str, str], Optional[str]]] = []

    def publish(self, message, attributes, subject=None):
        self.calls.append((message, dict(attributes), subject))
        if self.errors:
            raise self.errors.pop(0)
        return f"msg-{len(self.calls)}"

    def event_ids(self) -> List[str]:
        return [json.loads(message)["eventId"] for message, _, _ in self.calls]


class FakeTransport:
    def __init__(self, error: Optional[BaseException] = None):
        self.error = error
        self.sent: List[Tuple[str, List[str], EmailMessage]] = []

    def send(self, to, cc, message):
        self.sent.append((to, list(cc), message))
        if self.error is not None:
            raise self.error
        return f"ses-{len(self.sent)}"


class RecordingStopEvent(threading.Event):
    """A stop event whose waits return immediately and are recorded."""

    def __init__(self, cancel_after: Optional[int] = None):
        super().__init__()
        self.waits: List[float] = []
        self.cancel_after = cancel_after

    def wait(self, timeout=None):
        self.waits.append(timeout)
        return self.cancel_after is not None and len(self.waits) >= self.cancel_after


@dataclass
class FakeLambdaContext:
    function_name: str = "book-notifications-test"
    memory_limit_in_mb: int = 128
    invoked_function_arn: str = "arn:aws:lambda:us-east-1:123456789012:function:book-notifications-test"
    aws_request_id: str = "req-123"


def make_data(**overrides) -> BookStatusChangeEventData:
    values = dict(
        book_id="book-42",
        title="The Long Draft",
        author="A. Writer",
        previous_status="DRAFT",
        new_status="SUBMITTED_FOR_EDITING",
        changed_by="user-7",
    )
    values.update(overrides)
    return BookStatusChangeEventData(**values)


def make_event(event_id: str = EVENT_ID, timestamp: str = TIMESTAMP, **data_overrides) -> BookStatusChangeEvent:
    return BookStatusChangeEvent(event_id=event_id, timestamp=timestamp, data=make_data(**data_overrides))


def make_record(
    message_id: str = "m1",
    event: Optional[BookStatusChangeEvent] = None,
    receive_count: int = 1,
    body: Optional[str] = None,
) -> DeliveryRecord:
    if body is None:
        body = encode_envelope(event or make_event(), topic_arn="arn:aws:sns:us-east-1:123456789012:book-events")
    return DeliveryRecord(
        message_id=message_id,
        receipt_handle=f"rh-{message_id}",
        body=body,
        receive_count=receive_count,
    )


def sqs_record(message_id: str, body: str, receive_count: int = 1) -> Dict:
    return {
        "messageId": message_id,
        "receiptHandle": f"rh-{message_id}",
        "body": body,
        "attributes": {"ApproximateReceiveCount": str(receive_count)},
        "eventSourceARN": "arn:aws:sqs:us-east-1:123456789012:book-notifications",
    }


@pytest.fixture
def metrics() -> RecordingMetrics:
    return RecordingMetrics()


@pytest.fixture
def event() -> BookStatusChangeEvent:
    return make_event()


@pytest.fixture
def aws_credentials(monkeypatch):
    """Mocked AWS credentials so that moto never touches a real account."""
    monkeypatch.setenv("AWS_ACCESS_KEY_ID", "testing")
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "testing")
    monkeypatch.setenv("AWS_SECURITY_TOKEN", "testing")
    monkeypatch.setenv("AWS_SESSION_TOKEN", "testing")
    monkeypatch.setenv("AWS_DEFAULT_REGION", "us-east-1")
    monkeypatch.setenv("AWS_REGION", "us-east-1")
