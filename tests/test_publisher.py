import json
import random
import re

import pytest
from botocore.exceptions import ReadTimeoutError

from book_events import publisher as publisher_module
from book_events.config import PublisherSettings
from book_events.errors import EventValidationError, PublishCancelledError, PublishError
from book_events.model import ErrorCategory, RetryConfig

from .conftest import EVENT_ID, FakeTopic, RecordingStopEvent, make_data, make_event
from .test_core import client_error

RETRY = RetryConfig(max_attempts=3, base_delay=1.0, max_delay=10.0, jitter=False)


def make_publisher(topic, metrics, retry=RETRY, stop_event=None):
    return publisher_module.EventPublisher(
        topic=topic,
        metrics=metrics,
        retry=retry,
        stop_event=stop_event or RecordingStopEvent(),
        rng=random.Random(1),
    )


class TestPublish:
    def test_first_attempt_succeeds(self, metrics, event):
        topic = FakeTopic()
        result = make_publisher(topic, metrics).publish(event)

        assert result.message_id == "msg-1"
        assert result.retry_count == 0
        assert result.event_id == EVENT_ID
        assert metrics.names().count("SNSPublishSuccess") == 1
        assert "SNSPublishFailure" not in metrics.names()

    def test_throttled_then_succeeds(self, metrics, event):
        topic = FakeTopic([client_error("Throttling"), client_error("Throttling")])
        stop = RecordingStopEvent()
        result = make_publisher(topic, metrics, stop_event=stop).publish(event)

        assert result.retry_count == 2
        assert result.message_id == "msg-3"
        assert stop.waits == [1.0, 2.0]
        # Every attempt carries the same serialized event.
        assert topic.event_ids() == [EVENT_ID] * 3
        assert len({message for message, _, _ in topic.calls}) == 1

    def test_non_retryable_stops_immediately(self, metrics, event):
        topic = FakeTopic([client_error("InvalidParameter", "Invalid parameter: TopicArn")])
        stop = RecordingStopEvent()

        with pytest.raises(PublishError) as excinfo:
            make_publisher(topic, metrics, stop_event=stop).publish(event)

        assert len(topic.calls) == 1
        assert stop.waits == []
        assert excinfo.value.category is ErrorCategory.INVALID_PARAMETER
        assert excinfo.value.attempts == 1
        assert str(excinfo.value).startswith("Non-retryable INVALID_PARAMETER error publishing event: ")
        assert metrics.dimensions("SNSPublishFailure") == [
            {"EventType": "book_status_changed", "Status": "Failed", "ErrorType": "INVALID_PARAMETER"}
        ]

    def test_exhaustion(self, metrics, event):
        errors = [client_error("ServiceUnavailable") for _ in range(3)]
        topic = FakeTopic(errors)

        with pytest.raises(PublishError) as excinfo:
            make_publisher(topic, metrics).publish(event)

        assert len(topic.calls) == 3
        assert excinfo.value.attempts == 3
        assert excinfo.value.event_id == EVENT_ID
        assert excinfo.value.__cause__ is errors[-1]
        assert str(excinfo.value).startswith("Failed to publish event after 3 attempts: ")

    def test_timeout_records_timeout_metric(self, metrics, event):
        topic = FakeTopic([ReadTimeoutError(endpoint_url="https://sns.us-east-1.amazonaws.com")])
        make_publisher(topic, metrics).publish(event)

        assert metrics.names().count("SNSPublishTimeout") == 1
        assert "SNSPublishSuccess" in metrics.names()

    def test_cancelled_during_wait(self, metrics, event):
        topic = FakeTopic([client_error("Throttling"), client_error("Throttling")])
        stop = RecordingStopEvent(cancel_after=1)

        with pytest.raises(PublishCancelledError) as excinfo:
            make_publisher(topic, metrics, stop_event=stop).publish(event)

        assert len(topic.calls) == 1
        assert excinfo.value.attempts == 1
        assert excinfo.value.__cause__ is not None
        assert "Throttling" in str(excinfo.value.__cause__)
        assert metrics.dimensions("SNSPublishFailure") == [
            {"EventType": "book_status_changed", "Status": "Failed", "ErrorType": "THROTTLING"}
        ]
        assert "SNSPublishSuccess" not in metrics.names()

    def test_single_attempt_configuration(self, metrics, event):
        topic = FakeTopic([client_error("Throttling")])
        retry = RetryConfig(max_attempts=1, jitter=False)

        with pytest.raises(PublishError, match="after 1 attempts"):
            make_publisher(topic, metrics, retry=retry).publish(event)

    def test_zero_attempts_is_rejected(self, metrics):
        with pytest.raises(ValueError, match="max_attempts must be at least 1"):
            make_publisher(FakeTopic(), metrics, retry=RetryConfig(max_attempts=0))

    def test_invalid_event_is_never_sent(self, metrics):
        topic = FakeTopic()
        with pytest.raises(EventValidationError):
            make_publisher(topic, metrics).publish(make_event(author=" "))
        assert topic.calls == []

    def test_attributes_and_subject(self, metrics, event):
        topic = FakeTopic()
        make_publisher(topic, metrics).publish(event)

        message, attributes, subject = topic.calls[0]
        assert attributes == {
            "eventType": "book_status_changed",
            "bookId": "book-42",
            "newStatus": "SUBMITTED_FOR_EDITING",
            "source": "workflow-service",
            "timestamp": event.timestamp,
        }
        assert subject == "Book Status Changed: The Long Draft"
        assert json.loads(message) == event.to_dict()


class TestCreateEvent:
    def test_fresh_identity(self):
        data = make_data()
        first = publisher_module.create_event(data)
        second = publisher_module.create_event(data)

        assert first.event_id != second.event_id
        assert re.match(r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}\.\d{3}Z$", first.timestamp)
        assert first.source == "workflow-service"
        assert first.version == "1.0"

    def test_publish_status_change(self, metrics):
        topic = FakeTopic()
        result = make_publisher(topic, metrics).publish_status_change(make_data())
        assert topic.event_ids() == [result.event_id]


class TestCreatePublisher:
    def test_builds_from_settings(self, metrics, aws_credentials):
        settings = PublisherSettings(
            topic_arn="arn:aws:sns:us-east-1:123456789012:book-events",
            region="us-east-1",
            retry=RetryConfig(max_attempts=5),
        )
        publisher = publisher_module.create_publisher(settings, metrics)

        assert publisher.topic.topic_arn == settings.topic_arn
        assert publisher.retry.max_attempts == 5
        assert publisher.metrics is metrics
