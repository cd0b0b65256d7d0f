"""
Publishes book status change events to SNS with bounded, classified retries.

The retry loop is synchronous. Each attempt is bounded by the SNS client's
read and connect timeouts, and the wait between attempts uses a
threading.Event so that a shutting-down caller can cancel it.
"""

import random
import threading
import time
import uuid
from datetime import datetime, timezone
from typing import Dict, Optional

from aws_lambda_powertools import Logger

from . import clients
from .codec import serialize_event
from .config import SERVICE_NAME, PublisherSettings
from .core import classify_error, compute_backoff_delay, is_retryable
from .errors import PublishCancelledError, PublishError
from .metrics import MetricsSink
from .model import (
    BookStatusChangeEvent,
    BookStatusChangeEventData,
    ErrorCategory,
    PublishResult,
    RetryConfig,
)

logger = Logger(service=SERVICE_NAME, child=True)


def create_event(data: BookStatusChangeEventData) -> BookStatusChangeEvent:
    """Creates a new event with a fresh UUID4 id and the current UTC time."""
    timestamp = datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")
    return BookStatusChangeEvent(event_id=str(uuid.uuid4()), timestamp=timestamp, data=data)


def message_attributes(event: BookStatusChangeEvent) -> Dict[str, str]:
    """SNS message attributes used by subscription filter policies."""
    return {
        "eventType": event.event_type,
        "bookId": event.data.book_id,
        "newStatus": event.data.new_status,
        "source": event.source,
        "timestamp": event.timestamp,
    }


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)


class EventPublisher:
    """
    Drives publish attempts until success, a non-retryable error or exhaustion.

    Args:
        topic: The pub/sub topic collaborator.
        metrics: Receives one success or failure metric per publish.
        retry: Attempt count and backoff settings.
        stop_event: Setting this event cancels a pending retry wait.
        rng: Random source for backoff jitter.
    """

    def __init__(
        self,
        topic: clients.Topic,
        metrics: MetricsSink,
        retry: Optional[RetryConfig] = None,
        stop_event: Optional[threading.Event] = None,
        rng: Optional[random.Random] = None,
    ):
        self.topic = topic
        self.metrics = metrics
        self.retry = retry or RetryConfig()
        self.stop_event = stop_event or threading.Event()
        self.rng = rng or random.Random()

    def publish_status_change(self, data: BookStatusChangeEventData) -> PublishResult:
        return self.publish(create_event(data))

    def publish(self, event: BookStatusChangeEvent) -> PublishResult:
        """
        Publishes one event.

        The event (and its id) is serialized once, so every attempt sends the
        identical message.

        Returns:
            A PublishResult with the topic's message id and the number of retries.

        Raises:
            EventValidationError: If the event is structurally invalid.
            PublishError: On a non-retryable error or after the last attempt.
            PublishCancelledError: If the stop event is set during a retry wait.
        """
        message = serialize_event(event)
        attributes = message_attributes(event)
        subject = f"Book Status Changed: {event.data.title}"
        context = {"eventId": event.event_id, "bookId": event.data.book_id, "statusTransition": event.status_transition}
        start = time.monotonic()
        last_error: Optional[BaseException] = None
        category = ErrorCategory.UNKNOWN
        attempt = 0

        for attempt in range(1, self.retry.max_attempts + 1):
            attempt_start = time.monotonic()
            try:
                message_id = self.topic.publish(message, attributes, subject)
            except Exception as e:
                last_error = e
                category = classify_error(e)
                retryable = is_retryable(category)
                attempt_ms = _elapsed_ms(attempt_start)
                logger.warning(
                    "SNS publish attempt failed.",
                    extra={
                        **context,
                        "attempt": attempt,
                        "attemptDurationMs": attempt_ms,
                        "errorType": category.value,
                        "error": str(e),
                        "isRetryable": retryable,
                        "willRetry": retryable and attempt < self.retry.max_attempts,
                    },
                )
                if category is ErrorCategory.TIMEOUT:
                    self.metrics.record_publish_timeout(event.event_type, attempt_ms, attempt - 1)
                if not retryable:
                    break
                if attempt < self.retry.max_attempts and self._wait_before_retry(event, attempt):
                    self.metrics.record_publish_failure(
                        event.event_type, category.value, _elapsed_ms(start), attempt - 1
                    )
                    reason = f"Publish of event {event.event_id} cancelled after {attempt} attempts"
                    logger.warning(reason, extra={**context, "errorType": category.value})
                    raise PublishCancelledError(reason, category, attempt, event.event_id) from last_error
                continue

            result = PublishResult(
                message_id=message_id,
                retry_count=attempt - 1,
                event_id=event.event_id,
                duration_ms=_elapsed_ms(start),
            )
            logger.info(
                "SNS publish succeeded.",
                extra={**context, "attempt": attempt, "messageId": message_id, "retryCount": result.retry_count},
            )
            self.metrics.record_publish_success(event.event_type, result.duration_ms, result.retry_count)
            return result

        self.metrics.record_publish_failure(event.event_type, category.value, _elapsed_ms(start), attempt - 1)
        if is_retryable(category):
            reason = f"Failed to publish event after {attempt} attempts: {last_error}"
        else:
            reason = f"Non-retryable {category.value} error publishing event: {last_error}"
        logger.error(reason, extra={**context, "errorType": category.value, "finalFailure": True})
        raise PublishError(reason, category, attempt, event.event_id) from last_error

    def _wait_before_retry(self, event: BookStatusChangeEvent, attempt: int) -> bool:
        """Sleeps for the backoff delay. Returns True if the stop event was set meanwhile."""
        delay = compute_backoff_delay(
            attempt,
            self.retry.base_delay,
            self.retry.max_delay,
            self.retry.multiplier,
            self.retry.jitter,
            self.rng,
        )
        logger.info(
            "Retrying SNS publish.",
            extra={"eventId": event.event_id, "nextAttempt": attempt + 1, "delaySeconds": round(delay, 3)},
        )
        return self.stop_event.wait(delay)


def create_publisher(
    settings: Optional[PublisherSettings] = None, metrics: Optional[MetricsSink] = None
) -> EventPublisher:
    """Builds a publisher for the configured topic from environment settings."""
    settings = settings or PublisherSettings.from_environment()
    sns = clients.get_sns_client(settings.retry, settings.region)
    logger.info(
        "SNS event publisher initialized.",
        extra={"topicArn": settings.topic_arn, "maxAttempts": settings.retry.max_attempts},
    )
    return EventPublisher(
        topic=clients.SNSTopic(sns, settings.topic_arn),
        metrics=metrics or MetricsSink(settings.metrics_namespace, settings.environment),
        retry=settings.retry,
    )
