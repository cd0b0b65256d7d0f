"""
Fire-and-forget metrics for the publisher and the consumer.

Metrics are written as CloudWatch Embedded Metric Format records through the
Powertools `single_metric` helper, so each record is flushed to stdout as soon
as it is emitted and no handler decorator is needed. A failure to emit a
metric is logged and swallowed; it must never fail a publish or a batch.
"""

from typing import Dict, Optional

from aws_lambda_powertools import Logger
from aws_lambda_powertools.metrics import MetricUnit, single_metric

from .config import SERVICE_NAME

logger = Logger(service=SERVICE_NAME, child=True)


class MetricsSink:
    """Named metric events with an Environment dimension on every record."""

    def __init__(self, namespace: str, environment: str = "dev"):
        self.namespace = namespace
        self.environment = environment

    def emit(
        self,
        name: str,
        value: float,
        unit: MetricUnit = MetricUnit.Count,
        dimensions: Optional[Dict[str, str]] = None,
    ) -> None:
        try:
            self._put(name, value, unit, dimensions or {})
        except Exception as e:
            logger.warning("Failed to emit metric.", extra={"metric": name, "error": str(e)})

    def _put(self, name: str, value: float, unit: MetricUnit, dimensions: Dict[str, str]) -> None:
        with single_metric(
            name=name,
            unit=unit,
            value=value,
            namespace=self.namespace,
            default_dimensions={"Environment": self.environment},
        ) as metric:
            for key, dim_value in dimensions.items():
                metric.add_dimension(name=key, value=str(dim_value))

    # --- Publisher ---

    def record_publish_success(self, event_type: str, duration_ms: int, retry_count: int) -> None:
        dims = {"EventType": event_type, "Status": "Success"}
        self.emit("SNSPublishSuccess", 1, MetricUnit.Count, dims)
        self.emit("SNSPublishDuration", duration_ms, MetricUnit.Milliseconds, dims)
        self.emit("SNSPublishRetryCount", retry_count, MetricUnit.Count, dims)

    def record_publish_failure(
        self, event_type: str, error_type: str, duration_ms: int, retry_count: int
    ) -> None:
        self.emit(
            "SNSPublishFailure",
            1,
            MetricUnit.Count,
            {"EventType": event_type, "Status": "Failed", "ErrorType": error_type},
        )
        dims = {"EventType": event_type, "Status": "Failed"}
        self.emit("SNSPublishDuration", duration_ms, MetricUnit.Milliseconds, dims)
        self.emit("SNSPublishRetryCount", retry_count, MetricUnit.Count, dims)

    def record_publish_timeout(self, event_type: str, duration_ms: int, retry_count: int) -> None:
        self.emit("SNSPublishTimeout", 1, MetricUnit.Count, {"EventType": event_type})
        dims = {"EventType": event_type, "Status": "Timeout"}
        self.emit("SNSPublishDuration", duration_ms, MetricUnit.Milliseconds, dims)
        self.emit("SNSPublishRetryCount", retry_count, MetricUnit.Count, dims)

    # --- Consumer ---

    def record_batch(
        self, batch_size: int, succeeded: int, failed: int, retried: int, duration_ms: int
    ) -> None:
        self.emit("SQSBatchSize", batch_size)
        self.emit("SQSBatchSuccessCount", succeeded)
        self.emit("SQSBatchFailureCount", failed)
        self.emit("SQSBatchRetryCount", retried)
        self.emit("SQSBatchProcessingTime", duration_ms, MetricUnit.Milliseconds)
        if batch_size:
            self.emit("SQSBatchSuccessRate", succeeded / batch_size * 100, MetricUnit.Percent)

    def record_dlq_message(self, notification_type: str, reason: str) -> None:
        self.emit(
            "DLQMessage",
            1,
            MetricUnit.Count,
            {"NotificationType": notification_type, "Reason": reason},
        )

    def record_notification_success(self, notification_type: str, duration_ms: int) -> None:
        dims = {"NotificationType": notification_type, "Status": "Success"}
        self.emit("NotificationProcessed", 1, MetricUnit.Count, dims)
        self.emit("NotificationProcessingTime", duration_ms, MetricUnit.Milliseconds, dims)

    def record_notification_failure(self, notification_type: str, error_type: str) -> None:
        self.emit(
            "NotificationError",
            1,
            MetricUnit.Count,
            {"NotificationType": notification_type, "ErrorType": error_type},
        )

    def record_cc_delivery(self, notification_type: str, total: int, delivered: int, failed: int) -> None:
        dims = {"NotificationType": notification_type}
        self.emit("CCEmailsTotal", total, MetricUnit.Count, dims)
        self.emit("CCEmailsDelivered", delivered, MetricUnit.Count, dims)
        self.emit("CCEmailsFailed", failed, MetricUnit.Count, dims)

    def record_queue_depth(self, depth: int) -> None:
        self.emit("QueueDepth", depth)
