"""
AWS Lambda handler for the book notification consumer.

This module is the entry point and wiring layer for the function. Its
responsibilities include:
  - Loading and validating configuration from environment variables.
  - Building and caching the consumer and its AWS clients across invocations.
  - Emitting the queue depth metric when a queue URL is configured.
  - Converting the SQS trigger event into delivery records and returning the
    partial batch failure response, so only retryable records are redelivered.
"""

from typing import Any, Dict, List, Optional

from aws_lambda_powertools import Logger
from aws_lambda_powertools.utilities.batch.types import PartialItemFailureResponse
from aws_lambda_powertools.utilities.typing import LambdaContext

from . import clients
from .config import SERVICE_NAME, ConsumerSettings
from .consumer import BatchConsumer
from .delivery import MultiRecipientSender
from .metrics import MetricsSink
from .model import DeliveryRecord, SQSEventRecord
from .processor import NotificationProcessor

logger = Logger(service=SERVICE_NAME)

SETTINGS: Optional[ConsumerSettings] = None
CONSUMER: Optional[BatchConsumer] = None


def get_consumer(force_refresh: bool = False) -> BatchConsumer:
    """
    Returns the cached BatchConsumer, building it on first use.

    Args:
        force_refresh: If True, reloads settings and rebuilds all clients.

    Raises:
        ValueError: If a required environment variable is not set.
    """
    global SETTINGS, CONSUMER
    if CONSUMER is not None and not force_refresh:
        return CONSUMER

    settings = ConsumerSettings.from_environment()
    logger.setLevel(settings.log_level)
    metrics = MetricsSink(settings.metrics_namespace, settings.environment)
    transport = clients.SESEmailTransport(clients.get_ses_client(settings.ses_region), settings.from_email)
    processor = NotificationProcessor(
        sender=MultiRecipientSender(transport),
        metrics=metrics,
        target_email=settings.target_email,
        cc=settings.cc,
    )
    logger.info(
        "Notification consumer initialized.",
        extra={
            "environment": settings.environment,
            "maxRetries": settings.max_retries,
            "ccEnabled": settings.cc.enabled,
            "ccEmailCount": len(settings.cc.emails),
        },
    )
    SETTINGS = settings
    CONSUMER = BatchConsumer(processor, metrics, settings.max_retries)
    return CONSUMER


def _emit_queue_depth(consumer: BatchConsumer) -> None:
    if SETTINGS is None or not SETTINGS.queue_url:
        return
    try:
        depth = clients.get_queue_depth(clients.get_sqs_client(SETTINGS.ses_region), SETTINGS.queue_url)
        consumer.metrics.record_queue_depth(depth)
    except Exception as e:
        logger.warning("Could not get queue attributes.", extra={"error": str(e)})


def _to_delivery_records(raw_records: List[SQSEventRecord]) -> List[DeliveryRecord]:
    """Converts trigger records, dropping any that lack the fields a DeliveryRecord needs."""
    records = []
    for raw in raw_records:
        try:
            records.append(DeliveryRecord.from_sqs_record(raw))
        except (KeyError, TypeError, ValueError) as e:
            logger.error(
                "Malformed SQS record, not retrying.",
                extra={"messageId": raw.get("messageId") if isinstance(raw, dict) else None, "error": repr(e)},
            )
    return records


@logger.inject_lambda_context
def handler(event: Dict[str, Any], context: LambdaContext) -> PartialItemFailureResponse:
    """
    Main Lambda entry point for an SQS batch of book events.

    Record-level failures never raise: they are reported in the returned
    `batchItemFailures` list (retryable) or dropped (permanent). Only a
    configuration error escapes, which fails the whole invocation.
    """
    consumer = get_consumer()
    records = _to_delivery_records(event.get("Records", []))
    if not records:
        logger.info("No messages to process.")
        return {"batchItemFailures": []}

    _emit_queue_depth(consumer)
    result = consumer.process_batch(records)
    return result.to_partial_failure_response()
