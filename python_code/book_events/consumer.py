"""
Processes one SQS batch of book events with per-record failure isolation.

Every record is decoded and handed to the business processor on its own. A
failure in one record never affects another: the record's id is either added
to the partial batch failure list (so SQS redelivers it) or it is abandoned
and left to be deleted.
"""

import time
from typing import Optional, Sequence

from aws_lambda_powertools import Logger

from . import codec
from .config import SERVICE_NAME
from .core import DEFAULT_MAX_RETRIES, evaluate_retry
from .errors import EventValidationError
from .metrics import MetricsSink
from .model import (
    BatchResult,
    BookStatusChangeEvent,
    DeliveryRecord,
    RecordError,
    RecordOutcome,
    RecordStatus,
)
from .processor import EventProcessor, notification_type_for

logger = Logger(service=SERVICE_NAME, child=True)

UNKNOWN_NOTIFICATION_TYPE = "unknown"


def _notification_type_name(event: Optional[BookStatusChangeEvent]) -> str:
    if event is None:
        return UNKNOWN_NOTIFICATION_TYPE
    notification_type = notification_type_for(event.data.previous_status, event.data.new_status)
    return notification_type.value if notification_type else UNKNOWN_NOTIFICATION_TYPE


class BatchConsumer:
    """
    Args:
        processor: Business processing for one decoded event.
        metrics: Receives batch, dead-letter and queue metrics.
        max_retries: Receive count at which a failing record stops being retried.
    """

    def __init__(self, processor: EventProcessor, metrics: MetricsSink, max_retries: int = DEFAULT_MAX_RETRIES):
        self.processor = processor
        self.metrics = metrics
        self.max_retries = max_retries

    def process_batch(self, records: Sequence[DeliveryRecord]) -> BatchResult:
        """
        Processes every record of a batch.

        Returns:
            A BatchResult whose retry_identifiers hold exactly the records that
            failed for a retryable reason below the retry ceiling.
        """
        start = time.monotonic()
        result = BatchResult(total_records=len(records))
        logger.info("Processing SQS batch.", extra={"batchSize": len(records)})

        for record in records:
            self._process_record(record, result)

        duration_ms = int((time.monotonic() - start) * 1000)
        self.metrics.record_batch(
            len(records), result.succeeded, result.failed, len(result.retry_identifiers), duration_ms
        )
        logger.info(
            "SQS batch processed.",
            extra={
                "totalRecords": result.total_records,
                "successCount": result.succeeded,
                "failureCount": result.failed,
                "retryCount": len(result.retry_identifiers),
                "durationMs": duration_ms,
            },
        )
        return result

    def _process_record(self, record: DeliveryRecord, result: BatchResult) -> None:
        context = {"messageId": record.message_id, "receiveCount": record.receive_count}
        event: Optional[BookStatusChangeEvent] = None
        try:
            event = codec.decode(record.body)
            context.update(eventId=event.event_id, bookId=event.data.book_id)
            self.processor.process(event)
        except EventValidationError as e:
            # Undecodable records are never redelivered.
            self._record_failure(result, record, e, RecordStatus.ABANDONED)
            logger.error(
                "Record failed validation, not retrying.",
                extra={**context, "error": str(e), "rule": "validation_error"},
            )
            if record.receive_count >= self.max_retries:
                self.metrics.record_dlq_message(_notification_type_name(event), "validation_failure")
            return
        except Exception as e:
            decision = evaluate_retry(e, record.receive_count, self.max_retries)
            status = RecordStatus.RETRY if decision.retry else RecordStatus.ABANDONED
            self._record_failure(result, record, e, status)
            log_extra = {
                **context,
                "error": str(e),
                "errorType": type(e).__name__,
                "rule": decision.rule,
                "reason": decision.reason,
                "willRetry": decision.retry,
            }
            if decision.retry:
                result.retry_identifiers.append(record.message_id)
                logger.warning("Record failed, requesting redelivery.", extra=log_extra)
            else:
                logger.error("Record failed, not retrying.", extra=log_extra)
                self.metrics.record_dlq_message(_notification_type_name(event), decision.rule)
            return

        result.succeeded += 1
        result.outcomes.append(RecordOutcome(record.message_id, RecordStatus.SUCCEEDED))
        logger.info("Record processed.", extra=context)

    @staticmethod
    def _record_failure(
        result: BatchResult, record: DeliveryRecord, error: BaseException, status: RecordStatus
    ) -> None:
        result.failed += 1
        result.errors.append(RecordError(record.message_id, str(error)))
        result.outcomes.append(RecordOutcome(record.message_id, status, str(error)))
