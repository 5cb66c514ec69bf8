"""
Base consumer framework for the subscription detection Lambdas.
Parses EventBridge and SQS-wrapped records, dispatches them to a subclass and
accounts for failures per record.
"""
import json
import logging
import traceback
from abc import ABC, abstractmethod
from collections import OrderedDict
from datetime import datetime
from typing import Dict, Any, List, Optional

from models.events import BaseEvent

logger = logging.getLogger(__name__)

# Processed event ids remembered per warm container
PROCESSED_EVENT_CACHE_SIZE = 1000


class EventProcessingError(Exception):
    """A record could not be processed. Permanent failures are not worth retrying."""
    def __init__(self, message: str, event_id: Optional[str] = None, permanent: bool = False):
        super().__init__(message)
        self.event_id = event_id
        self.permanent = permanent


class BaseEventConsumer(ABC):
    """
    Base class for event consumers.

    Subclasses decide which events they handle (``should_process_event``) and
    how (``process_event``). A record that fails is counted and reported; the
    remaining records of the batch are still processed.
    """

    def __init__(self, consumer_name: str):
        self.consumer_name = consumer_name
        self._processed_events: "OrderedDict[str, None]" = OrderedDict()
        self._lambda_context: Optional[Any] = None
        logger.info(f"Initializing {consumer_name} consumer")

    def handle_eventbridge_event(self, event: Dict[str, Any], context: Any) -> Dict[str, Any]:
        """
        Lambda entry point for EventBridge and SQS deliveries.

        Returns:
            dict: Processing statistics of the batch
        """
        self._lambda_context = context
        start_time = datetime.now()
        stats = {
            'consumer': self.consumer_name,
            'processed_count': 0,
            'failed_count': 0,
            'skipped_count': 0,
            'errors': []
        }

        records = self._extract_records(event)
        if not records:
            logger.warning("No records found in event payload")
            return self._create_response(stats, start_time)

        logger.info(f"{self.consumer_name} processing {len(records)} records")
        for record in records:
            parsed_event: Optional[BaseEvent] = None
            try:
                parsed_event = self._parse_event_record(record)

                if not self.should_process_event(parsed_event):
                    logger.debug(f"Skipping event {parsed_event.event_id} of type {parsed_event.event_type}")
                    stats['skipped_count'] += 1
                    continue

                if self._is_duplicate_event(parsed_event):
                    logger.info(f"Skipping duplicate event {parsed_event.event_id}")
                    stats['skipped_count'] += 1
                    continue

                self.process_event(parsed_event)
                self._mark_event_processed(parsed_event)
                stats['processed_count'] += 1

            except EventProcessingError as e:
                logger.error(f"EventProcessingError: {str(e)}")
                stats['failed_count'] += 1
                stats['errors'].append({
                    'event_id': e.event_id or (parsed_event.event_id if parsed_event else 'unknown'),
                    'error': str(e),
                    'permanent': e.permanent
                })

            except Exception as e:
                logger.error(f"Unexpected error processing record: {str(e)}")
                logger.error(traceback.format_exc())
                stats['failed_count'] += 1
                stats['errors'].append({
                    'event_id': parsed_event.event_id if parsed_event else 'unknown',
                    'error': str(e),
                    'permanent': self.is_permanent_failure(e)
                })

        total_events = stats['processed_count'] + stats['failed_count'] + stats['skipped_count']
        logger.info(
            f"{self.consumer_name} processing complete: "
            f"{stats['processed_count']}/{total_events} processed, "
            f"{stats['failed_count']} failed, "
            f"{stats['skipped_count']} skipped"
        )

        # Transient failures are surfaced so the delivery is retried
        status_code = 200
        if any(not error['permanent'] for error in stats['errors']):
            status_code = 500
        return self._create_response(stats, start_time, status_code=status_code)

    def _extract_records(self, event: Any) -> List[Dict[str, Any]]:
        """Extract records from the supported event envelopes"""
        if isinstance(event, list):
            return event
        if not event:
            return []
        if 'source' in event and 'detail-type' in event:
            return [event]
        if 'Records' in event:
            return event['Records']
        return [event]

    def _parse_event_record(self, record: Dict[str, Any]) -> BaseEvent:
        """Parse an EventBridge record, possibly wrapped in an SQS body, into a BaseEvent"""
        try:
            if 'detail' in record and 'source' in record:
                detail = record['detail']
                if isinstance(detail, str):
                    detail = json.loads(detail)
                return self._event_from_detail(detail, record.get('detail-type', ''), record.get('source', ''))

            if 'body' in record:
                body = json.loads(record['body'])
                if 'detail' in body and 'source' in body:
                    return self._parse_event_record(body)
                return self._event_from_detail(body, body.get('eventType', ''), body.get('source', ''))

        except json.JSONDecodeError as e:
            raise EventProcessingError(f"Failed to parse JSON in event record: {str(e)}", permanent=True)

        raise EventProcessingError(f"Unknown event record format: {list(record.keys())}", permanent=True)

    @staticmethod
    def _event_from_detail(detail: Dict[str, Any], event_type: str, source: str) -> BaseEvent:
        return BaseEvent(
            event_id=detail.get('eventId', ''),
            event_type=event_type or detail.get('eventType', ''),
            event_version=detail.get('eventVersion', '1.0'),
            timestamp=detail.get('timestamp', 0),
            source=source,
            user_id=detail.get('userId', ''),
            correlation_id=detail.get('correlationId'),
            causation_id=detail.get('causationId'),
            data=detail.get('data') or {},
            metadata=detail.get('metadata') or {}
        )

    def _is_duplicate_event(self, event: BaseEvent) -> bool:
        return bool(event.event_id) and event.event_id in self._processed_events

    def _mark_event_processed(self, event: BaseEvent) -> None:
        if not event.event_id:
            return
        self._processed_events[event.event_id] = None
        while len(self._processed_events) > PROCESSED_EVENT_CACHE_SIZE:
            self._processed_events.popitem(last=False)

    def _create_response(self, stats: Dict[str, Any], start_time: datetime, status_code: int = 200) -> Dict[str, Any]:
        processing_time_ms = (datetime.now() - start_time).total_seconds() * 1000
        response = {
            'statusCode': status_code,
            'processingTimeMs': round(processing_time_ms, 2),
            'timestamp': int(datetime.now().timestamp() * 1000),
            **stats
        }
        if self._lambda_context is not None:
            response['requestId'] = getattr(self._lambda_context, 'aws_request_id', None)
        return response

    # =============================================================================
    # ABSTRACT METHODS - Must be implemented by subclasses
    # =============================================================================

    @abstractmethod
    def should_process_event(self, event: BaseEvent) -> bool:
        """Whether this consumer handles ``event``."""
        pass

    @abstractmethod
    def process_event(self, event: BaseEvent) -> None:
        """
        Process one event.

        Raises:
            EventProcessingError: For application-specific errors
        """
        pass

    def is_permanent_failure(self, error: Exception) -> bool:
        """Bad input is permanent; anything else may succeed on retry."""
        return isinstance(error, (ValueError, TypeError, KeyError, AttributeError))
