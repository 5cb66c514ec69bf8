"""
Event Data Access Object for EventBridge operations.
"""
import logging
import os
import boto3
from typing import List, Dict, Any
from botocore.exceptions import ClientError, BotoCoreError

logger = logging.getLogger(__name__)

EVENTBRIDGE_BATCH_LIMIT = 10


def get_eventbridge_client():
    """Get EventBridge client with region configuration"""
    return boto3.client('events', region_name=os.environ.get('AWS_REGION', 'eu-west-2'))


def get_event_bus_name() -> str:
    """Get the event bus name from environment variables"""
    return (
        os.environ.get('EVENT_BUS_NAME') or
        f"subtrack-{os.environ.get('ENVIRONMENT', 'dev')}-events"
    )


def publish_events_batch_to_eventbridge(event_entries: List[Dict[str, Any]]) -> int:
    """
    Publish up to 10 events to EventBridge in a single call.

    Args:
        event_entries: List of EventBridge-formatted event entries

    Returns:
        int: Number of events successfully published
    """
    if not event_entries:
        return 0

    if len(event_entries) > EVENTBRIDGE_BATCH_LIMIT:
        raise ValueError(f"EventBridge batch size cannot exceed {EVENTBRIDGE_BATCH_LIMIT} events")

    try:
        client = get_eventbridge_client()
        event_bus_name = get_event_bus_name()

        entries_with_bus = [
            {**entry, 'EventBusName': event_bus_name}
            for entry in event_entries
        ]

        logger.debug(f"Publishing batch of {len(entries_with_bus)} events to {event_bus_name}")

        response = client.put_events(Entries=entries_with_bus)

        failed_count = response.get('FailedEntryCount', 0)
        success_count = len(entries_with_bus) - failed_count

        if failed_count > 0:
            logger.warning(f"Batch publish: {success_count}/{len(entries_with_bus)} events published successfully")
            for idx, entry_result in enumerate(response.get('Entries', [])):
                if entry_result.get('ErrorCode'):
                    logger.error(
                        f"Failed to publish event {idx}: "
                        f"{entry_result.get('ErrorCode')} - {entry_result.get('ErrorMessage')}"
                    )
        else:
            logger.debug(f"Batch publish: All {len(entries_with_bus)} events published successfully")

        return success_count

    except ClientError as e:
        error_code = e.response.get('Error', {}).get('Code', 'UnknownError')
        error_message = e.response.get('Error', {}).get('Message', 'Unknown error message')
        logger.error(f"AWS ClientError in batch publish: {error_code} - {error_message}")
        return 0

    except BotoCoreError as e:
        logger.error(f"BotoCoreError in batch publish: {str(e)}")
        return 0
