"""First-party event storage on DynamoDB."""
import asyncio
import logging
import uuid
from datetime import date, datetime, timezone
from typing import Any, Callable, Dict, List, Optional

import boto3
from boto3.dynamodb.conditions import Attr
from botocore.exceptions import BotoCoreError, ClientError

from processor.models import Event, EventDraft
from processor.normalizer import draft_to_row, normalize_row
from storage.change_stream import ChangeHandler, DynamoDBChangeStream, Subscription

logger = logging.getLogger(__name__)


class EventStoreError(Exception):
    """Raised when the events table cannot be queried or written."""


class EventStore:
    """Source adapter for the first-party events table.

    Public methods are coroutines; the blocking boto3 calls run in a
    worker thread so the event loop is never blocked.
    """

    def __init__(
        self,
        table_name: str,
        region_name: Optional[str] = None,
        poll_interval: float = 1.0,
        today: Callable[[], date] = date.today
    ):
        """
        Initialize DynamoDB resource and table reference.

        Args:
            table_name: Name of the events table (partition key ``id``)
            region_name: AWS region, defaults to the environment's region
            poll_interval: Seconds between change stream polls
            today: Returns the current date, used to hide past events
        """
        self.table_name = table_name
        self.region_name = region_name
        self.poll_interval = poll_interval
        self.today = today
        self.dynamodb = boto3.resource('dynamodb', region_name=region_name)
        self.table = self.dynamodb.Table(table_name)
        logger.info(f"Initialized EventStore for table: {table_name}")

    async def list_events(self) -> List[Event]:
        """Return today's and future events ordered by (date, time)."""
        return await asyncio.to_thread(self._scan_upcoming)

    async def insert(self, draft: EventDraft) -> Event:
        """
        Persist a new event.

        Args:
            draft: Event fields supplied by the host

        Returns:
            The stored Event with its assigned id and created_at
        """
        return await asyncio.to_thread(self._put_draft, draft)

    async def get_event(self, event_id: str) -> Optional[Event]:
        """Fetch a single event by id, or None if it does not exist."""
        return await asyncio.to_thread(self._get_item, event_id)

    async def subscribe(self, on_change: ChangeHandler) -> Subscription:
        """
        Open a live change feed for the events table.

        Args:
            on_change: Receives insert/update/delete notifications in
                commit order

        Returns:
            Subscription handle; close it to release the feed
        """
        stream = DynamoDBChangeStream(
            self.table_name,
            region_name=self.region_name,
            poll_interval=self.poll_interval
        )
        return await stream.subscribe(on_change)

    def _scan_upcoming(self) -> List[Event]:
        today = self.today().isoformat()
        logger.info(f"Scanning events table for events on or after {today}")

        try:
            response = self.table.scan(FilterExpression=Attr('date').gte(today))
            items = response.get('Items', [])

            # Handle pagination
            while 'LastEvaluatedKey' in response:
                response = self.table.scan(
                    FilterExpression=Attr('date').gte(today),
                    ExclusiveStartKey=response['LastEvaluatedKey']
                )
                items.extend(response.get('Items', []))
        except (ClientError, BotoCoreError) as e:
            logger.error(f"Error scanning events table: {e}")
            raise EventStoreError(f"Could not load events: {e}") from e

        events = [normalize_row(item) for item in items]
        events.sort(key=lambda event: (event.date, event.time))
        logger.info(f"Retrieved {len(events)} upcoming events")
        return events

    def _put_draft(self, draft: EventDraft) -> Event:
        item = draft_to_row(
            draft,
            event_id=str(uuid.uuid4()),
            created_at=datetime.now(timezone.utc).isoformat()
        )
        try:
            self.table.put_item(
                Item=item,
                ConditionExpression=Attr('id').not_exists()
            )
        except (ClientError, BotoCoreError) as e:
            logger.error(f"Error inserting event '{draft.title}': {e}")
            raise EventStoreError(f"Could not create event: {e}") from e

        logger.info(f"Inserted event {item['id']}")
        return normalize_row(item)

    def _get_item(self, event_id: str) -> Optional[Event]:
        try:
            response = self.table.get_item(Key={'id': event_id})
        except (ClientError, BotoCoreError) as e:
            logger.error(f"Error reading event {event_id}: {e}")
            raise EventStoreError(f"Could not load event {event_id}: {e}") from e

        item: Optional[Dict[str, Any]] = response.get('Item')
        return normalize_row(item) if item else None
