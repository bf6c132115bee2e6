"""Live change notifications for the events table via DynamoDB Streams."""
import asyncio
import contextlib
import logging
from typing import Any, Callable, Dict, List, Optional, Set

import boto3
from boto3.dynamodb.types import TypeDeserializer
from botocore.exceptions import BotoCoreError, ClientError

from processor.models import ChangeNotification, ChangeType
from processor.normalizer import normalize_row

logger = logging.getLogger(__name__)

ChangeHandler = Callable[[ChangeNotification], None]

STREAM_EVENT_TYPES = {
    'INSERT': ChangeType.INSERT,
    'MODIFY': ChangeType.UPDATE,
    'REMOVE': ChangeType.DELETE,
}

_deserializer = TypeDeserializer()


class ChangeStreamError(Exception):
    """Raised when the table stream cannot be located or read."""


def record_to_notification(record: Dict[str, Any]) -> Optional[ChangeNotification]:
    """
    Convert a DynamoDB stream record into a change notification.

    Args:
        record: Stream record as returned by ``get_records``

    Returns:
        ChangeNotification, or None if the record cannot be interpreted
    """
    change_type = STREAM_EVENT_TYPES.get(record.get('eventName'))
    if change_type is None:
        return None

    data = record.get('dynamodb', {})
    image_key = 'OldImage' if change_type is ChangeType.DELETE else 'NewImage'
    image = _deserialize(data.get(image_key))
    keys = _deserialize(data.get('Keys'))
    event_id = image.get('id') or keys.get('id')
    if not event_id:
        logger.warning(f"Stream record {record.get('eventID')!r} has no event id")
        return None

    if change_type is ChangeType.DELETE:
        return ChangeNotification(type=change_type, event_id=event_id)

    try:
        event = normalize_row(image)
    except (KeyError, TypeError, ValueError) as e:
        logger.warning(f"Skipping unreadable stream image for event {event_id}: {e}")
        return None
    return ChangeNotification(type=change_type, event_id=event_id, event=event)


def _deserialize(image: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    if not image:
        return {}
    return {key: _deserializer.deserialize(value) for key, value in image.items()}


class Subscription:
    """Handle for a running change feed; close() releases it."""

    def __init__(self, task: asyncio.Task):
        self._task = task

    @property
    def active(self) -> bool:
        return not self._task.done()

    async def close(self) -> None:
        if self._task.done():
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task


class DynamoDBChangeStream:
    """Polls every shard of a table's stream and forwards records in shard order."""

    def __init__(
        self,
        table_name: str,
        region_name: Optional[str] = None,
        poll_interval: float = 1.0,
        client=None,
        streams_client=None
    ):
        self.table_name = table_name
        self.poll_interval = poll_interval
        self.client = client or boto3.client('dynamodb', region_name=region_name)
        self.streams = streams_client or boto3.client('dynamodbstreams', region_name=region_name)
        self._iterators: Dict[str, str] = {}
        self._finished: Set[str] = set()

    async def subscribe(self, on_change: ChangeHandler) -> Subscription:
        """
        Start delivering changes made from now on.

        Args:
            on_change: Called on the event loop for each notification

        Returns:
            Subscription that must be closed to stop polling
        """
        stream_arn = await asyncio.to_thread(self._stream_arn)
        await asyncio.to_thread(self._open_latest, stream_arn)
        task = asyncio.create_task(self._poll(stream_arn, on_change))
        logger.info(f"Subscribed to change stream of table: {self.table_name}")
        return Subscription(task)

    async def _poll(self, stream_arn: str, on_change: ChangeHandler) -> None:
        while True:
            try:
                records = await asyncio.to_thread(self.read_records, stream_arn)
            except ChangeStreamError as e:
                logger.warning(f"Change stream read failed, reopening shards: {e}")
                records = []
                await self._reopen(stream_arn)

            for record in records:
                notification = record_to_notification(record)
                if notification is None:
                    continue
                try:
                    on_change(notification)
                except Exception:
                    logger.exception(
                        f"Change handler failed for {notification.type.value} "
                        f"of event {notification.event_id}"
                    )

            await asyncio.sleep(self.poll_interval)

    async def _reopen(self, stream_arn: str) -> None:
        # Iterators expire after 15 minutes; restart from the latest position.
        # Shard state is only replaced once every shard has been reopened.
        try:
            await asyncio.to_thread(self._open_latest, stream_arn)
        except ChangeStreamError as e:
            logger.warning(f"Could not reopen change stream: {e}")

    def _stream_arn(self) -> str:
        try:
            table = self.client.describe_table(TableName=self.table_name)['Table']
        except (ClientError, BotoCoreError) as e:
            raise ChangeStreamError(f"Error describing table {self.table_name}: {e}") from e
        stream_arn = table.get('LatestStreamArn')
        if not stream_arn:
            raise ChangeStreamError(f"Table {self.table_name} has no stream enabled")
        return stream_arn

    def _list_shards(self, stream_arn: str) -> List[Dict[str, Any]]:
        shards = []
        kwargs = {'StreamArn': stream_arn}
        while True:
            description = self.streams.describe_stream(**kwargs)['StreamDescription']
            shards.extend(description.get('Shards', []))
            last_shard = description.get('LastEvaluatedShardId')
            if not last_shard:
                return shards
            kwargs['ExclusiveStartShardId'] = last_shard

    def _open_latest(self, stream_arn: str) -> None:
        iterators: Dict[str, str] = {}
        finished: Set[str] = set()
        try:
            for shard in self._list_shards(stream_arn):
                shard_id = shard['ShardId']
                if 'EndingSequenceNumber' in shard.get('SequenceNumberRange', {}):
                    finished.add(shard_id)
                    continue
                iterators[shard_id] = self.streams.get_shard_iterator(
                    StreamArn=stream_arn,
                    ShardId=shard_id,
                    ShardIteratorType='LATEST'
                )['ShardIterator']
        except (ClientError, BotoCoreError) as e:
            raise ChangeStreamError(f"Error opening stream shards: {e}") from e
        self._iterators = iterators
        self._finished = finished

    def read_records(self, stream_arn: str) -> List[Dict[str, Any]]:
        """
        Read one batch from every known shard.

        Shards created after subscribing are read from their start once
        their parent shard has been fully consumed, and shards that have
        been fully consumed are dropped.
        """
        records = []
        try:
            parents = {}
            for shard in self._list_shards(stream_arn):
                shard_id = shard['ShardId']
                parents[shard_id] = shard.get('ParentShardId')
                if shard_id in self._iterators or shard_id in self._finished:
                    continue
                self._iterators[shard_id] = self.streams.get_shard_iterator(
                    StreamArn=stream_arn,
                    ShardId=shard_id,
                    ShardIteratorType='TRIM_HORIZON'
                )['ShardIterator']

            for shard_id, iterator in list(self._iterators.items()):
                # A child shard holds later changes than its parent
                if parents.get(shard_id) in self._iterators:
                    continue
                response = self.streams.get_records(ShardIterator=iterator)
                records.extend(response.get('Records', []))
                next_iterator = response.get('NextShardIterator')
                if next_iterator:
                    self._iterators[shard_id] = next_iterator
                else:
                    del self._iterators[shard_id]
                    self._finished.add(shard_id)
        except (ClientError, BotoCoreError) as e:
            raise ChangeStreamError(f"Error reading stream records: {e}") from e
        return records
