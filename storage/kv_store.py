"""DynamoDB-backed persistent key/value store."""
import logging
from typing import Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

logger = logging.getLogger(__name__)


class KeyValueStoreError(Exception):
    """Raised when the key/value table cannot be read or written."""


class DynamoDBKeyValueStore:
    """String-keyed get/set/remove over a single DynamoDB table."""

    KEY_ATTRIBUTE = 'cache_key'
    VALUE_ATTRIBUTE = 'value'

    def __init__(self, table_name: str, region_name: Optional[str] = None):
        """
        Initialize DynamoDB table reference.

        Args:
            table_name: Name of the key/value table (partition key ``cache_key``)
            region_name: AWS region, defaults to the environment's region
        """
        self.table_name = table_name
        self.dynamodb = boto3.resource('dynamodb', region_name=region_name)
        self.table = self.dynamodb.Table(table_name)
        logger.info(f"Initialized DynamoDBKeyValueStore for table: {table_name}")

    def get(self, key: str) -> Optional[str]:
        try:
            response = self.table.get_item(Key={self.KEY_ATTRIBUTE: key})
        except (ClientError, BotoCoreError) as e:
            raise KeyValueStoreError(f"Error reading key {key!r}: {e}") from e
        item = response.get('Item')
        return item.get(self.VALUE_ATTRIBUTE) if item else None

    def set(self, key: str, value: str) -> None:
        try:
            self.table.put_item(Item={
                self.KEY_ATTRIBUTE: key,
                self.VALUE_ATTRIBUTE: value
            })
        except (ClientError, BotoCoreError) as e:
            raise KeyValueStoreError(f"Error writing key {key!r}: {e}") from e

    def remove(self, key: str) -> None:
        try:
            self.table.delete_item(Key={self.KEY_ATTRIBUTE: key})
        except (ClientError, BotoCoreError) as e:
            raise KeyValueStoreError(f"Error removing key {key!r}: {e}") from e
