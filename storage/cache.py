"""Time-boxed cache over a persistent key/value store."""
import json
import logging
import time
from typing import Any, Callable, Optional

from storage.kv_store import KeyValueStoreError

logger = logging.getLogger(__name__)

TIMESTAMP_SUFFIX = '_timestamp'


def make_cache_key(source: str, location: str, limit: int) -> str:
    """
    Build the cache key for a feed query.

    Every query parameter that changes the result must be part of the key.

    Args:
        source: Feed name, e.g. "eventbrite"
        location: Location the feed was queried for
        limit: Page size of the query

    Returns:
        Key of the form ``<source>_events_<location>_<limit>``
    """
    return f"{source}_events_{location}_{limit}"


class TTLCache:
    """JSON values stored alongside a companion timestamp entry."""

    DEFAULT_TTL_SECONDS = 60 * 60

    def __init__(
        self,
        store,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.time
    ):
        """
        Args:
            store: Object exposing get/set/remove of string values
            ttl_seconds: Age after which an entry is treated as a miss
            clock: Returns the current time in epoch seconds
        """
        self.store = store
        self.ttl_seconds = ttl_seconds
        self.clock = clock

    def get(self, key: str) -> Optional[Any]:
        """
        Return the cached value, or None on a miss.

        Expired entries, undecodable entries and store read failures
        are all reported as misses.
        """
        try:
            raw_value = self.store.get(key)
            raw_timestamp = self.store.get(key + TIMESTAMP_SUFFIX)
        except KeyValueStoreError as e:
            logger.warning(f"Cache read failed for {key!r}, treating as miss: {e}")
            return None

        if raw_value is None or raw_timestamp is None:
            return None

        try:
            stored_ms = int(raw_timestamp)
        except ValueError:
            logger.warning(f"Invalid cache timestamp for {key!r}: {raw_timestamp!r}")
            return None

        age_ms = self.clock() * 1000 - stored_ms
        if age_ms >= self.ttl_seconds * 1000:
            logger.debug(f"Cache entry {key!r} expired ({age_ms / 1000:.0f}s old)")
            return None

        try:
            return json.loads(raw_value)
        except ValueError:
            logger.warning(f"Undecodable cache entry for {key!r}")
            return None

    def set(self, key: str, value: Any) -> None:
        self.store.set(key, json.dumps(value))
        self.store.set(key + TIMESTAMP_SUFFIX, str(int(self.clock() * 1000)))

    def invalidate(self, key: str) -> None:
        self.store.remove(key)
        self.store.remove(key + TIMESTAMP_SUFFIX)
