"""Eventbrite event feed: HTTP clients and the cached source adapter."""
import asyncio
import logging
import time
from typing import Any, Dict, List, Optional

import requests

from processor.models import Event
from processor.normalizer import normalize_eventbrite_events
from storage.cache import TTLCache, make_cache_key
from storage.kv_store import KeyValueStoreError

logger = logging.getLogger(__name__)

EVENTBRITE_API_URL = 'https://www.eventbriteapi.com/v3/events/search/'
DEFAULT_LOCATION = 'London, UK'
DEFAULT_PAGE_SIZE = 20


class FeedError(Exception):
    """Raised when a feed response cannot be used."""


def _read_events(response: requests.Response, origin: str) -> List[Dict[str, Any]]:
    """
    Extract the ``events`` list from a JSON response.

    Args:
        response: Successful (2xx) HTTP response
        origin: Name used in error messages

    Returns:
        List of raw Eventbrite event dicts

    Raises:
        FeedError: If the body is not JSON or carries an error
    """
    content_type = response.headers.get('Content-Type', '')
    if 'application/json' not in content_type:
        logger.error(
            f"{origin} returned non-JSON response ({content_type or 'no content type'}): "
            f"{response.text[:200]}"
        )
        raise FeedError(f"Non-JSON response from {origin}")

    try:
        data = response.json()
    except ValueError as e:
        raise FeedError(f"Malformed JSON from {origin}: {e}") from e

    if not isinstance(data, dict):
        raise FeedError(f"Unexpected response shape from {origin}")
    if data.get('error'):
        raise FeedError(f"{origin} error: {data['error']}")

    events = data.get('events') or []
    if not isinstance(events, list):
        raise FeedError(f"Unexpected events payload from {origin}")
    return events


class EventbriteClient:
    """Direct client for the Eventbrite search API."""

    def __init__(
        self,
        token: str,
        api_url: str = EVENTBRITE_API_URL,
        timeout: float = 10,
        max_retries: int = 3,
        base_delay: float = 1
    ):
        """
        Initialize the Eventbrite client.

        Args:
            token: Eventbrite private token, sent as a bearer credential
            api_url: Search endpoint URL
            timeout: HTTP request timeout in seconds (default: 10)
            max_retries: Attempts before giving up (default: 3)
            base_delay: First backoff delay in seconds, doubled per attempt
        """
        self.token = token
        self.api_url = api_url
        self.timeout = timeout
        self.max_retries = max_retries
        self.base_delay = base_delay

    def fetch_raw_events(self, location: str, limit: int) -> List[Dict[str, Any]]:
        """
        Search Eventbrite for events near a location.

        Args:
            location: Free-text address, e.g. "London, UK"
            limit: Page size

        Returns:
            Raw event dicts with venue and logo expanded

        Raises:
            requests.RequestException: If all retry attempts fail
            FeedError: If the response is not usable JSON
        """
        params = {
            'location.address': location,
            'sort_by': 'date',
            'expand': 'venue,logo',
            'page_size': limit
        }
        headers = {'Authorization': f"Bearer {self.token}"}

        for attempt in range(self.max_retries):
            try:
                logger.info(
                    f"Fetching Eventbrite events for {location!r} "
                    f"(attempt {attempt + 1}/{self.max_retries})"
                )
                response = requests.get(
                    self.api_url,
                    params=params,
                    headers=headers,
                    timeout=self.timeout
                )
                response.raise_for_status()
                break

            except requests.RequestException as e:
                if attempt < self.max_retries - 1:
                    # Calculate exponential backoff delay
                    delay = self.base_delay * (2 ** attempt)
                    logger.warning(
                        f"Eventbrite request failed (attempt {attempt + 1}/{self.max_retries}): "
                        f"{e}. Retrying in {delay} seconds..."
                    )
                    time.sleep(delay)
                else:
                    logger.error(
                        f"All {self.max_retries} Eventbrite attempts failed. Last error: {e}"
                    )
                    raise

        return _read_events(response, 'Eventbrite API')


class EventbriteProxyClient:
    """Client for the backend proxy that holds the Eventbrite token."""

    def __init__(self, url: str, timeout: float = 10):
        self.url = url
        self.timeout = timeout

    def fetch_raw_events(self, location: str, limit: int) -> List[Dict[str, Any]]:
        response = requests.get(
            self.url,
            params={'location': location, 'limit': limit},
            timeout=self.timeout
        )
        response.raise_for_status()
        return _read_events(response, 'Eventbrite proxy')


class EventbriteFeedAdapter:
    """
    Source adapter for Eventbrite events.

    Looks in the cache first, then asks the proxy, then falls back to
    calling Eventbrite directly. Any failure yields an empty list.
    """

    SOURCE_NAME = 'eventbrite'

    def __init__(
        self,
        cache: TTLCache,
        proxy_client: Optional[EventbriteProxyClient] = None,
        direct_client: Optional[EventbriteClient] = None,
        default_location: str = DEFAULT_LOCATION,
        page_size: int = DEFAULT_PAGE_SIZE
    ):
        self.cache = cache
        self.proxy_client = proxy_client
        self.direct_client = direct_client
        self.default_location = default_location
        self.page_size = page_size

    async def fetch_events(
        self,
        location: Optional[str] = None,
        limit: Optional[int] = None
    ) -> List[Event]:
        """
        Fetch normalized events for a location.

        Args:
            location: Search location (default: adapter's default location)
            limit: Maximum number of events (default: adapter's page size)

        Returns:
            List of Event objects, empty if every path failed
        """
        location = location or self.default_location
        limit = limit or self.page_size
        try:
            return await asyncio.to_thread(self._fetch, location, limit)
        except Exception:
            logger.exception(f"Unexpected error fetching Eventbrite events for {location!r}")
            return []

    async def clear_cache(
        self,
        location: Optional[str] = None,
        limit: Optional[int] = None
    ) -> None:
        """Drop the cached result so the next fetch goes to the network."""
        key = make_cache_key(
            self.SOURCE_NAME,
            location or self.default_location,
            limit or self.page_size
        )
        await asyncio.to_thread(self.cache.invalidate, key)
        logger.info(f"Cleared Eventbrite cache entry {key!r}")

    def _fetch(self, location: str, limit: int) -> List[Event]:
        key = make_cache_key(self.SOURCE_NAME, location, limit)

        cached = self.cache.get(key)
        if cached is not None:
            try:
                events = [Event.from_dict(data) for data in cached]
                logger.info(f"Using {len(events)} cached Eventbrite events")
                return events
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Discarding malformed cache entry {key!r}: {e}")

        raw_events = self._fetch_raw(location, limit)
        if raw_events is None:
            return []

        events = normalize_eventbrite_events(raw_events, location)[:limit]

        try:
            self.cache.set(key, [event.to_dict() for event in events])
        except KeyValueStoreError as e:
            logger.warning(f"Could not cache Eventbrite events: {e}")

        logger.info(
            f"Fetched {len(events)} Eventbrite events "
            f"({len(raw_events) - len(events)} skipped)"
        )
        return events

    def _fetch_raw(self, location: str, limit: int) -> Optional[List[Dict[str, Any]]]:
        if self.proxy_client:
            try:
                return self.proxy_client.fetch_raw_events(location, limit)
            except (requests.RequestException, FeedError) as e:
                logger.warning(f"Eventbrite proxy failed, falling back to direct call: {e}")

        if not self.direct_client:
            logger.warning("Eventbrite API token is not set. Returning empty events list.")
            return None

        try:
            return self.direct_client.fetch_raw_events(location, limit)
        except (requests.RequestException, FeedError) as e:
            logger.error(f"Eventbrite direct fetch failed: {e}")
            return None
