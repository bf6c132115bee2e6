"""Runtime configuration read from environment variables."""
import os
from dataclasses import dataclass
from typing import Mapping, Optional

from feeds.eventbrite import DEFAULT_LOCATION, DEFAULT_PAGE_SIZE, EVENTBRITE_API_URL


@dataclass(frozen=True)
class Settings:
    events_table_name: str = 'events'
    cache_table_name: str = 'event-feed-cache'
    aws_region: Optional[str] = None
    eventbrite_proxy_url: Optional[str] = None
    eventbrite_api_token: Optional[str] = None
    eventbrite_api_url: str = EVENTBRITE_API_URL
    default_location: str = DEFAULT_LOCATION
    page_size: int = DEFAULT_PAGE_SIZE
    http_timeout: float = 10
    source_timeout: float = 20
    freshness_ttl: float = 5 * 60
    feed_cache_ttl: float = 60 * 60
    stream_poll_interval: float = 1
    log_level: str = 'INFO'

    @classmethod
    def from_env(cls, environ: Mapping[str, str] = os.environ) -> 'Settings':
        """
        Build settings from environment variables.

        Unset or empty variables keep their defaults.

        Raises:
            ValueError: If a numeric variable cannot be parsed
        """
        def get(name: str, default=None):
            return environ.get(name) or default

        return cls(
            events_table_name=get('EVENTS_TABLE_NAME', cls.events_table_name),
            cache_table_name=get('CACHE_TABLE_NAME', cls.cache_table_name),
            aws_region=get('AWS_REGION'),
            eventbrite_proxy_url=get('EVENTBRITE_PROXY_URL'),
            eventbrite_api_token=get('EVENTBRITE_API_TOKEN'),
            eventbrite_api_url=get('EVENTBRITE_API_URL', cls.eventbrite_api_url),
            default_location=get('DEFAULT_LOCATION', cls.default_location),
            page_size=int(get('PAGE_SIZE', cls.page_size)),
            http_timeout=float(get('HTTP_TIMEOUT_SECONDS', cls.http_timeout)),
            source_timeout=float(get('SOURCE_TIMEOUT_SECONDS', cls.source_timeout)),
            freshness_ttl=float(get('FRESHNESS_TTL_SECONDS', cls.freshness_ttl)),
            feed_cache_ttl=float(get('FEED_CACHE_TTL_SECONDS', cls.feed_cache_ttl)),
            stream_poll_interval=float(
                get('STREAM_POLL_INTERVAL_SECONDS', cls.stream_poll_interval)
            ),
            log_level=get('LOG_LEVEL', cls.log_level)
        )
