"""Wires the aggregator to its DynamoDB and Eventbrite adapters."""
import argparse
import asyncio
import json
import logging
from dataclasses import asdict
from typing import Any, Dict, Optional

from aggregator.aggregator import EventAggregator
from feeds.eventbrite import EventbriteClient, EventbriteFeedAdapter, EventbriteProxyClient
from logging_config import setup_logging
from settings import Settings
from storage.cache import TTLCache
from storage.event_store import EventStore
from storage.kv_store import DynamoDBKeyValueStore

logger = logging.getLogger(__name__)


def build_feed(settings: Settings) -> EventbriteFeedAdapter:
    cache = TTLCache(
        DynamoDBKeyValueStore(settings.cache_table_name, region_name=settings.aws_region),
        ttl_seconds=settings.feed_cache_ttl
    )
    proxy_client = None
    if settings.eventbrite_proxy_url:
        proxy_client = EventbriteProxyClient(
            settings.eventbrite_proxy_url,
            timeout=settings.http_timeout
        )
    direct_client = None
    if settings.eventbrite_api_token:
        direct_client = EventbriteClient(
            settings.eventbrite_api_token,
            api_url=settings.eventbrite_api_url,
            timeout=settings.http_timeout
        )
    return EventbriteFeedAdapter(
        cache,
        proxy_client=proxy_client,
        direct_client=direct_client,
        default_location=settings.default_location,
        page_size=settings.page_size
    )


def build_aggregator(settings: Optional[Settings] = None) -> EventAggregator:
    """
    Create an aggregator backed by the configured services.

    Args:
        settings: Configuration (default: read from the environment)

    Returns:
        A new, empty EventAggregator; call connect() to receive live changes
    """
    settings = settings or Settings.from_env()
    store = EventStore(
        settings.events_table_name,
        region_name=settings.aws_region,
        poll_interval=settings.stream_poll_interval
    )
    return EventAggregator(
        store,
        build_feed(settings),
        freshness_ttl=settings.freshness_ttl,
        source_timeout=settings.source_timeout
    )


async def refresh(aggregator: EventAggregator, external: bool = False) -> Dict[str, Any]:
    """Run one refresh cycle and summarize the result."""
    if external:
        await aggregator.refresh_external_events()
    else:
        await aggregator.fetch_events(force_refresh=True)
    return {
        'events': len(aggregator.events),
        'sources': {name: asdict(status) for name, status in aggregator.sources.items()},
        'error': aggregator.error
    }


def main() -> None:
    parser = argparse.ArgumentParser(
        prog='events-aggregate',
        description='Fetch and merge events from the events table and Eventbrite'
    )
    parser.add_argument(
        '--refresh-external', action='store_true',
        help='Clear the Eventbrite cache before fetching'
    )
    args = parser.parse_args()

    settings = Settings.from_env()
    setup_logging(settings.log_level)
    summary = asyncio.run(refresh(build_aggregator(settings), external=args.refresh_external))
    print(json.dumps(summary, indent=2))


if __name__ == '__main__':
    main()
