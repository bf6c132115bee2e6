"""AWS Lambda handler proxying Eventbrite searches.

The Eventbrite token stays in the function's environment so that clients
never have to ship it.
"""
import json
import logging
import os
import time
from typing import Any, Dict

import requests

from feeds.eventbrite import (
    DEFAULT_LOCATION,
    DEFAULT_PAGE_SIZE,
    EVENTBRITE_API_URL,
    EventbriteClient,
    FeedError,
)
from logging_config import setup_logging

MAX_PAGE_SIZE = 50


def _response(status_code: int, body: Dict[str, Any]) -> Dict[str, Any]:
    return {
        'statusCode': status_code,
        'headers': {'Content-Type': 'application/json'},
        'body': json.dumps(body)
    }


def _parse_limit(raw: Any, default: int) -> int:
    """
    Parse the page size query parameter.

    Raises:
        ValueError: If the value is not an integer between 1 and MAX_PAGE_SIZE
    """
    if raw in (None, ''):
        return default
    limit = int(raw)
    if not 1 <= limit <= MAX_PAGE_SIZE:
        raise ValueError(f"limit must be between 1 and {MAX_PAGE_SIZE}")
    return limit


def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """
    Return raw Eventbrite search results for a location.

    Args:
        event: API Gateway proxy event with optional ``location`` and
            ``limit`` query string parameters
        context: Lambda context object

    Returns:
        API Gateway response; the body is ``{"events": [...]}`` on success
        and ``{"error": "..."}`` otherwise
    """
    # Read configuration from environment variables
    token = os.environ.get('EVENTBRITE_API_TOKEN', '')
    api_url = os.environ.get('EVENTBRITE_API_URL', EVENTBRITE_API_URL)
    log_level = os.environ.get('LOG_LEVEL', 'INFO')
    timeout_seconds = int(os.environ.get('TIMEOUT_SECONDS', '10'))
    default_location = os.environ.get('DEFAULT_LOCATION', DEFAULT_LOCATION)

    setup_logging(log_level)
    logger = logging.getLogger(__name__)
    start_time = time.time()

    params = (event or {}).get('queryStringParameters') or {}
    location = params.get('location') or default_location
    try:
        limit = _parse_limit(params.get('limit'), DEFAULT_PAGE_SIZE)
    except ValueError as e:
        logger.warning(f"Rejected proxy request: {e}")
        return _response(400, {'error': f"Invalid limit: {e}"})

    if not token:
        logger.error("EVENTBRITE_API_TOKEN is not configured")
        return _response(500, {'error': 'Eventbrite credential is not configured'})

    logger.info(
        f"Proxying Eventbrite search",
        extra={'location': location, 'limit': limit}
    )

    try:
        client = EventbriteClient(token=token, api_url=api_url, timeout=timeout_seconds)
        raw_events = client.fetch_raw_events(location, limit)
    except (requests.RequestException, FeedError) as e:
        logger.error(
            f"Eventbrite search failed: {str(e)}",
            extra={'error_type': type(e).__name__},
            exc_info=True
        )
        return _response(502, {
            'error': 'Could not fetch events',
            'error_type': type(e).__name__
        })

    duration = time.time() - start_time
    logger.info(
        f"Returned {len(raw_events)} Eventbrite events",
        extra={'duration_seconds': round(duration, 2)}
    )
    return _response(200, {'events': raw_events[:limit]})
