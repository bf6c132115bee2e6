"""Normalization of source records into canonical events."""
import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional

from bs4 import BeautifulSoup

from processor.models import (
    Coordinates,
    Event,
    EventCategory,
    EventDraft,
    FREE_PRICE,
    Location,
    UNKNOWN_PRICE,
)

logger = logging.getLogger(__name__)

EVENTBRITE_ID_PREFIX = 'eb_'
EVENTBRITE_SOURCE = 'Eventbrite'
EVENTBRITE_HOST_ID = 'eventbrite'

DEFAULT_TITLE = 'Untitled Event'
DEFAULT_DESCRIPTION = 'No description available.'
DEFAULT_ADDRESS = 'Location TBD'
PLACEHOLDER_IMAGE_URL = (
    'https://images.unsplash.com/photo-1501281668745-f7f57925c3b4'
    '?ixlib=rb-4.0.3&auto=format&fit=crop&w=1000&q=80'
)

# Eventbrite category ids
CATEGORY_MAP = {
    '103': EventCategory.MUSIC,
    '110': EventCategory.FOOD,
    '113': EventCategory.SPORTS,
    '105': EventCategory.ART,
    '102': EventCategory.TECH,
    '108': EventCategory.EDUCATION,
    '107': EventCategory.NETWORKING,
}


def is_external_id(event_id: str) -> bool:
    """Return True when the id belongs to an Eventbrite event."""
    return event_id.startswith(EVENTBRITE_ID_PREFIX)


def map_category(category_id: Optional[Any]) -> EventCategory:
    """
    Map an Eventbrite category id to an internal category.

    Args:
        category_id: Eventbrite category id, possibly None

    Returns:
        Matching EventCategory, or OTHER for unknown ids
    """
    if category_id is None:
        return EventCategory.OTHER
    return CATEGORY_MAP.get(str(category_id), EventCategory.OTHER)


def split_timestamp(raw: Any) -> Optional[tuple[str, str]]:
    """
    Split an ISO 8601 timestamp into date and HH:MM time.

    The wall-clock values are taken as written; any offset in the
    timestamp is never applied.

    Args:
        raw: Timestamp string such as "2025-07-01T18:00:00"

    Returns:
        Tuple of (date, time) or None if the value cannot be parsed
    """
    if not isinstance(raw, str) or not raw.strip():
        return None
    try:
        parsed = datetime.fromisoformat(raw.strip())
    except ValueError:
        return None
    return parsed.date().isoformat(), parsed.strftime('%H:%M')


def normalize_eventbrite_event(
    item: Dict[str, Any],
    location: str
) -> Optional[Event]:
    """
    Normalize a single Eventbrite search result.

    Args:
        item: Raw Eventbrite event (with venue and logo expanded)
        location: Location string the search was made for

    Returns:
        Event, or None if the item has no id or no usable start timestamp
    """
    item_id = item.get('id')
    if item_id is None or item_id == '':
        logger.warning("Skipping Eventbrite event without an id")
        return None

    start = _mapping(item.get('start'))
    split = split_timestamp(start.get('local')) or split_timestamp(start.get('utc'))
    if split is None:
        logger.warning(
            f"Skipping Eventbrite event {item_id!r}: no usable start time"
        )
        return None
    event_date, event_time = split

    venue = _mapping(item.get('venue'))
    address = _mapping(venue.get('address'))
    logo = _mapping(item.get('logo'))

    return Event(
        id=f"{EVENTBRITE_ID_PREFIX}{item_id}",
        title=_text(item.get('name')) or DEFAULT_TITLE,
        description=_description(item.get('description')),
        image_url=_mapping(logo.get('original')).get('url') or logo.get('url') or PLACEHOLDER_IMAGE_URL,
        date=event_date,
        time=event_time,
        location=Location(
            address=address.get('localized_address_display') or DEFAULT_ADDRESS,
            city=location.split(',')[0].strip(),
            coordinates=_coordinates(address.get('latitude'), address.get('longitude'))
        ),
        price=FREE_PRICE if item.get('is_free') else UNKNOWN_PRICE,
        category=map_category(item.get('category_id')),
        host_id=EVENTBRITE_HOST_ID,
        host_name=EVENTBRITE_SOURCE,
        created_at=datetime.now(timezone.utc).isoformat(),
        source=EVENTBRITE_SOURCE,
        external_url=item.get('url')
    )


def normalize_eventbrite_events(
    items: Iterable[Dict[str, Any]],
    location: str
) -> List[Event]:
    """Normalize a batch of Eventbrite items, dropping unusable ones."""
    events = []
    for item in items:
        if not isinstance(item, dict):
            continue
        event = normalize_eventbrite_event(item, location)
        if event:
            events.append(event)
    return events


def normalize_row(row: Dict[str, Any]) -> Event:
    """
    Convert an events table row to an Event.

    Args:
        row: Item as returned by the events table (snake_case columns)

    Returns:
        Event object
    """
    location = _mapping(row.get('location'))
    coords = _mapping(location.get('coordinates'))
    return Event(
        id=row['id'],
        title=row['title'],
        description=row.get('description', ''),
        image_url=row.get('image_url') or PLACEHOLDER_IMAGE_URL,
        date=row['date'],
        time=row.get('time', ''),
        location=Location(
            address=location.get('address', ''),
            city=location.get('city', ''),
            coordinates=_coordinates(coords.get('latitude'), coords.get('longitude'))
        ),
        price=float(row.get('price', 0)),
        category=EventCategory.parse(row.get('category')),
        host_id=row.get('host_id', ''),
        host_name=row.get('host_name', ''),
        created_at=row.get('created_at', '')
    )


def draft_to_row(draft: EventDraft, event_id: str, created_at: str) -> Dict[str, Any]:
    """Build an events table item from a draft, with DynamoDB-safe numbers."""
    location = draft.location.to_dict()
    if 'coordinates' in location:
        location['coordinates'] = {
            key: Decimal(str(value)) for key, value in location['coordinates'].items()
        }
    return {
        'id': event_id,
        'title': draft.title,
        'description': draft.description,
        'image_url': draft.image_url,
        'date': draft.date,
        'time': draft.time,
        'location': location,
        'price': Decimal(str(draft.price)),
        'category': EventCategory.parse(draft.category).value,
        'host_id': draft.host_id,
        'host_name': draft.host_name,
        'created_at': created_at
    }


def _mapping(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _text(value: Any) -> Optional[str]:
    if isinstance(value, dict):
        value = value.get('text')
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _description(value: Any) -> str:
    text = _text(value)
    if text:
        return text
    html = _mapping(value).get('html')
    if isinstance(html, str) and html.strip():
        text = BeautifulSoup(html, 'html.parser').get_text(' ', strip=True)
        if text:
            return text
    return DEFAULT_DESCRIPTION


def _coordinates(latitude: Any, longitude: Any) -> Optional[Coordinates]:
    if latitude in (None, '') or longitude in (None, ''):
        return None
    try:
        return Coordinates(latitude=float(latitude), longitude=float(longitude))
    except (TypeError, ValueError):
        return None
