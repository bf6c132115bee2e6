"""Data models for the event aggregation engine."""
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


class EventCategory(str, Enum):
    """Closed set of event categories."""
    MUSIC = 'music'
    TECH = 'tech'
    FOOD = 'food'
    ART = 'art'
    SPORTS = 'sports'
    EDUCATION = 'education'
    NETWORKING = 'networking'
    FREE = 'free'
    OTHER = 'other'

    @classmethod
    def parse(cls, value: Any) -> 'EventCategory':
        """Resolve a raw value to a category, falling back to OTHER."""
        try:
            return cls(value)
        except ValueError:
            return cls.OTHER


ALL_CATEGORIES = 'all'


class PriceKind(str, Enum):
    FREE = 'free'
    PRICED = 'priced'
    UNKNOWN = 'unknown'


FREE_PRICE = 0
UNKNOWN_PRICE = -1


@dataclass(frozen=True)
class Coordinates:
    latitude: float
    longitude: float


@dataclass(frozen=True)
class Location:
    address: str
    city: str
    coordinates: Optional[Coordinates] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {'address': self.address, 'city': self.city}
        if self.coordinates:
            data['coordinates'] = {
                'latitude': self.coordinates.latitude,
                'longitude': self.coordinates.longitude
            }
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Location':
        coords = data.get('coordinates')
        return cls(
            address=data.get('address', ''),
            city=data.get('city', ''),
            coordinates=Coordinates(
                latitude=float(coords['latitude']),
                longitude=float(coords['longitude'])
            ) if coords else None
        )


@dataclass(frozen=True)
class Event:
    """Canonical event shared by every source."""
    id: str
    title: str
    description: str
    image_url: str
    date: str          # YYYY-MM-DD
    time: str          # HH:MM, venue local
    location: Location
    price: float       # 0 free, -1 unknown (checkout on the origin site)
    category: EventCategory
    host_id: str
    host_name: str
    created_at: str
    source: Optional[str] = None
    external_url: Optional[str] = None

    @property
    def price_kind(self) -> PriceKind:
        if self.price == FREE_PRICE:
            return PriceKind.FREE
        if self.price == UNKNOWN_PRICE:
            return PriceKind.UNKNOWN
        return PriceKind.PRICED

    def to_dict(self) -> Dict[str, Any]:
        """Serialize using the camelCase field names consumers expect."""
        data = {
            'id': self.id,
            'title': self.title,
            'description': self.description,
            'imageUrl': self.image_url,
            'date': self.date,
            'time': self.time,
            'location': self.location.to_dict(),
            'price': self.price,
            'category': self.category.value,
            'hostId': self.host_id,
            'hostName': self.host_name,
            'createdAt': self.created_at
        }
        if self.source:
            data['source'] = self.source
        if self.external_url:
            data['externalUrl'] = self.external_url
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Event':
        return cls(
            id=data['id'],
            title=data['title'],
            description=data['description'],
            image_url=data['imageUrl'],
            date=data['date'],
            time=data['time'],
            location=Location.from_dict(data['location']),
            price=float(data['price']),
            category=EventCategory.parse(data['category']),
            host_id=data['hostId'],
            host_name=data['hostName'],
            created_at=data['createdAt'],
            source=data.get('source'),
            external_url=data.get('externalUrl')
        )


@dataclass(frozen=True)
class EventDraft:
    """User-submitted event before the store assigns id and created_at."""
    title: str
    description: str
    image_url: str
    date: str
    time: str
    location: Location
    price: float
    category: EventCategory
    host_id: str
    host_name: str


class ChangeType(str, Enum):
    INSERT = 'insert'
    UPDATE = 'update'
    DELETE = 'delete'


@dataclass(frozen=True)
class ChangeNotification:
    """A single change pushed from the events table.

    ``event`` is None for deletes, which only carry the id.
    """
    type: ChangeType
    event_id: str
    event: Optional[Event] = None


@dataclass
class SourceStatus:
    """Load state of one source adapter."""
    loading: bool = False
    error: Optional[str] = field(default=None)
