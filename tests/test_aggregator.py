"""Unit tests for the event aggregator."""
import asyncio
from typing import List, Optional

import pytest

from aggregator.aggregator import (
    CREATE_ERROR_MESSAGE,
    EXTERNAL_SOURCE,
    FETCH_ERROR_MESSAGE,
    PRIMARY_SOURCE,
    REFRESH_ERROR_MESSAGE,
    AggregatorError,
    EventAggregator,
)
from processor.models import (
    ChangeNotification,
    ChangeType,
    Event,
    EventCategory,
    EventDraft,
    Location,
)
from processor.normalizer import normalize_eventbrite_event, normalize_row


class FakeClock:
    def __init__(self, now: float = 1_750_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class FakeSubscription:
    def __init__(self):
        self.active = True

    async def close(self):
        self.active = False


class FakePrimary:
    """In-memory first-party adapter."""

    def __init__(self, events: Optional[List[Event]] = None):
        self.events = list(events or [])
        self.list_error: Optional[Exception] = None
        self.insert_error: Optional[Exception] = None
        self.get_error: Optional[Exception] = None
        self.gate: Optional[asyncio.Event] = None
        self.list_calls = 0
        self.get_calls = 0
        self.stored = {event.id: event for event in self.events}
        self.handlers = []
        self.subscriptions = []

    async def list_events(self):
        self.list_calls += 1
        if self.gate:
            await self.gate.wait()
        if self.list_error:
            raise self.list_error
        return list(self.events)

    async def insert(self, draft: EventDraft) -> Event:
        if self.insert_error:
            raise self.insert_error
        event = make_event(f'new-{len(self.stored)}', category=draft.category, title=draft.title)
        self.stored[event.id] = event
        return event

    async def get_event(self, event_id: str) -> Optional[Event]:
        self.get_calls += 1
        if self.get_error:
            raise self.get_error
        return self.stored.get(event_id)

    async def subscribe(self, on_change):
        self.handlers.append(on_change)
        subscription = FakeSubscription()
        self.subscriptions.append(subscription)
        return subscription


class FakeFeed:
    """In-memory Eventbrite adapter."""

    def __init__(self, events: Optional[List[Event]] = None):
        self.events = events if events is not None else []
        self.error: Optional[Exception] = None
        self.clear_error: Optional[Exception] = None
        self.before_return = None
        self.fetch_calls = 0
        self.clear_calls = 0

    async def fetch_events(self):
        self.fetch_calls += 1
        if self.before_return:
            await self.before_return()
        if self.error:
            raise self.error
        return self.events

    async def clear_cache(self):
        self.clear_calls += 1
        if self.clear_error:
            raise self.clear_error


def make_event(event_id, category=EventCategory.MUSIC, title='Event'):
    return normalize_row({
        'id': event_id,
        'title': title,
        'description': 'Description',
        'image_url': 'https://img.example.com/e.png',
        'date': '2025-07-01',
        'time': '18:00',
        'location': {'address': '1 High St', 'city': 'London'},
        'price': 0,
        'category': category.value,
        'host_id': 'user-1',
        'host_name': 'Ada',
        'created_at': '2025-06-01T00:00:00+00:00'
    })


def make_external(native_id, category_id='102'):
    return normalize_eventbrite_event({
        'id': native_id,
        'name': {'text': f'Eventbrite {native_id}'},
        'start': {'local': '2025-07-01T18:00:00'},
        'is_free': True,
        'category_id': category_id,
        'url': f'https://www.eventbrite.co.uk/e/{native_id}'
    }, 'London, UK')


def make_draft(category=EventCategory.MUSIC):
    return EventDraft(
        title='New Gig',
        description='Description',
        image_url='https://img.example.com/e.png',
        date='2025-07-05',
        time='20:00',
        location=Location('1 High St', 'London'),
        price=10.0,
        category=category,
        host_id='user-1',
        host_name='Ada'
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def primary():
    return FakePrimary([make_event('a')])


@pytest.fixture
def feed():
    return FakeFeed([make_external('x')])


@pytest.fixture
def aggregator(primary, feed, clock):
    return EventAggregator(primary, feed, source_timeout=1, clock=clock)


class TestFetchEvents:
    """Test cases for refresh cycles."""

    def test_initial_state(self, aggregator):
        assert aggregator.events == []
        assert aggregator.filtered_events == []
        assert aggregator.selected_category == 'all'
        assert aggregator.last_fetched is None
        assert not aggregator.is_loading
        assert aggregator.error is None
        assert set(aggregator.sources) == {PRIMARY_SOURCE, EXTERNAL_SOURCE}
        assert set(aggregator.sources) == {'primary', 'eventbrite'}

    def test_merges_both_sources(self, aggregator, clock):
        """Test primary events come first, then Eventbrite events."""
        asyncio.run(aggregator.fetch_events())

        assert [event.id for event in aggregator.events] == ['a', 'eb_x']
        assert [event.id for event in aggregator.filtered_events] == ['a', 'eb_x']
        assert aggregator.sources[PRIMARY_SOURCE].error is None
        assert aggregator.sources[EXTERNAL_SOURCE].error is None
        assert not aggregator.sources[PRIMARY_SOURCE].loading
        assert not aggregator.sources[EXTERNAL_SOURCE].loading
        assert aggregator.last_fetched == clock.now
        assert aggregator.error is None

    def test_freshness_gate(self, aggregator, primary, feed, clock):
        """Test that a second fetch within the TTL touches no source."""
        asyncio.run(aggregator.fetch_events())
        clock.now += 299
        asyncio.run(aggregator.fetch_events())

        assert primary.list_calls == 1
        assert feed.fetch_calls == 1

        clock.now += 1
        asyncio.run(aggregator.fetch_events())

        assert primary.list_calls == 2
        assert feed.fetch_calls == 2

    def test_force_refresh_bypasses_gate(self, aggregator, primary):
        asyncio.run(aggregator.fetch_events())
        asyncio.run(aggregator.fetch_events(force_refresh=True))

        assert primary.list_calls == 2

    def test_external_failure_is_isolated(self, aggregator, primary, feed):
        """Test that a failing feed leaves primary events in place."""
        primary.events = [make_event('a'), make_event('b'), make_event('c')]
        feed.error = RuntimeError('eventbrite unavailable')

        asyncio.run(aggregator.fetch_events())

        assert [event.id for event in aggregator.events] == ['a', 'b', 'c']
        assert aggregator.sources[EXTERNAL_SOURCE].error == 'eventbrite unavailable'
        assert aggregator.sources[PRIMARY_SOURCE].error is None
        assert aggregator.error is None

    def test_primary_failure_is_isolated(self, aggregator, primary):
        primary.list_error = ConnectionError('store offline')

        asyncio.run(aggregator.fetch_events())

        assert [event.id for event in aggregator.events] == ['eb_x']
        assert aggregator.sources[PRIMARY_SOURCE].error == 'store offline'
        assert aggregator.sources[EXTERNAL_SOURCE].error is None

    def test_slow_source_times_out(self, primary, feed, clock):
        """Test that a hanging source resolves to a failure status."""
        primary.gate = asyncio.Event()
        aggregator = EventAggregator(primary, feed, source_timeout=0.05, clock=clock)

        asyncio.run(aggregator.fetch_events())

        assert [event.id for event in aggregator.events] == ['eb_x']
        assert 'Timed out' in aggregator.sources[PRIMARY_SOURCE].error
        assert not aggregator.sources[PRIMARY_SOURCE].loading
        assert not aggregator.is_loading

    def test_sources_are_fetched_concurrently(self, aggregator, primary, feed):
        """Test that the primary fetch can wait on the feed fetch without deadlock."""
        async def scenario():
            primary.gate = asyncio.Event()

            async def release():
                primary.gate.set()

            feed.before_return = release
            await aggregator.fetch_events()

        asyncio.run(scenario())

        assert [event.id for event in aggregator.events] == ['a', 'eb_x']
        assert aggregator.sources[PRIMARY_SOURCE].error is None

    def test_unexpected_error_keeps_last_good_collection(self, aggregator, feed):
        """Test that a merge failure keeps events and sets the global error."""
        asyncio.run(aggregator.fetch_events())
        feed.events = None

        asyncio.run(aggregator.fetch_events(force_refresh=True))

        assert [event.id for event in aggregator.events] == ['a', 'eb_x']
        assert aggregator.error == FETCH_ERROR_MESSAGE
        assert aggregator.sources[EXTERNAL_SOURCE].error is not None

    def test_concurrent_calls_run_one_cycle(self, aggregator, primary, feed):
        """Test that a queued cycle is skipped by the freshness gate."""
        async def scenario():
            await asyncio.gather(aggregator.fetch_events(), aggregator.fetch_events())

        asyncio.run(scenario())

        assert primary.list_calls == 1
        assert feed.fetch_calls == 1

    def test_is_loading_during_cycle(self, aggregator, primary):
        async def scenario():
            primary.gate = asyncio.Event()
            task = asyncio.create_task(aggregator.fetch_events())
            await asyncio.sleep(0)
            await asyncio.sleep(0)
            loading = aggregator.is_loading
            statuses = aggregator.sources
            primary.gate.set()
            await task
            return loading, statuses

        loading, statuses = asyncio.run(scenario())

        assert loading
        assert statuses[PRIMARY_SOURCE].loading
        assert not aggregator.is_loading

    def test_duplicate_ids_keep_one_event(self, aggregator, feed):
        feed.events = [make_external('x'), make_external('x', category_id='110')]

        asyncio.run(aggregator.fetch_events())

        assert [event.id for event in aggregator.events] == ['a', 'eb_x']
        assert aggregator.events[1].category is EventCategory.FOOD


class TestFilterByCategory:
    """Test cases for the category filter."""

    def test_filter_preserves_order(self, aggregator, primary, feed):
        primary.events = [
            make_event('m1', EventCategory.MUSIC),
            make_event('t1', EventCategory.TECH),
            make_event('m2', EventCategory.MUSIC),
        ]
        feed.events = []
        asyncio.run(aggregator.fetch_events())

        aggregator.filter_by_category('music')
        assert [event.id for event in aggregator.filtered_events] == ['m1', 'm2']
        assert aggregator.selected_category is EventCategory.MUSIC

        aggregator.filter_by_category('all')
        assert [event.id for event in aggregator.filtered_events] == ['m1', 't1', 'm2']
        assert len(aggregator.events) == 3

    def test_filter_survives_refresh(self, aggregator, primary):
        aggregator.filter_by_category(EventCategory.TECH)

        asyncio.run(aggregator.fetch_events())

        assert [event.id for event in aggregator.filtered_events] == ['eb_x']

    def test_unknown_category_is_rejected(self, aggregator):
        with pytest.raises(ValueError):
            aggregator.filter_by_category('karaoke')


class TestCreateEvent:
    """Test cases for event creation."""

    def test_created_event_is_appended(self, aggregator, primary):
        """Test the optimistic append without a new fetch cycle."""
        asyncio.run(aggregator.fetch_events())

        event_id = asyncio.run(aggregator.create_event(make_draft()))

        assert [event.id for event in aggregator.events] == ['a', 'eb_x', event_id]
        assert aggregator.filtered_events[-1].id == event_id
        assert primary.list_calls == 1

    def test_created_event_respects_filter(self, aggregator):
        asyncio.run(aggregator.fetch_events())
        aggregator.filter_by_category('tech')

        event_id = asyncio.run(aggregator.create_event(make_draft(EventCategory.MUSIC)))

        assert event_id in [event.id for event in aggregator.events]
        assert event_id not in [event.id for event in aggregator.filtered_events]

    def test_create_failure(self, aggregator, primary):
        """Test that a store failure raises and leaves the collection as is."""
        asyncio.run(aggregator.fetch_events())
        primary.insert_error = RuntimeError('permission denied')

        with pytest.raises(AggregatorError) as exc_info:
            asyncio.run(aggregator.create_event(make_draft()))

        assert str(exc_info.value) == CREATE_ERROR_MESSAGE
        assert aggregator.error == CREATE_ERROR_MESSAGE
        assert [event.id for event in aggregator.events] == ['a', 'eb_x']
        assert not aggregator.is_loading

    def test_live_insert_after_create_is_deduplicated(self, aggregator, primary):
        async def scenario():
            await aggregator.connect()
            event_id = await aggregator.create_event(make_draft())
            primary.handlers[0](ChangeNotification(
                type=ChangeType.INSERT, event_id=event_id, event=primary.stored[event_id]
            ))
            await aggregator.disconnect()
            return event_id

        event_id = asyncio.run(scenario())

        assert [event.id for event in aggregator.events].count(event_id) == 1


class TestGetEventById:
    """Test cases for single event lookup."""

    def test_external_id_uses_memory(self, aggregator, primary):
        asyncio.run(aggregator.fetch_events())

        event = asyncio.run(aggregator.get_event_by_id('eb_x'))

        assert event.title == 'Eventbrite x'
        assert asyncio.run(aggregator.get_event_by_id('eb_missing')) is None
        assert primary.get_calls == 0

    def test_primary_id_reads_store(self, aggregator, primary):
        """Test that ids outside the snapshot are still found."""
        primary.stored['deep-link'] = make_event('deep-link')

        first = asyncio.run(aggregator.get_event_by_id('deep-link'))
        second = asyncio.run(aggregator.get_event_by_id('deep-link'))

        assert first == second
        assert first.id == 'deep-link'
        assert primary.get_calls == 2
        assert aggregator.events == []

    def test_missing_primary_id(self, aggregator):
        assert asyncio.run(aggregator.get_event_by_id('nope')) is None

    def test_store_error_raises(self, aggregator, primary):
        primary.get_error = RuntimeError('timeout')

        with pytest.raises(AggregatorError):
            asyncio.run(aggregator.get_event_by_id('a'))


class TestRefreshExternalEvents:
    """Test cases for explicit Eventbrite refresh."""

    def test_clears_cache_and_forces_cycle(self, aggregator, primary, feed):
        asyncio.run(aggregator.fetch_events())
        feed.events = [make_external('y')]

        asyncio.run(aggregator.refresh_external_events())

        assert feed.clear_calls == 1
        assert primary.list_calls == 2
        assert [event.id for event in aggregator.events] == ['a', 'eb_y']

    def test_clear_failure(self, aggregator, primary, feed):
        feed.clear_error = RuntimeError('cache table missing')

        asyncio.run(aggregator.refresh_external_events())

        assert aggregator.error == REFRESH_ERROR_MESSAGE
        assert aggregator.sources[EXTERNAL_SOURCE].error == 'Failed to refresh'
        assert not aggregator.sources[EXTERNAL_SOURCE].loading
        assert primary.list_calls == 0


class TestLiveChanges:
    """Test cases for changes pushed from the events table."""

    def test_changes_update_collection_and_filter(self, aggregator, primary):
        """Test insert, update and delete notifications."""
        async def scenario():
            await aggregator.fetch_events()
            aggregator.filter_by_category('music')
            await aggregator.connect()
            handler = primary.handlers[0]

            handler(ChangeNotification(ChangeType.INSERT, 'b', make_event('b', EventCategory.MUSIC)))
            after_insert = [event.id for event in aggregator.filtered_events]

            handler(ChangeNotification(ChangeType.UPDATE, 'a', make_event('a', EventCategory.TECH)))
            after_update = [event.id for event in aggregator.filtered_events]

            handler(ChangeNotification(ChangeType.DELETE, 'b'))
            after_delete = [event.id for event in aggregator.filtered_events]

            handler(ChangeNotification(ChangeType.UPDATE, 'gone', make_event('gone')))

            await aggregator.disconnect()
            return after_insert, after_update, after_delete

        after_insert, after_update, after_delete = asyncio.run(scenario())

        assert after_insert == ['a', 'b']
        assert after_update == ['b']
        assert after_delete == []
        assert [event.id for event in aggregator.events] == ['a', 'eb_x']
        assert aggregator.events[0].category is EventCategory.TECH

    def test_connect_and_disconnect(self, aggregator, primary):
        async def scenario():
            await aggregator.connect()
            await aggregator.connect()
            connected = aggregator.connected
            await aggregator.disconnect()
            return connected

        assert asyncio.run(scenario())
        assert len(primary.subscriptions) == 1
        assert not primary.subscriptions[0].active
        assert not aggregator.connected

    def test_changes_during_cycle_are_not_lost(self, aggregator, primary):
        """Test that a stale snapshot does not undo changes made mid-cycle."""
        async def scenario():
            await aggregator.fetch_events()
            await aggregator.connect()
            handler = primary.handlers[0]

            primary.events = [make_event('a'), make_event('b')]
            primary.gate = asyncio.Event()
            cycle = asyncio.create_task(aggregator.fetch_events(force_refresh=True))
            await asyncio.sleep(0)
            await asyncio.sleep(0)

            handler(ChangeNotification(ChangeType.DELETE, 'b'))
            handler(ChangeNotification(ChangeType.INSERT, 'c', make_event('c')))
            handler(ChangeNotification(ChangeType.UPDATE, 'a', make_event('a', title='Renamed')))

            primary.gate.set()
            await cycle
            await aggregator.disconnect()

        asyncio.run(scenario())

        assert [event.id for event in aggregator.events] == ['a', 'eb_x', 'c']
        assert aggregator.events[0].title == 'Renamed'
