"""Merges first-party and Eventbrite events into one live collection."""
import asyncio
import logging
import time
from dataclasses import replace
from typing import Awaitable, Callable, Dict, List, Optional, Tuple, Union

from aggregator.reconciler import LiveReconciler, reconcile
from processor.models import (
    ALL_CATEGORIES,
    ChangeNotification,
    ChangeType,
    Event,
    EventCategory,
    EventDraft,
    SourceStatus,
)
from processor.normalizer import is_external_id

logger = logging.getLogger(__name__)

PRIMARY_SOURCE = 'primary'
EXTERNAL_SOURCE = 'eventbrite'

FETCH_ERROR_MESSAGE = (
    "Failed to load events. Please check your internet connection "
    "and ensure API keys are set."
)
CREATE_ERROR_MESSAGE = "Failed to create event. Please try again."
LOOKUP_ERROR_MESSAGE = "Failed to load event. Please try again."
REFRESH_ERROR_MESSAGE = "Failed to refresh external events."

CategoryFilter = Union[EventCategory, str]


class AggregatorError(Exception):
    """Raised to callers with a message that is safe to show to users."""


class EventAggregator:
    """
    Owner of the merged event collection.

    Each refresh cycle fetches both sources concurrently; a failing or slow
    source is recorded in ``sources`` and contributes no events, while the
    other source's events are still committed. Cycles run one at a time.
    """

    DEFAULT_FRESHNESS_TTL = 5 * 60
    DEFAULT_SOURCE_TIMEOUT = 20

    def __init__(
        self,
        primary,
        feed,
        freshness_ttl: float = DEFAULT_FRESHNESS_TTL,
        source_timeout: float = DEFAULT_SOURCE_TIMEOUT,
        clock: Callable[[], float] = time.time
    ):
        """
        Args:
            primary: First-party adapter (list_events, insert, get_event, subscribe)
            feed: Eventbrite adapter (fetch_events, clear_cache)
            freshness_ttl: Seconds during which a non-forced fetch is skipped
            source_timeout: Seconds before a source fetch counts as failed
            clock: Returns the current time in epoch seconds
        """
        self.primary = primary
        self.feed = feed
        self.freshness_ttl = freshness_ttl
        self.source_timeout = source_timeout
        self.clock = clock

        self._events: Tuple[Event, ...] = ()
        self._filtered_events: Tuple[Event, ...] = ()
        self._selected_category: CategoryFilter = ALL_CATEGORIES
        self._sources: Dict[str, SourceStatus] = {
            PRIMARY_SOURCE: SourceStatus(),
            EXTERNAL_SOURCE: SourceStatus(),
        }
        self._last_fetched: Optional[float] = None
        self._error: Optional[str] = None
        self._cycle_lock = asyncio.Lock()
        self._cycle_running = False
        self._pending_creates = 0
        # Changes applied while a cycle is in flight, replayed onto its snapshot
        self._journal: Optional[List[ChangeNotification]] = None
        self._reconciler = LiveReconciler(primary, self)

    @property
    def events(self) -> List[Event]:
        return list(self._events)

    @property
    def filtered_events(self) -> List[Event]:
        return list(self._filtered_events)

    @property
    def selected_category(self) -> CategoryFilter:
        return self._selected_category

    @property
    def sources(self) -> Dict[str, SourceStatus]:
        """
        Per-source fetch status, copied.

        Keyed by PRIMARY_SOURCE ('primary', the events table) and
        EXTERNAL_SOURCE ('eventbrite').
        """
        return {name: replace(status) for name, status in self._sources.items()}

    @property
    def is_loading(self) -> bool:
        return self._cycle_running or self._pending_creates > 0

    @property
    def error(self) -> Optional[str]:
        return self._error

    @property
    def last_fetched(self) -> Optional[float]:
        return self._last_fetched

    @property
    def connected(self) -> bool:
        return self._reconciler.active

    async def connect(self) -> None:
        """Start applying live changes from the events table."""
        await self._reconciler.start()

    async def disconnect(self) -> None:
        await self._reconciler.stop()

    async def fetch_events(self, force_refresh: bool = False) -> None:
        """
        Run one refresh cycle.

        Skipped when the last successful cycle is younger than the
        freshness TTL, unless ``force_refresh`` is set. Never raises for
        source failures; see ``sources`` and ``error``.

        Args:
            force_refresh: Bypass the freshness gate
        """
        async with self._cycle_lock:
            started = self.clock()
            if not force_refresh and self._is_fresh(started):
                logger.info("Using cached events data, skipping fetch")
                return
            await self._run_cycle(started)

    def filter_by_category(self, category: CategoryFilter) -> None:
        """
        Select the category shown in ``filtered_events``.

        Args:
            category: An EventCategory (or its value), or "all"

        Raises:
            ValueError: If the category is not part of the closed set
        """
        if category != ALL_CATEGORIES:
            category = EventCategory(category)
        self._selected_category = category
        self._filtered_events = self._apply_filter(self._events)
        logger.debug(
            f"Filtering by category {category}: {len(self._filtered_events)} events"
        )

    async def create_event(self, draft: EventDraft) -> str:
        """
        Store a new first-party event and append it locally.

        Args:
            draft: Event fields supplied by the host

        Returns:
            Id assigned by the store

        Raises:
            AggregatorError: If the store rejects the insert
        """
        self._pending_creates += 1
        self._error = None
        try:
            event = await self.primary.insert(draft)
        except Exception as e:
            logger.error(f"Create event error: {e}", exc_info=True)
            self._error = CREATE_ERROR_MESSAGE
            raise AggregatorError(CREATE_ERROR_MESSAGE) from e
        finally:
            self._pending_creates -= 1

        self.apply_change(
            ChangeNotification(type=ChangeType.INSERT, event_id=event.id, event=event)
        )
        logger.info(f"Created event {event.id}")
        return event.id

    async def get_event_by_id(self, event_id: str) -> Optional[Event]:
        """
        Look up a single event.

        Eventbrite events are only known from the local collection; any
        other id is read from the store so events outside the current
        snapshot can still be opened.

        Raises:
            AggregatorError: If the store lookup fails
        """
        if is_external_id(event_id):
            return next((event for event in self._events if event.id == event_id), None)

        try:
            return await self.primary.get_event(event_id)
        except Exception as e:
            logger.error(f"Get event by ID error for {event_id}: {e}", exc_info=True)
            raise AggregatorError(LOOKUP_ERROR_MESSAGE) from e

    async def refresh_external_events(self) -> None:
        """Drop the Eventbrite cache and run a forced refresh cycle."""
        self._sources[EXTERNAL_SOURCE] = SourceStatus(loading=True)
        try:
            await self.feed.clear_cache()
        except Exception as e:
            logger.error(f"Refresh external events error: {e}", exc_info=True)
            self._error = REFRESH_ERROR_MESSAGE
            self._sources[EXTERNAL_SOURCE] = SourceStatus(error="Failed to refresh")
            return
        await self.fetch_events(force_refresh=True)

    def apply_change(self, notification: ChangeNotification) -> None:
        """Apply one insert/update/delete to the collection and filtered view."""
        self._set_events(reconcile(self._events, notification))
        if self._journal is not None:
            self._journal.append(notification)

    def _is_fresh(self, now: float) -> bool:
        return self._last_fetched is not None and now - self._last_fetched < self.freshness_ttl

    async def _run_cycle(self, started: float) -> None:
        self._cycle_running = True
        self._error = None
        self._journal = []
        self._sources = {name: SourceStatus(loading=True) for name in self._sources}

        try:
            primary_result, external_result = await asyncio.gather(
                self._with_timeout(PRIMARY_SOURCE, self.primary.list_events),
                self._with_timeout(EXTERNAL_SOURCE, self.feed.fetch_events),
                return_exceptions=True
            )

            results = {PRIMARY_SOURCE: primary_result, EXTERNAL_SOURCE: external_result}
            statuses = {}
            fetched = {}
            for name, result in results.items():
                if isinstance(result, Exception):
                    message = self._failure_message(result)
                    logger.error(
                        f"{name} fetch failed: {message}",
                        extra={'source': name, 'error_type': type(result).__name__}
                    )
                    statuses[name] = SourceStatus(error=message)
                    fetched[name] = []
                elif isinstance(result, BaseException):
                    raise result
                else:
                    statuses[name] = SourceStatus()
                    fetched[name] = list(result)
            self._sources = statuses

            self._commit(fetched[PRIMARY_SOURCE] + fetched[EXTERNAL_SOURCE], started)
            logger.info(
                f"Total events combined: {len(self._events)}",
                extra={
                    'primary_events': len(fetched[PRIMARY_SOURCE]),
                    'eventbrite_events': len(fetched[EXTERNAL_SOURCE])
                }
            )

        except Exception:
            logger.exception("Fetch events error (general)")
            self._error = FETCH_ERROR_MESSAGE
            self._sources = {
                name: SourceStatus(error="General fetch error") for name in self._sources
            }
        finally:
            self._journal = None
            self._cycle_running = False

    async def _with_timeout(
        self,
        name: str,
        fetch: Callable[[], Awaitable[List[Event]]]
    ) -> List[Event]:
        logger.info(f"Fetching {name} events")
        return await asyncio.wait_for(fetch(), timeout=self.source_timeout)

    def _failure_message(self, error: Exception) -> str:
        if isinstance(error, asyncio.TimeoutError):
            return f"Timed out after {self.source_timeout} seconds"
        return str(error) or type(error).__name__

    def _commit(self, merged: List[Event], started: float) -> None:
        # One event per id; a later duplicate replaces the earlier one in place
        by_id: Dict[str, Event] = {}
        for event in merged:
            by_id[event.id] = event

        events = tuple(by_id.values())
        for notification in self._journal or ():
            events = reconcile(events, notification)

        self._set_events(events)
        self._last_fetched = started

    def _set_events(self, events: Tuple[Event, ...]) -> None:
        self._events = events
        self._filtered_events = self._apply_filter(events)

    def _apply_filter(self, events: Tuple[Event, ...]) -> Tuple[Event, ...]:
        if self._selected_category == ALL_CATEGORIES:
            return events
        return tuple(event for event in events if event.category == self._selected_category)
