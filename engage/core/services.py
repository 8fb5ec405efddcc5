"""
Service wiring: builds one connected set of stores, caches and coordinators.
"""

from dataclasses import dataclass
from typing import Callable

from .aggregation import SubmissionProjector
from .cache_reader import CacheReader
from .completion import CompletionManager
from .config import (
    CACHE_PATH,
    EXIT_TRANSITION_MS,
    RECONCILE_DEBOUNCE_MS,
    RECONCILE_QUIET_WINDOW_MS,
    SUBMISSION_REFRESH_DELAY_MS,
)
from .dao import SqliteDurableStore
from .invalidation import Invalidator
from .local_cache import LocalCache, persistent_cache, volatile_cache
from .optimistic import ListView, OptimisticTracker
from .review import ReviewCoordinator
from .stores import InMemoryReadThroughStore
from .submissions import SubmissionCoordinator
from .types import now_ms
from ..util.logging import logger


@dataclass
class Services:
    durable: SqliteDurableStore
    read_through: InMemoryReadThroughStore
    projector: SubmissionProjector
    local_cache: LocalCache
    session_cache: LocalCache
    invalidator: Invalidator
    reader: CacheReader
    tracker: OptimisticTracker
    completions: CompletionManager
    submissions: SubmissionCoordinator
    review: ReviewCoordinator

    def close(self) -> None:
        self.submissions.cancel_refreshes()
        self.review.close()
        self.tracker.clear_pending()


def build_services(db_path: str = None, cache_path: str = None, persistent: bool = True,
                   clock: Callable[[], int] = now_ms, read_through: InMemoryReadThroughStore = None,
                   exit_transition_ms: int = EXIT_TRANSITION_MS,
                   refresh_delay_ms: int = SUBMISSION_REFRESH_DELAY_MS,
                   debounce_ms: int = RECONCILE_DEBOUNCE_MS,
                   quiet_ms: int = RECONCILE_QUIET_WINDOW_MS,
                   view: ListView = None) -> Services:
    """Create and connect every service.

    Values read from the read-through store go to `local_cache`, persistent
    unless `persistent=False`. Per-session state (the local completion overlay
    and the optimistic pending list) always lives in a volatile `session_cache`.

    The projector is registered as a write trigger on the durable store, so
    aggregates in the read-through store follow durable writes the way the
    hosted aggregation job would.
    """
    durable = SqliteDurableStore(db_path)
    read_through = read_through or InMemoryReadThroughStore()
    projector = SubmissionProjector(durable, read_through, clock=clock)
    durable.on_write(projector.on_document_written)

    if persistent:
        local_cache = persistent_cache(cache_path or CACHE_PATH, clock=clock)
    else:
        local_cache = volatile_cache(clock=clock)
    session_cache = volatile_cache(clock=clock)

    invalidator = Invalidator(local_cache, session_cache)
    reader = CacheReader(read_through, local_cache, clock=clock)
    tracker = OptimisticTracker(clock=clock, exit_transition_ms=exit_transition_ms, view=view)
    completions = CompletionManager(reader, session_cache, invalidator, clock=clock)
    submissions = SubmissionCoordinator(
        durable, completions, reader, session_cache, tracker, invalidator,
        clock=clock, refresh_delay_ms=refresh_delay_ms,
    )
    review = ReviewCoordinator(
        durable, read_through, reader, tracker, invalidator,
        clock=clock, debounce_ms=debounce_ms, quiet_ms=quiet_ms,
    )

    logger.log_operation("build_services", "success", {
        "db_path": db_path or "default",
        "cache": local_cache.name,
        "session_cache": session_cache.name,
    })
    return Services(
        durable=durable,
        read_through=read_through,
        projector=projector,
        local_cache=local_cache,
        session_cache=session_cache,
        invalidator=invalidator,
        reader=reader,
        tracker=tracker,
        completions=completions,
        submissions=submissions,
        review=review,
    )
