"""
Declarative cache invalidation.

Every cached value is declared once with the mutation events that make it
stale. Write paths announce an event; the graph decides which keys to clear,
so a new cached value cannot be forgotten on some write path.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Callable, FrozenSet, List, Optional

from .keys import LIST_FACETS, CacheKey, Keys
from .types import ActivityType
from ..util.logging import logger


class MutationEvent(str, Enum):
    SUBMISSION_CREATED = "submission_created"
    SUBMISSION_REVIEWED = "submission_reviewed"
    ACTIVITY_CHANGED = "activity_changed"
    POINTS_CHANGED = "points_changed"
    USER_CHANGED = "user_changed"
    ALL = "all"


class Store(str, Enum):
    """Which local cache a value lives in."""

    PERSISTENT = "persistent"
    SESSION = "session"


@dataclass(frozen=True)
class InvalidationScope:
    """Identifiers available to key builders when an event fires."""

    user_id: Optional[str] = None
    activity_type: Optional[ActivityType] = None
    activity_id: Optional[str] = None


@dataclass(frozen=True)
class CachedValue:
    name: str
    build: Callable[[InvalidationScope], List[CacheKey]]
    invalidated_by: FrozenSet[MutationEvent]
    store: Store = Store.PERSISTENT
    # Built keys name a family of entries, cleared by prefix
    prefix: bool = False

    def render(self, key: CacheKey) -> str:
        return f"{key.render()}_*" if self.prefix else key.render()


def _per_user(builder):
    def build(scope: InvalidationScope) -> List[CacheKey]:
        return [builder(scope.user_id)] if scope.user_id else []
    return build


def _per_user_facets(builder):
    def build(scope: InvalidationScope) -> List[CacheKey]:
        if not scope.user_id:
            return []
        return [builder(scope.user_id, facet) for facet in LIST_FACETS]
    return build


def _activity_list(scope: InvalidationScope) -> List[CacheKey]:
    types = [scope.activity_type] if scope.activity_type else list(ActivityType)
    return [Keys.activity_list(t) for t in types]


def _events(*events: MutationEvent) -> FrozenSet[MutationEvent]:
    return frozenset(events) | {MutationEvent.ALL}


_SUBMISSION = (MutationEvent.SUBMISSION_CREATED, MutationEvent.SUBMISSION_REVIEWED)
_LISTS = _events(*_SUBMISSION, MutationEvent.ACTIVITY_CHANGED)
# Any points change can move every attendee's rank
_STANDINGS = _events(MutationEvent.POINTS_CHANGED, MutationEvent.USER_CHANGED)

DEPENDENCIES: List[CachedValue] = [
    CachedValue("completions", _per_user(Keys.completions), _events(*_SUBMISSION)),
    CachedValue("local_completions", _per_user(Keys.local_completions), _events(MutationEvent.USER_CHANGED),
                store=Store.SESSION),
    CachedValue("optimistic_pending", _per_user(Keys.optimistic_pending), _LISTS, store=Store.SESSION),
    CachedValue("pending_activities", _per_user_facets(Keys.pending_activities), _LISTS),
    CachedValue("pending_version", _per_user_facets(Keys.pending_version), _LISTS),
    CachedValue("completed_activities", _per_user_facets(Keys.completed_activities), _LISTS),
    CachedValue("completed_version", _per_user_facets(Keys.completed_version), _LISTS),
    CachedValue("user_rank", lambda scope: [Keys.all_ranks()], _STANDINGS, prefix=True),
    CachedValue("leaderboard", lambda scope: [Keys.leaderboard()], _STANDINGS),
    CachedValue("activity_list", _activity_list, _events(MutationEvent.ACTIVITY_CHANGED)),
    CachedValue("attendee_directory", lambda scope: [Keys.attendee_directory()],
                _events(MutationEvent.USER_CHANGED)),
]


def _affected(event, user_id=None, activity_type=None, activity_id=None):
    event = MutationEvent(event)
    scope = InvalidationScope(
        user_id=user_id,
        activity_type=ActivityType.parse(activity_type) if activity_type else None,
        activity_id=activity_id,
    )
    seen = set()
    for cached in DEPENDENCIES:
        if event not in cached.invalidated_by:
            continue
        for key in cached.build(scope):
            text = cached.render(key)
            if text not in seen:
                seen.add(text)
                yield cached, text


def keys_invalidated_by(event, user_id: str = None, activity_type=None, activity_id: str = None) -> List[str]:
    """Render every key made stale by an event, in declaration order, without duplicates.

    A key ending in `*` stands for every entry sharing that prefix.
    """
    return [text for _, text in _affected(event, user_id, activity_type, activity_id)]


class Invalidator:
    """Applies invalidation events to the persistent cache and the session cache."""

    def __init__(self, cache, session_cache=None):
        self.cache = cache
        self.session_cache = session_cache if session_cache is not None else cache

    def _cache_for(self, store: Store):
        return self.session_cache if store is Store.SESSION else self.cache

    def invalidate(self, event, user_id: str = None, activity_type=None, activity_id: str = None) -> List[str]:
        event = MutationEvent(event)
        if event is MutationEvent.ALL and not user_id:
            self.cache.clear_all()
            if self.session_cache is not self.cache:
                self.session_cache.clear_all()
            logger.log_invalidation(event.value, ["*"])
            return ["*"]

        keys = []
        for cached, text in _affected(event, user_id, activity_type, activity_id):
            target = self._cache_for(cached.store)
            if cached.prefix:
                target.clear_prefix(text[:-1])
            else:
                target.clear(text)
            keys.append(text)
        logger.log_invalidation(event.value, keys, user_id)
        return keys
