"""
Typed cache keys and read-through cache paths.

Local cache keys render as `<scope>_<entity>_<id>_<facet>`; read-through paths
live under the `cache/` root and map to local keys with `rtdb_cache_` + path.
"""

from dataclasses import dataclass
from typing import Union

from .config import READ_THROUGH_ROOT
from .types import ActivityType, SubmissionStatus


@dataclass(frozen=True)
class CacheKey:
    """A local cache key built from its parts instead of string concatenation."""

    scope: str
    entity: str = ""
    id: str = ""
    facet: str = ""

    def render(self) -> str:
        return "_".join(part for part in (self.scope, self.entity, self.id, self.facet) if part)

    def __str__(self) -> str:
        return self.render()


KeyLike = Union[str, CacheKey]


def render_key(key: KeyLike) -> str:
    if isinstance(key, CacheKey):
        return key.render()
    return str(key)


def full_path(path: str) -> str:
    """Prefix a read-through path with the cache root if it is missing."""
    path = path.strip("/")
    root = f"{READ_THROUGH_ROOT}/"
    return path if path.startswith(root) else f"{root}{path}"


def path_key(path: str) -> CacheKey:
    """Local cache key that mirrors a read-through path."""
    return CacheKey("rtdb", "cache", full_path(path).replace("/", "_"))


class Paths:
    """Read-through cache path builders (relative to the cache root)."""

    @staticmethod
    def completions(user_id: str) -> str:
        return f"users/{user_id}/completions"

    @staticmethod
    def pending_activities(user_id: str, facet: str = "combined") -> str:
        return f"users/{user_id}/pendingActivities/{facet}"

    @staticmethod
    def completed_activities(user_id: str, facet: str = "combined") -> str:
        return f"users/{user_id}/completedActivities/{facet}"

    @staticmethod
    def user_stats(user_id: str) -> str:
        return f"users/{user_id}/stats"

    @staticmethod
    def leaderboard() -> str:
        return "leaderboard/top50"

    @staticmethod
    def ranks() -> str:
        return "leaderboard/ranks"

    @staticmethod
    def rank(user_id: str) -> str:
        return f"{Paths.ranks()}/{user_id}"

    @staticmethod
    def attendee_directory() -> str:
        return "attendeeCache/directory"

    @staticmethod
    def submissions_by_status(status) -> str:
        return f"admin/submissions/byStatus/{SubmissionStatus(status).value}"

    @staticmethod
    def submission_metadata(submission_id: str) -> str:
        return f"admin/submissions/metadata/{submission_id}"

    @staticmethod
    def activity_list(activity_type) -> str:
        return f"activities/{ActivityType.parse(activity_type).plural}/list"


# Facets the aggregation job writes under each user's activity lists
LIST_FACETS = ("combined", "tasks", "quizzes", "forms")


class Keys:
    """Local cache key builders.

    Keys for values read from the read-through store mirror their path, so the
    reader and the invalidation graph always agree on where a value lives.
    """

    @staticmethod
    def completions(user_id: str) -> CacheKey:
        return path_key(Paths.completions(user_id))

    @staticmethod
    def local_completions(user_id: str) -> CacheKey:
        """Overlay of records marked completed in this session, ahead of aggregation."""
        return CacheKey("user", user_id, "completions", "local")

    @staticmethod
    def pending_activities(user_id: str, facet: str = "combined") -> CacheKey:
        return path_key(Paths.pending_activities(user_id, facet))

    @staticmethod
    def completed_activities(user_id: str, facet: str = "combined") -> CacheKey:
        return path_key(Paths.completed_activities(user_id, facet))

    @staticmethod
    def pending_version(user_id: str, facet: str = "combined") -> CacheKey:
        return CacheKey("pending", user_id, "version", facet)

    @staticmethod
    def completed_version(user_id: str, facet: str = "combined") -> CacheKey:
        return CacheKey("completed", user_id, "version", facet)

    @staticmethod
    def optimistic_pending(user_id: str) -> CacheKey:
        """Pending list with in-flight submissions already removed."""
        return CacheKey("pending", user_id, "optimistic")

    @staticmethod
    def user_rank(user_id: str) -> CacheKey:
        return path_key(Paths.rank(user_id))

    @staticmethod
    def all_ranks() -> CacheKey:
        return path_key(Paths.ranks())

    @staticmethod
    def leaderboard() -> CacheKey:
        return path_key(Paths.leaderboard())

    @staticmethod
    def activity_list(activity_type) -> CacheKey:
        return path_key(Paths.activity_list(activity_type))

    @staticmethod
    def attendee_directory() -> CacheKey:
        return path_key(Paths.attendee_directory())
