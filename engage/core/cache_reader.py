"""
Layered reads of the precomputed aggregates.

Layer 1: local cache (skipped for highly dynamic paths)
Layer 2: read-through cache store
Layer 3: an error result; attendees never fall back to the durable store
"""

import asyncio
from typing import Any, Callable, Dict, List, Optional

from .config import READ_THROUGH_TTL_SEC
from .keys import Keys, KeyLike, Paths, full_path, path_key
from .local_cache import LocalCache
from .stores import IReadThroughStore
from .types import ActivityType, CacheKind, CacheReadResult, SubmissionStatus, now_ms
from ..util.logging import logger

# Path segments whose values change with every submission or review
_DYNAMIC_SEGMENTS = {"pendingActivities", "completedActivities", "stats"}
_INDEXED_SEGMENTS = {"byId", "byPoints", "byDate", "byStatus"}


def is_dynamic_path(path: str) -> bool:
    return bool(_DYNAMIC_SEGMENTS.intersection(full_path(path).split("/")))


class CacheReader:
    """Reads read-through paths through the local cache, with request coalescing and metrics."""

    def __init__(self, read_through: IReadThroughStore, local_cache: LocalCache,
                 clock: Callable[[], int] = now_ms, default_ttl_ms: int = READ_THROUGH_TTL_SEC * 1000):
        self.read_through = read_through
        self.local_cache = local_cache
        self.clock = clock
        self.default_ttl_ms = default_ttl_ms
        self._in_flight: Dict[str, asyncio.Future] = {}
        self.reset_metrics()

    def reset_metrics(self) -> None:
        self._metrics = {
            "hits": 0,
            "misses": 0,
            "local_hits": 0,
            "read_through_reads": 0,
            "precomputed_reads": 0,
            "indexed_reads": 0,
            "coalesced": 0,
            "version_hits": 0,
        }

    def metrics(self) -> Dict[str, Any]:
        total = self._metrics["hits"] + self._metrics["misses"]
        hit_rate = round(self._metrics["hits"] / total * 100, 1) if total else 0.0
        return dict(self._metrics, total=total, hit_rate=hit_rate)

    async def read(self, path: str, use_local: bool = True, ttl_ms: Optional[int] = None,
                   kind: CacheKind = CacheKind.SYSTEM) -> CacheReadResult:
        full = full_path(path)
        if ttl_ms is None:
            ttl_ms = self.default_ttl_ms if kind is CacheKind.SYSTEM else self.local_cache.ttl(kind)
        use_local = use_local and not is_dynamic_path(full)
        storage_key = path_key(full)

        if use_local:
            cached = self.local_cache.get(storage_key)
            if cached and cached.get("data") is not None and self.clock() - cached.get("timestamp", 0) < ttl_ms:
                self._metrics["hits"] += 1
                self._metrics["local_hits"] += 1
                return CacheReadResult(data=cached["data"], source="local")

        future = self._in_flight.get(full)
        if future is None:
            future = asyncio.ensure_future(self._read_remote(full))
            self._in_flight[full] = future
            future.add_done_callback(lambda done: self._forget(full, done))
        else:
            self._metrics["coalesced"] += 1
        result = await future

        if use_local and result.data is not None:
            self.local_cache.set(storage_key, {"data": result.data, "timestamp": self.clock()}, kind)
        return result

    def _forget(self, full: str, future: asyncio.Future) -> None:
        if self._in_flight.get(full) is future:
            del self._in_flight[full]

    async def _read_remote(self, full: str) -> CacheReadResult:
        try:
            data = await self.read_through.get(full)
        except Exception as e:
            self._metrics["misses"] += 1
            logger.log_cache_operation("read_through", full, "failure", {"error": str(e)})
            return CacheReadResult(error=str(e) or "Read-through read failed")

        self._metrics["read_through_reads"] += 1
        if data is None:
            self._metrics["misses"] += 1
            return CacheReadResult(error=f"Cache path {full} does not exist")

        segments = set(full.split("/"))
        if segments & {"pendingActivities", "completedActivities"}:
            self._metrics["precomputed_reads"] += 1
        elif segments & _INDEXED_SEGMENTS:
            self._metrics["indexed_reads"] += 1
        self._metrics["hits"] += 1
        return CacheReadResult(data=data, source="read_through")

    async def _versioned_list(self, list_path: str, metadata_path: str,
                              list_key: KeyLike, version_key: KeyLike) -> List[Dict[str, Any]]:
        """A precomputed list, served locally while its aggregation version is unchanged."""
        metadata = await self.read(metadata_path, use_local=False)
        version = metadata.data.get("version") if isinstance(metadata.data, dict) else None

        cached = self.local_cache.get(list_key)
        if version is not None and isinstance(cached, list) and self.local_cache.get(version_key) == version:
            self._metrics["version_hits"] += 1
            return list(cached)

        result = await self.read(list_path, use_local=False)
        items = list(result.data or [])
        if version is not None and result.data is not None:
            self.local_cache.set(list_key, items, CacheKind.USER_DATA)
            self.local_cache.set(version_key, version, CacheKind.USER_DATA)
        return items

    async def pending_activities(self, user_id: str, facet: str = "combined") -> List[Dict[str, Any]]:
        return await self._versioned_list(
            Paths.pending_activities(user_id, facet), Paths.pending_activities(user_id, "metadata"),
            Keys.pending_activities(user_id, facet), Keys.pending_version(user_id, facet),
        )

    async def completed_activities(self, user_id: str, facet: str = "combined") -> List[Dict[str, Any]]:
        items = await self._versioned_list(
            Paths.completed_activities(user_id, facet), Paths.completed_activities(user_id, "metadata"),
            Keys.completed_activities(user_id, facet), Keys.completed_version(user_id, facet),
        )
        activities = []
        for item in items:
            item = dict(item)
            item["id"] = item.get("id") or item.get("quizId") or item.get("taskId") or item.get("formId")
            if not item.get("itemType"):
                item["itemType"] = ("quiz" if item.get("quizId") else "task" if item.get("taskId")
                                    else "form" if item.get("formId") else "unknown")
            activities.append(item)
        return activities

    async def completion_status(self, user_id: str, fresh: bool = False) -> Dict[str, Any]:
        """Completion blob with tasks/quizzes/forms maps always present."""
        if not user_id:
            return {"quizzes": {}, "tasks": {}, "forms": {}}

        result = await self.read(Paths.completions(user_id), use_local=not fresh, kind=CacheKind.COMPLETIONS)
        data = result.data
        if not isinstance(data, dict):
            return {
                "quizzes": {},
                "tasks": {},
                "forms": {},
                "lastUpdated": self.clock(),
                "error": result.error or "Completion status cache not available. Please refresh in a moment.",
            }

        data = dict(data)
        # Older aggregates wrote quizzes under a naive plural
        if "quizs" in data and "quizzes" not in data:
            data["quizzes"] = data.pop("quizs")
        for plural in ("quizzes", "tasks", "forms"):
            data.setdefault(plural, {})
            if data[plural] is None:
                data[plural] = {}
        return data

    async def user_stats(self, user_id: str) -> Dict[str, Any]:
        result = await self.read(Paths.user_stats(user_id))
        if isinstance(result.data, dict):
            return result.data
        return {
            "totalPoints": 0,
            "rank": 0,
            "quizzesCompleted": 0,
            "tasksCompleted": 0,
            "formsCompleted": 0,
            "pendingSubmissions": 0,
            "approvedSubmissions": 0,
            "rejectedSubmissions": 0,
            "error": result.error or "Stats cache not available",
        }

    async def leaderboard(self, limit: int = 50) -> List[Dict[str, Any]]:
        result = await self.read(Paths.leaderboard(), kind=CacheKind.LEADERBOARD)
        data = result.data or []
        if isinstance(data, dict):
            data = [data[k] for k in sorted(data, key=lambda k: int(k)) if data[k]]
        return [entry for entry in data if entry][:limit]

    async def user_rank(self, user_id: str) -> Dict[str, Any]:
        result = await self.read(Paths.rank(user_id), kind=CacheKind.RANK)
        if isinstance(result.data, dict):
            return result.data
        return {"rank": 0, "points": 0, "error": result.error or "Rank not available"}

    async def activity_list(self, activity_type) -> List[Dict[str, Any]]:
        """Active activities of one type, as published by aggregation."""
        activity_type = ActivityType.parse(activity_type)
        kind = {
            ActivityType.TASK: CacheKind.TASK_LIST,
            ActivityType.QUIZ: CacheKind.QUIZ_LIST,
            ActivityType.FORM: CacheKind.FORM_LIST,
        }[activity_type]
        result = await self.read(Paths.activity_list(activity_type), kind=kind)
        return list(result.data or [])

    async def attendee_directory(self) -> List[Dict[str, Any]]:
        result = await self.read(Paths.attendee_directory(), kind=CacheKind.DIRECTORY)
        return list(result.data or [])

    async def submission_ids(self, status) -> List[str]:
        """Ids indexed under a status; always read fresh."""
        result = await self.read(Paths.submissions_by_status(SubmissionStatus(status)), use_local=False)
        return sorted(result.data.keys()) if isinstance(result.data, dict) else []

    async def submission_metadata(self, submission_id: str) -> Optional[Dict[str, Any]]:
        result = await self.read(Paths.submission_metadata(submission_id), use_local=False)
        return result.data if isinstance(result.data, dict) else None
