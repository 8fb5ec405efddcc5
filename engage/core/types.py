"""
Shared types for the engage caching layer.
"""

import time
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Any, Dict, List, Optional


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


class CacheKind(str, Enum):
    """TTL class of a local cache entry."""
    USER_DATA = "USER_DATA"
    COMPLETIONS = "COMPLETIONS"
    QUIZ_LIST = "QUIZ_LIST"
    TASK_LIST = "TASK_LIST"
    FORM_LIST = "FORM_LIST"
    LEADERBOARD = "LEADERBOARD"
    RANK = "RANK"
    DIRECTORY = "DIRECTORY"
    SYSTEM = "SYSTEM"


class ActivityType(str, Enum):
    TASK = "task"
    QUIZ = "quiz"
    FORM = "form"

    @property
    def plural(self) -> str:
        """Collection key used inside completion blobs and activity lists."""
        return {"task": "tasks", "quiz": "quizzes", "form": "forms"}[self.value]

    @classmethod
    def parse(cls, value: Any) -> "ActivityType":
        """Accept enum members, singular or plural names; unknown values are tasks."""
        if isinstance(value, ActivityType):
            return value
        text = str(value or "").strip().lower()
        for member in cls:
            if text in (member.value, member.plural):
                return member
        return cls.TASK


class SubmissionStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    COMPLETED = "completed"  # quizzes and forms, never reviewed


@dataclass
class CacheEntry:
    """Envelope persisted for every local cache entry."""

    value: Any
    kind: CacheKind
    stored_at: int

    def to_dict(self) -> Dict[str, Any]:
        return {"value": self.value, "kind": self.kind.value, "storedAt": self.stored_at}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CacheEntry":
        return cls(
            value=data.get("value"),
            kind=CacheKind(data["kind"]),
            stored_at=int(data["storedAt"]),
        )


@dataclass
class CompletionRecord:
    """Per user, per activity submission/approval state."""

    completed: bool = True
    status: Optional[str] = None
    submitted_at: Optional[int] = None
    score: Optional[float] = None
    last_updated: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {"completed": self.completed}
        if self.status is not None:
            data["status"] = self.status
        if self.submitted_at is not None:
            data["submittedAt"] = self.submitted_at
        if self.score is not None:
            data["score"] = self.score
        if self.last_updated is not None:
            data["lastUpdated"] = self.last_updated
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CompletionRecord":
        return cls(
            completed=bool(data.get("completed", True)),
            status=data.get("status"),
            submitted_at=data.get("submittedAt"),
            score=data.get("score"),
            last_updated=data.get("lastUpdated"),
        )


@dataclass
class OptimisticOperation:
    """A local mutation rendered before its authoritative write resolved."""

    operation_id: str
    kind: str  # add | update | remove
    item_type: str
    item_id: Any
    target_list: Optional[List[Dict[str, Any]]]
    created_at: int
    prior_snapshot: Optional[Any] = None
    removed_item: Optional[Dict[str, Any]] = None
    removed_index: Optional[int] = None
    inserted: bool = False  # add only: False when the id was already listed
    splice_handle: Optional[Any] = field(default=None, repr=False)
    spliced: bool = False


@dataclass(frozen=True)
class Eligibility:
    """Answer to "may this user act on this activity", with a reason the UI can show."""

    allowed: bool
    reason: str = ""

    def __bool__(self) -> bool:
        return self.allowed


@dataclass
class ActionOutcome:
    """User-facing result of a submission or review action."""

    level: str  # success | info | error
    message: str
    data: Dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.level == "success"

    @classmethod
    def success(cls, message: str, **data) -> "ActionOutcome":
        return cls("success", message, data)

    @classmethod
    def info(cls, message: str, **data) -> "ActionOutcome":
        return cls("info", message, data)

    @classmethod
    def error(cls, message: str, **data) -> "ActionOutcome":
        return cls("error", message, data)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class CacheReadResult:
    """Result of a layered cache read."""

    data: Any = None
    source: Optional[str] = None  # local | read_through
    error: Optional[str] = None
