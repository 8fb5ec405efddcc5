"""
Shared fixtures: a controllable clock, services over a temporary SQLite file,
and a small seeded event (one attendee, one task, one quiz, one form).
"""

import asyncio

import pytest

from engage.core.local_cache import volatile_cache
from engage.core.services import build_services
from engage.core.stores import InMemoryReadThroughStore

START_MS = 1_700_000_000_000


class FakeClock:
    """Callable epoch-ms clock that only moves when told to."""

    def __init__(self, start: int = START_MS):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> int:
        self.now += ms
        return self.now


QUIZ = {
    "title": "Venue trivia",
    "status": "active",
    "totalPoints": 10,
    "questions": [
        {"id": "q-a", "type": "multiple", "correctAnswer": 1, "points": 5},
        {"id": "q-b", "type": "text", "correctAnswer": "Paris", "points": 5},
    ],
}


async def seed_event(services, clock):
    """Users first, so activity writes rebuild their pending lists."""
    await services.durable.set("users", "u1", {"name": "Alice", "points": 0, "role": "attendee"})
    await services.durable.set("users", "u2", {"name": "Bob", "points": 0, "role": "attendee"})
    await services.durable.set("users", "admin", {"name": "Admin", "points": 0, "role": "admin"})
    await services.durable.set("tasks", "t1", {
        "title": "Photo booth", "points": 10, "type": "upload", "status": "active", "createdAt": clock() - 3000
    })
    await services.durable.set("quizzes", "q1", dict(QUIZ, createdAt=clock() - 2000))
    await services.durable.set("forms", "f1", {
        "title": "Feedback", "points": 5, "status": "active", "createdAt": clock() - 1000
    })


def task_submission(clock, user_id="u1", task_id="t1", **overrides):
    doc = {
        "userId": user_id,
        "userName": "Alice",
        "submissionType": "task",
        "taskId": task_id,
        "title": "Photo booth",
        "status": "pending",
        "submittedAt": clock(),
        "points": 10,
    }
    doc.update(overrides)
    return doc


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def read_through():
    return InMemoryReadThroughStore()


@pytest.fixture
def cache(clock):
    return volatile_cache(clock=clock)


@pytest.fixture
def services(tmp_path, clock):
    services = build_services(
        db_path=str(tmp_path / "engage.db"),
        persistent=False,
        clock=clock,
        exit_transition_ms=0,
        refresh_delay_ms=60_000,
        debounce_ms=10,
        quiet_ms=50,
    )
    yield services
    services.close()


@pytest.fixture
def seeded(services, clock):
    asyncio.run(seed_event(services, clock))
    return services
