"""
HTTP surface of the engage caching layer.

Services are built once per app and kept on app.state; endpoints reach them
through the get_services dependency.
"""

from contextlib import asynccontextmanager

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware

from .schemas import (
    ActionResponse,
    ActivityListResponse,
    CompletionStatusResponse,
    EligibilityResponse,
    HealthResponse,
    InvalidateRequest,
    InvalidateResponse,
    ReviewDecisionRequest,
    SubmissionCreateRequest,
    SubmissionListResponse,
)
from ..core.config import VERSION, debug_enabled, ensure_data_directories, validate_config
from ..core.db import health_check
from ..core.services import Services, build_services
from ..core.types import ActionOutcome, ActivityType
from ..util.logging import logger

_REVIEW_FILTERS = ["pending", "approved", "rejected", "all"]
_ACTIVITY_NAMES = [t.value for t in ActivityType] + [t.plural for t in ActivityType]

router = APIRouter()


@asynccontextmanager
async def lifespan(app: FastAPI):
    if getattr(app.state, "services", None) is None:
        for issue in validate_config():
            logger.warning(f"Configuration issue: {issue}")
        ensure_data_directories()
        app.state.services = build_services()
    yield
    app.state.services.close()


def create_app(services: Services = None) -> FastAPI:
    """Build the FastAPI app. Tests pass their own services."""
    app = FastAPI(
        title="Engage Cache API",
        version=VERSION,
        description="Caching and optimistic-update layer for event engagement",
        docs_url="/docs" if debug_enabled() else None,
        redoc_url="/redoc" if debug_enabled() else None,
        lifespan=lifespan,
    )
    app.state.services = services

    # Add CORS middleware to allow frontend connections
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:3000", "http://127.0.0.1:3000"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.include_router(router)
    return app


def get_services(request: Request) -> Services:
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(status_code=503, detail="Services not initialized")
    return services


def _action_response(outcome: ActionOutcome) -> ActionResponse:
    """Errors become HTTP errors; success and info pass through."""
    if outcome.level == "error":
        code = outcome.data.get("code")
        if code == "permission-denied":
            status_code = 403
        elif code == "not-found" or "not found" in outcome.message.lower():
            status_code = 404
        else:
            status_code = 400
        raise HTTPException(status_code=status_code, detail=outcome.message)
    return ActionResponse(**outcome.to_dict())


@router.get("/health", response_model=HealthResponse)
def health_check_endpoint(services: Services = Depends(get_services)):
    """Check system health."""
    db_health = health_check(services.durable.db_path)
    return HealthResponse(
        status="healthy" if db_health else "unhealthy",
        version=VERSION,
        db_health=db_health,
        read_through_available=services.read_through.available,
        pending_optimistic=services.tracker.pending_count(),
    )


@router.get("/users/{user_id}/pending", response_model=ActivityListResponse)
async def pending_activities_endpoint(user_id: str, services: Services = Depends(get_services)):
    """Pending activities, including optimistic removals still in flight."""
    items = await services.submissions.load_pending(user_id)
    return ActivityListResponse(items=items, source="read_through")


@router.get("/users/{user_id}/completed", response_model=ActivityListResponse)
async def completed_activities_endpoint(user_id: str, services: Services = Depends(get_services)):
    items = await services.reader.completed_activities(user_id)
    return ActivityListResponse(items=items, source="read_through")


@router.get("/users/{user_id}/completions", response_model=CompletionStatusResponse)
async def completions_endpoint(user_id: str, fresh: bool = True, services: Services = Depends(get_services)):
    status = await services.completions.completion_status(user_id, fresh=fresh)
    return CompletionStatusResponse(
        tasks=status.get("tasks") or {},
        quizzes=status.get("quizzes") or {},
        forms=status.get("forms") or {},
        error=status.get("error"),
    )


@router.get("/users/{user_id}/stats")
async def stats_endpoint(user_id: str, services: Services = Depends(get_services)):
    return await services.reader.user_stats(user_id)


@router.get("/users/{user_id}/eligibility/{activity_type}/{activity_id}", response_model=EligibilityResponse)
async def eligibility_endpoint(user_id: str, activity_type: str, activity_id: str,
                               services: Services = Depends(get_services)):
    if activity_type not in _ACTIVITY_NAMES:
        raise HTTPException(status_code=400, detail=f"Invalid activity type: {activity_type}")
    eligibility = await services.completions.eligibility(user_id, activity_type, activity_id)
    return EligibilityResponse(allowed=eligibility.allowed, reason=eligibility.reason)


@router.post("/users/{user_id}/submissions", response_model=ActionResponse)
async def create_submission_endpoint(user_id: str, request: SubmissionCreateRequest,
                                     services: Services = Depends(get_services)):
    """Submit a task, quiz or form for a user."""
    payload = dict(request.payload)
    if request.user_name:
        payload.setdefault("userName", request.user_name)
    outcome = await services.submissions.submit(user_id, request.activity_type, request.activity_id, payload)
    return _action_response(outcome)


# Admin review endpoints
@router.get("/admin/submissions", response_model=SubmissionListResponse)
async def list_submissions_endpoint(status: str = "pending", services: Services = Depends(get_services)):
    if status not in _REVIEW_FILTERS:
        raise HTTPException(status_code=400, detail=f"status must be one of: {_REVIEW_FILTERS}")
    submissions = await services.review.load(status)
    return SubmissionListResponse(
        status=status,
        submissions=list(submissions),
        counts=services.review.counts(),
    )


@router.post("/admin/submissions/{submission_id}/approve", response_model=ActionResponse)
async def approve_submission_endpoint(submission_id: str, request: ReviewDecisionRequest,
                                      services: Services = Depends(get_services)):
    review = services.review
    if not review.submissions:
        await review.load(review.active_tab)
    outcome = await review.handle_approve(submission_id, request.reviewer)
    return _action_response(outcome)


@router.post("/admin/submissions/{submission_id}/reject", response_model=ActionResponse)
async def reject_submission_endpoint(submission_id: str, request: ReviewDecisionRequest,
                                     services: Services = Depends(get_services)):
    review = services.review
    if not review.submissions:
        await review.load(review.active_tab)
    outcome = await review.handle_reject(submission_id, request.reviewer, request.reason)
    return _action_response(outcome)


@router.get("/leaderboard")
async def leaderboard_endpoint(limit: int = 50, services: Services = Depends(get_services)):
    if limit < 1:
        raise HTTPException(status_code=400, detail="limit must be >= 1")
    return {"leaderboard": await services.reader.leaderboard(limit)}


@router.get("/users/{user_id}/rank")
async def rank_endpoint(user_id: str, services: Services = Depends(get_services)):
    return await services.reader.user_rank(user_id)


@router.get("/attendees", response_model=ActivityListResponse)
async def attendees_endpoint(services: Services = Depends(get_services)):
    items = await services.reader.attendee_directory()
    return ActivityListResponse(items=items, source="read_through")


@router.get("/activities/{activity_type}", response_model=ActivityListResponse)
async def activity_list_endpoint(activity_type: str, services: Services = Depends(get_services)):
    if activity_type not in _ACTIVITY_NAMES:
        raise HTTPException(status_code=400, detail=f"Invalid activity type: {activity_type}")
    items = await services.reader.activity_list(activity_type)
    return ActivityListResponse(items=items, source="read_through")


@router.get("/cache/metrics")
def cache_metrics_endpoint(services: Services = Depends(get_services)):
    return services.reader.metrics()


@router.post("/cache/invalidate", response_model=InvalidateResponse)
def invalidate_endpoint(request: InvalidateRequest, services: Services = Depends(get_services)):
    cleared = services.invalidator.invalidate(
        request.event,
        user_id=request.user_id,
        activity_type=request.activity_type,
        activity_id=request.activity_id,
    )
    return InvalidateResponse(event=request.event, cleared=cleared)


app = create_app()
