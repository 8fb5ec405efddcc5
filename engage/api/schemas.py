"""
Request/response models for the engage API, plus the submission document
shape validated before durable writes.
"""

from pydantic import BaseModel, ConfigDict, field_validator
from typing import Optional, List, Dict, Any

_ACTIVITY_TYPES = ['task', 'quiz', 'form']
_STATUSES = ['pending', 'approved', 'rejected', 'completed']


class SubmissionDocument(BaseModel):
    """A submission as stored in the durable `submissions` collection."""
    model_config = ConfigDict(extra='allow')

    userId: str
    submissionType: str = 'task'
    status: str = 'pending'
    submittedAt: int
    taskId: Optional[str] = None
    quizId: Optional[str] = None
    formId: Optional[str] = None
    points: int = 0

    @field_validator('userId')
    @classmethod
    def user_must_not_be_empty(cls, v):
        if not v.strip():
            raise ValueError('userId cannot be empty')
        return v

    @field_validator('submissionType')
    @classmethod
    def type_must_be_valid(cls, v):
        if v not in _ACTIVITY_TYPES:
            raise ValueError(f'submissionType must be one of: {_ACTIVITY_TYPES}')
        return v

    @field_validator('status')
    @classmethod
    def status_must_be_valid(cls, v):
        if v not in _STATUSES:
            raise ValueError(f'status must be one of: {_STATUSES}')
        return v


class SubmissionCreateRequest(BaseModel):
    """Activity title and points always come from the stored activity."""
    model_config = ConfigDict(extra='forbid')

    activity_type: str
    activity_id: str
    user_name: str = ""
    payload: Dict[str, Any] = {}

    @field_validator('activity_type')
    @classmethod
    def activity_type_must_be_valid(cls, v):
        if v not in _ACTIVITY_TYPES:
            raise ValueError(f'activity_type must be one of: {_ACTIVITY_TYPES}')
        return v

    @field_validator('activity_id')
    @classmethod
    def activity_id_must_not_be_empty(cls, v):
        if not v.strip():
            raise ValueError('activity_id cannot be empty')
        return v


class ReviewDecisionRequest(BaseModel):
    reviewer: str
    reason: str = ""

    @field_validator('reviewer')
    @classmethod
    def reviewer_must_not_be_empty(cls, v):
        if not v.strip():
            raise ValueError('reviewer cannot be empty')
        return v


class InvalidateRequest(BaseModel):
    event: str
    user_id: Optional[str] = None
    activity_type: Optional[str] = None
    activity_id: Optional[str] = None

    @field_validator('event')
    @classmethod
    def event_must_be_valid(cls, v):
        valid_events = ['submission_created', 'submission_reviewed', 'activity_changed',
                        'points_changed', 'user_changed', 'all']
        if v not in valid_events:
            raise ValueError(f'event must be one of: {valid_events}')
        return v


class ActionResponse(BaseModel):
    level: str
    message: str
    data: Dict[str, Any] = {}


class EligibilityResponse(BaseModel):
    allowed: bool
    reason: str


class ActivityListResponse(BaseModel):
    items: List[Dict[str, Any]]
    source: Optional[str] = None
    error: Optional[str] = None


class CompletionStatusResponse(BaseModel):
    tasks: Dict[str, Any]
    quizzes: Dict[str, Any]
    forms: Dict[str, Any]
    error: Optional[str] = None


class SubmissionListResponse(BaseModel):
    status: str
    submissions: List[Dict[str, Any]]
    counts: Dict[str, int]


class InvalidateResponse(BaseModel):
    event: str
    cleared: List[str]


class HealthResponse(BaseModel):
    status: str
    version: str
    db_health: bool
    read_through_available: bool
    pending_optimistic: int
