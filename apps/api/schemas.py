"""
Workout session document schemas.

Stored documents use camelCase keys; Python code uses the snake_case
attribute names. Dump with `to_document()` before writing.
"""
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel
from datetime import datetime
from typing import Optional, List, Dict, Any, Literal


SessionStatus = Literal["scheduled", "in_progress", "completed", "abandoned", "skipped"]
SetStatus = Literal["pending", "completed", "skipped"]
SessionStep = Literal[
    "pre_workout_questionnaire",
    "exercises",
    "rpe",
    "post_workout_questionnaire",
    "questionnaire",
    "summary",
]
StatusReasonCode = Literal["injury", "illness", "schedule_conflict", "fatigue", "other"]
RPEEmojiCategory = Literal["easy", "medium", "hard", "extreme"]


class DocumentModel(BaseModel):
    """Base for anything stored inside a session document."""
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
    )

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class UserInfo(DocumentModel):
    user_id: str
    member_id: Optional[str] = None
    name: Optional[str] = None
    email: Optional[str] = None
    profile_image_url: Optional[str] = None


class CreatedBy(DocumentModel):
    user_id: str
    role: Literal["athlete", "coach", "system"] = "athlete"


class RPEValue(DocumentModel):
    numeric: float = Field(ge=1, le=10)
    emoji_category: Optional[RPEEmojiCategory] = None


class StatusReason(DocumentModel):
    reason: StatusReasonCode
    note: Optional[str] = None


class WorkoutSnapshot(DocumentModel):
    """Copy of the workout template taken when the session starts."""
    model_config = ConfigDict(frozen=True)

    workout_id: str
    name: str = ""
    description: str = ""
    cover_image: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    rpe: Optional[Dict[str, Any]] = None
    flow: Optional[Dict[str, Any]] = None


class SessionSet(DocumentModel):
    set_number: int = Field(ge=1)
    status: SetStatus = "pending"
    prescribed: Dict[str, Any] = Field(default_factory=dict)
    performed: Optional[Dict[str, Any]] = None
    is_added: bool = False
    computed: Optional[Dict[str, Any]] = None


class MetricSummary(DocumentModel):
    prescribed_total: float = 0
    performed_total: float = 0
    performed_count: int = 0
    average_performed: Optional[float] = None
    compliance_percent: Optional[float] = None
    delta: Optional[float] = None
    delta_percent: Optional[float] = None


class ExerciseSummary(DocumentModel):
    total_sets: int = 0
    completed_sets: int = 0
    extra_sets: int = 0
    compliance_percent: float = 0
    metrics: Dict[str, MetricSummary] = Field(default_factory=dict)
    rpe: Optional[float] = None
    performance_score: Optional[float] = None
    total_volume: Optional[float] = None


class SessionExercise(DocumentModel):
    exercise_id: str
    exercise_name: Optional[str] = None
    exercise_type: Optional[str] = None
    exercise_image: Optional[str] = None
    exercise_rpe_score: Optional[float] = Field(default=None, alias="exerciseRPE")
    exercise_rpe: Optional[RPEValue] = None
    exercise_notes: Optional[str] = None
    sets: List[SessionSet] = Field(default_factory=list)
    summary: Optional[ExerciseSummary] = None

    @model_validator(mode="after")
    def _set_numbers_are_contiguous(self):
        numbers = sorted(s.set_number for s in self.sets)
        if numbers != list(range(1, len(numbers) + 1)):
            raise ValueError(
                f"Exercise {self.exercise_id} set numbers must run 1..{len(numbers)}, got {numbers}"
            )
        return self

    @property
    def reported_rpe(self) -> Optional[float]:
        # 0 is what the client sends before the athlete rates the exercise
        if self.exercise_rpe is not None:
            return self.exercise_rpe.numeric
        if self.exercise_rpe_score:
            return self.exercise_rpe_score
        return None


class SessionSummary(DocumentModel):
    model_config = ConfigDict(extra="allow")

    total_exercises: int = 0
    completed_exercises: int = 0
    total_sets: int = 0
    completed_sets: int = 0
    extra_sets: int = 0
    compliance_percent: float = 0
    total_volume_lifted: Optional[float] = None
    average_intensity_percent: Optional[float] = None
    session_rpe_score: float = Field(default=0, alias="sessionRPE")
    session_rpe: Optional[RPEValue] = None
    average_exercise_rpe: float = Field(default=0, alias="averageExerciseRPE")
    exercise_summaries: Dict[str, ExerciseSummary] = Field(default_factory=dict)


class SessionFlags(DocumentModel):
    high_rpe: bool = Field(default=False, alias="highRPE")
    low_compliance: bool = False
    volume_spike: bool = False
    short_rest_period: bool = False
    possible_overtraining: bool = False


class SessionProgress(DocumentModel):
    current_step: SessionStep
    step_name: Optional[str] = None
    position_id: Optional[str] = None
    current_url: Optional[str] = None
    updated_at: datetime


class WorkoutSession(DocumentModel):
    id: Optional[str] = None
    organization_id: Optional[str] = None
    team_id: Optional[str] = None
    workout_assignment_id: str
    calendar_event_id: str
    workout_id: str

    athlete_info: UserInfo
    coach_info: Optional[UserInfo] = None

    workout: WorkoutSnapshot

    scheduled_date: Optional[datetime] = None
    actual_start_time: Optional[datetime] = None
    actual_end_time: Optional[datetime] = None
    duration_seconds: Optional[int] = None

    status: SessionStatus
    status_reason: Optional[StatusReason] = None

    exercises: List[SessionExercise] = Field(default_factory=list)
    summary: SessionSummary = Field(default_factory=SessionSummary)
    flags: SessionFlags = Field(default_factory=SessionFlags)

    athlete_notes: Optional[str] = None
    coach_notes: Optional[str] = None

    created_at: datetime
    updated_at: datetime
    created_by: CreatedBy
    progress: SessionProgress


class ProgressUpdate(DocumentModel):
    """Partial progress cursor sent by callers."""
    model_config = ConfigDict(extra="forbid")

    current_step: Optional[SessionStep] = None
    step_name: Optional[str] = None
    position_id: Optional[str] = None
    current_url: Optional[str] = None


class SessionUpdate(DocumentModel):
    """
    Fields callers may change on an existing session.

    Identity, the workout snapshot and bookkeeping timestamps are not
    listed, so attempts to change them are rejected.
    """
    model_config = ConfigDict(extra="forbid")

    status: Optional[SessionStatus] = None
    status_reason: Optional[StatusReason] = None
    exercises: Optional[List[SessionExercise]] = None
    summary: Optional[Dict[str, Any]] = None
    actual_end_time: Optional[datetime] = None
    athlete_notes: Optional[str] = None
    coach_notes: Optional[str] = None
    progress: Optional[ProgressUpdate] = None


class WorkoutSessionFilter(BaseModel):
    """Query parameters for listing sessions."""
    organization_id: Optional[str] = None
    team_id: Optional[str] = None
    athlete_id: Optional[str] = None
    coach_id: Optional[str] = None
    workout_id: Optional[str] = None
    calendar_event_id: Optional[str] = None
    status: Optional[List[SessionStatus]] = None
    scheduled_from: Optional[datetime] = None
    scheduled_to: Optional[datetime] = None
    sort_by: Literal["actualStartTime", "actualEndTime", "scheduledDate", "createdAt"] = "actualStartTime"
    descending: bool = True
    limit: int = Field(default=20, ge=1, le=100)
    offset: int = Field(default=0, ge=0)

    @field_validator("status", mode="before")
    @classmethod
    def _single_status_to_list(cls, value):
        if isinstance(value, str):
            return [value]
        return value


class WorkoutSessionPage(BaseModel):
    sessions: List[WorkoutSession]
    limit: int
    offset: int
    has_more: bool
