"""
Constants for the workout session engine.

Collection names, lifecycle states and the fixed defaults used when
building and scoring sessions.
"""

from enum import Enum
from typing import Dict, FrozenSet


class Collection(str, Enum):
    """Document store collections read or written by the engine."""
    EVENTS = "events"
    ASSIGNMENTS = "workout_assignments"
    WORKOUTS = "workouts"
    EXERCISES = "exercises"
    USERS = "users"
    SESSIONS = "workout_sessions"


class SessionStatus(str, Enum):
    """Session lifecycle states."""
    SCHEDULED = "scheduled"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    ABANDONED = "abandoned"
    SKIPPED = "skipped"


class SessionStep(str, Enum):
    """Progress cursor inside an in-progress session."""
    PRE_WORKOUT_QUESTIONNAIRE = "pre_workout_questionnaire"
    EXERCISES = "exercises"
    RPE = "rpe"
    POST_WORKOUT_QUESTIONNAIRE = "post_workout_questionnaire"
    QUESTIONNAIRE = "questionnaire"
    SUMMARY = "summary"


class SetStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    SKIPPED = "skipped"


# Allowed status transitions. Everything except in_progress is terminal
# once reached through the engine.
STATUS_TRANSITIONS: Dict[SessionStatus, FrozenSet[SessionStatus]] = {
    SessionStatus.SCHEDULED: frozenset({SessionStatus.IN_PROGRESS, SessionStatus.SKIPPED}),
    SessionStatus.IN_PROGRESS: frozenset({
        SessionStatus.COMPLETED,
        SessionStatus.ABANDONED,
        SessionStatus.SKIPPED,
    }),
    SessionStatus.COMPLETED: frozenset(),
    SessionStatus.ABANDONED: frozenset(),
    SessionStatus.SKIPPED: frozenset(),
}

# Calendar events that can start a session
WORKOUT_ASSIGNMENT_SOURCE = "workout_assignment"
EVENT_CANCELLED = "cancelled"

# Set count when neither the assignment nor the workout says otherwise
DEFAULT_SET_COUNT = 1
SETS_COUNTING_SET_COUNT = 3

# Metric keys with special meaning
SETS_KEY = "sets"              # a count, never a per-set metric
REST_METRIC = "rest"           # tracked, but never scored
WEIGHT_METRIC = "weight"
REPS_METRIC = "reps"

# Metric definitions entered by the athlete (vs computed by formula)
MANUAL_METRIC_INPUT = "manual"
