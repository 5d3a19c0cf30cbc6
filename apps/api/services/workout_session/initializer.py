"""
Session Initializer

Builds the initial session document from the aggregated records and the
resolved prescriptions. Nothing is written here; the orchestrator persists
the result.
"""

import copy
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Sequence

from core.exceptions import NotFoundError
from schemas import (
    CreatedBy,
    ExerciseSummary,
    SessionExercise,
    SessionFlags,
    SessionProgress,
    SessionSet,
    SessionSummary,
    UserInfo,
    WorkoutSession,
    WorkoutSnapshot,
)
from services.workout_session.aggregator import AggregatedSessionData, flow_exercises
from services.workout_session.constants import SessionStatus, SessionStep, SetStatus
from services.workout_session.prescription_resolver import ResolvedPrescription

# Identity fields copied into the session, with the key each source uses.
IDENTITY_FIELDS = {
    "user_id": "userId",
    "member_id": "memberId",
    "name": "name",
    "email": "email",
    "profile_image_url": "profileImageUrl",
}


def merge_with_precedence(
    sources: Sequence[Optional[Mapping[str, Any]]],
    fields: Mapping[str, str] = IDENTITY_FIELDS,
) -> Dict[str, Any]:
    """
    Merge records field by field; the first source with a value wins.

    Args:
        sources: Records in precedence order (highest first); None entries skipped
        fields: output name -> key read from each source

    Returns:
        Dict with one entry per field that any source provides
    """
    merged: Dict[str, Any] = {}
    for out_name, key in fields.items():
        for source in sources:
            if source and source.get(key) not in (None, ""):
                merged[out_name] = source[key]
                break
    return merged


def _initial_step(workout: Dict[str, Any]) -> SessionStep:
    questionnaires = (workout.get("flow") or {}).get("questionnaires")
    if isinstance(questionnaires, list) and questionnaires:
        return SessionStep.PRE_WORKOUT_QUESTIONNAIRE
    return SessionStep.EXERCISES


class SessionInitializer:
    """Creates the in-memory session for a freshly started workout."""

    def initialize(
        self,
        event_id: str,
        athlete_id: str,
        data: AggregatedSessionData,
        prescriptions: List[ResolvedPrescription],
    ) -> WorkoutSession:
        """
        Build a new in-progress session.

        Args:
            event_id: Calendar event being started
            athlete_id: Athlete starting it
            data: Aggregated event / assignment / workout / exercises / users
            prescriptions: Resolver output, one entry per flow exercise

        Returns:
            WorkoutSession ready to persist
        """
        assignment, workout = data.assignment, data.workout
        exercises = self._build_exercises(data, prescriptions)
        now = datetime.now(timezone.utc)

        athlete_info = merge_with_precedence([assignment.get("athleteInfo"), data.athlete])
        athlete_info.setdefault("user_id", athlete_id)

        coach_info = None
        if data.coach or (assignment.get("coachInfo") or {}).get("userId"):
            coach_info = UserInfo(**merge_with_precedence([assignment.get("coachInfo"), data.coach]))

        return WorkoutSession(
            id=uuid.uuid4().hex,
            organization_id=assignment.get("organizationId"),
            team_id=assignment.get("teamId"),
            workout_assignment_id=str(assignment.get("id")),
            calendar_event_id=event_id,
            workout_id=str(workout.get("id")),
            athlete_info=UserInfo(**athlete_info),
            coach_info=coach_info,
            workout=WorkoutSnapshot(
                workout_id=str(workout.get("id")),
                name=workout.get("name") or "",
                description=workout.get("description") or "",
                cover_image=workout.get("coverImage"),
                tags=list(workout.get("tags") or []),
                rpe=copy.deepcopy((workout.get("flow") or {}).get("rpe")),
                flow=copy.deepcopy(workout.get("flow")),
            ),
            scheduled_date=data.event.get("startTime"),
            actual_start_time=now,
            status=SessionStatus.IN_PROGRESS.value,
            exercises=exercises,
            summary=SessionSummary(
                total_exercises=len(exercises),
                total_sets=sum(len(exercise.sets) for exercise in exercises),
            ),
            flags=SessionFlags(),
            created_at=now,
            updated_at=now,
            created_by=CreatedBy(user_id=athlete_id, role="athlete"),
            progress=SessionProgress(current_step=_initial_step(workout).value, updated_at=now),
        )

    @staticmethod
    def _build_exercises(
        data: AggregatedSessionData,
        prescriptions: List[ResolvedPrescription],
    ) -> List[SessionExercise]:
        by_id = {str(exercise.get("id")): exercise for exercise in data.exercises}
        prescribed_by_id = {p.exercise_id: p for p in prescriptions}

        session_exercises = []
        for workout_exercise in flow_exercises(data.workout):
            exercise_id = str(workout_exercise.get("exercise_id"))
            exercise = by_id.get(exercise_id)
            if exercise is None:
                raise NotFoundError("Exercise", exercise_id)

            prescription = prescribed_by_id.get(exercise_id)
            sets = [
                SessionSet(
                    set_number=prescribed_set.set_number,
                    status=SetStatus.PENDING.value,
                    prescribed=copy.deepcopy(prescribed_set.prescribed),
                )
                for prescribed_set in (prescription.sets if prescription else [])
            ]

            session_exercises.append(SessionExercise(
                exercise_id=exercise_id,
                exercise_name=exercise.get("name"),
                exercise_type=exercise.get("exercise_type"),
                exercise_image=exercise.get("image") or exercise.get("photoCover"),
                sets=sets,
                summary=ExerciseSummary(total_sets=len(sets)),
            ))
        return session_exercises
