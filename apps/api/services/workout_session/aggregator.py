"""
Session Data Aggregator

Loads the entity graph a session is built from:

    event -> assignment -> workout -> exercises -> athlete (-> coach)

Each hop depends on the previous record, so the chain is sequential and
stops at the first missing record. The exercise hop fans out: one lookup
per exercise, run concurrently on a thread pool.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from core.config import settings
from core.document_store import DocumentStore
from core.exceptions import NotFoundError
from services.workout_session.constants import Collection

logger = logging.getLogger(__name__)


@dataclass
class AggregatedSessionData:
    """Everything needed to initialize a session."""
    event: Dict[str, Any]
    assignment: Dict[str, Any]
    workout: Dict[str, Any]
    exercises: List[Dict[str, Any]]
    athlete: Dict[str, Any]
    coach: Optional[Dict[str, Any]] = None


def flow_exercises(workout: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Exercise entries of a workout's flow, in order."""
    return list((workout.get("flow") or {}).get("exercises") or [])


class SessionDataAggregator:
    """Loads and cross-checks the records behind a calendar event."""

    def __init__(self, store: DocumentStore, max_workers: Optional[int] = None):
        self.store = store
        self.max_workers = max_workers or settings.SESSION_EXERCISE_LOOKUP_WORKERS

    def aggregate(self, event_id: str) -> AggregatedSessionData:
        """
        Load event, assignment, workout, exercises and users.

        Args:
            event_id: Calendar event id

        Returns:
            AggregatedSessionData, exercises in workout-flow order

        Raises:
            NotFoundError: naming the first missing record, or every
                missing exercise id at once
        """
        event = self.store.find_by_id(Collection.EVENTS.value, event_id)
        if not event:
            raise NotFoundError("Calendar event", event_id)

        assignment_id = event.get("sourceId")
        assignment = self.store.find_by_id(Collection.ASSIGNMENTS.value, assignment_id)
        if not assignment:
            raise NotFoundError("Workout assignment", str(assignment_id))

        workout_id = assignment.get("workoutId")
        workout = self.store.find_by_id(Collection.WORKOUTS.value, workout_id)
        if not workout:
            raise NotFoundError("Workout", str(workout_id))

        exercise_ids = [entry.get("exercise_id") for entry in flow_exercises(workout)]
        exercises = self._load_exercises(exercise_ids)

        athlete_id = (assignment.get("athleteInfo") or {}).get("userId")
        athlete = self.store.find_one(Collection.USERS.value, {"userId": athlete_id}) if athlete_id else None
        if not athlete:
            raise NotFoundError("Athlete", str(athlete_id))

        coach = None
        coach_id = (assignment.get("coachInfo") or {}).get("userId")
        if coach_id:
            coach = self.store.find_one(Collection.USERS.value, {"userId": coach_id})
            if coach is None:
                logger.warning(f"Coach {coach_id} of assignment {assignment_id} not found")

        return AggregatedSessionData(
            event=event,
            assignment=assignment,
            workout=workout,
            exercises=exercises,
            athlete=athlete,
            coach=coach,
        )

    def _load_exercises(self, exercise_ids: List[str]) -> List[Dict[str, Any]]:
        """Fetch each distinct exercise concurrently, keeping flow order."""
        unique_ids = list(dict.fromkeys(exercise_ids))
        if not unique_ids:
            return []

        workers = min(self.max_workers, len(unique_ids))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="exercise-lookup") as pool:
            found = list(pool.map(
                lambda exercise_id: self.store.find_by_id(Collection.EXERCISES.value, exercise_id),
                unique_ids,
            ))

        by_id = {exercise_id: doc for exercise_id, doc in zip(unique_ids, found) if doc}
        missing = [str(exercise_id) for exercise_id in unique_ids if exercise_id not in by_id]
        if missing:
            raise NotFoundError("Exercises", ", ".join(missing))

        return [by_id[exercise_id] for exercise_id in exercise_ids]
