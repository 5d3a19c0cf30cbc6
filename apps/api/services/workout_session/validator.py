"""
Session Validator

Pre-start eligibility checks for a calendar event. Every violated rule
is reported, not just the first, so the athlete sees all reasons at once.
"""

import logging
from dataclasses import dataclass, field
from typing import List

from core.document_store import DocumentStore
from services.workout_session.constants import (
    Collection,
    SessionStatus,
    WORKOUT_ASSIGNMENT_SOURCE,
    EVENT_CANCELLED,
)

logger = logging.getLogger(__name__)


@dataclass
class ValidationResult:
    """Outcome of an eligibility check."""
    valid: bool
    errors: List[str] = field(default_factory=list)


class SessionValidator:
    """Checks whether an athlete may start a session for an event."""

    def __init__(self, store: DocumentStore):
        self.store = store

    def validate_can_start(self, event_id: str, athlete_id: str) -> ValidationResult:
        """
        Run all start checks for (event, athlete).

        Args:
            event_id: Calendar event the athlete wants to start
            athlete_id: User id of the athlete

        Returns:
            ValidationResult with every violation found
        """
        errors: List[str] = []

        # No other active session
        active_session = self.store.find_one(Collection.SESSIONS.value, {
            "athleteInfo.userId": athlete_id,
            "status": SessionStatus.IN_PROGRESS.value,
        })
        if active_session and active_session.get("calendarEventId") != event_id:
            workout_name = (active_session.get("workout") or {}).get("name") or "Current Workout"
            errors.append(
                f'You already have an active workout session: "{workout_name}". '
                "Please complete or abandon it before starting a new one."
            )

        event = self.store.find_by_id(Collection.EVENTS.value, event_id)
        if not event:
            errors.append(f"Calendar event not found: {event_id}")
            return self._result(event_id, athlete_id, errors)

        source_type = event.get("sourceType")
        if source_type != WORKOUT_ASSIGNMENT_SOURCE:
            errors.append(f"This event is not a workout. Event type: {source_type or 'unknown'}")

        participants = (event.get("participants") or {}).get("athletes") or []
        if not any((athlete or {}).get("userId") == athlete_id for athlete in participants):
            errors.append("You are not assigned to this workout.")

        completed_session = self.store.find_one(Collection.SESSIONS.value, {
            "calendarEventId": event_id,
            "status": SessionStatus.COMPLETED.value,
        })
        if completed_session:
            completed_at = completed_session.get("actualEndTime") or "unknown date"
            errors.append(f"This workout was already completed on {completed_at}.")

        if event.get("status") == EVENT_CANCELLED:
            errors.append("This workout has been cancelled.")

        return self._result(event_id, athlete_id, errors)

    @staticmethod
    def _result(event_id: str, athlete_id: str, errors: List[str]) -> ValidationResult:
        if errors:
            logger.info(
                f"Session start rejected for event {event_id}, athlete {athlete_id}: "
                f"{len(errors)} violation(s)"
            )
        return ValidationResult(valid=not errors, errors=errors)
