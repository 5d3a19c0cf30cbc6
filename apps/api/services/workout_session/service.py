"""
Workout Session Service

Top-level lifecycle service. Composes validator, aggregator, resolver,
initializer, summary calculator and event bus into the operations the
HTTP layer and other services call:

    start_session            create (or return) the athlete's live session
    get_active_session       current in-progress session of an athlete
    get_session_by_id
    get_session_by_event_id
    get_workout_sessions     filtered, paged listing
    update_session_progress  move the progress cursor
    update_session           report results, notes, status changes

Start flow (one store transaction):
    1. idempotency check -> return the existing in-progress session
    2. eligibility validation
    3. aggregate event / assignment / workout / exercises / users
    4. resolve per-set prescriptions
    5. structural prescription checks
    6. build the session
    7. re-check idempotency, persist
    8. mark the calendar event in progress
After commit:
    9. publish session.started (fire-and-forget)
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from pydantic import ValidationError as PydanticValidationError

from core.config import settings
from core.document_store import DocumentStore, DuplicateDocumentError, Filter, QueryOptions, get_path
from core.events import EVENT_SESSION_STARTED
from core.exceptions import ConflictError, SessionError, ValidationError
from core.logging import session_logger
from schemas import (
    ProgressUpdate,
    SessionFlags,
    SessionSummary,
    SessionUpdate,
    WorkoutSession,
    WorkoutSessionFilter,
    WorkoutSessionPage,
)
from services.workout_session.aggregator import AggregatedSessionData, SessionDataAggregator, flow_exercises
from services.workout_session.constants import (
    Collection,
    SessionStatus,
    STATUS_TRANSITIONS,
    MANUAL_METRIC_INPUT,
)
from services.workout_session.event_bus import SessionEventBus
from services.workout_session.initializer import SessionInitializer
from services.workout_session.prescription_resolver import PrescriptionResolver, ResolvedPrescription
from services.workout_session.summary_calculator import ExerciseSummaryCalculator
from services.workout_session.validator import SessionValidator

logger = session_logger(__name__)


def active_session_key(doc: Mapping[str, Any]) -> Optional[str]:
    """
    Store uniqueness key for workout_sessions: one in-progress session per athlete.

    Returns None (unconstrained) for every other status.
    """
    if doc.get("status") != SessionStatus.IN_PROGRESS.value:
        return None
    athlete_id = get_path(doc, "athleteInfo.userId")
    return f"active:{athlete_id}" if athlete_id else None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def _pydantic_messages(error: PydanticValidationError) -> List[str]:
    return [
        f"{'.'.join(str(part) for part in err['loc']) or 'body'}: {err['msg']}"
        for err in error.errors()
    ]


class WorkoutSessionService:
    """Owns the workout session lifecycle and its transaction boundary."""

    def __init__(
        self,
        store: DocumentStore,
        validator: Optional[SessionValidator] = None,
        aggregator: Optional[SessionDataAggregator] = None,
        resolver: Optional[PrescriptionResolver] = None,
        initializer: Optional[SessionInitializer] = None,
        calculator: Optional[ExerciseSummaryCalculator] = None,
        event_bus: Optional[SessionEventBus] = None,
        enforce_required_metrics: Optional[bool] = None,
    ):
        self.store = store
        self.validator = validator or SessionValidator(store)
        self.aggregator = aggregator or SessionDataAggregator(store)
        self.resolver = resolver or PrescriptionResolver()
        self.initializer = initializer or SessionInitializer()
        self.calculator = calculator or ExerciseSummaryCalculator()
        self.event_bus = event_bus or SessionEventBus()
        if enforce_required_metrics is None:
            enforce_required_metrics = settings.SESSION_ENFORCE_REQUIRED_METRICS
        self.enforce_required_metrics = enforce_required_metrics

    # ------------------------------------------------------------------
    # Start
    # ------------------------------------------------------------------

    def start_session(self, event_id: str, athlete_id: str) -> WorkoutSession:
        """
        Start (or resume) the athlete's session for a calendar event.

        Args:
            event_id: Calendar event id
            athlete_id: Athlete user id

        Returns:
            The new session, or the already in-progress one for this event

        Raises:
            ValidationError: eligibility or prescription checks failed
            NotFoundError: a referenced record does not exist
            ConflictError: a concurrent start created an active session
                for a different event
        """
        try:
            session, created = self.store.with_transaction(
                lambda: self._start_in_transaction(event_id, athlete_id)
            )
        except DuplicateDocumentError:
            existing = self._find_active(athlete_id)
            if existing and existing.get("calendarEventId") == event_id:
                logger.info(
                    "Concurrent start lost the race; returning existing session",
                    sessionId=existing.get("id"), eventId=event_id, athleteId=athlete_id,
                )
                return self._normalize(existing)
            raise ConflictError("You already have an active workout session.")

        if created:
            self.event_bus.publish(EVENT_SESSION_STARTED, {
                "sessionId": session.id,
                "athleteUserId": session.athlete_info.user_id,
                "workoutName": session.workout.name,
                "timestamp": _utcnow().isoformat(),
            })
        return session

    def _start_in_transaction(self, event_id: str, athlete_id: str) -> Tuple[WorkoutSession, bool]:
        existing = self._find_existing(event_id, athlete_id)
        if existing:
            logger.info(
                "Session already in progress",
                sessionId=existing.get("id"), eventId=event_id, athleteId=athlete_id,
            )
            return self._normalize(existing), False

        validation = self.validator.validate_can_start(event_id, athlete_id)
        if not validation.valid:
            raise ValidationError(validation.errors)

        data = self.aggregator.aggregate(event_id)
        prescriptions = self.resolver.resolve(data.assignment, data.workout, data.exercises)
        self._validate_prescriptions(prescriptions, data)

        session = self.initializer.initialize(event_id, athlete_id, data, prescriptions)

        # A concurrent start may have committed since the first check
        existing = self._find_existing(event_id, athlete_id)
        if existing:
            return self._normalize(existing), False

        saved = self.store.create(Collection.SESSIONS.value, session.to_document())
        self.store.update(Collection.EVENTS.value, event_id, {
            "status": SessionStatus.IN_PROGRESS.value,
            "updatedAt": _utcnow(),
        })

        logger.info(
            f"Started session ({len(session.exercises)} exercises, {session.summary.total_sets} sets)",
            sessionId=saved["id"], eventId=event_id, athleteId=athlete_id,
        )
        return self._normalize(saved), True

    def _validate_prescriptions(
        self,
        prescriptions: List[ResolvedPrescription],
        data: AggregatedSessionData,
    ) -> None:
        """Every flow exercise resolved, each with at least one set."""
        errors: List[str] = []
        exercises = {str(exercise.get("id")): exercise for exercise in data.exercises}
        resolved_ids = {p.exercise_id for p in prescriptions}

        for entry in flow_exercises(data.workout):
            exercise_id = str(entry.get("exercise_id"))
            if exercise_id not in resolved_ids:
                errors.append(f"No prescription resolved for exercise: {exercise_id}")

        for prescription in prescriptions:
            exercise = exercises.get(prescription.exercise_id)
            if exercise is None:
                errors.append(f"Exercise not found: {prescription.exercise_id}")
                continue

            name = exercise.get("name") or prescription.exercise_id
            if not prescription.sets:
                errors.append(f'Exercise "{name}" requires at least one set.')
                continue

            if self.enforce_required_metrics:
                errors.extend(self._missing_required_metrics(name, exercise, prescription))

        if errors:
            raise ValidationError(errors)

    @staticmethod
    def _missing_required_metrics(
        name: str,
        exercise: Dict[str, Any],
        prescription: ResolvedPrescription,
    ) -> List[str]:
        # Free-range exercises (nothing prescribed on any set) are exempt
        if all(not s.prescribed for s in prescription.sets):
            return []

        required = [
            metric.get("id") for metric in exercise.get("metrics") or []
            if metric.get("required") and metric.get("input") == MANUAL_METRIC_INPUT
        ]
        errors = []
        for prescribed_set in prescription.sets:
            missing = [metric_id for metric_id in required if metric_id not in prescribed_set.prescribed]
            if missing:
                errors.append(
                    f'Exercise "{name}" set {prescribed_set.set_number} is missing '
                    f"required metrics: {', '.join(missing)}"
                )
        return errors

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_active_session(self, athlete_id: str) -> Optional[WorkoutSession]:
        return self._normalize(self._find_active(athlete_id))

    def get_session_by_id(self, session_id: str) -> Optional[WorkoutSession]:
        return self._normalize(self.store.find_by_id(Collection.SESSIONS.value, session_id))

    def get_session_by_event_id(self, event_id: str) -> Optional[WorkoutSession]:
        """Most recently created session for the event."""
        found = self.store.find_with_filters(
            Collection.SESSIONS.value,
            [Filter("calendarEventId", "eq", event_id)],
            QueryOptions(sort_by="createdAt", descending=True, limit=1),
        )
        return self._normalize(found[0]) if found else None

    def get_workout_sessions(
        self,
        filter: Union[WorkoutSessionFilter, Mapping[str, Any], None] = None,
    ) -> WorkoutSessionPage:
        """
        List sessions matching a filter, newest first by default.

        Args:
            filter: WorkoutSessionFilter or an equivalent mapping

        Returns:
            WorkoutSessionPage; has_more tells whether another page exists
        """
        if not isinstance(filter, WorkoutSessionFilter):
            try:
                filter = WorkoutSessionFilter.model_validate(filter or {})
            except PydanticValidationError as e:
                raise ValidationError(_pydantic_messages(e)) from e

        equality = {
            "organizationId": filter.organization_id,
            "teamId": filter.team_id,
            "athleteInfo.userId": filter.athlete_id,
            "coachInfo.userId": filter.coach_id,
            "workoutId": filter.workout_id,
            "calendarEventId": filter.calendar_event_id,
        }
        filters = [Filter(field, "eq", value) for field, value in equality.items() if value is not None]
        if filter.status:
            filters.append(Filter("status", "in", list(filter.status)))
        if filter.scheduled_from:
            filters.append(Filter("scheduledDate", "gte", _as_utc(filter.scheduled_from)))
        if filter.scheduled_to:
            filters.append(Filter("scheduledDate", "lte", _as_utc(filter.scheduled_to)))

        # One extra row tells us whether another page exists
        docs = self.store.find_with_filters(
            Collection.SESSIONS.value,
            filters,
            QueryOptions(
                sort_by=filter.sort_by,
                descending=filter.descending,
                limit=filter.limit + 1,
                offset=filter.offset,
            ),
        )
        return WorkoutSessionPage(
            sessions=[self._normalize(doc) for doc in docs[:filter.limit]],
            limit=filter.limit,
            offset=filter.offset,
            has_more=len(docs) > filter.limit,
        )

    # ------------------------------------------------------------------
    # Updates
    # ------------------------------------------------------------------

    def update_session_progress(
        self,
        session_id: str,
        progress: Union[str, Mapping[str, Any]],
    ) -> Optional[WorkoutSession]:
        """
        Move the progress cursor.

        Args:
            session_id: Session id
            progress: Step name, or a partial progress object
                (currentStep, stepName, positionId, currentUrl)

        Returns:
            Updated session, or None if it does not exist
        """
        if isinstance(progress, str):
            progress = {"currentStep": progress}
        try:
            update = ProgressUpdate.model_validate(progress)
        except PydanticValidationError as e:
            raise ValidationError(_pydantic_messages(e)) from e

        def apply():
            current = self.store.find_by_id(Collection.SESSIONS.value, session_id)
            if not current:
                return None
            now = _utcnow()
            updated = self.store.update(Collection.SESSIONS.value, session_id, {
                "progress": self._merge_progress(current, update, now),
                "updatedAt": now,
            })
            return self._normalize(updated)

        return self.store.with_transaction(apply)

    def update_session(self, session_id: str, updates: Mapping[str, Any]) -> Optional[WorkoutSession]:
        """
        Apply caller updates to a session.

        - `exercises`: summaries are recomputed and merged into `summary`,
          keeping summary fields the recompute does not own (e.g. sessionRPE)
        - `summary` alone: shallow-merged over the stored summary
        - `status` -> completed: end time (default now), durationSeconds,
          and the calendar event is completed as well

        Args:
            session_id: Session id
            updates: Partial session (camelCase or snake_case keys)

        Returns:
            Updated session, or None if it does not exist

        Raises:
            ValidationError: unknown or immutable fields, malformed values
            SessionError: illegal status transition
        """
        try:
            parsed = SessionUpdate.model_validate(updates)
        except PydanticValidationError as e:
            raise ValidationError(_pydantic_messages(e)) from e

        return self.store.with_transaction(lambda: self._apply_update(session_id, parsed))

    def _apply_update(self, session_id: str, parsed: SessionUpdate) -> Optional[WorkoutSession]:
        current = self.store.find_by_id(Collection.SESSIONS.value, session_id)
        if not current:
            return None

        session = WorkoutSession.model_validate(current)
        now = _utcnow()
        patch: Dict[str, Any] = {}

        if parsed.status_reason is not None:
            patch["statusReason"] = parsed.status_reason.to_document()
        if parsed.athlete_notes is not None:
            patch["athleteNotes"] = parsed.athlete_notes
        if parsed.coach_notes is not None:
            patch["coachNotes"] = parsed.coach_notes
        if parsed.progress is not None:
            patch["progress"] = self._merge_progress(current, parsed.progress, now)

        summary = dict(current.get("summary") or {})
        summary_changed = False
        if parsed.exercises is not None:
            calculation = self.calculator.calculate(parsed.exercises)
            patch["exercises"] = [exercise.to_document() for exercise in calculation.exercises]
            summary.update(parsed.summary or {})
            summary.update(calculation.stats.to_summary_fields())
            summary["exerciseSummaries"] = {
                key: exercise_summary.to_document()
                for key, exercise_summary in calculation.exercise_summaries.items()
            }
            summary_changed = True
        elif parsed.summary is not None:
            summary.update(parsed.summary)
            summary_changed = True

        if summary_changed:
            try:
                merged_summary = SessionSummary.model_validate(summary)
            except PydanticValidationError as e:
                raise ValidationError(_pydantic_messages(e)) from e
            patch["summary"] = merged_summary.to_document()
            patch["flags"] = self._derive_flags(session.flags, merged_summary).to_document()

        complete_event = False
        if parsed.status is not None and parsed.status != session.status:
            self._check_transition(session.status, parsed.status)
            patch["status"] = parsed.status
            if parsed.status == SessionStatus.COMPLETED.value:
                end_time = _as_utc(parsed.actual_end_time) if parsed.actual_end_time else now
                patch["actualEndTime"] = end_time
                if session.actual_start_time:
                    elapsed = end_time - _as_utc(session.actual_start_time)
                    patch["durationSeconds"] = max(int(elapsed.total_seconds()), 0)
                complete_event = True
        elif parsed.actual_end_time is not None:
            patch["actualEndTime"] = _as_utc(parsed.actual_end_time)

        patch["updatedAt"] = now
        updated = self.store.update(Collection.SESSIONS.value, session_id, patch)

        if complete_event:
            event = self.store.update(Collection.EVENTS.value, session.calendar_event_id, {
                "status": SessionStatus.COMPLETED.value,
                "updatedAt": now,
            })
            if event is None:
                logger.warning(
                    "Calendar event of completed session not found",
                    sessionId=session_id, eventId=session.calendar_event_id,
                )
            logger.info(
                "Session completed",
                sessionId=session_id, eventId=session.calendar_event_id,
                durationSeconds=patch.get("durationSeconds"),
            )

        return self._normalize(updated)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _find_existing(self, event_id: str, athlete_id: str) -> Optional[Dict[str, Any]]:
        return self.store.find_one(Collection.SESSIONS.value, {
            "calendarEventId": event_id,
            "athleteInfo.userId": athlete_id,
            "status": SessionStatus.IN_PROGRESS.value,
        })

    def _find_active(self, athlete_id: str) -> Optional[Dict[str, Any]]:
        return self.store.find_one(Collection.SESSIONS.value, {
            "athleteInfo.userId": athlete_id,
            "status": SessionStatus.IN_PROGRESS.value,
        })

    @staticmethod
    def _merge_progress(current: Mapping[str, Any], update: ProgressUpdate, now: datetime) -> Dict[str, Any]:
        return {
            **(current.get("progress") or {}),
            **update.to_document(),
            "updatedAt": now,
        }

    @staticmethod
    def _check_transition(current: str, target: str) -> None:
        allowed = STATUS_TRANSITIONS[SessionStatus(current)]
        if SessionStatus(target) not in allowed:
            raise SessionError(
                f"Cannot change session status from {current} to {target}",
                error_code="INVALID_STATUS_TRANSITION",
            )

    @staticmethod
    def _derive_flags(flags: SessionFlags, summary: SessionSummary) -> SessionFlags:
        session_rpe = summary.session_rpe.numeric if summary.session_rpe else summary.session_rpe_score
        high_rpe = session_rpe >= settings.SESSION_HIGH_RPE_THRESHOLD
        low_compliance = (
            summary.completed_sets > 0
            and summary.compliance_percent < settings.SESSION_LOW_COMPLIANCE_THRESHOLD
        )
        return flags.model_copy(update={
            "high_rpe": high_rpe,
            "low_compliance": low_compliance,
            "possible_overtraining": high_rpe and flags.volume_spike,
        })

    @staticmethod
    def _normalize(doc: Optional[Mapping[str, Any]]) -> Optional[WorkoutSession]:
        return WorkoutSession.model_validate(doc) if doc else None
