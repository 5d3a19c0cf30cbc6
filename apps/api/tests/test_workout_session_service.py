"""
Tests for WorkoutSessionService

End-to-end lifecycle against a seeded SQLite store: start (including
idempotency and concurrent starts), progress, result reporting,
completion and listing.
"""
import math

import pytest
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

from core import events
from core.exceptions import ConflictError, NotFoundError, SessionError, ValidationError
from services.workout_session import (
    PrescribedSet,
    ResolvedPrescription,
    SessionDataAggregator,
    ValidationResult,
    WorkoutSessionService,
    active_session_key,
)
from fixtures.session_fixtures import (
    ATHLETE_ID,
    EVENT_ID,
    OTHER_ATHLETE_ID,
    PLANK_ID,
    SECOND_EVENT_ID,
    SQUAT_ID,
    WORKOUT_NAME,
    make_assignment,
    make_event,
)


def _all_sessions(store):
    return store.find_with_filters("workout_sessions", [])


def _complete_squat(session, reps=5, weight=100):
    """Exercise payload with every squat set completed."""
    exercises = [exercise.to_document() for exercise in session.exercises]
    for s in exercises[0]["sets"]:
        s["status"] = "completed"
        s["performed"] = {"reps": reps, "weight": {"value": weight, "unit": "kg"}}
    return exercises


def _bypass_idempotency_checks(service):
    """Simulate a concurrent start that already passed its pre-checks."""
    service._find_existing = lambda event_id, athlete_id: None
    service.validator = MagicMock()
    service.validator.validate_can_start.return_value = ValidationResult(valid=True)


class TestStartSession:
    """start_session()"""

    def test_creates_in_progress_session(self, service, store, seed):
        seed()

        session = service.start_session(EVENT_ID, ATHLETE_ID)

        assert session.status == "in_progress"
        assert session.calendar_event_id == EVENT_ID
        assert session.athlete_info.user_id == ATHLETE_ID
        assert [e.exercise_id for e in session.exercises] == [SQUAT_ID, PLANK_ID]
        assert session.summary.total_sets == 3
        assert session.progress.current_step == "exercises"

        stored = store.find_by_id("workout_sessions", session.id)
        assert stored["status"] == "in_progress"
        assert stored["athleteInfo"]["userId"] == ATHLETE_ID
        assert store.find_by_id("events", EVENT_ID)["status"] == "in_progress"

    def test_publishes_session_started(self, service, seed, event_bus, published):
        seed()

        session = service.start_session(EVENT_ID, ATHLETE_ID)
        event_bus.shutdown(wait=True)

        assert len(published) == 1
        assert published[0]["sessionId"] == session.id
        assert published[0]["athleteUserId"] == ATHLETE_ID
        assert published[0]["workoutName"] == WORKOUT_NAME
        assert published[0]["timestamp"]

    def test_second_start_returns_existing_session(self, service, store, seed, event_bus, published):
        seed()

        first = service.start_session(EVENT_ID, ATHLETE_ID)
        second = service.start_session(EVENT_ID, ATHLETE_ID)
        event_bus.shutdown(wait=True)

        assert second.id == first.id
        assert len(_all_sessions(store)) == 1
        assert len(published) == 1

    def test_failing_subscriber_does_not_fail_start(self, service, store, seed, event_bus):
        events.subscribe(events.EVENT_SESSION_STARTED, MagicMock(side_effect=RuntimeError("notifier down")))
        seed()

        session = service.start_session(EVENT_ID, ATHLETE_ID)
        event_bus.shutdown(wait=True)

        assert store.find_by_id("workout_sessions", session.id) is not None

    def test_rejects_second_active_session(self, service, store, seed):
        seed()
        service.start_session(EVENT_ID, ATHLETE_ID)

        with pytest.raises(ValidationError) as exc_info:
            service.start_session(SECOND_EVENT_ID, ATHLETE_ID)

        assert exc_info.value.errors[0].startswith(
            f'You already have an active workout session: "{WORKOUT_NAME}"'
        )
        assert len(_all_sessions(store)) == 1
        assert store.find_by_id("events", SECOND_EVENT_ID)["status"] == "scheduled"

    def test_validation_errors_accumulate(self, service, store, seed, records):
        records["events"] = [make_event(athletes=[OTHER_ATHLETE_ID], status="cancelled")]
        seed()

        with pytest.raises(ValidationError) as exc_info:
            service.start_session(EVENT_ID, ATHLETE_ID)

        assert exc_info.value.errors == [
            "You are not assigned to this workout.",
            "This workout has been cancelled.",
        ]
        assert _all_sessions(store) == []

    def test_missing_exercise_aborts_without_writes(self, service, store, seed, records):
        records["exercises"] = [e for e in records["exercises"] if e["id"] != PLANK_ID]
        seed()

        with pytest.raises(NotFoundError) as exc_info:
            service.start_session(EVENT_ID, ATHLETE_ID)

        assert PLANK_ID in exc_info.value.detail
        assert _all_sessions(store) == []
        assert store.find_by_id("events", EVENT_ID)["status"] == "scheduled"

    def test_new_session_allowed_after_completion(self, service, seed):
        seed()
        first = service.start_session(EVENT_ID, ATHLETE_ID)
        service.update_session(first.id, {"status": "completed"})

        second = service.start_session(SECOND_EVENT_ID, ATHLETE_ID)

        assert second.id != first.id
        assert second.status == "in_progress"

    def test_completed_event_cannot_restart(self, service, seed):
        seed()
        session = service.start_session(EVENT_ID, ATHLETE_ID)
        service.update_session(session.id, {"status": "completed"})

        with pytest.raises(ValidationError) as exc_info:
            service.start_session(EVENT_ID, ATHLETE_ID)

        assert exc_info.value.errors[0].startswith("This workout was already completed on")


class TestConcurrentStart:
    """Starts that race past the idempotency check"""

    def test_same_event_returns_winner(self, service, store, seed, event_bus, published):
        seed()
        winner = service.start_session(EVENT_ID, ATHLETE_ID)
        _bypass_idempotency_checks(service)

        session = service.start_session(EVENT_ID, ATHLETE_ID)
        event_bus.shutdown(wait=True)

        assert session.id == winner.id
        assert len(_all_sessions(store)) == 1
        assert len(published) == 1

    def test_other_event_conflicts(self, service, store, seed):
        seed()
        service.start_session(EVENT_ID, ATHLETE_ID)
        _bypass_idempotency_checks(service)

        with pytest.raises(ConflictError):
            service.start_session(SECOND_EVENT_ID, ATHLETE_ID)

        assert len(_all_sessions(store)) == 1
        assert store.find_by_id("events", SECOND_EVENT_ID)["status"] == "scheduled"

    def test_active_session_key(self):
        assert active_session_key({"status": "in_progress", "athleteInfo": {"userId": "a1"}}) == "active:a1"
        assert active_session_key({"status": "completed", "athleteInfo": {"userId": "a1"}}) is None
        assert active_session_key({"status": "in_progress"}) is None


class TestPrescriptionChecks:
    """Structural checks run before the session is built"""

    @pytest.fixture
    def strict_service(self, store, event_bus):
        return WorkoutSessionService(store, event_bus=event_bus, enforce_required_metrics=True)

    @pytest.fixture
    def plank_with_reps(self, records):
        records["workout_assignments"] = [make_assignment(prescriptions={
            SQUAT_ID: {"prescribedMetrics": {"sets": 2, "reps": 5, "weight": 100}},
            PLANK_ID: {"prescribedMetrics": {"sets": 2, "reps": 1}},
        })]

    def test_required_manual_metrics_enforced(self, strict_service, store, seed, plank_with_reps):
        seed()

        with pytest.raises(ValidationError) as exc_info:
            strict_service.start_session(EVENT_ID, ATHLETE_ID)

        assert exc_info.value.errors == [
            'Exercise "Plank" set 1 is missing required metrics: duration',
            'Exercise "Plank" set 2 is missing required metrics: duration',
        ]
        assert _all_sessions(store) == []

    def test_required_metrics_not_enforced_by_default(self, service, seed, plank_with_reps):
        seed()

        session = service.start_session(EVENT_ID, ATHLETE_ID)

        assert len(session.exercises[1].sets) == 2

    def test_free_range_exercises_exempt(self, strict_service, seed):
        seed()

        session = strict_service.start_session(EVENT_ID, ATHLETE_ID)

        assert session.exercises[1].sets[0].prescribed == {}

    def test_exercise_without_sets_rejected(self, service, store, seed):
        seed()
        data = SessionDataAggregator(store).aggregate(EVENT_ID)
        prescriptions = [
            ResolvedPrescription(SQUAT_ID, []),
            ResolvedPrescription(PLANK_ID, [PrescribedSet(1, {})]),
        ]

        with pytest.raises(ValidationError) as exc_info:
            service._validate_prescriptions(prescriptions, data)

        assert exc_info.value.errors == ['Exercise "Back Squat" requires at least one set.']


class TestUpdateSession:
    """update_session()"""

    @pytest.fixture
    def session(self, service, seed):
        seed()
        return service.start_session(EVENT_ID, ATHLETE_ID)

    def test_recomputes_summary_from_exercises(self, service, session):
        updated = service.update_session(session.id, {"exercises": _complete_squat(session)})

        summary = updated.summary
        assert summary.total_exercises == 2
        assert summary.completed_exercises == 1
        assert summary.total_sets == 3
        assert summary.completed_sets == 2
        assert summary.compliance_percent == 50
        assert summary.total_volume_lifted == 1000
        assert summary.exercise_summaries[SQUAT_ID].compliance_percent == 100
        assert summary.exercise_summaries[PLANK_ID].compliance_percent == 0
        assert updated.exercises[0].summary is None
        assert updated.exercises[0].sets[0].performed["reps"] == 5

    def test_non_finite_reports_do_not_reach_the_summary(self, service, session):
        updated = service.update_session(session.id, {"exercises": _complete_squat(session, reps="Infinity")})

        squat = updated.summary.exercise_summaries[SQUAT_ID]
        assert squat.metrics["reps"].performed_total == 0
        assert squat.total_volume is None
        assert updated.summary.total_volume_lifted is None
        assert math.isfinite(updated.summary.compliance_percent)
        stored = service.get_session_by_id(session.id)
        assert stored.summary.exercise_summaries[SQUAT_ID].metrics["reps"].performed_total == 0

    def test_low_compliance_flag(self, service, session):
        updated = service.update_session(session.id, {"exercises": _complete_squat(session)})

        assert updated.flags.low_compliance is True
        assert updated.flags.high_rpe is False

    def test_summary_merge_keeps_session_rpe(self, service, session):
        service.update_session(session.id, {"summary": {"sessionRPE": 9, "mood": "great"}})

        updated = service.update_session(session.id, {"exercises": _complete_squat(session)})

        assert updated.summary.session_rpe_score == 9
        assert updated.summary.model_extra["mood"] == "great"
        assert updated.summary.completed_sets == 2
        assert updated.flags.high_rpe is True

    def test_summary_only_update(self, service, session):
        updated = service.update_session(session.id, {"summary": {"sessionRPE": 6}})

        assert updated.summary.session_rpe_score == 6
        assert updated.summary.total_sets == 3
        assert updated.flags.high_rpe is False

    def test_complete_sets_end_time_duration_and_event(self, service, store, session):
        end = session.actual_start_time + timedelta(minutes=45)

        updated = service.update_session(session.id, {"status": "completed", "actualEndTime": end})

        assert updated.status == "completed"
        assert updated.actual_end_time == end
        assert updated.duration_seconds == 2700
        assert store.find_by_id("events", EVENT_ID)["status"] == "completed"
        assert service.get_active_session(ATHLETE_ID) is None

    def test_complete_defaults_end_time_to_now(self, service, session):
        before = datetime.now(timezone.utc)

        updated = service.update_session(session.id, {"status": "completed"})

        assert updated.actual_end_time >= before
        assert updated.duration_seconds >= 0

    def test_abandon_with_reason(self, service, store, session):
        updated = service.update_session(session.id, {
            "status": "abandoned",
            "statusReason": {"reason": "injury", "note": "tweaked knee"},
        })

        assert updated.status == "abandoned"
        assert updated.status_reason.reason == "injury"
        assert updated.duration_seconds is None
        assert store.find_by_id("events", EVENT_ID)["status"] == "in_progress"

    def test_illegal_transition(self, service, session):
        service.update_session(session.id, {"status": "completed"})

        with pytest.raises(SessionError) as exc_info:
            service.update_session(session.id, {"status": "in_progress"})

        assert exc_info.value.error_code == "INVALID_STATUS_TRANSITION"

    def test_same_status_is_a_no_op(self, service, session):
        updated = service.update_session(session.id, {"status": "in_progress", "athleteNotes": "felt strong"})

        assert updated.status == "in_progress"
        assert updated.athlete_notes == "felt strong"

    @pytest.mark.parametrize("field", ["athleteInfo", "workout", "calendarEventId", "createdAt"])
    def test_immutable_fields_rejected(self, service, session, field):
        with pytest.raises(ValidationError) as exc_info:
            service.update_session(session.id, {field: "tampered"})

        assert field in exc_info.value.errors[0]

    def test_malformed_exercises_rejected(self, service, session):
        exercises = _complete_squat(session)
        exercises[0]["sets"][1]["setNumber"] = 5

        with pytest.raises(ValidationError):
            service.update_session(session.id, {"exercises": exercises})

    def test_notes_and_progress(self, service, session):
        updated = service.update_session(session.id, {
            "coachNotes": "Good depth",
            "progress": {"currentStep": "summary"},
        })

        assert updated.coach_notes == "Good depth"
        assert updated.progress.current_step == "summary"
        assert updated.updated_at > session.updated_at

    def test_missing_session(self, service, store):
        assert service.update_session("nope", {"athleteNotes": "x"}) is None


class TestUpdateProgress:
    """update_session_progress()"""

    @pytest.fixture
    def session(self, service, seed):
        seed()
        return service.start_session(EVENT_ID, ATHLETE_ID)

    def test_step_name(self, service, session):
        updated = service.update_session_progress(session.id, "rpe")

        assert updated.progress.current_step == "rpe"
        assert updated.progress.updated_at > session.progress.updated_at

    def test_partial_object_keeps_step(self, service, session):
        updated = service.update_session_progress(session.id, {
            "positionId": SQUAT_ID,
            "currentUrl": f"/sessions/{session.id}/exercises/{SQUAT_ID}",
        })

        assert updated.progress.current_step == "exercises"
        assert updated.progress.position_id == SQUAT_ID

    @pytest.mark.parametrize("progress", ["warmup", {"currentStep": "warmup"}, {"unknown": 1}])
    def test_invalid_progress(self, service, session, progress):
        with pytest.raises(ValidationError):
            service.update_session_progress(session.id, progress)

    def test_missing_session(self, service, store):
        assert service.update_session_progress("nope", "rpe") is None


class TestQueries:
    """get_* lookups and listing"""

    @pytest.fixture
    def two_sessions(self, service, seed):
        """A completed session for EVENT_ID, then an active one for SECOND_EVENT_ID."""
        seed()
        first = service.start_session(EVENT_ID, ATHLETE_ID)
        service.update_session(first.id, {"status": "completed"})
        second = service.start_session(SECOND_EVENT_ID, ATHLETE_ID)
        return first, second

    def test_get_by_id_and_event(self, service, two_sessions):
        first, second = two_sessions

        assert service.get_session_by_id(first.id).status == "completed"
        assert service.get_session_by_event_id(SECOND_EVENT_ID).id == second.id
        assert service.get_session_by_id("nope") is None
        assert service.get_session_by_event_id("nope") is None

    def test_get_active_session(self, service, two_sessions):
        _, second = two_sessions

        assert service.get_active_session(ATHLETE_ID).id == second.id
        assert service.get_active_session(OTHER_ATHLETE_ID) is None

    def test_newest_first(self, service, two_sessions):
        first, second = two_sessions

        page = service.get_workout_sessions({"athlete_id": ATHLETE_ID})

        assert [s.id for s in page.sessions] == [second.id, first.id]
        assert page.has_more is False

    def test_status_filter(self, service, two_sessions):
        first, _ = two_sessions

        page = service.get_workout_sessions({"status": "completed"})

        assert [s.id for s in page.sessions] == [first.id]

    def test_paging(self, service, two_sessions):
        first, second = two_sessions

        page_one = service.get_workout_sessions({"limit": 1})
        page_two = service.get_workout_sessions({"limit": 1, "offset": 1})

        assert [s.id for s in page_one.sessions] == [second.id]
        assert page_one.has_more is True
        assert [s.id for s in page_two.sessions] == [first.id]
        assert page_two.has_more is False

    def test_scheduled_range(self, service, two_sessions):
        inside = service.get_workout_sessions({"scheduled_from": "2026-03-02T00:00:00Z", "scheduled_to": "2026-03-03T00:00:00Z"})
        after = service.get_workout_sessions({"scheduled_from": "2026-03-03T00:00:00Z"})

        assert len(inside.sessions) == 2
        assert after.sessions == []

    def test_other_filters(self, service, two_sessions):
        assert len(service.get_workout_sessions({"organization_id": "org-1", "coach_id": "coach-1"}).sessions) == 2
        assert service.get_workout_sessions({"team_id": "other-team"}).sessions == []
        assert len(service.get_workout_sessions({"calendar_event_id": EVENT_ID}).sessions) == 1

    @pytest.mark.parametrize("bad", [{"limit": 0}, {"limit": 101}, {"status": "paused"}])
    def test_invalid_filter(self, service, bad):
        with pytest.raises(ValidationError):
            service.get_workout_sessions(bad)
