# Workout Session Lifecycle Engine
#
# Turns a scheduled workout (calendar event + assignment + workout template)
# into a live, per-athlete session and keeps its analytics current as the
# athlete reports results.
#
# Components:
# - SessionValidator: pre-start eligibility checks
# - SessionDataAggregator: loads the event -> assignment -> workout graph
# - PrescriptionResolver: per-set prescriptions with override precedence
# - SessionInitializer: builds the in-progress session
# - ExerciseSummaryCalculator: compliance / volume / RPE analytics
# - SessionEventBus: fire-and-forget lifecycle events
# - WorkoutSessionService: orchestrates all of the above

from typing import Optional

from core.document_store import DocumentStore, SQLAlchemyDocumentStore

from .constants import Collection, SessionStatus, SessionStep, SetStatus
from .validator import SessionValidator, ValidationResult
from .aggregator import SessionDataAggregator, AggregatedSessionData
from .prescription_resolver import PrescriptionResolver, ResolvedPrescription, PrescribedSet
from .initializer import SessionInitializer, merge_with_precedence
from .summary_calculator import ExerciseSummaryCalculator, SessionStats, SummaryCalculation, summary_key
from .event_bus import SessionEventBus
from .service import WorkoutSessionService, active_session_key


def create_document_store(session_factory) -> SQLAlchemyDocumentStore:
    """SQLAlchemy document store with the session engine's uniqueness keys."""
    return SQLAlchemyDocumentStore(
        session_factory,
        unique_keys={Collection.SESSIONS.value: active_session_key},
    )


def create_workout_session_service(
    store: Optional[DocumentStore] = None,
    event_bus: Optional[SessionEventBus] = None,
    enforce_required_metrics: Optional[bool] = None,
) -> WorkoutSessionService:
    """
    Wire a WorkoutSessionService with its default components.

    Args:
        store: Document store (defaults to one over core.database.SessionLocal)
        event_bus: Event bus (defaults to a new thread-backed bus)
        enforce_required_metrics: Override SESSION_ENFORCE_REQUIRED_METRICS

    Returns:
        WorkoutSessionService
    """
    if store is None:
        from core.database import SessionLocal
        store = create_document_store(SessionLocal)

    return WorkoutSessionService(
        store,
        event_bus=event_bus,
        enforce_required_metrics=enforce_required_metrics,
    )


__all__ = [
    # Service
    'WorkoutSessionService',
    'create_workout_session_service',
    'create_document_store',
    'active_session_key',

    # Components
    'SessionValidator',
    'ValidationResult',
    'SessionDataAggregator',
    'AggregatedSessionData',
    'PrescriptionResolver',
    'ResolvedPrescription',
    'PrescribedSet',
    'SessionInitializer',
    'merge_with_precedence',
    'ExerciseSummaryCalculator',
    'SessionStats',
    'SummaryCalculation',
    'summary_key',
    'SessionEventBus',

    # Constants
    'Collection',
    'SessionStatus',
    'SessionStep',
    'SetStatus',
]
