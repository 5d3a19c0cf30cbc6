"""
Workout session engine entry point.

Composition root: configures logging, makes sure the document table
exists and wires the WorkoutSessionService. HTTP handlers and workers
import `get_workout_session_service()` instead of building their own.

Run directly for a startup health check:

    python main.py
"""
import logging
import sys
from typing import Optional

from core.config import settings
from core.database import SessionLocal, check_db_connection, engine, init_db
from core.logging import setup_logging
from services.workout_session import (
    WorkoutSessionService,
    create_document_store,
    create_workout_session_service,
)

logger = logging.getLogger(__name__)

_service: Optional[WorkoutSessionService] = None


def startup() -> WorkoutSessionService:
    """Configure logging and the database, then build the service."""
    setup_logging()
    logger.info(f"Starting workout session engine (environment: {settings.ENVIRONMENT})")

    init_db(engine)
    if not check_db_connection(engine):
        logger.error("Database connection failed during startup")
        raise RuntimeError("Database connection failed")

    service = create_workout_session_service(create_document_store(SessionLocal))
    logger.info("Workout session service ready")
    return service


def get_workout_session_service() -> WorkoutSessionService:
    """Process-wide service instance, created on first use."""
    global _service
    if _service is None:
        _service = startup()
    return _service


def shutdown() -> None:
    """Drain pending session events."""
    global _service
    if _service is not None:
        _service.event_bus.shutdown(wait=True)
        _service = None
        logger.info("Workout session engine stopped")


if __name__ == "__main__":
    try:
        get_workout_session_service()
    except Exception as e:
        logger.error(f"Startup failed: {e}", exc_info=True)
        sys.exit(1)
    shutdown()
