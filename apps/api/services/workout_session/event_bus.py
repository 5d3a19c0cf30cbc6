"""
Session Event Bus

Fire-and-forget notifications for downstream consumers (analytics,
notifications). `publish` hands the event to a background thread and
returns immediately; nothing that happens during delivery reaches the
caller.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, Optional

from core import events
from core.config import settings

logger = logging.getLogger(__name__)


class SessionEventBus:
    """Publishes session lifecycle events without blocking the caller."""

    def __init__(self, executor: Optional[ThreadPoolExecutor] = None):
        self._executor = executor or ThreadPoolExecutor(
            max_workers=settings.SESSION_EVENT_BUS_WORKERS,
            thread_name_prefix="session-events",
        )

    def publish(self, event_name: str, payload: Dict[str, Any]) -> None:
        """
        Queue an event for delivery. Never raises.

        Args:
            event_name: e.g. 'session.started'
            payload: Event data handed to subscribers
        """
        try:
            self._executor.submit(self._dispatch, event_name, dict(payload))
        except Exception as e:
            logger.error(f"[SessionEventBus] Failed to queue {event_name}: {e}", exc_info=True)

    def _dispatch(self, event_name: str, payload: Dict[str, Any]) -> None:
        try:
            if event_name not in events.KNOWN_EVENTS:
                logger.warning(f"[SessionEventBus] Unknown event type: {event_name}")
                return

            if event_name == events.EVENT_SESSION_STARTED:
                logger.info(
                    f"[SessionEventBus] Session {payload.get('sessionId')} started "
                    f"by athlete {payload.get('athleteUserId')}"
                )
            events.emit(event_name, payload)
        except Exception as e:
            logger.error(f"[SessionEventBus] Failed to handle {event_name}: {e}", exc_info=True)

    def shutdown(self, wait: bool = True) -> None:
        """Stop accepting events; optionally wait for queued deliveries."""
        self._executor.shutdown(wait=wait)
