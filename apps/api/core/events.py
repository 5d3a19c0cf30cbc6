"""
Lightweight Event System for Extensibility

Provides a simple event emitter pattern for downstream consumers
(analytics, notifications) of session lifecycle events.
Not a full plugin registry - just enough for clean extensibility.
"""
import logging
from typing import Callable, Dict, List, Any

logger = logging.getLogger(__name__)

# Event registry: event_name -> list of handlers
_event_handlers: Dict[str, List[Callable]] = {}


def subscribe(event_name: str, handler: Callable):
    """
    Subscribe a handler function to an event.

    Args:
        event_name: Name of the event (e.g., 'session.started')
        handler: Function called with the event payload dict

    Example:
        def on_session_started(payload):
            notify_coach(payload['sessionId'])

        subscribe('session.started', on_session_started)
    """
    if event_name not in _event_handlers:
        _event_handlers[event_name] = []

    _event_handlers[event_name].append(handler)
    logger.debug(f"Subscribed handler to event: {event_name}")


def unsubscribe(event_name: str, handler: Callable):
    """Remove a previously subscribed handler. Unknown handlers are ignored."""
    handlers = _event_handlers.get(event_name, [])
    if handler in handlers:
        handlers.remove(handler)


def clear_handlers():
    """Drop every subscription."""
    _event_handlers.clear()


def emit(event_name: str, payload: Dict[str, Any]):
    """
    Emit an event, calling all subscribed handlers.

    A failing handler is logged and does not stop the remaining ones.

    Args:
        event_name: Name of the event
        payload: Event data passed to handlers
    """
    for handler in list(_event_handlers.get(event_name, [])):
        try:
            handler(payload)
        except Exception as e:
            logger.error(f"Error in event handler for {event_name}: {e}", exc_info=True)


# Session lifecycle event names
EVENT_SESSION_STARTED = 'session.started'

KNOWN_EVENTS = frozenset({EVENT_SESSION_STARTED})
