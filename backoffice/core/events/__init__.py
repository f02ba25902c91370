"""Event handling for committed workflow changes."""

from backoffice.core.events.handlers import register_event_handlers

__all__ = ['register_event_handlers']
