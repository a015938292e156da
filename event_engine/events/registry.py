import logging
import time
import uuid
from typing import Dict, List

from event_engine.core.exceptions import RegistrationError
from event_engine.events.types import HandlerRegistration, validate_event_name

log = logging.getLogger("event_registry")


def _generate_handler_id(module_id: str) -> str:
    return f"{module_id}-{int(time.time() * 1000)}-{uuid.uuid4().hex[:8]}"


class HandlerRegistry:
    """
    Maps event name -> handlers, in registration order.
    Owned by a single EventBus; registrations live for the process lifetime.
    """

    def __init__(self):
        self._handlers: Dict[str, Dict[str, HandlerRegistration]] = {}

    def register(self, event_name: str, registration: HandlerRegistration) -> str:
        validate_event_name(event_name)
        if not callable(registration.handler):
            raise RegistrationError("Handler must be callable")
        if not registration.module_id or not isinstance(registration.module_id, str):
            raise RegistrationError("Module id is required for handler registration")
        if registration.timeout_ms is not None and registration.timeout_ms <= 0:
            raise RegistrationError("Handler timeout must be positive")

        if not registration.handler_id:
            registration.handler_id = _generate_handler_id(registration.module_id)

        handlers = self._handlers.setdefault(event_name, {})
        if registration.handler_id in handlers:
            raise RegistrationError(
                f'Handler with ID "{registration.handler_id}" already registered for event "{event_name}"'
            )
        handlers[registration.handler_id] = registration
        log.debug(f"Registered handler {registration.handler_id} ({registration.module_id}) for {event_name}")
        return registration.handler_id

    def unregister(self, event_name: str, handler_id: str) -> bool:
        handlers = self._handlers.get(event_name)
        if not handlers or handler_id not in handlers:
            return False
        del handlers[handler_id]
        # Drop the event entry once its last handler is gone
        if not handlers:
            del self._handlers[event_name]
        return True

    def get_handlers(self, event_name: str) -> List[HandlerRegistration]:
        handlers = self._handlers.get(event_name)
        return list(handlers.values()) if handlers else []

    def registered_event_names(self) -> List[str]:
        return list(self._handlers.keys())

    def handler_count(self, event_name: str) -> int:
        return len(self._handlers.get(event_name, ()))

    def has_handlers(self, event_name: str) -> bool:
        return self.handler_count(event_name) > 0

    def clear(self):
        self._handlers.clear()

    def __len__(self):
        return sum(len(h) for h in self._handlers.values())
