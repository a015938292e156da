class EventSystemError(Exception):
    """Base class for every error raised by the event engine."""


class InvalidEventNameError(EventSystemError, ValueError):
    """Event name does not follow the '<module>:<action>' format."""


class PayloadTooLargeError(EventSystemError, ValueError):
    def __init__(self, size: int, limit: int):
        self.size = size
        self.limit = limit
        super().__init__(f"Event payload exceeds maximum size: {size} bytes (max: {limit})")


class InvalidPayloadError(EventSystemError, ValueError):
    """Payload cannot be represented as JSON."""


class EventSystemDisabledError(EventSystemError):
    pass


class RegistrationError(EventSystemError):
    """Invalid or duplicate handler registration."""


class QueryTimeoutError(EventSystemError, TimeoutError):
    def __init__(self, event_name: str, timeout_ms: int):
        self.event_name = event_name
        self.timeout_ms = timeout_ms
        super().__init__(f"Query timeout after {timeout_ms}ms for event: {event_name}")


class HandlerTimeoutError(EventSystemError, TimeoutError):
    def __init__(self, handler_id: str, timeout_ms: int):
        self.handler_id = handler_id
        self.timeout_ms = timeout_ms
        super().__init__(f"Handler {handler_id} timed out after {timeout_ms}ms")


class CircuitOpenError(EventSystemError):
    def __init__(self, circuit_key: str, retry_in_ms: float):
        self.circuit_key = circuit_key
        self.retry_in_ms = retry_in_ms
        super().__init__(f"Circuit breaker is open for {circuit_key}. Next attempt in {int(retry_in_ms)}ms")


class NonRetryableError(EventSystemError):
    """
    Raised by a handler when retrying cannot help (bad payload, missing entity).
    The outbox row goes straight to dead letter.
    """


class BusClosedError(EventSystemError):
    pass
