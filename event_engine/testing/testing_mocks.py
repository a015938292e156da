from typing import Iterable
from unittest.mock import AsyncMock, MagicMock


# Mocked Tortoise transaction manager
class in_transaction:
    """Mock for tortoise.transactions.in_transaction to bypass real DB context."""
    async def __aenter__(self):
        return object()

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        pass


def mock_get_or_none(result):
    """Stand-in for Model.get_or_none(...).using_db(conn) that resolves to 'result'."""
    query = MagicMock()
    query.using_db = AsyncMock(return_value=result)
    return MagicMock(return_value=query)


class FakeClock:
    """Manually advanced monotonic clock for circuit breaker tests."""
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class SequenceRandom:
    """Replays fixed values in place of random.random(), cycling when exhausted."""
    def __init__(self, values: Iterable[float]):
        self.values = list(values)
        self._i = 0

    def __call__(self) -> float:
        value = self.values[self._i % len(self.values)]
        self._i += 1
        return value
