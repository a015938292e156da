import pytest
from datetime import datetime, timezone
from fastapi.testclient import TestClient
from unittest.mock import patch, AsyncMock, MagicMock
from uuid import uuid4

from event_engine.core.config import EventConfig
from event_engine.events.bus import EventBus
from event_engine.main import app
from event_engine.models.outbox import OutboxStatus


@pytest.fixture
def client():
    # No lifespan: database calls are patched and the bus is set directly
    app.state.bus = EventBus(EventConfig())
    return TestClient(app)


def make_dead_letter(**overrides):
    record = MagicMock()
    record.id = uuid4()
    record.outbox_id = uuid4()
    record.event_name = "billing:invoice.requested"
    record.source_module = "orders"
    record.payload = {"orderId": 1}
    record.metadata = {"event_id": str(uuid4()), "correlation_id": None, "version": "v1"}
    record.retry_count = 6
    record.max_retries = 5
    record.failure_reason = "[invoicer] downstream unavailable"
    record.first_attempt_at = datetime(2026, 1, 5, 10, 0, tzinfo=timezone.utc)
    record.failed_at = datetime(2026, 1, 5, 10, 5, tzinfo=timezone.utc)
    for key, value in overrides.items():
        setattr(record, key, value)
    return record


class TestDeadLetterRoutes:
    def test_list_dead_letters(self, client):
        """Dead letters are listed with their failure reason"""
        with patch('event_engine.api.v1.events.list_dead_letters', new_callable=AsyncMock) as mock_list:
            mock_list.return_value = [make_dead_letter()]

            response = client.get("/api/v1/events/dead-letters?event_name=billing:invoice.requested&limit=10")

            assert response.status_code == 200
            data = response.json()["data"]
            assert len(data) == 1
            assert data[0]["failure_reason"] == "[invoicer] downstream unavailable"
            mock_list.assert_called_once_with(event_name="billing:invoice.requested", limit=10, offset=0)

    def test_list_dead_letters_rejects_bad_limit(self, client):
        """Limit outside 1..500 is a validation error"""
        response = client.get("/api/v1/events/dead-letters?limit=0")
        assert response.status_code == 422
        assert response.json()["error"]["code"] == "validation_error"

    def test_get_dead_letter_not_found(self, client):
        with patch('event_engine.api.v1.events.get_dead_letter', new_callable=AsyncMock) as mock_get:
            mock_get.return_value = None

            response = client.get(f"/api/v1/events/dead-letters/{uuid4()}")

            assert response.status_code == 404
            assert response.json()["success"] is False

    def test_get_dead_letter_success(self, client):
        record = make_dead_letter()
        with patch('event_engine.api.v1.events.get_dead_letter', new_callable=AsyncMock) as mock_get:
            mock_get.return_value = record

            response = client.get(f"/api/v1/events/dead-letters/{record.id}")

            assert response.status_code == 200
            assert response.json()["data"]["id"] == str(record.id)

    def test_replay_dead_letter_accepted(self, client):
        """Replay returns 202 with the new outbox row"""
        dead_letter_id = uuid4()
        with patch('event_engine.api.v1.events.replay_dead_letter', new_callable=AsyncMock) as mock_replay:
            replayed = MagicMock()
            replayed.id = uuid4()
            replayed.status = OutboxStatus.PENDING
            mock_replay.return_value = replayed

            response = client.post(f"/api/v1/events/dead-letters/{dead_letter_id}/replay")

            assert response.status_code == 202
            data = response.json()["data"]
            assert data["outbox_id"] == str(replayed.id)
            assert data["status"] == "pending"
            args, _ = mock_replay.call_args
            assert args[0] == dead_letter_id
            assert args[1] is app.state.bus.store

    def test_replay_unknown_dead_letter(self, client):
        with patch('event_engine.api.v1.events.replay_dead_letter', new_callable=AsyncMock) as mock_replay:
            mock_replay.side_effect = ValueError("Dead letter not found")

            response = client.post(f"/api/v1/events/dead-letters/{uuid4()}/replay")

            assert response.status_code == 404


class TestOperatorRoutes:
    def test_outbox_stats(self, client):
        with patch('event_engine.api.v1.events.outbox_stats', new_callable=AsyncMock) as mock_stats:
            mock_stats.return_value = {"pending": 3, "processing": 0, "completed": 10, "failed": 0, "dead_letter": 1}

            response = client.get("/api/v1/events/outbox/stats")

            assert response.status_code == 200
            assert response.json()["data"]["counts"]["dead_letter"] == 1

    def test_outbox_stats_failure(self, client):
        with patch('event_engine.api.v1.events.outbox_stats', new_callable=AsyncMock) as mock_stats:
            mock_stats.side_effect = RuntimeError("db down")

            response = client.get("/api/v1/events/outbox/stats")

            assert response.status_code == 500

    def test_list_handlers(self, client):
        async def reserve(event):
            return None

        app.state.bus.register(
            "inventory:stock.reserved", reserve, module="orders", handler_id="orders-reserve", timeout_ms=5000
        )

        response = client.get("/api/v1/events/handlers")

        assert response.status_code == 200
        handlers = response.json()["data"]["handlers"]
        assert handlers == [{
            "event_name": "inventory:stock.reserved",
            "handler_id": "orders-reserve",
            "module": "orders",
            "timeout_ms": 5000,
            "idempotent": False,
            "sequential": False,
        }]
