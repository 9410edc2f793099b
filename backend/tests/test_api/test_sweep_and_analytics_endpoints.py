"""Tests for the sweep admin endpoints and the analytics endpoint."""

import uuid

import pytest
from httpx import AsyncClient

from subscription_engine.api.deps import get_session_factory
from subscription_engine.billing.locks import acquire_lease
from subscription_engine.billing.notifications import NotificationType
from subscription_engine.main import app

pytestmark = pytest.mark.asyncio


async def _subscribe(client: AsyncClient, plan_id: str = "starter") -> dict:
    response = await client.post("/api/v1/subscriptions", json={"plan_id": plan_id, "user_id": str(uuid.uuid4())})
    assert response.status_code == 201, response.text
    return response.json()


class TestSweepEndpoints:
    async def test_expiration_sweep(self, client: AsyncClient, clock) -> None:
        created = await _subscribe(client)
        clock.advance(days=31)

        response = await client.post("/api/v1/sweeps/expiration")

        assert response.status_code == 200
        report = response.json()
        assert report["sweep"] == "expiration"
        assert report["processed"] == 1
        assert report["results"][0]["subscription_id"] == created["id"]
        assert report["results"][0]["status"] == "SUCCESS"

        subscription = (await client.get(f"/api/v1/subscriptions/{created['id']}")).json()
        assert subscription["status"] == "EXPIRED"

    async def test_downgrade_sweep(self, client: AsyncClient, clock) -> None:
        created = await _subscribe(client, "growth")
        await client.post(f"/api/v1/subscriptions/{created['id']}/downgrade", json={"plan_id": "starter"})
        clock.advance(days=30)

        response = await client.post("/api/v1/sweeps/downgrades")

        assert response.status_code == 200
        result = response.json()["results"][0]
        assert result["new_plan_id"] == "starter"
        assert float(result["credit_amount"]) == 0.0

    async def test_reminder_sweep_with_offsets(self, client: AsyncClient, clock, notifier) -> None:
        await _subscribe(client)
        clock.advance(days=27)

        response = await client.post("/api/v1/sweeps/reminders", json={"offsets": [3]})

        assert response.status_code == 200
        assert response.json()["succeeded"] == 1
        assert len(notifier.of_type(NotificationType.SUBSCRIPTION_RENEWAL_REMINDER)) == 1

    async def test_reminder_sweep_without_body(self, client: AsyncClient) -> None:
        response = await client.post("/api/v1/sweeps/reminders")
        assert response.status_code == 200
        assert response.json()["processed"] == 0

    async def test_invalid_offset(self, client: AsyncClient) -> None:
        response = await client.post("/api/v1/sweeps/reminders", json={"offsets": [0]})
        assert response.status_code == 422
        assert response.json()["error_code"] == "INVALID_DATE"

    async def test_sweep_in_progress(self, client: AsyncClient, session_factory, clock) -> None:
        await acquire_lease(session_factory, "expiration", "cron-worker", clock, 3600)

        response = await client.post("/api/v1/sweeps/expiration")

        assert response.status_code == 409
        assert response.json()["error_code"] == "SWEEP_IN_PROGRESS"

    async def test_database_unavailable(self, client: AsyncClient, unreachable_session_factory) -> None:
        app.dependency_overrides[get_session_factory] = lambda: unreachable_session_factory

        response = await client.post("/api/v1/sweeps/expiration")

        assert response.status_code == 503
        assert response.json()["kind"] == "TRANSIENT"
        assert response.json()["error_code"] == "DEPENDENCY_UNAVAILABLE"

    async def test_runs_are_listed(self, client: AsyncClient, clock) -> None:
        await client.post("/api/v1/sweeps/expiration")
        clock.advance(minutes=5)
        await client.post("/api/v1/sweeps/downgrades")

        all_runs = await client.get("/api/v1/sweeps/runs")
        expiration_runs = await client.get("/api/v1/sweeps/runs", params={"sweep": "expiration"})

        assert [run["sweep"] for run in all_runs.json()] == ["scheduled_downgrades", "expiration"]
        assert len(expiration_runs.json()) == 1


class TestAnalyticsEndpoint:
    async def test_default_timeframe(self, client: AsyncClient) -> None:
        created = await _subscribe(client)
        await client.post(f"/api/v1/subscriptions/{created['id']}/cancel", json={})
        await _subscribe(client, "growth")

        response = await client.get("/api/v1/analytics")

        assert response.status_code == 200
        data = response.json()
        assert data["timeframe"] == "30d"
        assert data["totals"]["all"] == 2
        assert data["metrics"]["churn_rate"] == 0.5
        assert float(data["metrics"]["mrr"]) == 200.00
        assert float(data["metrics"]["arr"]) == 2400.00

    async def test_unknown_timeframe(self, client: AsyncClient) -> None:
        response = await client.get("/api/v1/analytics", params={"timeframe": "5y"})
        assert response.status_code == 422
        assert response.json()["error_code"] == "INVALID_TIMEFRAME"


class TestServiceEndpoints:
    async def test_health(self, client: AsyncClient) -> None:
        response = await client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    async def test_root(self, client: AsyncClient) -> None:
        response = await client.get("/")
        assert response.json()["docs"] == "/docs"

