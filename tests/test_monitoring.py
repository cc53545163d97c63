"""
Monitoring and maintenance tests.
Health and metrics endpoints, request logging, uncaught error handling and the scheduled jobs.
"""

import asyncio
import json
import logging
from datetime import datetime, timedelta
from unittest.mock import AsyncMock, patch

import pytest
from fastapi.testclient import TestClient

from backlify.auth.database_models import UserDB
from backlify.database import DatabaseUnavailable
from backlify.main import create_app
from backlify.main import run as run_service
from backlify.middleware.context import RequestContext
from backlify.middleware.error_handler import (
    GENERIC_ERROR_MESSAGE,
    GLOBAL_UNCAUGHT,
    install_loop_exception_handler,
    render_uncaught,
)
from backlify.middleware.logging import setup_structured_logging
from backlify.models.billing import UsageRecordDB, UserSubscriptionDB
from backlify.models.security import ErrorLogDB, IpBlacklistDB
from backlify.services.scheduler import MaintenanceScheduler

from conftest import GENERATED_API_ID, create_subscription, create_user, fetch_all

# ============================================================================
# HEALTH AND METRICS
# ============================================================================

@pytest.mark.integration
class TestHealthChecks:

    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["database"] == "connected"
        assert data["environment"] == "test"
        assert "timestamp" in data
        assert data["integrations"]["epoint"]["configured"] is True
        assert data["integrations"]["google_oauth"]["configured"] is True

    def test_health_degraded_without_database(self, client, services):
        with patch.object(services.database, "ping", AsyncMock(return_value=False)):
            data = client.get("/health").json()

        assert data["status"] == "degraded"
        assert data["database"] == "unreachable"

    def test_root(self, client):
        data = client.get("/").json()

        assert data["service"] == "Backlify Control Plane"
        assert data["status"] == "running"


@pytest.mark.integration
class TestStartup:

    def test_unreachable_store_aborts_startup(self, settings, tmp_path):
        unreachable = settings.model_copy(
            update={"database_url": f"sqlite+aiosqlite:///{tmp_path}/missing-dir/backlify.db"}
        )
        app = create_app(unreachable)

        with pytest.raises(DatabaseUnavailable):
            with TestClient(app):
                pass

    def test_failed_ping_aborts_startup(self, app, services):
        with patch.object(services.database, "ping", AsyncMock(return_value=False)):
            with pytest.raises(DatabaseUnavailable):
                with TestClient(app):
                    pass

    def test_entry_point_fails_on_startup_errors(self, settings):
        with patch("backlify.main.Settings.from_env", return_value=settings), \
                patch("backlify.main.uvicorn.run") as serve:
            run_service()

        assert serve.call_args.kwargs["lifespan"] == "on"


@pytest.mark.integration
class TestMetrics:

    def test_metrics_endpoint(self, client):
        client.get("/api/payment/plans")
        client.get("/api/payment/history")

        response = client.get("/metrics")

        assert response.status_code == 200
        text = response.text
        assert "http_requests_total" in text
        assert 'endpoint="/api/payment/plans"' in text
        assert "admission_rejections_total" in text
        assert "system_uptime_seconds" in text

    def test_request_logging(self, client, caplog):
        caplog.set_level(logging.INFO, logger="backlify.api")

        client.get("/", headers={"X-Request-ID": "req-log-1"})

        records = [r for r in caplog.records if getattr(r, "request_id", None) == "req-log-1"]
        assert [r.event for r in records] == ["request_start", "request_end"]
        assert records[-1].status_code == 200

    def test_records_render_as_json(self):
        setup_structured_logging("WARNING", json_logs=True)
        setup_structured_logging("WARNING", json_logs=True)
        handlers = [h for h in logging.getLogger().handlers if getattr(h, "_backlify_structured", False)]
        record = logging.getLogger("backlify.api").makeRecord(
            "backlify.api", logging.WARNING, __file__, 1, "Request completed", None, None,
            extra={"event": "request_end", "request_id": "req-9", "status_code": 429},
        )

        line = json.loads(handlers[0].format(record))

        assert len(handlers) == 1
        assert line["event"] == "request_end"
        assert line["request_id"] == "req-9"
        assert line["status_code"] == 429
        assert line["level"] == "warning"
        assert line["logger"] == "backlify.api"
        assert "timestamp" in line


# ============================================================================
# UNCAUGHT ERRORS
# ============================================================================

@pytest.mark.unit
class TestUncaughtErrors:

    def test_production_hides_error_text(self):
        ctx = RequestContext.new("203.0.113.1", "GET", "/api/payment/plans", request_id="req-1")

        response = render_uncaught(ctx, RuntimeError("password=hunter2"), production=True)

        body = json.loads(response.body)
        assert response.status_code == 500
        assert body == {
            "success": False,
            "error": "Internal server error",
            "message": GENERIC_ERROR_MESSAGE,
            "requestId": "req-1",
        }

    def test_development_shows_error_text(self):
        ctx = RequestContext.new("203.0.113.1", "GET", "/", request_id="req-2")

        body = json.loads(render_uncaught(ctx, ValueError("bad value"), production=False).body)

        assert body["message"] == "bad value"

    async def test_loop_errors_are_recorded(self, store):
        loop = asyncio.get_running_loop()
        install_loop_exception_handler(loop, store.audit)
        try:
            loop.call_exception_handler({"message": "Task exception was never retrieved",
                                         "exception": RuntimeError("stray task")})
            pending = [t for t in asyncio.all_tasks() if t is not asyncio.current_task()]
            await asyncio.gather(*pending)
        finally:
            loop.set_exception_handler(None)

        errors = await fetch_all(store, ErrorLogDB)
        assert len(errors) == 1
        assert errors[0].request_id == GLOBAL_UNCAUGHT
        assert errors[0].error == "stray task"
        assert "RuntimeError" in errors[0].stack


# ============================================================================
# SCHEDULED MAINTENANCE
# ============================================================================

@pytest.mark.unit
class TestScheduler:

    async def test_reap_blacklist(self, store, clock):
        await store.blacklist.add("198.51.100.1", "Temporary", clock.now() + timedelta(minutes=30))
        await store.blacklist.add("198.51.100.2", "Permanent")
        scheduler = MaintenanceScheduler(store)

        assert await scheduler.reap_blacklist() == 0
        clock.advance(minutes=31)
        assert await scheduler.reap_blacklist() == 1
        assert [e.ip for e in await fetch_all(store, IpBlacklistDB)] == ["198.51.100.2"]

    async def test_expire_subscriptions(self, store, clock):
        alice = await create_user(store, "alice", plan_id="pro")
        bob = await create_user(store, "bob", plan_id="pro")
        await create_subscription(store, alice, expires_in=timedelta(days=1))
        await create_subscription(store, bob, expires_in=timedelta(days=10))
        await create_subscription(store, bob, expires_in=timedelta(days=1), api_id=GENERATED_API_ID)
        scheduler = MaintenanceScheduler(store)

        clock.advance(days=2)
        assert await scheduler.expire_subscriptions() == 2
        assert await scheduler.expire_subscriptions() == 0

        statuses = {
            (s.user_id, s.scope_key): s.status for s in await fetch_all(store, UserSubscriptionDB)
        }
        assert statuses == {
            (alice.id, "global"): "expired",
            (bob.id, "global"): "active",
            (bob.id, GENERATED_API_ID): "expired",
        }
        plans = {u.username: u.plan_id for u in await fetch_all(store, UserDB)}
        assert plans == {"alice": "basic", "bob": "pro"}

    async def test_usage_reset_runs_once_per_month(self, store, clock):
        async def add_usage(period):
            async with store.database.session() as db:
                db.add(UsageRecordDB(
                    user_id="u-1", period_start=period, user_plan="basic",
                    requests_count=5, projects_count=1, updated_at=clock.now(),
                ))
                await db.commit()

        scheduler = MaintenanceScheduler(store)
        await add_usage(datetime(2026, 2, 1))

        assert await scheduler.reset_usage() == 1
        await add_usage(datetime(2026, 1, 1))
        assert await scheduler.reset_usage() == 0

        clock.set(datetime(2026, 4, 1, 0, 30))
        assert await scheduler.reset_usage() == 1

    async def test_failing_job_does_not_stop_the_loop(self, store):
        scheduler = MaintenanceScheduler(store, interval_seconds=0)
        calls = []
        done = asyncio.Event()

        async def flaky():
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("database went away")
            done.set()
            return 0

        task = asyncio.create_task(scheduler._loop("flaky", flaky))
        await asyncio.wait_for(done.wait(), timeout=1)
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)

        assert len(calls) >= 2

    async def test_start_and_stop(self, store):
        scheduler = MaintenanceScheduler(store)
        jobs = ("reap_blacklist", "expire_subscriptions", "reset_usage")
        mocks = {name: AsyncMock(return_value=0) for name in jobs}

        with patch.multiple(scheduler, **mocks):
            scheduler.start()
            scheduler.start()
            assert len(scheduler._tasks) == 3
            await asyncio.sleep(0)
            await scheduler.stop()

        assert scheduler._tasks == []
        for mock in mocks.values():
            mock.assert_awaited_once()
