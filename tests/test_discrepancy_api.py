"""
Discrepancy API Tests

Tests for the discrepancy endpoints, served in-process over ASGI:
- GET /api/health - Liveness
- GET /api/discrepancies/status - Module status (public)
- POST /api/discrepancies/runs - Reconcile one platform
- POST /api/discrepancies/runs/batch - Reconcile several platforms
- GET /api/discrepancies/history/{platform} - History rows
"""

import httpx
import pytest
import pytest_asyncio

from vaultaudit.config import Settings
from vaultaudit.reconciliation import HttpAccountSource
from vaultaudit.server import create_app

API_KEY = "test-internal-key"


@pytest.fixture
def app(session_factory, account_source):
    settings = Settings(_env_file=None, INTERNAL_API_KEY=API_KEY, ENVIRONMENT="testing")
    return create_app(settings, session_factory=session_factory, account_source=account_source)


@pytest_asyncio.fixture
async def api_client(app):
    """Client bound to the app, no credentials."""
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


@pytest.fixture
def authenticated_client(api_client):
    """Client with internal API key."""
    api_client.headers.update({"X-Internal-Api-Key": API_KEY})
    return api_client


class TestPublicEndpoints:

    @pytest.mark.asyncio
    async def test_health(self, api_client):
        response = await api_client.get("/api/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    @pytest.mark.asyncio
    async def test_status_endpoint(self, api_client):
        """GET /api/discrepancies/status - Returns module status."""
        response = await api_client.get("/api/discrepancies/status")

        assert response.status_code == 200
        data = response.json()
        assert data["module"] == "discrepancies"
        assert data["status"] == "operational"
        assert set(data["discrepancy_types"]) == {"NOT_VAULTED", "ORPHANED"}


class TestAuthentication:

    @pytest.mark.asyncio
    async def test_missing_key_rejected(self, api_client):
        response = await api_client.post("/api/discrepancies/runs", json={"platform": "ad"})

        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_wrong_key_rejected(self, api_client):
        response = await api_client.get(
            "/api/discrepancies/history/ad",
            headers={"X-Internal-Api-Key": "not-the-key"}
        )

        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_unconfigured_keys_unavailable(self, session_factory, account_source, monkeypatch):
        monkeypatch.delenv("INTERNAL_API_KEY", raising=False)
        monkeypatch.delenv("INTERNAL_API_KEYS", raising=False)
        app = create_app(
            Settings(_env_file=None, ENVIRONMENT="testing"),
            session_factory=session_factory,
            account_source=account_source,
        )
        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
            response = await client.post(
                "/api/discrepancies/runs",
                json={"platform": "ad"},
                headers={"X-Internal-Api-Key": API_KEY}
            )

        assert response.status_code == 503


class TestRuns:

    @pytest.mark.asyncio
    async def test_run_returns_summary(self, authenticated_client, set_inventory):
        set_inventory("ad", vault=["svc_old"], platform_accounts=["svc_new"])

        response = await authenticated_client.post("/api/discrepancies/runs", json={
            "platform": "ad",
            "at": "2026-03-01T09:00:00+00:00",
        })

        assert response.status_code == 200
        data = response.json()
        assert data["platform"] == "ad"
        assert data["created"] == 2
        assert data["updated"] == 0
        assert data["resolved"] == 0
        assert data["run_id"]

    @pytest.mark.asyncio
    async def test_fetch_failure_is_bad_gateway(self, authenticated_client):
        response = await authenticated_client.post("/api/discrepancies/runs", json={"platform": "unknown"})

        assert response.status_code == 502
        detail = response.json()["detail"]
        assert detail["error"] == "FetchError"
        assert detail["platform"] == "unknown"
        assert detail["side"] == "vault"

    @pytest.mark.asyncio
    async def test_out_of_order_run_is_conflict(self, authenticated_client, set_inventory):
        set_inventory("ad", vault=[], platform_accounts=["svc_a"])
        await authenticated_client.post("/api/discrepancies/runs", json={
            "platform": "ad", "at": "2026-03-02T09:00:00+00:00"
        })

        response = await authenticated_client.post("/api/discrepancies/runs", json={
            "platform": "ad", "at": "2026-03-01T09:00:00+00:00"
        })

        assert response.status_code == 409
        assert response.json()["detail"]["error"] == "StaleRunTimeError"

    @pytest.mark.asyncio
    async def test_naive_time_rejected(self, authenticated_client, set_inventory):
        set_inventory("ad")

        response = await authenticated_client.post("/api/discrepancies/runs", json={
            "platform": "ad", "at": "2026-03-01T09:00:00"
        })

        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_empty_platform_rejected(self, authenticated_client):
        response = await authenticated_client.post("/api/discrepancies/runs", json={"platform": ""})

        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_batch_reports_each_platform(self, authenticated_client, set_inventory):
        set_inventory("ad", vault=[], platform_accounts=["svc_a"])
        set_inventory("linux", vault=["root"], platform_accounts=["root"])

        response = await authenticated_client.post("/api/discrepancies/runs/batch", json={
            "platforms": ["ad", "unknown", "linux"],
            "at": "2026-03-01T09:00:00+00:00",
        })

        assert response.status_code == 200
        data = response.json()
        assert data["succeeded"] == 2
        assert data["failed"] == 1

        outcomes = {o["platform"]: o for o in data["outcomes"]}
        assert outcomes["ad"]["ok"] is True
        assert outcomes["ad"]["summary"]["created"] == 1
        assert outcomes["unknown"]["ok"] is False
        assert outcomes["unknown"]["error"] == "FetchError"
        assert outcomes["linux"]["summary"]["created"] == 0


class TestHistory:

    @pytest.mark.asyncio
    async def test_history_lifecycle(self, authenticated_client, set_inventory):
        set_inventory("ad", vault=[], platform_accounts=[{"account_id": "svc_a", "account_name": "Service A"}])
        await authenticated_client.post("/api/discrepancies/runs", json={
            "platform": "ad", "at": "2026-03-01T09:00:00+00:00"
        })
        set_inventory("ad", vault=["svc_a"], platform_accounts=["svc_a"])
        await authenticated_client.post("/api/discrepancies/runs", json={
            "platform": "ad", "at": "2026-03-01T10:00:00+00:00"
        })

        response = await authenticated_client.get("/api/discrepancies/history/ad")

        assert response.status_code == 200
        data = response.json()
        assert data["platform"] == "ad"
        assert data["count"] == 1
        [record] = data["records"]
        assert record["discrepancy_type"] == "NOT_VAULTED"
        assert record["account_id"] == "svc_a"
        assert record["account_name"] == "Service A"
        assert record["is_resolved"] is True
        assert record["resolved_at"] is not None

    @pytest.mark.asyncio
    async def test_history_filters(self, authenticated_client, set_inventory):
        set_inventory("ad", vault=["svc_old"], platform_accounts=["svc_new"])
        await authenticated_client.post("/api/discrepancies/runs", json={
            "platform": "ad", "at": "2026-03-01T09:00:00+00:00"
        })

        orphaned = await authenticated_client.get(
            "/api/discrepancies/history/ad", params={"discrepancy_type": "ORPHANED"}
        )
        resolved = await authenticated_client.get(
            "/api/discrepancies/history/ad", params={"status": "resolved"}
        )
        by_account = await authenticated_client.get(
            "/api/discrepancies/history/ad", params={"account_id": "svc_new"}
        )

        assert [r["account_id"] for r in orphaned.json()["records"]] == ["svc_old"]
        assert resolved.json()["count"] == 0
        assert [r["discrepancy_type"] for r in by_account.json()["records"]] == ["NOT_VAULTED"]

    @pytest.mark.asyncio
    async def test_invalid_filter_rejected(self, authenticated_client):
        response = await authenticated_client.get(
            "/api/discrepancies/history/ad", params={"status": "pending"}
        )

        assert response.status_code == 422


class TestStartup:
    """Lifespan builds only the collaborators that were not passed in."""

    @pytest.mark.asyncio
    async def test_supplied_session_factory_is_kept(self, session_factory):
        settings = Settings(
            _env_file=None,
            ENVIRONMENT="testing",
            INTERNAL_API_KEY=API_KEY,
            ACCOUNT_SOURCE_URL="http://inventory.test",
        )
        app = create_app(settings, session_factory=session_factory)

        async with app.router.lifespan_context(app):
            engine = app.state.reconciliation_engine
            assert app.state.session_factory is session_factory
            assert engine.session_factory is session_factory
            assert isinstance(engine.account_source, HttpAccountSource)

    @pytest.mark.asyncio
    async def test_supplied_account_source_is_kept(self, tmp_path, account_source, set_inventory):
        settings = Settings(
            _env_file=None,
            ENVIRONMENT="testing",
            INTERNAL_API_KEY=API_KEY,
            DATABASE_URL=f"sqlite+aiosqlite:///{tmp_path / 'startup.db'}",
        )
        app = create_app(settings, account_source=account_source)
        set_inventory("ad", vault=[], platform_accounts=["svc_a"])

        async with app.router.lifespan_context(app):
            engine = app.state.reconciliation_engine
            assert engine.account_source is account_source
            assert app.state.session_factory is not None

            summary = await engine.run("ad")
            assert summary.created == 1
