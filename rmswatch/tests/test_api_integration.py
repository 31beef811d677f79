"""Integration tests for the FastAPI endpoints.

Uses TestClient with an in-memory database swapped in for ``db_session``.
"""
from __future__ import annotations

from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, patch

import httpx
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from rmswatch.models import Base, Opportunity, WebhookEvent
from rmswatch.rms_client import RMSClient
from rmswatch.sync import SyncResult


@pytest.fixture()
def test_db():
    """Create a temporary SQLite in-memory database for testing.

    Uses StaticPool so all connections share the same in-memory database.
    """
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    TestSession = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return engine, TestSession


@pytest.fixture()
def client(test_db, tmp_path, monkeypatch):
    """FastAPI TestClient using in-memory database."""
    # The lifespan still initialises the module-level engine; keep it out of the package dir
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path / 'lifespan.db'}")
    engine, TestSession = test_db
    from rmswatch.app import app, db_session

    def override_db_session():
        session = TestSession()
        try:
            yield session
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    app.dependency_overrides[db_session] = override_db_session
    with TestClient(app, raise_server_exceptions=True) as c:
        yield c, TestSession
    app.dependency_overrides.clear()


@pytest.fixture()
def seeded_client(client):
    """Client with two opportunities pre-seeded."""
    c, TestSession = client
    session = TestSession()
    session.add_all([
        Opportunity(
            id=101, name="Summer Festival", organisation_name="Acme", owner_name="Alice",
            opportunity_status="Order", charge_total=10000.0, provisional_cost_total=4000.0,
            starts_at=datetime(2024, 7, 1, tzinfo=UTC), rms_updated_at=datetime(2024, 5, 1, tzinfo=UTC),
        ),
        Opportunity(
            id=102, name="Board Dinner", organisation_name="Globex", owner_name="Bob",
            opportunity_status="Provisional", charge_total=2000.0, provisional_cost_total=500.0,
            starts_at=datetime(2024, 8, 1, tzinfo=UTC),
        ),
    ])
    session.commit()
    session.close()
    return c, TestSession


def _webhook(**action):
    base = {
        "id": 1, "subject_id": 101, "subject_type": "Opportunity", "action_type": "update",
        "name": "Summer Festival", "member": {"id": 2, "name": "Carol"},
        "subject": {"name": "Summer Festival", "organisation_name": "Acme", "opportunity_status": "Reserved"},
    }
    base.update(action)
    return {"action": base}


# ---------------------------------------------------------------------------
# Webhooks & events
# ---------------------------------------------------------------------------


class TestWebhookEndpoints:
    def test_receive_webhook(self, seeded_client):
        c, TestSession = seeded_client
        resp = c.post("/api/webhook", json=_webhook())
        assert resp.status_code == 200
        data = resp.json()
        assert data["success"] is True
        assert data["event_id"] > 0

        session = TestSession()
        assert session.get(Opportunity, 101).opportunity_status == "Reserved"
        session.close()

    def test_invalid_payload(self, client):
        c, _ = client
        resp = c.post("/api/webhook", json={"not_action": {}})
        assert resp.status_code == 400
        assert "Invalid webhook payload" in resp.json()["detail"]

    def test_empty_action_is_rejected(self, client):
        c, TestSession = client
        resp = c.post("/api/webhook", json={"action": {}})
        assert resp.status_code == 400
        session = TestSession()
        assert session.query(WebhookEvent).count() == 0
        session.close()

    def test_null_fields_are_accepted(self, seeded_client):
        c, _ = seeded_client
        resp = c.post("/api/webhook", json=_webhook(
            member={"id": 2, "name": None},
            subject={"name": "Summer Festival", "organisation_name": None, "opportunity_status": None},
        ))
        assert resp.status_code == 200
        assert resp.json()["success"] is True

    def test_malformed_json(self, client):
        c, _ = client
        resp = c.post("/api/webhook", content=b"{not json", headers={"Content-Type": "application/json"})
        assert resp.status_code == 400

    def test_processing_failure_returns_500(self, client):
        c, _ = client
        with patch("rmswatch.services._apply_to_opportunity", side_effect=RuntimeError("db gone")):
            resp = c.post("/api/webhook", json=_webhook())
        assert resp.status_code == 500
        assert "db gone" in resp.json()["detail"]

    def test_events_and_health(self, client):
        c, _ = client
        c.post("/api/webhook", json=_webhook(id=1))
        c.post("/api/webhook", json=_webhook(id=2))

        resp = c.get("/api/events", params={"limit": 1})
        assert resp.status_code == 200
        data = resp.json()
        assert data["count"] == 1
        assert data["events"][0]["action_id"] == 2

        health = c.get("/api/health").json()
        assert health["status"] == "healthy"
        assert health["metrics"]["total_events"] == 2
        assert health["metrics"]["failed_events"] == 0

    def test_events_limit_bounds(self, client):
        c, _ = client
        assert c.get("/api/events", params={"limit": 0}).status_code == 422


# ---------------------------------------------------------------------------
# Diagnostics
# ---------------------------------------------------------------------------


class TestDiagnosticsEndpoints:
    def test_debug(self, client, monkeypatch):
        monkeypatch.setenv("CURRENT_RMS_SUBDOMAIN", "acme")
        monkeypatch.delenv("CURRENT_RMS_API_KEY", raising=False)
        c, _ = client
        data = c.get("/api/debug").json()["diagnostics"]
        assert data["environment"]["has_subdomain"] is True
        assert data["environment"]["has_api_key"] is False
        assert data["endpoints"]["webhook"].endswith("/api/webhook")

    def test_test_webhook(self, client):
        c, TestSession = client
        resp = c.post("/api/test-webhook")
        assert resp.status_code == 200
        data = resp.json()
        assert data["event"]["opportunity_id"] == 99999
        assert data["test_payload"]["action"]["subject_type"] == "Opportunity"
        session = TestSession()
        assert session.query(WebhookEvent).count() == 1
        session.close()

    def test_quick_webhook_test(self, client):
        c, _ = client
        data = c.post("/api/quick-webhook-test").json()
        assert data["success"] is True
        assert [t["name"] for t in data["tests"]] == [
            "Database Connectivity", "Webhook Endpoint", "Event Retrieval",
        ]
        assert data["next_steps"] == ["System is healthy and ready to receive webhooks"]

    def test_detailed_webhook_test(self, client):
        c, _ = client
        data = c.post("/api/webhook-test-detailed").json()
        assert data["success"] is True
        steps = data["diagnostics"]
        assert steps["step2_webhook_call"]["status"] == "success"
        assert steps["step4_event_retrieval"]["test_event_found"] is True
        assert data["recommendations"]


# ---------------------------------------------------------------------------
# Opportunities
# ---------------------------------------------------------------------------


class TestOpportunityEndpoints:
    def test_list(self, seeded_client):
        c, _ = seeded_client
        data = c.get("/api/opportunities").json()
        assert data["total"] == 2
        assert [o["id"] for o in data["items"]] == [101, 102]

    def test_list_filters(self, seeded_client):
        c, _ = seeded_client
        data = c.get("/api/opportunities", params={"status": "provisional"}).json()
        assert [o["id"] for o in data["items"]] == [102]
        data = c.get("/api/opportunities", params={"search": "acme"}).json()
        assert [o["id"] for o in data["items"]] == [101]

    def test_detail(self, seeded_client):
        c, _ = seeded_client
        data = c.get("/api/opportunities/101").json()
        assert data["name"] == "Summer Festival"
        assert data["forecast"] is None
        assert data["risk"]["needs_review"] is True
        assert data["risk"]["approval_level"] == "Not assessed"

    def test_not_found(self, client):
        c, _ = client
        assert c.get("/api/opportunities/9").status_code == 404


# ---------------------------------------------------------------------------
# Forecast
# ---------------------------------------------------------------------------


class TestForecastEndpoints:
    def test_get_missing_forecast(self, seeded_client):
        c, _ = seeded_client
        data = c.get("/api/opportunities/102/forecast").json()
        assert data["success"] is True
        assert data["forecast"] is None

    def test_save_and_read_back(self, seeded_client):
        c, _ = seeded_client
        resp = c.post("/api/opportunities/102/forecast", json={"probability": 60, "notes": "Likely"})
        assert resp.status_code == 200
        assert resp.json()["forecast"]["probability"] == 60

        resp = c.patch("/api/opportunities/102/forecast", json={"probability": 70, "is_commit": True})
        assert resp.status_code == 200

        fm = c.get("/api/opportunities/102/forecast").json()["forecast"]
        assert fm["probability"] == 70
        assert fm["is_commit"] is True
        assert fm["notes"] is None

    def test_validation_errors(self, seeded_client):
        c, _ = seeded_client
        resp = c.post("/api/opportunities/102/forecast", json={"probability": 150})
        assert resp.status_code == 400
        resp = c.post("/api/opportunities/102/forecast", json={"is_excluded": True})
        assert resp.status_code == 400
        assert "Exclusion reason" in resp.json()["detail"]

    @pytest.mark.parametrize("probability", ["abc", 50.5])
    def test_non_integer_probability_is_a_bad_request(self, seeded_client, probability):
        c, _ = seeded_client
        resp = c.post("/api/opportunities/102/forecast", json={"probability": probability})
        assert resp.status_code == 400
        assert "whole number" in resp.json()["detail"]

    def test_numeric_string_probability(self, seeded_client):
        c, _ = seeded_client
        resp = c.post("/api/opportunities/102/forecast", json={"probability": "60"})
        assert resp.status_code == 200
        assert resp.json()["forecast"]["probability"] == 60

    def test_save_for_unknown_opportunity(self, client):
        c, _ = client
        assert c.post("/api/opportunities/5/forecast", json={"probability": 10}).status_code == 404

    def test_delete(self, seeded_client):
        c, _ = seeded_client
        assert c.delete("/api/opportunities/102/forecast").status_code == 404
        c.post("/api/opportunities/102/forecast", json={"probability": 10})
        assert c.delete("/api/opportunities/102/forecast").status_code == 200
        assert c.get("/api/opportunities/102/forecast").json()["forecast"] is None

    def test_commit_orders_and_summary(self, seeded_client):
        c, _ = seeded_client
        details = c.post("/api/forecast/commit-orders").json()["details"]
        assert details == {"new_records_created": 1, "existing_records_updated": 0, "total_commit_orders": 1}

        c.post("/api/opportunities/102/forecast", json={"probability": 50})
        data = c.get("/api/forecast/summary").json()["data"]
        assert data["summary"]["commit_count"] == 1
        assert data["summary"]["upside_count"] == 1
        assert data["summary"]["weighted_revenue"] == 11000.0
        assert data["by_owner"][0]["owner"] == "Alice"

    def test_summary_date_filters(self, seeded_client):
        c, _ = seeded_client
        data = c.get("/api/forecast/summary", params={"start_date": "2024-07-15"}).json()["data"]
        assert [o["id"] for o in data["opportunities"]] == [102]

        resp = c.get("/api/forecast/summary", params={"start_date": "2024-09-01", "end_date": "2024-01-01"})
        assert resp.status_code == 400


# ---------------------------------------------------------------------------
# Risk
# ---------------------------------------------------------------------------


class TestRiskEndpoints:
    def test_update_and_read(self, seeded_client):
        c, _ = seeded_client
        resp = c.put("/api/opportunities/101/risk", json={
            "risk_budget_size": 5, "risk_timeframe_constraint": 5,
            "risk_mitigation_plan": 1, "risk_reviewed": "Alice",
        })
        assert resp.status_code == 200
        data = resp.json()
        assert data["risk_score"] == 5.0
        assert data["risk_level"] == "CRITICAL"
        assert data["approval_level"] == "Executive Approval Required"
        assert data["needs_review"] is False

        assert c.get("/api/opportunities/101/risk").json()["risk_level"] == "CRITICAL"

    def test_invalid_scores(self, seeded_client):
        c, _ = seeded_client
        assert c.put("/api/opportunities/101/risk", json={"risk_budget_size": 9}).status_code == 400
        assert c.put("/api/opportunities/999/risk", json={}).status_code == 404

    def test_factor_table(self, client):
        c, _ = client
        factors = c.get("/api/risk/factors").json()["data"]
        assert len(factors) == 8
        assert factors[0]["id"] == "risk_project_novelty"
        assert [s["value"] for s in factors[0]["scale"]] == [1, 2, 3, 4, 5]

    def test_summary_and_listing(self, seeded_client):
        c, _ = seeded_client
        c.put("/api/opportunities/101/risk", json={"risk_budget_size": 1})

        rows = c.get("/api/risk/summary").json()["data"]
        by_level = {r["level"]: r for r in rows}
        assert by_level["LOW"]["count"] == 1
        assert by_level["LOW"]["total_value"] == 10000.0
        assert by_level[None]["count"] == 1

        data = c.get("/api/risk/opportunities", params={"level": "LOW"}).json()
        assert [o["id"] for o in data["data"]] == [101]
        data = c.get("/api/risk/opportunities", params={"level": "null"}).json()
        assert [o["id"] for o in data["data"]] == [102]
        assert c.get("/api/risk/opportunities", params={"level": "BAD"}).status_code == 400


# ---------------------------------------------------------------------------
# Sync & admin
# ---------------------------------------------------------------------------


def _fake_rms_client(records, status_code=200):
    def handler(request: httpx.Request) -> httpx.Response:
        if status_code != 200:
            return httpx.Response(status_code)
        return httpx.Response(200, json={"opportunities": records, "meta": {"total_row_count": len(records)}})

    return lambda: RMSClient(subdomain="acme", api_key="k", transport=httpx.MockTransport(handler))


class TestSyncEndpoints:
    def test_initial_and_status(self, client):
        c, _ = client
        from rmswatch.app import app, rms_client
        app.dependency_overrides[rms_client] = _fake_rms_client([
            {"id": 1, "name": "Synced", "opportunity_status": "Order", "charge_total": "100.0"},
        ])

        resp = c.post("/api/sync/initial")
        assert resp.status_code == 200
        data = resp.json()
        assert data["records_synced"] == 1
        assert data["records_failed"] == 0

        assert c.get("/api/opportunities/1").json()["name"] == "Synced"

        resp = c.post("/api/sync/incremental")
        assert resp.status_code == 200

        status = c.get("/api/sync/status").json()
        assert status["last_sync"]["sync_type"] == "incremental_sync"
        assert len(status["history"]) == 2

    def test_failed_sync_returns_500(self, client):
        c, _ = client
        from rmswatch.app import app, rms_client
        app.dependency_overrides[rms_client] = _fake_rms_client([], status_code=502)

        resp = c.post("/api/sync/initial")
        assert resp.status_code == 500
        detail = resp.json()["detail"]
        assert detail["success"] is False
        assert "502" in detail["error"]

    def test_success_response_shape(self, client):
        c, _ = client
        started = datetime(2024, 1, 1, 12, 0, tzinfo=UTC)
        result = SyncResult(
            success=True, sync_id=7, sync_type="incremental_sync", started_at=started,
            completed_at=started + timedelta(seconds=42), records_synced=3, records_failed=1,
        )
        with patch("rmswatch.app.sync.incremental_sync", new=AsyncMock(return_value=result)) as mock_sync:
            resp = c.post("/api/sync/incremental")
        assert resp.status_code == 200
        assert resp.json() == {
            "success": True,
            "message": "Incremental sync completed successfully",
            "sync_id": 7,
            "records_synced": 3,
            "records_failed": 1,
            "duration": 42,
        }
        mock_sync.assert_awaited_once()

    def test_status_without_runs(self, client):
        c, _ = client
        data = c.get("/api/sync/status").json()
        assert data["last_sync"] is None
        assert data["history"] == []


class TestAdminEndpoints:
    def test_migrate_database_is_idempotent(self, client):
        c, _ = client
        data = c.post("/api/migrate-database").json()
        assert data["success"] is True
        assert data["changes"] == []
