from __future__ import annotations

import json
import logging
import os
from contextlib import asynccontextmanager
from datetime import date
from typing import Any, Generator

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from sqlalchemy import select
from sqlalchemy.orm import Session

from rmswatch import diagnostics, services, sync
from rmswatch.db import get_engine, init_db, migrate_db, session_generator
from rmswatch.models import Opportunity
from rmswatch.rms_client import RMSClient
from rmswatch.schemas import (
    CommitOrdersResult,
    EventListResponse,
    ForecastUpsert,
    HealthResponse,
    OpportunityDetail,
    OpportunityListResponse,
    RiskAssessmentOut,
    RiskAssessmentUpdate,
    RiskSummaryRow,
)

log = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    yield


app = FastAPI(
    title="RMS Watch",
    version="0.1.0",
    description=(
        "Operational dashboard API for a Current RMS opportunity pipeline. "
        "Receives webhooks, mirrors opportunities, and layers forecasting and "
        "risk scoring on top. All endpoints return JSON. No authentication required."
    ),
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Webhooks", "description": "Inbound Current RMS webhooks and the event log."},
        {"name": "Diagnostics", "description": "Health metrics and webhook self-tests."},
        {"name": "Opportunities", "description": "Mirrored opportunity records."},
        {"name": "Forecast", "description": "Probability, commit/upside and override metadata."},
        {"name": "Risk", "description": "Eight-factor risk assessments."},
        {"name": "Sync", "description": "Copy opportunities from Current RMS."},
        {"name": "Admin", "description": "Administrative operations."},
    ],
)


# ---------------------------------------------------------------------------
# Dependencies & Helpers
# ---------------------------------------------------------------------------


def db_session() -> Generator[Session, None, None]:
    yield from session_generator()


def rms_client() -> RMSClient:
    return RMSClient()


def _get_or_404(session: Session, opportunity_id: int) -> Opportunity:
    opp = session.execute(select(Opportunity).where(Opportunity.id == opportunity_id)).scalars().first()
    if not opp:
        raise HTTPException(404, "Opportunity not found")
    return opp


# ---------------------------------------------------------------------------
# Routes: Webhooks & events
# ---------------------------------------------------------------------------


@app.post("/api/webhook", tags=["Webhooks"], summary="Receive a Current RMS webhook")
async def receive_webhook(request: Request, session: Session = Depends(db_session)):
    try:
        payload = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise HTTPException(400, "Request body must be JSON") from exc
    try:
        event = services.ingest_webhook(session, payload)
    except ValueError as exc:
        log.warning("Rejected webhook: %s", exc)
        raise HTTPException(400, str(exc)) from exc
    except services.WebhookProcessingError as exc:
        raise HTTPException(500, f"Webhook stored as event {exc.event_id} but not processed: {exc}") from exc
    return {"success": True, "event_id": event.id, "message": "Webhook received"}


@app.get("/api/events", response_model=EventListResponse,
         tags=["Webhooks"], summary="Most recent webhook events, newest first")
async def list_events(limit: int = Query(50, ge=1, le=500), session: Session = Depends(db_session)):
    events = services.recent_events(session, limit)
    return {"events": events, "count": len(events)}


@app.get("/api/health", response_model=HealthResponse,
         tags=["Diagnostics"], summary="Webhook processing metrics")
async def health(session: Session = Depends(db_session)):
    return {"status": "healthy", "metrics": services.health_metrics(session)}


# ---------------------------------------------------------------------------
# Routes: Diagnostics
# ---------------------------------------------------------------------------


@app.get("/api/debug", tags=["Diagnostics"], summary="Environment and endpoint diagnostics")
async def debug(request: Request):
    return {
        "success": True,
        "diagnostics": diagnostics.debug_info(str(request.base_url), request.headers.get("host")),
    }


@app.post("/api/test-webhook", tags=["Diagnostics"], summary="Ingest a synthetic test webhook")
async def test_webhook(session: Session = Depends(db_session)):
    try:
        payload, event = diagnostics.send_test_webhook(session)
    except services.WebhookProcessingError as exc:
        raise HTTPException(500, f"Test webhook failed: {exc}") from exc
    return {
        "success": True,
        "message": "Test webhook sent successfully",
        "event": event,
        "test_payload": payload,
    }


@app.post("/api/quick-webhook-test", tags=["Diagnostics"],
          summary="Database, ingestion and retrieval checks")
async def quick_webhook_test(session: Session = Depends(db_session)):
    return diagnostics.quick_webhook_test(session)


@app.post("/api/webhook-test-detailed", tags=["Diagnostics"],
          summary="Step-by-step webhook diagnostic with recommendations")
async def webhook_test_detailed(session: Session = Depends(db_session)):
    return diagnostics.detailed_webhook_test(session)


# ---------------------------------------------------------------------------
# Routes: Opportunities
# ---------------------------------------------------------------------------


@app.get("/api/opportunities", response_model=OpportunityListResponse,
         tags=["Opportunities"], summary="List mirrored opportunities")
async def list_opportunities(
    status: str | None = Query(None, description="Comma-separated statuses, e.g. Provisional,Order"),
    owner: str | None = Query(None, description="Exact owner name"),
    search: str | None = Query(None, description="Free-text search across name, subject and customer"),
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    session: Session = Depends(db_session),
):
    items, total = services.list_opportunities(
        session, status=status, owner=owner, search=search, limit=limit, offset=offset,
    )
    return {"items": items, "total": total}


@app.get("/api/opportunities/{opportunity_id}", response_model=OpportunityDetail,
         tags=["Opportunities"], summary="Opportunity with forecast and risk data")
async def get_opportunity(opportunity_id: int, session: Session = Depends(db_session)):
    return services.opportunity_detail(_get_or_404(session, opportunity_id))


# ---------------------------------------------------------------------------
# Routes: Forecast
# ---------------------------------------------------------------------------


@app.get("/api/opportunities/{opportunity_id}/forecast", tags=["Forecast"],
         summary="Forecast metadata for one opportunity")
async def get_forecast(opportunity_id: int, session: Session = Depends(db_session)):
    fm = services.get_forecast(session, opportunity_id)
    if fm is None:
        return {
            "success": True,
            "forecast": None,
            "message": "No forecast metadata found for this opportunity",
        }
    return {"success": True, "forecast": services.forecast_dict(fm)}


@app.api_route("/api/opportunities/{opportunity_id}/forecast", methods=["POST", "PATCH"],
               tags=["Forecast"], summary="Create or replace forecast metadata")
async def save_forecast(opportunity_id: int, body: ForecastUpsert, session: Session = Depends(db_session)):
    _get_or_404(session, opportunity_id)
    try:
        fm = services.save_forecast(session, opportunity_id, body.model_dump())
    except ValueError as exc:
        raise HTTPException(400, str(exc)) from exc
    session.commit()
    return {
        "success": True,
        "message": "Forecast metadata saved successfully",
        "forecast": services.forecast_dict(fm),
    }


@app.delete("/api/opportunities/{opportunity_id}/forecast", tags=["Forecast"],
            summary="Delete forecast metadata")
async def delete_forecast(opportunity_id: int, session: Session = Depends(db_session)):
    if not services.delete_forecast(session, opportunity_id):
        raise HTTPException(404, "Forecast metadata not found")
    session.commit()
    return {"success": True, "message": "Forecast metadata deleted successfully"}


@app.get("/api/forecast/summary", tags=["Forecast"],
         summary="Forecast totals, breakdowns and enriched opportunities")
async def forecast_summary(
    start_date: date | None = Query(None, description="Earliest start date (inclusive)"),
    end_date: date | None = Query(None, description="Latest start date (inclusive)"),
    owner: str | None = Query(None),
    customer: str | None = Query(None),
    include_excluded: bool = Query(False),
    session: Session = Depends(db_session),
):
    if start_date and end_date and start_date > end_date:
        raise HTTPException(400, "start_date must not be after end_date")
    data = services.forecast_summary(
        session, start_date=start_date, end_date=end_date, owner=owner,
        customer=customer, include_excluded=include_excluded,
    )
    return {"success": True, "data": data}


@app.post("/api/forecast/commit-orders", tags=["Forecast"],
          summary="Mark every opportunity in Order status as commit")
async def commit_orders(session: Session = Depends(db_session)):
    details = services.commit_orders(session)
    session.commit()
    return {
        "success": True,
        "message": "Successfully marked orders as commit",
        "details": CommitOrdersResult(**details),
    }


# ---------------------------------------------------------------------------
# Routes: Risk
# ---------------------------------------------------------------------------


@app.get("/api/opportunities/{opportunity_id}/risk", response_model=RiskAssessmentOut,
         tags=["Risk"], summary="Risk assessment for one opportunity")
async def get_risk(opportunity_id: int, session: Session = Depends(db_session)):
    return services.risk_detail(_get_or_404(session, opportunity_id))


@app.put("/api/opportunities/{opportunity_id}/risk", response_model=RiskAssessmentOut,
         tags=["Risk"], summary="Replace risk factor scores and recompute the level")
async def update_risk(opportunity_id: int, body: RiskAssessmentUpdate, session: Session = Depends(db_session)):
    opp = _get_or_404(session, opportunity_id)
    try:
        services.update_risk(opp, body.model_dump())
    except ValueError as exc:
        raise HTTPException(400, str(exc)) from exc
    session.commit()
    return services.risk_detail(opp)


@app.get("/api/risk/factors", tags=["Risk"], summary="The eight risk factors with weights and scales")
async def risk_factors():
    return {"success": True, "data": services.risk_factors()}


@app.get("/api/risk/summary", tags=["Risk"], summary="Opportunity count and value per risk level")
async def risk_summary(session: Session = Depends(db_session)):
    rows = [RiskSummaryRow(**r) for r in services.risk_summary(session)]
    return {"success": True, "data": rows}


@app.get("/api/risk/opportunities", tags=["Risk"], summary="Opportunities at a risk level")
async def risk_opportunities(
    level: str | None = Query(None, description="LOW, MEDIUM, HIGH, CRITICAL; 'null' or empty for unscored"),
    limit: int = Query(100, ge=1, le=1000),
    session: Session = Depends(db_session),
):
    risk_level = None if level in (None, "", "null") else level
    try:
        opportunities = services.opportunities_by_risk_level(session, risk_level, limit)
    except ValueError as exc:
        raise HTTPException(400, str(exc)) from exc
    return {"success": True, "data": opportunities, "count": len(opportunities)}


# ---------------------------------------------------------------------------
# Routes: Sync
# ---------------------------------------------------------------------------


def _sync_response(result: sync.SyncResult) -> dict[str, Any]:
    label = "Initial" if result.sync_type == sync.INITIAL_SYNC else "Incremental"
    if not result.success:
        raise HTTPException(500, {
            "success": False,
            "message": f"{label} sync failed",
            "error": result.error,
            "sync_id": result.sync_id,
            "records_synced": result.records_synced,
            "records_failed": result.records_failed,
        })
    return {
        "success": True,
        "message": f"{label} sync completed successfully",
        "sync_id": result.sync_id,
        "records_synced": result.records_synced,
        "records_failed": result.records_failed,
        "duration": result.duration,
    }


@app.post("/api/sync/initial", tags=["Sync"], summary="Copy every opportunity from Current RMS")
async def sync_initial(session: Session = Depends(db_session), client: RMSClient = Depends(rms_client)):
    log.info("Starting initial opportunity sync")
    return _sync_response(await sync.initial_sync(session, client))


@app.post("/api/sync/incremental", tags=["Sync"], summary="Copy opportunities updated since the last sync")
async def sync_incremental(session: Session = Depends(db_session), client: RMSClient = Depends(rms_client)):
    log.info("Starting incremental opportunity sync")
    return _sync_response(await sync.incremental_sync(session, client))


@app.get("/api/sync/status", tags=["Sync"], summary="Last sync run and recent history")
async def sync_status(session: Session = Depends(db_session)):
    return {
        "success": True,
        "last_sync": sync.last_sync_status(session),
        "history": sync.sync_history(session, 10),
    }


# ---------------------------------------------------------------------------
# Routes: Admin
# ---------------------------------------------------------------------------


@app.post("/api/migrate-database", tags=["Admin"], summary="Create missing tables and columns")
async def migrate_database():
    changes = migrate_db(get_engine())
    return {
        "success": True,
        "changes": changes,
        "message": "Database is up to date" if not changes else f"Applied {len(changes)} schema changes",
    }


# ---------------------------------------------------------------------------
# Startup
# ---------------------------------------------------------------------------


def main():
    import uvicorn
    uvicorn.run(
        "rmswatch.app:app",
        host=os.environ.get("HOST", "127.0.0.1"),
        port=int(os.environ.get("PORT", "8001")),
        log_level=os.environ.get("LOG_LEVEL", "info").lower(),
    )


if __name__ == "__main__":
    main()
