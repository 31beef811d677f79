"""Self-tests for the webhook path, surfaced by the dashboard's diagnostic buttons.

The synthetic payloads go through ``services.ingest_webhook`` exactly like a
delivery from Current RMS, so a passing test means real webhooks will be
stored too.
"""
from __future__ import annotations

import logging
import os
import platform
import random
import sys
from typing import Any

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from rmswatch import services
from rmswatch.db import database_configured
from rmswatch.utils import utcnow

log = logging.getLogger(__name__)

TEST_OPPORTUNITY_ID = 99999
DETAILED_TEST_OPPORTUNITY_ID = 88888

PASSED, WARNING, FAILED, ERROR = "PASSED", "WARNING", "FAILED", "ERROR"


def build_test_payload(
    action_type: str = "update",
    subject_id: int = TEST_OPPORTUNITY_ID,
    name: str = "Test Opportunity",
    actor: str = "Test User",
    status: str = "Provisional",
) -> dict[str, Any]:
    return {
        "action": {
            "id": random.randint(1, 9999),
            "subject_id": subject_id,
            "subject_type": "Opportunity",
            "member_id": 1,
            "action_type": action_type,
            "name": name,
            "member": {"id": 1, "name": actor},
            "subject": {
                "name": name,
                "organisation_name": "Test Customer",
                "opportunity_status": status,
            },
        }
    }


def debug_info(base_url: str, host: str | None) -> dict[str, Any]:
    base_url = base_url.rstrip("/")
    return {
        "timestamp": utcnow().isoformat(),
        "environment": {
            "has_database_url": database_configured(),
            "has_subdomain": bool(os.environ.get("CURRENT_RMS_SUBDOMAIN")),
            "has_api_key": bool(os.environ.get("CURRENT_RMS_API_KEY")),
            "has_webhook_secret": bool(os.environ.get("WEBHOOK_SECRET")),
        },
        "endpoints": {
            "webhook": f"{base_url}/api/webhook",
            "health": f"{base_url}/api/health",
            "events": f"{base_url}/api/events",
        },
        "server": {
            "host": host,
            "platform": sys.platform,
            "python_version": platform.python_version(),
        },
    }


def send_test_webhook(session: Session) -> tuple[dict[str, Any], dict[str, Any]]:
    """Ingest a synthetic update. Returns (payload, stored event)."""
    payload = build_test_payload()
    event = services.ingest_webhook(session, payload)
    return payload, services.event_summary(event)


def _check_database(session: Session) -> dict[str, Any]:
    check = {"name": "Database Connectivity", "status": "", "details": ""}
    try:
        session.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        session.rollback()
        check["status"] = FAILED
        check["details"] = f"Database unreachable: {exc}"
        return check
    check["status"] = PASSED
    check["details"] = "Database is reachable" + ("" if database_configured() else " (local SQLite fallback)")
    return check


def _check_ingest(session: Session, payload: dict[str, Any]) -> dict[str, Any]:
    check: dict[str, Any] = {"name": "Webhook Endpoint", "status": "", "details": "", "event": None}
    try:
        event = services.ingest_webhook(session, payload)
    except ValueError as exc:
        check["status"] = FAILED
        check["details"] = f"Webhook rejected: {exc}"
        return check
    except (services.WebhookProcessingError, SQLAlchemyError) as exc:
        session.rollback()
        log.warning("Diagnostic webhook failed: %s", exc)
        check["status"] = ERROR
        check["details"] = f"Error ingesting webhook: {exc}"
        return check
    check["status"] = PASSED
    check["details"] = f"Webhook accepted (event id: {event.id})"
    check["event"] = services.event_summary(event)
    return check


def _check_retrieval(session: Session) -> dict[str, Any]:
    check: dict[str, Any] = {"name": "Event Retrieval", "status": "", "details": "", "event_count": 0}
    try:
        events = services.recent_events(session, 10)
    except SQLAlchemyError as exc:
        session.rollback()
        check["status"] = ERROR
        check["details"] = f"Error querying events: {exc}"
        return check
    check["event_count"] = len(events)
    if events:
        check["status"] = PASSED
        check["details"] = f"Found {len(events)} events in database"
    else:
        check["status"] = WARNING
        check["details"] = "No events in database yet"
    return check


def _next_steps(checks: list[dict[str, Any]]) -> list[str]:
    by_name = {c["name"]: c for c in checks}
    db = by_name.get("Database Connectivity")
    if db and db["status"] != PASSED:
        return [
            "1. Set DATABASE_URL to a reachable database",
            "2. Restart the service",
        ]
    steps: list[str] = []
    webhook = by_name.get("Webhook Endpoint")
    if webhook and webhook["status"] != PASSED:
        steps.append("1. Check server logs for webhook errors")
        steps.append("2. Verify the webhook endpoint is reachable")
    events = by_name.get("Event Retrieval")
    if events and events["event_count"] == 0:
        steps.append("1. Send a test webhook")
        steps.append("2. Trigger a real event in Current RMS")
        steps.append("3. Check that webhooks are configured in Current RMS")
    if not steps:
        steps.append("System is healthy and ready to receive webhooks")
    return steps


def quick_webhook_test(session: Session) -> dict[str, Any]:
    """Database, ingestion and retrieval checks, stopping early when the database is down."""
    checks = [_check_database(session)]
    if checks[0]["status"] == PASSED:
        payload = build_test_payload(
            action_type="quick_test", name=f"Quick Test {utcnow():%H:%M:%S}",
        )
        checks.append(_check_ingest(session, payload))
        checks.append(_check_retrieval(session))

    all_passed = all(c["status"] == PASSED for c in checks)
    any_failed = any(c["status"] in (FAILED, ERROR) for c in checks)
    if all_passed:
        message = "All tests passed. Webhooks are working."
    elif any_failed:
        message = "Some tests failed. Check details below."
    else:
        message = "Tests completed with warnings."
    return {
        "success": all_passed,
        "message": message,
        "timestamp": utcnow().isoformat(),
        "tests": checks,
        "next_steps": _next_steps(checks),
    }


def detailed_webhook_test(session: Session) -> dict[str, Any]:
    """Step-by-step run of the webhook path with recommendations."""
    now = utcnow().isoformat()
    payload = build_test_payload(
        action_type="test_update", subject_id=DETAILED_TEST_OPPORTUNITY_ID,
        name=f"Test Opportunity {now}", actor="Test User (Debug)", status="Testing",
    )
    diagnostics: dict[str, Any] = {
        "step1_payload_creation": {"status": "success", "payload": payload},
        "step2_webhook_call": {},
        "step3_database_check": {"has_database_url": database_configured()},
        "step4_event_retrieval": {},
    }

    ingest = _check_ingest(session, payload)
    diagnostics["step2_webhook_call"] = {
        "status": "success" if ingest["status"] == PASSED else "failed",
        "details": ingest["details"],
        "event": ingest["event"],
    }

    db_check = _check_database(session)
    diagnostics["step3_database_check"]["status"] = "configured" if db_check["status"] == PASSED else "failed"
    diagnostics["step3_database_check"]["details"] = db_check["details"]

    step4 = diagnostics["step4_event_retrieval"]
    try:
        events = services.recent_events(session, 10)
    except SQLAlchemyError as exc:
        session.rollback()
        step4.update(status="error", error=str(exc), count=0, test_event_found=False)
    else:
        ours = next((e for e in events if e["opportunity_id"] == DETAILED_TEST_OPPORTUNITY_ID
                     and e["action_id"] == payload["action"]["id"]), None)
        step4.update(status="success", count=len(events), events=events, test_event_found=ours is not None)
        if ours:
            step4["test_event"] = ours

    success = (
        diagnostics["step2_webhook_call"]["status"] == "success"
        and diagnostics["step3_database_check"]["status"] == "configured"
    )
    return {
        "success": success,
        "message": "Test webhook completed successfully" if success else "Test completed with issues",
        "diagnostics": diagnostics,
        "recommendations": _recommendations(diagnostics),
    }


def _recommendations(diagnostics: dict[str, Any]) -> list[str]:
    recs: list[str] = []
    if diagnostics["step3_database_check"]["status"] != "configured":
        recs.append("CRITICAL: the database is unreachable, check DATABASE_URL")
    elif not diagnostics["step3_database_check"]["has_database_url"]:
        recs.append("DATABASE_URL is not set, events are stored in the local SQLite file")
    if diagnostics["step2_webhook_call"]["status"] != "success":
        recs.append("Webhook ingestion returned an error, check the server logs")
    step4 = diagnostics["step4_event_retrieval"]
    if step4.get("count", 0) == 0:
        recs.append("No events found in database, events may not be saving")
    elif not step4.get("test_event_found"):
        recs.append("Test event not found among recent events, it may have been saved but not retrieved")
    if not recs:
        recs.append("Everything looks good, events are being received and stored correctly")
    return recs
