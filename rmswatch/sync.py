"""Copy opportunities from Current RMS into the local database.

Two entry points share one loop:

- ``initial_sync``     -- every opportunity, page by page
- ``incremental_sync`` -- only those updated since the last completed run started

Each run is recorded as a ``SyncRun`` row that moves from ``pending`` to
``completed`` or ``failed``. A record that cannot be mapped is counted as
failed and skipped; a failing API call fails the whole run. Rows already
written by earlier pages stay committed.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from rmswatch.models import Opportunity, SyncRun
from rmswatch.rms_client import RMSClient, RMSClientError
from rmswatch.utils import as_utc, isoformat, parse_timestamp, to_float, utcnow

log = logging.getLogger(__name__)

INITIAL_SYNC = "initial_sync"
INCREMENTAL_SYNC = "incremental_sync"

_OPPORTUNITY_FIELDS = (
    "name", "subject", "organisation_name", "owner_name", "starts_at", "ends_at",
    "opportunity_status", "charge_total", "provisional_cost_total",
    "predicted_cost_total", "actual_cost_total", "rms_updated_at",
)


@dataclass
class SyncResult:
    success: bool
    sync_id: int
    sync_type: str
    started_at: datetime
    completed_at: datetime | None = None
    records_synced: int = 0
    records_failed: int = 0
    error: str | None = None
    failures: list[str] = field(default_factory=list)

    @property
    def duration(self) -> int | None:
        if self.completed_at is None:
            return None
        return round((self.completed_at - self.started_at).total_seconds())


# ---------------------------------------------------------------------------
# Record mapping
# ---------------------------------------------------------------------------


def _nested_name(record: dict[str, Any], key: str) -> str:
    value = record.get(key)
    if isinstance(value, dict):
        return str(value.get("name") or "")
    return ""


def map_opportunity(record: dict[str, Any]) -> dict[str, Any]:
    """Translate a Current RMS opportunity into ``Opportunity`` column values.

    Raises ValueError when the record has no usable id or a malformed date.
    """
    if not isinstance(record, dict):
        raise ValueError(f"Opportunity record is not an object: {record!r:.80}")
    try:
        opp_id = int(record["id"])
    except (KeyError, TypeError, ValueError) as exc:
        raise ValueError(f"Opportunity record without a valid id: {record.get('id')!r}") from exc

    subject = str(record.get("subject") or "")
    return {
        "id": opp_id,
        "name": str(record.get("name") or record.get("number") or subject),
        "subject": subject,
        "organisation_name": str(record.get("organisation_name") or _nested_name(record, "member")),
        "owner_name": str(record.get("owner_name") or _nested_name(record, "owner")),
        "starts_at": parse_timestamp(record.get("starts_at")),
        "ends_at": parse_timestamp(record.get("ends_at")),
        "opportunity_status": str(
            record.get("opportunity_status") or record.get("state_name") or record.get("status_name") or ""
        ),
        "charge_total": to_float(record.get("charge_total")),
        "provisional_cost_total": to_float(record.get("provisional_cost_total")),
        "predicted_cost_total": to_float(record.get("predicted_cost_total")),
        "actual_cost_total": to_float(record.get("actual_cost_total")),
        "rms_updated_at": parse_timestamp(record.get("updated_at")),
    }


def upsert_opportunity(session: Session, record: dict[str, Any]) -> bool:
    """Insert the opportunity if unknown, else update it. Returns True when inserted."""
    values = map_opportunity(record)
    opp = session.get(Opportunity, values["id"])
    is_new = opp is None
    if is_new:
        opp = Opportunity(id=values["id"])
        session.add(opp)
    for name in _OPPORTUNITY_FIELDS:
        setattr(opp, name, values[name])
    opp.raw_json = json.dumps(record, default=str)
    opp.synced_at = utcnow()
    # Records can repeat within a page; flush so session.get() sees the pending row
    session.flush()
    return is_new


# ---------------------------------------------------------------------------
# Runs
# ---------------------------------------------------------------------------


def _last_completed(session: Session) -> SyncRun | None:
    return session.execute(
        select(SyncRun).where(SyncRun.status == "completed").order_by(SyncRun.started_at.desc()).limit(1)
    ).scalars().first()


async def _run(
    session: Session, sync_type: str, client: RMSClient, updated_since: datetime | None,
) -> SyncResult:
    started_at = utcnow()
    run = SyncRun(sync_type=sync_type, status="pending", started_at=started_at)
    session.add(run)
    session.commit()
    result = SyncResult(success=False, sync_id=run.id, sync_type=sync_type, started_at=started_at)
    log.info("Sync %d (%s) started, updated_since=%s", run.id, sync_type, isoformat(updated_since))

    try:
        async for page in client.iter_opportunities(updated_since=updated_since):
            for record in page:
                try:
                    upsert_opportunity(session, record)
                    result.records_synced += 1
                except ValueError as exc:
                    log.warning("Sync %d skipped record: %s", run.id, exc)
                    result.records_failed += 1
                    result.failures.append(str(exc))
            run.records_synced = result.records_synced
            run.records_failed = result.records_failed
            session.commit()
    except (RMSClientError, SQLAlchemyError) as exc:
        session.rollback()
        result.error = str(exc)
        log.error("Sync %d failed: %s", run.id, exc)
    except Exception as exc:
        session.rollback()
        result.error = f"Unexpected error: {exc}"
        log.exception("Sync %d failed unexpectedly", run.id)

    result.completed_at = utcnow()
    result.success = result.error is None
    run.status = "completed" if result.success else "failed"
    run.completed_at = result.completed_at
    run.records_synced = result.records_synced
    run.records_failed = result.records_failed
    run.error_message = result.error
    session.commit()
    log.info(
        "Sync %d %s: %d synced, %d failed", run.id, run.status,
        result.records_synced, result.records_failed,
    )
    return result


async def initial_sync(session: Session, client: RMSClient | None = None) -> SyncResult:
    return await _run(session, INITIAL_SYNC, client or RMSClient(), None)


async def incremental_sync(session: Session, client: RMSClient | None = None) -> SyncResult:
    """Sync records changed since the last completed run; a full copy when there is none."""
    last = _last_completed(session)
    since = as_utc(last.started_at) if last else None
    if since is None:
        log.info("No completed sync found, incremental sync falls back to a full copy")
    return await _run(session, INCREMENTAL_SYNC, client or RMSClient(), since)


def sync_run_summary(run: SyncRun) -> dict[str, Any]:
    return {
        "id": run.id, "sync_type": run.sync_type, "status": run.status,
        "started_at": isoformat(run.started_at), "completed_at": isoformat(run.completed_at),
        "records_synced": run.records_synced, "records_failed": run.records_failed,
        "error_message": run.error_message,
    }


def last_sync_status(session: Session) -> dict[str, Any] | None:
    run = session.execute(
        select(SyncRun).order_by(SyncRun.started_at.desc(), SyncRun.id.desc()).limit(1)
    ).scalars().first()
    return sync_run_summary(run) if run else None


def sync_history(session: Session, limit: int = 10) -> list[dict[str, Any]]:
    runs = session.execute(
        select(SyncRun).order_by(SyncRun.started_at.desc(), SyncRun.id.desc()).limit(limit)
    ).scalars().all()
    return [sync_run_summary(r) for r in runs]
