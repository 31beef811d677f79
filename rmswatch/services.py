"""Shared business logic for the RMS Watch API: event store, forecasts and risk."""
from __future__ import annotations

import json
import logging
import time
from datetime import UTC, date, datetime, time as dt_time, timedelta
from typing import Any

from pydantic import ValidationError
from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session, selectinload

from rmswatch import forecast as fc
from rmswatch.models import ForecastMetadata, Opportunity, WebhookEvent
from rmswatch.risk import (
    RISK_FACTOR_IDS,
    RISK_FACTORS,
    RISK_LEVELS,
    calculate_risk_score,
    get_approval_level,
    get_risk_level,
    needs_risk_review,
    validate_risk_scores,
)
from rmswatch.schemas import WebhookPayload
from rmswatch.utils import isoformat, utcnow

log = logging.getLogger(__name__)

_PROCESS_STARTED = time.monotonic()

# ---------------------------------------------------------------------------
# Shared field tuples
# ---------------------------------------------------------------------------

OPPORTUNITY_FIELDS = (
    "id", "name", "subject", "organisation_name", "owner_name", "opportunity_status",
    "charge_total", "provisional_cost_total", "predicted_cost_total", "actual_cost_total",
    "risk_score", "risk_level",
)

EVENT_FIELDS = (
    "id", "action_id", "opportunity_id", "opportunity_name", "customer_name",
    "opportunity_status", "subject_type", "action_type", "actor_name", "processed", "error",
)

RISK_DETAIL_FIELDS = (
    *RISK_FACTOR_IDS, "risk_score", "risk_level", "risk_reviewed",
    "risk_mitigation_plan", "risk_mitigation_notes",
)


class WebhookProcessingError(Exception):
    """A valid webhook was stored but could not be applied."""
    def __init__(self, message: str, event_id: int):
        super().__init__(message)
        self.event_id = event_id


# ---------------------------------------------------------------------------
# Serialization helpers
# ---------------------------------------------------------------------------


def event_summary(event: WebhookEvent) -> dict[str, Any]:
    return {**{f: getattr(event, f) for f in EVENT_FIELDS}, "received_at": isoformat(event.received_at)}


def forecast_dict(fm: ForecastMetadata | None) -> dict[str, Any] | None:
    if fm is None:
        return None
    return {
        "opportunity_id": fm.opportunity_id,
        "probability": fm.probability,
        "is_commit": fm.is_commit,
        "revenue_override": fm.revenue_override,
        "profit_override": fm.profit_override,
        "is_excluded": fm.is_excluded,
        "exclusion_reason": fm.exclusion_reason,
        "notes": fm.notes,
        "last_reviewed_at": isoformat(fm.last_reviewed_at),
        "reviewed_by": fm.reviewed_by,
        "created_at": isoformat(fm.created_at),
        "updated_at": isoformat(fm.updated_at),
    }


def opportunity_summary(opp: Opportunity) -> dict[str, Any]:
    return {
        **{f: getattr(opp, f) for f in OPPORTUNITY_FIELDS},
        "starts_at": isoformat(opp.starts_at),
        "ends_at": isoformat(opp.ends_at),
        "rms_updated_at": isoformat(opp.rms_updated_at),
        "synced_at": isoformat(opp.synced_at),
    }


def risk_detail(opp: Opportunity) -> dict[str, Any]:
    score = opp.risk_score or 0.0
    return {
        "opportunity_id": opp.id,
        **{f: getattr(opp, f) for f in RISK_DETAIL_FIELDS},
        "risk_last_updated": isoformat(opp.risk_last_updated),
        "approval_level": get_approval_level(score),
        "needs_review": needs_risk_review(opp.rms_updated_at, opp.risk_last_updated),
    }


def opportunity_detail(opp: Opportunity) -> dict[str, Any]:
    return {
        **opportunity_summary(opp),
        "forecast": forecast_dict(opp.forecast),
        "risk": risk_detail(opp),
    }


# ---------------------------------------------------------------------------
# Webhook event store
# ---------------------------------------------------------------------------


def _apply_to_opportunity(session: Session, payload: WebhookPayload) -> bool:
    """Mirror the status carried by an opportunity webhook onto the local row, if any."""
    action = payload.action
    if action.subject_type.lower() != "opportunity" or action.subject_id is None:
        return False
    opp = session.get(Opportunity, action.subject_id)
    if opp is None or action.subject is None:
        return False
    if action.subject.opportunity_status:
        opp.opportunity_status = action.subject.opportunity_status
    if action.subject.name:
        opp.name = action.subject.name
    if action.subject.organisation_name:
        opp.organisation_name = action.subject.organisation_name
    return True


def ingest_webhook(session: Session, payload: Any) -> WebhookEvent:
    """Store a webhook delivery and apply it. Commits.

    Raises ValueError for payloads without a usable ``action`` (nothing is stored)
    and WebhookProcessingError when the stored event could not be applied.
    """
    try:
        parsed = WebhookPayload.model_validate(payload)
    except ValidationError as exc:
        first = exc.errors()[0]
        loc = ".".join(str(p) for p in first.get("loc", ()))
        raise ValueError(f"Invalid webhook payload: {loc} {first.get('msg', '')}".strip()) from exc

    action = parsed.action
    subject = action.subject
    event = WebhookEvent(
        action_id=action.id,
        opportunity_id=action.subject_id,
        opportunity_name=(subject.name if subject else "") or action.name,
        customer_name=subject.organisation_name if subject else "",
        opportunity_status=subject.opportunity_status if subject else "",
        subject_type=action.subject_type,
        action_type=action.action_type,
        actor_name=action.member.name if action.member else "",
        received_at=utcnow(),
        processed=False,
        payload_json=json.dumps(payload, default=str),
    )
    session.add(event)
    session.commit()

    try:
        updated = _apply_to_opportunity(session, parsed)
        event.processed = True
        session.commit()
    except Exception as exc:
        session.rollback()
        event.error = str(exc)
        session.commit()
        log.error("Webhook event %d could not be applied: %s", event.id, exc)
        raise WebhookProcessingError(str(exc), event.id) from exc

    log.info(
        "Webhook %s for %s %s by %s (opportunity updated: %s)",
        action.action_type or "?", action.subject_type or "?", action.subject_id,
        event.actor_name or "unknown", updated,
    )
    return event


def recent_events(session: Session, limit: int = 50) -> list[dict[str, Any]]:
    events = session.execute(
        select(WebhookEvent).order_by(WebhookEvent.received_at.desc(), WebhookEvent.id.desc()).limit(limit)
    ).scalars().all()
    return [event_summary(e) for e in events]


def health_metrics(session: Session) -> dict[str, Any]:
    total = session.execute(select(func.count(WebhookEvent.id))).scalar_one()
    successful = session.execute(
        select(func.count(WebhookEvent.id)).where(WebhookEvent.processed.is_(True))
    ).scalar_one()
    last = session.execute(select(func.max(WebhookEvent.received_at))).scalar()
    return {
        "total_events": total,
        "successful_events": successful,
        "failed_events": total - successful,
        "last_event_at": isoformat(last),
        "uptime": int(time.monotonic() - _PROCESS_STARTED),
    }


# ---------------------------------------------------------------------------
# Opportunities
# ---------------------------------------------------------------------------


def list_opportunities(
    session: Session, *, status: str | None = None, owner: str | None = None,
    search: str | None = None, limit: int = 100, offset: int = 0,
) -> tuple[list[dict[str, Any]], int]:
    query = select(Opportunity)
    if status:
        statuses = [s.strip().lower() for s in status.split(",") if s.strip()]
        query = query.where(func.lower(Opportunity.opportunity_status).in_(statuses))
    if owner:
        query = query.where(Opportunity.owner_name == owner)
    if search:
        pattern = f"%{search.lower()}%"
        query = query.where(or_(
            func.lower(Opportunity.name).like(pattern),
            func.lower(Opportunity.subject).like(pattern),
            func.lower(Opportunity.organisation_name).like(pattern),
        ))
    total = session.execute(select(func.count()).select_from(query.subquery())).scalar_one()
    rows = session.execute(
        query.order_by(Opportunity.starts_at.asc(), Opportunity.id.asc()).limit(limit).offset(offset)
    ).scalars().all()
    return [opportunity_summary(o) for o in rows], total


# ---------------------------------------------------------------------------
# Forecast metadata
# ---------------------------------------------------------------------------


def get_forecast(session: Session, opportunity_id: int) -> ForecastMetadata | None:
    return session.execute(
        select(ForecastMetadata).where(ForecastMetadata.opportunity_id == opportunity_id)
    ).scalars().first()


def parse_probability(value: Any) -> int | None:
    """Whole-number percentage 0..100 from a form value (int, integral float or numeric string)."""
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ValueError("Probability must be a whole number")
    if isinstance(value, float):
        if not value.is_integer():
            raise ValueError("Probability must be a whole number")
        value = int(value)
    elif isinstance(value, str):
        try:
            value = int(value.strip())
        except ValueError as exc:
            raise ValueError("Probability must be a whole number") from exc
    if not 0 <= value <= 100:
        raise ValueError("Probability must be between 0 and 100")
    return value


def save_forecast(session: Session, opportunity_id: int, data: dict[str, Any]) -> ForecastMetadata:
    """Insert or replace the forecast row for an opportunity (caller must commit).

    Omitted fields fall back to their defaults, matching a full form submission.
    """
    probability = parse_probability(data.get("probability"))
    if data.get("is_excluded") and not data.get("exclusion_reason"):
        raise ValueError("Exclusion reason is required when marking as excluded")

    fm = get_forecast(session, opportunity_id)
    if fm is None:
        fm = ForecastMetadata(opportunity_id=opportunity_id)
        session.add(fm)
    now = utcnow()
    fm.probability = probability if probability is not None else 0
    fm.is_commit = bool(data.get("is_commit"))
    fm.revenue_override = data.get("revenue_override")
    fm.profit_override = data.get("profit_override")
    fm.is_excluded = bool(data.get("is_excluded"))
    fm.exclusion_reason = data.get("exclusion_reason")
    fm.notes = data.get("notes")
    fm.reviewed_by = data.get("reviewed_by")
    fm.last_reviewed_at = now
    fm.updated_at = now
    if fm.created_at is None:
        fm.created_at = now
    return fm


def delete_forecast(session: Session, opportunity_id: int) -> bool:
    fm = get_forecast(session, opportunity_id)
    if fm is None:
        return False
    session.delete(fm)
    return True


def commit_orders(session: Session) -> dict[str, int]:
    """Force every opportunity in "order" status into the commit forecast (caller must commit).

    New forecast rows start at 100% probability; existing ones are lifted to at least 90%.
    """
    orders = session.execute(
        select(Opportunity)
        .options(selectinload(Opportunity.forecast))
        .where(func.lower(Opportunity.opportunity_status) == "order")
    ).scalars().all()
    created = updated = 0
    now = utcnow()
    for opp in orders:
        fm = opp.forecast
        if fm is None:
            opp.forecast = ForecastMetadata(
                opportunity_id=opp.id, probability=100, is_commit=True,
                is_excluded=False, created_at=now, updated_at=now,
            )
            created += 1
        elif not fm.is_commit or fm.probability < 90:
            fm.is_commit = True
            fm.probability = max(fm.probability, 90)
            fm.updated_at = now
            updated += 1
    session.flush()
    total = session.execute(
        select(func.count(ForecastMetadata.id))
        .join(Opportunity, Opportunity.id == ForecastMetadata.opportunity_id)
        .where(func.lower(Opportunity.opportunity_status) == "order", ForecastMetadata.is_commit.is_(True))
    ).scalar_one()
    log.info("Commit orders: %d created, %d updated, %d total", created, updated, total)
    return {
        "new_records_created": created,
        "existing_records_updated": updated,
        "total_commit_orders": total,
    }


def _day_start(d: date) -> datetime:
    return datetime.combine(d, dt_time.min, tzinfo=UTC)


def forecast_summary(
    session: Session, *, start_date: date | None = None, end_date: date | None = None,
    owner: str | None = None, customer: str | None = None, include_excluded: bool = False,
) -> dict[str, Any]:
    """Enrich opportunities in the date range with forecast figures and aggregate them."""
    query = select(Opportunity).options(selectinload(Opportunity.forecast))
    if start_date:
        query = query.where(Opportunity.starts_at >= _day_start(start_date))
    if end_date:
        query = query.where(Opportunity.starts_at < _day_start(end_date + timedelta(days=1)))
    rows = session.execute(query.order_by(Opportunity.starts_at.asc(), Opportunity.id.asc())).scalars().all()

    owners = sorted({o.owner_name for o in rows if o.owner_name})
    customers = sorted({o.organisation_name for o in rows if o.organisation_name})

    enriched = []
    for opp in rows:
        if owner and opp.owner_name != owner:
            continue
        if customer and opp.organisation_name != customer:
            continue
        item = fc.enrich_opportunity(opportunity_summary(opp), forecast_dict(opp.forecast))
        if not include_excluded and item["forecast_status"] == "excluded":
            continue
        enriched.append(item)

    summary = fc.summarize(enriched)
    log.debug(
        "Forecast summary: %d opportunities, %s weighted at %s average probability",
        summary["total_count"], fc.format_currency(summary["weighted_revenue"]),
        fc.format_percentage(summary["avg_probability"]),
    )
    return {
        "summary": summary,
        "by_owner": fc.group_by_owner(enriched),
        "by_customer": fc.group_by_customer(enriched),
        "by_probability_band": fc.group_by_probability_band(enriched),
        "opportunities": enriched,
        "filters": {"owners": owners, "customers": customers},
    }


# ---------------------------------------------------------------------------
# Risk assessment
# ---------------------------------------------------------------------------


def update_risk(opp: Opportunity, data: dict[str, Any]) -> Opportunity:
    """Replace the risk factor scores and recompute score and level (caller must commit)."""
    scores = {f: data.get(f) for f in RISK_FACTOR_IDS}
    if not validate_risk_scores(scores):
        raise ValueError("Risk scores must be integers between 1 and 5")
    plan = data.get("risk_mitigation_plan")
    if plan is not None and plan not in (0, 1):
        raise ValueError("risk_mitigation_plan must be 0 or 1")

    for factor_id, value in scores.items():
        setattr(opp, factor_id, value)
    score = calculate_risk_score(scores)
    opp.risk_score = score or None
    opp.risk_level = get_risk_level(score)
    opp.risk_reviewed = data.get("risk_reviewed")
    opp.risk_mitigation_plan = plan
    opp.risk_mitigation_notes = data.get("risk_mitigation_notes")
    opp.risk_last_updated = utcnow()
    log.info("Risk for opportunity %d set to %s (%.2f)", opp.id, opp.risk_level, score)
    return opp


def risk_factors() -> list[dict[str, Any]]:
    """The static factor table, for building assessment forms."""
    return [
        {
            "id": f.id, "label": f.label, "weight": f.weight,
            "scale": [{"value": v, "label": label, "description": desc} for v, label, desc in f.scale],
        }
        for f in RISK_FACTORS
    ]


def risk_summary(session: Session) -> list[dict[str, Any]]:
    """Count and total value per risk level, unscored opportunities last (level ``None``)."""
    rows = session.execute(
        select(Opportunity.risk_level, func.count(Opportunity.id), func.coalesce(func.sum(Opportunity.charge_total), 0.0))
        .group_by(Opportunity.risk_level)
    ).all()
    found = {level: (count, float(total)) for level, count, total in rows}
    return [
        {"level": level, "count": found.get(level, (0, 0.0))[0], "total_value": found.get(level, (0, 0.0))[1]}
        for level in (*RISK_LEVELS, None)
    ]


def opportunities_by_risk_level(session: Session, level: str | None, limit: int = 100) -> list[dict[str, Any]]:
    """Opportunities at *level* (``None`` selects unscored), riskiest then soonest first."""
    query = select(Opportunity)
    if level is None:
        query = query.where(Opportunity.risk_level.is_(None))
    else:
        level = level.upper()
        if level not in RISK_LEVELS:
            raise ValueError(f"Unknown risk level '{level}'")
        query = query.where(Opportunity.risk_level == level)
    rows = session.execute(
        query.order_by(Opportunity.risk_score.desc(), Opportunity.starts_at.asc(), Opportunity.id.asc()).limit(limit)
    ).scalars().all()
    return [{**opportunity_summary(o), "risk": risk_detail(o)} for o in rows]
