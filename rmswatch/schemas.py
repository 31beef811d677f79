"""Pydantic request/response schemas for the RMS Watch API."""
from __future__ import annotations

from typing import Annotated

from pydantic import BaseModel, BeforeValidator, model_validator

# Current RMS sends null for blank text fields
WebhookText = Annotated[str, BeforeValidator(lambda v: "" if v is None else v)]


# ---------------------------------------------------------------------------
# Webhooks
# ---------------------------------------------------------------------------


class WebhookMember(BaseModel):
    id: int | None = None
    name: WebhookText = ""


class WebhookSubject(BaseModel):
    name: WebhookText = ""
    organisation_name: WebhookText = ""
    opportunity_status: WebhookText = ""


class WebhookAction(BaseModel):
    id: int | None = None
    subject_id: int | None = None
    subject_type: WebhookText = ""
    member_id: int | None = None
    action_type: WebhookText = ""
    name: WebhookText = ""
    member: WebhookMember | None = None
    subject: WebhookSubject | None = None

    @model_validator(mode="after")
    def _identifies_something(self) -> WebhookAction:
        if self.id is None and not self.subject_type:
            raise ValueError("action needs an id or a subject_type")
        return self


class WebhookPayload(BaseModel):
    action: WebhookAction


class EventOut(BaseModel):
    id: int
    action_id: int | None = None
    opportunity_id: int | None = None
    opportunity_name: str
    customer_name: str
    opportunity_status: str
    subject_type: str
    action_type: str
    actor_name: str
    received_at: str | None = None
    processed: bool
    error: str | None = None


class EventListResponse(BaseModel):
    events: list[EventOut]
    count: int


class HealthMetrics(BaseModel):
    total_events: int
    successful_events: int
    failed_events: int
    last_event_at: str | None = None
    uptime: int


class HealthResponse(BaseModel):
    status: str
    metrics: HealthMetrics


# ---------------------------------------------------------------------------
# Forecast
# ---------------------------------------------------------------------------


class ForecastOut(BaseModel):
    opportunity_id: int
    probability: int
    is_commit: bool
    revenue_override: float | None = None
    profit_override: float | None = None
    is_excluded: bool
    exclusion_reason: str | None = None
    notes: str | None = None
    last_reviewed_at: str | None = None
    reviewed_by: str | None = None
    created_at: str | None = None
    updated_at: str | None = None


class ForecastUpsert(BaseModel):
    """Full replacement of an opportunity's forecast metadata; omitted fields reset to defaults."""

    probability: int | float | str | None = None
    is_commit: bool | None = None
    revenue_override: float | None = None
    profit_override: float | None = None
    is_excluded: bool | None = None
    exclusion_reason: str | None = None
    notes: str | None = None
    reviewed_by: str | None = None


class CommitOrdersResult(BaseModel):
    new_records_created: int
    existing_records_updated: int
    total_commit_orders: int


# ---------------------------------------------------------------------------
# Risk
# ---------------------------------------------------------------------------


class RiskScores(BaseModel):
    risk_project_novelty: int | None = None
    risk_technical_complexity: int | None = None
    risk_resource_utilization: int | None = None
    risk_client_sophistication: int | None = None
    risk_budget_size: int | None = None
    risk_timeframe_constraint: int | None = None
    risk_team_experience: int | None = None
    risk_subhire_availability: int | None = None


class RiskAssessmentUpdate(RiskScores):
    risk_reviewed: str | None = None
    risk_mitigation_plan: int | None = None
    risk_mitigation_notes: str | None = None


class RiskAssessmentOut(RiskAssessmentUpdate):
    opportunity_id: int
    risk_score: float | None = None
    risk_level: str | None = None
    risk_last_updated: str | None = None
    approval_level: str
    needs_review: bool


class RiskSummaryRow(BaseModel):
    level: str | None = None
    count: int
    total_value: float


# ---------------------------------------------------------------------------
# Opportunities
# ---------------------------------------------------------------------------


class OpportunityOut(BaseModel):
    id: int
    name: str
    subject: str
    organisation_name: str
    owner_name: str
    starts_at: str | None = None
    ends_at: str | None = None
    opportunity_status: str
    charge_total: float
    provisional_cost_total: float
    predicted_cost_total: float
    actual_cost_total: float
    rms_updated_at: str | None = None
    synced_at: str | None = None
    risk_score: float | None = None
    risk_level: str | None = None


class OpportunityDetail(OpportunityOut):
    forecast: ForecastOut | None = None
    risk: RiskAssessmentOut


class OpportunityListResponse(BaseModel):
    items: list[OpportunityOut]
    total: int
