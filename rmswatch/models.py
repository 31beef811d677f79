from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, DateTime, Float, ForeignKey, Integer, String, Text, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    pass


class Opportunity(Base):
    """Local replica of a Current RMS opportunity plus its risk assessment."""

    __tablename__ = "opportunities"

    # Current RMS id, not generated locally
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    name: Mapped[str] = mapped_column(String(300), default="")
    subject: Mapped[str] = mapped_column(String(500), default="")
    organisation_name: Mapped[str] = mapped_column(String(300), default="")
    owner_name: Mapped[str] = mapped_column(String(200), default="")
    starts_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    ends_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    opportunity_status: Mapped[str] = mapped_column(String(100), default="")
    charge_total: Mapped[float] = mapped_column(Float, default=0.0)
    provisional_cost_total: Mapped[float] = mapped_column(Float, default=0.0)
    predicted_cost_total: Mapped[float] = mapped_column(Float, default=0.0)
    actual_cost_total: Mapped[float] = mapped_column(Float, default=0.0)
    rms_updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    synced_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    raw_json: Mapped[str] = mapped_column(Text, default="{}")

    # Risk factor scores, 1..5 each
    risk_project_novelty: Mapped[int | None] = mapped_column(Integer, nullable=True)
    risk_technical_complexity: Mapped[int | None] = mapped_column(Integer, nullable=True)
    risk_resource_utilization: Mapped[int | None] = mapped_column(Integer, nullable=True)
    risk_client_sophistication: Mapped[int | None] = mapped_column(Integer, nullable=True)
    risk_budget_size: Mapped[int | None] = mapped_column(Integer, nullable=True)
    risk_timeframe_constraint: Mapped[int | None] = mapped_column(Integer, nullable=True)
    risk_team_experience: Mapped[int | None] = mapped_column(Integer, nullable=True)
    risk_subhire_availability: Mapped[int | None] = mapped_column(Integer, nullable=True)
    risk_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    risk_level: Mapped[str | None] = mapped_column(String(20), nullable=True)  # LOW | MEDIUM | HIGH | CRITICAL
    risk_reviewed: Mapped[str | None] = mapped_column(String(200), nullable=True)
    risk_mitigation_plan: Mapped[int | None] = mapped_column(Integer, nullable=True)
    risk_mitigation_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    risk_last_updated: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    forecast: Mapped[ForecastMetadata | None] = relationship(
        "ForecastMetadata", back_populates="opportunity", uselist=False, cascade="all, delete-orphan",
    )


class ForecastMetadata(Base):
    __tablename__ = "forecast_metadata"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    opportunity_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("opportunities.id"), unique=True, nullable=False,
    )
    probability: Mapped[int] = mapped_column(Integer, default=0)
    is_commit: Mapped[bool] = mapped_column(Boolean, default=False)
    revenue_override: Mapped[float | None] = mapped_column(Float, nullable=True)
    profit_override: Mapped[float | None] = mapped_column(Float, nullable=True)
    is_excluded: Mapped[bool] = mapped_column(Boolean, default=False)
    exclusion_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_reviewed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    reviewed_by: Mapped[str | None] = mapped_column(String(200), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    opportunity: Mapped[Opportunity] = relationship("Opportunity", back_populates="forecast")


class WebhookEvent(Base):
    __tablename__ = "webhook_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    action_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    opportunity_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    opportunity_name: Mapped[str] = mapped_column(String(300), default="")
    customer_name: Mapped[str] = mapped_column(String(300), default="")
    opportunity_status: Mapped[str] = mapped_column(String(100), default="")
    subject_type: Mapped[str] = mapped_column(String(50), default="")
    action_type: Mapped[str] = mapped_column(String(100), default="")
    actor_name: Mapped[str] = mapped_column(String(200), default="")
    received_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    processed: Mapped[bool] = mapped_column(Boolean, default=False)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    payload_json: Mapped[str] = mapped_column(Text, default="{}")


class SyncRun(Base):
    __tablename__ = "sync_runs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    sync_type: Mapped[str] = mapped_column(String(30), nullable=False)  # initial_sync | incremental_sync
    status: Mapped[str] = mapped_column(String(20), default="pending")  # pending | completed | failed
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    records_synced: Mapped[int] = mapped_column(Integer, default=0)
    records_failed: Mapped[int] = mapped_column(Integer, default=0)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
