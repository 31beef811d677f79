"""Sales forecast arithmetic.

Every opportunity carries a base revenue (``charge_total``) and a base cost
(``provisional_cost_total``). Forecast metadata layers on top of that:

- ``revenue_override`` / ``profit_override`` replace the base figures when set
- ``probability`` (0-100) weights the effective figures
- ``is_commit`` splits reviewed opportunities into commit and upside
- ``is_excluded`` removes an opportunity from the forecast totals

All functions here are pure; persistence lives in ``rmswatch.services``.
"""
from __future__ import annotations

from collections import defaultdict
from typing import Any, Callable

from rmswatch.utils import to_float

FORECAST_STATUSES = ("commit", "upside", "unreviewed", "excluded")

PROBABILITY_BANDS = (
    ("0-24%", 0, 24),
    ("25-49%", 25, 49),
    ("50-74%", 50, 74),
    ("75-99%", 75, 99),
    ("100%", 100, 100),
)

FORECAST_FIELDS = (
    "probability", "is_commit", "revenue_override", "profit_override",
    "is_excluded", "exclusion_reason", "notes", "last_reviewed_at", "reviewed_by",
)


# ---------------------------------------------------------------------------
# Single-value helpers
# ---------------------------------------------------------------------------


def calculate_base_profit(revenue: float, cost: float) -> float:
    return to_float(revenue) - to_float(cost)


def calculate_margin(profit: float, revenue: float) -> float:
    """Profit as a fraction of revenue; 0 when there is no revenue."""
    revenue = to_float(revenue)
    if revenue == 0:
        return 0.0
    return to_float(profit) / revenue


def calculate_weighted_value(value: float, probability: int | float | None) -> float:
    return to_float(value) * to_float(probability) / 100


def effective_revenue(base_revenue: float, forecast: dict[str, Any] | None) -> float:
    if forecast and forecast.get("revenue_override") is not None:
        return to_float(forecast["revenue_override"])
    return to_float(base_revenue)


def effective_profit(base_profit: float, forecast: dict[str, Any] | None) -> float:
    if forecast and forecast.get("profit_override") is not None:
        return to_float(forecast["profit_override"])
    return to_float(base_profit)


def forecast_status(forecast: dict[str, Any] | None) -> str:
    if not forecast:
        return "unreviewed"
    if forecast.get("is_excluded"):
        return "excluded"
    if forecast.get("is_commit"):
        return "commit"
    return "upside"


def probability_band(probability: int | float | None) -> str:
    p = max(0, min(100, int(to_float(probability))))
    for label, low, high in PROBABILITY_BANDS:
        if low <= p <= high:
            return label
    return PROBABILITY_BANDS[0][0]


def format_currency(value: float, symbol: str = "$") -> str:
    value = to_float(value)
    sign = "-" if value < 0 else ""
    return f"{sign}{symbol}{abs(value):,.0f}"


def format_percentage(value: float, decimals: int = 0) -> str:
    return f"{to_float(value):.{decimals}f}%"


# ---------------------------------------------------------------------------
# Enrichment
# ---------------------------------------------------------------------------


def enrich_opportunity(row: dict[str, Any], forecast: dict[str, Any] | None) -> dict[str, Any]:
    """Return *row* with normalized money fields and all derived forecast figures."""
    revenue = to_float(row.get("charge_total"))
    cost = to_float(row.get("provisional_cost_total"))
    base_profit = calculate_base_profit(revenue, cost)
    eff_revenue = effective_revenue(revenue, forecast)
    eff_profit = effective_profit(base_profit, forecast)
    probability = int(to_float(forecast.get("probability"))) if forecast else 0
    return {
        **row,
        "charge_total": revenue,
        "provisional_cost_total": cost,
        "predicted_cost_total": to_float(row.get("predicted_cost_total")),
        "actual_cost_total": to_float(row.get("actual_cost_total")),
        "base_profit": base_profit,
        "base_margin": calculate_margin(base_profit, revenue),
        "effective_revenue": eff_revenue,
        "effective_profit": eff_profit,
        "weighted_revenue": calculate_weighted_value(eff_revenue, probability),
        "weighted_profit": calculate_weighted_value(eff_profit, probability),
        "probability": probability,
        "forecast_status": forecast_status(forecast),
        "forecast": forecast,
    }


# ---------------------------------------------------------------------------
# Aggregation
# ---------------------------------------------------------------------------


def summarize(opportunities: list[dict[str, Any]]) -> dict[str, Any]:
    """Headline totals over enriched opportunities. Excluded ones only count as excluded."""
    summary: dict[str, Any] = {
        "total_count": 0, "total_revenue": 0.0, "total_profit": 0.0,
        "weighted_revenue": 0.0, "weighted_profit": 0.0, "avg_probability": 0.0,
    }
    for status in FORECAST_STATUSES:
        summary[f"{status}_count"] = 0
        summary[f"{status}_revenue"] = 0.0

    probability_sum = 0
    for opp in opportunities:
        status = opp["forecast_status"]
        summary[f"{status}_count"] += 1
        summary[f"{status}_revenue"] += opp["effective_revenue"]
        if status == "excluded":
            continue
        summary["total_count"] += 1
        summary["total_revenue"] += opp["effective_revenue"]
        summary["total_profit"] += opp["effective_profit"]
        summary["weighted_revenue"] += opp["weighted_revenue"]
        summary["weighted_profit"] += opp["weighted_profit"]
        probability_sum += opp["probability"]

    if summary["total_count"]:
        summary["avg_probability"] = probability_sum / summary["total_count"]
    return summary


def group_by(
    opportunities: list[dict[str, Any]],
    key: Callable[[dict[str, Any]], str],
    label: str,
) -> list[dict[str, Any]]:
    """Aggregate non-excluded opportunities per *key*, largest weighted revenue first."""
    groups: dict[str, dict[str, Any]] = defaultdict(lambda: {
        "count": 0, "total_revenue": 0.0, "weighted_revenue": 0.0,
        "weighted_profit": 0.0, "commit_revenue": 0.0, "probability_sum": 0,
    })
    for opp in opportunities:
        if opp["forecast_status"] == "excluded":
            continue
        g = groups[key(opp) or "Unknown"]
        g["count"] += 1
        g["total_revenue"] += opp["effective_revenue"]
        g["weighted_revenue"] += opp["weighted_revenue"]
        g["weighted_profit"] += opp["weighted_profit"]
        g["probability_sum"] += opp["probability"]
        if opp["forecast_status"] == "commit":
            g["commit_revenue"] += opp["effective_revenue"]

    rows = []
    for name, g in groups.items():
        probability_sum = g.pop("probability_sum")
        rows.append({label: name, **g, "avg_probability": probability_sum / g["count"]})
    rows.sort(key=lambda r: r["weighted_revenue"], reverse=True)
    return rows


def group_by_owner(opportunities: list[dict[str, Any]]) -> list[dict[str, Any]]:
    return group_by(opportunities, lambda o: o.get("owner_name") or "", "owner")


def group_by_customer(opportunities: list[dict[str, Any]]) -> list[dict[str, Any]]:
    return group_by(opportunities, lambda o: o.get("organisation_name") or "", "customer")


def group_by_probability_band(opportunities: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Per-band aggregates in band order (empty bands included)."""
    found = {r["band"]: r for r in group_by(opportunities, lambda o: probability_band(o["probability"]), "band")}
    empty = {"count": 0, "total_revenue": 0.0, "weighted_revenue": 0.0,
             "weighted_profit": 0.0, "commit_revenue": 0.0, "avg_probability": 0.0}
    return [found.get(label, {"band": label, **empty}) for label, _, _ in PROBABILITY_BANDS]
