"""Risk assessment scoring.

Eight factors are scored 1 (low risk) to 5 (high risk). The weighted average
of the factors that have been scored is bucketed into a risk level, and the
level decides who has to sign the job off.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any

from rmswatch.utils import as_utc, parse_timestamp


@dataclass(frozen=True)
class RiskFactor:
    id: str
    label: str
    weight: float
    scale: tuple[tuple[int, str, str], ...]  # (value, label, description)


RISK_FACTORS: tuple[RiskFactor, ...] = (
    RiskFactor("risk_project_novelty", "Project Type Familiarity", 1.2, (
        (1, "Routine", "Standard project we do regularly"),
        (2, "Familiar", "Similar to past projects"),
        (3, "Moderate", "Some new elements"),
        (4, "Novel", "Significantly different from usual"),
        (5, "Entirely New", "Never done before"),
    )),
    RiskFactor("risk_technical_complexity", "Technical Complexity", 1.3, (
        (1, "Simple", "Basic setup, standard equipment"),
        (2, "Straightforward", "Minor technical challenges"),
        (3, "Moderate", "Some complex systems"),
        (4, "Complex", "Advanced technical requirements"),
        (5, "Bleeding Edge", "Cutting-edge/experimental tech"),
    )),
    RiskFactor("risk_resource_utilization", "Resource Utilization", 1.1, (
        (1, "0-25%", "Minimal resource commitment"),
        (2, "25-50%", "Moderate resource use"),
        (3, "50-65%", "Significant resource allocation"),
        (4, "65-75%", "High resource utilization"),
        (5, "75%+", "Near maximum capacity"),
    )),
    RiskFactor("risk_client_sophistication", "Client Experience Level", 0.9, (
        (1, "Highly Experienced", "Knows exactly what they want"),
        (2, "Experienced", "Familiar with events"),
        (3, "Moderate", "Some event experience"),
        (4, "Limited", "First few events"),
        (5, "First-Time", "Never organized event before"),
    )),
    RiskFactor("risk_budget_size", "Budget Scale", 1.0, (
        (1, "<$5,000", "Small budget"),
        (2, "$5k-$20k", "Medium budget"),
        (3, "$20k-$50k", "Large budget"),
        (4, "$50k-$100k", "Very large budget"),
        (5, "$100k+", "Major project"),
    )),
    RiskFactor("risk_timeframe_constraint", "Timeline Pressure", 1.2, (
        (1, "Ample Time", "Plenty of lead time"),
        (2, "Normal", "Standard timeline"),
        (3, "Tight", "Limited preparation time"),
        (4, "Very Tight", "Minimal lead time"),
        (5, "Rush/Emergency", "Last minute request"),
    )),
    RiskFactor("risk_team_experience", "Team Capability", 1.3, (
        (1, "Expert", "Highly experienced team"),
        (2, "Experienced", "Competent team"),
        (3, "Adequate", "Mixed experience levels"),
        (4, "Limited", "Newer team members"),
        (5, "Inexperienced", "Largely untrained team"),
    )),
    RiskFactor("risk_subhire_availability", "Sub-hire Availability", 1.1, (
        (1, "Multiple Vendors", "Many options available"),
        (2, "Several Options", "Good availability"),
        (3, "Limited Options", "Few vendors available"),
        (4, "Very Limited", "Scarce availability"),
        (5, "None Available", "No sub-hire options"),
    )),
)

RISK_FACTOR_IDS = tuple(f.id for f in RISK_FACTORS)

RISK_LEVELS = ("LOW", "MEDIUM", "HIGH", "CRITICAL")


def calculate_risk_score(scores: dict[str, Any]) -> float:
    """Weighted average of the scored factors, rounded to 2 decimals. 0 if nothing is scored."""
    total_weighted = 0.0
    total_weight = 0.0
    for factor in RISK_FACTORS:
        score = scores.get(factor.id)
        if score is not None:
            total_weighted += score * factor.weight
            total_weight += factor.weight
    if total_weight == 0:
        return 0.0
    return round(total_weighted / total_weight, 2)


def get_risk_level(score: float) -> str | None:
    if score == 0:
        return None
    if score <= 2.0:
        return "LOW"
    if score <= 3.0:
        return "MEDIUM"
    if score <= 4.0:
        return "HIGH"
    return "CRITICAL"


def get_approval_level(score: float) -> str:
    if score == 0:
        return "Not assessed"
    if score <= 2.0:
        return "Project Manager"
    if score <= 3.0:
        return "Senior Manager"
    if score <= 4.0:
        return "Operations Director"
    return "Executive Approval Required"


def validate_risk_scores(scores: dict[str, Any]) -> bool:
    """True when every scored factor is an integer between 1 and 5."""
    for factor_id in RISK_FACTOR_IDS:
        score = scores.get(factor_id)
        if score is None:
            continue
        if isinstance(score, bool) or not isinstance(score, int):
            return False
        if score < 1 or score > 5:
            return False
    return True


def needs_risk_review(
    opportunity_updated_at: datetime | str | None,
    risk_last_updated: datetime | str | None,
) -> bool:
    """An opportunity needs review if it was never assessed or changed since."""
    if not risk_last_updated:
        return True
    risk_date = as_utc(parse_timestamp(risk_last_updated))
    opp_date = as_utc(parse_timestamp(opportunity_updated_at))
    if opp_date is None:
        return False
    return opp_date > risk_date
