from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from rmswatch.risk import (
    RISK_FACTOR_IDS,
    RISK_FACTORS,
    calculate_risk_score,
    get_approval_level,
    get_risk_level,
    needs_risk_review,
    validate_risk_scores,
)


class TestRiskFactors:
    def test_eight_factors_with_five_point_scales(self):
        assert len(RISK_FACTORS) == 8
        for factor in RISK_FACTORS:
            assert [value for value, _, _ in factor.scale] == [1, 2, 3, 4, 5]

    def test_ids_are_prefixed(self):
        assert all(fid.startswith("risk_") for fid in RISK_FACTOR_IDS)


class TestCalculateRiskScore:
    def test_uniform_scores(self):
        assert calculate_risk_score({fid: 3 for fid in RISK_FACTOR_IDS}) == 3.0

    def test_weighted_average_of_scored_factors_only(self):
        scores = {"risk_project_novelty": 1, "risk_technical_complexity": 5}
        # (1 * 1.2 + 5 * 1.3) / (1.2 + 1.3)
        assert calculate_risk_score(scores) == 3.08

    def test_nothing_scored(self):
        assert calculate_risk_score({}) == 0.0
        assert calculate_risk_score({fid: None for fid in RISK_FACTOR_IDS}) == 0.0


class TestLevels:
    @pytest.mark.parametrize("score,level", [
        (0, None), (1.0, "LOW"), (2.0, "LOW"), (2.01, "MEDIUM"), (3.0, "MEDIUM"),
        (3.5, "HIGH"), (4.0, "HIGH"), (4.01, "CRITICAL"), (5.0, "CRITICAL"),
    ])
    def test_risk_level(self, score, level):
        assert get_risk_level(score) == level

    @pytest.mark.parametrize("score,approver", [
        (0, "Not assessed"), (2.0, "Project Manager"), (2.5, "Senior Manager"),
        (3.8, "Operations Director"), (4.5, "Executive Approval Required"),
    ])
    def test_approval_level(self, score, approver):
        assert get_approval_level(score) == approver


class TestValidateRiskScores:
    def test_valid_and_partial(self):
        assert validate_risk_scores({"risk_budget_size": 1, "risk_team_experience": 5})
        assert validate_risk_scores({"risk_budget_size": None})
        assert validate_risk_scores({})

    @pytest.mark.parametrize("value", [0, 6, -1, 2.5, "3", True])
    def test_invalid(self, value):
        assert not validate_risk_scores({"risk_budget_size": value})

    def test_unknown_keys_are_ignored(self):
        assert validate_risk_scores({"something_else": 99})


class TestNeedsRiskReview:
    def test_never_assessed(self):
        assert needs_risk_review(datetime.now(UTC), None)

    def test_opportunity_changed_after_assessment(self):
        assessed = datetime(2024, 1, 1, tzinfo=UTC)
        assert needs_risk_review(assessed + timedelta(days=1), assessed)

    def test_assessment_is_current(self):
        assessed = datetime(2024, 1, 2, tzinfo=UTC)
        assert not needs_risk_review(datetime(2024, 1, 1, tzinfo=UTC), assessed)

    def test_unknown_update_time(self):
        assert not needs_risk_review(None, datetime(2024, 1, 1, tzinfo=UTC))

    def test_accepts_strings_and_naive_datetimes(self):
        assert needs_risk_review("2024-03-01T10:00:00Z", datetime(2024, 3, 1, 9, 0))
        assert not needs_risk_review("2024-03-01T08:00:00Z", "2024-03-01T09:00:00+00:00")
