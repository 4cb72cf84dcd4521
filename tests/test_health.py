"""Tests for worker health scoring and status derivation."""

import pytest

from fleetcoord.health import (
    classify, derive_status, evaluate, silence_issue, stale_issue,
)
from fleetcoord.models import HealthClass, WorkerMetrics, WorkerRecord, WorkerStatus

NOW = 10_000.0


def _record(silent_for=0.0, **metrics):
    return WorkerRecord(
        id="w1",
        display_name="rig-01",
        first_seen_at=NOW - 3600,
        last_seen_at=NOW - silent_for,
        metrics=WorkerMetrics(**metrics),
    )


# =============================================================================
# evaluate()
# =============================================================================


class TestEvaluate:
    """Score deductions and issue texts."""

    def test_fresh_worker_is_healthy(self):
        result = evaluate(_record(throughput=100.0), NOW)

        assert result.score == 100
        assert result.classification == HealthClass.healthy
        assert result.issues == []
        assert result.last_evaluated_at == NOW

    def test_silence_deducts_30(self):
        result = evaluate(_record(silent_for=301), NOW)

        assert result.score == 70
        assert result.classification == HealthClass.warning
        assert result.issues == [silence_issue(300)]
        assert result.issues[0] == "no communication for 5+ minutes"

    def test_silence_at_threshold_is_not_penalized(self):
        assert evaluate(_record(silent_for=300), NOW).score == 100

    def test_high_temperature(self):
        result = evaluate(_record(temperature=90.0), NOW)

        assert result.score == 80
        assert result.issues == ["high temperature: 90.0C"]

    def test_high_power(self):
        result = evaluate(_record(power=350.0, throughput=1000.0), NOW)

        assert result.score == 85
        assert result.issues == ["high power consumption: 350W"]

    def test_low_efficiency(self):
        result = evaluate(_record(throughput=0.1, power=200.0), NOW)

        assert result.score == 90
        assert result.issues == ["low efficiency"]

    def test_efficiency_skipped_without_power(self):
        assert evaluate(_record(throughput=0.1), NOW).issues == []

    def test_high_rejection_rate(self):
        result = evaluate(_record(accepted=2, rejected=1), NOW)

        assert result.score == 85
        assert result.issues == ["high rejection rate: 33.3%"]

    def test_all_issues_in_order(self):
        result = evaluate(
            _record(silent_for=400, temperature=95.0, power=350.0, throughput=0.1,
                    accepted=1, rejected=1),
            NOW,
        )

        assert result.score == 10
        assert result.classification == HealthClass.critical
        assert [i.split(":")[0] for i in result.issues] == [
            "no communication for 5+ minutes",
            "high temperature",
            "high power consumption",
            "low efficiency",
            "high rejection rate",
        ]

    def test_custom_thresholds(self):
        result = evaluate(_record(silent_for=61, temperature=70.0), NOW,
                          silence_threshold=60, temp_limit=65.0)

        assert result.score == 50
        assert result.issues[0] == "no communication for 1+ minutes"

    def test_does_not_mutate_record(self):
        record = _record(silent_for=400, temperature=95.0)
        before = record.model_dump()

        evaluate(record, NOW)

        assert record.model_dump() == before


class TestHealthProperties:
    """Monotonicity and purity."""

    @pytest.mark.parametrize("metrics", [
        {},
        {"temperature": 95.0},
        {"power": 400.0, "throughput": 0.1},
        {"accepted": 1, "rejected": 3},
    ])
    def test_longer_silence_never_raises_score(self, metrics):
        scores = [evaluate(_record(silent_for=s, **metrics), NOW).score
                  for s in (0, 60, 299, 301, 600, 3600, 86400)]

        assert scores == sorted(scores, reverse=True)

    def test_evaluate_is_deterministic(self):
        record = _record(silent_for=500, temperature=88.0, accepted=3, rejected=1)

        assert evaluate(record, NOW) == evaluate(record, NOW)

    def test_derive_status_is_deterministic(self):
        args = (HealthClass.warning, NOW - 200, NOW)

        assert derive_status(*args) == derive_status(*args)


# =============================================================================
# classify() / derive_status()
# =============================================================================


class TestClassify:

    @pytest.mark.parametrize("score,expected", [
        (100, HealthClass.healthy),
        (81, HealthClass.healthy),
        (80, HealthClass.warning),
        (51, HealthClass.warning),
        (50, HealthClass.critical),
        (0, HealthClass.critical),
    ])
    def test_boundaries(self, score, expected):
        assert classify(score) == expected


class TestDeriveStatus:

    def test_critical_is_offline(self):
        assert derive_status(HealthClass.critical, NOW, NOW) == WorkerStatus.offline

    def test_quiet_worker_is_idle(self):
        assert derive_status(HealthClass.healthy, NOW - 121, NOW) == WorkerStatus.idle

    def test_recent_worker_is_online(self):
        assert derive_status(HealthClass.warning, NOW - 30, NOW) == WorkerStatus.online

    def test_idle_threshold_is_configurable(self):
        status = derive_status(HealthClass.healthy, NOW - 30, NOW, idle_threshold=10)

        assert status == WorkerStatus.idle


def test_stale_issue_text():
    assert stale_issue(600) == "stale: no communication for 10+ minutes, marked offline"
