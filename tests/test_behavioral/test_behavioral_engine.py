"""
Tests for the behavioral engine.
"""
import pytest
from datetime import datetime, timedelta, timezone

from correlation_core.behavioral.baseline_store import PatternStats, PatternType
from correlation_core.behavioral.engine import (
    BehavioralEngine,
    describe_anomaly,
    extract_pattern_value,
    timeframe_for,
)
from correlation_core.config import settings
from correlation_core.schemas.events import EntityType

NOW = datetime(2024, 3, 5, 10, 0, tzinfo=timezone.utc)


def test_analyze_pattern_flags_large_deviation(behavioral_engine):
    stats = PatternStats(pattern=PatternType.LOGIN_PATTERN, frequency=1.0, variance=0.5, sample_count=50)

    analysis = behavioral_engine.analyze_pattern(stats, 2.0)

    assert analysis.is_anomaly is True
    assert analysis.z_score == pytest.approx(2.0)
    assert analysis.severity == pytest.approx(2.0 / 3.0)
    assert analysis.confidence == pytest.approx(0.5)
    assert analysis.deviation == pytest.approx(100.0)


def test_analyze_pattern_zero_variance_is_never_anomalous(behavioral_engine):
    stats = PatternStats(pattern=PatternType.DATA_ACCESS, frequency=0.0, variance=0.0, sample_count=500)

    analysis = behavioral_engine.analyze_pattern(stats, 25.0)

    assert analysis.is_anomaly is False
    assert analysis.z_score == 0.0
    assert analysis.deviation == 0.0
    assert analysis.confidence == 1.0


def test_analyze_pattern_zero_mean_uses_unit_denominator(behavioral_engine):
    stats = PatternStats(pattern=PatternType.FILE_OPERATIONS, frequency=0.0, variance=1.0, sample_count=10)

    analysis = behavioral_engine.analyze_pattern(stats, 3.0)

    assert analysis.deviation == pytest.approx(300.0)
    assert analysis.severity == 1.0


def test_extract_pattern_values(make_event):
    event = make_event(users=["u1", "u2"], files=["f1", "f1", "f2"], processes=["p1"], risk_score=0.4)

    assert extract_pattern_value(event, PatternType.LOGIN_PATTERN) == 2.0
    assert extract_pattern_value(event, PatternType.DATA_ACCESS) == 3.0
    assert extract_pattern_value(event, PatternType.FILE_OPERATIONS) == 2.0
    assert extract_pattern_value(event, PatternType.PROCESS_EXECUTION) == 1.0
    assert extract_pattern_value(event, PatternType.NETWORK_COMMUNICATION) == 0.0
    assert extract_pattern_value(event, PatternType.PRIVILEGE_ESCALATION) == 0.4


@pytest.mark.parametrize("hour,expected", [(6, "morning"), (12, "afternoon"), (18, "evening"), (23, "night"), (3, "night")])
def test_timeframe_for(hour, expected):
    assert timeframe_for(NOW.replace(hour=hour)) == expected


@pytest.mark.parametrize("deviation,prefix", [(250, "Extreme"), (150, "High"), (75, "Elevated"), (20, "Unusual")])
def test_describe_anomaly_tiers(deviation, prefix):
    assert describe_anomaly(PatternType.LOGIN_PATTERN, deviation).startswith(prefix)


@pytest.mark.asyncio
async def test_cold_start_creates_baseline_without_anomalies(behavioral_engine, baseline_store, make_event):
    event = make_event(users=["alice"], hosts=["web-01"])

    result = await behavioral_engine.analyze(event, now=NOW)

    assert result.anomalies == []
    assert result.risk_score == 0.0
    assert result.confidence == 0.0
    assert baseline_store.get("alice").entity_type == EntityType.USER
    assert baseline_store.get("web-01").entity_type == EntityType.HOST
    assert baseline_store.get("alice").confidence == pytest.approx(0.1)


@pytest.mark.asyncio
async def test_update_baseline_applies_ewma(behavioral_engine, baseline_store, make_event):
    event = make_event(users=["alice"])

    touched = await behavioral_engine.update_baseline(event, now=NOW)

    assert [b.entity_id for b in touched] == ["alice"]
    stats = baseline_store.get("alice").patterns[PatternType.LOGIN_PATTERN]
    assert stats.frequency == pytest.approx(0.1)
    # variance is measured against the updated mean
    assert stats.variance == pytest.approx(0.09)
    assert stats.sample_count == 1
    assert stats.timing.business_hours == 1
    assert baseline_store.get("alice").confidence == pytest.approx(0.11)
    assert baseline_store.get("alice").last_updated == NOW


@pytest.mark.asyncio
async def test_repeated_identical_events_converge_monotonically(behavioral_engine, baseline_store, make_event):
    previous = 0.0
    for i in range(40):
        await behavioral_engine.update_baseline(make_event(event_id=f"e{i}", users=["alice"]), now=NOW)
        frequency = baseline_store.get("alice").patterns[PatternType.LOGIN_PATTERN].frequency
        assert previous < frequency <= 1.0
        previous = frequency

    assert previous == pytest.approx(1 - 0.9 ** 40)


@pytest.mark.asyncio
async def test_confidence_caps_at_one(behavioral_engine, baseline_store, make_event):
    behavioral_engine.confidence_increment = 0.5
    for i in range(5):
        await behavioral_engine.update_baseline(make_event(event_id=f"e{i}", users=["alice"]), now=NOW)

    assert baseline_store.get("alice").confidence == 1.0


@pytest.mark.asyncio
async def test_detects_login_burst_after_training(behavioral_engine, make_event):
    for i in range(20):
        await behavioral_engine.update_baseline(make_event(event_id=f"train-{i}", users=["alice"]), now=NOW)

    burst = make_event(event_id="burst", users=["alice", "bob", "carol"])
    result = await behavioral_engine.analyze(burst, now=NOW)

    assert len(result.anomalies) == 1
    anomaly = result.anomalies[0]
    assert anomaly.entity_id == "alice"
    assert anomaly.pattern == PatternType.LOGIN_PATTERN
    assert anomaly.current == 3.0
    assert anomaly.severity == 1.0
    assert anomaly.confidence == pytest.approx(0.2)
    assert anomaly.timeframe == "morning"
    assert anomaly.description.startswith("Extreme login_pattern activity")
    assert result.risk_score == pytest.approx(0.2)
    assert result.confidence == pytest.approx(0.2)
    assert "Investigate 1 behavioral anomalies detected" in result.recommendations
    assert result.baseline_comparison.anomalous_patterns >= 1


@pytest.mark.asyncio
async def test_analyze_does_not_mutate_existing_baselines(behavioral_engine, baseline_store, make_event):
    await behavioral_engine.update_baseline(make_event(users=["alice"]), now=NOW)
    before = baseline_store.get("alice").to_dict()

    await behavioral_engine.analyze(make_event(event_id="e2", users=["alice"], files=["f1"]), now=NOW)

    assert baseline_store.get("alice").to_dict() == before


def test_feedback_lowers_confidence_with_floor(behavioral_engine, baseline_store):
    baseline = baseline_store.get_or_create("alice", EntityType.USER, 0.3, NOW)

    behavioral_engine.apply_feedback("alice")
    assert baseline.confidence == pytest.approx(0.25)

    for _ in range(10):
        behavioral_engine.apply_feedback("alice")
    assert baseline.confidence == pytest.approx(0.1)


def test_feedback_for_unknown_entity_is_ignored(behavioral_engine):
    assert behavioral_engine.apply_feedback("nobody") is None


@pytest.mark.asyncio
async def test_cleanup_stale_uses_retention(behavioral_engine, baseline_store):
    baseline_store.get_or_create("old", EntityType.USER, 0.1, NOW - timedelta(days=31))
    baseline_store.get_or_create("recent", EntityType.USER, 0.1, NOW - timedelta(days=29))

    removed = await behavioral_engine.cleanup_stale(now=NOW)

    assert removed == ["old"]
    assert "recent" in baseline_store


@pytest.mark.asyncio
async def test_cleanup_stale_uses_baseline_batch_size(baseline_store, monkeypatch):
    monkeypatch.setattr(settings, "baseline_sweep_batch_size", 7)
    monkeypatch.setattr(settings, "graph_sweep_batch_size", 999)
    engine = BehavioralEngine(store=baseline_store)
    calls = []

    async def fake_cleanup(cutoff, batch_size=500):
        calls.append(batch_size)
        return []

    monkeypatch.setattr(baseline_store, "cleanup_stale", fake_cleanup)

    await engine.cleanup_stale(now=NOW)
    await engine.cleanup_stale(now=NOW, batch_size=3)

    assert calls == [7, 3]
