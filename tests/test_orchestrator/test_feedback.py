"""
Tests for analyst feedback handling.
"""
import asyncio

import pytest

from correlation_core.orchestrator.orchestrator import update_rule_performance
from correlation_core.schemas.rules import Feedback, RulePerformance


async def wait_for_count(items: list, count: int, timeout: float = 5.0) -> None:
    async def _poll():
        while len(items) < count:
            await asyncio.sleep(0.01)

    await asyncio.wait_for(_poll(), timeout=timeout)


@pytest.mark.asyncio
async def test_false_positive_lowers_entity_baseline(orchestrator, make_event):
    await orchestrator.process_event(make_event(users=["alice"]))
    baseline = orchestrator.behavioral.store.get("alice")
    baseline.confidence = 0.5

    result = orchestrator.apply_feedback(Feedback(entity_id="alice", is_false_positive=True))

    assert result["baselines_adjusted"] == ["alice"]
    assert result["rule_performance"] is None
    assert baseline.confidence == pytest.approx(0.45)
    assert orchestrator.stats.false_positives_reduced == 1

    await orchestrator.persister.flush()
    assert orchestrator.storage.baselines["alice"]["confidence"] == pytest.approx(0.45)


@pytest.mark.asyncio
async def test_false_positive_confidence_has_floor(orchestrator, make_event):
    await orchestrator.process_event(make_event(users=["alice"]))

    orchestrator.apply_feedback(Feedback(entity_id="alice", is_false_positive=True))

    assert orchestrator.behavioral.store.get("alice").confidence == pytest.approx(0.1)


@pytest.mark.asyncio
async def test_false_positive_for_event_adjusts_its_entities(orchestrator, make_event):
    verdicts = []
    orchestrator.on_verdict(verdicts.append)
    await orchestrator.submit(make_event(event_id="evt-fp", users=["alice"], hosts=["ws-1"]))
    await wait_for_count(verdicts, 1)
    await orchestrator.persister.flush()

    result = orchestrator.apply_feedback(Feedback(event_id="evt-fp", is_false_positive=True))

    assert sorted(result["baselines_adjusted"]) == ["alice", "ws-1"]


@pytest.mark.asyncio
async def test_false_positive_for_unknown_entity(orchestrator):
    result = orchestrator.apply_feedback(Feedback(entity_id="nobody", is_false_positive=True))

    assert result["baselines_adjusted"] == []
    assert orchestrator.stats.false_positives_reduced == 0


@pytest.mark.asyncio
async def test_rule_feedback_updates_performance(orchestrator, brute_force_rule):
    orchestrator.register_rule(brute_force_rule)

    orchestrator.apply_feedback(Feedback(rule_id="rule_brute_force"))
    orchestrator.apply_feedback(Feedback(rule_id="rule_brute_force", is_false_positive=True))
    result = orchestrator.apply_feedback(Feedback(rule_id="rule_brute_force", is_false_negative=True))

    performance = result["rule_performance"]
    assert performance["true_positives"] == 1
    assert performance["false_positives"] == 1
    assert performance["false_negatives"] == 1
    assert performance["precision"] == pytest.approx(0.5)
    assert performance["accuracy"] == pytest.approx(0.5)
    assert performance["recall"] == pytest.approx(0.5)
    assert performance["f1_score"] == pytest.approx(0.5)

    await orchestrator.persister.flush()
    stored = orchestrator.storage.rules["rule_brute_force"]["performance"]
    assert stored["false_negatives"] == 1


@pytest.mark.asyncio
async def test_feedback_for_unknown_rule_is_ignored(orchestrator):
    result = orchestrator.apply_feedback(Feedback(rule_id="rule_missing", is_false_positive=True))

    assert result["rule_performance"] is None
    assert result["feedback_id"].startswith("fb_")


def test_recall_untouched_without_false_negatives():
    performance = RulePerformance()

    update_rule_performance(performance, Feedback(rule_id="r"))
    update_rule_performance(performance, Feedback(rule_id="r"))
    update_rule_performance(performance, Feedback(rule_id="r", is_false_positive=True))

    assert performance.precision == pytest.approx(2 / 3)
    assert performance.recall == 0.0
    assert performance.f1_score == 0.0
    assert performance.last_updated is not None
