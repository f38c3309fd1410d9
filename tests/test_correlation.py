from __future__ import annotations

import itertools
import random
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from threatcore.conditions import build_condition, condition_from_payload  # noqa: E402
from threatcore.correlation import (  # noqa: E402
    GENERIC_RECOMMENDATIONS,
    CorrelationEngine,
    CorrelationRule,
    correlation_confidence,
    correlation_risk_score,
    correlation_type_for,
    default_rules,
)
from threatcore.errors import InvalidConfiguration  # noqa: E402
from threatcore.state import ThreatEvent  # noqa: E402

BASE = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)
_ids = itertools.count(1)


def make_event(
    offset: float = 0.0,
    *,
    severity: str = "high",
    category: str = "network",
    device: str = "WS-FINANCE-01",
    confidence: float = 0.8,
    metadata: dict | None = None,
) -> ThreatEvent:
    return ThreatEvent(
        id=f"evt-{next(_ids)}",
        timestamp=BASE + timedelta(seconds=offset),
        category=category,
        severity=severity,
        confidence=confidence,
        device_id=device,
        source_ip="192.168.1.20",
        metadata=metadata or {},
    )


def severity_rule(**overrides) -> CorrelationRule:
    payload = {
        "id": "burst",
        "name": "High Severity Burst",
        "conditions": [{"field": "severity", "operator": "in_range", "value": ["high", "critical"]}],
        "time_window": 60,
        "threshold": 3,
        "severity": "high",
    }
    payload.update(overrides)
    return CorrelationRule.from_payload(payload)


def engine_with(*rules: CorrelationRule, **kwargs) -> CorrelationEngine:
    return CorrelationEngine(rules=rules, rng=random.Random(5), **kwargs)


def test_threshold_reached_within_window_creates_one_correlation() -> None:
    engine = engine_with(severity_rule())
    first, second = make_event(0), make_event(10, severity="critical")
    engine.add_event(first)
    engine.add_event(second)
    engine.add_event(make_event(15, severity="low"))

    assert engine.tick(BASE + timedelta(seconds=20)) == []

    third = make_event(30)
    engine.add_event(third)
    created = engine.tick(BASE + timedelta(seconds=40))

    assert len(created) == 1
    correlation = created[0]
    assert correlation.event_ids() == {first.id, second.id, third.id}
    assert correlation.rule_id == "burst"
    assert correlation.status == "active"
    assert correlation.created_at == BASE + timedelta(seconds=40)
    assert engine.get_correlations() == [correlation]


def test_rule_refiring_on_overlapping_window_is_deduplicated() -> None:
    engine = engine_with(severity_rule())
    for offset in (0, 5, 10):
        engine.add_event(make_event(offset))
    engine.tick(BASE + timedelta(seconds=20))
    engine.add_event(make_event(25))

    assert engine.tick(BASE + timedelta(seconds=30)) == []
    assert len(engine.get_correlations()) == 1


def test_resolved_correlation_no_longer_blocks_new_findings() -> None:
    engine = engine_with(severity_rule())
    for offset in (0, 5, 10):
        engine.add_event(make_event(offset))
    (first,) = engine.tick(BASE + timedelta(seconds=20))

    resolved = engine.update_correlation_status(first.id, "resolved")
    assert resolved.status == "resolved"
    assert engine.get_active_correlations() == []

    (second,) = engine.tick(BASE + timedelta(seconds=25))
    active = engine.get_active_correlations()
    assert active == [second]
    for left, right in itertools.combinations(active, 2):
        assert left.event_ids().isdisjoint(right.event_ids())


def test_events_outside_window_are_ignored() -> None:
    engine = engine_with(severity_rule())
    for offset in (0, 5, 10):
        engine.add_event(make_event(offset))

    assert engine.tick(BASE + timedelta(seconds=90)) == []

    engine.add_event(make_event(100))
    engine.add_event(make_event(105))
    assert engine.tick(BASE + timedelta(seconds=110)) == []


def test_disabled_rules_are_not_evaluated() -> None:
    engine = engine_with(severity_rule(enabled=False))
    for offset in (0, 5, 10):
        engine.add_event(make_event(offset))
    assert engine.tick(BASE + timedelta(seconds=20)) == []

    engine.update_rule("burst", enabled=True)
    assert len(engine.tick(BASE + timedelta(seconds=20))) == 1


@pytest.mark.parametrize(
    "events, expected",
    [
        ([make_event(0), make_event(5, device="SRV-WEB-01")], "spatial"),
        ([make_event(0), make_event(30)], "temporal"),
        ([make_event(0), make_event(120, category="behavioral")], "behavioral"),
        ([make_event(0), make_event(120, category="malware")], "causal"),
    ],
)
def test_correlation_type_inference(events, expected) -> None:
    assert correlation_type_for(events) == expected


def test_confidence_adds_capped_count_bonus() -> None:
    two = [make_event(confidence=0.2), make_event(confidence=0.2)]
    assert correlation_confidence(two) == pytest.approx(0.4)

    five = [make_event(confidence=0.6) for _ in range(5)]
    assert correlation_confidence(five) == pytest.approx(0.9)

    strong = [make_event(confidence=0.9) for _ in range(3)]
    assert correlation_confidence(strong) == 1.0


def test_risk_score_uses_severity_weights_and_caps_at_ten() -> None:
    rule = severity_rule()
    assert correlation_risk_score([make_event() for _ in range(3)], rule) == pytest.approx(2.7)

    critical_rule = severity_rule(severity="critical")
    five = [make_event(severity="critical") for _ in range(5)]
    assert correlation_risk_score(five, critical_rule) == pytest.approx(8.0)
    ten = [make_event(severity="critical") for _ in range(10)]
    assert correlation_risk_score(ten, critical_rule) == 10.0


def test_description_and_recommendations() -> None:
    rule = severity_rule(recommendations=["Rotate exposed credentials"])
    engine = engine_with(rule)
    engine.add_event(make_event(0, device="WS-HR-01"))
    engine.add_event(make_event(5, device="WS-IT-01"))
    engine.add_event(make_event(10, device="WS-IT-01", category="malware"))

    (correlation,) = engine.tick(BASE + timedelta(seconds=15))
    assert correlation.description == (
        "High Severity Burst: 3 related events detected across 2 device(s). "
        "Primary threat type: malware."
    )
    assert correlation.correlation_type == "spatial"
    assert correlation.recommendations == GENERIC_RECOMMENDATIONS + ("Rotate exposed credentials",)


def test_event_buffer_is_bounded_newest_first() -> None:
    engine = engine_with(max_events=5)
    events = [make_event(offset) for offset in range(7)]
    for event in events:
        engine.add_event(event)

    buffered = engine.get_events()
    assert [event.id for event in buffered] == [event.id for event in reversed(events[2:])]


def test_correlation_list_is_bounded() -> None:
    engine = engine_with(severity_rule(threshold=1, time_window=10), max_correlations=2)
    for round_index in range(3):
        offset = round_index * 60
        engine.add_event(make_event(offset))
        engine.tick(BASE + timedelta(seconds=offset + 1))

    correlations = engine.get_correlations()
    assert len(correlations) == 2
    assert correlations[0].created_at > correlations[1].created_at


def test_default_rules_cover_privilege_escalation_chains() -> None:
    rules = {rule.id: rule for rule in default_rules()}
    assert set(rules) == {"lateral_movement", "coordinated_attack", "privilege_escalation_chain"}

    engine = engine_with(rules["privilege_escalation_chain"])
    engine.add_event(make_event(0, category="behavioral", metadata={"action": "Privilege_Escalation"}))
    engine.add_event(make_event(30, category="behavioral", metadata={"action": "file_access"}))
    assert engine.tick(BASE + timedelta(seconds=60)) == []

    engine.add_event(make_event(90, category="behavioral", metadata={"action": "privilege_escalation"}))
    (correlation,) = engine.tick(BASE + timedelta(seconds=100))
    assert correlation.correlation_type == "behavioral"


def test_rule_management() -> None:
    engine = engine_with(severity_rule())

    with pytest.raises(InvalidConfiguration):
        engine.add_rule(severity_rule())
    with pytest.raises(KeyError):
        engine.update_rule("missing", threshold=2)
    with pytest.raises(InvalidConfiguration):
        engine.update_rule("burst", severity="extreme")
    with pytest.raises(InvalidConfiguration):
        engine.update_rule("burst", colour="red")

    updated = engine.update_rule(
        "burst",
        threshold=2,
        conditions=[{"field": "type", "operator": "equals", "value": "network"}],
    )
    assert updated.threshold == 2
    assert engine.get_rule("burst") == updated

    added = engine.add_rule(
        {
            "id": "phish",
            "name": "Phishing Wave",
            "conditions": [{"field": "category", "operator": "equals", "value": "phishing"}],
            "timeWindow": 600,
            "threshold": 4,
            "severity": "medium",
        }
    )
    assert [rule.id for rule in engine.get_rules()] == ["burst", "phish"]
    assert added.time_window == 600

    rules = engine.get_rules()
    rules.clear()
    assert len(engine.get_rules()) == 2


def test_correlation_status_updates_are_validated() -> None:
    engine = engine_with(severity_rule())
    for offset in (0, 5, 10):
        engine.add_event(make_event(offset))
    (correlation,) = engine.tick(BASE + timedelta(seconds=20))

    with pytest.raises(InvalidConfiguration):
        engine.update_correlation_status(correlation.id, "closed")
    with pytest.raises(KeyError):
        engine.update_correlation_status("nope", "resolved")

    engine.update_correlation_status(correlation.id, "investigating")
    assert engine.get_correlation(correlation.id).status == "investigating"
    assert correlation.status == "active"


@pytest.mark.parametrize(
    "payload",
    [
        {"field": "severity", "operator": "matches", "value": "high"},
        {"field": "kernel_module", "operator": "equals", "value": "x"},
        {"field": "severity", "operator": "in_range", "value": "high"},
        {"field": "confidence", "operator": "greater_than", "value": "very"},
        {"field": "metadata.", "operator": "equals", "value": "x"},
        {"operator": "equals", "value": "x"},
    ],
)
def test_invalid_conditions_are_rejected_eagerly(payload) -> None:
    with pytest.raises(InvalidConfiguration):
        condition_from_payload(payload)


def test_condition_operators() -> None:
    event = make_event(confidence=0.75, metadata={"action": "Privilege_Escalation", "port": "443"})

    assert build_condition("type", "equals", "network").matches(event)
    assert not build_condition("category", "equals", "malware").matches(event)
    assert build_condition("metadata.action", "contains", "privilege").matches(event)
    assert not build_condition("metadata.protocol", "contains", "http").matches(event)
    assert build_condition("confidence", "greater_than", 0.7).matches(event)
    assert build_condition("metadata.port", "less_than", 1024).matches(event)
    assert not build_condition("user_id", "less_than", 5).matches(event)
    assert build_condition("severity", "in_range", ["high", "critical"]).matches(event)
    assert build_condition("sourceIp", "equals", "192.168.1.20").matches(event)

    condition = build_condition("severity", "in_range", ("high",))
    assert condition.as_dict() == {"field": "severity", "operator": "in_range", "value": ["high"]}


def test_rule_validation() -> None:
    with pytest.raises(InvalidConfiguration):
        severity_rule(threshold=0)
    with pytest.raises(InvalidConfiguration):
        severity_rule(time_window=0)
    with pytest.raises(InvalidConfiguration):
        severity_rule(severity="urgent")
    with pytest.raises(InvalidConfiguration):
        CorrelationRule.from_payload({"name": "no id"})


def test_events_stamped_after_the_sweep_are_not_counted() -> None:
    engine = engine_with(severity_rule())
    for offset in (0, 5, 30):
        engine.add_event(make_event(offset))

    assert engine.tick(BASE + timedelta(seconds=20)) == []

    (correlation,) = engine.tick(BASE + timedelta(seconds=35))
    assert len(correlation.events) == 3


def test_enabled_flag_must_be_boolean() -> None:
    with pytest.raises(InvalidConfiguration):
        severity_rule(enabled="yes")

    engine = engine_with(severity_rule())
    with pytest.raises(InvalidConfiguration):
        engine.update_rule("burst", enabled="false")
    assert engine.get_rule("burst").enabled is True

    assert engine.update_rule("burst", enabled=False).enabled is False
