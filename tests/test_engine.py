from __future__ import annotations

import asyncio
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import httpx
import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from threatcore.config import Settings  # noqa: E402
from threatcore.engine import ThreatAnalyticsCore  # noqa: E402
from threatcore.intel import IndicatorFeed, default_indicators  # noqa: E402
from threatcore.simulator import DEVICE_IDS  # noqa: E402

NOW = datetime(2025, 1, 1, 9, 30, tzinfo=timezone.utc)


def build_core(**overrides) -> ThreatAnalyticsCore:
    settings = Settings(random_seed=7, **overrides)
    return ThreatAnalyticsCore(settings=settings)


def build_payload(**overrides):
    payload = {
        "timestamp": "2025-01-01T09:29:00Z",
        "type": "behavioral",
        "severity": "HIGH",
        "confidence": 0.82,
        "deviceId": "WS-FINANCE-02",
        "userId": "user17",
        "sourceIp": "10.0.0.45",
        "metadata": {"action": "privilege_escalation"},
    }
    payload.update(overrides)
    return payload


def test_tick_runs_every_cycle() -> None:
    core = build_core()
    report = core.tick(NOW)

    assert report.timestamp == NOW
    assert report.anomalies == []
    assert report.event is not None
    assert report.event.timestamp == NOW
    assert sorted(item.device_id for item in report.assessments) == sorted(DEVICE_IDS)
    assert core.correlations.get_events()[0].id == report.event.id
    for category in core.anomalies.categories:
        assert core.anomalies.history_size(category) == 1


def test_seeded_cores_are_reproducible() -> None:
    first, second = build_core(), build_core()
    for minute in range(3):
        now = NOW + timedelta(minutes=minute)
        assert first.tick(now).as_dict() == second.tick(now).as_dict()


def test_ingest_event_normalises_and_enriches_payload() -> None:
    core = build_core()
    event = core.ingest_event(build_payload())

    assert event.category == "behavioral"
    assert event.severity == "high"
    assert event.device_id == "WS-FINANCE-02"
    assert event.source_ip == "10.0.0.45"
    assert list(event.metadata["ioc_matches"]) == [
        "C2 server communication: 10.0.0.45 via Internal Analysis (confidence 87%)"
    ]
    assert core.correlations.get_events() == [event]


def test_privilege_escalation_chain_end_to_end() -> None:
    core = build_core()
    core.ingest_event(build_payload(id="esc-1"))
    core.ingest_event(build_payload(id="esc-2", timestamp="2025-01-01T09:29:40Z", deviceId="WS-FINANCE-01"))
    core.ingest_event(build_payload(id="noise", metadata={"action": "file_access"}))

    created = core.correlations.tick(NOW)

    assert [item.rule_id for item in created] == ["privilege_escalation_chain"]
    correlation = created[0]
    assert correlation.event_ids() == {"esc-1", "esc-2"}
    assert correlation.correlation_type == "spatial"
    assert correlation.risk_score == pytest.approx(1.8)
    assert core.snapshot()["active_correlations"] == 1


def test_scheduler_registers_every_cycle() -> None:
    core = build_core(anomaly_interval_seconds=5, risk_interval_seconds=60)
    scheduler = core.build_scheduler()

    intervals = {job.name: job.interval for job in scheduler.jobs}
    assert intervals == {
        "anomaly-detection": 5.0,
        "event-simulation": 20.0,
        "threat-correlation": 30.0,
        "risk-assessment": 60.0,
    }
    assert scheduler.run_due(NOW) == list(intervals)
    assert len(core.correlations.get_events()) == 1


def test_snapshot_is_json_friendly() -> None:
    core = build_core()
    core.tick(NOW)
    snapshot = core.snapshot()

    assert set(snapshot) == {
        "anomalies",
        "correlations",
        "active_correlations",
        "risk_assessments",
        "high_risk_devices",
        "risk_weights",
    }
    assert len(snapshot["risk_assessments"]) == len(DEVICE_IDS)
    assert snapshot["risk_weights"] == core.risk.get_weights()
    first = snapshot["risk_assessments"][0]
    assert isinstance(first["last_updated"], str)
    assert len(first["predictions"]) == 5


def test_run_until_stopped() -> None:
    core = build_core()

    async def scenario() -> None:
        task = asyncio.create_task(core.run())
        await asyncio.sleep(0.05)
        core.stop()
        await asyncio.wait_for(task, timeout=5)

    asyncio.run(scenario())

    assert len(core.risk.get_all_risk_assessments()) == len(DEVICE_IDS)
    assert len(core.correlations.get_events()) == 1


def test_run_survives_a_malformed_indicator_feed() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=[{"type": "ip", "value": "1.2.3.4", "confidence": {"score": 9}}])

    feed = IndicatorFeed(
        default_indicators(),
        url="https://intel.example.test/feed.json",
        transport=httpx.MockTransport(handler),
    )
    core = ThreatAnalyticsCore(settings=Settings(random_seed=7), indicator_feed=feed)

    async def scenario() -> None:
        task = asyncio.create_task(core.run())
        await asyncio.sleep(0.05)
        core.stop()
        await asyncio.wait_for(task, timeout=5)

    asyncio.run(scenario())

    assert not feed.check_ip("1.2.3.4")
    assert len(core.risk.get_all_risk_assessments()) == len(DEVICE_IDS)
