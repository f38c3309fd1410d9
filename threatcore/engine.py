"""Threat analytics orchestration."""
from __future__ import annotations

import logging
import random
from dataclasses import dataclass
from datetime import datetime
from typing import List, Mapping, Optional

from .anomaly import AnomalyDetector, AnomalyRecord
from .config import Settings, get_settings
from .correlation import CorrelationEngine, ThreatCorrelation, default_rules
from .intel import IndicatorFeed, default_indicators
from .risk import RiskAssessment, RiskScoringEngine
from .scheduler import CycleScheduler
from .simulator import SyntheticTelemetry
from .state import ThreatEvent, ensure_aware, utcnow

logger = logging.getLogger(__name__)


@dataclass
class CycleReport:
    """Everything produced by one full :meth:`ThreatAnalyticsCore.tick`."""

    timestamp: datetime
    anomalies: List[AnomalyRecord]
    event: Optional[ThreatEvent]
    correlations: List[ThreatCorrelation]
    assessments: List[RiskAssessment]

    def as_dict(self) -> dict[str, object]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "anomalies": [record.as_dict() for record in self.anomalies],
            "event": self.event.to_payload() if self.event is not None else None,
            "correlations": [item.as_dict() for item in self.correlations],
            "assessments": [item.as_dict() for item in self.assessments],
        }


class ThreatAnalyticsCore:
    """Builds the three engines and drives their periodic cycles."""

    def __init__(
        self,
        *,
        settings: Optional[Settings] = None,
        telemetry: Optional[SyntheticTelemetry] = None,
        rng: Optional[random.Random] = None,
        indicator_feed: Optional[IndicatorFeed] = None,
    ) -> None:
        self.settings = settings or get_settings()
        seed_source = rng or random.Random(self.settings.random_seed)
        # Each engine owns its own generator so one cycle never shifts another's draws.
        self.telemetry = telemetry or SyntheticTelemetry(rng=_child_rng(seed_source))
        self.anomalies = AnomalyDetector(
            source=self.telemetry,
            rng=_child_rng(seed_source),
            threshold=self.settings.anomaly_threshold,
            min_history=self.settings.anomaly_min_history,
            max_history=self.settings.anomaly_history_size,
            max_records=self.settings.anomaly_retention,
            admission_rate=self.settings.anomaly_admission_rate,
        )
        self.correlations = CorrelationEngine(
            rules=default_rules(),
            rng=_child_rng(seed_source),
            max_events=self.settings.event_buffer_size,
            max_correlations=self.settings.correlation_retention,
        )
        self.risk = RiskScoringEngine(
            weights=self.settings.risk_weights,
            metrics_source=self.telemetry,
            rng=_child_rng(seed_source),
            jitter=self.settings.risk_prediction_jitter,
            max_trends=self.settings.risk_trend_retention,
        )
        self.intel = indicator_feed or IndicatorFeed(
            default_indicators(),
            url=self.settings.indicator_feed_url,
            cache_ttl=self.settings.indicator_cache_ttl,
        )
        self._scheduler: Optional[CycleScheduler] = None

    def ingest_event(self, event: ThreatEvent | Mapping[str, object]) -> ThreatEvent:
        """Enrich ``event`` with indicator matches and buffer it for correlation."""

        if not isinstance(event, ThreatEvent):
            event = ThreatEvent.from_payload(event)
        enriched = self.intel.enrich(event)
        self.correlations.add_event(enriched)
        return enriched

    def simulate_event(self, now: Optional[datetime] = None) -> ThreatEvent:
        now = ensure_aware(now) if now else utcnow()
        return self.ingest_event(self.telemetry.next_event(now))

    def tick(self, now: Optional[datetime] = None) -> CycleReport:
        """Run every cycle once, in dependency-free order."""

        now = ensure_aware(now) if now else utcnow()
        anomalies = self.anomalies.tick(now)
        event = self.simulate_event(now)
        correlations = self.correlations.tick(now)
        assessments = self.risk.tick(now)
        return CycleReport(
            timestamp=now,
            anomalies=anomalies,
            event=event,
            correlations=correlations,
            assessments=assessments,
        )

    def build_scheduler(self) -> CycleScheduler:
        settings = self.settings
        scheduler = CycleScheduler()
        scheduler.every("anomaly-detection", settings.anomaly_interval_seconds, self.anomalies.tick)
        scheduler.every("event-simulation", settings.event_interval_seconds, self.simulate_event)
        scheduler.every("threat-correlation", settings.correlation_interval_seconds, self.correlations.tick)
        scheduler.every("risk-assessment", settings.risk_interval_seconds, self.risk.tick)
        return scheduler

    async def run(self) -> None:
        """Refresh the indicator feed, then run all cycles until :meth:`stop`."""

        await self.intel.refresh()
        self._scheduler = self.build_scheduler()
        if self.settings.indicator_feed_url and self.settings.indicator_cache_ttl:
            self._scheduler.every(
                "indicator-refresh",
                self.settings.indicator_cache_ttl,
                lambda now: self.intel.refresh(),
            )
        await self._scheduler.run()

    def stop(self) -> None:
        if self._scheduler is not None:
            self._scheduler.stop()

    def snapshot(self) -> dict[str, object]:
        """JSON-friendly view of the current state for presentation layers."""

        return {
            "anomalies": [record.as_dict() for record in self.anomalies.get_anomalies()],
            "correlations": [item.as_dict() for item in self.correlations.get_correlations()],
            "active_correlations": len(self.correlations.get_active_correlations()),
            "risk_assessments": [item.as_dict() for item in self.risk.get_all_risk_assessments()],
            "high_risk_devices": [item.device_id for item in self.risk.get_high_risk_devices()],
            "risk_weights": self.risk.get_weights(),
        }


def _child_rng(parent: random.Random) -> random.Random:
    return random.Random(parent.getrandbits(64))


__all__ = ["CycleReport", "ThreatAnalyticsCore"]
