"""Weighted, trend-aware device risk scoring."""
from __future__ import annotations

import logging
import math
import random
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from threading import RLock
from typing import Callable, Deque, Dict, List, Mapping, Optional, Sequence, Tuple

from .errors import InvalidConfiguration, ThreatCoreError
from .state import DeviceMetrics, MetricsSource, ensure_aware, utcnow

logger = logging.getLogger(__name__)

DEFAULT_RISK_WEIGHTS: Mapping[str, float] = {
    "critical_vulnerabilities": 0.25,
    "patch_status": 0.15,
    "threat_exposure": 0.20,
    "behavioral_anomalies": 0.15,
    "network_exposure": 0.10,
    "configuration_security": 0.10,
    "user_risk": 0.05,
}
WEIGHT_TOLERANCE = 1e-6

RISK_LEVEL_BANDS: Tuple[Tuple[float, str], ...] = (
    (80.0, "critical"),
    (60.0, "high"),
    (40.0, "medium"),
)

TIMEFRAME_MULTIPLIERS: Mapping[str, float] = {
    "1h": 0.02,
    "6h": 0.05,
    "24h": 0.10,
    "7d": 0.20,
    "30d": 0.40,
}
LONG_HORIZONS = frozenset({"7d", "30d"})
TREND_WINDOW = 5
TREND_SCALE = 0.1
MAX_TRENDS = 100
DEFAULT_JITTER = 0.1
RECOMMENDATION_THRESHOLD = 70.0

FACTOR_RECOMMENDATIONS: Mapping[str, Tuple[str, ...]] = {
    "critical_vulnerabilities": (
        "Install critical security patches immediately",
        "Perform vulnerability assessment",
    ),
    "threat_exposure": (
        "Investigate recent threat events",
        "Consider endpoint isolation",
    ),
    "behavioral_anomalies": (
        "Review user activity logs",
        "Monitor for insider threats",
    ),
    "network_exposure": (
        "Review network segmentation",
        "Update firewall rules",
    ),
}


@dataclass(frozen=True)
class RiskFactor:
    """One weighted contributor (0-100) to the overall device score."""

    id: str
    name: str
    category: str
    weight: float
    value: float
    description: str
    source: str

    def weighted_value(self) -> float:
        return self.value * self.weight

    def as_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "name": self.name,
            "category": self.category,
            "weight": self.weight,
            "value": self.value,
            "description": self.description,
            "source": self.source,
        }


@dataclass(frozen=True)
class RiskTrend:
    timestamp: datetime
    score: float
    factors: Tuple[str, ...]

    def as_dict(self) -> dict[str, object]:
        return {"timestamp": self.timestamp.isoformat(), "score": self.score, "factors": list(self.factors)}


@dataclass(frozen=True)
class RiskPrediction:
    timeframe: str
    predicted_score: float
    confidence: float
    risk_factors: Tuple[str, ...]

    def as_dict(self) -> dict[str, object]:
        return {
            "timeframe": self.timeframe,
            "predicted_score": self.predicted_score,
            "confidence": self.confidence,
            "risk_factors": list(self.risk_factors),
        }


@dataclass(frozen=True)
class RiskAssessment:
    """Latest risk snapshot for a single device."""

    device_id: str
    overall_score: float
    risk_level: str
    factors: Tuple[RiskFactor, ...]
    trends: Tuple[RiskTrend, ...]
    predictions: Tuple[RiskPrediction, ...]
    recommendations: Tuple[str, ...]
    last_updated: datetime

    def factor(self, factor_id: str) -> Optional[RiskFactor]:
        for factor in self.factors:
            if factor.id == factor_id:
                return factor
        return None

    def as_dict(self) -> dict[str, object]:
        return {
            "device_id": self.device_id,
            "overall_score": self.overall_score,
            "risk_level": self.risk_level,
            "factors": [factor.as_dict() for factor in self.factors],
            "trends": [trend.as_dict() for trend in self.trends],
            "predictions": [prediction.as_dict() for prediction in self.predictions],
            "recommendations": list(self.recommendations),
            "last_updated": self.last_updated.isoformat(),
        }


@dataclass(frozen=True)
class _FactorSpec:
    id: str
    name: str
    category: str
    source: str
    value: Callable[[DeviceMetrics], float]
    describe: Callable[[DeviceMetrics], str]


_FACTOR_SPECS: Tuple[_FactorSpec, ...] = (
    _FactorSpec(
        id="critical_vulnerabilities",
        name="Critical Vulnerabilities",
        category="vulnerability",
        source="Vulnerability Scanner",
        value=lambda m: min(m.vulnerability_count / 10.0 * 100.0, 100.0),
        describe=lambda m: f"{m.vulnerability_count} vulnerabilities detected",
    ),
    _FactorSpec(
        id="patch_status",
        name="Patch Status",
        category="configuration",
        source="Patch Management",
        value=lambda m: 100.0 - m.patch_level,
        describe=lambda m: f"{m.patch_level:.1f}% patched",
    ),
    _FactorSpec(
        id="threat_exposure",
        name="Threat Exposure",
        category="threat",
        source="Threat Detection",
        value=lambda m: min(m.threat_events / 20.0 * 100.0, 100.0),
        describe=lambda m: f"{m.threat_events} threat events in last 30 days",
    ),
    _FactorSpec(
        id="behavioral_anomalies",
        name="Behavioral Anomalies",
        category="behavior",
        source="Behavioral Analysis",
        value=lambda m: min(m.behavioral_anomalies / 5.0 * 100.0, 100.0),
        describe=lambda m: f"{m.behavioral_anomalies} anomalies detected",
    ),
    _FactorSpec(
        id="network_exposure",
        name="Network Exposure",
        category="environment",
        source="Network Analysis",
        value=lambda m: m.network_exposure,
        describe=lambda m: f"Network exposure score: {m.network_exposure:.1f}",
    ),
    _FactorSpec(
        id="configuration_security",
        name="Configuration Security",
        category="configuration",
        source="Configuration Assessment",
        value=lambda m: 100.0 - m.configuration_score,
        describe=lambda m: f"Security configuration score: {m.configuration_score:.1f}%",
    ),
    _FactorSpec(
        id="user_risk",
        name="User Risk",
        category="behavior",
        source="User Behavior Analysis",
        value=lambda m: m.user_risk_score,
        describe=lambda m: f"User risk score: {m.user_risk_score:.1f}",
    ),
)


def validate_weights(weights: Mapping[str, float]) -> Dict[str, float]:
    """Return a copy of ``weights`` or raise :class:`InvalidConfiguration`."""

    expected = set(DEFAULT_RISK_WEIGHTS)
    provided = set(weights)
    if provided != expected:
        missing = ", ".join(sorted(expected - provided))
        unknown = ", ".join(sorted(provided - expected))
        raise InvalidConfiguration(f"Risk weights mismatch (missing: {missing or '-'}; unknown: {unknown or '-'})")

    validated: Dict[str, float] = {}
    for factor_id in DEFAULT_RISK_WEIGHTS:
        try:
            weight = float(weights[factor_id])
        except (TypeError, ValueError):
            raise InvalidConfiguration(f"Weight for {factor_id} is not numeric") from None
        if math.isnan(weight) or not 0.0 <= weight <= 1.0:
            raise InvalidConfiguration(f"Weight for {factor_id} must be within [0, 1], got {weight}")
        validated[factor_id] = weight

    total = sum(validated.values())
    if abs(total - 1.0) > WEIGHT_TOLERANCE:
        raise InvalidConfiguration(f"Risk weights must sum to 1.0, got {total:.6f}")
    return validated


def compute_factors(metrics: DeviceMetrics, weights: Mapping[str, float]) -> List[RiskFactor]:
    return [
        RiskFactor(
            id=spec.id,
            name=spec.name,
            category=spec.category,
            weight=weights[spec.id],
            value=max(0.0, min(100.0, float(spec.value(metrics)))),
            description=spec.describe(metrics),
            source=spec.source,
        )
        for spec in _FACTOR_SPECS
    ]


def overall_score(factors: Sequence[RiskFactor]) -> float:
    return round(sum(factor.weighted_value() for factor in factors), 2)


def risk_level_for(score: float) -> str:
    for lower_bound, level in RISK_LEVEL_BANDS:
        if score >= lower_bound:
            return level
    return "low"


def trend_slope(scores: Sequence[float]) -> float:
    """Least-squares slope of ``scores`` against their index."""

    n = len(scores)
    if n < 2:
        return 0.0
    sum_x = sum(range(n))
    sum_y = sum(scores)
    sum_xy = sum(index * score for index, score in enumerate(scores))
    sum_xx = sum(index * index for index in range(n))
    denominator = n * sum_xx - sum_x * sum_x
    if not denominator:
        return 0.0
    return (n * sum_xy - sum_x * sum_y) / denominator


def recommendations_for(factors: Sequence[RiskFactor], risk_level: str) -> List[str]:
    recommendations: List[str] = []
    for factor in factors:
        if factor.value > RECOMMENDATION_THRESHOLD:
            recommendations.extend(FACTOR_RECOMMENDATIONS.get(factor.id, ()))

    if risk_level == "critical":
        recommendations.insert(0, "Immediate attention required")
        recommendations.append("Consider emergency incident response")
    elif risk_level == "high":
        recommendations.insert(0, "High priority remediation needed")
        recommendations.append("Schedule detailed security review")

    return list(dict.fromkeys(recommendations))


class RiskScoringEngine:
    """Recomputes every tracked device's assessment on each cycle."""

    def __init__(
        self,
        *,
        weights: Optional[Mapping[str, float]] = None,
        metrics_source: Optional[MetricsSource] = None,
        rng: Optional[random.Random] = None,
        jitter: float = DEFAULT_JITTER,
        max_trends: int = MAX_TRENDS,
    ) -> None:
        self._weights = validate_weights(weights if weights is not None else DEFAULT_RISK_WEIGHTS)
        self._source = metrics_source
        self._rng = rng or random.Random()
        self._jitter = max(0.0, jitter)
        self._max_trends = max_trends
        self._metrics: Dict[str, DeviceMetrics] = {}
        self._assessments: Dict[str, RiskAssessment] = {}
        self._trends: Dict[str, Deque[RiskTrend]] = {}
        self._lock = RLock()

    # ------------------------------------------------------------------
    # Device population
    # ------------------------------------------------------------------
    def track_device(self, metrics: DeviceMetrics) -> None:
        with self._lock:
            self._metrics[metrics.device_id] = metrics

    def untrack_device(self, device_id: str) -> None:
        with self._lock:
            self._metrics.pop(device_id, None)
            self._assessments.pop(device_id, None)
            self._trends.pop(device_id, None)

    def tracked_devices(self) -> List[str]:
        with self._lock:
            return list(self._metrics)

    # ------------------------------------------------------------------
    # Assessment cycle
    # ------------------------------------------------------------------
    def tick(self, now: Optional[datetime] = None) -> List[RiskAssessment]:
        """Refresh metrics from the source, then reassess every tracked device."""

        now = ensure_aware(now) if now else utcnow()
        assessments: List[RiskAssessment] = []
        with self._lock:
            if self._source is not None:
                for device_id in self._source.device_ids():
                    try:
                        self._metrics[device_id] = self._source.metrics(device_id, now)
                    except (ThreatCoreError, TypeError, ValueError) as exc:
                        logger.warning("Skipping metrics refresh for %s: %s", device_id, exc)
            for metrics in list(self._metrics.values()):
                try:
                    assessments.append(self.assess(metrics, now=now))
                except (ThreatCoreError, TypeError, ValueError) as exc:
                    logger.warning("Risk assessment failed for %s: %s", metrics.device_id, exc)
        logger.debug("Risk assessment completed for %s devices", len(assessments))
        return assessments

    def assess(self, metrics: DeviceMetrics, *, now: Optional[datetime] = None) -> RiskAssessment:
        """Score ``metrics``, store the assessment and extend the trend history."""

        now = ensure_aware(now) if now else utcnow()
        with self._lock:
            self._metrics[metrics.device_id] = metrics
            factors = compute_factors(metrics, self._weights)
            score = overall_score(factors)
            level = risk_level_for(score)

            # The current score is part of the fitted trend, so it is recorded before predicting.
            trends = self._trends.setdefault(metrics.device_id, deque(maxlen=self._max_trends))
            contributing = tuple(dict.fromkeys(f.category for f in factors if f.weighted_value() > 0))
            trends.appendleft(RiskTrend(timestamp=now, score=score, factors=contributing))

            assessment = RiskAssessment(
                device_id=metrics.device_id,
                overall_score=score,
                risk_level=level,
                factors=tuple(factors),
                trends=tuple(trends),
                predictions=tuple(self._predict(score, trends)),
                recommendations=tuple(recommendations_for(factors, level)),
                last_updated=now,
            )
            self._assessments[metrics.device_id] = assessment
            return assessment

    def _predict(self, score: float, trends: Sequence[RiskTrend]) -> List[RiskPrediction]:
        # Trends are stored newest first; the fit runs oldest to newest.
        recent = [trend.score for trend in list(trends)[:TREND_WINDOW]]
        trend_factor = trend_slope(recent[::-1]) * TREND_SCALE

        predictions: List[RiskPrediction] = []
        for timeframe, multiplier in TIMEFRAME_MULTIPLIERS.items():
            noise = self._rng.uniform(-self._jitter, self._jitter) if self._jitter else 0.0
            predicted = max(0.0, min(100.0, score * (1.0 + multiplier + trend_factor + noise)))
            factors = ["vulnerabilities", "threats", "configuration"]
            if timeframe in LONG_HORIZONS:
                factors.extend(["behavioral_changes", "environment_changes"])
            predictions.append(
                RiskPrediction(
                    timeframe=timeframe,
                    predicted_score=round(predicted, 2),
                    confidence=max(0.5, 1.0 - multiplier),
                    risk_factors=tuple(factors),
                )
            )
        return predictions

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------
    def get_risk_assessment(self, device_id: str) -> Optional[RiskAssessment]:
        with self._lock:
            return self._assessments.get(device_id)

    def get_all_risk_assessments(self) -> List[RiskAssessment]:
        with self._lock:
            return list(self._assessments.values())

    def get_high_risk_devices(self) -> List[RiskAssessment]:
        with self._lock:
            flagged = [item for item in self._assessments.values() if item.risk_level in {"high", "critical"}]
        return sorted(flagged, key=lambda item: item.overall_score, reverse=True)

    def get_trends(self, device_id: str) -> List[RiskTrend]:
        with self._lock:
            return list(self._trends.get(device_id, ()))

    def get_weights(self) -> Dict[str, float]:
        with self._lock:
            return dict(self._weights)

    # ------------------------------------------------------------------
    # Weight management
    # ------------------------------------------------------------------
    def update_risk_factor_weight(
        self,
        factor_id: str,
        weight: float,
        *,
        now: Optional[datetime] = None,
    ) -> Dict[str, float]:
        """Set one weight, rescale the others to keep the total at 1.0, then reassess."""

        if factor_id not in DEFAULT_RISK_WEIGHTS:
            raise InvalidConfiguration(f"Unknown risk factor {factor_id!r}")
        weight = float(weight)
        if math.isnan(weight) or not 0.0 <= weight <= 1.0:
            raise InvalidConfiguration(f"Weight for {factor_id} must be within [0, 1], got {weight}")

        with self._lock:
            others = {key: value for key, value in self._weights.items() if key != factor_id}
            remaining = sum(others.values())
            if remaining <= 0.0 and weight < 1.0:
                raise InvalidConfiguration(
                    f"Cannot rebalance weights around {factor_id}: every other weight is zero"
                )
            scale = (1.0 - weight) / remaining if remaining else 0.0
            updated = {key: value * scale for key, value in others.items()}
            updated[factor_id] = weight
            return self.update_risk_factor_weights(updated, now=now)

    def update_risk_factor_weights(
        self,
        weights: Mapping[str, float],
        *,
        now: Optional[datetime] = None,
    ) -> Dict[str, float]:
        validated = validate_weights(weights)
        with self._lock:
            self._weights = validated
            logger.info("Risk factor weights updated; reassessing %s devices", len(self._metrics))
            self.tick(now)
            return dict(self._weights)


__all__ = [
    "DEFAULT_RISK_WEIGHTS",
    "TIMEFRAME_MULTIPLIERS",
    "RiskAssessment",
    "RiskFactor",
    "RiskPrediction",
    "RiskScoringEngine",
    "RiskTrend",
    "compute_factors",
    "overall_score",
    "recommendations_for",
    "risk_level_for",
    "trend_slope",
    "validate_weights",
]
