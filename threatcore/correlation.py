"""Sliding-window correlation of discrete threat events."""
from __future__ import annotations

import dataclasses
import logging
import random
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timedelta
from threading import RLock
from typing import Deque, FrozenSet, Iterable, List, Mapping, Optional, Sequence, Tuple

from .conditions import Condition, condition_from_payload
from .errors import InvalidConfiguration, ThreatCoreError
from .state import SEVERITY_WEIGHTS, ThreatEvent, ensure_aware, random_identifier, utcnow

logger = logging.getLogger(__name__)

MAX_EVENTS = 1000
MAX_CORRELATIONS = 50
TEMPORAL_SPAN = timedelta(seconds=60)

CORRELATION_TYPES: Tuple[str, ...] = ("temporal", "spatial", "causal", "behavioral")
CORRELATION_STATUSES: Tuple[str, ...] = ("active", "investigating", "resolved", "false_positive")

GENERIC_RECOMMENDATIONS: Tuple[str, ...] = (
    "Investigate affected endpoints immediately",
    "Review network traffic logs for suspicious activity",
    "Check for indicators of compromise (IOCs)",
    "Consider isolating affected devices",
    "Verify user access patterns and permissions",
)


@dataclass(frozen=True)
class CorrelationRule:
    """Declarative condition set evaluated over a sliding time window."""

    id: str
    name: str
    conditions: Tuple[Condition, ...]
    time_window: int
    threshold: int
    severity: str
    description: str = ""
    enabled: bool = True
    recommendations: Tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if not self.id:
            raise InvalidConfiguration("Correlation rule needs an id")
        conditions = tuple(condition_from_payload(item) for item in self.conditions)
        object.__setattr__(self, "conditions", conditions)
        object.__setattr__(self, "recommendations", tuple(self.recommendations))
        if not isinstance(self.enabled, bool):
            raise InvalidConfiguration(f"Rule {self.id} needs a boolean enabled flag, got {self.enabled!r}")
        if self.severity not in SEVERITY_WEIGHTS:
            raise InvalidConfiguration(f"Rule {self.id} has unknown severity {self.severity!r}")
        if int(self.time_window) <= 0:
            raise InvalidConfiguration(f"Rule {self.id} needs a positive time window")
        if int(self.threshold) < 1:
            raise InvalidConfiguration(f"Rule {self.id} needs a threshold of at least 1")
        object.__setattr__(self, "time_window", int(self.time_window))
        object.__setattr__(self, "threshold", int(self.threshold))

    @classmethod
    def from_payload(cls, payload: Mapping[str, object]) -> "CorrelationRule":
        try:
            return cls(
                id=str(payload["id"]),
                name=str(payload.get("name") or payload["id"]),
                description=str(payload.get("description") or ""),
                conditions=tuple(payload.get("conditions") or ()),  # type: ignore[arg-type]
                time_window=int(payload.get("time_window") or payload.get("timeWindow") or 0),  # type: ignore[arg-type]
                threshold=int(payload.get("threshold") or 0),  # type: ignore[arg-type]
                severity=str(payload.get("severity") or ""),
                enabled=payload.get("enabled", True),  # type: ignore[arg-type]
                recommendations=tuple(payload.get("recommendations") or ()),  # type: ignore[arg-type]
            )
        except KeyError as exc:
            raise InvalidConfiguration(f"Correlation rule is missing {exc.args[0]!r}") from None
        except InvalidConfiguration:
            raise
        except (TypeError, ValueError) as exc:
            raise InvalidConfiguration(f"Invalid correlation rule: {exc}") from exc

    def matches(self, event: ThreatEvent) -> bool:
        return all(condition.matches(event) for condition in self.conditions)

    def as_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "conditions": [condition.as_dict() for condition in self.conditions],
            "time_window": self.time_window,
            "threshold": self.threshold,
            "severity": self.severity,
            "enabled": self.enabled,
            "recommendations": list(self.recommendations),
        }


@dataclass(frozen=True)
class ThreatCorrelation:
    """Finding produced when a rule's threshold is met."""

    id: str
    rule_id: str
    events: Tuple[ThreatEvent, ...]
    correlation_type: str
    confidence: float
    risk_score: float
    description: str
    recommendations: Tuple[str, ...]
    created_at: datetime
    status: str = "active"

    def event_ids(self) -> FrozenSet[str]:
        return frozenset(event.id for event in self.events)

    def device_ids(self) -> FrozenSet[str]:
        return frozenset(event.device_id for event in self.events)

    def as_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "rule_id": self.rule_id,
            "events": [event.to_payload() for event in self.events],
            "correlation_type": self.correlation_type,
            "confidence": self.confidence,
            "risk_score": self.risk_score,
            "description": self.description,
            "recommendations": list(self.recommendations),
            "created_at": self.created_at.isoformat(),
            "status": self.status,
        }


def default_rules() -> List[CorrelationRule]:
    """Return the rule set installed at startup."""

    return [
        CorrelationRule.from_payload(
            {
                "id": "lateral_movement",
                "name": "Lateral Movement Detection",
                "description": "Detects potential lateral movement patterns",
                "conditions": [
                    {"field": "category", "operator": "equals", "value": "network"},
                    {"field": "confidence", "operator": "greater_than", "value": 0.7},
                ],
                "time_window": 300,
                "threshold": 3,
                "severity": "high",
                "recommendations": [
                    "Monitor for additional lateral movement attempts",
                    "Review network segmentation policies",
                ],
            }
        ),
        CorrelationRule.from_payload(
            {
                "id": "coordinated_attack",
                "name": "Coordinated Attack Pattern",
                "description": "Identifies coordinated attacks across multiple endpoints",
                "conditions": [
                    {"field": "severity", "operator": "in_range", "value": ["medium", "high", "critical"]},
                ],
                "time_window": 600,
                "threshold": 5,
                "severity": "critical",
                "recommendations": [
                    "Activate incident response procedures",
                    "Consider threat hunting activities",
                ],
            }
        ),
        CorrelationRule.from_payload(
            {
                "id": "privilege_escalation_chain",
                "name": "Privilege Escalation Chain",
                "description": "Detects chains of privilege escalation attempts",
                "conditions": [
                    {"field": "category", "operator": "equals", "value": "behavioral"},
                    {"field": "metadata.action", "operator": "contains", "value": "privilege"},
                ],
                "time_window": 180,
                "threshold": 2,
                "severity": "high",
            }
        ),
    ]


def correlation_type_for(events: Sequence[ThreatEvent]) -> str:
    if len({event.device_id for event in events}) > 1:
        return "spatial"
    timestamps = [event.timestamp for event in events]
    if max(timestamps) - min(timestamps) < TEMPORAL_SPAN:
        return "temporal"
    if any(event.category == "behavioral" for event in events):
        return "behavioral"
    return "causal"


def correlation_confidence(events: Sequence[ThreatEvent]) -> float:
    average = sum(event.confidence for event in events) / len(events)
    count_bonus = min(len(events) / 10.0, 0.3)
    return min(average + count_bonus, 1.0)


def correlation_risk_score(events: Sequence[ThreatEvent], rule: CorrelationRule) -> float:
    event_score = sum(SEVERITY_WEIGHTS[event.severity] for event in events)
    return min(event_score * SEVERITY_WEIGHTS[rule.severity] / 10.0, 10.0)


class CorrelationEngine:
    """Buffers threat events and sweeps the rule set over sliding windows."""

    def __init__(
        self,
        *,
        rules: Optional[Iterable[CorrelationRule]] = None,
        rng: Optional[random.Random] = None,
        max_events: int = MAX_EVENTS,
        max_correlations: int = MAX_CORRELATIONS,
    ) -> None:
        self._rng = rng or random.Random()
        self._rules: List[CorrelationRule] = []
        self._events: Deque[ThreatEvent] = deque(maxlen=max_events)
        self._correlations: Deque[ThreatCorrelation] = deque(maxlen=max_correlations)
        self._lock = RLock()
        for rule in default_rules() if rules is None else rules:
            self.add_rule(rule)

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------
    def add_event(self, event: ThreatEvent) -> None:
        with self._lock:
            self._events.appendleft(event)
        logger.debug("Buffered %s threat event %s from %s", event.severity, event.id, event.device_id)

    def get_events(self) -> List[ThreatEvent]:
        with self._lock:
            return list(self._events)

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------
    def tick(self, now: Optional[datetime] = None) -> List[ThreatCorrelation]:
        """Evaluate every enabled rule once; return the correlations created."""

        now = ensure_aware(now) if now else utcnow()
        created: List[ThreatCorrelation] = []
        with self._lock:
            for rule in list(self._rules):
                if not rule.enabled:
                    continue
                try:
                    correlation = self._evaluate_rule(rule, now)
                except (ThreatCoreError, TypeError, ValueError) as exc:
                    logger.warning("Correlation rule %s failed: %s", rule.id, exc)
                    continue
                if correlation is not None:
                    created.append(correlation)
        logger.debug("Correlation sweep finished with %s new correlations", len(created))
        return created

    def _evaluate_rule(self, rule: CorrelationRule, now: datetime) -> Optional[ThreatCorrelation]:
        window_start = now - timedelta(seconds=rule.time_window)
        matching = [
            event
            for event in self._events
            if window_start <= event.timestamp <= now and rule.matches(event)
        ]
        if len(matching) < rule.threshold:
            return None

        candidate_ids = {event.id for event in matching}
        for existing in self._correlations:
            if existing.status == "active" and not existing.event_ids().isdisjoint(candidate_ids):
                return None

        correlation = ThreatCorrelation(
            id=random_identifier(self._rng),
            rule_id=rule.id,
            events=tuple(matching),
            correlation_type=correlation_type_for(matching),
            confidence=correlation_confidence(matching),
            risk_score=correlation_risk_score(matching, rule),
            description=self._describe(rule, matching),
            recommendations=GENERIC_RECOMMENDATIONS + rule.recommendations,
            created_at=now,
        )
        self._correlations.appendleft(correlation)
        logger.info(
            "Rule %s correlated %s events (%s, risk %.1f)",
            rule.id,
            len(matching),
            correlation.correlation_type,
            correlation.risk_score,
        )
        return correlation

    def _describe(self, rule: CorrelationRule, events: Sequence[ThreatEvent]) -> str:
        devices = len({event.device_id for event in events})
        return (
            f"{rule.name}: {len(events)} related events detected across {devices} device(s). "
            f"Primary threat type: {events[0].category}."
        )

    # ------------------------------------------------------------------
    # Correlations
    # ------------------------------------------------------------------
    def get_correlations(self) -> List[ThreatCorrelation]:
        with self._lock:
            return list(self._correlations)

    def get_active_correlations(self) -> List[ThreatCorrelation]:
        with self._lock:
            return [item for item in self._correlations if item.status == "active"]

    def get_correlation(self, correlation_id: str) -> Optional[ThreatCorrelation]:
        with self._lock:
            for item in self._correlations:
                if item.id == correlation_id:
                    return item
        return None

    def update_correlation_status(self, correlation_id: str, status: str) -> ThreatCorrelation:
        if status not in CORRELATION_STATUSES:
            raise InvalidConfiguration(f"Unknown correlation status {status!r}")
        with self._lock:
            for index, item in enumerate(self._correlations):
                if item.id == correlation_id:
                    updated = dataclasses.replace(item, status=status)
                    self._correlations[index] = updated
                    logger.info("Correlation %s moved from %s to %s", correlation_id, item.status, status)
                    return updated
        raise KeyError(f"Unknown correlation {correlation_id}")

    # ------------------------------------------------------------------
    # Rules
    # ------------------------------------------------------------------
    def get_rules(self) -> List[CorrelationRule]:
        with self._lock:
            return list(self._rules)

    def get_rule(self, rule_id: str) -> Optional[CorrelationRule]:
        with self._lock:
            for rule in self._rules:
                if rule.id == rule_id:
                    return rule
        return None

    def add_rule(self, rule: CorrelationRule | Mapping[str, object]) -> CorrelationRule:
        if not isinstance(rule, CorrelationRule):
            rule = CorrelationRule.from_payload(rule)
        with self._lock:
            if any(existing.id == rule.id for existing in self._rules):
                raise InvalidConfiguration(f"Correlation rule {rule.id} already exists")
            self._rules.append(rule)
        return rule

    def update_rule(self, rule_id: str, **changes: object) -> CorrelationRule:
        """Replace fields of rule ``rule_id``; the result is validated before it is stored."""

        if "id" in changes:
            raise InvalidConfiguration("The id of a correlation rule cannot change")
        if "timeWindow" in changes:
            changes["time_window"] = changes.pop("timeWindow")
        allowed = {item.name for item in dataclasses.fields(CorrelationRule)}
        unknown = set(changes) - allowed
        if unknown:
            raise InvalidConfiguration(f"Unknown rule fields: {', '.join(sorted(unknown))}")
        with self._lock:
            for index, rule in enumerate(self._rules):
                if rule.id == rule_id:
                    try:
                        updated = dataclasses.replace(rule, **changes)
                    except InvalidConfiguration:
                        raise
                    except (TypeError, ValueError) as exc:
                        raise InvalidConfiguration(f"Invalid update for rule {rule_id}: {exc}") from exc
                    self._rules[index] = updated
                    return updated
        raise KeyError(f"Unknown correlation rule {rule_id}")


__all__ = [
    "CORRELATION_STATUSES",
    "CORRELATION_TYPES",
    "CorrelationEngine",
    "CorrelationRule",
    "ThreatCorrelation",
    "correlation_confidence",
    "correlation_risk_score",
    "correlation_type_for",
    "default_rules",
]
