"""Shared telemetry types consumed by the analytics engines."""
from __future__ import annotations

import math
import random
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Dict, Iterable, Mapping, Optional, Protocol, Sequence, Tuple

from .errors import MalformedSample


SEVERITY_LEVELS: Tuple[str, ...] = ("low", "medium", "high", "critical")
SEVERITY_WEIGHTS: Mapping[str, int] = MappingProxyType(
    {"low": 1, "medium": 2, "high": 3, "critical": 4}
)
FEATURE_CATEGORIES: Tuple[str, ...] = ("network", "process", "file", "user", "system")
THREAT_CATEGORIES: Tuple[str, ...] = (
    "malware",
    "network",
    "behavioral",
    "vulnerability",
    "phishing",
)


def utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


def ensure_aware(value: datetime) -> datetime:
    """Return ``value`` with UTC attached when it carries no timezone."""

    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def parse_timestamp(value: object) -> datetime:
    if isinstance(value, datetime):
        return ensure_aware(value)
    if isinstance(value, str) and value:
        return ensure_aware(datetime.fromisoformat(value.replace("Z", "+00:00")))
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(float(value), tz=timezone.utc)
    return utcnow()


def random_identifier(rng: random.Random) -> str:
    return f"{rng.getrandbits(128):032x}"


def random_device_id(rng: random.Random) -> str:
    alphabet = "ABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789"
    return "WS-" + "".join(rng.choice(alphabet) for _ in range(9))


def frozen_mapping(value: object) -> Mapping[str, object]:
    return MappingProxyType(dict(_ensure_mapping(value)))


@dataclass(frozen=True)
class FeatureSample:
    """Numeric feature vector observed for one signal category."""

    category: str
    features: Tuple[float, ...]
    device_id: Optional[str] = None
    timestamp: Optional[datetime] = None

    @classmethod
    def of(
        cls,
        category: str,
        features: Iterable[object],
        *,
        device_id: Optional[str] = None,
        timestamp: Optional[datetime] = None,
    ) -> "FeatureSample":
        """Build a sample, rejecting unknown categories and non-numeric values."""

        if category not in FEATURE_CATEGORIES:
            raise MalformedSample(f"Unknown feature category {category!r}")
        values = []
        for index, value in enumerate(features):
            try:
                number = float(value)  # type: ignore[arg-type]
            except (TypeError, ValueError):
                raise MalformedSample(
                    f"Feature {index} of {category} sample is not numeric: {value!r}"
                ) from None
            if not math.isfinite(number):
                raise MalformedSample(f"Feature {index} of {category} sample is not finite: {number!r}")
            values.append(number)
        return cls(category=category, features=tuple(values), device_id=device_id, timestamp=timestamp)


@dataclass(frozen=True)
class ThreatEvent:
    """Discrete security event fed into the correlation buffer."""

    id: str
    timestamp: datetime
    category: str
    severity: str
    confidence: float
    device_id: str
    user_id: Optional[str] = None
    process_name: Optional[str] = None
    source_ip: Optional[str] = None
    target_ip: Optional[str] = None
    file_name: Optional[str] = None
    file_hash: Optional[str] = None
    signature: Optional[str] = None
    metadata: Mapping[str, object] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "timestamp", ensure_aware(self.timestamp))
        object.__setattr__(self, "metadata", frozen_mapping(self.metadata))
        if self.severity not in SEVERITY_WEIGHTS:
            raise ValueError(f"Unknown severity {self.severity!r}")

    @classmethod
    def from_payload(cls, payload: Mapping[str, object]) -> "ThreatEvent":
        """Build a :class:`ThreatEvent` from camelCase or snake_case payloads."""

        def pick(*keys: str) -> object:
            for key in keys:
                value = payload.get(key)
                if value is not None:
                    return value
            return None

        def optional_text(*keys: str) -> Optional[str]:
            value = pick(*keys)
            return None if value is None else str(value)

        confidence_raw = pick("confidence")
        try:
            confidence = float(confidence_raw) if confidence_raw is not None else 0.5
        except (TypeError, ValueError):
            confidence = 0.5

        return cls(
            id=str(pick("id") or uuid.uuid4().hex),
            timestamp=parse_timestamp(pick("timestamp")),
            category=str(pick("category", "type") or "network").lower(),
            severity=str(pick("severity") or "low").lower(),
            confidence=max(0.0, min(1.0, confidence)),
            device_id=str(pick("device_id", "deviceId") or "unknown"),
            user_id=optional_text("user_id", "userId"),
            process_name=optional_text("process_name", "processName"),
            source_ip=optional_text("source_ip", "sourceIp"),
            target_ip=optional_text("target_ip", "targetIp"),
            file_name=optional_text("file_name", "fileName"),
            file_hash=optional_text("file_hash", "hash"),
            signature=optional_text("signature"),
            metadata=_ensure_mapping(payload.get("metadata")),
        )

    def to_payload(self) -> Dict[str, object]:
        return {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "category": self.category,
            "severity": self.severity,
            "confidence": self.confidence,
            "device_id": self.device_id,
            "user_id": self.user_id,
            "process_name": self.process_name,
            "source_ip": self.source_ip,
            "target_ip": self.target_ip,
            "file_name": self.file_name,
            "file_hash": self.file_hash,
            "signature": self.signature,
            "metadata": dict(self.metadata),
        }


@dataclass(frozen=True)
class DeviceMetrics:
    """Raw per-device measurements used by the risk scoring engine."""

    device_id: str
    vulnerability_count: int = 0
    patch_level: float = 100.0
    threat_events: int = 0
    behavioral_anomalies: int = 0
    network_exposure: float = 0.0
    configuration_score: float = 100.0
    user_risk_score: float = 0.0
    last_scan_date: Optional[datetime] = None

    @classmethod
    def from_payload(cls, payload: Mapping[str, object]) -> "DeviceMetrics":
        def number(default: float, *keys: str) -> float:
            for key in keys:
                value = payload.get(key)
                if value is None:
                    continue
                try:
                    return float(value)  # type: ignore[arg-type]
                except (TypeError, ValueError):
                    continue
            return default

        scan = payload.get("last_scan_date") or payload.get("lastScanDate")
        return cls(
            device_id=str(payload.get("device_id") or payload.get("deviceId") or "unknown"),
            vulnerability_count=int(number(0, "vulnerability_count", "vulnerabilityCount")),
            patch_level=number(100.0, "patch_level", "patchLevel"),
            threat_events=int(number(0, "threat_events", "threatEvents")),
            behavioral_anomalies=int(
                number(0, "behavioral_anomalies", "behavioralAnomalies", "anomalies")
            ),
            network_exposure=number(0.0, "network_exposure", "networkExposure"),
            configuration_score=number(100.0, "configuration_score", "configurationScore", "configScore"),
            user_risk_score=number(0.0, "user_risk_score", "userRiskScore", "userRisk"),
            last_scan_date=parse_timestamp(scan) if scan else None,
        )


class FeatureSource(Protocol):
    """Supplies one feature sample per category on each detector cycle."""

    def sample(self, category: str) -> FeatureSample:
        ...


class EventSource(Protocol):
    """Supplies discrete threat events."""

    def next_event(self, now: datetime) -> ThreatEvent:
        ...


class MetricsSource(Protocol):
    """Supplies the tracked device population and their current metrics."""

    def device_ids(self) -> Sequence[str]:
        ...

    def metrics(self, device_id: str, now: datetime) -> DeviceMetrics:
        ...


def _ensure_mapping(value: object) -> Mapping[str, object]:
    if isinstance(value, Mapping):
        return value
    if value is None:
        return {}
    if isinstance(value, list):
        # Accept legacy key/value list structures
        return {str(item[0]): item[1] for item in value if isinstance(item, Sequence) and len(item) == 2}
    return {}


__all__ = [
    "SEVERITY_LEVELS",
    "SEVERITY_WEIGHTS",
    "FEATURE_CATEGORIES",
    "THREAT_CATEGORIES",
    "FeatureSample",
    "ThreatEvent",
    "DeviceMetrics",
    "FeatureSource",
    "EventSource",
    "MetricsSource",
    "ensure_aware",
    "parse_timestamp",
    "random_device_id",
    "random_identifier",
    "utcnow",
]
