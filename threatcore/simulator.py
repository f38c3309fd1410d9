"""Seedable synthetic telemetry for demos and local runs."""
from __future__ import annotations

import random
from datetime import datetime, timedelta
from typing import Mapping, Optional, Sequence, Tuple

from .state import (
    SEVERITY_LEVELS,
    THREAT_CATEGORIES,
    DeviceMetrics,
    FeatureSample,
    ThreatEvent,
    random_device_id,
    random_identifier,
    utcnow,
)

# Upper bound of each feature, in the order of anomaly.FEATURE_NAMES.
FEATURE_RANGES: Mapping[str, Tuple[float, ...]] = {
    "network": (1000.0, 100.0, 50.0, 10.0),
    "process": (100.0, 1000.0, 50.0, 20.0),
    "file": (100.0, 10.0, 50.0, 5.0),
    "user": (10.0, 100.0, 20.0, 5.0),
    "system": (100.0, 10.0, 5.0, 3.0),
}

DEVICE_IDS: Tuple[str, ...] = (
    "WS-FINANCE-01",
    "WS-FINANCE-02",
    "WS-HR-01",
    "WS-IT-01",
    "WS-MARKETING-01",
    "SRV-DATABASE-01",
    "SRV-WEB-01",
    "SRV-EMAIL-01",
    "WS-EXEC-01",
    "WS-GUEST-01",
)

PROCESS_NAMES: Tuple[str, ...] = ("chrome.exe", "notepad.exe", "powershell.exe", "cmd.exe")


class SyntheticTelemetry:
    """Implements the feature, event and metrics source protocols with random data."""

    def __init__(
        self,
        *,
        rng: Optional[random.Random] = None,
        devices: Sequence[str] = DEVICE_IDS,
    ) -> None:
        self._rng = rng or random.Random()
        self._devices = tuple(devices)

    def sample(self, category: str) -> FeatureSample:
        ranges = FEATURE_RANGES.get(category, (1.0, 1.0, 1.0, 1.0))
        return FeatureSample.of(
            category,
            (self._rng.random() * upper for upper in ranges),
            device_id=random_device_id(self._rng),
        )

    def next_event(self, now: datetime) -> ThreatEvent:
        rng = self._rng
        return ThreatEvent(
            id=random_identifier(rng),
            timestamp=now,
            category=rng.choice(THREAT_CATEGORIES),
            severity=rng.choice(SEVERITY_LEVELS),
            confidence=rng.random(),
            device_id=random_device_id(rng),
            user_id=f"user{rng.randrange(100)}",
            process_name=rng.choice(PROCESS_NAMES),
            source_ip=f"192.168.1.{rng.randrange(255)}",
            target_ip=f"10.0.0.{rng.randrange(255)}",
            metadata={
                "action": "privilege_escalation" if rng.random() > 0.5 else "file_access",
                "protocol": "HTTP" if rng.random() > 0.5 else "HTTPS",
                "port": rng.randrange(65535),
            },
        )

    def device_ids(self) -> Sequence[str]:
        return self._devices

    def metrics(self, device_id: str, now: Optional[datetime] = None) -> DeviceMetrics:
        rng = self._rng
        now = now or utcnow()
        is_server = device_id.startswith("SRV-")
        is_exec = "EXEC" in device_id
        is_guest = "GUEST" in device_id
        return DeviceMetrics(
            device_id=device_id,
            vulnerability_count=rng.randrange(20 if is_server else 10) + (5 if is_guest else 0),
            patch_level=rng.random() * 100.0,
            threat_events=rng.randrange(50 if is_server else 20),
            behavioral_anomalies=rng.randrange(10) + (3 if is_exec else 0),
            network_exposure=rng.random() * (100.0 if is_server else 50.0),
            configuration_score=rng.random() * 100.0,
            user_risk_score=rng.random() * (80.0 if is_exec else 60.0 if is_guest else 40.0),
            last_scan_date=now - timedelta(seconds=rng.random() * 7 * 24 * 3600),
        )


__all__ = ["DEVICE_IDS", "FEATURE_RANGES", "SyntheticTelemetry"]
