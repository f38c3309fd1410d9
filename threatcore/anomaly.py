"""Rolling z-score anomaly detection per signal category."""
from __future__ import annotations

import logging
import math
import random
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from statistics import fmean, pstdev
from threading import RLock
from typing import Deque, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from .errors import InsufficientHistory, MalformedSample, ThreatCoreError
from .state import (
    FEATURE_CATEGORIES,
    SEVERITY_LEVELS,
    FeatureSample,
    FeatureSource,
    frozen_mapping,
    random_device_id,
    random_identifier,
    utcnow,
)

logger = logging.getLogger(__name__)

ANOMALY_THRESHOLD = 0.7
MIN_HISTORY = 10
MAX_HISTORY = 1000
MAX_ANOMALIES = 100
DEFAULT_ADMISSION_RATE = 0.2
# A 3 sigma deviation maps to a score of 1.0.
SIGMA_SCALE = 3.0

FEATURE_NAMES: Mapping[str, Tuple[str, ...]] = {
    "network": ("bytesPerSecond", "connectionsPerMinute", "uniqueDestinations", "failedConnections"),
    "process": ("cpuUsage", "memoryUsageMB", "fileOperations", "networkConnections"),
    "file": ("modificationsPerMinute", "executablesCreated", "systemFileAccesses", "registryMods"),
    "user": ("loginAttempts", "commandsExecuted", "privilegeEscalations", "failedAuth"),
    "system": ("systemLoad", "serviceRestarts", "configChanges", "errorEvents"),
}

DESCRIPTIONS: Mapping[str, Tuple[str, ...]] = {
    "network": (
        "Unusual network traffic pattern detected",
        "Abnormal connection behavior observed",
        "Suspicious data transfer volume",
    ),
    "process": (
        "Abnormal process execution pattern",
        "Unusual resource consumption detected",
        "Suspicious process behavior observed",
    ),
    "file": (
        "Unusual file system activity",
        "Abnormal file modification pattern",
        "Suspicious file access behavior",
    ),
    "user": (
        "Unusual user behavior pattern",
        "Abnormal authentication activity",
        "Suspicious privilege usage",
    ),
    "system": (
        "Abnormal system performance pattern",
        "Unusual system configuration changes",
        "Suspicious system event sequence",
    ),
}


@dataclass(frozen=True)
class Prediction:
    """Outcome of scoring one feature vector."""

    anomaly: bool
    confidence: float

    def as_dict(self) -> dict[str, object]:
        return {"anomaly": self.anomaly, "confidence": self.confidence}


@dataclass(frozen=True)
class AnomalyRecord:
    """Admitted anomaly surfaced to consumers."""

    id: str
    timestamp: datetime
    category: str
    severity: str
    confidence: float
    description: str
    features: Mapping[str, float]
    device_id: str
    metadata: Mapping[str, object] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "features", frozen_mapping(self.features))
        object.__setattr__(self, "metadata", frozen_mapping(self.metadata))

    def as_dict(self) -> dict[str, object]:
        metadata = dict(self.metadata)
        if "feature_vector" in metadata:
            metadata["feature_vector"] = list(metadata["feature_vector"])  # type: ignore[arg-type]
        return {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "category": self.category,
            "severity": self.severity,
            "confidence": self.confidence,
            "description": self.description,
            "features": dict(self.features),
            "device_id": self.device_id,
            "metadata": metadata,
        }


def severity_for_confidence(confidence: float) -> str:
    """Bucket ``confidence`` into four equal-width severity bands."""

    index = int(max(0.0, confidence) * len(SEVERITY_LEVELS))
    return SEVERITY_LEVELS[min(index, len(SEVERITY_LEVELS) - 1)]


class StatisticalModel:
    """Rolling window of feature vectors scored by per-feature z-score."""

    def __init__(
        self,
        *,
        threshold: float = ANOMALY_THRESHOLD,
        min_history: int = MIN_HISTORY,
        max_history: int = MAX_HISTORY,
    ) -> None:
        self._threshold = threshold
        self._min_history = min_history
        self._history: Deque[Tuple[float, ...]] = deque(maxlen=max_history)

    def __len__(self) -> int:
        return len(self._history)

    def statistics(self) -> Tuple[List[float], List[float]]:
        """Return per-feature means and population standard deviations.

        A feature's statistics only use the vectors that carry it, so
        shorter vectors in the window leave the missing positions out
        instead of counting them as zero.
        """

        if len(self._history) < self._min_history:
            raise InsufficientHistory(len(self._history), self._min_history)

        feature_count = max(len(row) for row in self._history)
        means: List[float] = []
        deviations: List[float] = []
        for index in range(feature_count):
            column = [row[index] for row in self._history if len(row) > index and math.isfinite(row[index])]
            if not column:
                means.append(0.0)
                deviations.append(0.0)
                continue
            means.append(fmean(column))
            deviations.append(pstdev(column) if len(column) > 1 else 0.0)
        return means, deviations

    def predict(self, features: Sequence[float]) -> Prediction:
        try:
            means, deviations = self.statistics()
        except InsufficientHistory:
            return Prediction(anomaly=False, confidence=0.5)

        score = 0.0
        for index, value in enumerate(features):
            if index >= len(means):
                break
            deviation = deviations[index]
            if deviation <= 0.0 or not math.isfinite(value):
                continue
            z_score = abs(value - means[index]) / deviation
            score = max(score, z_score / SIGMA_SCALE)

        confidence = max(0.0, min(1.0, score))
        return Prediction(anomaly=confidence > self._threshold, confidence=confidence)

    def retrain(self, vectors: Iterable[Sequence[float]]) -> None:
        """Append ``vectors`` to the window; vectors with non-finite values are dropped."""

        for vector in vectors:
            row = tuple(float(value) for value in vector)
            if all(math.isfinite(value) for value in row):
                self._history.append(row)
            else:
                logger.debug("Dropping non-finite feature vector from training window")


class AnomalyDetector:
    """Owns one :class:`StatisticalModel` per category and the admitted anomalies."""

    def __init__(
        self,
        *,
        source: Optional[FeatureSource] = None,
        rng: Optional[random.Random] = None,
        threshold: float = ANOMALY_THRESHOLD,
        min_history: int = MIN_HISTORY,
        max_history: int = MAX_HISTORY,
        max_records: int = MAX_ANOMALIES,
        admission_rate: float = DEFAULT_ADMISSION_RATE,
        categories: Sequence[str] = FEATURE_CATEGORIES,
    ) -> None:
        self._source = source
        self._rng = rng or random.Random()
        self._admission_rate = admission_rate
        self._models: Dict[str, StatisticalModel] = {
            category: StatisticalModel(
                threshold=threshold,
                min_history=min_history,
                max_history=max_history,
            )
            for category in categories
        }
        # Newest first; appendleft drops the oldest record from the right.
        self._records: Deque[AnomalyRecord] = deque(maxlen=max_records)
        self._lock = RLock()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    @property
    def categories(self) -> Tuple[str, ...]:
        return tuple(self._models)

    def predict(self, category: str, features: Sequence[float]) -> Prediction:
        with self._lock:
            return self._model_for(category).predict(features)

    def retrain(self, category: str, vectors: Iterable[Sequence[float]]) -> None:
        with self._lock:
            self._model_for(category).retrain(vectors)

    def history_size(self, category: str) -> int:
        with self._lock:
            return len(self._model_for(category))

    def observe(self, sample: FeatureSample, *, now: Optional[datetime] = None) -> Optional[AnomalyRecord]:
        """Score ``sample``, admit an anomaly record if warranted, then retrain."""

        with self._lock:
            model = self._model_for(sample.category)
            prediction = model.predict(sample.features)
            record = None
            if prediction.anomaly and self._admit():
                record = self._create_record(sample, prediction.confidence, now or sample.timestamp or utcnow())
                self._records.appendleft(record)
                logger.info(
                    "Anomaly detected in %s telemetry on %s (confidence %.2f, severity %s)",
                    record.category,
                    record.device_id,
                    record.confidence,
                    record.severity,
                )
            model.retrain([sample.features])
            return record

    def tick(self, now: Optional[datetime] = None) -> List[AnomalyRecord]:
        """Pull one sample per category from the source and observe it."""

        if self._source is None:
            return []
        now = now or utcnow()
        created: List[AnomalyRecord] = []
        for category in self._models:
            try:
                sample = self._source.sample(category)
                record = self.observe(sample, now=now)
            except (ThreatCoreError, TypeError, ValueError, ArithmeticError) as exc:
                logger.warning("Skipping %s sample: %s", category, exc)
                continue
            if record is not None:
                created.append(record)
        logger.debug("Anomaly cycle finished with %s new records", len(created))
        return created

    def get_anomalies(
        self,
        *,
        category: Optional[str] = None,
        severity: Optional[str] = None,
    ) -> List[AnomalyRecord]:
        with self._lock:
            return [
                record
                for record in self._records
                if (category is None or record.category == category)
                and (severity is None or record.severity == severity)
            ]

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _model_for(self, category: str) -> StatisticalModel:
        try:
            return self._models[category]
        except KeyError:
            raise MalformedSample(f"Unknown feature category {category!r}") from None

    def _admit(self) -> bool:
        return self._rng.random() < self._admission_rate

    def _create_record(self, sample: FeatureSample, confidence: float, now: datetime) -> AnomalyRecord:
        severity = severity_for_confidence(confidence)
        names = FEATURE_NAMES.get(sample.category, FEATURE_NAMES["system"])
        descriptions = DESCRIPTIONS.get(sample.category, DESCRIPTIONS["system"])
        return AnomalyRecord(
            id=random_identifier(self._rng),
            timestamp=now,
            category=sample.category,
            severity=severity,
            confidence=confidence,
            description=self._rng.choice(descriptions),
            features={name: round(value, 2) for name, value in zip(names, sample.features)},
            device_id=sample.device_id or random_device_id(self._rng),
            metadata={
                "detection_method": "ML_Statistical",
                "feature_vector": tuple(sample.features),
            },
        )


__all__ = [
    "ANOMALY_THRESHOLD",
    "FEATURE_NAMES",
    "AnomalyDetector",
    "AnomalyRecord",
    "Prediction",
    "StatisticalModel",
    "severity_for_confidence",
]
