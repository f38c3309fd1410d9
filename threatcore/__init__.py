"""Threat-signal analytics core exports."""

from .anomaly import AnomalyDetector, AnomalyRecord, Prediction, StatisticalModel
from .conditions import Condition, build_condition
from .correlation import CorrelationEngine, CorrelationRule, ThreatCorrelation, default_rules
from .engine import CycleReport, ThreatAnalyticsCore
from .errors import InsufficientHistory, InvalidConfiguration, MalformedSample, ThreatCoreError
from .intel import Indicator, IndicatorFeed, default_indicators
from .risk import (
    DEFAULT_RISK_WEIGHTS,
    RiskAssessment,
    RiskFactor,
    RiskPrediction,
    RiskScoringEngine,
    RiskTrend,
)
from .scheduler import CycleScheduler
from .simulator import SyntheticTelemetry
from .state import DeviceMetrics, FeatureSample, ThreatEvent

__all__ = [
    "AnomalyDetector",
    "AnomalyRecord",
    "Condition",
    "CorrelationEngine",
    "CorrelationRule",
    "CycleReport",
    "CycleScheduler",
    "DEFAULT_RISK_WEIGHTS",
    "DeviceMetrics",
    "FeatureSample",
    "Indicator",
    "IndicatorFeed",
    "InsufficientHistory",
    "InvalidConfiguration",
    "MalformedSample",
    "Prediction",
    "RiskAssessment",
    "RiskFactor",
    "RiskPrediction",
    "RiskScoringEngine",
    "RiskTrend",
    "StatisticalModel",
    "SyntheticTelemetry",
    "ThreatAnalyticsCore",
    "ThreatCoreError",
    "ThreatCorrelation",
    "ThreatEvent",
    "build_condition",
    "default_indicators",
    "default_rules",
]
