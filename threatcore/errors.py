"""Error taxonomy for the threat analytics core."""
from __future__ import annotations


class ThreatCoreError(Exception):
    """Base class for errors raised by the analytics engines."""


class InsufficientHistory(ThreatCoreError):
    """Raised when a statistical model has too few samples to score."""

    def __init__(self, available: int, required: int) -> None:
        super().__init__(f"{available} samples available, {required} required")
        self.available = available
        self.required = required


class InvalidConfiguration(ThreatCoreError, ValueError):
    """Raised when rules, conditions or risk weights are rejected."""


class MalformedSample(ThreatCoreError, ValueError):
    """Raised when a feature sample cannot be interpreted at all."""


__all__ = [
    "ThreatCoreError",
    "InsufficientHistory",
    "InvalidConfiguration",
    "MalformedSample",
]
