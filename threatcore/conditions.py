"""Typed rule conditions evaluated against threat events."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Mapping, Optional, Tuple, Type

from .errors import InvalidConfiguration
from .state import ThreatEvent


EVENT_FIELDS: Tuple[str, ...] = (
    "id",
    "category",
    "severity",
    "confidence",
    "device_id",
    "user_id",
    "process_name",
    "source_ip",
    "target_ip",
    "file_name",
    "file_hash",
    "signature",
)

_FIELD_ALIASES = {
    "type": "category",
    "deviceId": "device_id",
    "userId": "user_id",
    "processName": "process_name",
    "sourceIp": "source_ip",
    "targetIp": "target_ip",
    "fileName": "file_name",
    "hash": "file_hash",
}


@dataclass(frozen=True)
class FieldPath:
    """Validated reference to an event attribute or a ``metadata.<key>`` entry."""

    name: str
    metadata_key: Optional[str] = None

    @classmethod
    def parse(cls, text: str) -> "FieldPath":
        text = str(text).strip()
        if text.startswith("metadata."):
            key = text[len("metadata."):]
            if not key or "." in key:
                raise InvalidConfiguration(f"Unsupported metadata field {text!r}")
            return cls(name="metadata", metadata_key=key)
        name = _FIELD_ALIASES.get(text, text)
        if name not in EVENT_FIELDS:
            raise InvalidConfiguration(f"Unknown event field {text!r}")
        return cls(name=name)

    def resolve(self, event: ThreatEvent) -> object:
        if self.metadata_key is not None:
            return event.metadata.get(self.metadata_key)
        return getattr(event, self.name)

    def __str__(self) -> str:
        if self.metadata_key is not None:
            return f"metadata.{self.metadata_key}"
        return self.name


@dataclass(frozen=True)
class Condition:
    """Base class for one field-level predicate of a correlation rule."""

    field: FieldPath
    value: object

    operator = ""

    def matches(self, event: ThreatEvent) -> bool:
        return self._test(self.field.resolve(event))

    def _test(self, actual: object) -> bool:  # pragma: no cover - interface
        raise NotImplementedError

    def as_dict(self) -> Dict[str, object]:
        value = list(self.value) if isinstance(self.value, tuple) else self.value
        return {"field": str(self.field), "operator": self.operator, "value": value}


@dataclass(frozen=True)
class Equals(Condition):
    operator = "equals"

    def _test(self, actual: object) -> bool:
        return actual == self.value


@dataclass(frozen=True)
class Contains(Condition):
    """Case-insensitive substring match."""

    operator = "contains"

    def _test(self, actual: object) -> bool:
        if actual is None:
            return False
        return str(self.value).lower() in str(actual).lower()


@dataclass(frozen=True)
class GreaterThan(Condition):
    operator = "greater_than"

    def _test(self, actual: object) -> bool:
        number = _as_number(actual)
        return number is not None and number > float(self.value)  # type: ignore[arg-type]


@dataclass(frozen=True)
class LessThan(Condition):
    operator = "less_than"

    def _test(self, actual: object) -> bool:
        number = _as_number(actual)
        return number is not None and number < float(self.value)  # type: ignore[arg-type]


@dataclass(frozen=True)
class InRange(Condition):
    """Membership in a fixed list of accepted values."""

    operator = "in_range"

    def _test(self, actual: object) -> bool:
        return actual in self.value  # type: ignore[operator]


CONDITION_TYPES: Mapping[str, Type[Condition]] = {
    cls.operator: cls for cls in (Equals, Contains, GreaterThan, LessThan, InRange)
}


def build_condition(field: str, operator: str, value: object) -> Condition:
    """Validate and construct the condition variant for ``operator``."""

    condition_cls = CONDITION_TYPES.get(str(operator))
    if condition_cls is None:
        raise InvalidConfiguration(f"Unknown condition operator {operator!r}")
    path = FieldPath.parse(field)

    if condition_cls in (GreaterThan, LessThan):
        if _as_number(value) is None:
            raise InvalidConfiguration(f"{operator} on {field} needs a numeric value, got {value!r}")
        value = float(value)  # type: ignore[arg-type]
    elif condition_cls is InRange:
        if isinstance(value, (str, bytes)) or not isinstance(value, (list, tuple, set, frozenset)):
            raise InvalidConfiguration(f"in_range on {field} needs a list of values, got {value!r}")
        value = tuple(value)
    return condition_cls(field=path, value=value)


def condition_from_payload(payload: Mapping[str, object] | Condition) -> Condition:
    if isinstance(payload, Condition):
        return payload
    if not isinstance(payload, Mapping):
        raise InvalidConfiguration(f"Condition must be a mapping, got {type(payload).__name__}")
    try:
        return build_condition(
            str(payload["field"]),
            str(payload["operator"]),
            payload.get("value"),
        )
    except KeyError as exc:
        raise InvalidConfiguration(f"Condition is missing {exc.args[0]!r}") from None


def _as_number(value: object) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return None


__all__ = [
    "CONDITION_TYPES",
    "EVENT_FIELDS",
    "Condition",
    "Contains",
    "Equals",
    "FieldPath",
    "GreaterThan",
    "InRange",
    "LessThan",
    "build_condition",
    "condition_from_payload",
]
