"""Indicator-of-compromise feed used to enrich threat events."""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import time
from dataclasses import dataclass
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

import httpx

from .state import ThreatEvent

logger = logging.getLogger(__name__)

INDICATOR_TYPES = ("hash", "ip", "domain")

_LEGACY_FEED_KEYS = {
    "malwareHashes": ("hash", "Known malware hash"),
    "suspiciousIPs": ("ip", "Suspicious IP address"),
    "maliciousDomains": ("domain", "Malicious domain"),
}


@dataclass(frozen=True)
class Indicator:
    """Threat intelligence indicator used for event enrichment."""

    type: str
    value: str
    label: str
    source: str
    severity: str = "medium"
    confidence: Optional[float] = None

    def matches(self, event: ThreatEvent) -> bool:
        """Return ``True`` if the indicator applies to ``event``."""

        if self.type == "hash":
            return bool(event.file_hash) and event.file_hash.lower() == self.value.lower()  # type: ignore[union-attr]
        if self.type == "ip":
            return self.value in {event.source_ip, event.target_ip}
        if self.type == "domain":
            domain = event.metadata.get("domain")
            return isinstance(domain, str) and domain.lower() == self.value.lower()
        return False

    def describe(self) -> str:
        confidence = f" (confidence {self.confidence:.0f}%)" if self.confidence is not None else ""
        return f"{self.label}: {self.value} via {self.source}{confidence}"

    def as_dict(self) -> Dict[str, object]:
        return dataclasses.asdict(self)


def default_indicators() -> List[Indicator]:
    """Return the static mock feed bundled with the dashboard."""

    hashes = (
        "a1b2c3d4e5f6789012345678901234567890abcd",
        "e5f6789012345678901234567890abcda1b2c3d4",
        "789012345678901234567890abcda1b2c3d4e5f6",
    )
    ips = ("192.168.1.100", "10.0.0.45", "172.16.0.99")
    domains = ("malicious-site.example.com", "phishing-domain.net", "suspicious-url.org")

    indicators = [
        Indicator(type="hash", value=value, label="Known malware hash", source="VirusTotal", severity="high", confidence=95)
        for value in hashes
    ]
    indicators.extend(
        Indicator(type="ip", value=value, label="C2 server communication", source="Internal Analysis", confidence=87)
        for value in ips
    )
    indicators.extend(
        Indicator(type="domain", value=value, label="Malicious domain", source="Internal Analysis")
        for value in domains
    )
    return indicators


def parse_indicators(payload: object, *, source: str = "feed") -> List[Indicator]:
    """Parse either a list of indicator objects or the legacy grouped feed layout."""

    indicators: List[Indicator] = []
    if isinstance(payload, Mapping):
        for key, (indicator_type, label) in _LEGACY_FEED_KEYS.items():
            for value in payload.get(key) or ():
                indicators.append(Indicator(type=indicator_type, value=str(value), label=label, source=source))
        return indicators

    if not isinstance(payload, Sequence) or isinstance(payload, (str, bytes)):
        raise ValueError("Indicator feed must be a JSON list or object")
    for item in payload:
        if not isinstance(item, Mapping) or not item.get("value"):
            continue
        indicator_type = str(item.get("type") or "ip").lower()
        if indicator_type not in INDICATOR_TYPES:
            logger.debug("Ignoring indicator of unsupported type %s", indicator_type)
            continue
        confidence = item.get("confidence")
        if confidence is not None:
            try:
                confidence = float(confidence)
            except (TypeError, ValueError):
                logger.debug("Ignoring indicator %s with unusable confidence %r", item["value"], confidence)
                continue
        indicators.append(
            Indicator(
                type=indicator_type,
                value=str(item["value"]).strip(),
                label=str(item.get("label") or "Feed indicator"),
                source=str(item.get("source") or source),
                severity=str(item.get("severity") or "medium"),
                confidence=confidence,
            )
        )
    return indicators


class IndicatorFeed:
    """Holds bundled indicators plus those pulled from an optional HTTP JSON feed.

    Bundled indicators (constructor and :meth:`add`) are kept for the life of
    the feed. Feed indicators are replaced wholesale on every successful
    refresh, so entries withdrawn upstream stop matching.
    """

    def __init__(
        self,
        indicators: Iterable[Indicator] = (),
        *,
        url: Optional[str] = None,
        cache_ttl: int = 900,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._bundled: Dict[Tuple[str, str, str], Indicator] = {}
        self._fetched: Dict[Tuple[str, str, str], Indicator] = {}
        self._url = url
        self._cache_ttl = cache_ttl
        self._transport = transport
        self._refreshed_at = 0.0
        self._lock = asyncio.Lock()
        self.add(indicators)

    def add(self, indicators: Iterable[Indicator]) -> None:
        self._bundled.update(_deduplicate(indicators))

    def indicators(self) -> List[Indicator]:
        return list(self._merged().values())

    def check_hash(self, value: str) -> bool:
        return self._contains("hash", value)

    def check_ip(self, value: str) -> bool:
        return self._contains("ip", value)

    def check_domain(self, value: str) -> bool:
        return self._contains("domain", value)

    def match(self, event: ThreatEvent) -> List[Indicator]:
        return [indicator for indicator in self._merged().values() if indicator.matches(event)]

    def enrich(self, event: ThreatEvent) -> ThreatEvent:
        """Return ``event`` with ``metadata.ioc_matches`` when any indicator applies."""

        matches = self.match(event)
        if not matches:
            return event
        descriptions = list(dict.fromkeys(indicator.describe() for indicator in matches))
        logger.info("Event %s matched %s indicators", event.id, len(descriptions))
        metadata = dict(event.metadata)
        metadata["ioc_matches"] = descriptions
        return dataclasses.replace(event, metadata=metadata)

    async def refresh(self, *, force: bool = False) -> int:
        """Pull the remote feed if the cache expired; return the indicator count.

        Failures are logged and leave the current indicators in place.
        """

        if self._url is None:
            return len(self._merged())
        now = time.time()
        if not force and self._refreshed_at and now - self._refreshed_at < self._cache_ttl:
            return len(self._merged())

        async with self._lock:
            if not force and self._refreshed_at and now - self._refreshed_at < self._cache_ttl:
                return len(self._merged())
            try:
                async with httpx.AsyncClient(timeout=30, transport=self._transport) as client:
                    response = await client.get(self._url)
                    response.raise_for_status()
                    fetched = parse_indicators(response.json(), source=self._url)
            except httpx.HTTPError as exc:
                logger.warning("Indicator feed %s failed: %s", self._url, exc)
                return len(self._merged())
            except ValueError as exc:
                logger.warning("Indicator feed %s returned an unusable payload: %s", self._url, exc)
                return len(self._merged())
            except Exception:
                logger.exception("Unexpected error while refreshing indicator feed %s", self._url)
                return len(self._merged())
            self._fetched = _deduplicate(fetched)
            self._refreshed_at = now
            logger.debug("Fetched %s indicators from %s", len(self._fetched), self._url)
            return len(self._merged())

    def _merged(self) -> Dict[Tuple[str, str, str], Indicator]:
        return {**self._bundled, **self._fetched}

    def _contains(self, indicator_type: str, value: str) -> bool:
        lowered = value.lower()
        return any(
            indicator.type == indicator_type and indicator.value.lower() == lowered
            for indicator in self._merged().values()
        )


def _deduplicate(indicators: Iterable[Indicator]) -> Dict[Tuple[str, str, str], Indicator]:
    # Deduplicate by type/value/source
    return {(item.type, item.value.lower(), item.source): item for item in indicators}


__all__ = [
    "Indicator",
    "IndicatorFeed",
    "default_indicators",
    "parse_indicators",
]
