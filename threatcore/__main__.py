"""Run the analytics core on synthetic telemetry until interrupted."""
from __future__ import annotations

import asyncio
import logging

from .config import configure_logging, get_settings
from .engine import ThreatAnalyticsCore

logger = logging.getLogger("threatcore")


def main() -> None:
    settings = get_settings()
    configure_logging(settings.log_level)
    core = ThreatAnalyticsCore(settings=settings)
    try:
        asyncio.run(core.run())
    except KeyboardInterrupt:
        core.stop()
        logger.info("Interrupted; shutting down")


if __name__ == "__main__":
    main()
