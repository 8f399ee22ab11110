from __future__ import annotations

import logging

from relaybot.core.config import settings

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(level: str | None = None) -> None:
    """Root logging setup for scripts and services embedding the orchestrator."""
    logging.basicConfig(
        level=(level or settings.LOG_LEVEL).upper(),
        format=LOG_FORMAT,
    )
    # urllib3 is chatty at DEBUG with one line per connection
    logging.getLogger("urllib3").setLevel(logging.WARNING)
