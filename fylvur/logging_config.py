from __future__ import annotations

import logging

from fylvur.config import LoggingSettings

DEFAULT_LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


def configure_logging(settings: LoggingSettings) -> None:
    """Configure process-wide logging once at startup."""

    logging.basicConfig(
        level=getattr(logging, settings.level.upper(), logging.INFO),
        format=DEFAULT_LOG_FORMAT,
        force=True,
    )
    # PyAV forwards libav warnings through its own logger; keep them out of INFO output.
    logging.getLogger("libav").setLevel(max(logging.WARNING, logging.getLogger().level))
