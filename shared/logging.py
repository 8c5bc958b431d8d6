from __future__ import annotations

import logging
import os


def configure_logging(default_level: str = "INFO") -> None:
    """Root logging for the service; ``LOG_LEVEL`` overrides the configured level."""
    level_name = os.getenv("LOG_LEVEL", default_level).upper()
    level = getattr(logging, level_name, logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )
    # Keep third-party HTTP clients from flooding the log with per-chunk lines
    for noisy in ("httpx", "httpcore", "anthropic", "google_genai"):
        logging.getLogger(noisy).setLevel(max(level, logging.WARNING))
