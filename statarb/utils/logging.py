"""Logging setup shared by the API server and the CLI."""

import logging
import sys

from statarb.config import settings

LOG_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"


def setup_logging(level: str | None = None):
    """Configure the root logger once from settings."""
    root = logging.getLogger()
    root.setLevel((level or settings.log_level).upper())
    if not any(getattr(h, "_statarb", False) for h in root.handlers):
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler._statarb = True
        root.addHandler(handler)

    # Third-party loggers are noisy at INFO
    for name in ("apscheduler", "httpx", "urllib3"):
        logging.getLogger(name).setLevel(logging.WARNING)
