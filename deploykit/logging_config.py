"""
DeployKit — Logging Configuration
==================================

What:  One place that configures stdlib logging for both the CLI and the
       application runtime shell.
How:   Root logger writes to stdout (Docker captures stdout) with a single
       consistent format; noisy third-party loggers are turned down.
When:  Called once per process, before any other initialization.
"""

import logging
import sys
from typing import Optional

from deploykit.config import settings

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def setup_logging(level: Optional[str] = None) -> None:
    logging.basicConfig(
        level=getattr(logging, (level or settings.log_level).upper(), logging.INFO),
        format=LOG_FORMAT,
        datefmt="%Y-%m-%dT%H:%M:%S",
        handlers=[logging.StreamHandler(sys.stdout)],
        force=True,
    )

    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.WARNING)
