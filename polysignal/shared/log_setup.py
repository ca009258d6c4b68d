"""Logging setup for the tracker process."""
from __future__ import annotations

import logging
import sys
from pathlib import Path

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"
DATE_FORMAT = "%H:%M:%S"
COPYTRADE_ERROR_LOG = "copytrade-errors.log"


def setup_logging(level: str = "INFO", log_dir: Path | None = None) -> None:
    """Configure root logging and the copy-trade error file.

    Copy-trade warnings and errors also go to ``<log_dir>/copytrade-errors.log``
    so simulated-position problems can be reviewed apart from the poll noise.
    """
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        datefmt=DATE_FORMAT,
        handlers=[logging.StreamHandler(sys.stdout)],
    )
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)

    if log_dir is None:
        return

    log_dir.mkdir(parents=True, exist_ok=True)
    copytrade_log = logging.getLogger("copytrade")
    path = log_dir / COPYTRADE_ERROR_LOG
    if any(
        isinstance(h, logging.FileHandler) and Path(h.baseFilename) == path.resolve()
        for h in copytrade_log.handlers
    ):
        return
    handler = logging.FileHandler(path, encoding="utf-8")
    handler.setLevel(logging.WARNING)
    handler.setFormatter(logging.Formatter(
        "[%(asctime)s] %(levelname)s in %(name)s\n%(message)s\n" + "=" * 80,
    ))
    copytrade_log.addHandler(handler)
