"""Shared pipeline logger.

Console gets INFO and up.  Two files get everything: a per-run
``forecast_pipeline_<timestamp>.log`` and ``forecast_pipeline.log``, which is
truncated at start-up so it always holds the current run.  Run files beyond
the newest ten are deleted.
"""

import logging
import sys
from datetime import datetime
from pathlib import Path

from forecast_pipeline.config import settings

_KEEP_RUNS = 10
_RUN_GLOB = "forecast_pipeline_*.log"
_FORMAT = logging.Formatter(
    "[%(asctime)s] %(levelname)-8s %(name)s — %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)


def _prune_old_logs(logs_dir: Path) -> None:
    runs = sorted(logs_dir.glob(_RUN_GLOB), key=lambda p: p.stat().st_mtime, reverse=True)
    for stale in runs[_KEEP_RUNS:]:
        stale.unlink(missing_ok=True)


def _handler(handler: logging.Handler, level: int) -> logging.Handler:
    handler.setLevel(level)
    handler.setFormatter(_FORMAT)
    return handler


def _setup_logger(name: str = "forecast_pipeline") -> logging.Logger:
    log = logging.getLogger(name)
    if log.handlers:  # already configured by an earlier import
        return log
    log.setLevel(logging.DEBUG)
    log.addHandler(_handler(logging.StreamHandler(sys.stdout), logging.INFO))

    logs_dir = settings.LOGS_DIR
    logs_dir.mkdir(parents=True, exist_ok=True)
    run_log = logs_dir / f"forecast_pipeline_{datetime.now():%Y-%m-%d_%H-%M-%S}.log"
    try:
        log.addHandler(_handler(logging.FileHandler(run_log, encoding="utf-8"), logging.DEBUG))
        log.addHandler(_handler(
            logging.FileHandler(logs_dir / "forecast_pipeline.log", mode="w", encoding="utf-8"),
            logging.DEBUG,
        ))
        _prune_old_logs(logs_dir)
    except OSError as exc:
        log.warning("File logging disabled: %s", exc)
        return log

    log.info("Log started: %s", run_log.name)
    return log


logger = _setup_logger()
