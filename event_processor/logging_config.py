"""Logging setup for the processor service.

Two destinations: the service log (human-readable, root logger) and the run
log, where each record is already a JSON object and is written one per line
with no prefix so the file stays valid NDJSON. Run-log records also propagate
to the service log.
"""

import logging
import logging.handlers
from pathlib import Path
from typing import Any

RUN_LOG_LOGGER = "event_processor.run_log"

_SERVICE_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
_QUIET_LOGGERS = ("aiosqlite", "uvicorn.access")


def _rotating_handler(path: Path, cfg: dict[str, Any], level: int) -> logging.Handler:
    path.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.handlers.RotatingFileHandler(
        path,
        maxBytes=int(cfg.get("max_bytes", 10 * 1024 * 1024)),
        backupCount=int(cfg.get("backup_count", 3)),
        encoding="utf-8",
    )
    handler.setLevel(level)
    return handler


def _resolve(project_root: Path, raw: str) -> Path:
    path = Path(raw)
    return path if path.is_absolute() else project_root / path


def _reset_handlers(target: logging.Logger) -> None:
    for h in target.handlers[:]:
        target.removeHandler(h)


def setup_logging(project_root: Path, settings: dict[str, Any]) -> None:
    """Configure the service log and the run log from settings["logging"].

    logging.file is the service log; logging.run_log_file (optional, empty to
    disable) receives the bare JSON lines of the run log.
    """
    cfg = settings.get("logging", {})
    level = getattr(logging, str(cfg.get("level", "INFO")).upper(), logging.INFO)
    service_formatter = logging.Formatter(_SERVICE_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")

    root = logging.getLogger()
    root.setLevel(level)
    _reset_handlers(root)
    service_handler = _rotating_handler(
        _resolve(project_root, cfg.get("file", "logs/event_processor.log")), cfg, level
    )
    service_handler.setFormatter(service_formatter)
    root.addHandler(service_handler)
    if cfg.get("log_to_console", True):
        console = logging.StreamHandler()
        console.setLevel(level)
        console.setFormatter(service_formatter)
        root.addHandler(console)

    run_log = logging.getLogger(RUN_LOG_LOGGER)
    _reset_handlers(run_log)
    run_log_file = cfg.get("run_log_file")
    if run_log_file:
        run_handler = _rotating_handler(_resolve(project_root, run_log_file), cfg, logging.DEBUG)
        run_handler.setFormatter(logging.Formatter("%(message)s"))
        run_log.addHandler(run_handler)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
