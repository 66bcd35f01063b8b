"""Structured run log: one JSON line per event outcome and per run transition."""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Protocol, runtime_checkable

logger = logging.getLogger(__name__)

_LEVELS = {
    "INFO": logging.INFO,
    "WARN": logging.WARNING,
    "ERROR": logging.ERROR,
}


def json_dumps_unicode(obj: object) -> str:
    """Serialize to a single JSON line; Unicode is kept as-is."""
    return json.dumps(obj, ensure_ascii=False, default=str)


@runtime_checkable
class RunLogger(Protocol):
    """Structured logging capability injected into the run loop."""

    def log_event(
        self,
        *,
        run_id: str,
        consumer: str,
        event_type: str,
        event_id: str,
        outcome: str,
        prior_status: str | None = None,
        attempts: int | None = None,
        duration_ms: int | None = None,
        error: str | None = None,
        level: str = "INFO",
        **extra: Any,
    ) -> None: ...

    def log_run(
        self,
        record_type: str,
        *,
        run_id: str,
        consumer: str,
        event_type: str,
        level: str = "INFO",
        **fields: Any,
    ) -> None: ...

    def log_error(
        self,
        record_type: str,
        *,
        run_id: str,
        consumer: str,
        event_type: str,
        error: str,
        **fields: Any,
    ) -> None: ...


class JsonRunLogger:
    """RunLogger writing newline-delimited JSON through a stdlib logger."""

    def __init__(self, target: logging.Logger | None = None) -> None:
        self._logger = target or logger

    def _emit(self, level: str, record: dict[str, Any]) -> None:
        self._logger.log(_LEVELS.get(level, logging.INFO), "%s", json_dumps_unicode(record))

    @staticmethod
    def _base(level: str, record_type: str, run_id: str, consumer: str, event_type: str) -> dict:
        return {
            "level": level,
            "type": record_type,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "run_id": run_id,
            "consumer": consumer,
            "event_type": event_type,
        }

    def log_event(
        self,
        *,
        run_id: str,
        consumer: str,
        event_type: str,
        event_id: str,
        outcome: str,
        prior_status: str | None = None,
        attempts: int | None = None,
        duration_ms: int | None = None,
        error: str | None = None,
        level: str = "INFO",
        **extra: Any,
    ) -> None:
        record = self._base(level, "event_outcome", run_id, consumer, event_type)
        record.update(
            {
                "event_id": event_id,
                "outcome": outcome,
                "prior_status": prior_status,
                "attempts": attempts,
                "duration_ms": duration_ms,
            }
        )
        if error is not None:
            record["error"] = error
        record.update(extra)
        self._emit(level, record)

    def log_run(
        self,
        record_type: str,
        *,
        run_id: str,
        consumer: str,
        event_type: str,
        level: str = "INFO",
        **fields: Any,
    ) -> None:
        record = self._base(level, record_type, run_id, consumer, event_type)
        record.update(fields)
        self._emit(level, record)

    def log_error(
        self,
        record_type: str,
        *,
        run_id: str,
        consumer: str,
        event_type: str,
        error: str,
        **fields: Any,
    ) -> None:
        record = self._base("ERROR", record_type, run_id, consumer, event_type)
        record["error"] = error
        record.update(fields)
        self._emit("ERROR", record)
