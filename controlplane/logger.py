from __future__ import annotations

import logging
import os
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass
from datetime import datetime, timezone
from time import perf_counter
from types import TracebackType
from typing import Any, Dict, Iterator, Mapping, Optional

LOGGER_NAME = "controlplane"

_LEVEL_SYMBOLS: Dict[int, str] = {
    logging.DEBUG: "(?)",
    logging.INFO: "(*)",
    logging.WARNING: "(!)",
    logging.ERROR: "(x)",
    logging.CRITICAL: "(X)",
}

_LOG_CONTEXT: ContextVar[Dict[str, Any]] = ContextVar("controlplane_log_context", default={})


class _ControlPlaneFormatter(logging.Formatter):
    """``date time | LEVEL | category | (*) event | message | key: value ...``"""

    def format(self, record: logging.LogRecord) -> str:
        created = datetime.fromtimestamp(record.created, tz=timezone.utc)
        stamp = created.strftime("%Y-%m-%d %H:%M:%S.%f")[:-3]
        symbol = getattr(record, "symbol", _LEVEL_SYMBOLS.get(record.levelno, "(?)"))
        event = getattr(record, "event", "")
        message = record.getMessage()
        fields = dict(getattr(record, "fields", {}))

        parts = [stamp, f"{record.levelname:<8}", str(getattr(record, "category", record.name))]
        if event == "operation.step":
            parts.append(f"{symbol} >> {fields.pop('step', 'step')}")
        elif event:
            parts.append(f"{symbol} {event}")
        if message:
            parts.append(message if event else f"{symbol} {message}")
        parts.extend(f"{key}: {value}" for key, value in fields.items())

        formatted = " | ".join(parts)
        if record.exc_info:
            return f"{formatted}\n{self.formatException(record.exc_info)}"
        return formatted


@dataclass(frozen=True)
class Operation:
    """A logged unit of work: start, steps, then complete, rejected or error.

    Usable with both ``with`` and ``async with``. Exceptions flagged
    ``expected`` (domain rejections such as an exhausted rotation pool) are
    logged as warnings without a traceback; anything else is logged with one.
    Exceptions always propagate.
    """

    logger: "BoundLogger"
    name: str
    message: str
    fields: Dict[str, Any]
    start_time: float = 0.0

    def _elapsed_ms(self) -> float:
        return round((perf_counter() - self.start_time) * 1000, 1)

    def __enter__(self) -> "Operation":
        object.__setattr__(self, "start_time", perf_counter())
        self.logger.info("operation.start", self.message, operation=self.name, **self.fields)
        return self

    def __exit__(
        self,
        exc_type: Optional[type[BaseException]],
        exc: Optional[BaseException],
        tb: Optional[TracebackType],
    ) -> None:
        if exc_type is None:
            self.logger.info("operation.complete", "Completed", operation=self.name, duration_ms=self._elapsed_ms())
        elif getattr(exc, "expected", False):
            self.logger.warning(
                "operation.rejected",
                str(exc),
                operation=self.name,
                duration_ms=self._elapsed_ms(),
                error_type=exc_type.__name__,
            )
        else:
            self.logger.exception(
                "operation.error",
                "Failed",
                operation=self.name,
                duration_ms=self._elapsed_ms(),
                error_type=exc_type.__name__,
            )

    async def __aenter__(self) -> "Operation":
        return self.__enter__()

    async def __aexit__(
        self,
        exc_type: Optional[type[BaseException]],
        exc: Optional[BaseException],
        tb: Optional[TracebackType],
    ) -> None:
        self.__exit__(exc_type, exc, tb)

    def step(self, name: str, message: str, *, level: int = logging.INFO, **fields: Any) -> None:
        self.logger.log(level, "operation.step", message, operation=self.name, step=name, **fields)


class BoundLogger:
    def __init__(self, category: str, fields: Optional[Mapping[str, Any]] = None) -> None:
        self._category = category
        self._fields: Dict[str, Any] = dict(fields or {})

    def bind(self, **fields: Any) -> "BoundLogger":
        return BoundLogger(self._category, {**self._fields, **fields})

    @contextmanager
    def context(self, **fields: Any) -> Iterator[None]:
        """Attach fields to every record logged in this task until exit."""
        token = _LOG_CONTEXT.set({**_LOG_CONTEXT.get(), **fields})
        try:
            yield
        finally:
            _LOG_CONTEXT.reset(token)

    def operation(self, name: str, message: str, **fields: Any) -> Operation:
        return Operation(self, name=name, message=message, fields=fields)

    def debug(self, event: str, message: str, **fields: Any) -> None:
        self.log(logging.DEBUG, event, message, **fields)

    def info(self, event: str, message: str, **fields: Any) -> None:
        self.log(logging.INFO, event, message, **fields)

    def warning(self, event: str, message: str, **fields: Any) -> None:
        self.log(logging.WARNING, event, message, **fields)

    def error(self, event: str, message: str, **fields: Any) -> None:
        self.log(logging.ERROR, event, message, **fields)

    def exception(self, event: str, message: str, **fields: Any) -> None:
        self.log(logging.ERROR, event, message, exc_info=True, **fields)

    def log(
        self,
        severity: int,
        event: str,
        message: str,
        *,
        exc_info: Any = None,
        **fields: Any,
    ) -> None:
        logging.getLogger(LOGGER_NAME).log(
            severity,
            message,
            extra={
                "category": self._category,
                "event": event,
                "symbol": _LEVEL_SYMBOLS.get(severity, "(?)"),
                "fields": {**_LOG_CONTEXT.get(), **self._fields, **fields},
            },
            exc_info=exc_info,
        )


def configure_logging(log_level: str, log_file: Optional[str]) -> None:
    formatter = _ControlPlaneFormatter()
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        log_dir = os.path.dirname(log_file)
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))
    for handler in handlers:
        handler.setFormatter(formatter)

    # Root gets the same handlers so uvicorn and SQLAlchemy records share the format.
    for logger in (logging.getLogger(), logging.getLogger(LOGGER_NAME)):
        logger.setLevel(log_level)
        logger.handlers.clear()
        for handler in handlers:
            logger.addHandler(handler)
    logging.getLogger(LOGGER_NAME).propagate = False

    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        uvicorn_logger = logging.getLogger(name)
        uvicorn_logger.handlers.clear()
        uvicorn_logger.propagate = True


def get_logger(category: str) -> BoundLogger:
    return BoundLogger(category)
