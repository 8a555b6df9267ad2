import collections
import json
import logging
from logging.handlers import RotatingFileHandler
from typing import Any, Optional, OrderedDict

from .config import LogConfig

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

_MAX_PROJECT_LOGGERS = 32
_PROJECT_LOGGERS: "OrderedDict[str, logging.Logger]" = collections.OrderedDict()


def _close_handlers(logger: logging.Logger) -> None:
    for handler in list(logger.handlers):
        try:
            handler.close()
        except OSError:
            pass
    logger.handlers.clear()


def setup_rotating_logger(
    name: str, log_config: LogConfig, *, level: int = logging.INFO
) -> logging.Logger:
    """
    Return the file logger for one project, creating it on first use.

    Every project writes to its own rotating file; the least recently used
    loggers are closed once too many projects have been opened.
    """
    logger = _PROJECT_LOGGERS.get(name)
    if logger is not None:
        _PROJECT_LOGGERS.move_to_end(name)
        return logger

    log_config.path.parent.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(
        log_config.path,
        maxBytes=log_config.max_bytes,
        backupCount=log_config.backup_count,
        encoding="utf-8",
    )
    handler.setFormatter(logging.Formatter(LOG_FORMAT))

    logger = logging.getLogger(name)
    _close_handlers(logger)
    logger.setLevel(level)
    logger.addHandler(handler)
    logger.propagate = False

    _PROJECT_LOGGERS[name] = logger
    while len(_PROJECT_LOGGERS) > _MAX_PROJECT_LOGGERS:
        _, evicted = _PROJECT_LOGGERS.popitem(last=False)
        _close_handlers(evicted)
    return logger


def release_logger(name: str) -> bool:
    """Close a project logger's file; False when it was never opened."""
    logger = _PROJECT_LOGGERS.pop(name, None)
    if logger is None:
        return False
    _close_handlers(logger)
    return True


def _format_value(value: Any) -> str:
    try:
        return json.dumps(value, ensure_ascii=False, default=str)
    except (TypeError, ValueError):
        return repr(value)


def log_event(
    logger: logging.Logger,
    level: int,
    event: str,
    *,
    exc: Optional[BaseException] = None,
    **fields: Any,
) -> None:
    """Emit a structured `event key=value ...` line; never raises."""
    try:
        if not logger.isEnabledFor(level):
            return
        parts = [event]
        for key, value in fields.items():
            if value is None:
                continue
            parts.append(f"{key}={_format_value(value)}")
        if exc is not None:
            parts.append(f"exc={_format_value(f'{type(exc).__name__}: {exc}')}")
        logger.log(level, " ".join(parts))
    except Exception:
        pass
