import gzip
import logging
import os
import shutil
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Optional

import structlog

from shared.config import get_shared_settings as get_settings


# Short names for third-party loggers
_LOGGER_NAME_MAP = {
    "uvicorn.error": "uvicorn",
    "uvicorn.access": "uvicorn",
    "web.backend.core.bulk": "bulk",
    "web.backend.api": "api",
    "httpx": "http",
    "httpcore": "http",
    "asyncpg": "db",
    "alembic": "migration",
    "sqlalchemy": "db",
}

# Rotation: 10 MB, 5 files, gzip-compressed
_MAX_BYTES = 10 * 1024 * 1024  # 10 MB
_BACKUP_COUNT = 5


class CompressedRotatingFileHandler(RotatingFileHandler):
    """RotatingFileHandler that gzips rotated files."""

    def doRollover(self):
        if self.stream:
            self.stream.close()
            self.stream = None

        for i in range(self.backupCount - 1, 0, -1):
            sfn = self.rotation_filename(f"{self.baseFilename}.{i}.gz")
            dfn = self.rotation_filename(f"{self.baseFilename}.{i + 1}.gz")
            if os.path.exists(sfn):
                if os.path.exists(dfn):
                    os.remove(dfn)
                os.rename(sfn, dfn)

        dfn = self.rotation_filename(f"{self.baseFilename}.1.gz")
        if os.path.exists(dfn):
            os.remove(dfn)
        if os.path.exists(self.baseFilename):
            with open(self.baseFilename, "rb") as f_in:
                with gzip.open(dfn, "wb") as f_out:
                    shutil.copyfileobj(f_in, f_out)
            with open(self.baseFilename, "w"):
                pass

        if not self.delay:
            self.stream = self._open()


def _shorten_logger_name(logger: object, method_name: str, event_dict: dict) -> dict:
    """structlog processor: shortens logger names."""
    name = event_dict.get("logger", "")
    for prefix, short in _LOGGER_NAME_MAP.items():
        if name == prefix or name.startswith(prefix + "."):
            event_dict["logger"] = short
            return event_dict
    if "." in name:
        event_dict["logger"] = name.rsplit(".", 1)[-1]
    return event_dict


def _compact_kv(logger: object, method_name: str, event_dict: dict) -> dict:
    """structlog processor: compact one-line format for entity_outcome."""
    if event_dict.get("event") != "entity_outcome":
        return event_dict
    action_id = event_dict.pop("action_id", "")
    entity_id = event_dict.pop("entity_id", "")
    outcome = event_dict.pop("outcome", "")
    reason = event_dict.pop("reason", "")
    parts = [f"{outcome.upper()}: entity {entity_id}"]
    if action_id:
        parts.append(f"(action {action_id})")
    if reason:
        parts.append(f"| {reason}")
    event_dict["event"] = " ".join(parts)
    return event_dict


_LEVEL_STYLES = {
    "critical": "\033[1;91m",
    "exception": "\033[1;91m",
    "error": "\033[91m",
    "warn": "\033[93m",
    "warning": "\033[93m",
    "info": "\033[36m",
    "debug": "\033[2;37m",
    "notset": "\033[2m",
}


def _make_console_renderer() -> structlog.dev.ConsoleRenderer:
    return structlog.dev.ConsoleRenderer(
        colors=sys.stderr.isatty(),
        pad_event_to=40,
        level_styles=_LEVEL_STYLES,
    )


def setup_logging(level_name: Optional[str] = None, log_dir: Optional[str] = None) -> None:
    """Configure stdlib logging with structlog formatters.

    Console output is always enabled. When a log directory is configured
    (argument or LOG_DIR), INFO+ records are also written as JSON to
    ``bulk-actions.log`` with gzip rotation.
    """
    settings = get_settings()
    level_name = (level_name or settings.log_level).upper()
    level = getattr(logging, level_name, logging.INFO)
    log_dir = log_dir or settings.log_dir

    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(logging.DEBUG)

    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="%Y-%m-%d %H:%M:%S", utc=False),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    console = logging.StreamHandler()
    console.setLevel(level)
    console.setFormatter(structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            _shorten_logger_name,
            _compact_kv,
            _make_console_renderer(),
        ],
        foreign_pre_chain=shared_processors,
    ))
    root.addHandler(console)

    if log_dir:
        try:
            path = Path(log_dir)
            path.mkdir(parents=True, exist_ok=True)
            json_formatter = structlog.stdlib.ProcessorFormatter(
                processors=[
                    structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                    _shorten_logger_name,
                    structlog.processors.JSONRenderer(),
                ],
                foreign_pre_chain=shared_processors,
            )
            file_handler = CompressedRotatingFileHandler(
                filename=str(path / "bulk-actions.log"),
                maxBytes=_MAX_BYTES,
                backupCount=_BACKUP_COUNT,
                encoding="utf-8",
            )
            file_handler.setLevel(logging.INFO)
            file_handler.setFormatter(json_formatter)
            root.addHandler(file_handler)
        except OSError as exc:
            root.warning("Cannot create log files (%s), logging to console only", exc)

    # Quiet noisy third-party loggers
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("asyncpg").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def log_entity_outcome(
    action_id: str,
    entity_id: str,
    outcome: str,
    reason: Optional[str] = None,
) -> None:
    """Log the terminal outcome of one entity.

    success -> INFO, skipped -> WARNING, failure -> ERROR.
    """
    log = structlog.get_logger("web.backend.core.bulk.entity")
    kwargs: dict[str, Any] = {
        "action_id": action_id,
        "entity_id": entity_id,
        "outcome": outcome,
    }
    if reason:
        kwargs["reason"] = reason
    if outcome == "failure":
        log.error("entity_outcome", **kwargs)
    elif outcome == "skipped":
        log.warning("entity_outcome", **kwargs)
    else:
        log.info("entity_outcome", **kwargs)
