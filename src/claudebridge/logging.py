"""Logging for claudebridge.

Every record from a streaming command carries the channel it belongs to,
so interleaved output from several bridge processes stays readable:

    12:04:31 info bridge [c1]: process started, pid 4242
    12:04:31 trace bridge [c1]: line 3: [CONTENT_DELTA] "Hel"

Verbosity runs from 0 (errors) to 4 (every line a child prints). Records
go to the file named by ``logging.file`` / ``CB_LOG``, else to stderr when
it is a terminal. Hosts that pipe stderr get nothing by default.
"""

from __future__ import annotations

import logging
import os
import sys
from collections.abc import MutableMapping
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from claudebridge.config.schema import LoggingConfig

# Below DEBUG: raw child output
TRACE = 5
VERBOSE = 15

logging.addLevelName(TRACE, "TRACE")
logging.addLevelName(VERBOSE, "VERBOSE")

ROOT_NAME = "claudebridge"

logger = logging.getLogger(ROOT_NAME)

# --verbose=N to log levels
_VERBOSITY_MAP = {
    0: logging.ERROR,
    1: logging.WARNING,
    2: logging.INFO,
    3: VERBOSE,
    4: TRACE,
}

_handlers: list[logging.Handler] = []


def level_for(config: LoggingConfig | None) -> int:
    """Resolve the effective level; ``verbose`` wins over ``level``."""
    if config is None:
        return logging.INFO
    if config.verbose is not None:
        return _VERBOSITY_MAP.get(max(config.verbose, 0), TRACE)
    if config.level:
        level = logging.getLevelName(config.level.upper())
        if isinstance(level, int):
            return level
    return logging.INFO


class BridgeFormatter(logging.Formatter):
    """Lowercase level, logger name relative to the package, channel tag."""

    def __init__(self) -> None:
        super().__init__(
            "%(asctime)s %(levelname)s %(component)s%(channel_tag)s: %(message)s",
            datefmt="%H:%M:%S",
        )

    def format(self, record: logging.LogRecord) -> str:
        record.levelname = record.levelname.lower()
        name = record.name
        if name.startswith(ROOT_NAME + "."):
            name = name[len(ROOT_NAME) + 1 :]
        record.component = name
        channel = getattr(record, "channel", None)
        record.channel_tag = f" [{channel}]" if channel else ""
        return super().format(record)


class ChannelLogger(logging.LoggerAdapter):
    """Tags every record with the channel it concerns."""

    def __init__(self, base: logging.Logger, channel_id: str) -> None:
        super().__init__(base, {"channel": channel_id})

    @property
    def channel_id(self) -> str:
        return self.extra["channel"]

    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> tuple[Any, MutableMapping[str, Any]]:
        kwargs["extra"] = {**self.extra, **kwargs.get("extra", {})}
        return msg, kwargs


def setup_logging(config: LoggingConfig | None = None) -> None:
    """Install handlers on the package logger.

    Calling it again replaces the handlers an earlier call installed.
    Handlers added by the host are left alone.
    """
    level = level_for(config)
    logger.setLevel(level)

    for old in _handlers:
        logger.removeHandler(old)
        old.close()
    _handlers.clear()

    # The loader already folds CB_LOG into config.file
    log_path = config.file if config and config.file else os.environ.get("CB_LOG")

    handler: logging.Handler | None = None
    if log_path:
        try:
            handler = logging.FileHandler(os.path.expanduser(log_path), mode="a", encoding="utf-8")
        except OSError as e:
            if sys.stderr.isatty():
                print(f"[claudebridge] Failed to open log file: {e}", file=sys.stderr)
                handler = logging.StreamHandler(sys.stderr)
    elif sys.stderr.isatty():
        handler = logging.StreamHandler(sys.stderr)

    if handler is not None:
        handler.setLevel(level)
        handler.setFormatter(BridgeFormatter())
        logger.addHandler(handler)
        _handlers.append(handler)


def get_logger(name: str | None = None) -> logging.Logger:
    """Child of the package logger, e.g. ``get_logger("bridge")``."""
    if name:
        return logger.getChild(name)
    return logger


def get_channel_logger(name: str, channel_id: str) -> ChannelLogger:
    """Logger for one channel of component ``name``."""
    return ChannelLogger(get_logger(name), channel_id)
