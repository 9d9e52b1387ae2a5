#!/usr/bin/env python3
"""
Logging for the bridge and its client.

    from shared.log import get_logger

    logger = get_logger(__name__)
    logger.warning("Dropped datagram", extra={"peer": "10.0.0.5:40000", "topic": "/chatter"})

Console output is coloured when developing on a TTY. Every logger also writes
to $UDP_BRIDGE_LOG_DIR/udp_bridge.log (default ./logs); an empty value turns
the file off.
"""

from __future__ import annotations
import logging
import sys
from pathlib import Path
from typing import Optional, Dict, Any
import os

# `extra` keys rendered as a [k=v ...] prefix, in this order
CONTEXT_FIELDS = (("direction", "dir"), ("peer", "peer"), ("topic", "topic"), ("channel", "channel"))

LEVEL_COLOURS = {
    'DEBUG': '\033[36m',
    'INFO': '\033[32m',
    'WARNING': '\033[33m',
    'ERROR': '\033[31m',
    'CRITICAL': '\033[35m',
}
RESET = '\033[0m'


class GenericFormatter(logging.Formatter):

    def format(self, record: logging.LogRecord) -> str:
        context = [f"{label}={getattr(record, attr)}" for attr, label in CONTEXT_FIELDS if hasattr(record, attr)]
        if context:
            # Work on a copy; the record is shared between handlers
            record = logging.makeLogRecord(record.__dict__)
            record.msg = f"[{' '.join(context)}] {record.msg}"
        return super().format(record)


class ColoredFormatter(GenericFormatter):

    def format(self, record: logging.LogRecord) -> str:
        colour = LEVEL_COLOURS.get(record.levelname)
        if colour:
            record = logging.makeLogRecord(record.__dict__)
            record.levelname = f"{colour}{record.levelname}{RESET}"
        return super().format(record)


_loggers_configured = set()

def get_logger(name: str, level: Optional[str] = None) -> logging.Logger:
    """Return the logger for `name`, attaching handlers the first time it is asked for."""
    logger = logging.getLogger(name)
    if name not in _loggers_configured:
        _configure_logger(logger, level)
        _loggers_configured.add(name)
    return logger


def _configure_logger(logger: logging.Logger, level: Optional[str] = None) -> None:
    logger.setLevel(_get_log_level(level))
    logger.handlers.clear()
    _add_console_handler(logger, colored=_is_development() and _supports_color())
    _add_file_handler(logger)
    logger.propagate = False


def _get_log_level(level: Optional[str] = None) -> int:
    level = level or os.getenv('UDP_BRIDGE_LOG_LEVEL')
    if level:
        return getattr(logging, level.upper(), logging.INFO)
    return logging.DEBUG if _is_development() else logging.INFO


def _is_development() -> bool:
    return os.getenv('PYTHON_ENV', '').lower() in ('dev', 'development') or 'pytest' in sys.modules


def _add_console_handler(logger: logging.Logger, colored: bool) -> None:
    handler = logging.StreamHandler(sys.stdout)
    fmt = '[%(levelname)-8s][%(asctime)s][%(name)-5s]: %(message)s'
    if colored:
        handler.setFormatter(ColoredFormatter(fmt=fmt, datefmt='%H:%M:%S'))
    else:
        handler.setFormatter(GenericFormatter(fmt=fmt, datefmt='%Y-%m-%d %H:%M:%S'))
    logger.addHandler(handler)


def _add_file_handler(logger: logging.Logger) -> None:
    log_dir = os.getenv('UDP_BRIDGE_LOG_DIR', 'logs')
    if not log_dir:
        return
    path = Path(log_dir)
    path.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(path / "udp_bridge.log")
    handler.setFormatter(GenericFormatter(
        fmt='%(asctime)s | %(name)-30s | %(levelname)-8s | %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S',
    ))
    logger.addHandler(handler)


def _supports_color() -> bool:
    if not (hasattr(sys.stdout, "isatty") and sys.stdout.isatty()):
        return False
    return os.getenv("TERM", "") != "dumb"


def configure_root_logging(level: str = "INFO") -> None:
    """
    Configure the root logger once at startup and re-level every module logger
    created so far, since those were set up before the CLI knew the level.
    """
    _configure_logger(logging.getLogger(), level)
    for name in _loggers_configured:
        logging.getLogger(name).setLevel(_get_log_level(level))


def log_envelope(logger: logging.Logger, level: str, message: str,
                 envelope: Optional[Dict[str, Any]] = None,
                 **context: Any) -> None:
    """
    Log an event about a decoded envelope, tagging it with the envelope's topic.

    Example:
        log_envelope(logger, "debug", "Filtered datagram",
                     envelope=parsed, peer="10.0.0.5:40000")
    """
    extra: Dict[str, Any] = {}
    if isinstance(envelope, dict) and 'topic' in envelope:
        extra['topic'] = envelope.get('topic')
    extra.update(context)
    getattr(logger, level.lower())(message, extra=extra)
