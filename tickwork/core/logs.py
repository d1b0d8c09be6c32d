"""
Logging setup and the event log.

``setup_logging`` configures the ``tickwork`` logger: terse console
output plus a detailed daily log file. ``EventLogger`` subscribes to the
event bus and appends every event as a JSON line, so the history of
runs can be grepped after the fact.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from pathlib import Path

from tickwork.core.events import Event


def setup_logging(
    log_dir: Path | None = None,
    console_level: int | str = logging.WARNING,
    file_level: int | str = logging.DEBUG,
) -> logging.Logger:
    """
    Setup Tickwork logging.

    Args:
        log_dir: Directory for log files (default: ~/.tickwork/logs)
        console_level: Minimum level for console output
        file_level: Minimum level for file output

    Returns:
        The configured logger
    """
    log_dir = (log_dir or Path.home() / ".tickwork" / "logs").expanduser()
    log_dir.mkdir(parents=True, exist_ok=True)

    logger = logging.getLogger("tickwork")
    logger.setLevel(logging.DEBUG)
    logger.handlers = []

    console_handler = logging.StreamHandler()
    console_handler.setLevel(_level(console_level))
    console_handler.setFormatter(logging.Formatter("[%(levelname)s] %(message)s"))
    logger.addHandler(console_handler)

    log_file = log_dir / f"tickwork_{datetime.now().strftime('%Y%m%d')}.log"
    file_handler = logging.FileHandler(log_file, encoding="utf-8")
    file_handler.setLevel(_level(file_level))
    file_handler.setFormatter(
        logging.Formatter(
            "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )
    logger.addHandler(file_handler)

    logger.info(f"Logging initialized. File: {log_file}")
    return logger


def _level(level: int | str) -> int:
    if isinstance(level, int):
        return level
    value = logging.getLevelName(level.upper())
    return value if isinstance(value, int) else logging.WARNING


class EventLogger:
    """
    Appends every event to ``events_YYYYMMDD.jsonl``.

    Usage:
        event_logger = EventLogger(log_dir=Path("~/.tickwork/logs"))
        bus.on("*", event_logger.handle)
    """

    def __init__(self, log_dir: Path | None = None) -> None:
        self._log_dir = (log_dir or Path.home() / ".tickwork" / "logs").expanduser()
        self._log_dir.mkdir(parents=True, exist_ok=True)
        self._logger = logging.getLogger("tickwork.events")

    @property
    def path(self) -> Path:
        return self._log_dir / f"events_{datetime.now().strftime('%Y%m%d')}.jsonl"

    async def handle(self, event: Event) -> None:
        self._logger.debug(f"[{event.type}] source={event.source}")
        record = {
            "timestamp": datetime.fromtimestamp(event.timestamp).isoformat(),
            "id": event.id,
            "type": event.type,
            "source": event.source,
            "data": self._safe_serialize(event.data),
        }
        try:
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(json.dumps(record) + "\n")
        except OSError as e:
            self._logger.warning(f"Failed to write event log: {e}")

    @staticmethod
    def _safe_serialize(data: dict) -> dict:
        result = {}
        for key, value in data.items():
            try:
                json.dumps(value)
                result[key] = value
            except (TypeError, ValueError):
                result[key] = str(value)
        return result
