"""
sparse_query/core/logger.py — JSONL structured logger for the sparse query encoder.

EncoderLogger writes one JSON object per line to {log_dir}/sparse_query_{date}.jsonl,
rotating automatically each day. WARN and ERROR are also mirrored
to Python stdlib logging (stderr). Thread-safe via threading.Lock.

Usage::

    from sparse_query.core.logger import get_logger
    log = get_logger()
    log.info("cache", "cache_hit", {"name": "vocab.txt"})
    log.perf("cache", "download_done", latency_ms=812.4, data={"bytes": 231508})
"""

from __future__ import annotations

import json
import logging
import platform
import sys
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from sparse_query.core.config import LoggingConfig

# ── stdlib mirror logger (stderr for WARN+) ──────────────────
_stdlib = logging.getLogger("sparse_query")
if not _stdlib.handlers:
    _handler = logging.StreamHandler(sys.stderr)
    _handler.setFormatter(logging.Formatter("[%(levelname)s] %(name)s — %(message)s"))
    _stdlib.addHandler(_handler)
_stdlib.setLevel(logging.DEBUG)
_stdlib.propagate = False

# PERF entries rank with INFO for level filtering.
_LEVEL_ORDER: dict[str, int] = {
    "DEBUG": 10,
    "INFO": 20,
    "PERF": 20,
    "WARN": 30,
    "ERROR": 40,
}

_FILE_PREFIX = "sparse_query"

# ── Singleton storage ─────────────────────────────────────────
_instance: Optional["EncoderLogger"] = None
_instance_lock = threading.Lock()


class EncoderLogger:
    """
    JSONL structured logger.

    Each call to a log method appends a single JSON line to
    ``{log_dir}/sparse_query_{YYYY-MM-DD}.jsonl``. A new file is opened
    automatically when the calendar date changes. With ``jsonl`` disabled
    nothing is written to disk and only the stderr mirror remains.

    Fields written per entry:

    .. code-block:: json

        {
          "timestamp_iso": "2026-10-18T01:20:49.123456+00:00",
          "level": "PERF",
          "phase": "cache",
          "event": "download_done",
          "data": {"name": "vocab.txt", "bytes": 231508},
          "latency_ms": 812.4
        }

    ``latency_ms`` is omitted when ``None``.

    Prefer :func:`get_logger` over direct instantiation.
    """

    def __init__(self, config: Optional[LoggingConfig] = None) -> None:
        cfg = config or LoggingConfig()
        self._lock = threading.Lock()
        self._file: Optional[Any] = None
        self._current_date: str = ""
        self._min_level = _LEVEL_ORDER[cfg.level.upper()]
        self._log_dir: Optional[Path] = cfg.resolved_log_dir if cfg.jsonl else None
        self._write_startup()

    @property
    def log_dir(self) -> Optional[Path]:
        """Directory receiving JSONL files, or ``None`` when file output is off."""
        return self._log_dir

    # ──────────────────────────────────────────
    # Public logging methods
    # ──────────────────────────────────────────

    def debug(self, phase: str, event: str, data: Optional[dict] = None) -> None:
        """Write a DEBUG-level entry."""
        self._write("DEBUG", phase, event, data)

    def info(self, phase: str, event: str, data: Optional[dict] = None) -> None:
        """
        Write an INFO-level structured log entry.

        Args:
            phase: Subsystem (e.g. ``'cache'``, ``'encoder'``).
            event: Short event identifier (e.g. ``'cache_hit'``).
            data: Optional dict of additional key-value context.
        """
        self._write("INFO", phase, event, data)

    def warn(self, phase: str, event: str, data: Optional[dict] = None) -> None:
        """Write a WARN-level entry and mirror to stderr via stdlib logging."""
        self._write("WARN", phase, event, data)
        _stdlib.warning("[%s] %s | %s", phase, event, data or {})

    def error(self, phase: str, event: str, data: Optional[dict] = None) -> None:
        """Write an ERROR-level entry and mirror to stderr via stdlib logging."""
        self._write("ERROR", phase, event, data)
        _stdlib.error("[%s] %s | %s", phase, event, data or {})

    def perf(
        self,
        phase: str,
        event: str,
        latency_ms: float,
        data: Optional[dict] = None,
    ) -> None:
        """
        Write a PERF-level entry for latency tracking.

        Args:
            phase: Subsystem the measurement belongs to (e.g. ``'cache'``).
            event: What was measured (e.g. ``'download_done'``).
            latency_ms: Measured latency in milliseconds.
            data: Optional additional context dict.
        """
        self._write("PERF", phase, event, data, latency_ms=latency_ms)

    def flush(self) -> None:
        """Flush the underlying file buffer immediately."""
        with self._lock:
            if self._file and not self._file.closed:
                self._file.flush()

    def close(self) -> None:
        """Close the current log file. Later writes reopen it."""
        with self._lock:
            if self._file and not self._file.closed:
                self._file.close()
            self._file = None
            self._current_date = ""

    # ──────────────────────────────────────────
    # Internal helpers
    # ──────────────────────────────────────────

    def _write(
        self,
        level: str,
        phase: str,
        event: str,
        data: Optional[dict],
        latency_ms: Optional[float] = None,
    ) -> None:
        """
        Serialise and append one JSON line to the log file.

        Performs the daily rotation check on every write.
        """
        if self._log_dir is None or _LEVEL_ORDER[level] < self._min_level:
            return

        now = datetime.now(tz=timezone.utc)
        record: dict[str, Any] = {
            "timestamp_iso": now.isoformat(),
            "level": level,
            "phase": phase,
            "event": event,
            "data": data or {},
        }
        if latency_ms is not None:
            record["latency_ms"] = round(latency_ms, 3)

        line = json.dumps(record, ensure_ascii=False, separators=(",", ":"), default=str)

        with self._lock:
            self._rotate_if_needed(now)
            if self._file and not self._file.closed:
                self._file.write(line + "\n")
                self._file.flush()

    def _rotate_if_needed(self, now: datetime) -> None:
        """
        Open a new log file if the calendar date has changed.

        Called inside ``self._lock``.
        """
        today = now.strftime("%Y-%m-%d")
        if today != self._current_date or self._file is None:
            if self._file and not self._file.closed:
                self._file.close()
            self._current_date = today
            assert self._log_dir is not None
            self._log_dir.mkdir(parents=True, exist_ok=True)
            log_path = self._log_dir / f"{_FILE_PREFIX}_{today}.jsonl"
            self._file = open(log_path, "a", encoding="utf-8", buffering=1)

    def _write_startup(self) -> None:
        """Write a startup entry with Python version and platform."""
        self.info(
            phase="system",
            event="startup",
            data={
                "python_version": sys.version,
                "platform": platform.platform(),
                "timestamp_local": datetime.now().isoformat(),
            },
        )


# ──────────────────────────────────────────────────────────────
# Singleton accessor
# ──────────────────────────────────────────────────────────────

def get_logger() -> EncoderLogger:
    """
    Return the singleton :class:`EncoderLogger` instance.

    The first call creates the instance with default settings; subsequent
    calls return the same object without acquiring the creation lock.
    """
    global _instance
    if _instance is None:
        with _instance_lock:
            if _instance is None:
                _instance = EncoderLogger()
    return _instance


def configure_logger(config: LoggingConfig) -> EncoderLogger:
    """
    Replace the singleton with a logger built from *config*.

    The previous instance's file is closed. Returns the new logger.
    """
    global _instance
    with _instance_lock:
        if _instance is not None:
            _instance.close()
        _instance = EncoderLogger(config)
    return _instance
