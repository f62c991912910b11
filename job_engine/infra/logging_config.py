"""
Logging setup for the job engine.

All module loggers live under the ``job_engine`` namespace and propagate to
one configured logger: a console stream plus, optionally, a per-day file
``job_engine_<YYYYMMDD>_<HHMMSS>.log`` whose time suffix is the process
start time.
"""

import logging
from datetime import datetime
from pathlib import Path
from typing import Optional

LOGGER_NAME = "job_engine"
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s (%(threadName)s): %(message)s"

# Set by the first handler created in this process
_PROCESS_START_TIME: Optional[str] = None


def _today() -> str:
    return datetime.now().strftime("%Y%m%d")


def _process_start_time() -> str:
    global _PROCESS_START_TIME
    if _PROCESS_START_TIME is None:
        _PROCESS_START_TIME = datetime.now().strftime("%H%M%S")
    return _PROCESS_START_TIME


class DailyRotatingFileHandler(logging.FileHandler):
    """File handler that switches to a new file when the calendar day changes."""

    def __init__(self, log_dir: str = "logs", encoding: str = "utf-8"):
        self.log_dir = Path(log_dir)
        self.log_dir.mkdir(parents=True, exist_ok=True)
        self._start_hhmmss = _process_start_time()
        self._current_date = _today()
        super().__init__(self._path_for_today(), mode="a", encoding=encoding)

    def _path_for_today(self) -> str:
        name = f"{LOGGER_NAME}_{_today()}_{self._start_hhmmss}.log"
        return str(self.log_dir / name)

    def _roll_over(self, date: str) -> None:
        if self.stream is not None:
            self.stream.close()
        self.baseFilename = self._path_for_today()
        self._current_date = date
        self.stream = self._open()

    def emit(self, record: logging.LogRecord) -> None:
        date = _today()
        if date != self._current_date:
            with self.lock:
                if date != self._current_date:
                    self._roll_over(date)
        super().emit(record)


def setup_logging(
    log_level: str = "INFO",
    log_dir: Optional[str] = "logs",
) -> logging.Logger:
    """
    Configure and return the ``job_engine`` logger.

    Calling it again replaces the previous handlers. Unknown level names
    fall back to INFO. The logger does not propagate to root.

    Args:
        log_level: Level name such as DEBUG or WARNING
        log_dir: Directory for daily files; None or empty logs to console only
    """
    level = getattr(logging, log_level.upper(), logging.INFO)
    if not isinstance(level, int):
        level = logging.INFO

    engine_logger = logging.getLogger(LOGGER_NAME)
    engine_logger.setLevel(level)
    engine_logger.propagate = False

    for old in list(engine_logger.handlers):
        engine_logger.removeHandler(old)
        old.close()

    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_dir:
        handlers.append(DailyRotatingFileHandler(log_dir=log_dir))

    formatter = logging.Formatter(LOG_FORMAT)
    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
        engine_logger.addHandler(handler)

    target = handlers[-1].baseFilename if log_dir else "console only"
    engine_logger.info(f"Logging configured: level={logging.getLevelName(level)}, output={target}")
    return engine_logger
