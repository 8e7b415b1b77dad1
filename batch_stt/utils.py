from datetime import datetime, timezone
from logging import getLogger, basicConfig, DEBUG, INFO, WARNING, FileHandler, Formatter, Filter, LogRecord
from pathlib import Path
from typing import Optional

from config import LOG_LEVEL, LOG_PATH

# Session logs are read per subsystem; the [SESSION]/[ENGINE]/[BATCH]/[NET] tag is in the message.
_LOG_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"

# Chatty libraries kept at INFO on the console.
_QUIET_LOGGERS = ("websockets", "aiohttp", "asyncio")


class _SessionLogFilter(Filter):
    """File filter: everything from batch_stt and the running script, INFO+ from libraries."""

    def filter(self, record: LogRecord) -> bool:
        if record.name == "__main__" or record.name.startswith("batch_stt."):
            return True
        return record.levelno >= INFO


def setup_logging(level: Optional[int] = None) -> Path:
    """
    Configure console and per-run file logging for a transcription session.

    The console level follows LOG_LEVEL (PROD = WARNING, otherwise DEBUG)
    unless ``level`` is given. The file under LOG_PATH always gets DEBUG
    from project loggers.

    Returns the path to the log file.
    """
    if level is None:
        level = WARNING if LOG_LEVEL == "PROD" else DEBUG

    basicConfig(level=level, format=_LOG_FORMAT)
    for name in _QUIET_LOGGERS:
        getLogger(name).setLevel(INFO)

    LOG_PATH.mkdir(parents=True, exist_ok=True)
    log_filename = LOG_PATH / f"session_{datetime.now().strftime('%Y%m%d_%H%M%S')}.log"
    file_handler = FileHandler(log_filename, encoding="utf-8")
    file_handler.setLevel(DEBUG)
    file_handler.setFormatter(Formatter(_LOG_FORMAT))
    file_handler.addFilter(_SessionLogFilter())
    getLogger().addHandler(file_handler)

    getLogger(__name__).info("Session log: %s", log_filename)
    return log_filename


def utc_timestamp() -> str:
    """Current UTC time as ISO-8601 with milliseconds and a Z suffix."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")
