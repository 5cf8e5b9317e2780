from datetime import datetime
from logging import getLogger, basicConfig, DEBUG, INFO, WARNING, FileHandler, Formatter, Filter
from pathlib import Path
from typing import Optional

from config import LOG_LEVEL, LOG_PATH


# ---------------------------------------------------------------------------
# Logging setup
# ---------------------------------------------------------------------------

# Prefixes for project modules (DEBUG level in file)
PROJECT_PREFIXES = ("voice_ai.", "__main__")

# Chatty third party loggers, kept at INFO
THIRD_PARTY_LOGGERS = ("websockets.client", "httpx", "httpcore", "asyncio")


class _ThirdPartyLogFilter(Filter):
    """Filter that only passes records from 3rd party modules at INFO+."""
    def filter(self, record):
        is_project = record.name.startswith(PROJECT_PREFIXES)
        if is_project:
            return True  # project code: pass all levels
        return record.levelno >= INFO  # 3rd party: INFO and above only


_LOG_FORMAT = "%(asctime)s %(levelname)s:%(name)s:%(funcName)s(): %(message)s"


def setup_logging(console_level: Optional[int] = None, log_path: Path = LOG_PATH) -> Path:
    """
    Configure logging for scripts using the library (the library never calls this).

    Console: DEV mode = DEBUG, PROD mode = WARNING, unless console_level is given.
    File: Always DEBUG for project code, INFO for 3rd party.

    Returns the path to the log file.
    """
    if console_level is None:
        console_level = DEBUG if LOG_LEVEL == "DEV" else WARNING

    basicConfig(level=console_level, format=_LOG_FORMAT)
    for name in THIRD_PARTY_LOGGERS:
        getLogger(name).setLevel(INFO)

    # File handler: DEBUG for project code, INFO for 3rd party
    log_path.mkdir(parents=True, exist_ok=True)
    log_filename = log_path / f"app_{datetime.now().strftime('%Y%m%d_%H%M%S')}.log"
    file_handler = FileHandler(log_filename, encoding="utf-8")
    file_handler.setLevel(DEBUG)
    file_handler.setFormatter(Formatter(_LOG_FORMAT))
    file_handler.addFilter(_ThirdPartyLogFilter())
    root = getLogger()
    root.addHandler(file_handler)
    # basicConfig is a no-op when handlers exist; the file handler still needs DEBUG records
    root.setLevel(DEBUG)
    for handler in root.handlers:
        if handler is not file_handler and not isinstance(handler, FileHandler):
            handler.setLevel(console_level)

    getLogger(__name__).info("Logging to file: %s", log_filename)
    return log_filename
