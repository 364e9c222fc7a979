import logging
import sys
from typing import Dict, Optional

COLORS: Dict[str, str] = {
    "DEBUG": "\033[94m",    # Blue
    "INFO": "\033[92m",     # Green
    "WARNING": "\033[93m",  # Yellow
    "ERROR": "\033[91m",    # Red
    "CRITICAL": "\033[91m\033[1m", # Bold Red
    "RESET": "\033[0m",
}

NOISY_LOGGERS = ("web3", "websockets", "urllib3", "aiohttp.access")


class ColorFormatter(logging.Formatter):
    """Colors the level name and message of each record."""

    def format(self, record: logging.LogRecord) -> str:
        color = COLORS.get(record.levelname, COLORS["RESET"])
        reset = COLORS["RESET"]
        # Work on a copy so other handlers see the plain record
        record = logging.makeLogRecord(record.__dict__)
        record.levelname = f"{color}{record.levelname}{reset}"
        record.msg = f"{color}{record.msg}{reset}"
        return super().format(record)


def configure_logging(level: int = logging.INFO) -> None:
    """Configures logging with a colored formatter."""
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(ColorFormatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s"))

    logging.basicConfig(level=level, handlers=[handler], force=True)
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def getLogger(name: Optional[str] = None, level: int = logging.INFO) -> logging.Logger:
    """Returns a logger instance, configuring logging if it hasn't been yet."""
    if not logging.getLogger().hasHandlers():
        configure_logging(level)
    return logging.getLogger(name if name else "Apex")
