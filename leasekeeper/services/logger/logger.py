import logging.config
from enum import IntEnum
from pathlib import Path

from leasekeeper.config.config import config

PATHS = config.get("paths")
ROOT_PATH = Path(PATHS.get("root"))
LOGGER_CONFIG = config.get("logging")


class LogLevel(IntEnum):
    """LogLevel"""

    DEBUG = logging.DEBUG
    INFO = logging.INFO
    WARNING = logging.WARNING
    ERROR = logging.ERROR
    CRITICAL = logging.CRITICAL

    @classmethod
    def _missing_(cls, value):
        """'debug', ' Info ' and unknown values (DEBUG)"""
        if isinstance(value, str):
            _member = cls.__members__.get(value.strip().upper())
            if _member is not None:
                return _member
        return cls.DEBUG


def _anchor_log_files(logging_config: dict) -> dict:
    """File handlers write under paths.root, their directories are created up front."""
    for _handler in logging_config.get("handlers", {}).values():
        _filename = _handler.get("filename")
        if not _filename:
            continue
        _path = ROOT_PATH / _filename
        _path.parent.mkdir(parents=True, exist_ok=True)
        _handler["filename"] = str(_path)
    return logging_config


logging.config.dictConfig(_anchor_log_files(LOGGER_CONFIG))


class MainLogger:
    """Named loggers for the server components, all sharing the `logging` config section."""

    @classmethod
    def get_logger(cls, service_name: str = "MAIN", log_level: str = "DEBUG") -> logging.Logger:
        """Logger for one component.

        Args:
            service_name(str): Logger name, shows up in every record.
            log_level(str): Level name, case insensitive.
        """
        logger = logging.getLogger(service_name)
        logger.setLevel(LogLevel(log_level))
        return logger
