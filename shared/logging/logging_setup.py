from datetime import datetime
from pytz import timezone
import logging.config
import logging
import os
from logging import Logger


ANSI_RESET = "\033[0m"
ANSI_COLORS: dict[str, str] = {
    "cyan": "\033[36m",
    "green": "\033[32m",
    "yellow": "\033[33m",
    "red": "\033[31m",
    "magenta": "\033[35m",
    "blue": "\033[34m",
    "white": "\033[37m",
}

LEVEL_PREFIXES: dict[int, str] = {
    logging.WARNING: "⚠️ ",
    logging.ERROR: "⛔ ",
    logging.CRITICAL: "⛔ ",
}

# database drivers and http clients log every request at INFO/DEBUG
LIBRARY_LOGGERS = ("httpx", "httpcore", "asyncpg", "aiosqlite", "pypdf")

LOG_FORMAT = "%(asctime)s - %(levelname)s - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def resolve_level(value: str | None = None) -> int:
    """Map a LOG_LEVEL value (name, case-insensitive) to a logging level, INFO when unknown."""
    name = (value if value is not None else os.getenv("LOG_LEVEL", "info")).upper()
    level = logging.getLevelName(name)
    return level if isinstance(level, int) else logging.INFO


class TimezoneFormatter(logging.Formatter):
    """Formats timestamps in the configured timezone and prefixes warnings and errors."""

    def __init__(self, tz_name: str, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.tz = timezone(tz_name)

    def formatTime(self, record, datefmt=None):
        dt = datetime.fromtimestamp(record.created, self.tz)
        return dt.strftime(datefmt) if datefmt else dt.isoformat()

    def format(self, record) -> str:
        try:
            message = record.getMessage()
        except (TypeError, ValueError):
            # malformed %-args, keep the raw message instead of dropping the record
            message = str(record.msg)

        # the record is shared between handlers, restore it after formatting
        msg, args = record.msg, record.args
        record.msg = LEVEL_PREFIXES.get(record.levelno, "") + message
        record.args = ()
        try:
            return super().format(record)
        finally:
            record.msg, record.args = msg, args


class ColoredFormatter(TimezoneFormatter):
    """Console formatter that colors a line when the record carries a ``color`` attribute."""

    def format(self, record) -> str:
        line = super().format(record)
        ansi = ANSI_COLORS.get(getattr(record, "color", None) or "", "")
        return f"{ansi}{line}{ANSI_RESET}" if ansi and line else line


class ColorLogger:
    """Wraps a :class:`logging.Logger` and adds an optional ``color=`` keyword to the log methods.

    Usage::

        logger.info("Sync cycle finished", color="green")

    Only the console handler renders colors, the log file stays plain text.
    """

    def __init__(self, logger: Logger):
        self._logger = logger

    def _log(self, level: int, msg, args, color: str | None, kwargs: dict, exc_info=None) -> None:
        if color is not None:
            kwargs = {**kwargs, "extra": {**(kwargs.get("extra") or {}), "color": color}}
        if exc_info is not None:
            kwargs.setdefault("exc_info", exc_info)
        # stacklevel points the record at the caller instead of this wrapper
        kwargs.setdefault("stacklevel", 3)
        self._logger.log(level, msg, *args, **kwargs)

    def debug(self, msg, *args, color: str | None = None, **kwargs):
        self._log(logging.DEBUG, msg, args, color, kwargs)

    def info(self, msg, *args, color: str | None = None, **kwargs):
        self._log(logging.INFO, msg, args, color, kwargs)

    def warning(self, msg, *args, color: str | None = None, **kwargs):
        self._log(logging.WARNING, msg, args, color, kwargs)

    def error(self, msg, *args, color: str | None = None, **kwargs):
        self._log(logging.ERROR, msg, args, color, kwargs)

    def critical(self, msg, *args, color: str | None = None, **kwargs):
        self._log(logging.CRITICAL, msg, args, color, kwargs)

    def exception(self, msg, *args, color: str | None = None, **kwargs):
        self._log(logging.ERROR, msg, args, color, kwargs, exc_info=True)

    def log(self, level: int, msg, *args, color: str | None = None, **kwargs):
        self._log(level, msg, args, color, kwargs)

    def __getattr__(self, name):
        # setLevel, handlers, isEnabledFor, ...
        return getattr(self._logger, name)


def _logging_config(log_file: str, tz_name: str, level: int) -> dict:
    formatter = {"format": LOG_FORMAT, "datefmt": DATE_FORMAT, "tz_name": tz_name}
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "plain": {"()": TimezoneFormatter, **formatter},
            "colored": {"()": ColoredFormatter, **formatter},
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "formatter": "colored",
                "level": level,
                "stream": "ext://sys.stdout",
            },
            "file": {
                "class": "logging.FileHandler",
                "formatter": "plain",
                "level": level,
                "filename": log_file,
                "encoding": "utf-8",
            },
        },
        "root": {"handlers": ["console", "file"], "level": level},
    }


def setup_logging(name: str = "knowledge") -> ColorLogger:
    """Configure console and file logging and return the application logger.

    Logs go to stdout and to ``$ROOT_DIR/logs/app.log`` (current directory when
    ROOT_DIR is unset). Timestamps use ``$TIMEZONE``, the level comes from
    ``$LOG_LEVEL``. Library loggers stay at WARNING unless the level is DEBUG.
    """
    level = resolve_level()
    log_dir = os.path.join(os.getenv("ROOT_DIR") or os.getcwd(), "logs")
    os.makedirs(log_dir, exist_ok=True)

    logging.config.dictConfig(
        _logging_config(os.path.join(log_dir, "app.log"), os.getenv("TIMEZONE", "Europe/Berlin"), level)
    )

    library_level = logging.DEBUG if level <= logging.DEBUG else logging.WARNING
    for library in LIBRARY_LOGGERS:
        logging.getLogger(library).setLevel(library_level)

    return ColorLogger(logging.getLogger(name))
