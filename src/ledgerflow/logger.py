import logging
import logging.config
import os
import sys

DEFAULT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
LOG_FILENAME = "ledgerflow.log"

# Chatty third-party clients stay at WARNING unless LOG_LEVEL is DEBUG.
QUIET_LOGGERS = ("httpx", "httpcore", "openai")


class ColourizedFormatter(logging.Formatter):
    """
    Formatter that wraps the level name in ANSI colours.
    """
    GREY = "\x1b[90m"
    GREEN = "\x1b[32m"
    YELLOW = "\x1b[33m"
    RED = "\x1b[31m"
    BOLD_RED = "\x1b[31;1m"
    RESET = "\x1b[0m"

    LEVEL_COLORS = {
        logging.DEBUG: GREY,
        logging.INFO: GREEN,
        logging.WARNING: YELLOW,
        logging.ERROR: RED,
        logging.CRITICAL: BOLD_RED,
    }

    def __init__(self, fmt: str | None = None, datefmt: str | None = None, use_colors: bool = True) -> None:
        super().__init__(fmt=fmt, datefmt=datefmt)
        self.use_colors = use_colors

    def format(self, record: logging.LogRecord) -> str:
        if not self.use_colors or record.levelno not in self.LEVEL_COLORS:
            return super().format(record)

        original = record.levelname
        record.levelname = f"{self.LEVEL_COLORS[record.levelno]}{original}{self.RESET}"
        try:
            return super().format(record)
        finally:
            record.levelname = original


def _colors_enabled() -> bool:
    raw = os.getenv("LOG_COLORS")
    if raw is not None:
        return raw.strip().lower() in {"1", "true", "yes", "on"}
    return sys.stdout.isatty()


def get_logging_config() -> dict:
    log_level_name = os.getenv("LOG_LEVEL", "INFO").upper()
    log_dir = os.getenv("LOG_DIR")
    handlers: dict[str, dict] = {
        "console": {
            "class": "logging.StreamHandler",
            "stream": "ext://sys.stdout",
            "formatter": "console",
        },
    }
    root_handlers = ["console"]
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
        handlers["file"] = {
            "class": "logging.FileHandler",
            "filename": os.path.join(log_dir, LOG_FILENAME),
            "formatter": "plain",
        }
        root_handlers.append("file")

    loggers: dict[str, dict] = {
        "": {
            "handlers": root_handlers,
            "level": log_level_name,
        },
    }
    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        loggers[name] = {"handlers": root_handlers, "level": "INFO", "propagate": False}
    quiet_level = "DEBUG" if log_level_name == "DEBUG" else "WARNING"
    for name in QUIET_LOGGERS:
        loggers[name] = {"level": quiet_level}

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "console": {
                "()": "ledgerflow.logger.ColourizedFormatter",
                "fmt": DEFAULT_FORMAT,
                "use_colors": _colors_enabled(),
            },
            "plain": {
                "format": DEFAULT_FORMAT,
            },
        },
        "handlers": handlers,
        "loggers": loggers,
    }


def setup_logging() -> None:
    logging.config.dictConfig(get_logging_config())


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
