import logging
import os
import sys
import time
from .config import KeeperConfig


_RESET = "\033[0m"
_BOLD = "\033[1m"
_DIM = "\033[2m"
_CYAN = "\033[36m"
_MAGENTA = "\033[35m"
_GREEN = "\033[32m"
_YELLOW = "\033[33m"
_COLORS = {
    "DEBUG": "\033[36m",
    "INFO": "\033[32m",
    "WARNING": "\033[33m",
    "ERROR": "\033[31m",
    "CRITICAL": "\033[31m",
}


def _stream_supports_color() -> bool:
    if os.getenv("NO_COLOR"):
        return False
    force = os.getenv("FORCE_COLOR", "").strip().lower()
    if force in {"1", "true", "yes"}:
        return True
    return bool(sys.stderr.isatty())


class ColorFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        level_name = record.levelname.upper()
        color = _COLORS.get(level_name, "")
        if not color:
            return message

        # Highlight the events an operator watches for when tailing the keeper.
        if "DRY RUN" in message:
            painted = f"{_BOLD}{_CYAN}[DRY RUN] {message}{_RESET}"
        elif "collect submitted" in message:
            painted = f"{_BOLD}{_MAGENTA}[SUBMIT] {message}{_RESET}"
        elif "collect succeeded" in message:
            painted = f"{_BOLD}{_GREEN}[SUCCESS] {message}{_RESET}"
        elif "backing off" in message:
            painted = f"{_BOLD}{_YELLOW}[BACKOFF] {message}{_RESET}"
        elif "ignore_backoff" in message:
            painted = f"{_BOLD}{_YELLOW}[IGNORE BACKOFF] {message}{_RESET}"
        elif "Sleeping seconds=" in message:
            painted = f"{_DIM}{color}{message}{_RESET}"
        else:
            painted = f"{color}{message}{_RESET}"
        return painted


def setup_logging(cfg: KeeperConfig) -> logging.Logger:
    level = getattr(logging, cfg.log_level, logging.INFO)
    logger = logging.getLogger("opensub.keeper")
    logger.setLevel(level)
    logger.handlers.clear()
    logger.propagate = False

    formatter = logging.Formatter(
        fmt="%(asctime)sZ %(levelname)s %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
    )
    formatter.converter = time.gmtime

    stream_handler = logging.StreamHandler()
    if _stream_supports_color():
        color_formatter = ColorFormatter(
            fmt="%(asctime)sZ %(levelname)s %(message)s",
            datefmt="%Y-%m-%dT%H:%M:%S",
        )
        color_formatter.converter = time.gmtime
        stream_handler.setFormatter(color_formatter)
    else:
        stream_handler.setFormatter(formatter)
    logger.addHandler(stream_handler)

    if cfg.log_path:
        cfg.log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(cfg.log_path, encoding="utf-8")
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    return logger
