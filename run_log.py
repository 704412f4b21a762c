#!/usr/bin/env python3
"""
Run Log

Leveled log stream for one maintenance run. Every record goes to an
append-only plain-text log file and, colored by level, to the rich console.
Adds a SUCCESS level between INFO and WARNING.
"""

import logging
from pathlib import Path

from console_ui import ConsoleUI

LOGGER_NAME = "therapeia"

SUCCESS = 25
logging.addLevelName(SUCCESS, "SUCCESS")

LOG_FORMAT = "[%(asctime)s] %(levelname)s: %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"
CONSOLE_DATEFMT = "%H:%M:%S"

logger = logging.getLogger(LOGGER_NAME)


def log_success(log: logging.Logger, message: str, *args):
    """Log a message at the SUCCESS level"""
    log.log(SUCCESS, message, *args)


class ConsoleUIHandler(logging.Handler):
    """Logging handler that renders records through the ConsoleUI"""

    def __init__(self, ui: ConsoleUI):
        super().__init__()
        self.ui = ui

    def emit(self, record: logging.LogRecord):
        try:
            message = self.format(record)
            if record.levelno >= logging.ERROR:
                self.ui.print_error(message)
            elif record.levelno >= logging.WARNING:
                self.ui.print_warning(message)
            elif record.levelno >= SUCCESS:
                self.ui.print_success(message)
            elif record.levelno >= logging.INFO:
                self.ui.print_info(message)
            else:
                self.ui.print_debug(message)
        except Exception:
            self.handleError(record)


def setup_run_log(log_path: Path, ui: ConsoleUI, verbose: bool = False) -> logging.Logger:
    """Attach the file and console handlers for a run.

    Args:
        log_path: Log file for this run (opened in append mode)
        ui: Console the console handler renders to
        verbose: Lower the level to DEBUG

    Returns:
        The configured "therapeia" logger
    """
    close_run_log()

    level = logging.DEBUG if verbose else logging.INFO
    logger.setLevel(level)
    logger.propagate = False

    log_path.parent.mkdir(parents=True, exist_ok=True)
    file_handler = logging.FileHandler(log_path, mode="a", encoding="utf-8")
    file_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=LOG_DATEFMT))
    logger.addHandler(file_handler)

    console_handler = ConsoleUIHandler(ui)
    console_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=CONSOLE_DATEFMT))
    logger.addHandler(console_handler)

    return logger


def close_run_log():
    """Flush and detach every handler of the run logger"""
    for handler in list(logger.handlers):
        handler.flush()
        handler.close()
        logger.removeHandler(handler)
