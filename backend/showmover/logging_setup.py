# backend/showmover/logging_setup.py
import logging
import sys

LOG_FORMAT = "%(asctime)s | %(levelname)-7s | %(name)s | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_HANDLER_NAME = "showmover-console"


def setup_logging(level: str = "info"):
    resolved = logging.getLevelName(level.strip().upper())
    if not isinstance(resolved, int):
        resolved = logging.INFO

    root = logging.getLogger()
    root.setLevel(resolved)

    for handler in root.handlers:
        if handler.get_name() == _HANDLER_NAME:
            handler.setLevel(resolved)
            return

    ch = logging.StreamHandler(sys.stdout)
    ch.set_name(_HANDLER_NAME)
    ch.setLevel(resolved)
    ch.setFormatter(logging.Formatter(LOG_FORMAT, DATE_FORMAT))
    root.addHandler(ch)
