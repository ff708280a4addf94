"""
logging_config.py — Logging Setup for the Print Order Service

Called once when the API process starts. Every module then logs through the
root handlers installed here, so payment and status messages land in one
place regardless of which component wrote them.

Features:
    • Log file for payment reviews plus stdout for the container runtime
    • PID in every line, uvicorn may run several workers
    • Level taken from LOG_LEVEL
    • pika and httpx limited to warnings
"""

import logging
import sys

from . import config


def setup_logging():
    """
    Installs the file and stdout handlers on the root logger.

    Line format: timestamp, level, PID, logger name, message. Order-scoped
    messages carry an `[Order: <id>]` prefix written by the caller.
    """
    log_format = '%(asctime)s - %(levelname)s - [PID:%(process)d] - %(name)s - %(message)s'

    logging.basicConfig(
        level=getattr(logging, config.LOG_LEVEL.upper(), logging.INFO),
        format=log_format,
        handlers=[
            logging.FileHandler(config.LOG_FILE),
            logging.StreamHandler(sys.stdout)
        ]
    )

    # Connection chatter from the broker and gateway clients
    logging.getLogger("pika").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)


def get_logger(name):
    """Named logger sharing the handlers installed by `setup_logging()`."""
    return logging.getLogger(name)
