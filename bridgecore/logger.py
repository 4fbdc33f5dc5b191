# ⚠️ DISCLAIMER
# This software communicates directly with live vehicle systems.
# You use this software entirely at your own risk.
#
# The developers, contributors, and any associated parties accept no liability for:
# - Damage to vehicles, ECUs, batteries, or electronics
# - Data loss, unintended resets, or corrupted configurations
# - Physical injury, legal consequences, or financial loss
#
# This tool is intended only for qualified professionals who
# understand the risks of direct OBD/CAN access.

# File: bridgecore/logger.py
"""
Unified logging for bridgecore.

- Console: colored levels, INFO by default (DEBUG if BRIDGE_DEBUG_MODE is set)
- File: Timed rotating logs (daily), keeps last 7 days, full DEBUG detail
- Communications: "bridgecore.comm" carries TX/RX hex dumps when enabled
- Safe to call setup_logging() repeatedly without duplicating handlers
"""

from __future__ import annotations

import logging
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path
from typing import Optional

import colorlog

from . import config

COMM_LOGGER_NAME = "bridgecore.comm"

# Internal module-level guard so we don't add handlers twice
_INITIALIZED = False


def _ensure_log_dir(log_dir: Path) -> Path:
    log_dir = Path(log_dir).expanduser().resolve()
    log_dir.mkdir(parents=True, exist_ok=True)
    return log_dir


def _build_console_handler(debug: bool) -> logging.Handler:
    ch = logging.StreamHandler()
    ch.setLevel(logging.DEBUG if debug else logging.INFO)
    ch.set_name("console")
    ch.setFormatter(colorlog.ColoredFormatter(
        "%(log_color)s%(asctime)s [%(levelname)-8s] %(name)-24s: %(message)s",
        datefmt="%H:%M:%S",
        log_colors={
            "DEBUG": "cyan",
            "INFO": "green",
            "WARNING": "yellow",
            "ERROR": "red",
            "CRITICAL": "bold_red",
        },
    ))
    return ch


def _build_file_handler(log_path: Path) -> logging.Handler:
    fh = TimedRotatingFileHandler(
        filename=str(log_path / "bridgecore.log"),
        when="midnight",
        interval=1,
        backupCount=7,
        encoding="utf-8",
        delay=True,              # don't create file until first log
        utc=False
    )
    fh.setLevel(logging.DEBUG)   # always keep full detail in file
    fh.set_name("file")
    fh.setFormatter(logging.Formatter(
        fmt="%(asctime)s | %(levelname)-7s | %(name)s | %(threadName)s | %(filename)s:%(lineno)d | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    ))
    return fh


def setup_logging(log_dir: Optional[Path] = None, debug: Optional[bool] = None,
                  to_file: bool = True) -> None:
    """
    Idempotent setup: safe to call multiple times.
    Attaches console + rotating file handlers to the root logger.
    """
    global _INITIALIZED
    if _INITIALIZED:
        return

    debug = config.DEBUG_MODE if debug is None else debug
    root = logging.getLogger()
    root.setLevel(logging.DEBUG)  # let handlers filter levels

    # Remove any pre-existing handlers to avoid duplicates (e.g., when reloading)
    for h in list(root.handlers):
        root.removeHandler(h)

    root.addHandler(_build_console_handler(debug))
    if to_file:
        root.addHandler(_build_file_handler(_ensure_log_dir(log_dir or config.LOG_DIR)))

    # Frame dumps are noisy; only let them through on request
    logging.getLogger(COMM_LOGGER_NAME).setLevel(
        logging.DEBUG if config.LOG_COMMUNICATIONS else logging.INFO
    )

    _INITIALIZED = True


def log_frame(data: bytes, outgoing: bool) -> None:
    """Hex dump of one TX or RX buffer on the communications logger"""
    comm = logging.getLogger(COMM_LOGGER_NAME)
    if comm.isEnabledFor(logging.DEBUG):
        comm.debug("%s [%d]: %s", "TX" if outgoing else "RX", len(data), bytes(data).hex(" "))
