"""
Logging for digits-trt.

Everything under the "digits_trt" logger goes to a dated file in
<base_dir>/logs/ and, optionally, to stderr. TensorRT's own messages arrive on
"digits_trt.tensorrt" through the engine's ILogger bridge and have a separate
threshold, so builder chatter stays out of the log unless asked for.
"""

import logging
import os
import sys
from datetime import date
from pathlib import Path
from typing import List, Optional

PACKAGE = "digits_trt"
TENSORRT_LOGGER = f"{PACKAGE}.tensorrt"

LOG_FORMAT = "[%(asctime)s] %(name)s %(levelname)s: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Handlers installed by the last setup_logging() call
_installed: List[logging.Handler] = []


def log_file_path(base_dir: Optional[str] = None, day: Optional[date] = None) -> Path:
    base = Path(base_dir or os.environ.get("DIGITS_TRT_DATA", "data"))
    day = day or date.today()
    return base.resolve() / "logs" / f"{PACKAGE}_{day:%Y%m%d}.log"


def setup_logging(base_dir: Optional[str] = None, log_level: int = logging.INFO,
                  tensorrt_level: int = logging.WARNING, to_console: bool = True) -> Path:
    """
    Send package logs to a daily file (and stderr).

    Calling it again replaces the handlers of the previous call.

    Args:
        base_dir: Logs go to base_dir/logs/; defaults to $DIGITS_TRT_DATA or "data"
        log_level: Threshold for digits_trt loggers
        tensorrt_level: Threshold for messages forwarded from TensorRT.
            logging.DEBUG lets VERBOSE builder output through.
        to_console: Also log to stderr

    Returns:
        Path of the log file
    """
    path = log_file_path(base_dir)
    path.parent.mkdir(parents=True, exist_ok=True)

    package_log = logging.getLogger(PACKAGE)
    for handler in _installed:
        package_log.removeHandler(handler)
        handler.close()
    _installed.clear()

    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)
    handlers = [logging.FileHandler(path, encoding="utf-8")]
    if to_console:
        handlers.append(logging.StreamHandler(sys.stderr))
    for handler in handlers:
        handler.setFormatter(formatter)
        package_log.addHandler(handler)
        _installed.append(handler)

    # Handler levels stay open; the loggers decide
    package_log.setLevel(log_level)
    logging.getLogger(TENSORRT_LOGGER).setLevel(tensorrt_level)

    package_log.info("Logging to %s", path)
    return path


def get_logger(name: str) -> logging.Logger:
    """Logger under the package namespace, e.g. get_logger("tensorrt")."""
    if name == PACKAGE or name.startswith(PACKAGE + "."):
        return logging.getLogger(name)
    return logging.getLogger(f"{PACKAGE}.{name}")
