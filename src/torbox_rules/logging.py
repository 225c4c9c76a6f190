"""
Logging setup for torbox-rules

Console output goes to stdout at the configured level; the log file under the
config directory receives everything at DEBUG.
"""

import sys
import logging
from typing import Optional

LOG_FORMAT_SIMPLE = '%(asctime)s - %(levelname)s - %(message)s'
LOG_FORMAT_DETAILED = '%(asctime)s - %(levelname)s - [%(name)s:%(module)s.%(funcName)s:%(lineno)d] - %(message)s'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'


def setup_logging(config, trace_mode: Optional[bool] = False):
    """
    Configure root logger with console and file handlers

    Args:
        config: Config object providing get_log_level() and get_log_file()
        trace_mode: Use detailed format with module/function/line information
    """
    level_name = config.get_log_level()
    level = getattr(logging, str(level_name).upper(), logging.INFO)
    log_format = LOG_FORMAT_DETAILED if trace_mode else LOG_FORMAT_SIMPLE

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)

    # Avoid duplicate handlers when called more than once
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
        handler.close()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(logging.Formatter(log_format, datefmt=DATE_FORMAT))
    root_logger.addHandler(console_handler)

    log_file = config.get_log_file()
    try:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, encoding='utf-8')
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter(log_format, datefmt=DATE_FORMAT))
        root_logger.addHandler(file_handler)
    except (OSError, PermissionError) as e:
        print(f"WARNING: Failed to setup file logging at {log_file}: {type(e).__name__}: {e}", file=sys.stderr)
        print("WARNING: Continuing with console logging only", file=sys.stderr)

    logging.getLogger('urllib3').setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """Get a module logger"""
    return logging.getLogger(name)
