"""
Logging configuration for the preprocessing pipelines.
"""

import logging
import os
import sys
import time
from contextlib import contextmanager
from typing import Optional, Union

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
BANNER_WIDTH = 70


def setup_logging(
    level: Union[str, int] = 'INFO',
    log_file: Optional[str] = None,
    stream=None
) -> logging.Logger:
    """
    Configure the package logger with a console handler and optional file.

    Parameters:
    -----------
    level : Union[str, int]
        Logging level name or constant (default: 'INFO')
    log_file : Optional[str]
        Also write records to this file
    stream : Optional[IO]
        Console stream (default: sys.stdout). The MCP server passes
        sys.stderr so stdout stays free for the protocol.

    Returns:
    --------
    logging.Logger : The 'rs_preprocessing' logger
    """
    if isinstance(level, str):
        level = getattr(logging, level.upper())

    logger = logging.getLogger('rs_preprocessing')
    logger.handlers.clear()
    logger.setLevel(level)

    formatter = logging.Formatter(LOG_FORMAT, datefmt='%Y-%m-%d %H:%M:%S')

    console_handler = logging.StreamHandler(stream or sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    if log_file:
        directory = os.path.dirname(log_file)
        if directory:
            os.makedirs(directory, exist_ok=True)
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    return logger


def log_section(logger: logging.Logger, title: str) -> None:
    """Log a '=====' banner marking a pipeline step."""
    logger.info("=" * BANNER_WIDTH)
    logger.info(title)
    logger.info("=" * BANNER_WIDTH)


@contextmanager
def timer(logger: logging.Logger, task_name: str):
    """
    Log the elapsed time of a block.

    Example:
    --------
    >>> with timer(logger, "Mosaicking 2019"):
    ...     mosaic(files, 'mosaic_2019.tif')
    """
    start_time = time.time()
    try:
        yield
    finally:
        logger.info(f"{task_name} completed in {time.time() - start_time:.2f} seconds")
