# Copyright (c) 2025.
# This file is part of whitened-lsq, released under the MIT License.
"""Logger factory shared by all whitened-lsq modules."""

from __future__ import annotations

import logging
import os

from .config import get_config


def get_logger(name: str) -> logging.Logger:
    """
    Return a logger with the given name.

    Logs to the console at the configured level. If ``WHITENED_LSQ_LOG_FILE``
    is set, DEBUG and above are also written to that file.
    """
    logger = logging.getLogger(name)

    if not logger.handlers:  # avoid duplicate handlers on reload
        logger.setLevel(logging.DEBUG)

        ch = logging.StreamHandler()
        ch.setLevel(get_config().log_level)
        ch.setFormatter(logging.Formatter("%(levelname)s: %(name)s: %(message)s"))
        logger.addHandler(ch)

        log_file = os.environ.get("WHITENED_LSQ_LOG_FILE")
        if log_file:
            fh = logging.FileHandler(log_file)
            fh.setLevel(logging.DEBUG)
            fh.setFormatter(
                logging.Formatter("%(asctime)s | %(name)s | %(levelname)s | %(message)s")
            )
            logger.addHandler(fh)

        logger.propagate = False

    return logger
