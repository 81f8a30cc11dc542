# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Logging utilities for the relay.

The actual logging setup (level, handlers, format) is configured via
``logging.basicConfig()`` in the entry points (``server.py`` and ``cli.py``)
to avoid duplicate handlers.

Example:
    Typical usage in a module::

        from moperator.logger import get_logger

        logger = get_logger("RetryQueue")
        logger.info("Retry pass completed")
"""

import logging


def get_logger(name: str = "Moperator") -> logging.Logger:
    """Retrieve a logger instance.

    Args:
        name: The logger name. Defaults to "Moperator".

    Returns:
        A ``logging.Logger`` instance bound to the given name.
    """
    return logging.getLogger(name)
