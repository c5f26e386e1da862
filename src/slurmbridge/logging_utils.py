# SPDX-FileCopyrightText: Copyright (c) 2025 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

"""
Logging utilities for slurmbridge.

Provides consistent logging configuration, emoji constants, and helper functions
for formatted output from the daemon and the hook CLI.
"""

import logging
import sys

# ============================================================================
# Emoji Constants
# ============================================================================

CHECK = "✓"
ROCKET = "🚀"
GEAR = "⚙"
WARN = "⚠"
ALERT = "🚨"


# ============================================================================
# Logging Configuration
# ============================================================================


def get_logger(name: str) -> logging.Logger:
    """Get a logger with the given name.

    Args:
        name: Logger name (typically __name__)

    Returns:
        Configured logger instance
    """
    return logging.getLogger(name)


def setup_logging(
    level: int = logging.INFO,
    format_string: str | None = None,
    date_format: str | None = None,
    stream=None,
) -> None:
    """Configure logging for slurmbridge.

    Sets up the root logger with consistent formatting. The gate hook passes
    ``stream=sys.stderr`` because its stdout carries the verdict JSON.

    Args:
        level: Logging level (default: INFO)
        format_string: Custom format string (default: timestamp + level + logger + message)
        date_format: Custom date format (default: ISO-like)
        stream: Output stream (default: stdout)
    """
    if format_string is None:
        format_string = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

    if date_format is None:
        date_format = "%Y-%m-%d %H:%M:%S"

    logging.basicConfig(
        level=level,
        format=format_string,
        datefmt=date_format,
        stream=stream or sys.stdout,
        force=True,
    )

    # Reduce noise from third-party libraries
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("kubernetes").setLevel(logging.WARNING)


# ============================================================================
# Output Helpers
# ============================================================================


def section(title: str, emoji: str = GEAR, logger: logging.Logger | None = None) -> None:
    """Log a section header."""
    if logger is None:
        logger = logging.getLogger()

    logger.info("")
    logger.info("%s %s", emoji, title)
    logger.info("-" * 60)


def success(message: str, logger: logging.Logger | None = None) -> None:
    """Log a success message with checkmark."""
    if logger is None:
        logger = logging.getLogger()
    logger.info("%s %s", CHECK, message)


def alert(message: str, logger: logging.Logger | None = None) -> None:
    """Log an operational alert that needs a human.

    Alerts go out at ERROR so log-based alerting picks them up.
    """
    if logger is None:
        logger = logging.getLogger()
    logger.error("%s ALERT: %s", ALERT, message)


def warn(message: str, logger: logging.Logger | None = None) -> None:
    """Log a warning message with warning emoji."""
    if logger is None:
        logger = logging.getLogger()
    logger.warning("%s %s", WARN, message)
