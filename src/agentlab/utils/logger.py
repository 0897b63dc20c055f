# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/agentlab

import os
import sys
from pathlib import Path

from loguru import logger

__all__ = ["logger", "configure_logging"]

DEFAULT_LEVEL = "WARNING"
STDERR_FORMAT = "<level>{level: <8}</level> | {name}:{function}:{line} - {message}"


def configure_logging(level: str | None = None) -> None:
    """(Re)installs the loguru sinks.

    stderr gets ``level`` (or ``AGENTLAB_LOG_LEVEL``, default WARNING) so that
    command output stays readable. ``AGENTLAB_LOG_FILE`` adds a rotating JSON sink.
    """
    logger.remove()
    level = (level or os.environ.get("AGENTLAB_LOG_LEVEL") or DEFAULT_LEVEL).upper()
    logger.add(sys.stderr, level=level, format=STDERR_FORMAT)

    log_file = os.environ.get("AGENTLAB_LOG_FILE", "").strip()
    if log_file:
        path = Path(log_file).expanduser()
        path.parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            path,
            rotation="500 MB",
            retention="10 days",
            serialize=True,
            enqueue=True,
            level="DEBUG",
        )


configure_logging()
