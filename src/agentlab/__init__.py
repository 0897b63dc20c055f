# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/agentlab

"""
agentlab: command line client for the agentlabd sandbox daemon
"""

__version__ = "0.1.0"
__author__ = "Gowtham A Rao"
__email__ = "gowtham.rao@coreason.ai"

from .api import APIClient
from .config import ClientConfig, ClientSettings
from .errors import APIError, CLIError, UsageError

__all__ = [
    "APIClient",
    "APIError",
    "CLIError",
    "ClientConfig",
    "ClientSettings",
    "UsageError",
    "__version__",
]
