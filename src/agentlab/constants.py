# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/agentlab

"""Shared constants for the agentlab client."""

DEFAULT_SOCKET_PATH = "/run/agentlab/agentlabd.sock"
DEFAULT_REQUEST_TIMEOUT = 600.0  # 10 minutes
MAX_RESPONSE_BYTES = 4 << 20

# Tailing
DEFAULT_LOG_TAIL = 50
DEFAULT_EVENT_LIMIT = 200
MAX_EVENT_LIMIT = 1000
EVENT_POLL_INTERVAL = 2.0

# Artifacts
ARTIFACT_BUNDLE_NAME = "agentlab-artifacts.tar.gz"

# Stateful workspaces
DEFAULT_STATEFUL_WORKSPACE_SIZE_GB = 80
DEFAULT_STATEFUL_WORKSPACE_STORAGE = "local-zfs"

# SSH
DEFAULT_SSH_USER = "agent"
DEFAULT_SSH_PORT = 22
DEFAULT_IDENTITY_PATH = "/etc/agentlab/keys/agentlab_id_ed25519"
DEFAULT_AGENT_SUBNET = "10.77.0.0/16"
TAILSCALE_IFACE_PREFIX = "tailscale"
SANDBOX_POLL_INTERVAL = 2.0
SSH_PROBE_INTERVAL = 1.0
SSH_PROBE_TIMEOUT = 0.75
ROUTE_CHECK_TIMEOUT = 0.5
JUMP_PROBE_TIMEOUT = 10.0
TOUCH_TIMEOUT = 2.0

TERMINAL_SANDBOX_STATES = frozenset({"DESTROYED", "FAILED", "TIMEOUT"})

# Host
DEFAULT_HOST_CONFIG_PATH = "/etc/agentlab/config.yaml"
DEFAULT_CONTROL_PORT = 8845
DEFAULT_BRIDGE = "vmbr1"
COMMAND_OUTPUT_LIMIT = 2048

# Environment
ENV_ENDPOINT = "AGENTLAB_ENDPOINT"
ENV_TOKEN = "AGENTLAB_TOKEN"
ENV_SSH_IDENTITY = "AGENTLAB_SSH_IDENTITY"
