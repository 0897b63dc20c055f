# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/agentlab

"""Read-mostly access to the daemon's host config (``/etc/agentlab/config.yaml``)."""

import os
from pathlib import Path
from typing import Any

import yaml
from loguru import logger
from pydantic import BaseModel, ValidationError, model_validator

from agentlab.constants import DEFAULT_AGENT_SUBNET, DEFAULT_HOST_CONFIG_PATH
from agentlab.errors import ConfigError


class HostConfig(BaseModel):
    """The host config keys the CLI consumes, with the daemon's defaults."""

    config_path: str = DEFAULT_HOST_CONFIG_PATH
    profiles_dir: str = "/etc/agentlab/profiles"
    snippets_dir: str = "/var/lib/vz/snippets"
    snippet_storage: str = "local"
    run_dir: str = "/run/agentlab"
    socket_path: str = ""
    data_dir: str = "/var/lib/agentlab"
    artifact_dir: str = ""
    control_listen: str = ""
    control_auth_token: str = ""
    bootstrap_listen: str = "10.77.0.1:8844"
    artifact_listen: str = "10.77.0.1:8846"
    agent_subnet: str = DEFAULT_AGENT_SUBNET
    claude_skill_bundle_name: str = ""
    claude_skill_bundle_version: str = ""

    model_config = {"extra": "ignore"}

    @model_validator(mode="before")
    @classmethod
    def _drop_empty(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        return {k: str(v).strip() for k, v in data.items() if v is not None and str(v).strip()}

    @model_validator(mode="after")
    def _derive_paths(self) -> "HostConfig":
        if not self.socket_path:
            self.socket_path = os.path.join(self.run_dir, "agentlabd.sock")
        if not self.artifact_dir:
            self.artifact_dir = os.path.join(self.data_dir, "artifacts")
        return self


def load_host_config(path: str | Path = DEFAULT_HOST_CONFIG_PATH) -> tuple[HostConfig, bool]:
    """Loads the host config with PyYAML.

    Returns:
        tuple[HostConfig, bool]: The config (defaults when missing) and whether the file existed.

    Raises:
        ConfigError: If the file exists but is not a YAML mapping.
    """
    path = Path(path)
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return HostConfig(config_path=str(path)), False
    except OSError as e:
        raise ConfigError(f"read host config {path}: {e.strerror or e}") from e
    try:
        data = yaml.safe_load(text) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"parse host config {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"parse host config {path}: expected a mapping")
    try:
        return HostConfig.model_validate({**data, "config_path": str(path)}), True
    except ValidationError as e:
        raise ConfigError(f"parse host config {path}: {e}") from e


def yaml_quote(value: str) -> str:
    """Double-quotes ``value`` for YAML, escaping ``\\`` and ``"``."""
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def find_config_value(text: str, key: str) -> str:
    """Returns the scalar value of a top-level ``key:`` line, or ``""``."""
    prefix = f"{key}:"
    for line in text.splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith("#") or not stripped.startswith(prefix):
            continue
        value = stripped[len(prefix) :].strip()
        if "#" in value:
            value = value[: value.index("#")].strip()
        return value.strip("\"'")
    return ""


def upsert_config_value(text: str, key: str, value: str) -> tuple[str, bool]:
    """Rewrites (or appends) ``key: "value"`` in YAML text, keeping other lines intact.

    Returns:
        tuple[str, bool]: The new text and whether it changed.
    """
    line = f"{key}: {yaml_quote(value)}"
    prefix = f"{key}:"
    lines = text.replace("\r\n", "\n").split("\n") if text else []
    if lines and lines[-1] == "":
        lines.pop()
    for i, current in enumerate(lines):
        if current.strip().startswith(prefix):
            if current == line:
                return "\n".join(lines) + "\n", False
            lines[i] = line
            return "\n".join(lines) + "\n", True
    lines.append(line)
    return "\n".join(lines) + "\n", True


def write_host_config_text(path: str | Path, text: str) -> None:
    """Atomically replaces the host config with ``text`` (mode 0600)."""
    path = Path(path)
    tmp = path.with_name(path.name + ".tmp")
    try:
        path.parent.mkdir(mode=0o750, parents=True, exist_ok=True)
        fd = os.open(tmp, os.O_CREAT | os.O_WRONLY | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)
        path.chmod(0o600)
    except OSError as e:
        tmp.unlink(missing_ok=True)
        raise ConfigError(f"write host config {path}: {e.strerror or e}") from e
    logger.info(f"Updated host config {path}")


def listen_host(listen: str) -> str:
    """Host part of ``host:port``, or ``""`` for wildcard or unparseable values."""
    host, _, ok = split_host_port(listen)
    if not ok or host in ("", "0.0.0.0", "::"):
        return ""
    return host


def split_host_port(listen: str) -> tuple[str, str, bool]:
    listen = listen.strip()
    if not listen:
        return "", "", False
    if listen.startswith("["):
        end = listen.find("]")
        if end < 0 or listen[end + 1 : end + 2] != ":":
            return "", "", False
        return listen[1:end], listen[end + 2 :], True
    if listen.count(":") != 1:
        return "", "", False
    host, port = listen.split(":", 1)
    return host, port, True


def parse_listen_host_port(listen: str, fallback_port: int) -> tuple[str, int]:
    host, port_text, ok = split_host_port(listen)
    if not ok:
        return "127.0.0.1", fallback_port
    if port_text.isdigit() and 0 < int(port_text) <= 65535:
        return host, int(port_text)
    return host, fallback_port
