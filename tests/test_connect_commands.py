# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/agentlab

import json
import stat
from pathlib import Path
from typing import Any

import pytest

from agentlab.commands import REGISTRY, dispatch
from agentlab.config import ClientConfig, TailscaleAdminConfig, load_client_config, write_client_config
from agentlab.errors import CLIError, UsageError


@pytest.mark.asyncio
async def test_connect_verifies_then_saves(
    api: Any, opts: Any, config_file: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    """The endpoint is checked with the token before anything is written."""
    # GIVEN a daemon answering /v1/status
    api.add("GET", "/v1/status", {"sandboxes": {}, "jobs": {}})

    # WHEN connecting with a bare host:port
    args = ["connect", "--endpoint", "pve.example.ts.net:8845", "--token", "tok-1", "--jump-host", "pve"]
    await dispatch(REGISTRY, args, opts)

    # THEN the bearer token was sent and the config file is private
    request = api.calls("GET", "/v1/status")[0]
    assert request.headers["Authorization"] == "Bearer tok-1"
    assert str(request.url).startswith("http://pve.example.ts.net:8845/")
    assert stat.S_IMODE(config_file.stat().st_mode) == 0o600
    saved = json.loads(config_file.read_text())
    assert saved == {"endpoint": "http://pve.example.ts.net:8845", "token": "tok-1", "jump_host": "pve"}
    assert capsys.readouterr().out.splitlines() == [
        "connected to http://pve.example.ts.net:8845",
        f"saved {config_file}",
    ]


@pytest.mark.asyncio
async def test_connect_keeps_tailscale_admin(api: Any, opts: Any, config_file: Path) -> None:
    write_client_config(
        ClientConfig(endpoint="http://old:8845", token="old", tailscale_admin=TailscaleAdminConfig(tailnet="corp")),
        config_file,
    )
    api.add("GET", "/v1/status", {})
    await dispatch(REGISTRY, ["connect", "--endpoint", "http://new:8845", "--token", "tok-2"], opts)
    cfg, exists = load_client_config(config_file)
    assert exists
    assert (cfg.endpoint, cfg.token) == ("http://new:8845", "tok-2")
    assert cfg.tailscale_admin is not None
    assert cfg.tailscale_admin.tailnet == "corp"


@pytest.mark.asyncio
async def test_connect_rejected_token_saves_nothing(api: Any, opts: Any, config_file: Path) -> None:
    api.add("GET", "/v1/status", {"error": "unauthorized"}, status=401)
    with pytest.raises(CLIError) as excinfo:
        await dispatch(REGISTRY, ["connect", "--endpoint", "http://pve:8845", "--token", "bad"], opts)
    assert "verify the endpoint and token are correct" in excinfo.value.hints
    assert not config_file.exists()
    assert "bad" in opts.secrets


@pytest.mark.asyncio
async def test_connect_validates_endpoint(opts: Any) -> None:
    with pytest.raises(UsageError, match="endpoint is required"):
        await dispatch(REGISTRY, ["connect", "--token", "t"], opts)
    with pytest.raises(CLIError, match="scheme must be http or https") as excinfo:
        await dispatch(REGISTRY, ["connect", "--endpoint", "ftp://pve", "--token", "t"], opts)
    assert excinfo.value.next_step == "agentlab connect --help"


@pytest.mark.asyncio
async def test_disconnect(opts: Any, config_file: Path, capsys: pytest.CaptureFixture[str]) -> None:
    write_client_config(ClientConfig(endpoint="http://pve:8845", token="t"), config_file)

    await dispatch(REGISTRY, ["disconnect"], opts)
    assert not config_file.exists()
    await dispatch(REGISTRY, ["disconnect", "--json"], opts)

    lines = capsys.readouterr().out.splitlines()
    assert lines[0] == f"removed {config_file}"
    assert json.loads(lines[1]) == {"removed": False, "config_path": str(config_file)}
