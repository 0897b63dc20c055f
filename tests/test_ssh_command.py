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
from typing import Any

import pytest

from agentlab import constants
from agentlab.commands import REGISTRY, dispatch
from agentlab.errors import CLIError, UsageError

SANDBOX = {"vmid": 1001, "name": "dev", "profile": "yolo", "state": "RUNNING", "ip": "10.77.0.5"}


@pytest.fixture(autouse=True)
def reachable(monkeypatch: pytest.MonkeyPatch) -> None:
    async def probe(ip: str, port: int, timeout: float = 0.75) -> bool:
        return True

    monkeypatch.setattr("agentlab.reachability.probe_tcp", probe)
    monkeypatch.setattr(constants, "SANDBOX_POLL_INTERVAL", 0.01)
    monkeypatch.setattr(constants, "SSH_PROBE_INTERVAL", 0.01)


@pytest.fixture
def running(api: Any) -> Any:
    api.add("GET", "/v1/sandboxes/1001", SANDBOX)
    api.add("POST", "/v1/sandboxes/1001/touch", {})
    return api


@pytest.mark.asyncio
async def test_prints_command_with_remote(running: Any, opts: Any, capsys: pytest.CaptureFixture[str]) -> None:
    await dispatch(REGISTRY, ["ssh", "1001", "--identity", "/k/id", "--", "uname", "-a"], opts)
    out = capsys.readouterr().out.strip()
    assert out.startswith("ssh -o StrictHostKeyChecking=no")
    assert out.endswith("-i /k/id agent@10.77.0.5 uname -a")
    assert len(running.calls("POST", "/v1/sandboxes/1001/touch")) == 1


@pytest.mark.asyncio
async def test_json_output(running: Any, opts: Any, capsys: pytest.CaptureFixture[str]) -> None:
    await dispatch(REGISTRY, ["ssh", "--json", "--user", "root", "--port", "2222", "-i", "/k/id", "1001"], opts)
    result = json.loads(capsys.readouterr().out)
    assert result["vmid"] == 1001
    assert result["user"] == "root"
    assert result["port"] == 2222
    assert result["identity"] == "/k/id"
    assert result["args"][-1] == "root@10.77.0.5"
    assert "jump_host" not in result


@pytest.mark.asyncio
async def test_exec_conflicts(opts: Any) -> None:
    with pytest.raises(UsageError, match="cannot use --json with --exec"):
        await dispatch(REGISTRY, ["ssh", "1001", "--exec", "--json"], opts)
    with pytest.raises(CLIError, match="--exec requires an interactive terminal"):
        await dispatch(REGISTRY, ["ssh", "1001", "--exec"], opts)


@pytest.mark.parametrize(
    "args, message",
    [
        ([], "vmid is required"),
        (["1001", "--port", "70000"], "invalid port 70000"),
        (["1001", "--user", " "], "user is required"),
    ],
)
@pytest.mark.asyncio
async def test_flag_errors(opts: Any, args: list[str], message: str) -> None:
    with pytest.raises(UsageError, match=message):
        await dispatch(REGISTRY, ["ssh", *args], opts)
