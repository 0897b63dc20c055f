# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/agentlab

"""End-to-end runs through the entry point against a fake daemon."""

import re
from pathlib import Path
from typing import Any

import pytest

from agentlab import constants
from agentlab.main import run_async

SANDBOX = "/v1/sandboxes/9001"


@pytest.fixture(autouse=True)
def fast_polling(monkeypatch: pytest.MonkeyPatch) -> None:
    async def probe(ip: str, port: int, timeout: float = 0.75) -> bool:
        return True

    monkeypatch.setattr("agentlab.reachability.probe_tcp", probe)
    monkeypatch.setattr(constants, "SANDBOX_POLL_INTERVAL", 0.01)
    monkeypatch.setattr(constants, "SSH_PROBE_INTERVAL", 0.01)


async def run_cli(argv: list[str], api: Any, runner: Any, prompter: Any, config_file: Path) -> int:
    return await run_async(argv, transport=api.transport, runner=runner, prompter=prompter, config_path=config_file)


@pytest.mark.asyncio
async def test_ssh_starts_stopped_sandbox_and_waits_for_ip(
    api: Any, runner: Any, prompter: Any, config_file: Path, capsys: Any
) -> None:
    # GIVEN a stopped sandbox that gets its IP only on the second poll after the start
    api.add("GET", SANDBOX, {"vmid": 9001, "state": "STOPPED"})
    api.add("GET", SANDBOX, {"vmid": 9001, "state": "RUNNING", "ip": ""})
    api.add("GET", SANDBOX, {"vmid": 9001, "state": "RUNNING", "ip": "203.0.113.10"})
    api.add("POST", SANDBOX + "/start", {"vmid": 9001, "state": "STARTING"})
    api.add("POST", SANDBOX + "/touch", {})

    # WHEN ssh runs without --exec
    code = await run_cli(["ssh", "9001"], api, runner, prompter, config_file)

    # THEN the printed command targets the new IP
    assert code == 0
    out = capsys.readouterr().out.strip()
    assert re.match(r"^ssh .* agent@203\.0\.113\.10$", out), out
    assert len(api.calls("GET", SANDBOX)) >= 2
    assert len(api.calls("POST", SANDBOX + "/start")) == 1
    assert runner.commands("ssh ") == []


@pytest.mark.asyncio
async def test_ssh_times_out_without_ip(api: Any, runner: Any, prompter: Any, config_file: Path, capsys: Any) -> None:
    api.add("GET", SANDBOX, {"vmid": 9001, "state": "RUNNING", "ip": ""})

    code = await run_cli(["--timeout", "150ms", "ssh", "9001"], api, runner, prompter, config_file)

    assert code == 1
    err = capsys.readouterr().err
    assert "no ip yet" in err.lower()
    assert "408" not in err
    assert "Hint: raise --timeout to wait longer" in err


@pytest.mark.asyncio
async def test_artifact_download_defaults_to_bundle_in_cwd(
    api: Any, runner: Any, prompter: Any, config_file: Path, capsys: Any
) -> None:
    # GIVEN a job whose artifacts include the canonical bundle
    api.add(
        "GET",
        "/v1/jobs/job_1/artifacts",
        {
            "artifacts": [
                {"name": "notes.txt", "path": "out/notes.txt"},
                {"name": "agentlab-artifacts.tar.gz", "path": "agentlab-artifacts.tar.gz"},
            ]
        },
    )
    api.add("GET", "/v1/jobs/job_1/artifacts/download", content=b"bundle-bytes")

    # WHEN downloading with no selector or output flags
    code = await run_cli(["job", "artifacts", "download", "job_1"], api, runner, prompter, config_file)

    # THEN the bundle lands in the working directory
    assert code == 0
    request = api.calls("GET", "/v1/jobs/job_1/artifacts/download")[0]
    assert request.url.params["path"] == "agentlab-artifacts.tar.gz"
    assert "path=agentlab-artifacts.tar.gz" in str(request.url)
    assert Path("agentlab-artifacts.tar.gz").read_bytes() == b"bundle-bytes"
    assert capsys.readouterr().err == ""
