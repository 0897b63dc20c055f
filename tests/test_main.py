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
from pathlib import Path
from typing import Any

import pytest

from agentlab import main as main_module
from agentlab.commands.base import CommonOptions
from agentlab.main import run, run_async, split_global_args, token_from_argv


async def run_cli(argv: list[str], api: Any, runner: Any, prompter: Any, config_file: Path) -> int:
    return await run_async(
        argv, transport=api.transport, runner=runner, prompter=prompter, config_path=config_file
    )


def test_split_global_args() -> None:
    assert split_global_args(["--json", "--endpoint", "http://h", "sandbox", "list", "--json"]) == (
        ["--json", "--endpoint", "http://h"],
        ["sandbox", "list", "--json"],
    )
    assert split_global_args(["--timeout", "5s", "--", "--weird"]) == (["--timeout", "5s"], ["--weird"])
    assert split_global_args(["status"]) == ([], ["status"])


def test_token_from_argv() -> None:
    assert token_from_argv(["--token", "abc", "status"]) == "abc"
    assert token_from_argv(["--token=xyz"]) == "xyz"
    assert token_from_argv(["--token"]) == ""


@pytest.mark.asyncio
async def test_version(api: Any, runner: Any, prompter: Any, config_file: Path, capsys: Any) -> None:
    assert await run_cli(["--version"], api, runner, prompter, config_file) == 0
    assert capsys.readouterr().out == "agentlab 0.1.0\n"


@pytest.mark.asyncio
async def test_help_exit_codes(api: Any, runner: Any, prompter: Any, config_file: Path, capsys: Any) -> None:
    assert await run_cli(["--help"], api, runner, prompter, config_file) == 0
    assert await run_cli(["--json", "--help"], api, runner, prompter, config_file) == 3
    assert await run_cli(["status", "--help"], api, runner, prompter, config_file) == 0
    assert await run_cli(["--json", "sandbox", "help"], api, runner, prompter, config_file) == 3
    assert "Usage: agentlab" in capsys.readouterr().out


@pytest.mark.asyncio
async def test_usage_errors_exit_2(api: Any, runner: Any, prompter: Any, config_file: Path, capsys: Any) -> None:
    assert await run_cli([], api, runner, prompter, config_file) == 2
    assert "Error: command is required\nNext: agentlab --help\n" in capsys.readouterr().err

    assert await run_cli(["sandbox"], api, runner, prompter, config_file) == 2
    assert "Error: sandbox command is required" in capsys.readouterr().err

    assert await run_cli(["--bogus"], api, runner, prompter, config_file) == 2


@pytest.mark.asyncio
async def test_unknown_command_suggests(api: Any, runner: Any, prompter: Any, config_file: Path, capsys: Any) -> None:
    assert await run_cli(["statsu"], api, runner, prompter, config_file) == 1
    err = capsys.readouterr().err
    assert 'Error: unknown command "statsu". Did you mean: status' in err
    assert "Next: agentlab --help" in err


@pytest.mark.asyncio
async def test_json_errors_go_to_stdout(
    api: Any, runner: Any, prompter: Any, config_file: Path, capsys: Any
) -> None:
    api.add("GET", "/v1/sandboxes/1001", {"error": "sandbox not found"}, status=404)
    api.add("GET", "/v1/sandboxes", {"sandboxes": [{"vmid": 1002}]})

    code = await run_cli(["--json", "sandbox", "show", "1001"], api, runner, prompter, config_file)

    assert code == 1
    captured = capsys.readouterr()
    assert captured.err == ""
    assert json.loads(captured.out) == {
        "error": "sandbox 1001 not found",
        "next": "agentlab sandbox list",
        "hints": ["closest VMIDs: 1002"],
    }


@pytest.mark.asyncio
async def test_token_is_redacted(api: Any, runner: Any, prompter: Any, config_file: Path, capsys: Any) -> None:
    api.add("GET", "/v1/status", {"error": "token s3cret-token rejected"}, status=401)

    argv = ["--endpoint", "http://pve:8845", "--token", "s3cret-token", "status"]
    assert await run_cli(argv, api, runner, prompter, config_file) == 1

    err = capsys.readouterr().err
    assert "s3cret-token" not in err
    assert "[redacted]" in err
    assert "Hint: verify the endpoint and token are correct" in err


@pytest.mark.asyncio
async def test_saved_config_supplies_endpoint(api: Any, runner: Any, prompter: Any, config_file: Path) -> None:
    config_file.parent.mkdir(parents=True)
    config_file.write_text(json.dumps({"endpoint": "http://saved:8845", "token": "t"}))
    config_file.chmod(0o600)
    api.add("GET", "/v1/status", {})

    assert await run_cli(["status"], api, runner, prompter, config_file) == 0
    assert str(api.requests[0].url).startswith("http://saved:8845/")


def test_interrupt_exit_codes(monkeypatch: pytest.MonkeyPatch, capsys: Any) -> None:
    state: dict[str, Any] = {"following": False, "waiting_for": None}

    def interrupted(fn: Any, argv: list[str], opts: CommonOptions) -> int:
        opts.following = state["following"]
        opts.activity.waiting_for = state["waiting_for"]
        raise KeyboardInterrupt

    monkeypatch.setattr(main_module.anyio, "run", interrupted)
    assert run(["logs", "1001"]) == 130
    assert capsys.readouterr().err == "\ninterrupted\n"

    state["waiting_for"] = "sandbox 9001 IP"
    assert run(["ssh", "9001"]) == 130
    err = capsys.readouterr().err
    assert err == "\ncanceled while waiting for sandbox 9001 IP\n"
    assert "timed out" not in err

    state["following"] = True
    assert run(["logs", "1001", "--follow"]) == 0
