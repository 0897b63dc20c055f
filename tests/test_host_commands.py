# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/agentlab

from pathlib import Path
from typing import Any

import pytest

from agentlab.commands import REGISTRY, Outcome, dispatch
from agentlab.commands.host import init_assets_root
from agentlab.errors import CLIError, UsageError


@pytest.mark.parametrize(
    "args, message",
    [
        (["init", "--tailscale-serve", "--no-tailscale-serve"], "mutually exclusive"),
        (["init", "--control-port", "0"], "control-port must be between 1 and 65535"),
        (["bootstrap"], "host is required"),
        (["bootstrap", "--host", "pve", "--accept-new-host-key", "--known-hosts", "kh"], "mutually exclusive"),
    ],
)
@pytest.mark.asyncio
async def test_flag_errors(opts: Any, args: list[str], message: str) -> None:
    with pytest.raises(UsageError, match=message):
        await dispatch(REGISTRY, args, opts)


@pytest.mark.asyncio
async def test_help_does_not_touch_host(opts: Any, runner: Any, capsys: pytest.CaptureFixture[str]) -> None:
    assert await dispatch(REGISTRY, ["bootstrap", "--help"], opts) is Outcome.HELP
    assert await dispatch(REGISTRY, ["init", "-h"], opts) is Outcome.HELP
    assert runner.calls == []
    assert "Usage: agentlab bootstrap --host" in capsys.readouterr().out


def test_init_assets_root_is_optional_for_checks(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr("sys.argv", [str(tmp_path / "bin" / "agentlab")])
    assert init_assets_root("", required=False) is None
    with pytest.raises(CLIError):
        init_assets_root("", required=True)
    with pytest.raises(CLIError):
        init_assets_root(str(tmp_path / "missing"), required=False)
