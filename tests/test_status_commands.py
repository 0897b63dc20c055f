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

from agentlab.commands import REGISTRY, dispatch


@pytest.mark.asyncio
async def test_status_text(api: Any, opts: Any, capsys: pytest.CaptureFixture[str]) -> None:
    api.add(
        "GET",
        "/v1/status",
        {
            "sandboxes": {"RUNNING": 2, "STOPPED": 1},
            "jobs": {},
            "artifacts": {"total_bytes": 1024, "root": ""},
            "recent_failures": [{"ts": "t1", "kind": "job.failed", "job_id": "job_1", "msg": "exit 1"}],
        },
    )
    await dispatch(REGISTRY, ["status"], opts)
    assert capsys.readouterr().out.splitlines() == [
        "Sandboxes:",
        "  RUNNING: 2",
        "  STOPPED: 1",
        "Jobs:",
        "  (none)",
        "Artifacts:",
        "  root: -",
        "  total_bytes: 1024",
        "Recent Failures:",
        "  t1  job.failed  job_id=job_1  exit 1",
    ]


@pytest.mark.asyncio
async def test_status_json_passthrough(api: Any, opts: Any, capsys: pytest.CaptureFixture[str]) -> None:
    body = {"sandboxes": {"RUNNING": 1}, "jobs": {"QUEUED": 3}, "extra": {"kept": True}}
    api.add("GET", "/v1/status", body)
    await dispatch(REGISTRY, ["status", "--json"], opts)
    assert json.loads(capsys.readouterr().out) == body


@pytest.mark.asyncio
async def test_profile_list(api: Any, opts: Any, capsys: pytest.CaptureFixture[str]) -> None:
    api.add("GET", "/v1/profiles", {"profiles": [{"name": "yolo", "template_vmid": 9000}, {"name": "bare"}]})
    await dispatch(REGISTRY, ["profile", "list"], opts)
    lines = capsys.readouterr().out.splitlines()
    assert lines[0].split() == ["NAME", "TEMPLATE", "UPDATED"]
    assert lines[1].split() == ["yolo", "9000", "-"]
    assert lines[2].split() == ["bare", "-", "-"]
