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

from agentlab.commands import REGISTRY, Outcome, dispatch
from agentlab.commands.job import branch_session_name, repo_basename, stateful_workspace_name
from agentlab.errors import CLIError, UsageError

REPO = "https://github.com/acme/app.git"
RUN_ARGS = ["--repo", REPO, "--task", "fix the tests", "--profile", "yolo"]
JOB = {"id": "job_1", "repo_url": REPO, "profile": "yolo", "task": "fix the tests", "status": "QUEUED"}
WORKSPACE_DEFAULTS = {"size_gb": 80, "storage": "local-zfs"}


def test_naming_helpers() -> None:
    assert repo_basename("git@github.com:acme/App.git") == "App"
    assert stateful_workspace_name(REPO) == "stateful-app"
    assert stateful_workspace_name("") == "stateful"
    assert branch_session_name("Feature/Login Page") == "branch-feature-login-page"
    with pytest.raises(UsageError, match="invalid branch"):
        branch_session_name("///")


@pytest.mark.asyncio
async def test_job_run_prints_fields(api: Any, opts: Any, capsys: pytest.CaptureFixture[str]) -> None:
    api.add("POST", "/v1/jobs", {**JOB, "ttl_minutes": 120})

    outcome = await dispatch(REGISTRY, ["job", "run", *RUN_ARGS, "--ttl", "2h", "--keepalive"], opts)

    assert outcome is Outcome.OK
    assert api.body("POST", "/v1/jobs") == {
        "repo_url": REPO,
        "profile": "yolo",
        "task": "fix the tests",
        "ttl_minutes": 120,
        "keepalive": True,
    }
    out = capsys.readouterr().out
    assert "Job ID: job_1\n" in out
    assert "Status: QUEUED\n" in out
    assert "Sandbox VMID: -\n" in out


@pytest.mark.asyncio
async def test_job_run_requires_fields(opts: Any) -> None:
    with pytest.raises(UsageError, match="repo, profile, and task are required"):
        await dispatch(REGISTRY, ["job", "run", "--repo", REPO], opts)


@pytest.mark.asyncio
async def test_job_run_with_branch_creates_session(api: Any, opts: Any, capsys: pytest.CaptureFixture[str]) -> None:
    """The first run on a branch creates its session; the job is bound to it."""
    # GIVEN no session exists for the branch yet
    api.add("GET", "/v1/sessions/branch-feature-x", {"error": "session not found"}, status=404)
    api.add("POST", "/v1/sessions", {"id": "sess_1", "name": "branch-feature-x", "workspace_id": "ws_1"})
    api.add("POST", "/v1/jobs", {**JOB, "session_id": "sess_1", "workspace_id": "ws_1"})
    opts.json_output = True

    # WHEN a job is run with --branch
    outcome = await dispatch(REGISTRY, ["job", "run", *RUN_ARGS, "--branch", "Feature/X"], opts)

    # THEN the session got a default workspace and the job carries both ids
    assert outcome is Outcome.OK
    assert api.body("POST", "/v1/sessions") == {
        "name": "branch-feature-x",
        "profile": "yolo",
        "branch": "Feature/X",
        "workspace_create": {"name": "branch-feature-x", **WORKSPACE_DEFAULTS},
    }
    body = api.body("POST", "/v1/jobs")
    assert body["session_id"] == "sess_1"
    assert body["workspace_id"] == "ws_1"
    assert "workspace_create" not in body
    assert json.loads(capsys.readouterr().out)["session_id"] == "sess_1"


@pytest.mark.asyncio
async def test_job_run_reuses_branch_session(api: Any, opts: Any) -> None:
    api.add("GET", "/v1/sessions/branch-main", {"id": "sess_9", "name": "branch-main", "workspace_id": "ws_9"})
    api.add("POST", "/v1/jobs", JOB)

    await dispatch(REGISTRY, ["job", "run", *RUN_ARGS, "--branch", "main"], opts)

    assert api.calls("POST", "/v1/sessions") == []
    assert api.body("POST", "/v1/jobs")["session_id"] == "sess_9"


@pytest.mark.asyncio
async def test_job_run_stateful_workspace(api: Any, opts: Any) -> None:
    api.add("POST", "/v1/jobs", JOB)
    await dispatch(REGISTRY, ["job", "run", *RUN_ARGS, "--stateful", "--workspace-wait", "90s"], opts)
    body = api.body("POST", "/v1/jobs")
    assert body["workspace_create"] == {"name": "stateful-app", **WORKSPACE_DEFAULTS}
    assert body["workspace_wait_seconds"] == 90


@pytest.mark.asyncio
async def test_job_run_new_workspace_flags(api: Any, opts: Any) -> None:
    api.add("POST", "/v1/jobs", JOB)
    args = ["job", "run", *RUN_ARGS, "--workspace", "new:scratch", "--workspace-size", "20G"]
    await dispatch(REGISTRY, args, opts)
    assert api.body("POST", "/v1/jobs")["workspace_create"] == {"name": "scratch", "size_gb": 20}


@pytest.mark.asyncio
async def test_job_run_workspace_create_with_size(api: Any, opts: Any) -> None:
    api.add("POST", "/v1/jobs", JOB)
    args = ["job", "run", *RUN_ARGS, "--workspace-create", "scratch", "--workspace-size", "12GB"]
    await dispatch(REGISTRY, [*args, "--workspace-storage", "local-lvm"], opts)
    body = api.body("POST", "/v1/jobs")
    assert body["workspace_create"] == {"name": "scratch", "size_gb": 12, "storage": "local-lvm"}


@pytest.mark.parametrize(
    "extra, message",
    [
        (["--workspace", "ws_1", "--workspace-create", "w"], "use only one of --workspace or --workspace-create"),
        (["--workspace", "new:"], "workspace name is required after new:"),
        (["--workspace-create", "scratch"], "--workspace-size is required with --workspace-create"),
        (["--workspace-size", "10G"], "--workspace-size and --workspace-storage require"),
        (["--workspace-wait", "30s"], "--workspace-wait requires"),
    ],
)
@pytest.mark.asyncio
async def test_job_run_workspace_flag_errors(opts: Any, extra: list[str], message: str) -> None:
    with pytest.raises(UsageError, match=message):
        await dispatch(REGISTRY, ["job", "run", *RUN_ARGS, *extra], opts)


@pytest.mark.asyncio
async def test_job_run_unknown_profile_suggests(api: Any, opts: Any) -> None:
    api.add("POST", "/v1/jobs", {"error": 'unknown profile "yolp"'}, status=400)
    api.add("GET", "/v1/profiles", {"profiles": [{"name": "yolo"}, {"name": "secure"}]})
    with pytest.raises(CLIError) as excinfo:
        await dispatch(REGISTRY, ["job", "run", "--repo", REPO, "--task", "t", "--profile", "yolp"], opts)
    assert str(excinfo.value) == 'unknown profile "yolp" (did you mean "yolo"?)'
    assert excinfo.value.next_step == "agentlab profile list"


@pytest.mark.asyncio
async def test_validate_plan_never_creates_session(api: Any, opts: Any, capsys: pytest.CaptureFixture[str]) -> None:
    # GIVEN a branch without a session and a plan the daemon rejects
    api.add("GET", "/v1/sessions/branch-feature-x", {"error": "session not found"}, status=404)
    api.add(
        "POST",
        "/v1/jobs/validate-plan",
        {
            "ok": False,
            "errors": [{"code": "profile_unknown", "field": "profile", "message": "unknown profile"}],
            "warnings": [{"message": "workspace will be created"}],
        },
    )

    # WHEN the plan is validated
    outcome = await dispatch(REGISTRY, ["job", "validate-plan", *RUN_ARGS, "--branch", "feature-x"], opts)

    # THEN nothing was created and the failure is reported
    assert outcome is Outcome.FAILED
    assert api.calls("POST", "/v1/sessions") == []
    assert api.calls("POST", "/v1/jobs") == []
    body = api.body("POST", "/v1/jobs/validate-plan")
    assert body["workspace_create"] == {"name": "branch-feature-x", **WORKSPACE_DEFAULTS}
    assert capsys.readouterr().out.splitlines() == [
        "Plan: invalid",
        "Errors:",
        "  - [profile_unknown] unknown profile (profile)",
        "Warnings:",
        "  - workspace will be created",
    ]


@pytest.mark.asyncio
async def test_job_show_with_events(api: Any, opts: Any, capsys: pytest.CaptureFixture[str]) -> None:
    api.add(
        "GET",
        "/v1/jobs/job_1",
        {**JOB, "events": [{"id": 4, "ts": "2025-01-01T00:00:00Z", "kind": "job.running", "msg": "started"}]},
    )
    await dispatch(REGISTRY, ["job", "show", "--events-tail", "5", "job_1"], opts)

    assert api.calls("GET", "/v1/jobs/job_1")[0].url.params["events_tail"] == "5"
    out = capsys.readouterr().out
    assert "Events:\n" in out
    assert "job.running" in out


@pytest.mark.asyncio
async def test_job_show_not_found(api: Any, opts: Any) -> None:
    api.add("GET", "/v1/jobs/job_x", {"error": "job not found"}, status=404)
    with pytest.raises(CLIError) as excinfo:
        await dispatch(REGISTRY, ["job", "show", "job_x"], opts)
    assert str(excinfo.value) == "job job_x not found"


@pytest.mark.asyncio
async def test_job_artifacts_table(api: Any, opts: Any, capsys: pytest.CaptureFixture[str]) -> None:
    api.add(
        "GET",
        "/v1/jobs/job_1/artifacts",
        {"artifacts": [{"name": "", "path": "out/report.txt", "size_bytes": 12, "sha256": "a" * 64}]},
    )
    assert await dispatch(REGISTRY, ["job", "artifacts", "job_1"], opts) is Outcome.OK
    lines = capsys.readouterr().out.splitlines()
    assert lines[0].split() == ["NAME", "PATH", "SIZE(B)", "MIME", "CREATED", "SHA256"]
    assert lines[1].split() == ["report.txt", "out/report.txt", "12", "-", "-", "a" * 12]


@pytest.mark.asyncio
async def test_job_artifacts_download_defaults_to_bundle(
    api: Any, opts: Any, tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    """Without selectors the canonical bundle wins over newer artifacts."""
    api.add(
        "GET",
        "/v1/jobs/job_1/artifacts",
        {
            "artifacts": [
                {"name": "agentlab-artifacts.tar.gz", "path": "agentlab-artifacts.tar.gz"},
                {"name": "late.log", "path": "logs/late.log"},
            ]
        },
    )
    api.add("GET", "/v1/jobs/job_1/artifacts/download", content=b"bundle-bytes")
    out_dir = tmp_path / "downloads"
    out_dir.mkdir()
    opts.json_output = True

    await dispatch(REGISTRY, ["job", "artifacts", "download", "--out", str(out_dir), "job_1"], opts)

    request = api.calls("GET", "/v1/jobs/job_1/artifacts/download")[0]
    assert request.url.params["path"] == "agentlab-artifacts.tar.gz"
    target = out_dir / "agentlab-artifacts.tar.gz"
    assert target.read_bytes() == b"bundle-bytes"
    result = json.loads(capsys.readouterr().out)
    assert result["out"] == str(target)
    assert result["artifact"]["name"] == "agentlab-artifacts.tar.gz"


@pytest.mark.asyncio
async def test_job_doctor_writes_bundle(api: Any, opts: Any, capsys: pytest.CaptureFixture[str]) -> None:
    api.add("POST", "/v1/jobs/job_1/doctor", content=b"tarball")
    await dispatch(REGISTRY, ["job", "doctor", "job_1"], opts)
    assert Path("agentlab-doctor-job-job-1.tar.gz").read_bytes() == b"tarball"
    assert capsys.readouterr().out == "wrote doctor bundle to agentlab-doctor-job-job-1.tar.gz\n"


@pytest.mark.asyncio
async def test_job_help_and_missing_subcommand(opts: Any, capsys: pytest.CaptureFixture[str]) -> None:
    assert await dispatch(REGISTRY, ["job", "run", "--help"], opts) is Outcome.HELP
    assert capsys.readouterr().out.startswith("Usage: agentlab job run --repo <url>")
    with pytest.raises(UsageError, match="job command is required"):
        await dispatch(REGISTRY, ["job"], opts)
    with pytest.raises(CLIError, match='unknown job command "rnu"'):
        await dispatch(REGISTRY, ["job", "rnu"], opts)
