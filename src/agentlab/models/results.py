# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/agentlab

"""Responses of composite control API operations."""

from typing import Any

from pydantic import BaseModel, Field

from agentlab.models.resources import Sandbox, Session, Workspace


class StopAllResult(BaseModel):
    vmid: int
    name: str | None = None
    profile: str | None = None
    state: str = ""
    result: str = ""
    error: str | None = None


class StopAllResponse(BaseModel):
    total: int = 0
    stopped: int = 0
    skipped: int = 0
    failed: int = 0
    results: list[StopAllResult] = Field(default_factory=list)


class RevertResponse(BaseModel):
    sandbox: Sandbox
    restarted: bool = False
    was_running: bool = False
    snapshot: str = ""


class LeaseRenewResponse(BaseModel):
    vmid: int
    lease_expires_at: str = ""


class PruneResponse(BaseModel):
    count: int = 0


class WorkspaceRebindResponse(BaseModel):
    workspace: Workspace
    sandbox: Sandbox
    old_vmid: int | None = None


class SessionResumeResponse(BaseModel):
    session: Session
    workspace: Workspace
    sandbox: Sandbox
    old_vmid: int | None = None


class PreflightIssue(BaseModel):
    code: str = ""
    field: str = ""
    message: str = ""


class ValidatePlanResponse(BaseModel):
    ok: bool = False
    errors: list[PreflightIssue] = Field(default_factory=list)
    warnings: list[PreflightIssue] = Field(default_factory=list)
    plan: dict[str, Any] | None = None


class CheckRemediation(BaseModel):
    action: str = ""
    command: str | None = None
    note: str | None = None


class CheckFinding(BaseModel):
    code: str = ""
    severity: str = ""
    message: str = ""
    details: dict[str, str] | None = None
    remediation: list[CheckRemediation] = Field(default_factory=list)


class WorkspaceCheckResponse(BaseModel):
    workspace: Workspace
    findings: list[CheckFinding] = Field(default_factory=list)
    checked_at: str = ""


class WorkspaceFSCKResponse(BaseModel):
    workspace: Workspace
    method: str = ""
    mode: str = ""
    status: str = ""
    exit_code: int = 0
    exit_summary: str | None = None
    needs_repair: bool = False
    reboot_required: bool = False
    output: str | None = None


class StatusResponse(BaseModel):
    sandboxes: dict[str, int] = Field(default_factory=dict)
    jobs: dict[str, int] = Field(default_factory=dict)
    network_modes: dict[str, int] = Field(default_factory=dict)
    artifacts: dict[str, Any] = Field(default_factory=dict)
    recent_failures: list[dict[str, Any]] = Field(default_factory=list)
