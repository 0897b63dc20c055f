# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/agentlab

"""Request bodies sent to the control API.

Optional fields default to ``None`` and are dropped on the wire, so an unset
flag is never sent as ``false`` or ``0``. Use :meth:`WireModel.payload`.
"""

from typing import Any

from pydantic import BaseModel, Field


class WireModel(BaseModel):
    def payload(self) -> dict[str, Any]:
        """Returns the JSON body with unset optional fields omitted."""
        return self.model_dump(mode="json", exclude_none=True, by_alias=True)


class WorkspaceCreateRequest(WireModel):
    name: str
    size_gb: int = Field(gt=0)
    storage: str | None = None


class JobCreateRequest(WireModel):
    repo_url: str
    profile: str
    task: str
    ref: str | None = None
    mode: str | None = None
    ttl_minutes: int | None = None
    keepalive: bool | None = None
    workspace_id: str | None = None
    workspace_create: WorkspaceCreateRequest | None = None
    workspace_wait_seconds: int | None = None
    session_id: str | None = None


class SandboxCreateRequest(WireModel):
    profile: str
    name: str | None = None
    keepalive: bool | None = None
    ttl_minutes: int | None = None
    workspace_id: str | None = None
    vmid: int | None = None
    job_id: str | None = None


class SandboxDestroyRequest(WireModel):
    force: bool


class SandboxRevertRequest(WireModel):
    force: bool
    restart: bool | None = None


class SandboxStopAllRequest(WireModel):
    force: bool


class LeaseRenewRequest(WireModel):
    ttl_minutes: int = Field(gt=0)


class WorkspaceAttachRequest(WireModel):
    vmid: int


class WorkspaceRebindRequest(WireModel):
    profile: str
    ttl_minutes: int | None = None
    keep_old: bool | None = None


class WorkspaceForkRequest(WireModel):
    name: str
    from_snapshot: str | None = None


class WorkspaceSnapshotCreateRequest(WireModel):
    name: str


class WorkspaceFSCKRequest(WireModel):
    repair: bool | None = None


class SessionCreateRequest(WireModel):
    name: str
    profile: str
    workspace_id: str | None = None
    workspace_create: WorkspaceCreateRequest | None = None
    branch: str | None = None


class SessionForkRequest(WireModel):
    name: str
    profile: str | None = None
    workspace_id: str | None = None
    workspace_create: WorkspaceCreateRequest | None = None
    branch: str | None = None


class ExposureCreateRequest(WireModel):
    name: str
    vmid: int
    port: int = Field(ge=1, le=65535)
    force: bool | None = None


class MessageCreateRequest(WireModel):
    scope_type: str
    scope_id: str
    author: str | None = None
    kind: str | None = None
    text: str | None = None
    data: Any = Field(default=None, serialization_alias="json")
