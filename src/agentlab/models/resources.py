# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/agentlab

"""Daemon-owned resources as returned by the control API."""

from typing import Any

from pydantic import BaseModel, Field


class SandboxNetwork(BaseModel):
    mode: str | None = None  # off | nat | allowlist
    firewall: bool | None = None
    firewall_group: str | None = None


class Sandbox(BaseModel):
    """A sandbox VM identified by its Proxmox vmid."""

    vmid: int
    name: str = ""
    profile: str = ""
    state: str = ""
    ip: str = ""
    workspace_id: str | None = None
    network: SandboxNetwork | None = None
    keepalive: bool = False
    lease_expires_at: str | None = None
    last_used_at: str | None = None
    created_at: str = ""
    updated_at: str = ""


class Event(BaseModel):
    id: int
    ts: str = ""
    kind: str = ""
    sandbox_vmid: int | None = None
    job_id: str | None = None
    msg: str | None = None
    payload: Any = Field(default=None, alias="json")

    model_config = {"populate_by_name": True}


class EventsPage(BaseModel):
    events: list[Event] = Field(default_factory=list)
    last_id: int | None = None


class Job(BaseModel):
    id: str
    repo_url: str = ""
    ref: str = ""
    profile: str = ""
    task: str = ""
    mode: str = ""
    ttl_minutes: int | None = None
    keepalive: bool = False
    workspace_id: str | None = None
    session_id: str | None = None
    status: str = ""
    sandbox_vmid: int | None = None
    result: Any = None
    events: list[Event] = Field(default_factory=list)
    created_at: str = ""
    updated_at: str = ""


class Workspace(BaseModel):
    id: str
    name: str = ""
    storage: str = ""
    volume_id: str = Field(default="", alias="volid")
    size_gb: int = 0
    attached_vmid: int | None = None
    created_at: str = ""
    updated_at: str = ""

    model_config = {"populate_by_name": True}


class WorkspaceSnapshot(BaseModel):
    workspace_id: str = ""
    name: str
    backend_ref: str = ""
    created_at: str = ""


class Session(BaseModel):
    id: str
    name: str = ""
    workspace_id: str = ""
    current_vmid: int | None = None
    profile: str = ""
    branch: str | None = None
    created_at: str = ""
    updated_at: str = ""


class Exposure(BaseModel):
    name: str
    vmid: int
    port: int
    target_ip: str = ""
    url: str | None = None
    state: str = ""
    created_at: str = ""
    updated_at: str = ""


class Message(BaseModel):
    id: int
    ts: str = ""
    scope_type: str = ""
    scope_id: str = ""
    author: str | None = None
    kind: str | None = None
    text: str | None = None
    payload: Any = Field(default=None, alias="json")

    model_config = {"populate_by_name": True}


class MessagesPage(BaseModel):
    messages: list[Message] = Field(default_factory=list)
    last_id: int | None = None


class Artifact(BaseModel):
    name: str
    path: str = ""
    size_bytes: int = 0
    sha256: str = ""
    mime: str | None = None
    created_at: str | None = None


class Profile(BaseModel):
    name: str
    template_vmid: int = 0
    updated_at: str = ""


class HostInfo(BaseModel):
    version: str = ""
    agent_subnet: str | None = None
    tailscale_dns: str | None = None
