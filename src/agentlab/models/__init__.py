# src/agentlab/models/__init__.py

"""
Wire models for the agentlabd control API.
"""

from .requests import (
    ExposureCreateRequest,
    JobCreateRequest,
    LeaseRenewRequest,
    MessageCreateRequest,
    SandboxCreateRequest,
    SandboxDestroyRequest,
    SandboxRevertRequest,
    SandboxStopAllRequest,
    SessionCreateRequest,
    SessionForkRequest,
    WireModel,
    WorkspaceAttachRequest,
    WorkspaceCreateRequest,
    WorkspaceForkRequest,
    WorkspaceFSCKRequest,
    WorkspaceRebindRequest,
    WorkspaceSnapshotCreateRequest,
)
from .resources import (
    Artifact,
    Event,
    EventsPage,
    Exposure,
    HostInfo,
    Job,
    Message,
    MessagesPage,
    Profile,
    Sandbox,
    SandboxNetwork,
    Session,
    Workspace,
    WorkspaceSnapshot,
)
from .results import (
    LeaseRenewResponse,
    PruneResponse,
    RevertResponse,
    SessionResumeResponse,
    StatusResponse,
    StopAllResponse,
    StopAllResult,
    ValidatePlanResponse,
    WorkspaceCheckResponse,
    WorkspaceFSCKResponse,
    WorkspaceRebindResponse,
)

__all__ = [
    "Artifact",
    "Event",
    "EventsPage",
    "Exposure",
    "ExposureCreateRequest",
    "HostInfo",
    "Job",
    "JobCreateRequest",
    "LeaseRenewRequest",
    "LeaseRenewResponse",
    "Message",
    "MessageCreateRequest",
    "MessagesPage",
    "Profile",
    "PruneResponse",
    "RevertResponse",
    "Sandbox",
    "SandboxCreateRequest",
    "SandboxDestroyRequest",
    "SandboxNetwork",
    "SandboxRevertRequest",
    "SandboxStopAllRequest",
    "Session",
    "SessionCreateRequest",
    "SessionForkRequest",
    "SessionResumeResponse",
    "StatusResponse",
    "StopAllResponse",
    "StopAllResult",
    "ValidatePlanResponse",
    "WireModel",
    "Workspace",
    "WorkspaceAttachRequest",
    "WorkspaceCheckResponse",
    "WorkspaceCreateRequest",
    "WorkspaceFSCKRequest",
    "WorkspaceFSCKResponse",
    "WorkspaceForkRequest",
    "WorkspaceRebindRequest",
    "WorkspaceRebindResponse",
    "WorkspaceSnapshot",
    "WorkspaceSnapshotCreateRequest",
]
