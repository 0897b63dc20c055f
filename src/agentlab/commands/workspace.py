# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/agentlab

"""``agentlab workspace``: persistent volumes, rebinding, checks and snapshots."""

from agentlab.api import APIClient
from agentlab.commands.base import (
    Command,
    CommandGroup,
    CommonOptions,
    Enricher,
    Outcome,
    call,
    command_parser,
    enrich_api_errors,
    parse,
    require,
)
from agentlab.confirm import require_confirmation
from agentlab.endpoint import endpoint_path
from agentlab.models import (
    Workspace,
    WorkspaceAttachRequest,
    WorkspaceCheckResponse,
    WorkspaceCreateRequest,
    WorkspaceFSCKRequest,
    WorkspaceFSCKResponse,
    WorkspaceForkRequest,
    WorkspaceRebindRequest,
    WorkspaceRebindResponse,
    WorkspaceSnapshot,
    WorkspaceSnapshotCreateRequest,
)
from agentlab.parsing import FlagParser, parse_size_gb, parse_ttl_minutes, parse_vmid
from agentlab.render import Renderer, text_or_dash
from agentlab.suggestions import wrap_workspace_not_found

USAGE = "Usage: agentlab workspace <create|list|show|attach|detach|rebind|fork|check|fsck|snapshot>"
CREATE_USAGE = "Usage: agentlab workspace create --name <name> --size <size> [--storage <storage>]"
LIST_USAGE = "Usage: agentlab workspace list"
SHOW_USAGE = "Usage: agentlab workspace show <workspace>"
ATTACH_USAGE = "Usage: agentlab workspace attach <workspace> <vmid>"
DETACH_USAGE = "Usage: agentlab workspace detach <workspace>"
REBIND_USAGE = (
    "Usage: agentlab workspace rebind <workspace> --profile <profile> [--ttl <ttl>] [--keep-old]\n"
    "Note: The old sandbox is destroyed unless --keep-old is set."
)
FORK_USAGE = "Usage: agentlab workspace fork <workspace> --name <name> [--from-snapshot <snapshot>]"
CHECK_USAGE = "Usage: agentlab workspace check <workspace>"
FSCK_USAGE = (
    "Usage: agentlab workspace fsck <workspace> [--repair]\n"
    "Note: The workspace must be detached; --repair lets fsck fix what it finds."
)
SNAPSHOT_USAGE = "Usage: agentlab workspace snapshot <create|list|restore>"
SNAPSHOT_CREATE_USAGE = "Usage: agentlab workspace snapshot create <workspace> <name>"
SNAPSHOT_LIST_USAGE = "Usage: agentlab workspace snapshot list <workspace>"
SNAPSHOT_RESTORE_USAGE = (
    "Usage: agentlab workspace snapshot restore [--force] <workspace> <name>\n"
    "Note: Restoring replaces the workspace contents; --force skips the confirmation prompt."
)


def workspace_not_found(workspace: str) -> Enricher:
    return lambda e: wrap_workspace_not_found(workspace, e)


def print_workspace(renderer: Renderer, ws: Workspace) -> None:
    renderer.fields(
        [
            ("ID", ws.id),
            ("Name", ws.name),
            ("Storage", ws.storage),
            ("Volume ID", ws.volume_id),
            ("Size GB", ws.size_gb),
            ("Attached VMID", ws.attached_vmid),
            ("Created At", ws.created_at),
            ("Updated At", ws.updated_at),
        ]
    )


def print_workspace_list(renderer: Renderer, workspaces: list[Workspace]) -> None:
    rows = [[ws.id, ws.name, ws.size_gb, ws.storage, ws.attached_vmid] for ws in workspaces]
    renderer.table(["ID", "NAME", "SIZE(GB)", "STORAGE", "ATTACHED"], rows)


def print_rebind(renderer: Renderer, resp: WorkspaceRebindResponse, keep_old: bool) -> None:
    renderer.line(f"Workspace: {text_or_dash(resp.workspace.name)}")
    renderer.line(f"New VMID: {resp.sandbox.vmid}")
    renderer.line(f"New IP: {text_or_dash(resp.sandbox.ip)}")
    if resp.old_vmid:
        renderer.line(f"Old VMID: {resp.old_vmid} ({'kept' if keep_old else 'destroyed'})")


def print_check(renderer: Renderer, resp: WorkspaceCheckResponse) -> None:
    renderer.line(f"Workspace: {text_or_dash(resp.workspace.name)} ({resp.workspace.id})")
    renderer.line(f"Checked At: {text_or_dash(resp.checked_at)}")
    if not resp.findings:
        renderer.line("Findings: none")
        return
    renderer.line("Findings:")
    for finding in resp.findings:
        renderer.line(f"  [{text_or_dash(finding.severity)}] {text_or_dash(finding.code)}: {finding.message}")
        for key in sorted(finding.details or {}):
            renderer.line(f"    {key}: {finding.details[key]}")
        for fix in finding.remediation:
            line = f"    fix: {fix.action}"
            if fix.command:
                line += f" ({fix.command})"
            if fix.note:
                line += f" - {fix.note}"
            renderer.line(line)


def print_fsck(renderer: Renderer, resp: WorkspaceFSCKResponse) -> None:
    renderer.fields(
        [
            ("Workspace", resp.workspace.name or resp.workspace.id),
            ("Method", resp.method),
            ("Mode", resp.mode),
            ("Status", resp.status),
            ("Exit Code", resp.exit_code),
            ("Summary", resp.exit_summary),
            ("Needs Repair", str(resp.needs_repair).lower()),
            ("Reboot Required", str(resp.reboot_required).lower()),
        ]
    )
    if resp.output and resp.output.strip():
        renderer.line("Output:")
        for line in resp.output.rstrip().splitlines():
            renderer.line(f"  {line}")


def workspace_parser(prog: str, usage: str, *extra: str) -> FlagParser:
    """Returns a parser taking ``<workspace>`` followed by the ``extra`` positionals."""
    parser = command_parser(prog, usage)
    parser.add_argument("workspace", nargs="?", default="")
    for name in extra:
        parser.add_argument(name, nargs="?", default="")
    return parser


async def run_workspace_create(args: list[str], opts: CommonOptions) -> Outcome:
    parser = command_parser("workspace create", CREATE_USAGE)
    parser.add_argument("--name", default="")
    parser.add_argument("--size", default="")
    parser.add_argument("--storage", default="")
    ns = parse(parser, args, opts)
    if ns is None:
        return Outcome.HELP
    name, size = ns.name.strip(), ns.size.strip()
    if not name or not size:
        parser.fail("name and size are required")
    try:
        size_gb = parse_size_gb(size)
    except ValueError as e:
        parser.fail(str(e))
    request = WorkspaceCreateRequest(name=name, size_gb=size_gb, storage=ns.storage.strip() or None)
    async with opts.client() as client:
        opts.activity.waiting_for = "workspace creation"
        data, ws = await call(client, "POST", "/v1/workspaces", Workspace, request)
    if opts.json_output:
        opts.renderer.json(data)
    else:
        print_workspace(opts.renderer, ws)
    return Outcome.OK


async def run_workspace_list(args: list[str], opts: CommonOptions) -> Outcome:
    parser = command_parser("workspace list", LIST_USAGE)
    if parse(parser, args, opts) is None:
        return Outcome.HELP
    async with opts.client() as client:
        data = await client.request_json("GET", "/v1/workspaces")
    if opts.json_output:
        opts.renderer.json(data)
        return Outcome.OK
    raw = data.get("workspaces") if isinstance(data, dict) else None
    print_workspace_list(opts.renderer, [APIClient.validate(item, Workspace, "/v1/workspaces") for item in raw or []])
    return Outcome.OK


async def run_workspace_show(args: list[str], opts: CommonOptions) -> Outcome:
    parser = workspace_parser("workspace show", SHOW_USAGE)
    ns = parse(parser, args, opts)
    if ns is None:
        return Outcome.HELP
    workspace = require(parser, ns.workspace, "workspace is required")
    async with opts.client() as client, enrich_api_errors(workspace_not_found(workspace)):
        data, ws = await call(client, "GET", endpoint_path("v1", "workspaces", workspace), Workspace)
    if opts.json_output:
        opts.renderer.json(data)
    else:
        print_workspace(opts.renderer, ws)
    return Outcome.OK


async def run_workspace_attach(args: list[str], opts: CommonOptions) -> Outcome:
    parser = workspace_parser("workspace attach", ATTACH_USAGE, "vmid")
    ns = parse(parser, args, opts)
    if ns is None:
        return Outcome.HELP
    if not ns.workspace.strip() or not ns.vmid.strip():
        parser.fail("workspace and vmid are required")
    workspace = ns.workspace.strip()
    vmid = parse_vmid(ns.vmid)
    path = endpoint_path("v1", "workspaces", workspace, "attach")
    async with opts.client() as client, enrich_api_errors(workspace_not_found(workspace)):
        opts.activity.waiting_for = f"workspace {workspace} attach"
        data, ws = await call(client, "POST", path, Workspace, WorkspaceAttachRequest(vmid=vmid))
    if opts.json_output:
        opts.renderer.json(data)
    else:
        print_workspace(opts.renderer, ws)
    return Outcome.OK


async def run_workspace_detach(args: list[str], opts: CommonOptions) -> Outcome:
    parser = workspace_parser("workspace detach", DETACH_USAGE)
    ns = parse(parser, args, opts)
    if ns is None:
        return Outcome.HELP
    workspace = require(parser, ns.workspace, "workspace is required")
    path = endpoint_path("v1", "workspaces", workspace, "detach")
    async with opts.client() as client, enrich_api_errors(workspace_not_found(workspace)):
        opts.activity.waiting_for = f"workspace {workspace} detach"
        data, ws = await call(client, "POST", path, Workspace)
    if opts.json_output:
        opts.renderer.json(data)
    else:
        print_workspace(opts.renderer, ws)
    return Outcome.OK


async def run_workspace_rebind(args: list[str], opts: CommonOptions) -> Outcome:
    parser = workspace_parser("workspace rebind", REBIND_USAGE)
    parser.add_argument("--profile", default="")
    parser.add_argument("--ttl", default="")
    parser.add_argument("--keep-old", dest="keep_old", action="store_true")
    ns = parse(parser, args, opts)
    if ns is None:
        return Outcome.HELP
    workspace = require(parser, ns.workspace, "workspace is required")
    profile = require(parser, ns.profile, "profile is required")
    ttl_minutes = None
    if ns.ttl.strip():
        try:
            ttl_minutes = parse_ttl_minutes(ns.ttl)
        except ValueError as e:
            parser.fail(str(e))
    request = WorkspaceRebindRequest(profile=profile, ttl_minutes=ttl_minutes, keep_old=ns.keep_old or None)
    path = endpoint_path("v1", "workspaces", workspace, "rebind")
    async with opts.client() as client, enrich_api_errors(workspace_not_found(workspace)):
        opts.activity.waiting_for = f"workspace {workspace} rebind"
        data, resp = await call(client, "POST", path, WorkspaceRebindResponse, request)
    if opts.json_output:
        opts.renderer.json(data)
    else:
        print_rebind(opts.renderer, resp, ns.keep_old)
    return Outcome.OK


async def run_workspace_fork(args: list[str], opts: CommonOptions) -> Outcome:
    parser = workspace_parser("workspace fork", FORK_USAGE)
    parser.add_argument("--name", default="")
    parser.add_argument("--from-snapshot", dest="from_snapshot", default="")
    ns = parse(parser, args, opts)
    if ns is None:
        return Outcome.HELP
    workspace = require(parser, ns.workspace, "workspace is required")
    name = require(parser, ns.name, "name is required")
    request = WorkspaceForkRequest(name=name, from_snapshot=ns.from_snapshot.strip() or None)
    path = endpoint_path("v1", "workspaces", workspace, "fork")
    async with opts.client() as client, enrich_api_errors(workspace_not_found(workspace)):
        opts.activity.waiting_for = f"workspace {workspace} fork"
        data, ws = await call(client, "POST", path, Workspace, request)
    if opts.json_output:
        opts.renderer.json(data)
    else:
        print_workspace(opts.renderer, ws)
    return Outcome.OK


async def run_workspace_check(args: list[str], opts: CommonOptions) -> Outcome:
    parser = workspace_parser("workspace check", CHECK_USAGE)
    ns = parse(parser, args, opts)
    if ns is None:
        return Outcome.HELP
    workspace = require(parser, ns.workspace, "workspace is required")
    path = endpoint_path("v1", "workspaces", workspace, "check")
    async with opts.client() as client, enrich_api_errors(workspace_not_found(workspace)):
        data, resp = await call(client, "GET", path, WorkspaceCheckResponse)
    if opts.json_output:
        opts.renderer.json(data)
    else:
        print_check(opts.renderer, resp)
    return Outcome.OK


async def run_workspace_fsck(args: list[str], opts: CommonOptions) -> Outcome:
    parser = workspace_parser("workspace fsck", FSCK_USAGE)
    parser.add_argument("--repair", action="store_true")
    ns = parse(parser, args, opts)
    if ns is None:
        return Outcome.HELP
    workspace = require(parser, ns.workspace, "workspace is required")
    path = endpoint_path("v1", "workspaces", workspace, "fsck")
    async with opts.client() as client, enrich_api_errors(workspace_not_found(workspace)):
        opts.activity.waiting_for = f"workspace {workspace} fsck"
        data, resp = await call(client, "POST", path, WorkspaceFSCKResponse, WorkspaceFSCKRequest(repair=ns.repair))
    if opts.json_output:
        opts.renderer.json(data)
    else:
        print_fsck(opts.renderer, resp)
    return Outcome.OK


def print_snapshot(renderer: Renderer, snap: WorkspaceSnapshot) -> None:
    renderer.fields(
        [
            ("Workspace", snap.workspace_id),
            ("Snapshot", snap.name),
            ("Backend Ref", snap.backend_ref),
            ("Created At", snap.created_at),
        ]
    )


async def run_workspace_snapshot_create(args: list[str], opts: CommonOptions) -> Outcome:
    parser = workspace_parser("workspace snapshot create", SNAPSHOT_CREATE_USAGE, "name")
    ns = parse(parser, args, opts)
    if ns is None:
        return Outcome.HELP
    if not ns.workspace.strip() or not ns.name.strip():
        parser.fail("workspace and snapshot name are required")
    workspace = ns.workspace.strip()
    request = WorkspaceSnapshotCreateRequest(name=ns.name.strip())
    path = endpoint_path("v1", "workspaces", workspace, "snapshots")
    async with opts.client() as client, enrich_api_errors(workspace_not_found(workspace)):
        data, snap = await call(client, "POST", path, WorkspaceSnapshot, request)
    if opts.json_output:
        opts.renderer.json(data)
    else:
        print_snapshot(opts.renderer, snap)
    return Outcome.OK


async def run_workspace_snapshot_list(args: list[str], opts: CommonOptions) -> Outcome:
    parser = workspace_parser("workspace snapshot list", SNAPSHOT_LIST_USAGE)
    ns = parse(parser, args, opts)
    if ns is None:
        return Outcome.HELP
    workspace = require(parser, ns.workspace, "workspace is required")
    path = endpoint_path("v1", "workspaces", workspace, "snapshots")
    async with opts.client() as client, enrich_api_errors(workspace_not_found(workspace)):
        data = await client.request_json("GET", path)
    if opts.json_output:
        opts.renderer.json(data)
        return Outcome.OK
    raw = data.get("snapshots") if isinstance(data, dict) else None
    snapshots = [APIClient.validate(item, WorkspaceSnapshot, path) for item in raw or []]
    opts.renderer.table(
        ["NAME", "BACKEND", "CREATED"], [[snap.name, snap.backend_ref, snap.created_at] for snap in snapshots]
    )
    return Outcome.OK


async def run_workspace_snapshot_restore(args: list[str], opts: CommonOptions) -> Outcome:
    parser = workspace_parser("workspace snapshot restore", SNAPSHOT_RESTORE_USAGE, "name")
    parser.add_argument("--force", action="store_true")
    ns = parse(parser, args, opts)
    if ns is None:
        return Outcome.HELP
    if not ns.workspace.strip() or not ns.name.strip():
        parser.fail("workspace and snapshot name are required")
    workspace, name = ns.workspace.strip(), ns.name.strip()
    require_confirmation(
        f"restore workspace {workspace} to snapshot {name}", ns.force, opts.json_output, opts.prompter
    )
    path = endpoint_path("v1", "workspaces", workspace, "snapshots", name, "restore")
    async with opts.client() as client, enrich_api_errors(workspace_not_found(workspace)):
        opts.activity.waiting_for = f"workspace {workspace} restore"
        data, snap = await call(client, "POST", path, WorkspaceSnapshot)
    if opts.json_output:
        opts.renderer.json(data)
    else:
        opts.renderer.line(f"workspace {workspace} restored to snapshot {snap.name}")
    return Outcome.OK


SNAPSHOT_GROUP = CommandGroup(
    "snapshot",
    SNAPSHOT_USAGE,
    [
        Command("create", run_workspace_snapshot_create, SNAPSHOT_CREATE_USAGE),
        Command("list", run_workspace_snapshot_list, SNAPSHOT_LIST_USAGE),
        Command("restore", run_workspace_snapshot_restore, SNAPSHOT_RESTORE_USAGE),
    ],
)

GROUP = CommandGroup(
    "workspace",
    USAGE,
    [
        Command("create", run_workspace_create, CREATE_USAGE),
        Command("list", run_workspace_list, LIST_USAGE),
        Command("show", run_workspace_show, SHOW_USAGE),
        Command("attach", run_workspace_attach, ATTACH_USAGE),
        Command("detach", run_workspace_detach, DETACH_USAGE),
        Command("rebind", run_workspace_rebind, REBIND_USAGE),
        Command("fork", run_workspace_fork, FORK_USAGE),
        Command("check", run_workspace_check, CHECK_USAGE),
        Command("fsck", run_workspace_fsck, FSCK_USAGE),
        SNAPSHOT_GROUP,
    ],
)
