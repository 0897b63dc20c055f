# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/agentlab

"""``agentlab sandbox``: lifecycle, leases, exposures and diagnostics."""

import argparse

from loguru import logger

from agentlab.api import APIClient
from agentlab.commands.base import (
    Command,
    CommandGroup,
    CommonOptions,
    Enricher,
    Handler,
    Outcome,
    call,
    command_parser,
    enrich_api_errors,
    parse,
    require,
)
from agentlab.commands.doctor import write_doctor_bundle
from agentlab.commands.ssh import resolve_ssh_command
from agentlab.confirm import require_confirmation
from agentlab.endpoint import endpoint_path
from agentlab.models import (
    Exposure,
    ExposureCreateRequest,
    LeaseRenewRequest,
    LeaseRenewResponse,
    Profile,
    PruneResponse,
    RevertResponse,
    Sandbox,
    SandboxCreateRequest,
    SandboxDestroyRequest,
    SandboxRevertRequest,
    SandboxStopAllRequest,
    StopAllResponse,
)
from agentlab.modifiers import parse_modifiers, resolve_profile
from agentlab.parsing import FlagParser, parse_port, parse_ttl_minutes, parse_vmid
from agentlab.render import Renderer, text_or_dash
from agentlab.suggestions import wrap_sandbox_not_found, wrap_unknown_profile

USAGE = (
    "Usage: agentlab sandbox "
    "<new|list|show|start|stop|pause|resume|revert|destroy|lease|prune|expose|exposed|unexpose|doctor>"
)
NEW_USAGE = (
    "Usage: agentlab sandbox new [--name <name>] [--ttl <ttl>] [--keepalive] [--workspace <id>] [--vmid <vmid>] "
    "[--job <id>] [--and-ssh] (--profile <profile> | +mod [+mod...])\n"
    "Note: Modifiers are resolved by sorting and joining with '-' (e.g., +secure +small -> secure-small)."
)
LIST_USAGE = "Usage: agentlab sandbox list"
SHOW_USAGE = "Usage: agentlab sandbox show <vmid>"
START_USAGE = "Usage: agentlab sandbox start <vmid>"
STOP_USAGE = (
    "Usage: agentlab sandbox stop <vmid>\n"
    "       agentlab sandbox stop --all [--force]\n"
    "Note: --force skips the confirmation prompt for stop --all."
)
PAUSE_USAGE = "Usage: agentlab sandbox pause <vmid>"
RESUME_USAGE = "Usage: agentlab sandbox resume <vmid>"
REVERT_USAGE = (
    "Usage: agentlab sandbox revert [--force] [--restart|--no-restart] <vmid>\n"
    "Note: By default, restarts the sandbox only if it was running before the revert.\n"
    "Note: Reverting a running sandbox requires confirmation unless --force is set."
)
DESTROY_USAGE = (
    "Usage: agentlab sandbox destroy [--force] <vmid>\n"
    "Note: --force skips the confirmation prompt and destroys the sandbox in any state."
)
LEASE_USAGE = (
    "Usage: agentlab sandbox lease renew --ttl <ttl> <vmid>\n"
    "Note: Flags must come before the vmid argument (e.g., --ttl 120 1009)"
)
PRUNE_USAGE = (
    "Usage: agentlab sandbox prune\n"
    "Note: Removes orphaned sandbox entries (sandboxes in TIMEOUT state that no longer exist in Proxmox)"
)
EXPOSE_USAGE = (
    "Usage: agentlab sandbox expose [--force] <vmid> :<port>\n"
    "Note: --force skips the confirmation prompt for expose."
)
EXPOSED_USAGE = "Usage: agentlab sandbox exposed"
UNEXPOSE_USAGE = "Usage: agentlab sandbox unexpose <name>"
DOCTOR_USAGE = "Usage: agentlab sandbox doctor <vmid> [--out <path>]"

RUNNING_STATES = frozenset({"RUNNING", "READY"})


def sandbox_not_found(client: APIClient, vmid: int) -> Enricher:
    return lambda e: wrap_sandbox_not_found(client, vmid, e)


def print_sandbox(renderer: Renderer, sb: Sandbox) -> None:
    renderer.fields(
        [
            ("VMID", sb.vmid),
            ("Name", sb.name),
            ("Profile", sb.profile),
            ("State", sb.state),
            ("IP", sb.ip),
            ("Workspace", sb.workspace_id),
            ("Keepalive", str(sb.keepalive).lower()),
            ("Lease Expires", sb.lease_expires_at),
            ("Created At", sb.created_at),
            ("Updated At", sb.updated_at),
        ]
    )


def print_sandbox_list(renderer: Renderer, sandboxes: list[Sandbox]) -> None:
    rows = [[sb.vmid, sb.name, sb.profile, sb.state, sb.ip, sb.lease_expires_at] for sb in sandboxes]
    renderer.table(["VMID", "NAME", "PROFILE", "STATE", "IP", "LEASE"], rows)


def vmid_parser(prog: str, usage: str) -> FlagParser:
    parser = command_parser(prog, usage)
    parser.add_argument("vmid", nargs="?", default="")
    return parser


def required_vmid(parser: FlagParser, ns: argparse.Namespace) -> int:
    return parse_vmid(require(parser, ns.vmid, "vmid is required"))


async def run_sandbox_new(args: list[str], opts: CommonOptions) -> Outcome:
    parser = command_parser("sandbox new", NEW_USAGE)
    parser.add_argument("--name", default="")
    parser.add_argument("--profile", default="")
    parser.add_argument("--ttl", default="")
    parser.add_argument("--workspace", default="")
    parser.add_argument("--vmid", type=int, default=0)
    parser.add_argument("--job", default="")
    parser.add_argument("--keepalive", action=argparse.BooleanOptionalAction, default=None)
    parser.add_argument("--and-ssh", dest="and_ssh", action="store_true")
    parser.add_argument("modifiers", nargs="*", default=[])
    ns = parse(parser, args, opts)
    if ns is None:
        return Outcome.HELP
    modifiers = parse_modifiers(ns.modifiers)
    profile = ns.profile.strip()
    if profile and modifiers:
        parser.fail("use either --profile or +modifiers, not both")
    if not profile and not modifiers:
        parser.fail("profile is required (use --profile or +modifiers)")
    ttl_minutes = None
    if ns.ttl.strip():
        try:
            ttl_minutes = parse_ttl_minutes(ns.ttl)
        except ValueError as e:
            parser.fail(str(e))
    if ns.vmid < 0:
        parser.fail(f'invalid vmid "{ns.vmid}"')

    async with opts.client() as client:
        if modifiers:
            data = await client.request_json("GET", "/v1/profiles")
            raw = data.get("profiles") if isinstance(data, dict) else None
            profiles = [APIClient.validate(item, Profile, "/v1/profiles") for item in raw or []]
            profile = resolve_profile(modifiers, profiles)
            logger.debug(f"Modifiers {modifiers} resolved to profile {profile}")
        request = SandboxCreateRequest(
            profile=profile,
            name=ns.name.strip() or None,
            keepalive=ns.keepalive,
            ttl_minutes=ttl_minutes,
            workspace_id=ns.workspace.strip() or None,
            vmid=ns.vmid or None,
            job_id=ns.job.strip() or None,
        )
        async with enrich_api_errors(lambda e: wrap_unknown_profile(client, profile, e)):
            opts.activity.waiting_for = "sandbox creation"
            data, sandbox = await call(client, "POST", "/v1/sandboxes", Sandbox, request)
        ssh = None
        if ns.and_ssh:
            ssh = await resolve_ssh_command(opts, client, sandbox.vmid)

    renderer = opts.renderer
    if renderer.json_output:
        renderer.json({"sandbox": data, "ssh": ssh.model_dump(exclude_none=True)} if ssh is not None else data)
        return Outcome.OK
    print_sandbox(renderer, sandbox)
    if ssh is not None:
        if ssh.warning:
            renderer.warn(ssh.warning)
        renderer.line(ssh.command)
    return Outcome.OK


async def run_sandbox_list(args: list[str], opts: CommonOptions) -> Outcome:
    parser = command_parser("sandbox list", LIST_USAGE)
    if parse(parser, args, opts) is None:
        return Outcome.HELP
    async with opts.client() as client:
        data = await client.request_json("GET", "/v1/sandboxes")
    if opts.json_output:
        opts.renderer.json(data)
        return Outcome.OK
    raw = data.get("sandboxes") if isinstance(data, dict) else None
    print_sandbox_list(opts.renderer, [APIClient.validate(item, Sandbox, "/v1/sandboxes") for item in raw or []])
    return Outcome.OK


async def run_sandbox_show(args: list[str], opts: CommonOptions) -> Outcome:
    parser = vmid_parser("sandbox show", SHOW_USAGE)
    ns = parse(parser, args, opts)
    if ns is None:
        return Outcome.HELP
    vmid = required_vmid(parser, ns)
    async with opts.client() as client, enrich_api_errors(sandbox_not_found(client, vmid)):
        data, sandbox = await call(client, "GET", endpoint_path("v1", "sandboxes", vmid), Sandbox)
    if opts.json_output:
        opts.renderer.json(data)
    else:
        print_sandbox(opts.renderer, sandbox)
    return Outcome.OK


def lifecycle_handler(action: str, past: str, usage: str) -> Handler:
    """Builds the handler for ``start``, ``pause`` and ``resume`` (POST ``/<action>``)."""

    async def handler(args: list[str], opts: CommonOptions) -> Outcome:
        parser = vmid_parser(f"sandbox {action}", usage)
        ns = parse(parser, args, opts)
        if ns is None:
            return Outcome.HELP
        vmid = required_vmid(parser, ns)
        path = endpoint_path("v1", "sandboxes", vmid, action)
        async with opts.client() as client, enrich_api_errors(sandbox_not_found(client, vmid)):
            opts.activity.waiting_for = f"sandbox {vmid} {action}"
            data, sandbox = await call(client, "POST", path, Sandbox)
        if opts.json_output:
            opts.renderer.json(data)
        else:
            opts.renderer.line(f"sandbox {sandbox.vmid} {past} (state={sandbox.state})")
        return Outcome.OK

    handler.__name__ = f"run_sandbox_{action}"
    return handler


run_sandbox_start = lifecycle_handler("start", "started", START_USAGE)
run_sandbox_pause = lifecycle_handler("pause", "paused", PAUSE_USAGE)
run_sandbox_resume = lifecycle_handler("resume", "resumed", RESUME_USAGE)


def print_stop_all(renderer: Renderer, resp: StopAllResponse) -> None:
    renderer.line(
        f"stop-all complete: total={resp.total} stopped={resp.stopped} skipped={resp.skipped} failed={resp.failed}"
    )
    for result in resp.results:
        if result.result == "skipped":
            renderer.line(f"skipped: vmid={result.vmid} state={text_or_dash(result.state)}")
        elif result.result == "failed":
            renderer.line(f"failed: vmid={result.vmid} error={text_or_dash(result.error)}")


async def run_sandbox_stop(args: list[str], opts: CommonOptions) -> Outcome:
    parser = vmid_parser("sandbox stop", STOP_USAGE)
    parser.add_argument("--all", dest="stop_all", action="store_true")
    parser.add_argument("--force", action="store_true")
    ns = parse(parser, args, opts)
    if ns is None:
        return Outcome.HELP

    if ns.stop_all:
        if ns.vmid.strip():
            parser.fail("cannot use --all with a vmid")
        require_confirmation("stop all sandboxes", ns.force, opts.json_output, opts.prompter)
        async with opts.client() as client:
            opts.activity.waiting_for = "stop-all"
            data, resp = await call(
                client, "POST", "/v1/sandboxes/stop_all", StopAllResponse, SandboxStopAllRequest(force=ns.force)
            )
        if opts.json_output:
            opts.renderer.json(data)
        else:
            print_stop_all(opts.renderer, resp)
        return Outcome.OK

    if ns.force:
        parser.fail("--force is only valid with --all")
    vmid = required_vmid(parser, ns)
    path = endpoint_path("v1", "sandboxes", vmid, "stop")
    async with opts.client() as client, enrich_api_errors(sandbox_not_found(client, vmid)):
        opts.activity.waiting_for = f"sandbox {vmid} stop"
        data, sandbox = await call(client, "POST", path, Sandbox)
    if opts.json_output:
        opts.renderer.json(data)
    else:
        opts.renderer.line(f"sandbox {sandbox.vmid} stopped (state={sandbox.state})")
    return Outcome.OK


async def run_sandbox_revert(args: list[str], opts: CommonOptions) -> Outcome:
    parser = vmid_parser("sandbox revert", REVERT_USAGE)
    parser.add_argument("--force", action="store_true")
    parser.add_argument("--restart", action="store_true")
    parser.add_argument("--no-restart", dest="no_restart", action="store_true")
    ns = parse(parser, args, opts)
    if ns is None:
        return Outcome.HELP
    if ns.restart and ns.no_restart:
        parser.fail("cannot use --restart and --no-restart together")
    vmid = required_vmid(parser, ns)
    restart = True if ns.restart else False if ns.no_restart else None

    async with opts.client() as client, enrich_api_errors(sandbox_not_found(client, vmid)):
        if not ns.force:
            current = await client.get(endpoint_path("v1", "sandboxes", vmid), Sandbox)
            if current.state.upper() in RUNNING_STATES:
                require_confirmation(f"revert running sandbox {vmid}", False, opts.json_output, opts.prompter)
        opts.activity.waiting_for = f"sandbox {vmid} revert"
        data, resp = await call(
            client,
            "POST",
            endpoint_path("v1", "sandboxes", vmid, "revert"),
            RevertResponse,
            SandboxRevertRequest(force=ns.force, restart=restart),
        )

    if opts.json_output:
        opts.renderer.json(data)
        return Outcome.OK
    snapshot = resp.snapshot.strip() or "clean"
    suffix = ", restarted" if resp.restarted else ""
    opts.renderer.line(
        f"sandbox {resp.sandbox.vmid} reverted to snapshot {snapshot} (state={resp.sandbox.state}{suffix})"
    )
    return Outcome.OK


async def run_sandbox_destroy(args: list[str], opts: CommonOptions) -> Outcome:
    parser = vmid_parser("sandbox destroy", DESTROY_USAGE)
    parser.add_argument("--force", action="store_true")
    ns = parse(parser, args, opts)
    if ns is None:
        return Outcome.HELP
    vmid = required_vmid(parser, ns)
    require_confirmation(f"destroy sandbox {vmid}", ns.force, opts.json_output, opts.prompter)
    path = endpoint_path("v1", "sandboxes", vmid, "destroy")
    async with opts.client() as client, enrich_api_errors(sandbox_not_found(client, vmid)):
        opts.activity.waiting_for = f"sandbox {vmid} destroy"
        data, sandbox = await call(client, "POST", path, Sandbox, SandboxDestroyRequest(force=ns.force))
    if opts.json_output:
        opts.renderer.json(data)
    else:
        opts.renderer.line(f"sandbox {sandbox.vmid} destroyed (state={sandbox.state})")
    return Outcome.OK


async def run_sandbox_lease_renew(args: list[str], opts: CommonOptions) -> Outcome:
    parser = vmid_parser("sandbox lease renew", LEASE_USAGE)
    parser.add_argument("--ttl", default="")
    ns = parse(parser, args, opts)
    if ns is None:
        return Outcome.HELP
    vmid = required_vmid(parser, ns)
    if not ns.ttl.strip():
        parser.fail("ttl is required. Flags must come before vmid (e.g., --ttl 120 1009)")
    try:
        minutes = parse_ttl_minutes(ns.ttl)
    except ValueError as e:
        parser.fail(str(e))
    path = endpoint_path("v1", "sandboxes", vmid, "lease", "renew")
    async with opts.client() as client, enrich_api_errors(sandbox_not_found(client, vmid)):
        data, resp = await call(client, "POST", path, LeaseRenewResponse, LeaseRenewRequest(ttl_minutes=minutes))
    if opts.json_output:
        opts.renderer.json(data)
    else:
        opts.renderer.line(f"sandbox {resp.vmid} lease renewed until {text_or_dash(resp.lease_expires_at)}")
    return Outcome.OK


async def run_sandbox_prune(args: list[str], opts: CommonOptions) -> Outcome:
    parser = command_parser("sandbox prune", PRUNE_USAGE)
    if parse(parser, args, opts) is None:
        return Outcome.HELP
    async with opts.client() as client:
        data, resp = await call(client, "POST", "/v1/sandboxes/prune", PruneResponse)
    if opts.json_output:
        opts.renderer.json(data)
    else:
        opts.renderer.line(f"pruned {resp.count} sandbox(es)")
    return Outcome.OK


def exposure_name(vmid: int, port: int) -> str:
    return f"sbx-{vmid}-{port}"


def print_exposure(renderer: Renderer, exposure: Exposure) -> None:
    renderer.fields(
        [
            ("Name", exposure.name),
            ("VMID", exposure.vmid),
            ("Port", exposure.port),
            ("Target IP", exposure.target_ip),
            ("URL", exposure.url),
            ("State", exposure.state),
        ]
    )


async def run_sandbox_expose(args: list[str], opts: CommonOptions) -> Outcome:
    parser = vmid_parser("sandbox expose", EXPOSE_USAGE)
    parser.add_argument("port", nargs="?", default="")
    parser.add_argument("--force", action="store_true")
    ns = parse(parser, args, opts)
    if ns is None:
        return Outcome.HELP
    vmid = required_vmid(parser, ns)
    port = parse_port(require(parser, ns.port, "port is required (e.g., :8080)"))
    require_confirmation(f"expose sandbox {vmid} port {port}", ns.force, opts.json_output, opts.prompter)
    request = ExposureCreateRequest(name=exposure_name(vmid, port), vmid=vmid, port=port, force=ns.force or None)
    async with opts.client() as client, enrich_api_errors(sandbox_not_found(client, vmid)):
        data, exposure = await call(client, "POST", "/v1/exposures", Exposure, request)
    if opts.json_output:
        opts.renderer.json(data)
    else:
        print_exposure(opts.renderer, exposure)
    return Outcome.OK


async def run_sandbox_exposed(args: list[str], opts: CommonOptions) -> Outcome:
    parser = command_parser("sandbox exposed", EXPOSED_USAGE)
    if parse(parser, args, opts) is None:
        return Outcome.HELP
    async with opts.client() as client:
        data = await client.request_json("GET", "/v1/exposures")
    if opts.json_output:
        opts.renderer.json(data)
        return Outcome.OK
    raw = data.get("exposures") if isinstance(data, dict) else None
    exposures = [APIClient.validate(item, Exposure, "/v1/exposures") for item in raw or []]
    rows = [[e.name, e.vmid, e.port, e.target_ip, e.url, e.state] for e in exposures]
    opts.renderer.table(["NAME", "VMID", "PORT", "TARGET", "URL", "STATE"], rows)
    return Outcome.OK


async def run_sandbox_unexpose(args: list[str], opts: CommonOptions) -> Outcome:
    parser = command_parser("sandbox unexpose", UNEXPOSE_USAGE)
    parser.add_argument("name", nargs="?", default="")
    ns = parse(parser, args, opts)
    if ns is None:
        return Outcome.HELP
    name = require(parser, ns.name, "name is required")
    path = endpoint_path("v1", "exposures", name)
    async with opts.client() as client:
        data = await client.request_json("DELETE", path)
    if opts.json_output:
        opts.renderer.json(data)
    else:
        opts.renderer.line(f"removed exposure {name}")
    return Outcome.OK


async def run_sandbox_doctor(args: list[str], opts: CommonOptions) -> Outcome:
    parser = vmid_parser("sandbox doctor", DOCTOR_USAGE)
    parser.add_argument("--out", default="")
    ns = parse(parser, args, opts)
    if ns is None:
        return Outcome.HELP
    vmid = required_vmid(parser, ns)
    return await write_doctor_bundle(opts, "sandbox", str(vmid), ns.out, lambda client: sandbox_not_found(client, vmid))


GROUP = CommandGroup(
    "sandbox",
    USAGE,
    [
        Command("new", run_sandbox_new, NEW_USAGE),
        Command("list", run_sandbox_list, LIST_USAGE),
        Command("show", run_sandbox_show, SHOW_USAGE),
        Command("start", run_sandbox_start, START_USAGE),
        Command("stop", run_sandbox_stop, STOP_USAGE),
        Command("pause", run_sandbox_pause, PAUSE_USAGE),
        Command("resume", run_sandbox_resume, RESUME_USAGE),
        Command("revert", run_sandbox_revert, REVERT_USAGE),
        Command("destroy", run_sandbox_destroy, DESTROY_USAGE),
        CommandGroup("lease", LEASE_USAGE, [Command("renew", run_sandbox_lease_renew, LEASE_USAGE)]),
        Command("prune", run_sandbox_prune, PRUNE_USAGE),
        Command("expose", run_sandbox_expose, EXPOSE_USAGE),
        Command("exposed", run_sandbox_exposed, EXPOSED_USAGE),
        Command("unexpose", run_sandbox_unexpose, UNEXPOSE_USAGE),
        Command("doctor", run_sandbox_doctor, DOCTOR_USAGE),
    ],
)
