# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/agentlab

"""``agentlab session``: named, resumable pairings of a workspace and a profile."""

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
from agentlab.commands.doctor import write_doctor_bundle
from agentlab.commands.job import add_workspace_flags, workspace_selection
from agentlab.endpoint import endpoint_path
from agentlab.models import Session, SessionCreateRequest, SessionForkRequest, SessionResumeResponse
from agentlab.parsing import FlagParser
from agentlab.render import Renderer, text_or_dash
from agentlab.suggestions import wrap_session_not_found, wrap_unknown_profile

WORKSPACE_FLAGS = "[--workspace <id|name|new:name>] [--workspace-size <size>] [--workspace-storage <storage>]"
USAGE = "Usage: agentlab session <create|list|show|resume|stop|fork|doctor>"
CREATE_USAGE = (
    f"Usage: agentlab session create --name <name> --profile <profile> {WORKSPACE_FLAGS} [--branch <branch>]\n"
    "Note: --workspace new:<name> creates the workspace along with the session."
)
LIST_USAGE = "Usage: agentlab session list"
SHOW_USAGE = "Usage: agentlab session show <session>"
RESUME_USAGE = (
    "Usage: agentlab session resume <session>\n"
    "Note: Provisions a fresh sandbox from the session profile and reattaches its workspace."
)
STOP_USAGE = "Usage: agentlab session stop <session>"
FORK_USAGE = (
    f"Usage: agentlab session fork <session> --name <name> [--profile <profile>] {WORKSPACE_FLAGS} [--branch <branch>]"
)
DOCTOR_USAGE = "Usage: agentlab session doctor <session> [--out <path>]"


def session_not_found(session: str) -> Enricher:
    return lambda e: wrap_session_not_found(session, e)


def print_session(renderer: Renderer, session: Session) -> None:
    renderer.fields(
        [
            ("ID", session.id),
            ("Name", session.name),
            ("Profile", session.profile),
            ("Workspace", session.workspace_id),
            ("Current VMID", session.current_vmid),
            ("Branch", session.branch),
            ("Created At", session.created_at),
            ("Updated At", session.updated_at),
        ]
    )


def print_session_list(renderer: Renderer, sessions: list[Session]) -> None:
    rows = [[s.id, s.name, s.profile, s.workspace_id, s.current_vmid, s.branch] for s in sessions]
    renderer.table(["ID", "NAME", "PROFILE", "WORKSPACE", "VMID", "BRANCH"], rows)


def print_resume(renderer: Renderer, resp: SessionResumeResponse) -> None:
    renderer.line(f"Session: {text_or_dash(resp.session.name)}")
    renderer.line(f"Workspace: {text_or_dash(resp.workspace.name)}")
    renderer.line(f"VMID: {resp.sandbox.vmid}")
    renderer.line(f"IP: {text_or_dash(resp.sandbox.ip)}")
    if resp.old_vmid:
        renderer.line(f"Old VMID: {resp.old_vmid}")


def session_parser(prog: str, usage: str) -> FlagParser:
    parser = command_parser(prog, usage)
    parser.add_argument("session", nargs="?", default="")
    return parser


async def run_session_create(args: list[str], opts: CommonOptions) -> Outcome:
    parser = command_parser("session create", CREATE_USAGE)
    parser.add_argument("--name", default="")
    parser.add_argument("--profile", default="")
    parser.add_argument("--branch", default="")
    add_workspace_flags(parser)
    ns = parse(parser, args, opts)
    if ns is None:
        return Outcome.HELP
    name, profile = ns.name.strip(), ns.profile.strip()
    if not name or not profile:
        parser.fail("name and profile are required")
    plan = workspace_selection(parser, ns)
    request = SessionCreateRequest(
        name=name,
        profile=profile,
        workspace_id=plan.workspace_id,
        workspace_create=plan.create,
        branch=ns.branch.strip() or None,
    )
    async with opts.client() as client, enrich_api_errors(lambda e: wrap_unknown_profile(client, profile, e)):
        opts.activity.waiting_for = "session creation"
        data, session = await call(client, "POST", "/v1/sessions", Session, request)
    if opts.json_output:
        opts.renderer.json(data)
    else:
        print_session(opts.renderer, session)
    return Outcome.OK


async def run_session_list(args: list[str], opts: CommonOptions) -> Outcome:
    parser = command_parser("session list", LIST_USAGE)
    if parse(parser, args, opts) is None:
        return Outcome.HELP
    async with opts.client() as client:
        data = await client.request_json("GET", "/v1/sessions")
    if opts.json_output:
        opts.renderer.json(data)
        return Outcome.OK
    raw = data.get("sessions") if isinstance(data, dict) else None
    print_session_list(opts.renderer, [APIClient.validate(item, Session, "/v1/sessions") for item in raw or []])
    return Outcome.OK


async def run_session_show(args: list[str], opts: CommonOptions) -> Outcome:
    parser = session_parser("session show", SHOW_USAGE)
    ns = parse(parser, args, opts)
    if ns is None:
        return Outcome.HELP
    session = require(parser, ns.session, "session is required")
    async with opts.client() as client, enrich_api_errors(session_not_found(session)):
        data, record = await call(client, "GET", endpoint_path("v1", "sessions", session), Session)
    if opts.json_output:
        opts.renderer.json(data)
    else:
        print_session(opts.renderer, record)
    return Outcome.OK


async def run_session_resume(args: list[str], opts: CommonOptions) -> Outcome:
    parser = session_parser("session resume", RESUME_USAGE)
    ns = parse(parser, args, opts)
    if ns is None:
        return Outcome.HELP
    session = require(parser, ns.session, "session is required")
    path = endpoint_path("v1", "sessions", session, "resume")
    async with opts.client() as client, enrich_api_errors(session_not_found(session)):
        opts.activity.waiting_for = f"session {session} resume"
        data, resp = await call(client, "POST", path, SessionResumeResponse)
    if opts.json_output:
        opts.renderer.json(data)
    else:
        print_resume(opts.renderer, resp)
    return Outcome.OK


async def run_session_stop(args: list[str], opts: CommonOptions) -> Outcome:
    parser = session_parser("session stop", STOP_USAGE)
    ns = parse(parser, args, opts)
    if ns is None:
        return Outcome.HELP
    session = require(parser, ns.session, "session is required")
    path = endpoint_path("v1", "sessions", session, "stop")
    async with opts.client() as client, enrich_api_errors(session_not_found(session)):
        opts.activity.waiting_for = f"session {session} stop"
        data, record = await call(client, "POST", path, Session)
    if opts.json_output:
        opts.renderer.json(data)
    else:
        opts.renderer.line(f"session {text_or_dash(record.name)} stopped")
    return Outcome.OK


async def run_session_fork(args: list[str], opts: CommonOptions) -> Outcome:
    parser = session_parser("session fork", FORK_USAGE)
    parser.add_argument("--name", default="")
    parser.add_argument("--profile", default="")
    parser.add_argument("--branch", default="")
    add_workspace_flags(parser)
    ns = parse(parser, args, opts)
    if ns is None:
        return Outcome.HELP
    session = require(parser, ns.session, "session is required")
    name = require(parser, ns.name, "name is required")
    plan = workspace_selection(parser, ns)
    profile = ns.profile.strip()
    request = SessionForkRequest(
        name=name,
        profile=profile or None,
        workspace_id=plan.workspace_id,
        workspace_create=plan.create,
        branch=ns.branch.strip() or None,
    )
    path = endpoint_path("v1", "sessions", session, "fork")
    async with opts.client() as client, enrich_api_errors(session_not_found(session)):
        async with enrich_api_errors(lambda e: wrap_unknown_profile(client, profile, e) if profile else e):
            opts.activity.waiting_for = f"session {session} fork"
            data, record = await call(client, "POST", path, Session, request)
    if opts.json_output:
        opts.renderer.json(data)
    else:
        print_session(opts.renderer, record)
    return Outcome.OK


async def run_session_doctor(args: list[str], opts: CommonOptions) -> Outcome:
    parser = session_parser("session doctor", DOCTOR_USAGE)
    parser.add_argument("--out", default="")
    ns = parse(parser, args, opts)
    if ns is None:
        return Outcome.HELP
    session = require(parser, ns.session, "session is required")
    return await write_doctor_bundle(opts, "session", session, ns.out, lambda client: session_not_found(session))


GROUP = CommandGroup(
    "session",
    USAGE,
    [
        Command("create", run_session_create, CREATE_USAGE),
        Command("list", run_session_list, LIST_USAGE),
        Command("show", run_session_show, SHOW_USAGE),
        Command("resume", run_session_resume, RESUME_USAGE),
        Command("stop", run_session_stop, STOP_USAGE),
        Command("fork", run_session_fork, FORK_USAGE),
        Command("doctor", run_session_doctor, DOCTOR_USAGE),
    ],
)
