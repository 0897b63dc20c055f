# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/agentlab

"""``agentlab job``: run, validate-plan, show, artifacts, doctor."""

import argparse
import math
from dataclasses import dataclass

from loguru import logger

from agentlab.api import APIClient
from agentlab.artifacts import download_artifact, list_artifacts, select_artifact
from agentlab.commands.base import (
    Command,
    CommandGroup,
    CommonOptions,
    Outcome,
    call,
    command_parser,
    enrich_api_errors,
    parse,
    require,
)
from agentlab.commands.doctor import write_doctor_bundle
from agentlab.constants import DEFAULT_STATEFUL_WORKSPACE_SIZE_GB, DEFAULT_STATEFUL_WORKSPACE_STORAGE
from agentlab.endpoint import endpoint_path
from agentlab.errors import APIError, CLIError, UsageError
from agentlab.models import (
    Artifact,
    Job,
    JobCreateRequest,
    Session,
    SessionCreateRequest,
    ValidatePlanResponse,
    WorkspaceCreateRequest,
)
from agentlab.models.results import PreflightIssue
from agentlab.parsing import FlagParser, parse_duration, parse_size_gb, parse_ttl_minutes, slugify
from agentlab.render import Renderer, to_jsonable
from agentlab.suggestions import wrap_job_not_found, wrap_unknown_profile
from agentlab.tailer import format_event

RUN_FLAGS = (
    "--repo <url> --task <task> --profile <profile> [--ref <ref>] [--mode <mode>] [--ttl <ttl>] [--keepalive] "
    "[--branch <branch>] [--workspace <id|name|new:name>] [--workspace-create <name>] [--workspace-size <size>] "
    "[--workspace-storage <storage>] [--workspace-wait <duration>] [--stateful]"
)
USAGE = "Usage: agentlab job <run|validate-plan|show|artifacts|doctor> [flags]"
RUN_USAGE = f"Usage: agentlab job run {RUN_FLAGS}"
VALIDATE_USAGE = (
    f"Usage: agentlab job validate-plan {RUN_FLAGS}\n"
    "Note: Checks the plan without creating the job; exits 1 when the plan is not ok."
)
SHOW_USAGE = (
    "Usage: agentlab job show <job_id> [--events-tail <n>]\n"
    "Note: --events-tail=0 omits recent events from the response."
)
ARTIFACTS_USAGE = "Usage: agentlab job artifacts <job_id>"
DOWNLOAD_USAGE = (
    "Usage: agentlab job artifacts download <job_id> [--out <path>] [--path <path>] [--name <name>] [--latest] "
    "[--bundle]\n"
    "Note: By default, downloads the latest bundle (agentlab-artifacts.tar.gz) when available."
)
DOCTOR_USAGE = "Usage: agentlab job doctor <job_id> [--out <path>]"

NEW_WORKSPACE_PREFIX = "new:"


@dataclass
class WorkspacePlan:
    """Where a job's workspace comes from."""

    workspace_id: str | None = None
    create: WorkspaceCreateRequest | None = None
    wait_seconds: int | None = None

    @property
    def explicit(self) -> bool:
        return self.workspace_id is not None or self.create is not None


def repo_basename(repo: str) -> str:
    base = repo.strip().rstrip("/").rsplit("/", 1)[-1].rsplit(":", 1)[-1]
    return base.removesuffix(".git")


def stateful_workspace_name(repo: str) -> str:
    slug = slugify(repo_basename(repo))
    return f"stateful-{slug}" if slug else "stateful"


def branch_session_name(branch: str) -> str:
    slug = slugify(branch)
    if not slug:
        raise UsageError(f'invalid branch "{branch}"')
    return f"branch-{slug}"


def default_workspace_create(name: str) -> WorkspaceCreateRequest:
    return WorkspaceCreateRequest(
        name=name,
        size_gb=DEFAULT_STATEFUL_WORKSPACE_SIZE_GB,
        storage=DEFAULT_STATEFUL_WORKSPACE_STORAGE,
    )


def add_workspace_flags(parser: FlagParser) -> None:
    parser.add_argument("--workspace", default="")
    parser.add_argument("--workspace-create", dest="workspace_create", default="")
    parser.add_argument("--workspace-size", dest="workspace_size", default="")
    parser.add_argument("--workspace-storage", dest="workspace_storage", default="")


def workspace_selection(parser: FlagParser, ns: argparse.Namespace) -> WorkspacePlan:
    """Resolves ``--workspace``/``--workspace-create``/``--workspace-size``/``--workspace-storage``.

    Raises:
        UsageError: On conflicting or incomplete workspace flags.
    """
    workspace = ns.workspace.strip()
    create_name = ns.workspace_create.strip()
    size_raw = ns.workspace_size.strip()
    storage = ns.workspace_storage.strip()
    if workspace and create_name:
        parser.fail("use only one of --workspace or --workspace-create")
    if create_name and not size_raw:
        parser.fail("--workspace-size is required with --workspace-create")
    if workspace.startswith(NEW_WORKSPACE_PREFIX):
        create_name = workspace[len(NEW_WORKSPACE_PREFIX) :].strip()
        if not create_name:
            parser.fail("workspace name is required after new:")
        workspace = ""
    if (size_raw or storage) and not create_name:
        parser.fail("--workspace-size and --workspace-storage require --workspace new:<name> or --workspace-create")

    plan = WorkspacePlan()
    if workspace:
        plan.workspace_id = workspace
    elif create_name:
        size = DEFAULT_STATEFUL_WORKSPACE_SIZE_GB
        if size_raw:
            try:
                size = parse_size_gb(size_raw)
            except ValueError as e:
                parser.fail(str(e))
        plan.create = WorkspaceCreateRequest(name=create_name, size_gb=size, storage=storage or None)
    return plan


def _job_parser(prog: str, usage: str) -> FlagParser:
    parser = command_parser(prog, usage)
    parser.add_argument("--repo", default="")
    parser.add_argument("--ref", default="")
    parser.add_argument("--profile", default="")
    parser.add_argument("--task", default="")
    parser.add_argument("--mode", default="")
    parser.add_argument("--ttl", default="")
    parser.add_argument("--keepalive", action=argparse.BooleanOptionalAction, default=None)
    parser.add_argument("--branch", default="")
    parser.add_argument("--workspace-wait", dest="workspace_wait", default="")
    parser.add_argument("--stateful", action="store_true")
    add_workspace_flags(parser)
    return parser


@dataclass
class JobPlan:
    request: JobCreateRequest
    branch: str = ""
    session_name: str = ""


def build_job_plan(parser: FlagParser, ns: argparse.Namespace) -> JobPlan:
    """Validates ``job run`` flags and builds the request (without the branch session)."""
    repo, profile, task = ns.repo.strip(), ns.profile.strip(), ns.task.strip()
    if not (repo and profile and task):
        parser.fail("repo, profile, and task are required")
    ttl_minutes = None
    if ns.ttl.strip():
        try:
            ttl_minutes = parse_ttl_minutes(ns.ttl)
        except ValueError as e:
            parser.fail(str(e))

    plan = workspace_selection(parser, ns)
    branch = ns.branch.strip()
    if ns.workspace_wait.strip():
        if not (plan.explicit or ns.stateful or branch):
            parser.fail("--workspace-wait requires --workspace, --workspace-create, --stateful or --branch")
        try:
            seconds = parse_duration(ns.workspace_wait)
        except ValueError as e:
            parser.fail(str(e))
        if seconds <= 0:
            parser.fail("workspace-wait must be positive")
        plan.wait_seconds = math.ceil(seconds)
    if ns.stateful and not plan.explicit and not branch:
        plan.create = default_workspace_create(stateful_workspace_name(repo))

    request = JobCreateRequest(
        repo_url=repo,
        profile=profile,
        task=task,
        ref=ns.ref.strip() or None,
        mode=ns.mode.strip() or None,
        ttl_minutes=ttl_minutes,
        keepalive=ns.keepalive,
        workspace_id=plan.workspace_id,
        workspace_create=plan.create,
        workspace_wait_seconds=plan.wait_seconds,
    )
    return JobPlan(request=request, branch=branch, session_name=branch_session_name(branch) if branch else "")


async def lookup_session(client: APIClient, name: str) -> Session | None:
    try:
        return await client.get(endpoint_path("v1", "sessions", name), Session)
    except APIError as e:
        if e.is_not_found("session"):
            return None
        raise


async def ensure_branch_session(client: APIClient, plan: JobPlan) -> Session:
    """Gets or creates the ``branch-<slug>`` session for ``--branch``."""
    session = await lookup_session(client, plan.session_name)
    if session is not None:
        logger.debug(f"Reusing session {session.id} for branch {plan.branch}")
        return session
    request = plan.request
    create = SessionCreateRequest(
        name=plan.session_name,
        profile=request.profile,
        branch=plan.branch,
        workspace_id=request.workspace_id,
        workspace_create=request.workspace_create,
    )
    if create.workspace_id is None and create.workspace_create is None:
        create.workspace_create = default_workspace_create(plan.session_name)
    logger.info(f"Creating session {plan.session_name} for branch {plan.branch}")
    return await client.post("/v1/sessions", Session, create)


def bind_session(request: JobCreateRequest, session: Session) -> JobCreateRequest:
    return request.model_copy(
        update={"workspace_id": session.workspace_id or None, "workspace_create": None, "session_id": session.id}
    )


def print_job(renderer: Renderer, job: Job) -> None:
    renderer.fields(
        [
            ("Job ID", job.id),
            ("Repo", job.repo_url),
            ("Ref", job.ref),
            ("Profile", job.profile),
            ("Task", job.task),
            ("Mode", job.mode),
            ("Status", job.status),
            ("Keepalive", str(job.keepalive).lower()),
            ("TTL Minutes", job.ttl_minutes),
            ("Sandbox VMID", job.sandbox_vmid),
            ("Workspace", job.workspace_id),
            ("Session", job.session_id),
            ("Created At", job.created_at),
            ("Updated At", job.updated_at),
        ]
    )


async def run_job_run(args: list[str], opts: CommonOptions) -> Outcome:
    parser = _job_parser("job run", RUN_USAGE)
    ns = parse(parser, args, opts)
    if ns is None:
        return Outcome.HELP
    plan = build_job_plan(parser, ns)
    async with opts.client() as client:
        request = plan.request
        async with enrich_api_errors(lambda e: wrap_unknown_profile(client, request.profile, e)):
            if plan.branch:
                opts.activity.waiting_for = f"session {plan.session_name}"
                request = bind_session(request, await ensure_branch_session(client, plan))
            opts.activity.waiting_for = "job creation"
            data, job = await call(client, "POST", "/v1/jobs", Job, request)
    if opts.json_output:
        opts.renderer.json(data)
    else:
        print_job(opts.renderer, job)
    return Outcome.OK


def _print_issues(renderer: Renderer, title: str, issues: list[PreflightIssue]) -> None:
    if not issues:
        return
    renderer.line(f"{title}:")
    for issue in issues:
        where = f" ({issue.field})" if issue.field else ""
        code = f"[{issue.code}] " if issue.code else ""
        renderer.line(f"  - {code}{issue.message}{where}")


async def run_job_validate_plan(args: list[str], opts: CommonOptions) -> Outcome:
    parser = _job_parser("job validate-plan", VALIDATE_USAGE)
    ns = parse(parser, args, opts)
    if ns is None:
        return Outcome.HELP
    plan = build_job_plan(parser, ns)
    async with opts.client() as client:
        request = plan.request
        if plan.branch:
            # Validation must not create the session; plan against it only when it exists.
            session = await lookup_session(client, plan.session_name)
            if session is not None:
                request = bind_session(request, session)
            elif request.workspace_id is None and request.workspace_create is None:
                request = request.model_copy(
                    update={"workspace_create": default_workspace_create(plan.session_name)}
                )
        data, result = await call(client, "POST", "/v1/jobs/validate-plan", ValidatePlanResponse, request)

    renderer = opts.renderer
    if renderer.json_output:
        renderer.json(data)
    else:
        renderer.line(f"Plan: {'ok' if result.ok else 'invalid'}")
        _print_issues(renderer, "Errors", result.errors)
        _print_issues(renderer, "Warnings", result.warnings)
    return Outcome.OK if result.ok else Outcome.FAILED


async def run_job_show(args: list[str], opts: CommonOptions) -> Outcome:
    parser = command_parser("job show", SHOW_USAGE)
    parser.add_argument("--events-tail", dest="events_tail", type=int, default=-1)
    parser.add_argument("job_id", nargs="?", default="")
    ns = parse(parser, args, opts)
    if ns is None:
        return Outcome.HELP
    job_id = require(parser, ns.job_id, "job_id is required")
    query = {"events_tail": ns.events_tail} if ns.events_tail >= 0 else None
    path = endpoint_path("v1", "jobs", job_id)
    async with opts.client() as client, enrich_api_errors(lambda e: wrap_job_not_found(job_id, e)):
        data, job = await call(client, "GET", path, Job, query=query)

    renderer = opts.renderer
    if renderer.json_output:
        renderer.json(data)
        return Outcome.OK
    print_job(renderer, job)
    if job.events:
        renderer.line("Events:")
        for event in job.events:
            renderer.line(format_event(event))
    return Outcome.OK


def print_artifacts(renderer: Renderer, artifacts: list[Artifact]) -> None:
    rows = []
    for artifact in artifacts:
        name = artifact.name.strip() or artifact.path.strip().rsplit("/", 1)[-1]
        rows.append(
            [
                name,
                artifact.path,
                artifact.size_bytes,
                artifact.mime,
                artifact.created_at,
                artifact.sha256.strip()[:12],
            ]
        )
    renderer.table(["NAME", "PATH", "SIZE(B)", "MIME", "CREATED", "SHA256"], rows)


async def run_job_artifacts(args: list[str], opts: CommonOptions) -> Outcome:
    parser = command_parser("job artifacts", ARTIFACTS_USAGE)
    parser.add_argument("job_id", nargs="?", default="")
    ns = parse(parser, args, opts)
    if ns is None:
        return Outcome.HELP
    job_id = require(parser, ns.job_id, "job_id is required")
    path = endpoint_path("v1", "jobs", job_id, "artifacts")
    async with opts.client() as client, enrich_api_errors(lambda e: wrap_job_not_found(job_id, e)):
        data = await client.request_json("GET", path)
    if opts.json_output:
        opts.renderer.json(data)
        return Outcome.OK
    raw = data.get("artifacts") if isinstance(data, dict) else None
    print_artifacts(opts.renderer, [APIClient.validate(item, Artifact, path) for item in raw or []])
    return Outcome.OK


async def run_job_artifacts_download(args: list[str], opts: CommonOptions) -> Outcome:
    parser = command_parser("job artifacts download", DOWNLOAD_USAGE)
    parser.add_argument("--out", default="")
    parser.add_argument("--path", default="")
    parser.add_argument("--name", default="")
    parser.add_argument("--latest", action="store_true")
    parser.add_argument("--bundle", action="store_true")
    parser.add_argument("job_id", nargs="?", default="")
    ns = parse(parser, args, opts)
    if ns is None:
        return Outcome.HELP
    job_id = require(parser, ns.job_id, "job_id is required")
    async with opts.client() as client, enrich_api_errors(lambda e: wrap_job_not_found(job_id, e)):
        artifacts = await list_artifacts(client, job_id)
        artifact = select_artifact(artifacts, ns.path, ns.name, ns.latest, ns.bundle, job_id=job_id)
        if not artifact.path.strip():
            artifact = artifact.model_copy(update={"path": artifact.name.strip()})
        if not artifact.path:
            raise CLIError("selected artifact has no path")
        opts.activity.waiting_for = f"artifact {artifact.path}"
        target, size = await download_artifact(client, job_id, artifact, ns.out)
    logger.info(f"Downloaded {artifact.path} ({size} bytes) to {target}")

    renderer = opts.renderer
    if renderer.json_output:
        renderer.json({"job_id": job_id, "artifact": to_jsonable(artifact), "out": str(target)})
    else:
        renderer.line(f"downloaded {artifact.path} to {target}")
    return Outcome.OK


async def run_job_doctor(args: list[str], opts: CommonOptions) -> Outcome:
    parser = command_parser("job doctor", DOCTOR_USAGE)
    parser.add_argument("--out", default="")
    parser.add_argument("job_id", nargs="?", default="")
    ns = parse(parser, args, opts)
    if ns is None:
        return Outcome.HELP
    job_id = require(parser, ns.job_id, "job_id is required")
    return await write_doctor_bundle(
        opts, "job", job_id, ns.out, lambda _client: lambda e: wrap_job_not_found(job_id, e)
    )


GROUP = CommandGroup(
    "job",
    USAGE,
    [
        Command("run", run_job_run, RUN_USAGE),
        Command("validate-plan", run_job_validate_plan, VALIDATE_USAGE),
        Command("show", run_job_show, SHOW_USAGE),
        CommandGroup(
            "artifacts",
            ARTIFACTS_USAGE,
            [Command("download", run_job_artifacts_download, DOWNLOAD_USAGE)],
            fallback=run_job_artifacts,
        ),
        Command("doctor", run_job_doctor, DOCTOR_USAGE),
    ],
)
