# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/agentlab

"""``agentlab ssh``: resolve a sandbox's SSH command, optionally exec it."""

import os
import sys
from collections.abc import Sequence

from loguru import logger
from pydantic import BaseModel

from agentlab.api import APIClient
from agentlab.commands.base import Command, CommonOptions, Outcome, command_parser, parse
from agentlab.confirm import TerminalPrompter
from agentlab.constants import DEFAULT_SSH_PORT, DEFAULT_SSH_USER
from agentlab.errors import CLIError
from agentlab.parsing import parse_vmid, split_double_dash
from agentlab.reachability import (
    ReachabilityEngine,
    build_ssh_args,
    format_shell_command,
    resolve_identity,
    resolve_jump_host,
    touch_sandbox,
)
from agentlab.tailnet import check_route_to_ip, route_warning

USAGE = (
    "Usage: agentlab ssh <vmid> [--user <user>] [--port <port>] [--identity <path>] [--exec] [--no-start] [--wait] "
    "[--jump-host <host>] [--jump-user <user>] [-- <remote command...>]\n"
    "Note: --exec replaces the CLI with ssh when run in a terminal.\n"
    "Note: --wait polls for SSH readiness before returning.\n"
    "Note: When the sandbox is not directly reachable, ssh goes through --jump-host (or the saved jump host)."
)


class SSHCommand(BaseModel):
    vmid: int
    ip: str
    user: str
    port: int
    identity: str | None = None
    jump_host: str | None = None
    args: list[str]
    command: str
    warning: str | None = None


async def resolve_ssh_command(
    opts: CommonOptions,
    client: APIClient,
    vmid: int,
    user: str = DEFAULT_SSH_USER,
    port: int = DEFAULT_SSH_PORT,
    identity: str = "",
    no_start: bool = False,
    wait: bool = False,
    jump_host: str = "",
    jump_user: str = "",
    remote: Sequence[str] = (),
) -> SSHCommand:
    """Runs the reachability engine and builds the final ``ssh`` argv.

    Raises:
        CLIError: If the sandbox cannot be reached (see :class:`ReachabilityEngine`).
    """
    identity = resolve_identity(identity)
    jump = resolve_jump_host(jump_host, jump_user, opts.jump_host, opts.jump_user, opts.endpoint)
    engine = ReachabilityEngine(
        client,
        opts.runner,
        vmid,
        user=user,
        port=port,
        identity=identity,
        no_start=no_start,
        wait=wait,
        jump=jump,
        timeout=opts.timeout,
        activity=opts.activity,
    )
    reach = await engine.resolve()
    args = ["ssh", *build_ssh_args(f"{user}@{reach.ip}", port, identity, reach.jump), *remote]

    warning = ""
    if reach.jump is None:
        warning = route_warning(await check_route_to_ip(opts.runner, reach.ip))
    await touch_sandbox(client, vmid)
    return SSHCommand(
        vmid=vmid,
        ip=reach.ip,
        user=user,
        port=port,
        identity=identity or None,
        jump_host=reach.jump.spec() if reach.jump is not None else None,
        args=args,
        command=format_shell_command(args),
        warning=warning or None,
    )


def exec_ssh(args: list[str]) -> None:
    """Replaces the current process with ``ssh``."""
    sys.stdout.flush()
    sys.stderr.flush()
    os.execvp(args[0], args)


async def run_ssh(args: list[str], opts: CommonOptions) -> Outcome:
    before, remote, has_remote = split_double_dash(args)
    parser = command_parser("ssh", USAGE)
    parser.add_argument("-u", "--user", default=DEFAULT_SSH_USER)
    parser.add_argument("-p", "--port", type=int, default=DEFAULT_SSH_PORT)
    parser.add_argument("-i", "--identity", default="")
    parser.add_argument("-e", "--exec", dest="exec_ssh", action="store_true")
    parser.add_argument("--no-start", dest="no_start", action="store_true")
    parser.add_argument("--wait", action="store_true")
    parser.add_argument("--jump-host", dest="jump_host", default="")
    parser.add_argument("--jump-user", dest="jump_user", default="")
    parser.add_argument("vmid", nargs="?", default="")
    parser.add_argument("command", nargs="*", default=[])
    ns = parse(parser, before, opts)
    if ns is None:
        return Outcome.HELP
    if not ns.vmid.strip():
        parser.fail("vmid is required")
    vmid = parse_vmid(ns.vmid)
    user = ns.user.strip()
    if not user:
        parser.fail("user is required")
    if not 0 < ns.port <= 65535:
        parser.fail(f"invalid port {ns.port}")
    remote_cmd = remote if has_remote else list(ns.command)
    if ns.exec_ssh and opts.json_output:
        parser.fail("cannot use --json with --exec")
    prompter = opts.prompter or TerminalPrompter()
    if ns.exec_ssh and not remote_cmd and not prompter.is_interactive():
        raise CLIError("--exec requires an interactive terminal (or pass a remote command after <vmid> with --)")

    async with opts.client() as client:
        ssh = await resolve_ssh_command(
            opts,
            client,
            vmid,
            user=user,
            port=ns.port,
            identity=ns.identity,
            no_start=ns.no_start,
            wait=ns.wait,
            jump_host=ns.jump_host,
            jump_user=ns.jump_user,
            remote=remote_cmd,
        )

    renderer = opts.renderer
    if renderer.json_output:
        renderer.json(ssh)
        return Outcome.OK
    if ssh.warning:
        renderer.warn(ssh.warning)
    if ns.exec_ssh:
        logger.debug(f"exec {ssh.command}")
        exec_ssh(ssh.args)
        return Outcome.OK
    renderer.line(ssh.command)
    return Outcome.OK


COMMAND = Command("ssh", run_ssh, USAGE)
