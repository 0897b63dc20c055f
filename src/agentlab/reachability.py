# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/agentlab

"""Sandbox reachability: start-if-stopped, wait for an IP, probe SSH, fall back to a jump host.

One :class:`ReachabilityEngine` run walks these states::

    INIT -> FETCHING -> (STARTING) -> (WAITING_IP) -> PROBING -> (JUMP_FALLBACK) -> READY | FAIL

The daemon's reported state is authoritative; a regression is never retried.
"""

import ipaddress
import os
from collections.abc import AsyncIterator, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from enum import Enum

import anyio
from loguru import logger

from agentlab import constants
from agentlab.api import APIClient
from agentlab.constants import DEFAULT_IDENTITY_PATH, DEFAULT_SSH_PORT, ENV_SSH_IDENTITY, TERMINAL_SANDBOX_STATES
from agentlab.endpoint import endpoint_hostname, endpoint_path
from agentlab.errors import AgentlabError, APIError, CLIError, CommandError, TransportError
from agentlab.models import Sandbox
from agentlab.runner import CommandRunner
from agentlab.suggestions import wrap_sandbox_not_found

SSH_AUTH_FAILURE_PATTERNS = (
    "permission denied",
    "publickey",
    "host key verification failed",
    "too many authentication failures",
    "authentication failed",
)

_SHELL_SPECIAL = set(" \t\n\r\v\f\\'\"$`")


class ReachState(str, Enum):
    INIT = "INIT"
    FETCHING = "FETCHING"
    STARTING = "STARTING"
    WAITING_IP = "WAITING_IP"
    PROBING = "PROBING"
    JUMP_FALLBACK = "JUMP_FALLBACK"
    READY = "READY"
    FAIL = "FAIL"


@dataclass
class Activity:
    """What a command is currently waiting for, reported when it is interrupted."""

    waiting_for: str | None = None


@dataclass
class JumpHost:
    host: str
    user: str = ""

    def spec(self) -> str:
        return f"{self.user}@{self.host}" if self.user else self.host


@dataclass
class Reachability:
    """Result of a successful run."""

    sandbox: Sandbox
    ip: str
    jump: JumpHost | None = None
    states: list[ReachState] = field(default_factory=list)


def shell_quote(value: str) -> str:
    """Single-quotes ``value`` when it contains shell-special characters."""
    if value == "":
        return "''"
    if not any(ch in _SHELL_SPECIAL for ch in value):
        return value
    return "'" + value.replace("'", "'\\''") + "'"


def format_shell_command(args: Sequence[str]) -> str:
    return " ".join(shell_quote(arg) for arg in args)


def build_ssh_args(target: str, port: int, identity: str = "", jump: JumpHost | None = None) -> list[str]:
    """Builds ssh options and target (without the leading ``ssh``)."""
    args = [
        # Never prompt: callers are often agents without a terminal.
        "-o", "StrictHostKeyChecking=no",
        "-o", "UserKnownHostsFile=/dev/null",
        "-o", "LogLevel=ERROR",
        "-o", "BatchMode=yes",
        "-o", "ConnectTimeout=10",
    ]  # fmt: skip
    if identity:
        args += ["-o", "IdentitiesOnly=yes", "-i", identity]
    if port != DEFAULT_SSH_PORT:
        args += ["-p", str(port)]
    if jump is not None:
        args += ["-J", jump.spec()]
    args.append(target)
    return args


def is_readable_file(path: str) -> bool:
    path = path.strip()
    return bool(path) and os.path.isfile(path) and os.access(path, os.R_OK)


def resolve_identity(flag: str = "") -> str:
    """``--identity``, then ``AGENTLAB_SSH_IDENTITY``, then the host key if readable."""
    identity = flag.strip()
    if identity:
        return identity
    env = os.environ.get(ENV_SSH_IDENTITY, "").strip()
    if env:
        return env
    if is_readable_file(DEFAULT_IDENTITY_PATH):
        return DEFAULT_IDENTITY_PATH
    return ""


def resolve_jump_host(
    flag_host: str, flag_user: str, config_host: str, config_user: str, endpoint: str
) -> JumpHost | None:
    """Picks the jump host: flag, then credentials file, then the endpoint's hostname."""
    host = flag_host.strip() or config_host.strip()
    if not host and endpoint.strip():
        try:
            host = endpoint_hostname(endpoint)
        except ValueError:
            host = ""
    if not host:
        return None
    user = flag_user.strip() or config_user.strip()
    return JumpHost(host=host, user=user)


def is_auth_failure(output: str) -> bool:
    lowered = output.lower()
    return any(pattern in lowered for pattern in SSH_AUTH_FAILURE_PATTERNS)


async def probe_tcp(ip: str, port: int, timeout: float = constants.SSH_PROBE_TIMEOUT) -> bool:
    """Returns True when a TCP connection to ``ip:port`` succeeds within ``timeout``."""
    try:
        with anyio.fail_after(timeout):
            stream = await anyio.connect_tcp(ip, port)
    except (OSError, TimeoutError):
        return False
    await stream.aclose()
    return True


def _address(ip: str, port: int) -> str:
    return f"[{ip}]:{port}" if ":" in ip else f"{ip}:{port}"


@asynccontextmanager
async def waiting(activity: Activity, desc: str) -> AsyncIterator[None]:
    """Marks ``desc`` as the current wait so an interruption can name it."""
    previous = activity.waiting_for
    activity.waiting_for = desc
    yield
    # Left set when the body raises, so the interruption can be reported.
    activity.waiting_for = previous


class ReachabilityEngine:
    """Resolves how to reach a sandbox over SSH.

    Args:
        client: Daemon API client.
        runner: Runs the jump host viability check.
        vmid: Sandbox to reach.
        user: SSH user on the sandbox.
        port: SSH port on the sandbox.
        identity: SSH identity file, or ``""``.
        no_start: Fail instead of starting a stopped sandbox.
        wait: Keep probing at 1 Hz until the deadline instead of probing once.
        jump: Jump host used when the sandbox is not directly reachable.
        timeout: Overall deadline in seconds; ``<= 0`` means none.
        activity: Records the current wait for cancellation messages.
    """

    def __init__(
        self,
        client: APIClient,
        runner: CommandRunner,
        vmid: int,
        user: str = constants.DEFAULT_SSH_USER,
        port: int = DEFAULT_SSH_PORT,
        identity: str = "",
        no_start: bool = False,
        wait: bool = False,
        jump: JumpHost | None = None,
        timeout: float = 0,
        activity: Activity | None = None,
    ):
        self.client = client
        self.runner = runner
        self.vmid = vmid
        self.user = user
        self.port = port
        self.identity = identity
        self.no_start = no_start
        self.wait = wait
        self.jump = jump
        self.timeout = timeout
        self.activity = activity or Activity()
        self.states: list[ReachState] = [ReachState.INIT]

    def _enter(self, state: ReachState) -> None:
        logger.debug(f"sandbox {self.vmid}: {self.states[-1].value} -> {state.value}")
        self.states.append(state)

    async def resolve(self) -> Reachability:
        """Runs the state machine.

        Raises:
            CLIError: On a terminal state, a missing IP, an unreachable sandbox or the deadline.
            APIError: If the daemon rejects a request.
        """
        try:
            with anyio.fail_after(self.timeout if self.timeout > 0 else None):
                return await self._resolve()
        except TimeoutError as e:
            self._enter(ReachState.FAIL)
            desc = self.activity.waiting_for or f"sandbox {self.vmid}"
            message = f"timed out waiting for {desc}"
            if desc == self._ip_desc:
                message += " (no IP yet)"
            raise CLIError(message, hints=["raise --timeout to wait longer"]) from e
        except CLIError:
            self._enter(ReachState.FAIL)
            raise

    @property
    def _ip_desc(self) -> str:
        return f"sandbox {self.vmid} IP"

    async def _resolve(self) -> Reachability:
        self._enter(ReachState.FETCHING)
        sandbox = await self._fetch()
        if sandbox.state.upper() == "STOPPED":
            if self.no_start:
                raise CLIError(
                    f"sandbox {self.vmid} is stopped; use agentlab sandbox start {self.vmid} or omit --no-start"
                )
            self._enter(ReachState.STARTING)
            sandbox = await self._start()
        ip = sandbox.ip.strip()
        if not ip:
            if sandbox.state.upper() in TERMINAL_SANDBOX_STATES:
                raise CLIError(f"sandbox {self.vmid} is {sandbox.state.lower()} and has no IP")
            self._enter(ReachState.WAITING_IP)
            sandbox = await self._wait_for_ip()
            ip = sandbox.ip.strip()
        try:
            ipaddress.ip_address(ip)
        except ValueError:
            raise CLIError(f'sandbox {self.vmid} returned invalid IP "{ip}"') from None

        self._enter(ReachState.PROBING)
        jump = await self._probe(ip)
        self._enter(ReachState.READY)
        return Reachability(sandbox=sandbox, ip=ip, jump=jump, states=list(self.states))

    async def _fetch(self) -> Sandbox:
        try:
            return await self.client.get(endpoint_path("v1", "sandboxes", self.vmid), Sandbox)
        except APIError as e:
            raise await wrap_sandbox_not_found(self.client, self.vmid, e)

    async def _start(self) -> Sandbox:
        try:
            return await self.client.post(endpoint_path("v1", "sandboxes", self.vmid, "start"), Sandbox)
        except APIError as e:
            raise await wrap_sandbox_not_found(self.client, self.vmid, e)

    async def _wait_for_ip(self) -> Sandbox:
        async with waiting(self.activity, self._ip_desc):
            while True:
                try:
                    sandbox = await self.client.get(endpoint_path("v1", "sandboxes", self.vmid), Sandbox)
                except TransportError as e:
                    if e.timed_out:
                        raise TimeoutError(str(e)) from e
                    logger.debug(f"Polling sandbox {self.vmid} failed: {e}")
                else:
                    if sandbox.ip.strip():
                        return sandbox
                    if sandbox.state.upper() in TERMINAL_SANDBOX_STATES:
                        raise CLIError(f"sandbox {self.vmid} is {sandbox.state.lower()} and has no IP")
                await anyio.sleep(constants.SANDBOX_POLL_INTERVAL)

    async def _probe(self, ip: str) -> JumpHost | None:
        address = _address(ip, self.port)
        async with waiting(self.activity, f"ssh on {address}"):
            while True:
                if await probe_tcp(ip, self.port):
                    return None
                if self.jump is not None:
                    self._enter(ReachState.JUMP_FALLBACK)
                    if await self._jump_viable(ip):
                        return self.jump
                if not self.wait:
                    break
                await anyio.sleep(constants.SSH_PROBE_INTERVAL)

        if self.jump is None:
            raise CLIError(
                f"sandbox {self.vmid} is not reachable at {address}",
                hints=[
                    "pass --jump-host to connect through a host on the agent network",
                    "or save one with agentlab connect --jump-host <host>",
                ],
            )
        raise CLIError(
            f"sandbox {self.vmid} is not reachable at {address} (directly or via jump host {self.jump.spec()})",
            hints=["check the jump host credentials and that it can reach the agent subnet"],
        )

    async def _jump_viable(self, ip: str) -> bool:
        assert self.jump is not None
        args = ["ssh", "-o", "BatchMode=yes", "-o", "ConnectTimeout=5"]
        args += ["-o", "StrictHostKeyChecking=no", "-o", "UserKnownHostsFile=/dev/null", "-o", "LogLevel=ERROR"]
        if self.identity:
            args += ["-o", "IdentitiesOnly=yes", "-i", self.identity]
        if self.port != DEFAULT_SSH_PORT:
            args += ["-p", str(self.port)]
        args += ["-J", self.jump.spec(), f"{self.user}@{ip}", "true"]
        try:
            result = await self.runner.run(args, timeout=constants.JUMP_PROBE_TIMEOUT)
        except CommandError as e:
            logger.debug(f"Jump probe via {self.jump.spec()} failed: {e}")
            return False
        if result.ok:
            return True
        # An auth failure still proves the path through the jump host works.
        return is_auth_failure(result.output)


async def touch_sandbox(client: APIClient, vmid: int) -> None:
    """Best-effort POST ``/touch`` to record usage; failures are only logged."""
    with anyio.move_on_after(constants.TOUCH_TIMEOUT):
        try:
            await client.do_json("POST", endpoint_path("v1", "sandboxes", vmid, "touch"))
        except AgentlabError as e:
            logger.debug(f"Touch sandbox {vmid} failed: {e}")
