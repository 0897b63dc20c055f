# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/agentlab

"""Shared plumbing for command handlers: options, registry nodes, dispatch."""

import argparse
import inspect
import sys
from collections.abc import AsyncIterator, Awaitable, Callable, Mapping, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, TypeVar

import httpx
from loguru import logger
from pydantic import BaseModel

from agentlab.api import APIClient
from agentlab.config import TailscaleAdminConfig
from agentlab.confirm import Prompter
from agentlab.constants import DEFAULT_REQUEST_TIMEOUT, DEFAULT_SOCKET_PATH
from agentlab.errors import AgentlabError, APIError, UsageError
from agentlab.models import WireModel
from agentlab.parsing import FlagParser, duration_arg
from agentlab.reachability import Activity
from agentlab.render import Renderer
from agentlab.runner import CommandRunner, SubprocessRunner
from agentlab.suggestions import unknown_command_error

M = TypeVar("M", bound=BaseModel)

HELP_TOKENS = frozenset({"help", "-h", "--help"})


class Outcome(str, Enum):
    """What a handler did. Help is a normal outcome, not an error."""

    OK = "ok"
    HELP = "help"
    FAILED = "failed"


@dataclass
class CommonOptions:
    """Resolved global options plus the capabilities handlers need.

    Handlers may update ``socket_path``, ``json_output`` and ``timeout`` from
    their own ``--socket``, ``--json`` and ``--timeout`` flags.
    """

    socket_path: str = DEFAULT_SOCKET_PATH
    endpoint: str = ""
    token: str = ""
    json_output: bool = False
    timeout: float = DEFAULT_REQUEST_TIMEOUT
    jump_host: str = ""
    jump_user: str = ""
    tailscale_admin: TailscaleAdminConfig | None = None
    config_path: Path | None = None
    transport: httpx.AsyncBaseTransport | None = None
    runner: CommandRunner = field(default_factory=SubprocessRunner)
    prompter: Prompter | None = None
    activity: Activity = field(default_factory=Activity)
    following: bool = False
    secrets: list[str] = field(default_factory=list)

    def client(self) -> APIClient:
        return APIClient(
            socket_path=self.socket_path,
            endpoint=self.endpoint,
            token=self.token,
            timeout=self.timeout,
            transport=self.transport,
        )

    @property
    def renderer(self) -> Renderer:
        return Renderer(self.json_output)


Handler = Callable[[list[str], CommonOptions], Awaitable[Outcome]]


@dataclass
class Command:
    name: str
    handler: Handler
    usage: str = ""


@dataclass
class CommandGroup:
    """A verb whose first argument selects a subcommand.

    ``fallback`` receives the arguments when the first one is not a known
    subverb (``job artifacts <id>`` lists while ``job artifacts download``
    downloads).
    """

    name: str
    usage: str
    commands: list["Command | CommandGroup"] = field(default_factory=list)
    fallback: Handler | None = None

    def lookup(self, name: str) -> "Command | CommandGroup | None":
        for command in self.commands:
            if command.name == name:
                return command
        return None

    @property
    def names(self) -> list[str]:
        return [command.name for command in self.commands]


def print_usage(usage: str) -> None:
    sys.stdout.write(usage.rstrip("\n") + "\n")
    sys.stdout.flush()


async def dispatch(node: Command | CommandGroup, args: list[str], opts: CommonOptions, path: str = "") -> Outcome:
    """Walks ``args`` down the registry and runs the selected handler.

    Raises:
        UsageError: If a group is invoked without a subcommand.
        CLIError: If the subcommand is unknown.
    """
    if isinstance(node, Command):
        return await node.handler(args, opts)

    scope = f"{path} {node.name}".strip()
    if not args:
        if node.fallback is not None:
            return await node.fallback(args, opts)
        raise UsageError(f"{scope} command is required", usage=node.usage, next_step=f"agentlab {scope} --help")
    head, rest = args[0], args[1:]
    if head in HELP_TOKENS:
        print_usage(node.usage)
        return Outcome.HELP
    child = node.lookup(head)
    if child is None:
        if node.fallback is not None:
            return await node.fallback(args, opts)
        raise unknown_command_error(head, node.names, parent=scope)
    logger.debug(f"dispatch {scope} {child.name}")
    return await dispatch(child, rest, opts, scope)


def command_parser(prog: str, usage: str) -> FlagParser:
    """Returns a parser with the per-command ``--socket``, ``--json`` and ``--timeout`` flags."""
    parser = FlagParser(prog=f"agentlab {prog}", usage=usage)
    parser.add_argument("--socket", default=None)
    parser.add_argument("--json", action="store_true", default=None)
    parser.add_argument("--timeout", type=duration_arg, default=None)
    return parser


def parse(parser: FlagParser, args: Sequence[str], opts: CommonOptions) -> argparse.Namespace | None:
    """Parses ``args`` and folds the common flags into ``opts``.

    Returns:
        The namespace, or None when help was requested (usage already printed).
    """
    ns = parser.parse(args)
    if ns.socket:
        opts.socket_path = ns.socket
    if ns.json:
        opts.json_output = True
    if ns.timeout is not None:
        opts.timeout = ns.timeout
    if ns.help:
        print_usage(parser.usage_text)
        return None
    return ns


def require(parser: FlagParser, value: str | None, message: str) -> str:
    value = (value or "").strip()
    if not value:
        parser.fail(message)
    return value


async def call(
    client: APIClient,
    method: str,
    path: str,
    model: type[M],
    payload: WireModel | Mapping[str, Any] | None = None,
    query: Mapping[str, Any] | None = None,
) -> tuple[Any, M]:
    """Sends a request and returns both the raw JSON (for ``--json``) and the validated model."""
    data = await client.request_json(method, path, payload, query)
    return data, client.validate(data, model, path)


Enricher = Callable[[APIError], "AgentlabError | Awaitable[AgentlabError]"]


@asynccontextmanager
async def enrich_api_errors(enrich: Enricher) -> AsyncIterator[None]:
    """Rewrites API errors raised inside the block (for example not-found hints)."""
    try:
        yield
    except APIError as e:
        replacement = enrich(e)
        if inspect.isawaitable(replacement):
            replacement = await replacement
        if replacement is e:
            raise
        raise replacement from e
