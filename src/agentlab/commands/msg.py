# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/agentlab

"""``agentlab msg``: the messagebox shared by jobs, workspaces and sessions."""

import argparse
import json

from agentlab.commands.base import Command, CommandGroup, CommonOptions, Outcome, call, command_parser, parse
from agentlab.constants import DEFAULT_LOG_TAIL
from agentlab.models import Message, MessageCreateRequest
from agentlab.parsing import FlagParser
from agentlab.tailer import format_message, tail_messages

SCOPE_FLAGS = "(--job <id> | --workspace <id> | --session <id>)"
USAGE = "Usage: agentlab msg <post|tail>"
POST_USAGE = (
    f"Usage: agentlab msg post {SCOPE_FLAGS} [--author <name>] [--kind <kind>] [--json-payload <json>] <text...>\n"
    "Note: Exactly one scope flag is required."
)
TAIL_USAGE = (
    f"Usage: agentlab msg tail {SCOPE_FLAGS} [--tail <n>] [--follow]\n"
    "Note: --json outputs one JSON object per line."
)
SCOPES = ("job", "workspace", "session")


def add_scope_flags(parser: FlagParser) -> None:
    for scope in SCOPES:
        parser.add_argument(f"--{scope}", default="")


def message_scope(parser: FlagParser, ns: argparse.Namespace) -> tuple[str, str]:
    """Returns ``(scope_type, scope_id)`` from exactly one of ``--job``, ``--workspace``, ``--session``."""
    chosen = [(scope, getattr(ns, scope).strip()) for scope in SCOPES if getattr(ns, scope).strip()]
    if len(chosen) != 1:
        parser.fail("exactly one of --job, --workspace or --session is required")
    return chosen[0]


async def run_msg_post(args: list[str], opts: CommonOptions) -> Outcome:
    parser = command_parser("msg post", POST_USAGE)
    add_scope_flags(parser)
    parser.add_argument("--author", default="")
    parser.add_argument("--kind", default="")
    parser.add_argument("--json-payload", dest="json_payload", default="")
    parser.add_argument("text", nargs="*", default=[])
    ns = parse(parser, args, opts)
    if ns is None:
        return Outcome.HELP
    scope_type, scope_id = message_scope(parser, ns)
    text = " ".join(ns.text).strip()
    payload = None
    if ns.json_payload.strip():
        try:
            payload = json.loads(ns.json_payload)
        except json.JSONDecodeError as e:
            parser.fail(f"invalid --json-payload: {e.msg}")
    if not text and payload is None:
        parser.fail("message text or --json-payload is required")

    request = MessageCreateRequest(
        scope_type=scope_type,
        scope_id=scope_id,
        author=ns.author.strip() or None,
        kind=ns.kind.strip() or None,
        text=text or None,
        data=payload,
    )
    async with opts.client() as client:
        data, message = await call(client, "POST", "/v1/messages", Message, request)
    if opts.json_output:
        opts.renderer.json(data)
    else:
        opts.renderer.line(format_message(message))
    return Outcome.OK


async def run_msg_tail(args: list[str], opts: CommonOptions) -> Outcome:
    parser = command_parser("msg tail", TAIL_USAGE)
    add_scope_flags(parser)
    parser.add_argument("--tail", type=int, default=DEFAULT_LOG_TAIL)
    parser.add_argument("--follow", action="store_true")
    ns = parse(parser, args, opts)
    if ns is None:
        return Outcome.HELP
    scope_type, scope_id = message_scope(parser, ns)
    opts.following = ns.follow
    async with opts.client() as client:
        await tail_messages(client, scope_type, scope_id, opts.renderer, tail=ns.tail, follow=ns.follow)
    return Outcome.OK


GROUP = CommandGroup(
    "msg",
    USAGE,
    [
        Command("post", run_msg_post, POST_USAGE),
        Command("tail", run_msg_tail, TAIL_USAGE),
    ],
)
