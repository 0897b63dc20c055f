# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/agentlab

from agentlab.commands.base import Command, CommonOptions, Outcome, command_parser, enrich_api_errors, parse, require
from agentlab.commands.sandbox import sandbox_not_found
from agentlab.constants import DEFAULT_LOG_TAIL
from agentlab.parsing import parse_vmid
from agentlab.tailer import tail_events

USAGE = (
    "Usage: agentlab logs <vmid> [--follow] [--tail <n>]\n"
    "Note: --json outputs one JSON object per line."
)


async def run_logs(args: list[str], opts: CommonOptions) -> Outcome:
    parser = command_parser("logs", USAGE)
    parser.add_argument("--follow", action="store_true")
    parser.add_argument("--tail", type=int, default=DEFAULT_LOG_TAIL)
    parser.add_argument("vmid", nargs="?", default="")
    ns = parse(parser, args, opts)
    if ns is None:
        return Outcome.HELP
    vmid = parse_vmid(require(parser, ns.vmid, "vmid is required"))
    opts.following = ns.follow
    async with opts.client() as client, enrich_api_errors(sandbox_not_found(client, vmid)):
        await tail_events(client, vmid, opts.renderer, tail=ns.tail, follow=ns.follow)
    return Outcome.OK


COMMAND = Command("logs", run_logs, USAGE)
