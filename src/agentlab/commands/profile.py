# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/agentlab

from agentlab.api import APIClient
from agentlab.commands.base import Command, CommandGroup, CommonOptions, Outcome, command_parser, parse
from agentlab.models import Profile
from agentlab.render import Renderer

USAGE = "Usage: agentlab profile list"
LIST_USAGE = "Usage: agentlab profile list"


def print_profile_list(renderer: Renderer, profiles: list[Profile]) -> None:
    rows = [[p.name, p.template_vmid or None, p.updated_at] for p in profiles]
    renderer.table(["NAME", "TEMPLATE", "UPDATED"], rows)


async def run_profile_list(args: list[str], opts: CommonOptions) -> Outcome:
    parser = command_parser("profile list", LIST_USAGE)
    if parse(parser, args, opts) is None:
        return Outcome.HELP
    async with opts.client() as client:
        data = await client.request_json("GET", "/v1/profiles")
    if opts.json_output:
        opts.renderer.json(data)
        return Outcome.OK
    raw = data.get("profiles") if isinstance(data, dict) else None
    print_profile_list(opts.renderer, [APIClient.validate(item, Profile, "/v1/profiles") for item in raw or []])
    return Outcome.OK


GROUP = CommandGroup("profile", USAGE, [Command("list", run_profile_list, LIST_USAGE)])
