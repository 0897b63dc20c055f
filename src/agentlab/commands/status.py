# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/agentlab

from collections.abc import Mapping
from typing import Any

from agentlab.commands.base import Command, CommonOptions, Outcome, call, command_parser, parse
from agentlab.models import StatusResponse
from agentlab.render import Renderer, text_or_dash

USAGE = "Usage: agentlab status"


def _counts(renderer: Renderer, title: str, counts: Mapping[str, int]) -> None:
    renderer.line(f"{title}:")
    if not counts:
        renderer.line("  (none)")
        return
    for key in sorted(counts):
        renderer.line(f"  {key}: {counts[key]}")


def _failure_line(failure: Mapping[str, Any]) -> str:
    parts = []
    for key in ("ts", "kind", "vmid", "job_id", "msg"):
        value = failure.get(key)
        if value not in (None, ""):
            parts.append(f"{key}={value}" if key in ("vmid", "job_id") else str(value))
    return "  " + ("  ".join(parts) or text_or_dash(None))


def print_status(renderer: Renderer, status: StatusResponse) -> None:
    _counts(renderer, "Sandboxes", status.sandboxes)
    _counts(renderer, "Jobs", status.jobs)
    if status.network_modes:
        _counts(renderer, "Network Modes", status.network_modes)
    if status.artifacts:
        renderer.line("Artifacts:")
        for key in sorted(status.artifacts):
            renderer.line(f"  {key}: {text_or_dash(status.artifacts[key])}")
    if status.recent_failures:
        renderer.line("Recent Failures:")
        for failure in status.recent_failures:
            renderer.line(_failure_line(failure))


async def run_status(args: list[str], opts: CommonOptions) -> Outcome:
    parser = command_parser("status", USAGE)
    if parse(parser, args, opts) is None:
        return Outcome.HELP
    async with opts.client() as client:
        data, status = await call(client, "GET", "/v1/status", StatusResponse)
    if opts.json_output:
        opts.renderer.json(data)
    else:
        print_status(opts.renderer, status)
    return Outcome.OK


COMMAND = Command("status", run_status, USAGE)
