# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/agentlab

"""``agentlab connect`` and ``agentlab disconnect``: manage the saved credentials file."""

from loguru import logger

from agentlab.api import APIClient
from agentlab.commands.base import Command, CommonOptions, Outcome, command_parser, parse
from agentlab.config import (
    ClientConfig,
    client_config_path,
    load_client_config,
    remove_client_config,
    write_client_config,
)
from agentlab.endpoint import normalize_endpoint
from agentlab.errors import AgentlabError, CLIError, as_cli_error

CONNECT_USAGE = (
    "Usage: agentlab connect --endpoint <url> --token <token> [--jump-host <host>] [--jump-user <user>]\n"
    "Note: The endpoint is verified with /v1/status before the config is saved."
)
DISCONNECT_USAGE = "Usage: agentlab disconnect"


async def verify_endpoint(opts: CommonOptions, endpoint: str, token: str) -> None:
    """GETs ``/v1/status`` against ``endpoint``.

    Raises:
        CLIError: If the daemon cannot be reached or rejects the token.
    """
    client = APIClient(endpoint=endpoint, token=token, timeout=opts.timeout, transport=opts.transport)
    try:
        async with client:
            await client.request_json("GET", "/v1/status")
    except AgentlabError as e:
        raise as_cli_error(e).with_hints("verify the endpoint and token are correct") from e


async def run_connect(args: list[str], opts: CommonOptions) -> Outcome:
    parser = command_parser("connect", CONNECT_USAGE)
    parser.add_argument("--endpoint", default="")
    parser.add_argument("--token", default="")
    parser.add_argument("--jump-host", dest="jump_host", default="")
    parser.add_argument("--jump-user", dest="jump_user", default="")
    ns = parse(parser, args, opts)
    if ns is None:
        return Outcome.HELP
    token = ns.token.strip()
    if token:
        opts.secrets.append(token)
    if not ns.endpoint.strip():
        parser.fail("endpoint is required")
    try:
        endpoint = normalize_endpoint(ns.endpoint)
    except ValueError as e:
        raise CLIError(str(e), "agentlab connect --help") from e

    await verify_endpoint(opts, endpoint, token)

    existing, _ = load_client_config(opts.config_path)
    cfg = ClientConfig(
        endpoint=endpoint,
        token=token,
        jump_host=ns.jump_host,
        jump_user=ns.jump_user,
        tailscale_admin=existing.tailscale_admin,
    )
    path = write_client_config(cfg, opts.config_path)
    logger.info(f"Saved client config for {endpoint}")

    renderer = opts.renderer
    if renderer.json_output:
        renderer.json(
            {
                "endpoint": endpoint,
                "jump_host": cfg.jump_host or None,
                "jump_user": cfg.jump_user or None,
                "config_path": str(path),
            }
        )
    else:
        renderer.line(f"connected to {endpoint}")
        renderer.line(f"saved {path}")
    return Outcome.OK


async def run_disconnect(args: list[str], opts: CommonOptions) -> Outcome:
    parser = command_parser("disconnect", DISCONNECT_USAGE)
    if parse(parser, args, opts) is None:
        return Outcome.HELP
    path = opts.config_path or client_config_path()
    removed = remove_client_config(path)
    renderer = opts.renderer
    if renderer.json_output:
        renderer.json({"removed": removed, "config_path": str(path)})
    elif removed:
        renderer.line(f"removed {path}")
    else:
        renderer.line(f"no client config at {path}")
    return Outcome.OK


CONNECT = Command("connect", run_connect, CONNECT_USAGE)
DISCONNECT = Command("disconnect", run_disconnect, DISCONNECT_USAGE)
