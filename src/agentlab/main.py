# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/agentlab

"""Entry point: global flags, dispatch, and the single error boundary.

Exit codes: 0 success, 1 failure, 2 usage error, 3 help requested in
``--json`` mode, 130 interrupted.
"""

import json
import sys
from collections.abc import Sequence
from pathlib import Path

import anyio
import httpx
from loguru import logger

from agentlab import __version__
from agentlab.commands import REGISTRY, USAGE
from agentlab.commands.base import CommonOptions, Outcome, dispatch, print_usage
from agentlab.config import resolve_settings
from agentlab.confirm import Prompter
from agentlab.constants import DEFAULT_REQUEST_TIMEOUT, DEFAULT_SOCKET_PATH
from agentlab.errors import UsageError, describe_error
from agentlab.parsing import FlagParser, duration_arg
from agentlab.runner import CommandRunner

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_USAGE = 2
EXIT_HELP_SCRIPTED = 3
EXIT_INTERRUPTED = 130

VALUE_FLAGS = frozenset({"--endpoint", "--token", "--socket", "--timeout"})


def global_parser() -> FlagParser:
    parser = FlagParser(prog="agentlab", usage=USAGE)
    parser.add_argument("--endpoint", default=None)
    parser.add_argument("--token", default=None)
    parser.add_argument("--socket", default=DEFAULT_SOCKET_PATH)
    parser.add_argument("--json", action="store_true")
    parser.add_argument("--timeout", type=duration_arg, default=DEFAULT_REQUEST_TIMEOUT)
    parser.add_argument("--version", action="store_true")
    return parser


def split_global_args(argv: Sequence[str]) -> tuple[list[str], list[str]]:
    """Splits ``argv`` into the leading global flags and the command chain.

    Only leading flags are global; the first non-flag token starts the command.
    """
    args = list(argv)
    i = 0
    while i < len(args):
        arg = args[i]
        if arg == "--":
            return args[:i], args[i + 1 :]
        if not arg.startswith("-") or arg == "-":
            break
        if arg in VALUE_FLAGS:
            i += 2
            continue
        i += 1
    return args[:i], args[i:]


def token_from_argv(argv: Sequence[str]) -> str:
    """Best-effort token lookup for redacting errors raised before flags are parsed."""
    args = list(argv)
    for i, arg in enumerate(args):
        if arg == "--token" and i + 1 < len(args):
            return args[i + 1]
        if arg.startswith("--token="):
            return arg.split("=", 1)[1]
    return ""


def report_error(exc: BaseException, opts: CommonOptions, usage: str | None = None) -> None:
    """Writes ``exc`` as ``Error:``/``Next:``/``Hint:`` lines on stderr, or as JSON on stdout."""
    message, next_step, hints = describe_error(exc, opts.token, *opts.secrets)
    if opts.json_output:
        payload: dict[str, object] = {"error": message}
        if next_step:
            payload["next"] = next_step
        if hints:
            payload["hints"] = hints
        sys.stdout.write(json.dumps(payload) + "\n")
        sys.stdout.flush()
        return
    if usage:
        sys.stderr.write(usage.rstrip("\n") + "\n")
    sys.stderr.write(f"Error: {message}\n")
    if next_step:
        sys.stderr.write(f"Next: {next_step}\n")
    for hint in hints:
        sys.stderr.write(f"Hint: {hint}\n")
    sys.stderr.flush()


async def run_async(
    argv: Sequence[str],
    opts: CommonOptions | None = None,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
    runner: CommandRunner | None = None,
    prompter: Prompter | None = None,
    config_path: Path | None = None,
) -> int:
    """Parses global flags, dispatches the command and maps the result to an exit code.

    Args:
        argv: Arguments without the program name.
        opts: Options object to fill in; the caller keeps a reference so an
            interrupt can be classified after the event loop unwinds.
        transport: HTTP transport override (tests).
        runner: Subprocess runner override (tests).
        prompter: Confirmation prompter override (tests).
        config_path: Client config file override.

    Returns:
        int: The process exit code.
    """
    opts = opts if opts is not None else CommonOptions()
    opts.transport = transport
    opts.prompter = prompter
    opts.config_path = config_path
    if runner is not None:
        opts.runner = runner
    opts.secrets.append(token_from_argv(argv))
    try:
        leading, rest = split_global_args(argv)
        parser = global_parser()
        ns = parser.parse_args(leading)
        opts.json_output = ns.json
        if ns.version:
            sys.stdout.write(f"agentlab {__version__}\n")
            return EXIT_OK
        if ns.help:
            print_usage(USAGE)
            return EXIT_HELP_SCRIPTED if opts.json_output else EXIT_OK
        if not rest:
            raise UsageError("command is required", usage=USAGE, next_step="agentlab --help")

        settings = resolve_settings(endpoint=ns.endpoint, token=ns.token)
        opts.socket_path = ns.socket
        opts.endpoint = settings.endpoint
        opts.token = settings.token
        opts.timeout = ns.timeout
        opts.jump_host = settings.jump_host
        opts.jump_user = settings.jump_user
        opts.tailscale_admin = settings.tailscale_admin
        logger.debug(f"agentlab {rest[0]} via {opts.endpoint or opts.socket_path}")

        outcome = await dispatch(REGISTRY, rest, opts)
    except UsageError as e:
        logger.opt(exception=e).debug("usage error")
        report_error(e, opts, None if opts.json_output else e.usage)
        return EXIT_USAGE
    except Exception as e:
        logger.opt(exception=e).debug("command failed")
        report_error(e, opts)
        return EXIT_FAILURE

    if outcome is Outcome.HELP:
        return EXIT_HELP_SCRIPTED if opts.json_output else EXIT_OK
    if outcome is Outcome.FAILED:
        return EXIT_FAILURE
    return EXIT_OK


def run(argv: Sequence[str] | None = None) -> int:
    """Runs the CLI on the anyio event loop and returns the exit code."""
    argv = list(sys.argv[1:] if argv is None else argv)
    opts = CommonOptions()
    try:
        return anyio.run(run_async, argv, opts)
    except KeyboardInterrupt:
        if opts.following:
            return EXIT_OK
        waiting_for = opts.activity.waiting_for
        message = f"canceled while waiting for {waiting_for}" if waiting_for else "interrupted"
        sys.stderr.write(f"\n{message}\n")
        sys.stderr.flush()
        return EXIT_INTERRUPTED


def main() -> None:
    sys.exit(run())


if __name__ == "__main__":  # pragma: no cover
    main()
