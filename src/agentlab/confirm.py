# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/agentlab

import sys
from typing import Protocol, runtime_checkable

from loguru import logger

from agentlab.errors import CLIError


@runtime_checkable
class Prompter(Protocol):
    """Terminal capabilities needed to ask for confirmation."""

    def is_interactive(self) -> bool:
        """Returns True when both stdin and stdout are attached to a terminal."""
        ...

    def write(self, text: str) -> None:
        """Writes prompt text (to stderr for a real terminal)."""
        ...

    def read_line(self) -> str:
        """Reads one line of user input. Returns ``""`` at end of input."""
        ...


class TerminalPrompter:
    """Prompter backed by the process's stdin, stdout and stderr."""

    def is_interactive(self) -> bool:
        try:
            return sys.stdin.isatty() and sys.stdout.isatty()
        except (AttributeError, ValueError):
            return False

    def write(self, text: str) -> None:
        sys.stderr.write(text)
        sys.stderr.flush()

    def read_line(self) -> str:
        return sys.stdin.readline()


def require_confirmation(action: str, force: bool, json_output: bool, prompter: Prompter | None = None) -> None:
    """Gates a destructive or security-weakening operation.

    Args:
        action: Human readable action, e.g. ``"destroy sandbox 9001"``.
        force: ``--force`` was given; always passes.
        json_output: ``--json`` mode; never prompts.
        prompter: Terminal capabilities; defaults to the real terminal.

    Raises:
        CLIError: If the action is refused or the user does not answer ``yes``.
    """
    action = action.strip() or "continue"
    if force:
        return
    if json_output:
        raise CLIError(
            f"refusing to {action} without --force in --json mode",
            hints=[f"re-run with --force to {action}"],
        )
    prompter = prompter or TerminalPrompter()
    if not prompter.is_interactive():
        raise CLIError(
            f"refusing to {action} without --force in non-interactive mode",
            hints=[f"re-run with --force to {action}"],
        )
    prompter.write(f"Confirm {action}? Type 'yes' to continue: ")
    answer = prompter.read_line().strip()
    if answer.lower() != "yes":
        logger.debug(f"Confirmation declined for {action}")
        raise CLIError("aborted", hints=[f"re-run with --force to {action} without prompting"])
