# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/agentlab

"""Error taxonomy for the agentlab CLI.

Every failure that reaches the user is one of the classes below. The
outermost boundary in ``agentlab.main`` turns them into exit codes and
text or JSON output via :func:`describe_error`.
"""

from collections.abc import Iterable

from agentlab.constants import COMMAND_OUTPUT_LIMIT

REDACTED = "[redacted]"


class AgentlabError(Exception):
    """Base class for agentlab errors."""


class CLIError(AgentlabError):
    """A user-facing error carrying an optional next step and hints."""

    def __init__(self, message: str, next_step: str | None = None, hints: Iterable[str] = ()):
        super().__init__(message.strip())
        self.message = message.strip()
        self.next_step = (next_step or "").strip() or None
        self.hints = normalize_hints(hints)

    def __str__(self) -> str:
        return self.message or "unknown error"

    def with_next(self, next_step: str) -> "CLIError":
        """Sets the next step unless one is already present."""
        if not self.next_step and next_step.strip():
            self.next_step = next_step.strip()
        return self

    def with_hints(self, *hints: str) -> "CLIError":
        self.hints = normalize_hints([*self.hints, *hints])
        return self

    def with_default_next(self, verb: str) -> "CLIError":
        return self.with_next(f"agentlab {verb} --help")


class UsageError(CLIError):
    """Invalid flags, missing arguments, or mutually exclusive options."""

    def __init__(
        self,
        message: str,
        usage: str | None = None,
        next_step: str | None = None,
        hints: Iterable[str] = (),
    ):
        super().__init__(message, next_step, hints)
        self.usage = usage


class ConfigError(AgentlabError):
    """Client configuration could not be read, parsed or written."""


class TransportError(AgentlabError):
    """The daemon could not be reached or the request did not complete."""

    def __init__(self, message: str, timed_out: bool = False):
        super().__init__(message)
        self.timed_out = timed_out


class APIError(AgentlabError):
    """The daemon answered with an HTTP error status."""

    def __init__(self, status: int, message: str):
        super().__init__(message)
        self.status = status
        self.message = message

    def __str__(self) -> str:
        return self.message

    def is_not_found(self, target: str = "") -> bool:
        """True for a 404, or when the message says "not found" and names ``target``."""
        if self.status == 404:
            return True
        lowered = self.message.lower()
        return "not found" in lowered and target.lower() in lowered


class CommandError(AgentlabError):
    """An external command exited non-zero or timed out."""

    def __init__(self, description: str, returncode: int | None = None, output: str = ""):
        self.description = description
        self.returncode = returncode
        self.output = output
        super().__init__(format_command_error(description, returncode, output))


def normalize_hints(hints: Iterable[str]) -> list[str]:
    """Trims hints and drops blanks and duplicates, keeping the original order."""
    seen: set[str] = set()
    out: list[str] = []
    for hint in hints:
        hint = (hint or "").strip()
        if not hint or hint in seen:
            continue
        seen.add(hint)
        out.append(hint)
    return out


def as_cli_error(exc: BaseException) -> CLIError:
    """Returns ``exc`` itself when it is a CLIError, else a CLIError wrapping it."""
    if isinstance(exc, CLIError):
        return exc
    wrapped = CLIError(str(exc))
    wrapped.__cause__ = exc
    return wrapped


def truncate_output(text: str, limit: int = COMMAND_OUTPUT_LIMIT) -> str:
    text = text.strip()
    if len(text) <= limit:
        return text
    return text[:limit] + "..."


def format_command_error(description: str, returncode: int | None, output: str) -> str:
    message = description
    if returncode is not None:
        message = f"{description} (exit {returncode})"
    output = truncate_output(output)
    if output:
        message = f"{message}: {output}"
    return message


def redact(text: str, *secrets: str | None) -> str:
    """Replaces every non-empty secret in ``text`` with ``[redacted]``."""
    for secret in secrets:
        if secret and secret.strip():
            text = text.replace(secret.strip(), REDACTED)
    return text


def describe_error(exc: BaseException, *secrets: str | None) -> tuple[str, str | None, list[str]]:
    """Flattens an exception into (message, next step, hints) with secrets redacted."""
    if isinstance(exc, CLIError):
        message, next_step, hints = exc.message, exc.next_step, list(exc.hints)
    else:
        message, next_step, hints = str(exc), None, []
    cause = exc if isinstance(exc, APIError) else exc.__cause__
    if isinstance(cause, APIError) and cause.status in (401, 403):
        hints = normalize_hints([*hints, "verify the endpoint and token are correct"])
    if not message:
        message = type(exc).__name__
    return (
        redact(message, *secrets),
        redact(next_step, *secrets) if next_step else None,
        [redact(hint, *secrets) for hint in hints],
    )
