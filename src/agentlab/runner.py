# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/agentlab

import os
import shlex
import shutil
import subprocess
from abc import ABC, abstractmethod
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path

import anyio
from loguru import logger

from agentlab.errors import CommandError, redact


@dataclass
class CommandResult:
    """Outcome of an external command. ``output`` is stdout and stderr combined."""

    args: list[str]
    returncode: int
    output: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0


def describe_args(args: Sequence[str], secrets: Sequence[str] = ()) -> str:
    return redact(shlex.join(args), *secrets)


class CommandRunner(ABC):
    """
    Abstract base class for running external commands (ssh, ip, tailscale, ...).
    Tests substitute a recording implementation.
    """

    @abstractmethod
    async def run(
        self,
        args: Sequence[str],
        timeout: float | None = None,
        stdin: bytes | Path | None = None,
        env: Mapping[str, str] | None = None,
        secrets: Sequence[str] = (),
    ) -> CommandResult:
        """Run a command and capture its combined output.

        Args:
            args: The argv to execute.
            timeout: Seconds before the command is killed. ``None`` waits forever.
            stdin: Bytes or a file to feed on stdin. Stdin is closed otherwise.
            env: Extra environment variables.
            secrets: Values redacted from logs and errors.

        Returns:
            CommandResult: The exit code and output, whatever the exit code.

        Raises:
            CommandError: If the command cannot be started or times out.
        """
        pass  # pragma: no cover

    @abstractmethod
    def which(self, name: str) -> str | None:
        """Returns the full path of an executable, or None when not on PATH."""
        pass  # pragma: no cover

    async def check(
        self,
        description: str,
        args: Sequence[str],
        timeout: float | None = None,
        stdin: bytes | Path | None = None,
        env: Mapping[str, str] | None = None,
        secrets: Sequence[str] = (),
    ) -> CommandResult:
        """Like :meth:`run` but raises CommandError on a non-zero exit."""
        result = await self.run(args, timeout=timeout, stdin=stdin, env=env, secrets=secrets)
        if not result.ok:
            raise CommandError(description, result.returncode, redact(result.output, *secrets))
        return result


class SubprocessRunner(CommandRunner):
    """Runs commands with :func:`subprocess.run` in a worker thread."""

    async def run(
        self,
        args: Sequence[str],
        timeout: float | None = None,
        stdin: bytes | Path | None = None,
        env: Mapping[str, str] | None = None,
        secrets: Sequence[str] = (),
    ) -> CommandResult:
        argv = list(args)
        shown = describe_args(argv, secrets)
        logger.debug(f"Running {shown}", timeout=timeout)

        def _run() -> subprocess.CompletedProcess[bytes]:
            full_env = {**os.environ, **env} if env else None
            if isinstance(stdin, Path):
                with stdin.open("rb") as f:
                    return subprocess.run(
                        argv, stdin=f, stdout=subprocess.PIPE, stderr=subprocess.STDOUT, timeout=timeout, env=full_env
                    )
            return subprocess.run(
                argv,
                input=stdin if stdin is not None else b"",
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                timeout=timeout,
                env=full_env,
            )

        try:
            completed = await anyio.to_thread.run_sync(_run)
        except subprocess.TimeoutExpired as e:
            output = (e.output or b"").decode("utf-8", errors="replace")
            raise CommandError(f"{shown} timed out after {timeout:g}s", None, redact(output, *secrets)) from e
        except OSError as e:
            raise CommandError(f"{shown}: {e.strerror or e}") from e

        output = completed.stdout.decode("utf-8", errors="replace")
        if completed.returncode != 0:
            logger.debug(f"{argv[0]} exited {completed.returncode}")
        return CommandResult(argv, completed.returncode, output)

    def which(self, name: str) -> str | None:
        return shutil.which(name)
