# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/agentlab

"""Flag parsing and value parsers shared by the command handlers."""

import argparse
import math
import re
from collections.abc import Sequence
from typing import NoReturn

from agentlab.errors import UsageError

_DURATION_PART = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|ms|s|m|h)")
_DURATION_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}
_SIZE = re.compile(r"^(\d+)(?:g|gb)?$", re.IGNORECASE)
_SLUG_RUN = re.compile(r"[a-z0-9]+")


class FlagParser(argparse.ArgumentParser):
    """ArgumentParser that raises UsageError instead of exiting.

    ``-h/--help`` is registered as a plain flag so handlers can return the
    help outcome instead of the parser printing and exiting.
    """

    def __init__(self, prog: str, usage: str):
        super().__init__(prog=prog, usage=usage, add_help=False, allow_abbrev=False)
        self.usage_text = usage
        self.add_argument("-h", "--help", action="store_true", dest="help")

    def error(self, message: str) -> NoReturn:
        raise UsageError(message, usage=self.usage_text)

    def parse(self, args: Sequence[str]) -> argparse.Namespace:
        return self.parse_intermixed_args(list(args))

    def fail(self, message: str) -> NoReturn:
        self.error(message)


def parse_duration(raw: str) -> float:
    """Parses ``30s``, ``2m``, ``1h30m``, ``150ms`` or bare seconds into seconds.

    Raises:
        ValueError: If the value is not a duration.
    """
    value = raw.strip()
    if not value:
        raise ValueError("empty duration")
    try:
        return float(value)
    except ValueError:
        pass
    sign = 1.0
    if value[0] in "+-":
        sign = -1.0 if value[0] == "-" else 1.0
        value = value[1:]
    pos = 0
    total = 0.0
    for match in _DURATION_PART.finditer(value):
        if match.start() != pos:
            raise ValueError(f"invalid duration {raw!r}")
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()
    if pos == 0 or pos != len(value):
        raise ValueError(f"invalid duration {raw!r}")
    return sign * total


def duration_arg(raw: str) -> float:
    """argparse ``type=`` wrapper around :func:`parse_duration`."""
    try:
        return parse_duration(raw)
    except ValueError as e:
        raise argparse.ArgumentTypeError(str(e)) from e


def parse_ttl_minutes(raw: str) -> int:
    """Parses a TTL given as whole minutes or as a duration (rounded up to minutes)."""
    value = raw.strip()
    if not value:
        raise ValueError("ttl is required")
    if value.lstrip("-").isdigit():
        minutes = int(value)
    else:
        try:
            seconds = parse_duration(value)
        except ValueError as e:
            raise ValueError(f'invalid ttl "{raw}"') from e
        minutes = math.ceil(seconds / 60)
    if minutes <= 0:
        raise ValueError("ttl must be positive")
    return minutes


def parse_size_gb(raw: str) -> int:
    """Parses ``80``, ``80G`` or ``80GB`` into gigabytes."""
    match = _SIZE.match(raw.strip())
    if not match:
        raise ValueError(f'invalid size "{raw}" (use N, NG or NGB)')
    size = int(match.group(1))
    if size <= 0:
        raise ValueError("size must be positive")
    return size


def parse_vmid(raw: str) -> int:
    value = raw.strip()
    if not value.isdigit() or int(value) <= 0:
        raise UsageError(f'invalid vmid "{raw}"')
    return int(value)


def parse_port(raw: str) -> int:
    """Parses ``:8080`` or ``8080`` into a TCP port."""
    value = raw.strip().lstrip(":")
    if not value.isdigit() or not 1 <= int(value) <= 65535:
        raise UsageError(f'invalid port "{raw}"')
    return int(value)


def slugify(value: str) -> str:
    """Lowercases ``value`` and joins its ``[a-z0-9]+`` runs with single dashes."""
    return "-".join(_SLUG_RUN.findall(value.lower()))


def split_double_dash(args: Sequence[str]) -> tuple[list[str], list[str], bool]:
    """Splits ``args`` at the first ``--``. Returns (before, after, found)."""
    args = list(args)
    if "--" in args:
        idx = args.index("--")
        return args[:idx], args[idx + 1 :], True
    return args, [], False
