# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/agentlab

"""``+modifier`` resolution for ``sandbox new``.

The modifier vocabulary is every dash-separated part of the profile names the
daemon reports, so ``+secure +small`` resolves to the ``secure-small`` profile.
"""

from collections.abc import Iterable, Sequence

from agentlab.errors import CLIError, UsageError
from agentlab.models import Profile
from agentlab.suggestions import rank_suggestions


def parse_modifiers(args: Sequence[str]) -> list[str]:
    """Strips the ``+`` from positional modifier tokens.

    Raises:
        UsageError: If a token does not start with ``+`` or is empty after it.
    """
    mods = []
    for arg in args:
        if not arg.startswith("+"):
            raise UsageError(f'unexpected argument "{arg}" (modifiers must come after flags and start with \'+\')')
        mod = arg[1:].strip()
        if not mod:
            raise UsageError(f'modifier "{arg}" is empty')
        mods.append(mod)
    return mods


def normalize_modifiers(modifiers: Iterable[str]) -> list[str]:
    """Lowercases, drops blanks and duplicates, and sorts."""
    return sorted({m.strip().lower() for m in modifiers if m.strip()})


def valid_modifiers(profiles: Iterable[Profile]) -> list[str]:
    parts: set[str] = set()
    for profile in profiles:
        parts.update(p.strip().lower() for p in profile.name.split("-") if p.strip())
    return sorted(parts)


def format_modifier_list(modifiers: Iterable[str]) -> str:
    values = [m.strip() for m in modifiers if m.strip()]
    return ", ".join(v if v.startswith("+") else f"+{v}" for v in values)


def lookup_profile_name(name: str, profiles: Iterable[Profile]) -> str | None:
    """Returns the daemon's spelling of ``name`` (case-insensitive), or None."""
    needle = name.strip().lower()
    if not needle:
        return None
    for profile in profiles:
        if profile.name.lower() == needle:
            return profile.name
    return None


def profile_names(profiles: Iterable[Profile]) -> list[str]:
    return sorted(p.name for p in profiles if p.name.strip())


def resolve_profile(modifiers: Sequence[str], profiles: Sequence[Profile]) -> str:
    """Maps modifiers to an existing profile name.

    Raises:
        CLIError: If a modifier is unknown or no profile has the resolved name.
    """
    normalized = normalize_modifiers(modifiers)
    if not normalized:
        raise UsageError("no modifiers provided")
    valid = valid_modifiers(profiles)
    if not valid:
        raise CLIError("no modifiers available (no profiles loaded)", "agentlab profile list")
    unknown = [m for m in normalized if m not in valid]
    if unknown:
        raise CLIError(
            f"unknown modifier(s) {format_modifier_list(unknown)}. Valid modifiers: {format_modifier_list(valid)}",
            "agentlab profile list",
        )

    resolved = "-".join(normalized)
    actual = lookup_profile_name(resolved, profiles)
    if actual is not None:
        return actual
    names = profile_names(profiles)
    message = f'no profile matches modifiers {format_modifier_list(normalized)} (resolved to "{resolved}")'
    suggestion = rank_suggestions(resolved, names, 1)
    if suggestion:
        message = f'{message}. Did you mean "{suggestion[0]}"?'
    else:
        message = f"{message}. Available profiles: {', '.join(names)}"
    raise CLIError(message, "agentlab profile list")
