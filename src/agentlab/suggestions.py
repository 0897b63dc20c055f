# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/agentlab

"""Fuzzy suggestions and context-aware wrapping of not-found errors."""

from collections.abc import Iterable, Sequence
from dataclasses import dataclass

from loguru import logger

from agentlab.api import APIClient
from agentlab.errors import AgentlabError, APIError, CLIError

MAX_SUGGESTION_DISTANCE = 3


def edit_distance(a: str, b: str) -> int:
    """Optimal string alignment distance (Levenshtein plus adjacent transpositions)."""
    if a == b:
        return 0
    if not a:
        return len(b)
    if not b:
        return len(a)
    prev2: list[int] = []
    prev = list(range(len(b) + 1))
    for i in range(1, len(a) + 1):
        cur = [i] + [0] * len(b)
        for j in range(1, len(b) + 1):
            cost = 0 if a[i - 1] == b[j - 1] else 1
            cur[j] = min(prev[j] + 1, cur[j - 1] + 1, prev[j - 1] + cost)
            if i > 1 and j > 1 and a[i - 1] == b[j - 2] and a[i - 2] == b[j - 1]:
                cur[j] = min(cur[j], prev2[j - 2] + 1)
        prev2, prev = prev, cur
    return prev[len(b)]


@dataclass
class _Scored:
    value: str
    distance: float
    prefix: bool
    contains: bool

    def key(self) -> tuple[bool, bool, float, str]:
        return (not self.prefix, not self.contains, self.distance, self.value)


def rank_suggestions(needle: str, candidates: Iterable[str], limit: int) -> list[str]:
    """Ranks ``candidates`` by closeness to ``needle`` (case-insensitive).

    Prefix matches (either direction) sort first, then substring matches, then
    edit distance normalized by the longer length, then the value itself.
    Candidates with none of these and a raw distance over 3 are dropped.
    """
    if limit <= 0:
        return []
    needle = needle.strip().lower()
    if not needle:
        return []
    seen: set[str] = set()
    scored: list[_Scored] = []
    for candidate in candidates:
        value = candidate.strip()
        lower = value.lower()
        if not value or lower in seen:
            continue
        seen.add(lower)
        prefix = lower.startswith(needle) or needle.startswith(lower)
        contains = needle in lower
        distance = edit_distance(needle, lower)
        if not prefix and not contains and distance > MAX_SUGGESTION_DISTANCE:
            continue
        scored.append(_Scored(value, distance / max(len(needle), len(lower)), prefix, contains))
    scored.sort(key=_Scored.key)
    return [s.value for s in scored[:limit]]


def format_quoted_list(values: Iterable[str]) -> str:
    return ", ".join(f'"{v.strip()}"' for v in values if v.strip())


def nearest_vmids(target: int, vmids: Iterable[int], limit: int = 3) -> list[int]:
    """Returns up to ``limit`` vmids closest to ``target`` (ties broken by vmid)."""
    if limit <= 0 or target <= 0:
        return []
    unique = {v for v in vmids if v > 0}
    return sorted(unique, key=lambda v: (abs(v - target), v))[:limit]


def unknown_command_error(command: str, candidates: Sequence[str], parent: str = "") -> CLIError:
    """Builds ``unknown command "X". Did you mean: Y, Z?``."""
    scope = f"{parent} command" if parent else "command"
    message = f'unknown {scope} "{command}"'
    matches = rank_suggestions(command, candidates, 3)
    if matches:
        message = f"{message}. Did you mean: {', '.join(matches)}?"
    next_step = f"agentlab {parent} --help" if parent else "agentlab --help"
    return CLIError(message, next_step)


async def wrap_sandbox_not_found(client: APIClient | None, vmid: int, err: APIError) -> AgentlabError:
    """Adds the closest existing VMIDs when the daemon reports a missing sandbox."""
    if not err.is_not_found("sandbox"):
        return err
    hints: list[str] = []
    if client is not None:
        try:
            data = await client.request_json("GET", "/v1/sandboxes")
            vmids = [int(sb.get("vmid", 0)) for sb in data.get("sandboxes") or []]
            nearest = nearest_vmids(vmid, vmids, 3)
            if nearest:
                hints.append("closest VMIDs: " + ", ".join(str(v) for v in nearest))
        except (AgentlabError, AttributeError, TypeError, ValueError) as e:
            logger.debug(f"Could not list sandboxes for suggestions: {e}")
    wrapped = CLIError(f"sandbox {vmid} not found", "agentlab sandbox list", hints)
    wrapped.__cause__ = err
    return wrapped


async def wrap_unknown_profile(client: APIClient | None, profile: str, err: APIError) -> AgentlabError:
    """Rewrites an unknown-profile error with ranked profile suggestions."""
    if "unknown profile" not in err.message.lower():
        return err
    profile = profile.strip()
    message = f'unknown profile "{profile}"'
    if client is not None:
        try:
            names = await fetch_profile_names(client)
        except AgentlabError as e:
            logger.debug(f"Could not list profiles for suggestions: {e}")
            names = []
        matches = rank_suggestions(profile, names, 3)
        if len(matches) == 1:
            message = f'unknown profile "{profile}" (did you mean "{matches[0]}"?)'
        elif len(matches) > 1:
            message = f'unknown profile "{profile}". Did you mean one of: {format_quoted_list(matches)}?'
        elif names:
            message = f'unknown profile "{profile}". Available profiles: {", ".join(names)}'
    wrapped = CLIError(message, "agentlab profile list")
    wrapped.__cause__ = err
    return wrapped


def wrap_not_found(kind: str, ident: str, err: APIError, next_step: str, hint: str | None = None) -> AgentlabError:
    if not err.is_not_found(kind):
        return err
    wrapped = CLIError(f"{kind} {ident.strip()} not found", next_step, [hint] if hint else [])
    wrapped.__cause__ = err
    return wrapped


def wrap_workspace_not_found(workspace: str, err: APIError) -> AgentlabError:
    return wrap_not_found("workspace", workspace, err, "agentlab workspace list", "check workspace id or name")


def wrap_job_not_found(job_id: str, err: APIError) -> AgentlabError:
    return wrap_not_found("job", job_id, err, "agentlab job --help", "check the job id")


def wrap_session_not_found(session: str, err: APIError) -> AgentlabError:
    return wrap_not_found("session", session, err, "agentlab session list", "check session id or name")


async def fetch_profile_names(client: APIClient) -> list[str]:
    data = await client.request_json("GET", "/v1/profiles")
    profiles = data.get("profiles") if isinstance(data, dict) else None
    return [str(p.get("name", "")).strip() for p in profiles or [] if str(p.get("name", "")).strip()]
