# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/agentlab

"""Paginated fetch and poll-based follow for sandbox events and scoped messages.

Both streams share one contract: the first page is requested with
``tail=N``, later polls with ``after=<cursor>&limit=L``. The cursor only ever
moves forward, and an item at or below the cursor is never emitted twice.
"""

from collections.abc import Awaitable, Callable, Sequence
from typing import Any, Protocol

import anyio
from loguru import logger

from agentlab.api import APIClient
from agentlab.constants import DEFAULT_EVENT_LIMIT, DEFAULT_LOG_TAIL, EVENT_POLL_INTERVAL, MAX_EVENT_LIMIT
from agentlab.endpoint import endpoint_path
from agentlab.models import Event, EventsPage, Message, MessagesPage
from agentlab.render import Renderer, text_or_dash


class _Item(Protocol):
    id: int


def clamp_tail(tail: int) -> int:
    if tail <= 0:
        return DEFAULT_LOG_TAIL
    return min(tail, MAX_EVENT_LIMIT)


def clamp_limit(limit: int) -> int:
    if limit <= 0:
        return DEFAULT_EVENT_LIMIT
    return min(limit, MAX_EVENT_LIMIT)


def page_query(tail: int = 0, after: int = 0, limit: int = 0) -> dict[str, int]:
    """Builds ``tail=N``, ``after=X&limit=L`` or ``limit=L``, in that priority."""
    if tail > 0:
        return {"tail": min(tail, MAX_EVENT_LIMIT)}
    if after > 0:
        return {"after": after, "limit": clamp_limit(limit)}
    return {"limit": clamp_limit(limit)}


class Cursor:
    """Monotone position in an event or message stream."""

    def __init__(self, value: int = 0):
        self.value = max(value, 0)

    def fresh(self, items: Sequence[_Item]) -> list[Any]:
        """Returns items strictly after the cursor, in ascending id order."""
        return sorted((item for item in items if item.id > self.value), key=lambda item: item.id)

    def advance(self, items: Sequence[_Item], last_id: int | None = None) -> int:
        for item in items:
            if item.id > self.value:
                self.value = item.id
        if last_id is not None and last_id > self.value:
            self.value = last_id
        return self.value


async def fetch_events(client: APIClient, vmid: int, tail: int = 0, after: int = 0, limit: int = 0) -> EventsPage:
    path = endpoint_path("v1", "sandboxes", vmid, "events")
    return await client.get(path, EventsPage, query=page_query(tail, after, limit))


async def fetch_messages(
    client: APIClient,
    scope_type: str,
    scope_id: str,
    tail: int = 0,
    after: int = 0,
    limit: int = 0,
) -> MessagesPage:
    query: dict[str, Any] = {"scope_type": scope_type, "scope_id": scope_id}
    query.update(page_query(tail, after, limit))
    return await client.get("/v1/messages", MessagesPage, query=query)


def format_event(event: Event) -> str:
    return f"{event.ts}\t{event.kind}\tjob={text_or_dash(event.job_id)}\t{text_or_dash(event.msg)}"


def format_message(message: Message) -> str:
    scope = f"{message.scope_type}:{message.scope_id}" if message.scope_type else "-"
    return "\t".join(
        [
            message.ts,
            scope,
            text_or_dash(message.author),
            text_or_dash(message.kind),
            text_or_dash(message.text),
        ]
    )


def emit_items(renderer: Renderer, items: Sequence[Any], formatter: Callable[[Any], str]) -> None:
    for item in items:
        if renderer.json_output:
            renderer.json(item, compact=True)
        else:
            renderer.line(formatter(item))


PageFetcher = Callable[[int, int], Awaitable[tuple[Sequence[Any], int | None]]]


async def tail_stream(
    fetch: PageFetcher,
    renderer: Renderer,
    formatter: Callable[[Any], str],
    tail: int,
    follow: bool,
    interval: float = EVENT_POLL_INTERVAL,
) -> Cursor:
    """Prints the last ``tail`` items, then optionally polls for new ones.

    Args:
        fetch: ``fetch(tail, after)`` returning ``(items, last_id)``.
        renderer: Output sink (text lines or JSONL).
        formatter: Text formatter for one item.
        tail: Size of the initial batch.
        follow: Keep polling every ``interval`` seconds until cancelled.
        interval: Poll period in seconds.

    Returns:
        Cursor: The final cursor.
    """
    cursor = Cursor()
    items, last_id = await fetch(clamp_tail(tail), 0)
    fresh = cursor.fresh(items)
    emit_items(renderer, fresh, formatter)
    cursor.advance(fresh, last_id)
    if not follow:
        return cursor

    logger.debug(f"Following stream from cursor {cursor.value}")
    while True:
        await anyio.sleep(interval)
        items, last_id = await fetch(0, cursor.value)
        fresh = cursor.fresh(items)
        emit_items(renderer, fresh, formatter)
        cursor.advance(fresh, last_id)


async def tail_events(
    client: APIClient,
    vmid: int,
    renderer: Renderer,
    tail: int = DEFAULT_LOG_TAIL,
    follow: bool = False,
    interval: float = EVENT_POLL_INTERVAL,
) -> Cursor:
    async def fetch(tail_n: int, after: int) -> tuple[Sequence[Any], int | None]:
        page = await fetch_events(client, vmid, tail=tail_n, after=after)
        return page.events, page.last_id

    return await tail_stream(fetch, renderer, format_event, tail, follow, interval)


async def tail_messages(
    client: APIClient,
    scope_type: str,
    scope_id: str,
    renderer: Renderer,
    tail: int = DEFAULT_LOG_TAIL,
    follow: bool = False,
    interval: float = EVENT_POLL_INTERVAL,
) -> Cursor:
    async def fetch(tail_n: int, after: int) -> tuple[Sequence[Any], int | None]:
        page = await fetch_messages(client, scope_type, scope_id, tail=tail_n, after=after)
        return page.messages, page.last_id

    return await tail_stream(fetch, renderer, format_message, tail, follow, interval)
