# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/agentlab

import io
import json
from collections.abc import Sequence
from typing import Any

import anyio
import pytest

from agentlab.api import APIClient
from agentlab.models import Event, Message
from agentlab.render import Renderer
from agentlab.tailer import (
    Cursor,
    clamp_tail,
    format_event,
    format_message,
    page_query,
    tail_events,
    tail_messages,
    tail_stream,
)


def event(i: int, msg: str = "") -> Event:
    return Event(id=i, ts=f"2026-01-01T00:00:0{i}Z", kind="job.report", job_id="job_1", msg=msg or f"e{i}")


def test_clamp_tail_and_page_query() -> None:
    assert clamp_tail(0) == 50
    assert clamp_tail(-3) == 50
    assert clamp_tail(5000) == 1000
    assert page_query(tail=20) == {"tail": 20}
    assert page_query(tail=20, after=7) == {"tail": 20}
    assert page_query(after=7) == {"after": 7, "limit": 200}
    assert page_query(after=7, limit=5000) == {"after": 7, "limit": 1000}
    assert page_query() == {"limit": 200}


def test_cursor_never_moves_backwards() -> None:
    cursor = Cursor(5)
    items = [event(7), event(3), event(6)]
    assert [e.id for e in cursor.fresh(items)] == [6, 7]
    assert cursor.advance(cursor.fresh(items)) == 7
    assert cursor.advance([event(2)], last_id=4) == 7
    assert cursor.advance([], last_id=9) == 9


def test_format_event_and_message() -> None:
    assert format_event(event(1, "started")) == "2026-01-01T00:00:01Z\tjob.report\tjob=job_1\tstarted"
    assert format_event(Event(id=2, ts="t", kind="sandbox.state")) == "t\tsandbox.state\tjob=-\t-"
    message = Message(id=1, ts="t", scope_type="job", scope_id="job_1", author="agent", text="hi")
    assert format_message(message) == "t\tjob:job_1\tagent\t-\thi"


@pytest.mark.asyncio
async def test_tail_stream_follow_emits_each_item_once() -> None:
    """Repeated and older items in later polls are never printed twice."""
    pages: list[tuple[Sequence[Any], int | None]] = [
        ([event(1), event(2)], 2),
        ([event(2), event(3)], 3),
        ([event(1)], 3),
        ([event(4)], 4),
    ]
    requests: list[tuple[int, int]] = []

    async def fetch(tail: int, after: int) -> tuple[Sequence[Any], int | None]:
        requests.append((tail, after))
        if not pages:
            await anyio.sleep_forever()
        return pages.pop(0)

    out = io.StringIO()
    with anyio.move_on_after(1):
        await tail_stream(fetch, Renderer(stdout=out), format_event, tail=10, follow=True, interval=0.01)

    lines = out.getvalue().splitlines()
    assert [line.split("\t")[-1] for line in lines] == ["e1", "e2", "e3", "e4"]
    assert requests[:4] == [(10, 0), (0, 2), (0, 3), (0, 3)]


@pytest.mark.asyncio
async def test_tail_events_json_lines(api: Any) -> None:
    api.add(
        "GET",
        "/v1/sandboxes/9001/events",
        {"events": [{"id": 2, "ts": "t2", "kind": "b"}, {"id": 1, "ts": "t1", "kind": "a"}], "last_id": 2},
    )
    out = io.StringIO()
    async with APIClient(transport=api.transport) as client:
        cursor = await tail_events(client, 9001, Renderer(json_output=True, stdout=out), tail=0)

    assert cursor.value == 2
    assert api.requests[0].url.params["tail"] == "50"
    lines = out.getvalue().splitlines()
    assert [json.loads(line)["id"] for line in lines] == [1, 2]
    assert lines[0] == '{"id":1,"ts":"t1","kind":"a"}'


@pytest.mark.asyncio
async def test_tail_messages_scopes_query(api: Any) -> None:
    api.add(
        "GET",
        "/v1/messages",
        {"messages": [{"id": 4, "ts": "t", "scope_type": "session", "scope_id": "s1", "text": "done"}], "last_id": 4},
    )
    out = io.StringIO()
    async with APIClient(transport=api.transport) as client:
        await tail_messages(client, "session", "s1", Renderer(stdout=out), tail=5)

    params = api.requests[0].url.params
    assert (params["scope_type"], params["scope_id"], params["tail"]) == ("session", "s1", "5")
    assert out.getvalue() == "t\tsession:s1\t-\t-\tdone\n"
