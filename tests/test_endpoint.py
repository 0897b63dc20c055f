# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/agentlab

import pytest

from agentlab.endpoint import endpoint_hostname, endpoint_path, normalize_endpoint


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("", ""),
        ("   ", ""),
        ("host:8845", "http://host:8845"),
        ("http://host:8845/", "http://host:8845"),
        ("HTTPS://Host.Example", "https://host.example"),
        ("  http://10.0.0.5:8845  ", "http://10.0.0.5:8845"),
        ("http://[::1]:8845", "http://[::1]:8845"),
    ],
)
def test_normalize_endpoint(raw: str, expected: str) -> None:
    assert normalize_endpoint(raw) == expected


@pytest.mark.parametrize("raw", ["host:8845", "https://a.b:1/", "http://[fd00::1]"])
def test_normalize_endpoint_is_idempotent(raw: str) -> None:
    once = normalize_endpoint(raw)
    assert normalize_endpoint(once) == once


@pytest.mark.parametrize(
    "raw, message",
    [
        ("ftp://host", "scheme must be http or https"),
        ("http://host/api", "must not include a path"),
        ("http://host?x=1", "must not include a query"),
        ("http://host#frag", "must not include a fragment"),
        ("http://user:pw@host", "must not include credentials"),
        ("http://:8080", "host is required"),
        ("http://host:notaport", "invalid endpoint"),
    ],
)
def test_normalize_endpoint_rejects(raw: str, message: str) -> None:
    with pytest.raises(ValueError, match=message):
        normalize_endpoint(raw)


def test_endpoint_hostname() -> None:
    assert endpoint_hostname("http://pve.tailnet.ts.net:8845") == "pve.tailnet.ts.net"
    assert endpoint_hostname("") == ""


def test_endpoint_path_escapes_segments() -> None:
    """Segments are percent-escaped so a name can never add path components."""
    assert endpoint_path("v1", "sandboxes", 9001) == "/v1/sandboxes/9001"
    assert endpoint_path("v1", "sessions", "my session") == "/v1/sessions/my%20session"
    assert endpoint_path("v1", "workspaces", "a?b#c") == "/v1/workspaces/a%3Fb%23c"


@pytest.mark.parametrize("segment", ["", ".", "..", "a/b", "a\\b", "nul\x00", "tab\tbed", "del\x7f"])
def test_endpoint_path_rejects_unsafe_segments(segment: str) -> None:
    with pytest.raises(ValueError, match="invalid path segment"):
        endpoint_path("v1", "workspaces", segment)
