# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/agentlab

"""Endpoint normalization and safe URL path building."""

from urllib.parse import quote, urlsplit


def normalize_endpoint(raw: str | None) -> str:
    """Normalizes a control plane endpoint into a bare origin.

    Args:
        raw: ``host[:port]`` or ``http(s)://host[:port]``. Empty means "use the Unix socket".

    Returns:
        str: ``scheme://host[:port]`` without a trailing slash, or ``""``.

    Raises:
        ValueError: If the scheme is not http/https, the host is missing, or a
            path, query or fragment is present.
    """
    value = (raw or "").strip()
    if not value:
        return ""
    if "://" not in value:
        value = f"http://{value}"
    try:
        parts = urlsplit(value)
        port = parts.port
    except ValueError as e:
        raise ValueError(f"invalid endpoint: {e}") from e
    scheme = parts.scheme.lower()
    if scheme not in ("http", "https"):
        raise ValueError("endpoint scheme must be http or https")
    if not parts.hostname:
        raise ValueError("endpoint host is required")
    if parts.path not in ("", "/"):
        raise ValueError("endpoint must not include a path")
    if parts.query:
        raise ValueError("endpoint must not include a query")
    if parts.fragment or value.endswith("#"):
        raise ValueError("endpoint must not include a fragment")
    if parts.username is not None or parts.password is not None:
        raise ValueError("endpoint must not include credentials")
    host = parts.hostname
    if ":" in host:
        host = f"[{host}]"
    if port is not None:
        return f"{scheme}://{host}:{port}"
    return f"{scheme}://{host}"


def endpoint_hostname(endpoint: str) -> str:
    """Returns the host portion of a normalized endpoint, or ``""``."""
    if not endpoint:
        return ""
    return urlsplit(endpoint).hostname or ""


def _check_segment(segment: str) -> None:
    if segment in ("", ".", ".."):
        raise ValueError(f"invalid path segment {segment!r}")
    for ch in segment:
        if ch in "/\\" or ord(ch) < 0x20 or ord(ch) == 0x7F:
            raise ValueError(f"invalid path segment {segment!r}")


def endpoint_path(*segments: str | int) -> str:
    """Builds ``/seg1/seg2/...`` with each segment escaped.

    Raises:
        ValueError: If any segment is empty, ``.``, ``..``, or contains a slash,
            backslash, NUL or control character.
    """
    escaped = []
    for raw in segments:
        segment = str(raw)
        _check_segment(segment)
        escaped.append(quote(segment, safe=""))
    return "/" + "/".join(escaped)
