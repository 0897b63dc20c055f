# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/agentlab

import json
import math
from collections.abc import AsyncIterator, Mapping
from contextlib import asynccontextmanager
from typing import Any, TypeVar

import anyio
import httpx
from loguru import logger
from pydantic import BaseModel, ValidationError

from agentlab.constants import DEFAULT_REQUEST_TIMEOUT, DEFAULT_SOCKET_PATH, MAX_RESPONSE_BYTES
from agentlab.endpoint import normalize_endpoint
from agentlab.errors import APIError, AgentlabError, ConfigError, TransportError, redact
from agentlab.models import WireModel

M = TypeVar("M", bound=BaseModel)

UNIX_BASE_URL = "http://unix"


def parse_api_error(status: int, body: bytes) -> APIError:
    """Builds an APIError from an HTTP error response.

    Uses the ``error`` field of a JSON body (or ``message`` when ``error`` is
    absent). Anything else yields ``request failed with status <code>``.
    """
    data: Any = None
    try:
        data = json.loads(body) if body else None
    except ValueError:
        data = None
    if isinstance(data, dict):
        for key in ("error", "message"):
            value = data.get(key)
            if isinstance(value, str) and value.strip():
                return APIError(status, value.strip())
    return APIError(status, f"request failed with status {status}")


async def read_capped(response: httpx.Response, limit: int = MAX_RESPONSE_BYTES) -> bytes:
    """Reads a streamed response body, failing once it exceeds ``limit`` bytes."""
    chunks: list[bytes] = []
    total = 0
    async for chunk in response.aiter_bytes():
        total += len(chunk)
        if total > limit:
            raise TransportError(f"response exceeds {limit} bytes")
        chunks.append(chunk)
    return b"".join(chunks)


class APIClient:
    """Async client for the agentlabd control API.

    Talks to the local Unix socket when no endpoint is configured, otherwise
    to the remote origin with an optional bearer token.
    """

    def __init__(
        self,
        socket_path: str = DEFAULT_SOCKET_PATH,
        endpoint: str = "",
        token: str = "",
        timeout: float = DEFAULT_REQUEST_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initializes the APIClient.

        Args:
            socket_path: Unix socket used when ``endpoint`` is empty.
            endpoint: Remote control plane origin (``http(s)://host:port``).
            token: Bearer token, only sent to remote endpoints.
            timeout: Per-request timeout in seconds; ``<= 0`` disables it.
            transport: Optional transport override, used by tests.

        Raises:
            ConfigError: If the endpoint is malformed.
        """
        try:
            self.endpoint = normalize_endpoint(endpoint)
        except ValueError as e:
            raise ConfigError(str(e)) from e
        self.socket_path = socket_path or DEFAULT_SOCKET_PATH
        self.token = token.strip() if self.endpoint else ""
        self.timeout = timeout

        headers = {"Accept": "application/json", "User-Agent": "agentlab"}
        if self.endpoint:
            base_url = self.endpoint
            if self.token:
                headers["Authorization"] = f"Bearer {self.token}"
            transport = transport or httpx.AsyncHTTPTransport()
        else:
            base_url = UNIX_BASE_URL
            transport = transport or httpx.AsyncHTTPTransport(uds=self.socket_path)
        self._client = httpx.AsyncClient(base_url=base_url, headers=headers, transport=transport, timeout=None)

    async def __aenter__(self) -> "APIClient":
        return self

    async def __aexit__(self, exc_type: object, exc_val: object, exc_tb: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    @property
    def target(self) -> str:
        return self.endpoint or f"agentlabd socket {self.socket_path}"

    def _request_timeout(self) -> httpx.Timeout:
        # Only tighten an enclosing deadline, never extend it.
        timeout: float | None = self.timeout if self.timeout > 0 else None
        deadline = anyio.current_effective_deadline()
        if deadline != math.inf:
            remaining = max(deadline - anyio.current_time(), 0.001)
            timeout = remaining if timeout is None else min(timeout, remaining)
        return httpx.Timeout(timeout)

    def _redact(self, text: str) -> str:
        return redact(text, self.token)

    def _timed_out(self, method: str, path: str) -> TransportError:
        return TransportError(self._redact(f"request {method} {path} to {self.target} timed out"), timed_out=True)

    @asynccontextmanager
    async def stream(
        self,
        method: str,
        path: str,
        payload: WireModel | Mapping[str, Any] | None = None,
        query: Mapping[str, Any] | None = None,
    ) -> AsyncIterator[httpx.Response]:
        """Opens a streaming request and yields the successful response.

        Raises:
            APIError: On HTTP status >= 400.
            TransportError: If the daemon cannot be reached or the request times out.
        """
        content: bytes | None = None
        headers: dict[str, str] = {}
        if payload is not None:
            body = payload.payload() if isinstance(payload, WireModel) else dict(payload)
            content = json.dumps(body).encode("utf-8")
            headers["Content-Type"] = "application/json"

        logger.debug(f"{method} {path}", query=dict(query or {}))
        request = self._client.build_request(
            method,
            path,
            content=content,
            params={k: str(v) for k, v in (query or {}).items()},
            headers=headers,
            timeout=self._request_timeout(),
        )
        try:
            response = await self._client.send(request, stream=True)
        except httpx.TimeoutException as e:
            raise self._timed_out(method, path) from e
        except httpx.HTTPError as e:
            raise TransportError(self._redact(f"request {method} {path} to {self.target} failed: {e}")) from e
        try:
            if response.status_code >= 400:
                body_bytes = await self._read(response, method, path)
                error = parse_api_error(response.status_code, body_bytes)
                error.message = self._redact(error.message)
                raise error
            yield response
        finally:
            await response.aclose()

    async def _read(self, response: httpx.Response, method: str, path: str) -> bytes:
        try:
            return await read_capped(response)
        except httpx.TimeoutException as e:
            raise self._timed_out(method, path) from e
        except httpx.HTTPError as e:
            raise TransportError(self._redact(f"read response from {path}: {e}")) from e

    async def do_json(
        self,
        method: str,
        path: str,
        payload: WireModel | Mapping[str, Any] | None = None,
        query: Mapping[str, Any] | None = None,
    ) -> bytes:
        """Sends a JSON request and returns the raw response body (capped at 4 MiB)."""
        async with self.stream(method, path, payload, query) as response:
            return await self._read(response, method, path)

    async def request_json(
        self,
        method: str,
        path: str,
        payload: WireModel | Mapping[str, Any] | None = None,
        query: Mapping[str, Any] | None = None,
    ) -> Any:
        """Like :meth:`do_json` but returns the decoded JSON value."""
        body = await self.do_json(method, path, payload, query)
        if not body.strip():
            return {}
        try:
            return json.loads(body)
        except ValueError as e:
            raise AgentlabError(f"invalid JSON from {method} {path}: {e}") from e

    async def get(self, path: str, model: type[M], query: Mapping[str, Any] | None = None) -> M:
        return self.validate(await self.request_json("GET", path, query=query), model, path)

    async def post(
        self,
        path: str,
        model: type[M],
        payload: WireModel | Mapping[str, Any] | None = None,
    ) -> M:
        return self.validate(await self.request_json("POST", path, payload), model, path)

    @staticmethod
    def validate(data: Any, model: type[M], path: str = "") -> M:
        try:
            return model.model_validate(data)
        except ValidationError as e:
            raise AgentlabError(f"unexpected response from {path}: {e.error_count()} invalid field(s)") from e
