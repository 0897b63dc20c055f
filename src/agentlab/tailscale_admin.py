# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/agentlab

"""Minimal Tailscale admin API client for approving the agent subnet route."""

import ipaddress
import re
from collections.abc import Iterable, Sequence
from typing import Any

import httpx
from loguru import logger
from pydantic import BaseModel, Field, ValidationError

from agentlab.config import TailscaleAdminConfig, TailscaleAdminSettings
from agentlab.endpoint import endpoint_path
from agentlab.errors import CLIError, redact

ADMIN_BASE_URL = "https://api.tailscale.com/api/v2"
DEFAULT_ADMIN_TIMEOUT = 10.0


class TailscaleDevice(BaseModel):
    id: str = ""
    node_id: str = Field(default="", alias="nodeId")
    name: str = ""
    hostname: str = ""
    addresses: list[str] = Field(default_factory=list)
    advertised_routes: list[str] = Field(default_factory=list, alias="advertisedRoutes")
    enabled_routes: list[str] = Field(default_factory=list, alias="enabledRoutes")

    model_config = {"populate_by_name": True}

    @property
    def device_id(self) -> str:
        return self.node_id.strip() or self.id.strip()


class DeviceRoutes(BaseModel):
    advertised_routes: list[str] = Field(default_factory=list, alias="advertisedRoutes")
    enabled_routes: list[str] = Field(default_factory=list, alias="enabledRoutes")


class RouteApproval(BaseModel):
    device_id: str
    device_name: str = ""
    route: str
    status: str  # already-approved | approved | pending

    @property
    def device_label(self) -> str:
        return self.device_name.strip() or f"device {self.device_id}"


class TailscaleAdminError(CLIError):
    """The admin API rejected a request or no device could be matched."""


def parse_oauth_scopes(raw: str) -> list[str] | None:
    scopes = [part for part in re.split(r"[,\s]+", raw.strip()) if part]
    return scopes or None


def normalize_admin_config(cfg: TailscaleAdminConfig | None) -> TailscaleAdminConfig | None:
    """Trims every field; an API key wins over OAuth credentials. Returns None when empty."""
    if cfg is None:
        return None
    normalized = TailscaleAdminConfig(
        tailnet=(cfg.tailnet or "").strip() or None,
        api_key=(cfg.api_key or "").strip() or None,
        oauth_client_id=(cfg.oauth_client_id or "").strip() or None,
        oauth_client_secret=(cfg.oauth_client_secret or "").strip() or None,
        oauth_scopes=[s.strip() for s in cfg.oauth_scopes or [] if s.strip()] or None,
    )
    if normalized.api_key:
        normalized.oauth_client_id = normalized.oauth_client_secret = None
        normalized.oauth_scopes = None
    if not any(normalized.model_dump(exclude_none=True).values()):
        return None
    return normalized


def merge_admin_config(
    base: TailscaleAdminConfig | None, override: TailscaleAdminConfig | None
) -> TailscaleAdminConfig | None:
    """Overlays ``override`` on ``base``. Setting an API key clears OAuth and vice versa."""
    if base is None and override is None:
        return None
    merged = base.model_copy() if base is not None else TailscaleAdminConfig()
    if override is not None:
        if (override.tailnet or "").strip():
            merged.tailnet = override.tailnet
        oauth_touched = bool(
            (override.oauth_client_id or "").strip()
            or (override.oauth_client_secret or "").strip()
            or override.oauth_scopes
        )
        if (override.api_key or "").strip():
            merged.api_key = override.api_key
            merged.oauth_client_id = merged.oauth_client_secret = None
            merged.oauth_scopes = None
        elif oauth_touched:
            merged.api_key = None
            if (override.oauth_client_id or "").strip():
                merged.oauth_client_id = override.oauth_client_id
            if (override.oauth_client_secret or "").strip():
                merged.oauth_client_secret = override.oauth_client_secret
            if override.oauth_scopes:
                merged.oauth_scopes = override.oauth_scopes
    return normalize_admin_config(merged)


def admin_config_from_settings(settings: TailscaleAdminSettings) -> TailscaleAdminConfig | None:
    return normalize_admin_config(
        TailscaleAdminConfig(
            tailnet=settings.tailnet or None,
            api_key=settings.api_key or None,
            oauth_client_id=settings.oauth_client_id or None,
            oauth_client_secret=settings.oauth_client_secret or None,
            oauth_scopes=parse_oauth_scopes(settings.oauth_scopes),
        )
    )


def normalize_route(route: str) -> str:
    route = route.strip()
    if not route:
        return ""
    try:
        return str(ipaddress.ip_network(route, strict=False))
    except ValueError:
        return route


def unique_routes(routes: Iterable[str]) -> list[str]:
    return sorted({normalized for normalized in (normalize_route(r) for r in routes) if normalized})


def contains_route(routes: Iterable[str], route: str) -> bool:
    needle = normalize_route(route)
    return bool(needle) and any(normalize_route(entry) == needle for entry in routes)


def matches_hints(device: TailscaleDevice, hints: Sequence[str]) -> bool:
    name = device.name.strip().rstrip(".").lower()
    hostname = device.hostname.strip().lower()
    for hint in hints:
        hint = hint.strip().rstrip(".").lower()
        if not hint:
            continue
        if name and (hint == name or name.startswith(hint + ".")):
            return True
        if hostname and hint == hostname:
            return True
    return False


def pick_device(devices: Sequence[TailscaleDevice], hints: Sequence[str], route: str) -> TailscaleDevice:
    """Matches the host's device by name hints, falling back to the advertised route.

    Raises:
        TailscaleAdminError: If nothing or more than one device matches.
    """
    matches = [d for d in devices if matches_hints(d, hints)] if hints else []
    if not matches and route:
        matches = [d for d in devices if contains_route(d.advertised_routes, route)]
    if not matches:
        raise TailscaleAdminError("no matching tailnet device found")
    if len(matches) > 1:
        raise TailscaleAdminError("multiple tailnet devices matched; provide a unique tailnet hostname")
    return matches[0]


class TailscaleAdminClient:
    """Async client for the subset of the admin API used to approve routes.

    Authenticates with an API key (HTTP basic, key as user) or exchanges OAuth
    client credentials for a bearer token on first use.
    """

    def __init__(
        self,
        cfg: TailscaleAdminConfig,
        timeout: float = DEFAULT_ADMIN_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
        base_url: str = ADMIN_BASE_URL,
    ):
        normalized = normalize_admin_config(cfg)
        if normalized is None or not normalized.has_credentials():
            raise TailscaleAdminError("tailscale admin credentials not configured")
        self.cfg = normalized
        self.tailnet = normalized.tailnet or "-"
        self._secrets = [s for s in (normalized.api_key, normalized.oauth_client_secret) if s]
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers={"Accept": "application/json", "User-Agent": "agentlab"},
            timeout=timeout,
            transport=transport,
        )
        self._authorized = False

    async def __aenter__(self) -> "TailscaleAdminClient":
        return self

    async def __aexit__(self, exc_type: object, exc_val: object, exc_tb: object) -> None:
        await self._client.aclose()

    def _redact(self, text: str) -> str:
        return redact(text, *self._secrets)

    async def _authorize(self) -> None:
        if self._authorized:
            return
        if self.cfg.api_key:
            self._client.auth = httpx.BasicAuth(self.cfg.api_key, "")
        else:
            token = await self._oauth_token()
            self._client.headers["Authorization"] = f"Bearer {token}"
            self._secrets.append(token)
        self._authorized = True

    async def _oauth_token(self) -> str:
        form = {
            "grant_type": "client_credentials",
            "client_id": self.cfg.oauth_client_id or "",
            "client_secret": self.cfg.oauth_client_secret or "",
        }
        if self.cfg.oauth_scopes:
            form["scope"] = " ".join(self.cfg.oauth_scopes)
        try:
            response = await self._client.post("/oauth/token", data=form)
        except httpx.HTTPError as e:
            raise TailscaleAdminError(self._redact(f"oauth token request failed: {e}")) from e
        if not response.is_success:
            raise TailscaleAdminError(self._redact(f"oauth token request failed: {response.text.strip()}"))
        try:
            token = str(response.json().get("access_token") or "").strip()
        except (ValueError, AttributeError) as e:
            raise TailscaleAdminError(f"oauth token response is not JSON: {e}") from e
        if not token:
            raise TailscaleAdminError("oauth token response missing access_token")
        return token

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        await self._authorize()
        logger.debug(f"tailscale api {method} {path}")
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            raise TailscaleAdminError(self._redact(f"tailscale api {method} {path} failed: {e}")) from e
        if not response.is_success:
            raise TailscaleAdminError(self._redact(f"tailscale api {method} {path} failed: {response.text.strip()}"))
        try:
            return response.json()
        except ValueError as e:
            raise TailscaleAdminError(f"tailscale api {method} {path} returned invalid JSON: {e}") from e

    async def list_devices(self) -> list[TailscaleDevice]:
        data = await self._request("GET", endpoint_path("tailnet", self.tailnet, "devices"), params={"fields": "all"})
        raw = data.get("devices") if isinstance(data, dict) else data
        try:
            return [TailscaleDevice.model_validate(item) for item in raw or []]
        except ValidationError as e:
            raise TailscaleAdminError(f"unexpected device list: {e.error_count()} invalid field(s)") from e

    async def get_routes(self, device_id: str) -> DeviceRoutes:
        data = await self._request("GET", endpoint_path("device", device_id, "routes"))
        return DeviceRoutes.model_validate(data or {})

    async def set_routes(self, device_id: str, routes: Sequence[str]) -> DeviceRoutes:
        data = await self._request("POST", endpoint_path("device", device_id, "routes"), json={"routes": list(routes)})
        return DeviceRoutes.model_validate(data or {})

    async def approve_subnet_route(self, hints: Sequence[str], route: str) -> RouteApproval:
        """Enables ``route`` on the device matching ``hints``, keeping its other enabled routes.

        Returns:
            RouteApproval: ``already-approved``, ``approved``, or ``pending`` when the
            API accepted the request but the route is not yet enabled.
        """
        route = normalize_route(route)
        if not route:
            raise TailscaleAdminError("route is required")
        device = pick_device(await self.list_devices(), hints, route)
        device_id = device.device_id
        if not device_id:
            raise TailscaleAdminError("matched device missing id")

        enabled = unique_routes(device.enabled_routes)
        if not enabled and not device.advertised_routes:
            try:
                enabled = unique_routes((await self.get_routes(device_id)).enabled_routes)
            except TailscaleAdminError as e:
                logger.debug(f"Could not read routes for {device_id}: {e}")

        approval = RouteApproval(device_id=device_id, device_name=device.name, route=route, status="already-approved")
        if contains_route(enabled, route):
            return approval
        response = await self.set_routes(device_id, unique_routes([*enabled, route]))
        approval.status = "approved" if contains_route(response.enabled_routes, route) else "pending"
        return approval


def manual_approval_hint(subnet: str, device_hint: str = "") -> str:
    if device_hint:
        return (
            f"Approve the subnet route {subnet} for {device_hint} in the Tailscale admin console (Routes), "
            "then ensure your client accepts routes."
        )
    return (
        f"Approve the subnet route {subnet} in the Tailscale admin console (Routes), "
        "then ensure your client accepts routes."
    )
