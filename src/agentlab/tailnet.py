# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/agentlab

"""Client-side diagnostic for the tailnet subnet route to sandbox IPs."""

import ipaddress
import sys

from pydantic import BaseModel

from agentlab.constants import DEFAULT_AGENT_SUBNET, ROUTE_CHECK_TIMEOUT, TAILSCALE_IFACE_PREFIX
from agentlab.errors import CommandError
from agentlab.runner import CommandRunner

PRIVATE_NETWORKS = (
    ipaddress.ip_network("10.0.0.0/8"),
    ipaddress.ip_network("172.16.0.0/12"),
    ipaddress.ip_network("192.168.0.0/16"),
    ipaddress.ip_network("fc00::/7"),
)


class TailnetRouteCheck(BaseModel):
    subnet: str = ""
    target: str = ""
    status: str = "unknown"  # ok | warn | unknown
    detail: str = ""

    def describe(self) -> str:
        if self.status == "ok":
            return f"ok ({self.detail or self.subnet})" if (self.detail or self.subnet) else "ok"
        if self.status == "warn":
            if self.detail:
                return f"warning: {self.detail}"
            return f"warning: subnet {self.subnet} not reachable" if self.subnet else "warning"
        if self.detail:
            return f"note: {self.detail}"
        return f"note: unable to verify route for {self.subnet}" if self.subnet else "note: unable to verify route"


def is_private(ip: ipaddress.IPv4Address | ipaddress.IPv6Address) -> bool:
    return any(ip.version == net.version and ip in net for net in PRIVATE_NETWORKS)


def parse_ip_route_get(output: str) -> tuple[str, str]:
    """Extracts ``(dev, via)`` from ``ip route get`` output."""
    fields = output.split()
    device = via = ""
    for i, field in enumerate(fields[:-1]):
        if field == "dev":
            device = fields[i + 1]
        elif field == "via":
            via = fields[i + 1]
    return device, via


def subnet_probe_ip(cidr: str) -> ipaddress.IPv4Address | ipaddress.IPv6Address:
    """Returns the first host address after the network address of ``cidr``."""
    cidr = cidr.strip() or DEFAULT_AGENT_SUBNET
    iface = ipaddress.ip_interface(cidr)
    if iface.version == 4:
        return iface.ip + 1
    return iface.network.network_address


async def check_route_to_ip(runner: CommandRunner, ip: str, subnet: str = "") -> TailnetRouteCheck:
    check = TailnetRouteCheck(subnet=subnet.strip() or DEFAULT_AGENT_SUBNET)
    try:
        addr = ipaddress.ip_address(ip.strip())
    except ValueError:
        check.detail = "invalid target IP"
        return check
    check.target = str(addr)
    if not is_private(addr):
        check.status = "ok"
        check.detail = "target is public"
        return check
    ensure = f"ensure the agent subnet route ({check.subnet}) is enabled"
    enable = f"enable the agent subnet route ({check.subnet})"
    if not sys.platform.startswith("linux"):
        check.detail = f"unable to verify tailnet route on {sys.platform}; {ensure}"
        return check
    if runner.which("ip") is None:
        check.detail = f"unable to verify tailnet route (missing ip command); {ensure}"
        return check

    family = "-4" if addr.version == 4 else "-6"
    try:
        result = await runner.run(["ip", family, "route", "get", str(addr)], timeout=ROUTE_CHECK_TIMEOUT)
    except CommandError:
        result = None
    if result is None or not result.ok:
        check.status = "warn"
        check.detail = f"no route to {addr} detected; {enable}"
        return check

    device, via = parse_ip_route_get(result.output)
    if not device:
        check.detail = f"unable to determine route to {addr}; {ensure}"
        return check
    if device.startswith(TAILSCALE_IFACE_PREFIX):
        check.status = "ok"
        check.detail = f"via {device} ({via})" if via else f"via {device}"
        return check
    check.status = "warn"
    hop = f"{via} on {device}" if via else device
    check.detail = f"route to {addr} goes via {hop}, not Tailscale; {enable}"
    return check


async def check_subnet_route(runner: CommandRunner, subnet: str) -> TailnetRouteCheck:
    """Checks the route to the first host of ``subnet``."""
    subnet = subnet.strip()
    try:
        target = subnet_probe_ip(subnet)
    except ValueError as e:
        return TailnetRouteCheck(subnet=subnet, status="unknown", detail=f'invalid subnet "{subnet}": {e}')
    return await check_route_to_ip(runner, str(target), subnet)


def route_warning(check: TailnetRouteCheck) -> str:
    """Returns the stderr warning for an ssh target, or ``""`` when the route looks fine."""
    if check.status == "warn":
        return f"Warning: {check.detail}"
    if check.status == "unknown" and check.detail and check.detail != "invalid target IP":
        return f"Note: {check.detail}"
    return ""
