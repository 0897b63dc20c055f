# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/agentlab

"""Remote provisioning of a Proxmox host over SSH (``agentlab bootstrap``).

The flow uploads a tarball of host scripts and skills, runs the network and
install scripts remotely, reads the control endpoint from the host's
``agentlab init --json`` report, and stores it as the local client config.
Every remote command runs through :class:`RemoteShell`, so re-running the
bootstrap against a configured host converges instead of failing.
"""

import json
import os
import posixpath
import shlex
import tarfile
import tempfile
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from pathlib import Path

import httpx
from loguru import logger
from pydantic import BaseModel

from agentlab.api import APIClient
from agentlab.assets import BOOTSTRAP_ASSETS, resolve_assets
from agentlab.config import ClientConfig, TailscaleAdminConfig, write_client_config
from agentlab.constants import DEFAULT_AGENT_SUBNET, DEFAULT_CONTROL_PORT, DEFAULT_REQUEST_TIMEOUT
from agentlab.endpoint import normalize_endpoint
from agentlab.errors import AgentlabError, CLIError, CommandError, ConfigError, redact
from agentlab.models import HostInfo
from agentlab.render import Renderer
from agentlab.runner import CommandRunner
from agentlab.tailnet import TailnetRouteCheck, check_subnet_route
from agentlab.tailscale_admin import TailscaleAdminClient, manual_approval_hint

DEFAULT_BOOTSTRAP_SSH_PORT = 22
BUNDLE_PREFIX = "agentlab-bootstrap"
AGENTLAB_BINARY = "agentlab_linux_amd64"
AGENTLABD_BINARY = "agentlabd_linux_amd64"
HOST_CONFIG_PATH = "/etc/agentlab/config.yaml"


@dataclass
class BootstrapOptions:
    host: str
    ssh_user: str = "root"
    ssh_port: int = DEFAULT_BOOTSTRAP_SSH_PORT
    identity: str = ""
    assets_dir: str = ""
    agentlab_bin: str = ""
    agentlabd_bin: str = ""
    agentlab_url: str = ""
    agentlabd_url: str = ""
    release_url: str = ""
    control_port: int = DEFAULT_CONTROL_PORT
    control_token: str = ""
    rotate_control_token: bool = False
    tailscale_serve: bool = False
    no_tailscale_serve: bool = False
    tailscale_authkey: str = ""
    tailscale_hostname: str = ""
    tailscale_admin: TailscaleAdminConfig | None = None
    known_hosts: str = ""
    force: bool = False
    keep_temp: bool = False
    verbose: bool = False
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT

    def validate(self) -> None:
        """Raises CLIError for flag combinations the bootstrap cannot honor."""
        self.host = self.host.strip()
        if self.tailscale_serve and self.no_tailscale_serve:
            raise CLIError("--tailscale-serve and --no-tailscale-serve are mutually exclusive")
        if not self.host:
            raise CLIError("host is required")
        if not 0 < self.ssh_port <= 65535:
            raise CLIError("ssh-port must be between 1 and 65535")
        if not 0 < self.control_port <= 65535:
            raise CLIError("control-port must be between 1 and 65535")
        admin = self.tailscale_admin
        if admin is not None and (admin.oauth_client_id or admin.oauth_client_secret) and not admin.api_key:
            if not (admin.oauth_client_id and admin.oauth_client_secret):
                raise CLIError("tailscale oauth requires both client id and client secret")

    @property
    def secrets(self) -> list[str]:
        values = [self.control_token, self.tailscale_authkey]
        if self.tailscale_admin is not None:
            values += [self.tailscale_admin.api_key or "", self.tailscale_admin.oauth_client_secret or ""]
        return [v for v in values if v.strip()]


@dataclass
class Binaries:
    mode: str  # upload | download
    agentlab: str = ""
    agentlabd: str = ""
    agentlab_url: str = ""
    agentlabd_url: str = ""


class BootstrapStep(BaseModel):
    name: str
    status: str  # ok | skipped | warn | failed
    detail: str = ""


class BootstrapResult(BaseModel):
    host: str
    endpoint: str = ""
    config_path: str = ""
    backup_path: str | None = None
    steps: list[BootstrapStep] = []
    warnings: list[str] | None = None
    assets_dir: str = ""
    remote_dir: str = ""
    tailnet_route: TailnetRouteCheck | None = None


def split_user_host(raw: str) -> tuple[str, str]:
    """Splits ``user@host`` at the last ``@``. The user is ``""`` when absent."""
    value = raw.strip()
    user, sep, host = value.rpartition("@")
    if not sep:
        return "", value
    return user, host


def normalize_host_hint(host: str) -> str:
    host = host.strip()
    if host.startswith("[") and "]" in host:
        return host[1 : host.index("]")]
    if host.count(":") == 1:
        host = host.split(":", 1)[0]
    return host.strip()


def resolve_binaries(root: Path, opts: BootstrapOptions) -> Binaries:
    """Chooses upload mode (local binaries) or download mode (URLs).

    Raises:
        CLIError: If an explicit binary is missing, only one binary is available,
            or neither binaries nor URLs are available.
    """
    agentlab = agentlabd = ""
    for flag, value in (("agentlab", opts.agentlab_bin), ("agentlabd", opts.agentlabd_bin)):
        if not value.strip():
            continue
        path = Path(value.strip()).expanduser().resolve()
        if not path.exists():
            raise CLIError(f"{flag} binary not found: {path}")
        if flag == "agentlab":
            agentlab = str(path)
        else:
            agentlabd = str(path)
    if not agentlab and not agentlabd:
        dist = root / "dist"
        agentlab = str(dist / AGENTLAB_BINARY) if (dist / AGENTLAB_BINARY).exists() else ""
        agentlabd = str(dist / AGENTLABD_BINARY) if (dist / AGENTLABD_BINARY).exists() else ""
    if agentlab or agentlabd:
        if not (agentlab and agentlabd):
            raise CLIError("both agentlab and agentlabd binaries are required for upload")
        return Binaries(mode="upload", agentlab=agentlab, agentlabd=agentlabd)

    agentlab_url = opts.agentlab_url.strip()
    agentlabd_url = opts.agentlabd_url.strip()
    base = opts.release_url.strip().rstrip("/")
    if base:
        agentlab_url = agentlab_url or f"{base}/{AGENTLAB_BINARY}"
        agentlabd_url = agentlabd_url or f"{base}/{AGENTLABD_BINARY}"
    if not agentlab_url or not agentlabd_url:
        raise CLIError(
            "linux binaries not found; build dist/ or pass --release-url/--agentlab-url/--agentlabd-url"
        )
    return Binaries(mode="download", agentlab_url=agentlab_url, agentlabd_url=agentlabd_url)


def create_bundle(root: Path, binaries: Binaries) -> Path:
    """Packs ``scripts/``, ``skills/agentlab/`` (and ``dist/`` in upload mode) into a temp ``.tgz``."""
    fd, name = tempfile.mkstemp(prefix="agentlab-bootstrap-", suffix=".tgz")
    os.close(fd)
    bundle = Path(name)
    try:
        with tarfile.open(bundle, "w:gz") as tar:
            for rel in ("scripts", "skills/agentlab"):
                source = root / rel
                if not source.is_dir():
                    raise CLIError(f"{source} is not a directory")
                tar.add(source, arcname=f"{BUNDLE_PREFIX}/{rel}")
            if binaries.mode == "upload":
                tar.add(binaries.agentlabd, arcname=f"{BUNDLE_PREFIX}/dist/{AGENTLABD_BINARY}")
                tar.add(binaries.agentlab, arcname=f"{BUNDLE_PREFIX}/dist/{AGENTLAB_BINARY}")
    except (OSError, tarfile.TarError) as e:
        bundle.unlink(missing_ok=True)
        raise CLIError(f"create bootstrap bundle: {e}") from e
    except CLIError:
        bundle.unlink(missing_ok=True)
        raise
    logger.debug(f"Created bootstrap bundle {bundle} ({bundle.stat().st_size} bytes)")
    return bundle


def build_remote_download_command(remote_root: str, binaries: Binaries) -> str:
    dest = posixpath.join(remote_root, "dist")
    agentlabd_path = posixpath.join(dest, AGENTLABD_BINARY)
    agentlab_path = posixpath.join(dest, AGENTLAB_BINARY)
    script = "\n".join(
        [
            "set -euo pipefail",
            f"mkdir -p {shlex.quote(dest)}",
            "if command -v curl >/dev/null 2>&1; then",
            '  dl() { curl -fsSL "$1" -o "$2"; }',
            "elif command -v wget >/dev/null 2>&1; then",
            '  dl() { wget -qO "$2" "$1"; }',
            "else",
            "  echo 'curl or wget is required' >&2; exit 1;",
            "fi",
            f"dl {shlex.quote(binaries.agentlabd_url)} {shlex.quote(agentlabd_path)}",
            f"dl {shlex.quote(binaries.agentlab_url)} {shlex.quote(agentlab_path)}",
            f"chmod +x {shlex.quote(agentlabd_path)} {shlex.quote(agentlab_path)}",
        ]
    )
    return "sh -c " + shlex.quote(script)


def build_config_backup_command(config_path: str = HOST_CONFIG_PATH) -> str:
    script = "\n".join(
        [
            "set -euo pipefail",
            f"cfg={shlex.quote(config_path)}",
            'if [ -f "$cfg" ]; then',
            "  ts=$(date -u +%Y%m%dT%H%M%SZ)",
            '  backup="${cfg}.bak.${ts}"',
            '  cp -a "$cfg" "$backup"',
            '  echo "BACKUP=${backup}"',
            "fi",
        ]
    )
    return "sh -c " + shlex.quote(script)


def parse_backup_path(output: str) -> str:
    for line in output.splitlines():
        line = line.strip()
        if line.startswith("BACKUP="):
            return line[len("BACKUP=") :]
    return ""


def parse_connect_command(command: str) -> tuple[str, str]:
    """Extracts ``--endpoint`` and ``--token`` values from an ``agentlab connect`` line."""
    fields = command.split()
    endpoint = token = ""
    for i, value in enumerate(fields[:-1]):
        if value == "--endpoint":
            endpoint = fields[i + 1]
        elif value == "--token":
            token = fields[i + 1]
    return endpoint.strip(), token.strip()


def parse_init_connect(output: str) -> tuple[str, str]:
    """Reads the control endpoint and token from ``agentlab init --json`` output.

    Raises:
        CLIError: If the report is not JSON or carries no usable connect command.
    """
    try:
        report = json.loads(output)
    except ValueError as e:
        raise CLIError(f"failed to parse init report: {e}") from e
    command = report.get("connect_command") if isinstance(report, dict) else None
    endpoint, token = parse_connect_command(str(command or ""))
    if not endpoint or not token:
        raise CLIError("control endpoint not configured; run agentlab init --apply on host")
    return endpoint, token


def build_plan(opts: BootstrapOptions, binaries: Binaries) -> list[str]:
    plan = ["Upload bootstrap bundle over SSH"]
    if binaries.mode == "download":
        plan.append("Download Linux binaries on the host")
    plan += ["Configure vmbr1 bridge and enable IP forwarding", "Install nftables NAT + egress/tailnet blocks"]
    if opts.tailscale_authkey:
        plan.append("Configure tailscale subnet routing")
    if opts.tailscale_admin is not None and opts.tailscale_admin.has_credentials():
        plan.append("Approve tailscale subnet route via admin API")
    plan += [
        f"Backup {HOST_CONFIG_PATH} if present",
        "Install agentlabd + agentlab, enable remote control",
        "Fetch control endpoint and write local client config",
    ]
    return plan


def device_hints(opts: BootstrapOptions, host_info: HostInfo | None) -> list[str]:
    """Names that may identify the host's tailnet device, most specific first."""
    hints = []
    if host_info is not None and (host_info.tailscale_dns or "").strip():
        hints.append((host_info.tailscale_dns or "").strip())
    if opts.tailscale_hostname.strip():
        hints.append(opts.tailscale_hostname.strip())
    _, host = split_user_host(opts.host)
    if host:
        hints.append(normalize_host_hint(host))
    return list(dict.fromkeys(h for h in hints if h))


class RemoteShell:
    """Runs shell command strings on the bootstrap target through ``ssh``."""

    def __init__(self, runner: CommandRunner, opts: BootstrapOptions, renderer: Renderer | None = None):
        user, host = split_user_host(opts.host)
        user = opts.ssh_user.strip() or user or "root"
        host = host.strip()
        if not host:
            raise CLIError("host is required")
        self.runner = runner
        self.user = user
        self.target = f"{user}@{host}"
        self.verbose = opts.verbose
        self.renderer = renderer
        self.secrets = list(opts.secrets)

        args = ["-o", "BatchMode=yes"]
        if opts.known_hosts.strip():
            args += ["-o", "StrictHostKeyChecking=yes", "-o", f"UserKnownHostsFile={opts.known_hosts.strip()}"]
        else:
            args += ["-o", "StrictHostKeyChecking=accept-new"]
        if opts.identity.strip():
            args += ["-i", opts.identity.strip()]
        if opts.ssh_port != DEFAULT_BOOTSTRAP_SSH_PORT:
            args += ["-p", str(opts.ssh_port)]
        self.ssh_args = args

    @property
    def needs_sudo(self) -> bool:
        return self.user != "root"

    def sudo(self, command: str) -> str:
        return f"sudo -n {command}" if self.needs_sudo else command

    async def run(self, command: str, stdin: Path | None = None) -> str:
        """Runs ``command`` remotely and returns its combined output.

        Raises:
            CommandError: On a non-zero exit, with secrets redacted from the message.
        """
        args = ["ssh", *self.ssh_args, self.target, command]
        shown = redact(command, *self.secrets)
        result = await self.runner.check(f"remote command failed: {shown}", args, stdin=stdin, secrets=self.secrets)
        if self.verbose and result.output and self.renderer is not None and not self.renderer.json_output:
            self.renderer.line(redact(result.output.rstrip("\n"), *self.secrets))
        return result.output

    async def upload(self, local: Path, remote: str) -> None:
        await self.run(f"cat > {shlex.quote(remote)}", stdin=local)


@dataclass
class Bootstrapper:
    """Drives the bootstrap steps and accumulates the result."""

    runner: CommandRunner
    opts: BootstrapOptions
    renderer: Renderer
    config_path: Path | None = None
    transport: httpx.AsyncBaseTransport | None = None
    admin_transport: httpx.AsyncBaseTransport | None = None
    result: BootstrapResult = field(init=False)
    _warnings: list[str] = field(default_factory=list, init=False)

    def _step(self, name: str, status: str = "ok", detail: str = "") -> None:
        logger.debug(f"bootstrap step {name}: {status}", detail=detail)
        self.result.steps.append(BootstrapStep(name=name, status=status, detail=detail))

    def _client(self, endpoint: str, token: str) -> APIClient:
        return APIClient(
            endpoint=endpoint, token=token, timeout=self.opts.request_timeout, transport=self.transport
        )

    async def run(self) -> BootstrapResult:
        opts = self.opts
        opts.validate()
        self.result = BootstrapResult(host=opts.host)
        root = resolve_assets(opts.assets_dir, BOOTSTRAP_ASSETS)
        binaries = resolve_binaries(root, opts)
        self.result.assets_dir = str(root)
        if not self.renderer.json_output:
            self.renderer.line("Bootstrap plan:")
            for item in build_plan(opts, binaries):
                self.renderer.line(f"- {item}")

        shell = RemoteShell(self.runner, opts, self.renderer)
        bundle = create_bundle(root, binaries)
        try:
            endpoint, token = await self._provision(shell, bundle, binaries)
        finally:
            bundle.unlink(missing_ok=True)
        await self._finish(shell, endpoint, token)
        self.result.warnings = self._warnings or None
        return self.result

    @asynccontextmanager
    async def _stage(self, shell: RemoteShell, name: str) -> AsyncIterator[None]:
        """Records ``name`` as failed when the block raises, then re-raises."""
        try:
            yield
        except AgentlabError as e:
            detail = redact(str(e), *shell.secrets)
            logger.warning(f"bootstrap step {name} failed: {detail}")
            self._step(name, "failed", detail)
            raise

    async def _provision(self, shell: RemoteShell, bundle: Path, binaries: Binaries) -> tuple[str, str]:
        opts = self.opts
        remote_base = f"/tmp/agentlab-bootstrap-{int(time.time())}"
        remote_bundle = posixpath.join(remote_base, "bundle.tgz")
        remote_root = posixpath.join(remote_base, BUNDLE_PREFIX)
        self.result.remote_dir = remote_base
        force = ["--force"] if opts.force else []

        async with self._stage(shell, "prepare_remote_dir"):
            await shell.run(shlex.join(["mkdir", "-p", remote_base]))
        self._step("prepare_remote_dir", detail=remote_base)

        async with self._stage(shell, "upload_bundle"):
            await shell.upload(bundle, remote_bundle)
        self._step("upload_bundle")

        async with self._stage(shell, "extract_bundle"):
            await shell.run(shlex.join(["tar", "-xzf", remote_bundle, "-C", remote_base]))
        self._step("extract_bundle")

        if binaries.mode == "download":
            async with self._stage(shell, "download_binaries"):
                await shell.run(build_remote_download_command(remote_root, binaries))
            self._step("download_binaries")

        setup = [posixpath.join(remote_root, "scripts/net/setup_vmbr1.sh"), "--apply", *force]
        async with self._stage(shell, "configure_vmbr1"):
            await shell.run(shell.sudo(shlex.join(setup)))
        self._step("configure_vmbr1")

        nft = [posixpath.join(remote_root, "scripts/net/apply.sh"), "--apply", *force]
        async with self._stage(shell, "configure_nftables"):
            await shell.run(shell.sudo(shlex.join(nft)))
        self._step("configure_nftables")

        if opts.tailscale_authkey:
            router = [
                posixpath.join(remote_root, "scripts/net/setup_tailscale_router.sh"),
                "--apply",
                "--authkey",
                opts.tailscale_authkey,
            ]
            if opts.tailscale_hostname.strip():
                router += ["--hostname", opts.tailscale_hostname.strip()]
            async with self._stage(shell, "configure_tailscale_router"):
                await shell.run(shell.sudo(shlex.join(router)))
            self._step("configure_tailscale_router")

        async with self._stage(shell, "backup_config"):
            backup = parse_backup_path(await shell.run(shell.sudo(build_config_backup_command())))
        if backup:
            self.result.backup_path = backup
            self._step("backup_config", detail=backup)
        else:
            self._step("backup_config", "skipped", "no existing config")

        install = [
            posixpath.join(remote_root, "scripts/install_host.sh"),
            "--enable-remote-control",
            "--control-port",
            str(opts.control_port),
        ]
        if opts.control_token.strip():
            install += ["--control-token", opts.control_token.strip()]
        if opts.rotate_control_token:
            install.append("--rotate-control-token")
        if opts.tailscale_serve:
            install.append("--tailscale-serve")
        if opts.no_tailscale_serve:
            install.append("--no-tailscale-serve")
        async with self._stage(shell, "install_agentlab"):
            await shell.run(shell.sudo(shlex.join(install)))
        self._step("install_agentlab")

        # The init report carries the token; keep it out of verbose echo.
        verbose, shell.verbose = shell.verbose, False
        async with self._stage(shell, "init_report"):
            try:
                output = await shell.run(shell.sudo(shlex.join(["agentlab", "init", "--json"])))
            finally:
                shell.verbose = verbose
            endpoint, token = parse_init_connect(output)
        shell.secrets.append(token)
        self._step("init_report", detail=endpoint)

        async with self._stage(shell, "write_client_config"):
            try:
                endpoint = normalize_endpoint(endpoint)
            except ValueError as e:
                raise CLIError(f"invalid control endpoint from init report: {e}") from e
            try:
                path = write_client_config(ClientConfig(endpoint=endpoint, token=token), self.config_path)
            except ConfigError as e:
                raise CLIError(redact(str(e), token)) from e
        self.result.endpoint = endpoint
        self.result.config_path = str(path)
        self._step("write_client_config", detail=str(path))
        return endpoint, token

    async def _finish(self, shell: RemoteShell, endpoint: str, token: str) -> None:
        host_info = await self._fetch_host_info(endpoint, token)
        subnet = (host_info.agent_subnet if host_info else None) or DEFAULT_AGENT_SUBNET
        await self._approve_routes(host_info, subnet)
        self.result.tailnet_route = await check_subnet_route(self.runner, subnet)

        try:
            async with self._client(endpoint, token) as client:
                await client.do_json("GET", "/v1/status")
        except AgentlabError as e:
            self._warnings.append(f"control plane not reachable yet: {redact(str(e), token)}")
            self._step("verify_control_plane", "warn")
        else:
            self._step("verify_control_plane")

        if not self.opts.keep_temp:
            try:
                await shell.run(shlex.join(["rm", "-rf", self.result.remote_dir]))
            except CommandError as e:
                logger.debug(f"Remote cleanup failed: {e}")
                self._warnings.append(f"failed to remove remote temp dir {self.result.remote_dir}")
            else:
                self._step("cleanup_remote")

    async def _fetch_host_info(self, endpoint: str, token: str) -> HostInfo | None:
        try:
            async with self._client(endpoint, token) as client:
                info = await client.get("/v1/host", HostInfo)
        except AgentlabError as e:
            self._warnings.append(f"host info unavailable: {redact(str(e), token)}")
            return None
        self._step("fetch_host_info", detail=info.tailscale_dns or "")
        return info

    async def _approve_routes(self, host_info: HostInfo | None, subnet: str) -> None:
        hints = device_hints(self.opts, host_info)
        manual = manual_approval_hint(subnet, hints[0] if hints else "")
        admin = self.opts.tailscale_admin
        if admin is None or not admin.has_credentials():
            self._step("approve_tailscale_routes", "skipped", "tailscale admin api not configured")
            self._warnings.append(manual)
            return
        try:
            async with TailscaleAdminClient(admin, transport=self.admin_transport) as client:
                approval = await client.approve_subnet_route(hints, subnet)
        except CLIError as e:
            self._step("approve_tailscale_routes", "warn", str(e))
            self._warnings.append(manual)
            return
        if approval.status == "already-approved":
            self._step("approve_tailscale_routes", detail=f"route {approval.route} already approved")
        elif approval.status == "approved":
            self._step("approve_tailscale_routes", detail=f"approved {approval.route} for {approval.device_label}")
        else:
            self._step("approve_tailscale_routes", "warn", f"route {approval.route} approval pending")


def render_bootstrap_result(result: BootstrapResult, renderer: Renderer) -> None:
    if renderer.json_output:
        renderer.json(result)
        return
    renderer.line("Bootstrap complete")
    renderer.line(f"Endpoint: {result.endpoint}")
    renderer.line(f"Client config: {result.config_path}")
    if result.backup_path:
        renderer.line(f"Config backup: {result.backup_path}")
    for warning in result.warnings or []:
        renderer.line(f"Warning: {warning}")
    if result.tailnet_route is not None:
        renderer.line(f"Tailnet route: {result.tailnet_route.describe()}")
