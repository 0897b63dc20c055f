# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/agentlab

"""Host readiness checks behind ``agentlab init``.

Every probe goes through a :class:`~agentlab.runner.CommandRunner`, so the
whole checker runs against a fake runner in tests.
"""

import ipaddress
import json
import os
import re
import secrets
import sys
from dataclasses import dataclass, field
from pathlib import Path

import yaml
from loguru import logger
from pydantic import BaseModel

from agentlab.assets import read_skill_manifest
from agentlab.constants import DEFAULT_BRIDGE, DEFAULT_CONTROL_PORT, DEFAULT_HOST_CONFIG_PATH
from agentlab.errors import CLIError, CommandError, ConfigError, truncate_output
from agentlab.hostconfig import (
    HostConfig,
    find_config_value,
    listen_host,
    load_host_config,
    parse_listen_host_port,
    upsert_config_value,
    write_host_config_text,
)
from agentlab.render import Renderer
from agentlab.runner import CommandRunner

PROBE_TIMEOUT = 10.0
QM_TIMEOUT = 15.0
RESTART_TIMEOUT = 15.0
SMOKE_PROFILE_FALLBACK = "yolo-ephemeral"
NFT_TABLES = (("inet", "agentlab"), ("ip", "agentlab_nat"))
FAILING_STATUSES = frozenset({"error", "missing"})


class InitCheck(BaseModel):
    name: str
    status: str  # ok | missing | upgrade | error | skipped
    detail: str = ""


class InitReport(BaseModel):
    ok: bool = True
    applied: bool = False
    checks: list[InitCheck] = []
    apply_steps: list[InitCheck] | None = None
    smoke_test: InitCheck | None = None
    connect_command: str | None = None

    def status_of(self, name: str) -> str:
        for check in self.checks:
            if check.name == name:
                return check.status
        return ""

    def finalize(self) -> "InitReport":
        self.ok = not any(check.status in FAILING_STATUSES for check in self.checks)
        if self.smoke_test is not None and self.smoke_test.status != "ok":
            self.ok = False
        return self


class ProfileLoadError(Exception):
    def __init__(self, message: str, missing: bool = False):
        super().__init__(message)
        self.missing = missing


@dataclass
class InitState:
    config: HostConfig
    profiles: dict[str, int] = field(default_factory=dict)
    profiles_error: ProfileLoadError | None = None

    @property
    def template_ids(self) -> list[int]:
        return sorted({vmid for vmid in self.profiles.values() if vmid > 0})


@dataclass
class InitOptions:
    control_port: int = DEFAULT_CONTROL_PORT
    control_token: str = ""
    rotate_token: bool = False
    tailscale_mode: str = "auto"  # auto | on | off
    force: bool = False


def load_profiles(directory: str) -> dict[str, int]:
    """Parses every ``*.yaml``/``*.yml`` in ``directory`` into ``{name: template_vmid}``.

    Files may hold several YAML documents. Each needs a ``name`` and a positive
    ``template_vmid``; names must be unique across the directory.

    Raises:
        ProfileLoadError: On the first invalid file or document.
    """
    root = Path(directory)
    try:
        entries = sorted(p for p in root.iterdir() if p.is_file() and p.suffix in (".yaml", ".yml"))
    except FileNotFoundError as e:
        raise ProfileLoadError(f"read profiles dir {directory}: {e.strerror}", missing=True) from e
    except OSError as e:
        raise ProfileLoadError(f"read profiles dir {directory}: {e.strerror or e}") from e

    profiles: dict[str, int] = {}
    for path in entries:
        try:
            documents = list(yaml.safe_load_all(path.read_text(encoding="utf-8")))
        except (OSError, yaml.YAMLError) as e:
            raise ProfileLoadError(f"parse profile {path}: {e}") from e
        for index, doc in enumerate(documents):
            if doc is None:
                raise ProfileLoadError(f"profile {path} (document {index}) is empty")
            if not isinstance(doc, dict):
                raise ProfileLoadError(f"parse profile {path} (document {index}): expected a mapping")
            name = str(doc.get("name") or "").strip()
            if not name:
                raise ProfileLoadError(f"profile {path} (document {index}) missing name")
            template = doc.get("template_vmid")
            if not isinstance(template, int) or isinstance(template, bool) or template <= 0:
                raise ProfileLoadError(f"profile {path} (document {index}) missing template_vmid")
            if name in profiles:
                raise ProfileLoadError(f'duplicate profile name "{name}" in {path}')
            profiles[name] = template
    return profiles


def parse_inet_addresses(output: str) -> list[str]:
    """Extracts the CIDR of every ``inet`` line of ``ip -4 -o addr show``."""
    addresses = []
    for line in output.splitlines():
        fields = line.split()
        if len(fields) >= 4 and fields[2] == "inet":
            addresses.append(fields[3])
    return addresses


def serve_rule_present(output: str, host: str, port: int) -> bool:
    if f"tcp://{host}:{port}" in output:
        return True
    return re.search(rf"\btcp {port}\b", output.lower()) is not None


def serve_missing_message(output: str) -> bool:
    lowered = output.lower()
    return any(marker in lowered for marker in ("no serve", "not configured", "no listener"))


def parse_tailscale_dns(output: str) -> str:
    """Returns the node's MagicDNS name from ``tailscale status --json``, or ``""``."""
    try:
        status = json.loads(output)
    except ValueError:
        return ""
    if not isinstance(status, dict):
        return ""
    me = status.get("Self") or {}
    dns = str(me.get("DNSName") or "").strip().rstrip(".")
    if dns:
        return dns
    host = str(me.get("HostName") or "").strip()
    suffix = str(status.get("MagicDNSSuffix") or "").strip().rstrip(".")
    if host and suffix:
        return f"{host}.{suffix}"
    return ""


def validate_template_config(vmid: int, output: str) -> str:
    """Returns a problem description for ``qm config`` output, or ``""`` when usable."""
    if not re.search(r"^template:\s*1\s*$", output, re.MULTILINE):
        return f"VM {vmid} is not marked as a template"
    if "agent:" not in output:
        return f"template VM {vmid} does not have qemu-guest-agent enabled (missing 'agent:' config)"
    if "agent: 0" in output or "agent: disabled=1" in output:
        return f"template VM {vmid} has qemu-guest-agent explicitly disabled"
    if "cloudinit" not in output:
        return f"template VM {vmid} does not have a cloud-init drive configured"
    return ""


def generate_token() -> str:
    return secrets.token_hex(32)


class InitChecker:
    """Collects host readiness checks and optionally applies the fixes."""

    def __init__(
        self,
        runner: CommandRunner,
        config_path: str = DEFAULT_HOST_CONFIG_PATH,
        assets_root: Path | None = None,
        proc_root: Path = Path("/proc"),
    ):
        self.runner = runner
        self.config_path = config_path
        self.assets_root = assets_root
        self.proc_root = proc_root
        self._dns_name = ""

    def load_state(self) -> InitState:
        config, _ = load_host_config(self.config_path)
        state = InitState(config=config)
        try:
            state.profiles = load_profiles(config.profiles_dir)
        except ProfileLoadError as e:
            state.profiles_error = e
        return state

    async def collect(self, control_port: int = DEFAULT_CONTROL_PORT) -> tuple[InitReport, InitState]:
        state = self.load_state()
        config = state.config
        report = InitReport()
        report.checks.append(self.check_control_plane(config))

        host, port = parse_listen_host_port(config.control_listen, control_port)
        report.checks.append(await self.check_tailscale_serve(host, port, bool(config.control_listen)))

        expected = listen_host(config.bootstrap_listen) or listen_host(config.artifact_listen)
        report.checks.append(await self.check_bridge(DEFAULT_BRIDGE, expected, config.agent_subnet))
        report.checks.append(self.check_ip_forward())
        report.checks.append(await self.check_nftables())
        report.checks.append(self.check_snippets_dir(config.snippets_dir, config.snippet_storage))
        report.checks.append(self.check_skill_bundle(config))
        report.checks.append(self.check_profiles(state))
        report.checks.append(await self.check_templates(state.template_ids))

        if config.control_listen and config.control_auth_token:
            endpoint = f"http://{config.control_listen}"
            if self._dns_name:
                endpoint = f"http://{self._dns_name}:{port}"
            report.connect_command = f"agentlab connect --endpoint {endpoint} --token {config.control_auth_token}"
        return report.finalize(), state

    def check_control_plane(self, config: HostConfig) -> InitCheck:
        if not config.control_listen:
            return InitCheck(name="control_plane", status="missing", detail="control_listen not set")
        if not config.control_auth_token:
            return InitCheck(name="control_plane", status="missing", detail="control_auth_token not set")
        detail = f"control_listen={config.control_listen} (token set)"
        return InitCheck(name="control_plane", status="ok", detail=detail)

    async def tailscale_running(self) -> bool:
        if self.runner.which("tailscale") is None:
            return False
        try:
            result = await self.runner.run(["tailscale", "status"], timeout=PROBE_TIMEOUT)
        except CommandError as e:
            logger.debug(f"tailscale status failed: {e}")
            return False
        return result.ok

    async def check_tailscale_serve(self, host: str, port: int, control_configured: bool) -> InitCheck:
        name = "tailscale_serve"
        self._dns_name = ""
        if not await self.tailscale_running():
            return InitCheck(name=name, status="skipped", detail="tailscale not running")
        if not control_configured:
            return InitCheck(name=name, status="skipped", detail="control_listen not set")
        try:
            status = await self.runner.run(["tailscale", "status", "--json"], timeout=PROBE_TIMEOUT)
            if status.ok:
                self._dns_name = parse_tailscale_dns(status.output)
            result = await self.runner.run(["tailscale", "serve", "status"], timeout=PROBE_TIMEOUT)
        except CommandError as e:
            return InitCheck(name=name, status="error", detail=str(e))
        message = result.output.strip()
        if not result.ok:
            if message and serve_missing_message(message):
                return InitCheck(name=name, status="missing", detail=f"no serve rule for tcp/{port}")
            return InitCheck(name=name, status="error", detail=message or f"exit status {result.returncode}")
        if serve_rule_present(result.output, host, port):
            return InitCheck(name=name, status="ok", detail=f"tcp://{host}:{port}")
        return InitCheck(name=name, status="missing", detail=f"no serve rule for tcp/{port}")

    async def check_bridge(self, bridge: str, expected_host: str, subnet: str) -> InitCheck:
        name = f"bridge_{bridge}"
        if self.runner.which("ip") is None:
            return InitCheck(name=name, status="error", detail="ip command not found")
        try:
            result = await self.runner.run(["ip", "-4", "-o", "addr", "show", "dev", bridge], timeout=PROBE_TIMEOUT)
        except CommandError as e:
            return InitCheck(name=name, status="error", detail=str(e))
        if not result.ok:
            message = result.output.strip() or f"exit status {result.returncode}"
            if "does not exist" in message:
                return InitCheck(name=name, status="missing", detail=f"{bridge} not found")
            return InitCheck(name=name, status="error", detail=message)

        addresses = parse_inet_addresses(result.output)
        if not addresses:
            return InitCheck(name=name, status="missing", detail=f"{bridge} has no IPv4 address")
        joined = ", ".join(addresses)
        hosts = [addr.split("/", 1)[0] for addr in addresses]
        if expected_host and expected_host not in hosts:
            return InitCheck(name=name, status="missing", detail=f"addr={joined} (expected {expected_host})")
        try:
            network = ipaddress.ip_network(subnet, strict=False) if subnet else None
        except ValueError:
            network = None
        if network is not None and not any(_in_network(h, network) for h in hosts):
            return InitCheck(name=name, status="missing", detail=f"addr={joined} (outside {subnet})")
        return InitCheck(name=name, status="ok", detail=f"addr={joined}")

    def check_ip_forward(self) -> InitCheck:
        try:
            value = (self.proc_root / "sys/net/ipv4/ip_forward").read_text().strip()
        except OSError as e:
            return InitCheck(name="ip_forward", status="error", detail=str(e))
        if value == "1":
            return InitCheck(name="ip_forward", status="ok", detail="net.ipv4.ip_forward=1")
        return InitCheck(name="ip_forward", status="missing", detail=f"net.ipv4.ip_forward={value}")

    async def check_nftables(self) -> InitCheck:
        if self.runner.which("nft") is None:
            return InitCheck(name="nftables", status="missing", detail="nft not found")
        try:
            if self.runner.which("systemctl") is not None:
                active = await self.runner.run(
                    ["systemctl", "is-active", "--quiet", "agentlab-nftables.service"], timeout=PROBE_TIMEOUT
                )
                if active.ok:
                    return InitCheck(name="nftables", status="ok", detail="agentlab-nftables.service active")
            for family, table in NFT_TABLES:
                result = await self.runner.run(["nft", "list", "table", family, table], timeout=PROBE_TIMEOUT)
                if result.ok:
                    continue
                message = result.output.strip()
                lowered = message.lower()
                if "permission denied" in lowered or "operation not permitted" in lowered:
                    return InitCheck(name="nftables", status="error", detail="permission denied (run as root)")
                message = message or f"exit status {result.returncode}"
                return InitCheck(name="nftables", status="missing", detail=f"missing {family}/{table} ({message})")
        except CommandError as e:
            return InitCheck(name="nftables", status="error", detail=str(e))
        return InitCheck(name="nftables", status="ok", detail="agentlab nftables tables present")

    def check_snippets_dir(self, directory: str, storage: str) -> InitCheck:
        name = "snippets_dir"
        if not directory.strip():
            return InitCheck(name=name, status="missing", detail="snippets_dir not set")
        path = Path(directory)
        if not path.exists():
            return InitCheck(name=name, status="missing", detail=f"{directory} not found")
        if not path.is_dir():
            return InitCheck(name=name, status="error", detail=f"{directory} is not a directory")
        detail = f"dir={directory} storage={storage}" if storage else f"dir={directory}"
        return InitCheck(name=name, status="ok", detail=detail)

    def check_skill_bundle(self, config: HostConfig) -> InitCheck:
        name = "skill_bundle"
        installed_name = config.claude_skill_bundle_name
        installed_version = config.claude_skill_bundle_version
        manifest = None
        if self.assets_root is not None:
            try:
                manifest = read_skill_manifest(self.assets_root)
            except CLIError as e:
                logger.debug(f"Ignoring skill manifest: {e}")

        if manifest is None:
            if not installed_name and not installed_version:
                return InitCheck(name=name, status="missing", detail="skill bundle is not installed")
            if not installed_version:
                return InitCheck(name=name, status="ok", detail=f"installed name={installed_name} (version unknown)")
            return InitCheck(
                name=name,
                status="ok",
                detail=f"installed={installed_name}@{installed_version} (source manifest not available)",
            )
        expected = f"{manifest.name}@{manifest.version}"
        if not installed_name or not installed_version:
            return InitCheck(name=name, status="missing", detail=f"installed none, expected {expected}")
        installed = f"{installed_name}@{installed_version}"
        if installed == expected:
            return InitCheck(name=name, status="ok", detail=f"installed {installed}")
        return InitCheck(name=name, status="upgrade", detail=f"installed {installed}, expected {expected}")

    def check_profiles(self, state: InitState) -> InitCheck:
        if state.profiles_error is not None:
            status = "missing" if state.profiles_error.missing else "error"
            return InitCheck(name="profiles", status=status, detail=str(state.profiles_error))
        if not state.profiles:
            return InitCheck(
                name="profiles", status="missing", detail=f"no profiles found in {state.config.profiles_dir}"
            )
        names = sorted(state.profiles)
        return InitCheck(name="profiles", status="ok", detail=f"{len(names)} profiles ({', '.join(names)})")

    async def validate_templates(self, template_ids: list[int]) -> dict[int, str]:
        """Runs ``qm config`` per template. Returns ``{vmid: problem}`` (empty problem = fine)."""
        results: dict[int, str] = {}
        for vmid in template_ids:
            try:
                result = await self.runner.run(["qm", "config", str(vmid)], timeout=QM_TIMEOUT)
            except CommandError as e:
                results[vmid] = f"failed to query template VM {vmid}: {e}"
                continue
            if not result.ok:
                message = result.output.strip()
                if "does not exist" in message or "no such" in message.lower():
                    results[vmid] = f"template VM {vmid} does not exist"
                else:
                    results[vmid] = f"failed to query template VM {vmid}: {truncate_output(message)}"
                continue
            results[vmid] = validate_template_config(vmid, result.output)
        return results

    async def check_templates(self, template_ids: list[int]) -> InitCheck:
        if not template_ids:
            return InitCheck(name="templates", status="skipped", detail="no template_vmid entries")
        if self.runner.which("qm") is None:
            return InitCheck(name="templates", status="missing", detail="qm not found")
        results = await self.validate_templates(template_ids)
        failures = [f"{vmid}: {results[vmid]}" for vmid in template_ids if results[vmid]]
        if failures:
            return InitCheck(name="templates", status="error", detail="; ".join(failures))
        joined = ", ".join(str(vmid) for vmid in template_ids)
        return InitCheck(name="templates", status="ok", detail=f"templates ok ({joined})")

    async def apply(self, report: InitReport, state: InitState, options: InitOptions) -> list[InitCheck]:
        """Runs the host setup scripts for every failing check, then configures remote control.

        Raises:
            CLIError: If not running as root, or a step fails.
        """
        if os.geteuid() != 0:
            raise CLIError("agentlab init --apply must be run as root")
        if self.assets_root is None:
            raise CLIError("unable to locate agentlab assets; use --assets to specify the repo root")
        root = self.assets_root
        force_args = ["--force"] if options.force else []
        steps: list[InitCheck] = []

        if report.status_of(f"bridge_{DEFAULT_BRIDGE}") != "ok" or report.status_of("ip_forward") != "ok":
            await self._script("setup vmbr1", [str(root / "scripts/net/setup_vmbr1.sh"), "--apply", *force_args])
            steps.append(InitCheck(name="setup_vmbr1", status="ok"))
        else:
            steps.append(InitCheck(name="setup_vmbr1", status="skipped", detail="bridge already configured"))

        if report.status_of("nftables") != "ok":
            await self._script("apply nftables", [str(root / "scripts/net/apply.sh"), "--apply", *force_args])
            steps.append(InitCheck(name="apply_nftables", status="ok"))
        else:
            steps.append(InitCheck(name="apply_nftables", status="skipped", detail="nftables already configured"))

        steps.append(await self._apply_templates(root, state))

        if report.status_of("skill_bundle") == "ok" and not options.force:
            steps.append(InitCheck(name="install_skills", status="skipped", detail="skill bundle already up-to-date"))
        else:
            env = {"CLAUDE_SKILL_FORCE": "1"} if options.force else None
            await self._script(
                "install skill bundle", [str(root / "scripts/install_host.sh"), "--install-skills-only"], env=env
            )
            detail = "installed/updated skill bundle"
            try:
                manifest = read_skill_manifest(root)
            except CLIError:
                manifest = None
            if manifest is not None:
                detail = f"installed/updated {manifest.name}@{manifest.version}"
            steps.append(InitCheck(name="install_skills", status="ok", detail=detail))

        await self.apply_remote_control(options)
        steps.append(
            InitCheck(name="control_plane", status="ok", detail=f"control_listen=127.0.0.1:{options.control_port}")
        )
        return steps

    async def _apply_templates(self, root: Path, state: InitState) -> InitCheck:
        template_ids = state.template_ids
        if not template_ids:
            return InitCheck(name="create_template", status="skipped", detail="no profiles loaded")
        if self.runner.which("qm") is None:
            raise CLIError("qm not found; cannot create template")
        results = await self.validate_templates(template_ids)
        missing = []
        for vmid in template_ids:
            problem = results[vmid]
            if not problem:
                continue
            if "does not exist" in problem:
                missing.append(vmid)
                continue
            raise CLIError(f"template {vmid} invalid: {problem}")
        if not missing:
            return InitCheck(name="create_template", status="skipped", detail="template already present")
        script = str(root / "scripts/create_template.sh")
        for vmid in missing:
            await self._script(f"create template {vmid}", [script, "--vmid", str(vmid)])
        joined = ", ".join(str(vmid) for vmid in missing)
        return InitCheck(name="create_template", status="ok", detail=f"created template(s) {joined}")

    async def _script(self, description: str, args: list[str], env: dict[str, str] | None = None) -> None:
        try:
            await self.runner.check(f"command {Path(args[0]).name} failed", args, env=env)
        except CommandError as e:
            raise CLIError(f"{description} failed: {e}") from e

    async def apply_remote_control(self, options: InitOptions) -> str:
        """Writes ``control_listen``/``control_auth_token``, publishes via tailscale serve, restarts agentlabd.

        Returns:
            str: The control token now in the host config.
        """
        path = Path(self.config_path)
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            text = ""
        except OSError as e:
            raise ConfigError(f"read host config {path}: {e.strerror or e}") from e

        token = options.control_token.strip()
        if not token:
            existing = find_config_value(text, "control_auth_token")
            token = generate_token() if options.rotate_token or not existing else existing
        text, _ = upsert_config_value(text, "control_listen", f"127.0.0.1:{options.control_port}")
        text, _ = upsert_config_value(text, "control_auth_token", token)
        write_host_config_text(path, text)
        try:
            os.chown(path, 0, 0)
        except OSError as e:
            raise ConfigError(f"config must be owned by root: {e.strerror or e}") from e

        if options.tailscale_mode != "off":
            if await self.tailscale_running():
                port = options.control_port
                try:
                    await self.runner.check(
                        "tailscale serve failed",
                        ["tailscale", "serve", "--bg", f"--tcp={port}", f"tcp://127.0.0.1:{port}"],
                        timeout=PROBE_TIMEOUT,
                    )
                except CommandError as e:
                    raise CLIError(str(e)) from e
            elif options.tailscale_mode == "on":
                raise CLIError("tailscale serve requested but tailscale is not running")

        if self.runner.which("systemctl") is not None:
            try:
                await self.runner.check(
                    "systemctl restart failed", ["systemctl", "restart", "agentlabd.service"], timeout=RESTART_TIMEOUT
                )
            except CommandError as e:
                raise CLIError(str(e)) from e
        logger.info(f"Remote control configured on port {options.control_port}")
        return token

    async def smoke_test(self, state: InitState) -> InitCheck:
        """Runs ``scripts/tests/golden_path.sh`` against the first profile (sorted)."""
        if self.assets_root is None:
            raise CLIError("unable to locate agentlab assets; use --assets to specify the repo root")
        script = self.assets_root / "scripts/tests/golden_path.sh"
        if not script.exists():
            raise CLIError(f"smoke test script not found at {script}")
        profile = sorted(state.profiles)[0] if state.profiles else SMOKE_PROFILE_FALLBACK
        args = [str(script), "--profile", profile]
        if Path(self.config_path).exists():
            args += ["--config", self.config_path]
        exe_dir = str(Path(sys.argv[0]).resolve().parent)
        env = {"PATH": os.pathsep.join(p for p in (exe_dir, os.environ.get("PATH", "")) if p)}
        try:
            await self.runner.check("smoke test failed", args, env=env)
        except CommandError as e:
            raise CLIError(str(e), hints=[f"profile={profile}"]) from e
        return InitCheck(name="smoke_test", status="ok", detail=f"profile={profile}")


def _in_network(host: str, network: ipaddress.IPv4Network | ipaddress.IPv6Network) -> bool:
    try:
        return ipaddress.ip_address(host) in network
    except ValueError:
        return False


def _status_line(prefix: str, check: InitCheck) -> str:
    status = check.status.upper()
    return f"{prefix}{check.name}: {status} ({check.detail})" if check.detail else f"{prefix}{check.name}: {status}"


def render_init_report(report: InitReport, renderer: Renderer) -> None:
    if renderer.json_output:
        renderer.json(report)
        return
    renderer.line("Init checks:")
    for check in report.checks:
        renderer.line(_status_line("- ", check))
    if report.apply_steps:
        renderer.line("Apply steps:")
        for step in report.apply_steps:
            renderer.line(_status_line("- ", step))
    if report.smoke_test is not None:
        status = report.smoke_test.status.upper()
        detail = f" ({report.smoke_test.detail})" if report.smoke_test.detail else ""
        renderer.line(f"Smoke test: {status}{detail}")
    if report.connect_command:
        renderer.line(f"Connect: {report.connect_command}")
