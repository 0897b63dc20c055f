# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/agentlab

"""Host-side commands: ``agentlab init`` on the Proxmox host, ``agentlab bootstrap`` from a workstation."""

import argparse
from pathlib import Path

from loguru import logger

from agentlab.assets import INIT_ASSETS, resolve_assets
from agentlab.bootstrap import DEFAULT_BOOTSTRAP_SSH_PORT, BootstrapOptions, Bootstrapper, render_bootstrap_result
from agentlab.commands.base import Command, CommonOptions, Outcome, command_parser, parse
from agentlab.config import TailscaleAdminConfig, TailscaleAdminSettings
from agentlab.constants import DEFAULT_CONTROL_PORT, DEFAULT_HOST_CONFIG_PATH
from agentlab.errors import CLIError
from agentlab.initcheck import InitChecker, InitOptions, render_init_report
from agentlab.parsing import FlagParser
from agentlab.tailscale_admin import admin_config_from_settings, merge_admin_config, parse_oauth_scopes
from agentlab.utils.logger import configure_logging

INIT_USAGE = (
    "Usage: agentlab init [--apply] [--smoke-test] [--assets <path>] [--force] [--control-port <port>] "
    "[--control-token <token>] [--rotate-control-token] [--tailscale-serve|--no-tailscale-serve]\n"
    "Note: Without --apply, only reports what is missing. --apply must run as root on the Proxmox host.\n"
    "Note: Exits non-zero when any check is missing or in error."
)
BOOTSTRAP_USAGE = (
    "Usage: agentlab bootstrap --host <[user@]host> [--ssh-user <user>] [--ssh-port <port>] [--identity <path>] "
    "[--assets <path>] [--agentlab-bin <path>] [--agentlabd-bin <path>] [--agentlab-url <url>] "
    "[--agentlabd-url <url>] [--release-url <url>] [--control-port <port>] [--control-token <token>] "
    "[--rotate-control-token] [--tailscale-serve|--no-tailscale-serve] [--tailscale-authkey <key>] "
    "[--tailscale-hostname <name>] [--tailscale-tailnet <tailnet>] [--tailscale-api-key <key>] "
    "[--tailscale-oauth-client-id <id>] [--tailscale-oauth-client-secret <secret>] "
    "[--tailscale-oauth-scopes <scopes>] [--accept-new-host-key|--known-hosts <file>] [--force] [--keep-temp] "
    "[--verbose]\n"
    "Note: Uploads local binaries from <assets>/dist when present, otherwise the host downloads release binaries.\n"
    "Note: The resulting endpoint and token are saved as the local client config."
)


def tailscale_mode(parser: FlagParser, ns: argparse.Namespace) -> str:
    if ns.tailscale_serve and ns.no_tailscale_serve:
        parser.fail("--tailscale-serve and --no-tailscale-serve are mutually exclusive")
    if ns.tailscale_serve:
        return "on"
    if ns.no_tailscale_serve:
        return "off"
    return "auto"


def add_control_flags(parser: FlagParser) -> None:
    parser.add_argument("--control-port", dest="control_port", type=int, default=DEFAULT_CONTROL_PORT)
    parser.add_argument("--control-token", dest="control_token", default="")
    parser.add_argument("--rotate-control-token", dest="rotate_control_token", action="store_true")
    parser.add_argument("--tailscale-serve", dest="tailscale_serve", action="store_true")
    parser.add_argument("--no-tailscale-serve", dest="no_tailscale_serve", action="store_true")


def init_assets_root(explicit: str, required: bool) -> Path | None:
    """Resolves the assets root; a missing root is only fatal when ``required``."""
    try:
        return resolve_assets(explicit, INIT_ASSETS)
    except CLIError as e:
        if required or explicit.strip():
            raise
        logger.debug(f"Assets not found, skill bundle checks will be limited: {e}")
        return None


async def run_init(args: list[str], opts: CommonOptions) -> Outcome:
    parser = command_parser("init", INIT_USAGE)
    parser.add_argument("--apply", action="store_true")
    parser.add_argument("--smoke-test", dest="smoke_test", action="store_true")
    parser.add_argument("--assets", default="")
    parser.add_argument("--force", action="store_true")
    add_control_flags(parser)
    ns = parse(parser, args, opts)
    if ns is None:
        return Outcome.HELP
    mode = tailscale_mode(parser, ns)
    if not 0 < ns.control_port <= 65535:
        parser.fail("control-port must be between 1 and 65535")
    if ns.control_token.strip():
        opts.secrets.append(ns.control_token.strip())

    assets_root = init_assets_root(ns.assets, ns.apply or ns.smoke_test)
    checker = InitChecker(opts.runner, DEFAULT_HOST_CONFIG_PATH, assets_root)
    report, state = await checker.collect(ns.control_port)
    if ns.apply:
        options = InitOptions(
            control_port=ns.control_port,
            control_token=ns.control_token,
            rotate_token=ns.rotate_control_token,
            tailscale_mode=mode,
            force=ns.force,
        )
        steps = await checker.apply(report, state, options)
        report, state = await checker.collect(ns.control_port)
        report.applied = True
        report.apply_steps = steps
    if ns.smoke_test:
        report.smoke_test = await checker.smoke_test(state)
    report.finalize()

    render_init_report(report, opts.renderer)
    return Outcome.OK if report.ok else Outcome.FAILED


def tailscale_admin_flags(ns: argparse.Namespace) -> TailscaleAdminConfig | None:
    if not any(
        v.strip()
        for v in (
            ns.tailscale_tailnet,
            ns.tailscale_api_key,
            ns.tailscale_oauth_client_id,
            ns.tailscale_oauth_client_secret,
            ns.tailscale_oauth_scopes,
        )
    ):
        return None
    return TailscaleAdminConfig(
        tailnet=ns.tailscale_tailnet.strip() or None,
        api_key=ns.tailscale_api_key.strip() or None,
        oauth_client_id=ns.tailscale_oauth_client_id.strip() or None,
        oauth_client_secret=ns.tailscale_oauth_client_secret.strip() or None,
        oauth_scopes=parse_oauth_scopes(ns.tailscale_oauth_scopes),
    )


async def run_bootstrap(args: list[str], opts: CommonOptions) -> Outcome:
    parser = command_parser("bootstrap", BOOTSTRAP_USAGE)
    parser.add_argument("--host", default="")
    parser.add_argument("--ssh-user", dest="ssh_user", default="root")
    parser.add_argument("--ssh-port", dest="ssh_port", type=int, default=DEFAULT_BOOTSTRAP_SSH_PORT)
    parser.add_argument("--identity", default="")
    parser.add_argument("--assets", default="")
    parser.add_argument("--agentlab-bin", dest="agentlab_bin", default="")
    parser.add_argument("--agentlabd-bin", dest="agentlabd_bin", default="")
    parser.add_argument("--agentlab-url", dest="agentlab_url", default="")
    parser.add_argument("--agentlabd-url", dest="agentlabd_url", default="")
    parser.add_argument("--release-url", dest="release_url", default="")
    add_control_flags(parser)
    parser.add_argument("--tailscale-authkey", dest="tailscale_authkey", default="")
    parser.add_argument("--tailscale-hostname", dest="tailscale_hostname", default="")
    parser.add_argument("--tailscale-tailnet", dest="tailscale_tailnet", default="")
    parser.add_argument("--tailscale-api-key", dest="tailscale_api_key", default="")
    parser.add_argument("--tailscale-oauth-client-id", dest="tailscale_oauth_client_id", default="")
    parser.add_argument("--tailscale-oauth-client-secret", dest="tailscale_oauth_client_secret", default="")
    parser.add_argument("--tailscale-oauth-scopes", dest="tailscale_oauth_scopes", default="")
    parser.add_argument("--accept-new-host-key", dest="accept_new_host_key", action="store_true")
    parser.add_argument("--known-hosts", dest="known_hosts", default="")
    parser.add_argument("--force", action="store_true")
    parser.add_argument("--keep-temp", dest="keep_temp", action="store_true")
    parser.add_argument("--verbose", action="store_true")
    ns = parse(parser, args, opts)
    if ns is None:
        return Outcome.HELP
    tailscale_mode(parser, ns)
    if not ns.host.strip():
        parser.fail("host is required")
    if ns.accept_new_host_key and ns.known_hosts.strip():
        parser.fail("--accept-new-host-key and --known-hosts are mutually exclusive")

    admin = merge_admin_config(opts.tailscale_admin, admin_config_from_settings(TailscaleAdminSettings()))
    admin = merge_admin_config(admin, tailscale_admin_flags(ns))
    options = BootstrapOptions(
        host=ns.host,
        ssh_user=ns.ssh_user.strip() or "root",
        ssh_port=ns.ssh_port,
        identity=ns.identity.strip(),
        assets_dir=ns.assets,
        agentlab_bin=ns.agentlab_bin.strip(),
        agentlabd_bin=ns.agentlabd_bin.strip(),
        agentlab_url=ns.agentlab_url.strip(),
        agentlabd_url=ns.agentlabd_url.strip(),
        release_url=ns.release_url.strip(),
        control_port=ns.control_port,
        control_token=ns.control_token.strip(),
        rotate_control_token=ns.rotate_control_token,
        tailscale_serve=ns.tailscale_serve,
        no_tailscale_serve=ns.no_tailscale_serve,
        tailscale_authkey=ns.tailscale_authkey.strip(),
        tailscale_hostname=ns.tailscale_hostname.strip(),
        tailscale_admin=admin,
        known_hosts=ns.known_hosts.strip(),
        force=ns.force,
        keep_temp=ns.keep_temp,
        verbose=ns.verbose,
        request_timeout=opts.timeout,
    )
    opts.secrets.extend(options.secrets)
    if ns.verbose:
        configure_logging("DEBUG")

    bootstrapper = Bootstrapper(
        opts.runner, options, opts.renderer, config_path=opts.config_path, transport=opts.transport
    )
    result = await bootstrapper.run()
    render_bootstrap_result(result, opts.renderer)
    return Outcome.OK


INIT = Command("init", run_init, INIT_USAGE)
BOOTSTRAP = Command("bootstrap", run_bootstrap, BOOTSTRAP_USAGE)
