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
from pathlib import Path
from typing import Any

import pytest

from agentlab.errors import CLIError
from agentlab.hostconfig import HostConfig
from agentlab.initcheck import (
    InitCheck,
    InitChecker,
    InitOptions,
    InitReport,
    InitState,
    ProfileLoadError,
    load_profiles,
    parse_inet_addresses,
    parse_tailscale_dns,
    render_init_report,
    serve_rule_present,
    validate_template_config,
)
from agentlab.render import Renderer

BRIDGE_OUTPUT = "5: vmbr1    inet 10.77.0.1/16 brd 10.77.255.255 scope global vmbr1\\       valid_lft forever"
TEMPLATE_CONFIG = "agent: 1\nide2: local-lvm:vm-9000-cloudinit,media=cdrom\ntemplate: 1\n"
PROFILES = "name: yolo-ephemeral\ntemplate_vmid: 9000\n---\nname: secure-small\ntemplate_vmid: 9000\n"


@pytest.fixture
def host(tmp_path: Path) -> dict[str, Path]:
    """A fake host: config, profiles, snippets and /proc under tmp_path."""
    profiles = tmp_path / "profiles"
    profiles.mkdir()
    (profiles / "defaults.yaml").write_text(PROFILES)
    snippets = tmp_path / "snippets"
    snippets.mkdir()
    proc = tmp_path / "proc"
    (proc / "sys/net/ipv4").mkdir(parents=True)
    (proc / "sys/net/ipv4/ip_forward").write_text("1\n")
    config = tmp_path / "config.yaml"
    config.write_text(
        "control_listen: 127.0.0.1:8845\n"
        "control_auth_token: tok\n"
        f"profiles_dir: {profiles}\n"
        f"snippets_dir: {snippets}\n"
        "claude_skill_bundle_name: agentlab\n"
        "claude_skill_bundle_version: 1.2.0\n"
    )
    return {"config": config, "proc": proc, "profiles": profiles}


def healthy(runner: Any) -> None:
    runner.available = {"ip", "nft", "qm"}
    runner.on("ip -4 -o addr show dev vmbr1", output=BRIDGE_OUTPUT)
    runner.on("qm config 9000", output=TEMPLATE_CONFIG)


def test_load_profiles(tmp_path: Path) -> None:
    (tmp_path / "a.yaml").write_text(PROFILES)
    (tmp_path / "b.yml").write_text("name: large\ntemplate_vmid: 9001\n")
    (tmp_path / "notes.txt").write_text("ignored")
    assert load_profiles(str(tmp_path)) == {"yolo-ephemeral": 9000, "secure-small": 9000, "large": 9001}


def test_load_profiles_errors(tmp_path: Path) -> None:
    with pytest.raises(ProfileLoadError) as excinfo:
        load_profiles(str(tmp_path / "nope"))
    assert excinfo.value.missing

    (tmp_path / "a.yaml").write_text("name: dup\ntemplate_vmid: 1\n---\nname: dup\ntemplate_vmid: 2\n")
    with pytest.raises(ProfileLoadError, match='duplicate profile name "dup"') as excinfo:
        load_profiles(str(tmp_path))
    assert not excinfo.value.missing

    (tmp_path / "a.yaml").write_text("name: x\ntemplate_vmid: 0\n")
    with pytest.raises(ProfileLoadError, match="missing template_vmid"):
        load_profiles(str(tmp_path))


def test_output_parsers() -> None:
    assert parse_inet_addresses(BRIDGE_OUTPUT + "\n6: vmbr1 inet 10.77.0.2/16 scope global") == [
        "10.77.0.1/16",
        "10.77.0.2/16",
    ]
    assert serve_rule_present("|-- tcp://127.0.0.1:8845", "127.0.0.1", 8845)
    assert serve_rule_present("TCP 8845 -> 127.0.0.1", "127.0.0.1", 8845)
    assert not serve_rule_present("tcp 88450", "127.0.0.1", 8845)

    assert parse_tailscale_dns('{"Self": {"DNSName": "pve.tail1234.ts.net."}}') == "pve.tail1234.ts.net"
    assert parse_tailscale_dns('{"Self": {"HostName": "pve"}, "MagicDNSSuffix": "tail1234.ts.net"}') == (
        "pve.tail1234.ts.net"
    )
    assert parse_tailscale_dns("not json") == ""


def test_validate_template_config() -> None:
    assert validate_template_config(9000, TEMPLATE_CONFIG) == ""
    assert "not marked as a template" in validate_template_config(9000, "agent: 1\n")
    assert "explicitly disabled" in validate_template_config(9000, "template: 1\nagent: 0\ncloudinit\n")
    assert "cloud-init drive" in validate_template_config(9000, "template: 1\nagent: 1\n")


@pytest.mark.asyncio
async def test_collect_healthy_host(runner: Any, host: dict[str, Path]) -> None:
    """A fully configured host reports every check ok plus a connect command."""
    # GIVEN a host whose probes all succeed
    healthy(runner)
    checker = InitChecker(runner, str(host["config"]), proc_root=host["proc"])

    # WHEN the checks are collected
    report, state = await checker.collect()

    # THEN the report is ok
    statuses = {check.name: check.status for check in report.checks}
    assert statuses == {
        "control_plane": "ok",
        "tailscale_serve": "skipped",
        "bridge_vmbr1": "ok",
        "ip_forward": "ok",
        "nftables": "ok",
        "snippets_dir": "ok",
        "skill_bundle": "ok",
        "profiles": "ok",
        "templates": "ok",
    }
    assert report.ok
    assert state.template_ids == [9000]
    assert report.connect_command == "agentlab connect --endpoint http://127.0.0.1:8845 --token tok"


@pytest.mark.asyncio
async def test_collect_reports_missing_pieces(runner: Any, host: dict[str, Path]) -> None:
    healthy(runner)
    runner.on("ip -4 -o addr show dev vmbr1", returncode=1, output='Device "vmbr1" does not exist.')
    (host["proc"] / "sys/net/ipv4/ip_forward").write_text("0\n")
    checker = InitChecker(runner, str(host["config"]), proc_root=host["proc"])

    report, _ = await checker.collect()

    assert not report.ok
    assert report.status_of("bridge_vmbr1") == "missing"
    assert report.status_of("ip_forward") == "missing"
    assert report.checks[3].detail == "net.ipv4.ip_forward=0"


@pytest.mark.asyncio
async def test_tailscale_serve_and_magicdns_endpoint(runner: Any, host: dict[str, Path]) -> None:
    healthy(runner)
    runner.available.add("tailscale")
    runner.on("tailscale status --json", output='{"Self": {"DNSName": "pve.tail1234.ts.net."}}')
    runner.on("tailscale serve status", output="|-- tcp://127.0.0.1:8845")
    checker = InitChecker(runner, str(host["config"]), proc_root=host["proc"])

    report, _ = await checker.collect()

    assert report.status_of("tailscale_serve") == "ok"
    assert report.connect_command == "agentlab connect --endpoint http://pve.tail1234.ts.net:8845 --token tok"


@pytest.mark.asyncio
async def test_bridge_outside_subnet(runner: Any) -> None:
    runner.on("ip -4 -o addr show", output="5: vmbr1 inet 192.168.50.1/24 scope global vmbr1")
    check = await InitChecker(runner).check_bridge("vmbr1", "", "10.77.0.0/16")
    assert check.status == "missing"
    assert check.detail == "addr=192.168.50.1/24 (outside 10.77.0.0/16)"


@pytest.mark.asyncio
async def test_nftables_checks(runner: Any) -> None:
    checker = InitChecker(runner)
    runner.available = set()
    assert (await checker.check_nftables()).status == "missing"

    runner.available = {"nft"}
    runner.on("nft list table", returncode=1, output="Error: Operation not permitted")
    check = await checker.check_nftables()
    assert check.status == "error"
    assert check.detail == "permission denied (run as root)"

    runner.on("nft list table ip agentlab_nat", returncode=1, output="Error: No such file or directory")
    runner.on("nft list table inet agentlab", returncode=0)
    check = await checker.check_nftables()
    assert check.status == "missing"
    assert check.detail.startswith("missing ip/agentlab_nat")

    runner.available.add("systemctl")
    runner.on("systemctl is-active", returncode=0)
    assert (await checker.check_nftables()).detail == "agentlab-nftables.service active"


@pytest.mark.asyncio
async def test_missing_template_is_reported(runner: Any) -> None:
    runner.available = {"qm"}
    runner.on("qm config 9000", returncode=2, output="Configuration file 'qemu-server/9000.conf' does not exist")
    check = await InitChecker(runner).check_templates([9000])
    assert check.status == "error"
    assert check.detail == "9000: template VM 9000 does not exist"

    assert (await InitChecker(runner).check_templates([])).status == "skipped"


def test_skill_bundle_upgrade(runner: Any, tmp_path: Path) -> None:
    manifest = tmp_path / "skills/agentlab/bundle/manifest.json"
    manifest.parent.mkdir(parents=True)
    manifest.write_text(json.dumps({"name": "agentlab", "version": "1.3.0"}))
    checker = InitChecker(runner, assets_root=tmp_path)

    installed = HostConfig(claude_skill_bundle_name="agentlab", claude_skill_bundle_version="1.2.0")
    check = checker.check_skill_bundle(installed)
    assert check.status == "upgrade"
    assert check.detail == "installed agentlab@1.2.0, expected agentlab@1.3.0"

    assert checker.check_skill_bundle(HostConfig()).status == "missing"


def test_profiles_check_uses_load_error(runner: Any, tmp_path: Path) -> None:
    checker = InitChecker(runner)
    state = InitState(config=HostConfig(), profiles_error=ProfileLoadError("read profiles dir x", missing=True))
    assert checker.check_profiles(state).status == "missing"
    state = InitState(config=HostConfig(), profiles={"b": 1, "a": 2})
    assert checker.check_profiles(state).detail == "2 profiles (a, b)"


@pytest.mark.asyncio
async def test_apply_requires_root(runner: Any, monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setattr("agentlab.initcheck.os.geteuid", lambda: 1000)
    checker = InitChecker(runner, assets_root=tmp_path)
    with pytest.raises(CLIError, match="must be run as root"):
        await checker.apply(InitReport(), InitState(config=HostConfig()), InitOptions())


@pytest.mark.asyncio
async def test_apply_runs_only_failing_steps(runner: Any, monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    # GIVEN root privileges and a report where only nftables is missing
    monkeypatch.setattr("agentlab.initcheck.os.geteuid", lambda: 0)
    monkeypatch.setattr("agentlab.initcheck.os.chown", lambda *args: None)
    config = tmp_path / "config.yaml"
    report = InitReport(
        checks=[
            InitCheck(name="bridge_vmbr1", status="ok"),
            InitCheck(name="ip_forward", status="ok"),
            InitCheck(name="nftables", status="missing"),
            InitCheck(name="skill_bundle", status="ok"),
        ]
    )
    checker = InitChecker(runner, str(config), assets_root=tmp_path)

    # WHEN the fixes are applied
    steps = await checker.apply(report, InitState(config=HostConfig()), InitOptions(tailscale_mode="off"))

    # THEN only the nftables script ran and remote control was configured
    assert [(s.name, s.status) for s in steps] == [
        ("setup_vmbr1", "skipped"),
        ("apply_nftables", "ok"),
        ("create_template", "skipped"),
        ("install_skills", "skipped"),
        ("control_plane", "ok"),
    ]
    assert runner.calls == [[str(tmp_path / "scripts/net/apply.sh"), "--apply"]]
    assert 'control_listen: "127.0.0.1:8845"' in config.read_text()


@pytest.mark.asyncio
async def test_remote_control_token_handling(runner: Any, monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setattr("agentlab.initcheck.os.chown", lambda *args: None)
    config = tmp_path / "config.yaml"
    checker = InitChecker(runner, str(config))

    generated = await checker.apply_remote_control(InitOptions(tailscale_mode="off"))
    assert len(generated) == 64

    kept = await checker.apply_remote_control(InitOptions(tailscale_mode="off"))
    assert kept == generated

    rotated = await checker.apply_remote_control(InitOptions(tailscale_mode="off", rotate_token=True))
    assert rotated != generated

    explicit = await checker.apply_remote_control(InitOptions(tailscale_mode="off", control_token="mine"))
    assert explicit == "mine"
    assert 'control_auth_token: "mine"' in config.read_text()


@pytest.mark.asyncio
async def test_remote_control_requires_tailscale_when_forced(
    runner: Any, monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    monkeypatch.setattr("agentlab.initcheck.os.chown", lambda *args: None)
    checker = InitChecker(runner, str(tmp_path / "config.yaml"))
    with pytest.raises(CLIError, match="tailscale is not running"):
        await checker.apply_remote_control(InitOptions(tailscale_mode="on"))


@pytest.mark.asyncio
async def test_smoke_test_uses_first_profile(runner: Any, tmp_path: Path) -> None:
    script = tmp_path / "scripts/tests/golden_path.sh"
    script.parent.mkdir(parents=True)
    script.write_text("#!/bin/sh\n")
    checker = InitChecker(runner, str(tmp_path / "missing.yaml"), assets_root=tmp_path)
    state = InitState(config=HostConfig(), profiles={"zeta": 1, "alpha": 2})

    check = await checker.smoke_test(state)
    assert check == InitCheck(name="smoke_test", status="ok", detail="profile=alpha")
    assert runner.calls == [[str(script), "--profile", "alpha"]]

    runner.on("golden_path.sh", returncode=1, output="boom")
    with pytest.raises(CLIError) as excinfo:
        await checker.smoke_test(state)
    assert excinfo.value.hints == ["profile=alpha"]


def test_render_init_report(capsys: pytest.CaptureFixture[str]) -> None:
    report = InitReport(
        checks=[
            InitCheck(name="nftables", status="ok", detail="present"),
            InitCheck(name="templates", status="skipped"),
        ],
        smoke_test=InitCheck(name="smoke_test", status="ok", detail="profile=a"),
        connect_command="agentlab connect --endpoint http://h:8845 --token t",
    )
    render_init_report(report, Renderer())
    assert capsys.readouterr().out.splitlines() == [
        "Init checks:",
        "- nftables: OK (present)",
        "- templates: SKIPPED",
        "Smoke test: OK (profile=a)",
        "Connect: agentlab connect --endpoint http://h:8845 --token t",
    ]

    render_init_report(report.finalize(), Renderer(json_output=True))
    data = json.loads(capsys.readouterr().out)
    assert data["ok"] is True
    assert "apply_steps" not in data
