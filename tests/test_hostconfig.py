# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/agentlab

import stat
from pathlib import Path

import pytest

from agentlab.errors import ConfigError
from agentlab.hostconfig import (
    HostConfig,
    find_config_value,
    listen_host,
    load_host_config,
    parse_listen_host_port,
    upsert_config_value,
    write_host_config_text,
)


def test_defaults_derive_paths() -> None:
    cfg = HostConfig(run_dir="/tmp/run", data_dir="/srv/agentlab")
    assert cfg.socket_path == "/tmp/run/agentlabd.sock"
    assert cfg.artifact_dir == "/srv/agentlab/artifacts"
    assert cfg.agent_subnet == "10.77.0.0/16"


def test_load_host_config(tmp_path: Path) -> None:
    path = tmp_path / "config.yaml"
    cfg, exists = load_host_config(path)
    assert not exists
    assert cfg.config_path == str(path)

    path.write_text('control_listen: "0.0.0.0:8845"\nagent_subnet: 10.88.0.0/16\nunknown_key: 1\nsnippets_dir: ""\n')
    cfg, exists = load_host_config(path)
    assert exists
    assert cfg.control_listen == "0.0.0.0:8845"
    assert cfg.agent_subnet == "10.88.0.0/16"
    assert cfg.snippets_dir == "/var/lib/vz/snippets"


def test_load_host_config_rejects_non_mapping(tmp_path: Path) -> None:
    path = tmp_path / "config.yaml"
    path.write_text("- a\n- b\n")
    with pytest.raises(ConfigError, match="expected a mapping"):
        load_host_config(path)


def test_find_config_value() -> None:
    text = '# control_auth_token: "old"\ncontrol_auth_token: "abc"  # set by init\nother: x\n'
    assert find_config_value(text, "control_auth_token") == "abc"
    assert find_config_value(text, "missing") == ""


def test_upsert_config_value_keeps_other_lines() -> None:
    text = "# managed\ncontrol_listen: 127.0.0.1:8845\nagent_subnet: 10.77.0.0/16\n"

    updated, changed = upsert_config_value(text, "control_listen", "0.0.0.0:8845")
    assert changed
    assert updated == '# managed\ncontrol_listen: "0.0.0.0:8845"\nagent_subnet: 10.77.0.0/16\n'

    again, changed = upsert_config_value(updated, "control_listen", "0.0.0.0:8845")
    assert not changed
    assert again == updated

    appended, changed = upsert_config_value("", "control_auth_token", 'a"b')
    assert changed
    assert appended == 'control_auth_token: "a\\"b"\n'


def test_write_host_config_text(tmp_path: Path) -> None:
    path = tmp_path / "etc" / "config.yaml"
    write_host_config_text(path, "a: 1\n")
    assert path.read_text() == "a: 1\n"
    assert stat.S_IMODE(path.stat().st_mode) == 0o600


def test_listen_helpers() -> None:
    assert listen_host("0.0.0.0:8845") == ""
    assert listen_host("100.64.0.7:8845") == "100.64.0.7"
    assert listen_host("[fd7a::1]:8845") == "fd7a::1"
    assert parse_listen_host_port("10.77.0.1:8846", 1) == ("10.77.0.1", 8846)
    assert parse_listen_host_port("garbage", 8845) == ("127.0.0.1", 8845)
    assert parse_listen_host_port("host:notaport", 8845) == ("host", 8845)
