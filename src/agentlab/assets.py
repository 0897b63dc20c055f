# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/agentlab

"""Locating the agentlab repo checkout that holds host scripts and skills."""

import json
import sys
from collections.abc import Sequence
from pathlib import Path

from pydantic import BaseModel, ValidationError

from agentlab.errors import CLIError

INIT_ASSETS = (
    "scripts/net/setup_vmbr1.sh",
    "scripts/net/apply.sh",
    "scripts/create_template.sh",
)
BOOTSTRAP_ASSETS = (
    "scripts/install_host.sh",
    "scripts/net/setup_vmbr1.sh",
    "scripts/net/apply.sh",
    "skills/agentlab",
)
SKILL_MANIFEST = "skills/agentlab/bundle/manifest.json"


class SkillBundleManifest(BaseModel):
    name: str
    version: str


def has_assets(root: Path, required: Sequence[str]) -> bool:
    return all((root / rel).exists() for rel in required)


def find_assets_upward(start: Path, required: Sequence[str]) -> Path | None:
    """Walks from ``start`` to the filesystem root looking for ``required``."""
    current = start.resolve()
    for candidate in (current, *current.parents):
        if has_assets(candidate, required):
            return candidate
    return None


def resolve_assets(explicit: str, required: Sequence[str]) -> Path:
    """Returns the assets root from ``--assets``, the working directory, or the executable.

    Raises:
        CLIError: If no directory holds every ``required`` path.
    """
    if explicit.strip():
        root = Path(explicit).expanduser().resolve()
        if has_assets(root, required):
            return root
        raise CLIError(f"assets not found at {root}", hints=[f"expected {', '.join(required)}"])
    for start in (Path.cwd(), Path(sys.argv[0]).resolve().parent):
        root = find_assets_upward(start, required)
        if root is not None:
            return root
    raise CLIError(
        "unable to locate agentlab assets; use --assets to specify the repo root",
        hints=[f"expected {', '.join(required)}"],
    )


def read_skill_manifest(root: Path) -> SkillBundleManifest | None:
    """Reads the skill bundle manifest under ``root``; None when absent.

    Raises:
        CLIError: If the manifest exists but lacks a name or version.
    """
    path = root / SKILL_MANIFEST
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return None
    except (OSError, ValueError) as e:
        raise CLIError(f"read skill manifest {path}: {e}") from e
    try:
        manifest = SkillBundleManifest.model_validate(data)
    except ValidationError as e:
        raise CLIError(f"manifest {path} is invalid: {e.error_count()} field(s)") from e
    manifest.name = manifest.name.strip()
    manifest.version = manifest.version.strip()
    if not manifest.name:
        raise CLIError(f"manifest missing name in {path}")
    if not manifest.version:
        raise CLIError(f"manifest missing version in {path}")
    return manifest
