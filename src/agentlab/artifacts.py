# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/agentlab

import os
from collections.abc import Sequence
from pathlib import Path

import aiofiles
import anyio
import httpx
from loguru import logger

from agentlab.api import APIClient
from agentlab.constants import ARTIFACT_BUNDLE_NAME
from agentlab.endpoint import endpoint_path
from agentlab.errors import CLIError, TransportError, UsageError
from agentlab.models import Artifact

DEFAULT_ARTIFACT_NAME = "artifact"
DOWNLOAD_FILE_MODE = 0o644
LIST_HINT = "list artifacts with agentlab job artifacts <id>"


def select_artifact(
    artifacts: Sequence[Artifact],
    path: str = "",
    name: str = "",
    latest: bool = False,
    bundle: bool = False,
    job_id: str = "",
) -> Artifact:
    """Picks one artifact from a job's list (ordered by creation).

    Precedence: ``path`` (exact), ``name`` (exact, last match), ``bundle``
    (the canonical bundle, else the last artifact), ``latest`` (the last
    artifact). With no selector the bundle rule applies.

    Raises:
        UsageError: If both ``path`` and ``name`` are given, or ``name`` holds a separator.
        CLIError: If nothing matches.
    """
    path = path.strip()
    name = name.strip()
    if path and name:
        raise UsageError("path and name are mutually exclusive")
    if not artifacts:
        suffix = f" for job {job_id}" if job_id else ""
        raise CLIError(f"no artifacts found{suffix}")
    if path:
        for artifact in artifacts:
            if artifact.path.strip() == path:
                return artifact
        raise CLIError(f'artifact path "{path}" not found', hints=[LIST_HINT])
    if name:
        if "/" in name or "\\" in name:
            raise UsageError("artifact name must not contain path separators")
        matches = [a for a in artifacts if a.name == name]
        if not matches:
            raise CLIError(f'artifact name "{name}" not found', hints=[LIST_HINT])
        return matches[-1]
    if bundle or not latest:
        bundles = [a for a in artifacts if a.name == ARTIFACT_BUNDLE_NAME]
        if bundles:
            return bundles[-1]
    return artifacts[-1]


def resolve_artifact_out_path(out: str, name: str) -> Path:
    """Decides where a download lands.

    An empty ``out`` uses ``name`` in the working directory. An ``out`` ending
    in a separator, or naming an existing directory, gets ``name`` joined onto
    it. Anything else is used literally, with parent directories created.
    """
    name = name.strip() or DEFAULT_ARTIFACT_NAME
    out = out.strip()
    if not out:
        return Path(name)
    if out.endswith(os.sep) or (os.altsep and out.endswith(os.altsep)):
        os.makedirs(out, mode=0o750, exist_ok=True)
        return Path(out) / name
    target = Path(out)
    if target.is_dir():
        return target / name
    if target.parent != Path("."):
        target.parent.mkdir(mode=0o750, parents=True, exist_ok=True)
    return target


def _open_download(path: str, flags: int) -> int:
    return os.open(path, flags, DOWNLOAD_FILE_MODE)


async def stream_to_file(response: httpx.Response, out: Path) -> int:
    """Copies a streaming response body into ``out`` and fsyncs it.

    The file is opened with ``O_CREAT|O_WRONLY|O_TRUNC`` and mode 0644. A
    failed copy leaves the partial file in place.

    Returns:
        int: Bytes written.
    """
    written = 0
    try:
        async with aiofiles.open(out, "wb", opener=_open_download) as f:
            async for chunk in response.aiter_bytes():
                await f.write(chunk)
                written += len(chunk)
            await f.flush()
            await anyio.to_thread.run_sync(os.fsync, f.fileno())
    except httpx.HTTPError as e:
        raise TransportError(f"download to {out} interrupted after {written} bytes: {e}") from e
    except OSError as e:
        raise CLIError(f"write {out}: {e.strerror or e}") from e
    logger.debug(f"Wrote {written} bytes to {out}")
    return written


async def list_artifacts(client: APIClient, job_id: str) -> list[Artifact]:
    data = await client.request_json("GET", endpoint_path("v1", "jobs", job_id, "artifacts"))
    raw = data.get("artifacts") if isinstance(data, dict) else None
    return [APIClient.validate(item, Artifact, "artifacts") for item in raw or []]


async def download_artifact(client: APIClient, job_id: str, artifact: Artifact, out: str) -> tuple[Path, int]:
    """Streams ``artifact`` of ``job_id`` to the path chosen by :func:`resolve_artifact_out_path`."""
    target = resolve_artifact_out_path(out, artifact.name)
    path = endpoint_path("v1", "jobs", job_id, "artifacts", "download")
    async with client.stream("GET", path, query={"path": artifact.path}) as response:
        size = await stream_to_file(response, target)
    return target, size
