# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/agentlab

"""Diagnostic bundle download shared by ``job``, ``sandbox`` and ``session doctor``."""

from collections.abc import Callable

from loguru import logger

from agentlab.api import APIClient
from agentlab.artifacts import resolve_artifact_out_path, stream_to_file
from agentlab.commands.base import CommonOptions, Enricher, Outcome, enrich_api_errors
from agentlab.endpoint import endpoint_path
from agentlab.parsing import slugify

COLLECTIONS = {"job": "jobs", "sandbox": "sandboxes", "session": "sessions"}


def doctor_bundle_name(kind: str, ident: str) -> str:
    return f"agentlab-doctor-{kind}-{slugify(ident) or kind}.tar.gz"


async def write_doctor_bundle(
    opts: CommonOptions, kind: str, ident: str, out: str, enrich: Callable[[APIClient], Enricher]
) -> Outcome:
    """POSTs ``/v1/<kind>s/<id>/doctor`` and streams the tarball to disk.

    Args:
        opts: Common options (client, output mode).
        kind: ``job``, ``sandbox`` or ``session``.
        ident: Resource id (or name for sessions).
        out: ``--out`` value; a directory gets the default bundle name joined on.
        enrich: Builds the not-found rewriter for ``kind`` from the open client.
    """
    target = resolve_artifact_out_path(out, doctor_bundle_name(kind, ident))
    path = endpoint_path("v1", COLLECTIONS[kind], ident, "doctor")
    async with opts.client() as client, enrich_api_errors(enrich(client)):
        async with client.stream("POST", path) as response:
            size = await stream_to_file(response, target)
    logger.info(f"Doctor bundle for {kind} {ident} written to {target}")

    renderer = opts.renderer
    if renderer.json_output:
        renderer.json({"kind": kind, "id": ident, "out": str(target), "size_bytes": size})
    else:
        renderer.line(f"wrote doctor bundle to {target}")
    return Outcome.OK
