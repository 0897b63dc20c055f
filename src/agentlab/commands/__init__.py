# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/agentlab

"""
Command registry: top-level verbs mapped to handlers or subcommand groups.
"""

from agentlab.commands import connect, host, job, logs, msg, profile, sandbox, session, ssh, status, workspace
from agentlab.commands.base import Command, CommandGroup, CommonOptions, Outcome, dispatch

GLOBAL_FLAGS = "[--endpoint URL] [--token TOKEN] [--socket PATH] [--json] [--timeout DURATION]"

USAGE = f"""agentlab is the CLI for agentlabd.

Usage:
  agentlab --version
  agentlab {GLOBAL_FLAGS} <command> [args]

Commands:
  status        Show sandbox and job counts, artifact usage and recent failures
  job           Run jobs, validate plans, inspect results and download artifacts
  sandbox       Create, inspect and manage sandbox VMs, leases and exposures
  workspace     Manage persistent workspace volumes and their snapshots
  session       Manage named sessions that pair a workspace with a profile
  profile       List configured sandbox profiles
  msg           Post to and tail the messagebox of a job, workspace or session
  ssh           Print (or exec) the SSH command for a sandbox
  logs          Show and follow sandbox events
  connect       Save a remote control endpoint and token
  disconnect    Remove the saved client config
  init          Check (and with --apply, fix) Proxmox host readiness
  bootstrap     Provision a Proxmox host over SSH and connect to it

Global Flags:
  --endpoint URL        Control plane HTTP endpoint (http(s)://host:port)
  --token TOKEN         Control plane auth token (Authorization: Bearer)
  --socket PATH         Path to agentlabd socket (default /run/agentlab/agentlabd.sock)
  --json                Output JSON instead of formatted text
  --timeout DURATION    Request timeout (e.g. 30s, 2m; default 10m)
  --version             Print version and exit

Errors:
  Failures print "Error:" with optional "Next:" and "Hint:" lines on stderr.
  With --json, errors are a JSON object {{"error", "next", "hints"}} on stdout.

Exit codes:
  0    success
  1    failure
  2    usage error
  3    help requested with --json
  130  interrupted

Run "agentlab <command> --help" for command usage."""

REGISTRY = CommandGroup(
    "",
    USAGE,
    [
        status.COMMAND,
        job.GROUP,
        sandbox.GROUP,
        workspace.GROUP,
        session.GROUP,
        profile.GROUP,
        msg.GROUP,
        ssh.COMMAND,
        logs.COMMAND,
        connect.CONNECT,
        connect.DISCONNECT,
        host.INIT,
        host.BOOTSTRAP,
    ],
)

__all__ = ["REGISTRY", "USAGE", "Command", "CommandGroup", "CommonOptions", "Outcome", "dispatch"]
