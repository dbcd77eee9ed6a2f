#!/usr/bin/env python3
"""
@format
Dispatch node-side operations to another instance over SSM Run Command.

Remote operations are invocations of this package's own entry point on the
target (``--mode drain-node`` etc.), so the command text never carries
business logic. The caller's cluster identity travels as ``VAR=value``
assignments in front of the entry point. Each node-side operation prints
a single marker line that ``run_remote`` checks for.
"""

from __future__ import annotations

import shlex
from typing import Optional

from k8s_bootstrap.aws import CommandChannel, CommandError, CommandResult
from k8s_bootstrap.common import log_info


def build_command(entrypoint: str, mode: str, *,
                  environment: Optional[dict] = None,
                  **options: Optional[str]) -> str:
    """
    Build the shell command for a remote operation.

        >>> build_command("python3 -m k8s_bootstrap.orchestrator", "drain-node",
        ...               environment={"CLUSTER_NAME": "prod"}, node_name="ip-10-0-1-5")
        'CLUSTER_NAME=prod python3 -m k8s_bootstrap.orchestrator --mode drain-node --node-name ip-10-0-1-5'
    """
    parts = [f"{name}={shlex.quote(str(value))}"
             for name, value in (environment or {}).items()]
    parts += [entrypoint, "--mode", mode]
    for name, value in options.items():
        if value is None:
            continue
        parts += [f"--{name.replace('_', '-')}", shlex.quote(str(value))]
    return " ".join(parts)


def find_marker(stdout: str, *markers: str) -> Optional[str]:
    """Return the first output line starting with one of ``markers``."""
    for line in stdout.splitlines():
        line = line.strip()
        if any(line.startswith(marker) for marker in markers):
            return line
    return None


def run_remote(commands: CommandChannel, cfg, instance_id: str, mode: str,
               *, expect: tuple[str, ...], timeout: int = 60,
               **options: Optional[str]) -> tuple[str, CommandResult]:
    """
    Run ``mode`` on ``instance_id`` and return the matching marker line.

    Args:
        commands: Remote command channel.
        cfg: Caller's configuration; supplies the entry point and the
            cluster environment the target runs with.
        instance_id: Target instance.
        mode: ``--mode`` value to run on the target.
        expect: Marker prefixes that count as success.

    Raises:
        CommandError: If the command failed or printed none of ``expect``.
    """
    command = build_command(cfg.remote_entrypoint, mode,
                            environment=cfg.remote_environment(), **options)
    result = commands.run(instance_id, command, timeout=timeout, description=mode)
    marker = find_marker(result.stdout, *expect)
    if marker is None:
        raise CommandError(
            f"{mode} on {instance_id} did not report success",
            status=result.status,
            stdout=result.stdout,
            stderr=result.stderr,
        )
    log_info(f"Remote {mode} on {instance_id}: {marker}")
    return marker, result
