#!/usr/bin/env python3
"""
@format
Common utilities for the control-plane lifecycle code.

Provides structured JSON logging, subprocess execution, timestamp helpers
and step status reporting used by the node state machine, the rotation
manager and the event-driven handlers.

Usage:
    from k8s_bootstrap.common import StepRunner, run_cmd, log_info
"""

from __future__ import annotations

import json
import logging
import os
import subprocess
import sys
import time
import uuid
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional, Union


# =============================================================================
# Configuration
# =============================================================================

STATUS_FILE = Path(os.environ.get("STATUS_FILE", "/tmp/bootstrap-status.json"))
TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%SZ"
LOGGER_NAME = "k8s-bootstrap"


# =============================================================================
# Structured Logging
# =============================================================================

_STANDARD_ATTRS = frozenset({
    "name", "msg", "args", "created", "filename", "funcName", "levelname",
    "levelno", "lineno", "module", "msecs", "pathname", "process",
    "processName", "relativeCreated", "stack_info", "exc_info", "exc_text",
    "thread", "threadName", "message", "taskName", "fields",
})

# Lambda invocation context, set by setup_logging()
_context: dict = {"request_id": None, "function_name": None, "trace_id": None}


class JsonFormatter(logging.Formatter):
    """Render log records as single-line JSON documents.

    Each record carries timestamp, level, message and logger name, the
    invocation context set by ``setup_logging`` and any structured fields
    passed through ``extra``.
    """

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }
        for key, value in _context.items():
            if value is not None:
                entry[key] = value

        extra = dict(getattr(record, "fields", None) or {})
        for key, value in record.__dict__.items():
            if key not in _STANDARD_ATTRS and not key.startswith("_"):
                extra[key] = value
        for key, value in extra.items():
            try:
                json.dumps(value)
                entry[key] = value
            except (TypeError, ValueError):
                entry[key] = str(value)

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry)


def setup_logging(context=None, trace_id: Optional[str] = None,
                  level: int = logging.INFO) -> logging.Logger:
    """
    Configure the package logger for JSON output on stdout.

    Args:
        context: Lambda context object. When given, request_id and
            function_name are attached to every record.
        trace_id: Correlation id; a 16-char hex id is generated when omitted.
        level: Minimum log level.

    Returns:
        The configured package logger.
    """
    if context is not None:
        _context["request_id"] = getattr(context, "aws_request_id", None)
        _context["function_name"] = getattr(context, "function_name", None)
    _context["trace_id"] = trace_id or uuid.uuid4().hex[:16]

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(level)
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())
    logger.addHandler(handler)
    logger.propagate = False
    return logger


log = logging.getLogger(LOGGER_NAME)


def log_info(message: str, **kwargs) -> None:
    log.info(message, extra={"fields": kwargs})


def log_warn(message: str, **kwargs) -> None:
    log.warning(message, extra={"fields": kwargs})


def log_error(message: str, **kwargs) -> None:
    log.error(message, extra={"fields": kwargs})


# =============================================================================
# Timestamps
# =============================================================================

def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(moment: datetime) -> str:
    """Format an aware datetime as the UTC ISO-8601 form stored in SSM/DynamoDB."""
    return moment.astimezone(timezone.utc).strftime(TIMESTAMP_FORMAT)


def utc_now_iso() -> str:
    return format_timestamp(utc_now())


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """
    Parse a stored UTC timestamp. Returns None for missing or malformed values.

    Accepts the canonical ``%Y-%m-%dT%H:%M:%SZ`` form as well as full
    ``isoformat()`` output with fractional seconds or an explicit offset.
    """
    if not value:
        return None
    text = value.strip()
    try:
        parsed = datetime.strptime(text, TIMESTAMP_FORMAT)
        return parsed.replace(tzinfo=timezone.utc)
    except ValueError:
        pass
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


# =============================================================================
# Command Execution
# =============================================================================

@dataclass
class CmdResult:
    """Result of a subprocess execution."""
    returncode: int
    stdout: str
    stderr: str
    command: str
    duration_seconds: float

    @property
    def ok(self) -> bool:
        return self.returncode == 0


def run_cmd(
    cmd: Union[List[str], str],
    *,
    shell: bool = False,
    check: bool = True,
    timeout: int = 300,
    env: Optional[dict] = None,
    capture: bool = True,
    redact: bool = False,
) -> CmdResult:
    """
    Execute a command with structured logging and timing.

    Args:
        cmd: Command as list of args or string (if shell=True).
        shell: Run through shell interpreter.
        check: Raise on non-zero exit code.
        timeout: Seconds before killing the process.
        env: Additional environment variables (merged with os.environ).
        capture: Capture stdout/stderr (False to stream live).
        redact: Log only the executable name (command carries secrets).

    Returns:
        CmdResult with exit code, output, and timing.

    Raises:
        subprocess.CalledProcessError: If check=True and command fails.
        subprocess.TimeoutExpired: If the command runs past ``timeout``.
    """
    cmd_str = cmd if isinstance(cmd, str) else " ".join(cmd)
    if redact:
        cmd_str = (cmd.split()[0] if isinstance(cmd, str) else cmd[0]) + " <redacted>"
    log_info(f"Running: {cmd_str}")

    merged_env = {**os.environ, **(env or {})}
    start = time.monotonic()

    try:
        result = subprocess.run(
            cmd,
            shell=shell,
            capture_output=capture,
            text=True,
            timeout=timeout,
            env=merged_env,
        )
    except subprocess.TimeoutExpired:
        log_error(f"Command timed out after {timeout}s", command=cmd_str)
        raise

    duration = time.monotonic() - start

    cmd_result = CmdResult(
        returncode=result.returncode,
        stdout=result.stdout if capture else "",
        stderr=result.stderr if capture else "",
        command=cmd_str,
        duration_seconds=round(duration, 2),
    )

    if result.returncode != 0:
        log_error(
            f"Command failed (exit {result.returncode})",
            command=cmd_str,
            duration=cmd_result.duration_seconds,
            stderr=cmd_result.stderr[:500] if capture else "",
        )
        if check:
            raise subprocess.CalledProcessError(
                result.returncode, cmd_str,
                output=result.stdout, stderr=result.stderr,
            )
    else:
        log_info(
            "Command succeeded",
            command=cmd_str,
            duration=cmd_result.duration_seconds,
        )

    return cmd_result


# =============================================================================
# Step Status Reporting
# =============================================================================

@dataclass
class StepStatus:
    """Status of a single bootstrap stage."""
    step_name: str
    status: str  # "running", "success", "failed"
    started_at: str = ""
    completed_at: str = ""
    duration_seconds: float = 0.0
    error: str = ""
    details: dict = field(default_factory=dict)


def write_status(statuses: list[StepStatus], path: Optional[Path] = None) -> None:
    """Write stage statuses to the status file (JSON)."""
    data = {
        "updated_at": utc_now().isoformat(),
        "steps": [asdict(s) for s in statuses],
    }
    target = Path(path) if path else STATUS_FILE
    try:
        target.write_text(json.dumps(data, indent=2))
    except OSError as exc:
        log_warn(f"Could not write status file {target}: {exc}")


# =============================================================================
# Step Runner
# =============================================================================

class StepRunner:
    """
    Context manager for running a bootstrap stage with timing and status reporting.

    Usage:
        with StepRunner("join") as step:
            # ... stage logic ...
            step.details["endpoint"] = endpoint

        # On success: step.status.status == "success"
        # On exception: step.status.status == "failed", error recorded
    """

    def __init__(self, step_name: str):
        self.step_name = step_name
        self._status = StepStatus(step_name=step_name, status="running")
        self._start_time = 0.0
        self.details: dict = {}

    def __enter__(self):
        log_info(f"=== Starting step: {self.step_name} ===")
        self._status.started_at = utc_now().isoformat()
        self._start_time = time.monotonic()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        duration = time.monotonic() - self._start_time
        self._status.duration_seconds = round(duration, 2)
        self._status.completed_at = utc_now().isoformat()
        self._status.details = self.details

        if exc_type is not None:
            self._status.status = "failed"
            self._status.error = str(exc_val)
            log_error(
                f"Step '{self.step_name}' FAILED in {duration:.1f}s",
                error=str(exc_val),
            )
            return False

        self._status.status = "success"
        log_info(f"Step '{self.step_name}' completed in {duration:.1f}s")
        return False

    @property
    def status(self) -> StepStatus:
        return self._status
