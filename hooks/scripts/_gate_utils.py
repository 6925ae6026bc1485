#!/usr/bin/env python3
"""Shared utilities for the task-scope gate hooks.

This module provides what every gate component needs:
- Constants and environment configuration (paths, tuning knobs)
- Error taxonomy
- Diagnostic logging (gate.log, text, rotated)
- Structured audit logging (state-audit.log, JSON lines, rotated)
- ReDoS-safe regex search
- Hook response helpers

# Path resolution chain for the worktree root:
#   1. $SDD_WORKTREE_ROOT
#   2. $CLAUDE_PROJECT_DIR
#   3. current working directory

Usage:
    from _gate_utils import (
        get_worktree_root,
        get_state_dir,
        log_gate,
        append_audit,
        deny_response,
    )

Note on log_gate() and append_audit():
    - Silent fail on file write errors
    - This is intentional to avoid breaking hooks on logging issues

Design Principles:
    1. Security-First: Fail-close on security-critical errors (malformed input,
       malformed policy, unresolvable paths)
       Fail-open on non-critical errors (logging)
    2. Every env knob has a hardcoded default; absence never crashes
"""

import json
import os
import re
import socket
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

# ============================================================
# ReDoS Defense: Optional regex module for timeout support
# ============================================================

try:
    import regex as _regex_module

    _HAS_REGEX_TIMEOUT = True
except ImportError:
    _regex_module = None
    _HAS_REGEX_TIMEOUT = False

# ============================================================
# Constants
# ============================================================

MAX_COMMAND_LENGTH = 100_000
"""Maximum command length before it is treated as destructive (fail-closed)."""

MAX_PATH_PREVIEW_LENGTH = 60
"""Maximum path length for log display. Paths longer than this are truncated."""

MAX_COMMAND_PREVIEW_LENGTH = 80
"""Maximum command length for log display. Commands longer than this are truncated."""

MAX_LOG_SIZE_BYTES = 1_000_000
"""Maximum diagnostic log size before rotation (1 MB)."""

REGEX_TIMEOUT_SECONDS = 0.5
"""Default timeout for regex operations to prevent ReDoS."""

DEFAULT_STATE_DIR = ".opencode/state"
DEFAULT_TASKS_PATH = "specs/tasks.md"
DEFAULT_POLICY_PATH = ".opencode/policy.json"
DEFAULT_SPEC_DIR = ".kiro"
TASK_LIST_FILENAME = "tasks.md"

STATE_FILENAME = "current_context.json"
GUARD_MODE_FILENAME = "guard-mode.json"
LOCK_DIRNAME = ".lock"
LOCK_INFO_FILENAME = ".lock-info.json"
HMAC_KEY_FILENAME = "state-hmac.key"
AUDIT_LOG_FILENAME = "state-audit.log"
DIAGNOSTIC_LOG_FILENAME = "gate.log"

DEFAULT_LOCK_RETRIES = 10
DEFAULT_LOCK_STALE_MS = 30_000
DEFAULT_LOCK_BACKOFF_MS = 50
DEFAULT_AUDIT_LOG_MAX_BYTES = 1_000_000
DEFAULT_AUDIT_LOG_BACKUPS = 2
BACKUP_GENERATIONS = 3

_SECRET_ENV_MARKERS = ("TOKEN", "KEY", "SECRET", "PASSWORD")
_MIN_MASKED_SECRET_LENGTH = 6


# ============================================================
# Error Taxonomy
# ============================================================


class GateError(Exception):
    """Base class for all gate errors."""


class ConfigInvalid(GateError):
    """Policy document contains an entry that would weaken the gate."""


class LockBusy(GateError):
    """State directory lock could not be acquired within the retry budget."""


class StateCorrupted(GateError):
    """Persisted state failed parsing, schema or integrity checks.

    Attributes:
        kind: One of "parse", "schema" or "hash".
        code: Optional machine code (e.g. TASKS_HASH_MISMATCH).
    """

    def __init__(self, message: str, kind: str = "parse", code: str | None = None):
        super().__init__(message)
        self.kind = kind
        self.code = code


class PathValidationError(GateError):
    """Path rejected by containment validation."""

    code = "E_INVALID_PATH"

    def __init__(self, message: str, path: str = ""):
        super().__init__(message)
        self.path = path


class PathTraversal(PathValidationError):
    """Path escapes its base directory."""

    code = "E_PATH_TRAVERSAL"


class InvalidPath(PathValidationError):
    """Path is malformed (null byte, unresolvable)."""

    code = "E_INVALID_PATH"


class PathResolutionError(InvalidPath):
    """Permission error or symlink loop while resolving a path."""


class InvalidArguments(GateError):
    """Caller passed arguments outside the accepted domain."""


# ============================================================
# Environment Configuration
# ============================================================


def _env_int(name: str, default: int, minimum: int = 0) -> int:
    """Read a non-negative integer from the environment.

    Unparseable or out-of-range values fall back to the default with a warning.
    """
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        log_gate("WARN", f"Ignoring non-integer {name}={raw!r}, using {default}")
        return default
    if value < minimum:
        log_gate("WARN", f"Ignoring out-of-range {name}={value}, using {default}")
        return default
    return value


def get_worktree_root() -> Path:
    """Get the worktree root directory.

    Resolution: SDD_WORKTREE_ROOT, then CLAUDE_PROJECT_DIR, then cwd.
    Directories that do not exist are skipped.

    Returns:
        Absolute worktree root path.
    """
    # Note: Cannot call log_gate() here - log_gate() resolves the state dir
    # which depends on this function.
    for name in ("SDD_WORKTREE_ROOT", "CLAUDE_PROJECT_DIR"):
        value = os.environ.get(name, "")
        if value and os.path.isdir(value):
            return Path(os.path.abspath(value))
    return Path(os.getcwd())


def _resolve_under_root(value: str, default: str) -> Path:
    path = Path(os.path.expanduser(value or default))
    if not path.is_absolute():
        path = get_worktree_root() / path
    return path


def get_state_dir() -> Path:
    """Directory holding state, guard mode, lock, key and logs."""
    return _resolve_under_root(os.environ.get("SDD_STATE_DIR", ""), DEFAULT_STATE_DIR)


def get_tasks_path() -> Path:
    """Path of the external task document whose hash is bound into state."""
    return _resolve_under_root(os.environ.get("SDD_TASKS_PATH", ""), DEFAULT_TASKS_PATH)


def get_policy_path() -> Path:
    return _resolve_under_root(os.environ.get("SDD_POLICY_PATH", ""), DEFAULT_POLICY_PATH)


def get_plugin_root() -> str:
    """Plugin root directory from CLAUDE_PLUGIN_ROOT, or empty string."""
    return os.environ.get("CLAUDE_PLUGIN_ROOT", "")


def get_spec_dir() -> str:
    """Worktree-relative spec tree prefix, without trailing slash."""
    value = os.environ.get("SDD_SPEC_DIR", "").strip() or DEFAULT_SPEC_DIR
    return value.replace("\\", "/").strip("/") or DEFAULT_SPEC_DIR


def get_lock_retries() -> int:
    return _env_int("SDD_LOCK_RETRIES", DEFAULT_LOCK_RETRIES)


def get_lock_stale_seconds() -> float:
    return _env_int("SDD_LOCK_STALE", DEFAULT_LOCK_STALE_MS, minimum=1) / 1000.0


def get_lock_backoff_seconds() -> float:
    return _env_int("SDD_LOCK_BACKOFF_MS", DEFAULT_LOCK_BACKOFF_MS, minimum=1) / 1000.0


def is_debug() -> bool:
    return os.environ.get("SDD_DEBUG", "").lower() in ("1", "true", "yes")


def current_owner() -> tuple[int, str]:
    """Return (pid, host) identifying this process in lock records."""
    try:
        host = socket.gethostname()
    except OSError:
        host = "unknown"
    return os.getpid(), host


def utc_timestamp() -> str:
    """UTC ISO-8601 timestamp with millisecond precision and Z suffix."""
    now = datetime.now(timezone.utc)
    return now.isoformat(timespec="milliseconds").replace("+00:00", "Z")


# ============================================================
# Safe Regex with Timeout Defense (ReDoS Prevention)
# ============================================================


def safe_regex_search(
    pattern: str,
    text: str,
    flags: int = 0,
    timeout: float = REGEX_TIMEOUT_SECONDS,
) -> "re.Match | None":
    """Regex search with timeout defense against ReDoS.

    Uses the `regex` module with a timeout when installed, otherwise the
    standard `re` module (warning logged once).

    Args:
        pattern: Regular expression pattern.
        text: Text to search.
        flags: Regex flags (re.IGNORECASE, etc.).
        timeout: Timeout in seconds (default: REGEX_TIMEOUT_SECONDS).

    Returns:
        Match object if found, None otherwise (including on timeout).
    """
    try:
        if _HAS_REGEX_TIMEOUT and _regex_module is not None:
            try:
                return _regex_module.search(pattern, text, flags, timeout=timeout)
            except Exception as e:
                exc_name = type(e).__name__.lower()
                exc_msg = str(e).lower()
                if "timeout" in exc_name or "timed out" in exc_msg:
                    log_gate("WARN", f"Regex timeout ({timeout}s) for pattern: {pattern[:50]}...")
                    return None
                raise

        if not getattr(safe_regex_search, "_warned_no_timeout", False):
            log_gate(
                "WARN",
                "No regex timeout defense available. "
                "Install 'regex' package for ReDoS defense: pip install regex",
            )
            safe_regex_search._warned_no_timeout = True

        return re.search(pattern, text, flags)

    except re.error as e:
        log_gate("WARN", f"Invalid regex pattern '{pattern[:50]}...': {e}")
        return None
    except Exception as e:
        log_gate("WARN", f"Unexpected regex error: {e}")
        return None


# ============================================================
# Logging with Rotation
# ============================================================


def _log_generation(log_file: Path, index: int) -> Path:
    return log_file.with_name(f"{log_file.name}.{index}")


def _rotate_log_if_needed(log_file: Path, max_bytes: int, keep: int) -> None:
    """Rotate a log file once it exceeds max_bytes.

    Rotation strategy:
    - `<log>.N-1` -> `<log>.N` ... `<log>` -> `<log>.1`
    - The oldest generation beyond `keep` is discarded
    - Silent fail on any error (non-critical operation)
    """
    try:
        if not log_file.exists() or log_file.stat().st_size < max_bytes:
            return
        if keep <= 0:
            log_file.unlink()
            return
        oldest = _log_generation(log_file, keep)
        if oldest.exists():
            oldest.unlink()
        for index in range(keep - 1, 0, -1):
            src = _log_generation(log_file, index)
            if src.exists():
                os.replace(src, _log_generation(log_file, index + 1))
        os.replace(log_file, _log_generation(log_file, 1))
    except Exception:
        # Silent fail - rotation is non-critical
        pass


def mask_secrets(text: str) -> str:
    """Redact secret-looking environment values and shorten the home dir."""
    for name, value in os.environ.items():
        upper = name.upper()
        if len(value) < _MIN_MASKED_SECRET_LENGTH:
            continue
        if any(marker in upper for marker in _SECRET_ENV_MARKERS) and value in text:
            text = text.replace(value, "[REDACTED]")
    home = os.path.expanduser("~")
    if home not in ("~", "/"):
        text = text.replace(home, "~")
    return text


def log_gate(level: str, message: str) -> None:
    """Log a diagnostic line to <state dir>/gate.log.

    Log format:
        TIMESTAMP [LEVEL] MESSAGE

    Features:
    - DEBUG lines only written when SDD_DEBUG is set
    - Secrets from *TOKEN*/*KEY*/*SECRET*/*PASSWORD* env vars are redacted
    - Keeps one backup file (.log.1)
    - Silent fail on any error - never breaks hook execution

    Args:
        level: Log level (DEBUG, INFO, WARN, ERROR, BLOCK, ALLOW)
        message: Message to log.
    """
    if level == "DEBUG" and not is_debug():
        return

    try:
        log_file = get_state_dir() / DIAGNOSTIC_LOG_FILENAME
        timestamp = datetime.now().isoformat(timespec="seconds")
        line = f"{timestamp} [{level}] {mask_secrets(message)}\n"

        log_file.parent.mkdir(parents=True, exist_ok=True)
        _rotate_log_if_needed(log_file, MAX_LOG_SIZE_BYTES, 1)

        with open(log_file, "a", encoding="utf-8") as f:
            f.write(line)
    except Exception:
        # Silent fail - don't break hook on log error
        pass


def append_audit(event: str, message: str, **fields: Any) -> None:
    """Append one structured audit entry to <state dir>/state-audit.log.

    Each entry is a single JSON object line carrying at least `event`,
    `message`, `timestamp` and `pid`, plus any extra keyword fields.
    The log rotates past SDD_AUDIT_LOG_MAX_BYTES keeping
    SDD_AUDIT_LOG_BACKUPS generations.

    Never raises: an unwritable audit log must not break the caller.
    """
    try:
        audit_file = get_state_dir() / AUDIT_LOG_FILENAME
        entry: dict[str, Any] = {
            "timestamp": utc_timestamp(),
            "event": event,
            "message": mask_secrets(message),
            "pid": os.getpid(),
        }
        for key, value in fields.items():
            if key not in entry:
                entry[key] = value

        audit_file.parent.mkdir(parents=True, exist_ok=True)
        _rotate_log_if_needed(
            audit_file,
            _env_int("SDD_AUDIT_LOG_MAX_BYTES", DEFAULT_AUDIT_LOG_MAX_BYTES, minimum=1),
            _env_int("SDD_AUDIT_LOG_BACKUPS", DEFAULT_AUDIT_LOG_BACKUPS),
        )

        with open(audit_file, "a", encoding="utf-8") as f:
            f.write(json.dumps(entry, ensure_ascii=False, default=str) + "\n")
    except Exception as e:
        log_gate("WARN", f"Audit write failed for {event}: {type(e).__name__}: {e}")


def read_audit_entries() -> list[dict[str, Any]]:
    """Return parsed entries of the current audit log (unparseable lines skipped)."""
    audit_file = get_state_dir() / AUDIT_LOG_FILENAME
    entries = []
    try:
        with open(audit_file, encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    entries.append(json.loads(line))
                except json.JSONDecodeError:
                    continue
    except FileNotFoundError:
        return []
    return entries


# ============================================================
# Display Helpers
# ============================================================


def truncate_path(path: str, max_length: int = MAX_PATH_PREVIEW_LENGTH) -> str:
    """Truncate path for display in logs, keeping the end."""
    if len(path) <= max_length:
        return path
    return f"...{path[-(max_length - 3) :]}"


def truncate_command(command: str, max_length: int = MAX_COMMAND_PREVIEW_LENGTH) -> str:
    """Truncate command for display in logs, keeping the start."""
    if len(command) <= max_length:
        return command
    return f"{command[: max_length - 3]}..."


# ============================================================
# Hook Response Helpers
# ============================================================


def deny_response(reason: str) -> dict[str, Any]:
    """Generate a deny response for PreToolUse hook.

    Args:
        reason: Human-readable reason for denial.

    Returns:
        Hook response dict that will block the operation.
    """
    return {
        "hookSpecificOutput": {
            "hookEventName": "PreToolUse",
            "permissionDecision": "deny",
            "permissionDecisionReason": f"[BLOCKED] {reason}",
        }
    }


def warn_response(reason: str) -> dict[str, Any]:
    """Generate an allow response that carries a scope warning.

    Args:
        reason: Human-readable description of the violation.

    Returns:
        Hook response dict that allows the operation and surfaces the reason.
    """
    return {
        "hookSpecificOutput": {
            "hookEventName": "PreToolUse",
            "permissionDecision": "allow",
            "permissionDecisionReason": f"[WARN] {reason}",
        }
    }


def allow_response() -> dict[str, Any]:
    """Generate an allow response for PreToolUse hook."""
    return {
        "hookSpecificOutput": {
            "hookEventName": "PreToolUse",
            "permissionDecision": "allow",
        }
    }


# ============================================================
# Module Self-Test (when run directly)
# ============================================================


if __name__ == "__main__":
    print("_gate_utils.py - Module loaded successfully")
    print(f"Worktree root: {get_worktree_root()}")
    print(f"State dir: {get_state_dir()}")
    print(f"Tasks path: {get_tasks_path()}")
    print(f"Policy path: {get_policy_path()}")
    print(f"Plugin root: {get_plugin_root()}")
    print(f"Regex timeout available: {_HAS_REGEX_TIMEOUT}")
    print(f"Python: {sys.version.split()[0]}")
