#!/usr/bin/env python3
"""Policy document loading: always-allow prefixes and destructive commands.

# Resolution chain (3-step):
#   1. $SDD_POLICY_PATH, else <worktree>/.opencode/policy.json (project policy)
#   2. $CLAUDE_PLUGIN_ROOT/assets/policy.default.json (plugin default)
#   3. Hardcoded _FALLBACK_POLICY (emergency fallback)

Malformed FILES fall back (bad JSON, not an object, a key that is not a
list). Malformed ENTRIES fail closed: an always-allow entry that would
open up the whole worktree, or escape it, raises ConfigInvalid instead of
being ignored.
"""

import json
import posixpath
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from _gate_utils import (
    ConfigInvalid,
    append_audit,
    get_plugin_root,
    get_policy_path,
    log_gate,
)

_FALLBACK_POLICY: dict[str, list[str]] = {
    "alwaysAllow": ["specs/", ".opencode/"],
    "destructiveBash": [],
}

POLICY_KEYS = ("alwaysAllow", "destructiveBash")

_GLOB_CHARS = frozenset("*?[]{}")
_BARE_DRIVE_RE = re.compile(r"^[A-Za-z]:/?$")


@dataclass(frozen=True)
class PolicyConfig:
    """Loaded policy. `source` is the file it came from, None for fallback."""

    always_allow: tuple[str, ...]
    destructive_bash: tuple[str, ...]
    source: str | None = None


_policy_cache: dict[str, PolicyConfig] = {}
_fallback_logged: bool = False


def _normalize_prefix(entry: str) -> str:
    prefix = entry.strip().replace("\\", "/")
    while prefix.startswith("./"):
        prefix = prefix[2:]
    return prefix


def validate_policy_config(config: dict[str, Any]) -> list[str]:
    """Validate policy entries.

    Checks every alwaysAllow entry is a non-empty string that is not a glob,
    not the root or current directory once normalized (so "././" and
    "./." count) and has no ".." segment, and every
    destructiveBash entry is a non-empty string. Keys that are not lists
    are not reported here; they fall back at load time.

    Args:
        config: Policy dictionary.

    Returns:
        List of validation error messages (empty if valid).
    """
    errors = []

    always_allow = config.get("alwaysAllow", [])
    if isinstance(always_allow, list):
        for i, entry in enumerate(always_allow):
            if not isinstance(entry, str):
                errors.append(f"alwaysAllow[{i}] must be a string, got {type(entry).__name__}")
                continue
            stripped = entry.strip()
            if not stripped:
                errors.append(f"alwaysAllow[{i}] is empty")
                continue
            if any(ch in _GLOB_CHARS for ch in stripped):
                errors.append(f"alwaysAllow[{i}] must be a literal prefix, not a glob: {entry!r}")
                continue
            if ".." in stripped.replace("\\", "/").split("/"):
                errors.append(f"alwaysAllow[{i}] contains a '..' segment: {entry!r}")
                continue
            # Checked in the form the gate compares against.
            norm = posixpath.normpath(_normalize_prefix(stripped))
            if not norm.strip("/") or norm == "." or _BARE_DRIVE_RE.match(norm):
                errors.append(f"alwaysAllow[{i}] would allow the whole tree: {entry!r}")

    destructive = config.get("destructiveBash", [])
    if isinstance(destructive, list):
        for i, entry in enumerate(destructive):
            if not isinstance(entry, str) or not entry.strip():
                errors.append(f"destructiveBash[{i}] must be a non-empty string")

    return errors


def _read_policy_file(path: Path) -> dict[str, Any] | None:
    """Read one policy file; None (with a log line) when unusable."""
    if not path.exists():
        return None
    try:
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        log_gate("ERROR", f"[FALLBACK] Invalid JSON in {path}: {e}")
        return None
    except OSError as e:
        log_gate("ERROR", f"[FALLBACK] Failed to read {path}: {e}")
        return None
    if not isinstance(data, dict):
        log_gate("ERROR", f"[FALLBACK] Policy {path} is not a JSON object")
        return None
    return data


def load_policy_config() -> PolicyConfig:
    """Load the policy with caching and fallback.

    The policy is cached per resolved policy path for the lifetime of the
    process.

    Returns:
        PolicyConfig with normalized always-allow prefixes.

    Raises:
        ConfigInvalid: An entry would weaken the gate.
    """
    global _fallback_logged

    policy_path = get_policy_path()
    cache_key = str(policy_path)
    cached = _policy_cache.get(cache_key)
    if cached is not None:
        return cached

    candidates = [policy_path]
    plugin_root = get_plugin_root()
    if plugin_root:
        candidates.append(Path(plugin_root) / "assets" / "policy.default.json")

    data: dict[str, Any] | None = None
    source: str | None = None
    for candidate in candidates:
        data = _read_policy_file(candidate)
        if data is not None:
            source = str(candidate)
            log_gate("INFO", f"Loaded policy from {candidate}")
            break

    if data is None:
        data = {}
        if not _fallback_logged:
            log_gate(
                "WARN",
                "[FALLBACK] No usable policy file found.\n"
                f"  Searched: {', '.join(str(c) for c in candidates)}\n"
                "  Using built-in always-allow prefixes and an empty destructive list.",
            )
            _fallback_logged = True

    merged: dict[str, Any] = {}
    for key in POLICY_KEYS:
        value = data.get(key)
        if isinstance(value, list):
            merged[key] = value
        else:
            if key in data:
                log_gate(
                    "ERROR",
                    f"[FALLBACK] {key} in {source} must be a list, got {type(value).__name__}",
                )
            merged[key] = list(_FALLBACK_POLICY[key])

    errors = validate_policy_config(merged)
    if errors:
        message = f"Invalid policy ({source or 'fallback'}): " + "; ".join(errors)
        log_gate("ERROR", message)
        append_audit("CONFIG_INVALID", message, source=source, errors=errors)
        raise ConfigInvalid(message)

    policy = PolicyConfig(
        always_allow=tuple(_normalize_prefix(p) for p in merged["alwaysAllow"]),
        destructive_bash=tuple(merged["destructiveBash"]),
        source=source,
    )
    _policy_cache[cache_key] = policy
    return policy
