#!/usr/bin/env python3
"""Symlink-safe path containment checks.

Every comparison happens on canonical (symlink-resolved) paths so that a
link inside the worktree pointing elsewhere is judged by its target.
Resolution problems fail closed: an unresolvable path is "outside".

Case sensitivity follows the platform convention used throughout the
hooks: everything except Linux compares case-insensitively.
"""

import os
import posixpath
import sys
from pathlib import Path

from _gate_utils import (
    InvalidPath,
    PathResolutionError,
    PathTraversal,
    log_gate,
    truncate_path,
)


def _case_insensitive() -> bool:
    return sys.platform != "linux"


def normalize(path: str) -> str:
    """Unify separators to "/" and resolve "." / ".." segments lexically.

    Args:
        path: Raw path string (absolute or relative).

    Returns:
        Normalized path string with forward slashes.
    """
    unified = str(path).replace("\\", "/")
    if not unified:
        return "."
    return posixpath.normpath(unified)


def resolve_real(path) -> Path:
    """Resolve a path through symlinks to its canonical form.

    If the path does not exist, the nearest existing ancestor is resolved
    and the missing trailing segments are rejoined. A new file below a
    symlinked directory therefore resolves against the link's target.

    Args:
        path: Path to resolve; relative paths are taken against cwd.

    Returns:
        Canonical absolute Path.

    Raises:
        PathResolutionError: Permission denied or symlink loop while walking.
    """
    absolute = Path(os.path.abspath(os.fspath(path)))
    try:
        return absolute.resolve(strict=True)
    except (FileNotFoundError, NotADirectoryError):
        pass
    except (PermissionError, RuntimeError, OSError) as e:
        raise PathResolutionError(f"Cannot resolve path {absolute}: {e}", str(absolute)) from e

    tail: list[str] = []
    current = absolute
    while True:
        parent = current.parent
        if parent == current:
            # Filesystem root itself is missing (unreachable volume)
            return absolute
        tail.insert(0, current.name)
        current = parent
        try:
            os.lstat(current)
        except (FileNotFoundError, NotADirectoryError):
            continue
        except (PermissionError, OSError) as e:
            raise PathResolutionError(
                f"Cannot inspect ancestor {current} of {absolute}: {e}", str(absolute)
            ) from e
        try:
            resolved_ancestor = current.resolve(strict=True)
        except (PermissionError, RuntimeError, OSError) as e:
            raise PathResolutionError(
                f"Cannot resolve ancestor {current} of {absolute}: {e}", str(absolute)
            ) from e
        return resolved_ancestor.joinpath(*tail)


def _outside_resolved(target: Path, base: Path) -> bool:
    """Containment test on two already-canonical paths."""
    # Drive letters and UNC shares always compare case-insensitively
    if target.anchor.lower() != base.anchor.lower():
        return True

    target_str = str(target)
    base_str = str(base)
    if _case_insensitive():
        target_str = target_str.lower()
        base_str = base_str.lower()

    try:
        rel = os.path.relpath(target_str, base_str)
    except ValueError:
        return True

    rel = rel.replace("\\", "/")
    return rel == ".." or rel.startswith("../") or os.path.isabs(rel)


def is_outside(path, root) -> bool:
    """Check whether a path resolves outside a root directory.

    Args:
        path: Path to check; relative paths are taken against root.
        root: Containing directory.

    Returns:
        True if the canonical path escapes root, or cannot be resolved.
    """
    candidate = Path(os.fspath(path))
    if not candidate.is_absolute():
        candidate = Path(os.fspath(root)) / candidate
    try:
        target = resolve_real(candidate)
        base = resolve_real(root)
    except PathResolutionError as e:
        log_gate("WARN", f"Treating unresolvable path as outside: {e}")
        return True
    return _outside_resolved(target, base)


def to_worktree_relative(path, root) -> str:
    """Return the canonical worktree-relative form of path with "/" separators.

    Paths outside root come back starting with "../" (or absolute when on a
    different volume), so no always-allow prefix can match them.

    Raises:
        PathResolutionError: Path or root cannot be resolved.
    """
    candidate = Path(os.fspath(path))
    if not candidate.is_absolute():
        candidate = Path(os.fspath(root)) / candidate
    target = resolve_real(candidate)
    base = resolve_real(root)
    if _outside_resolved(target, base):
        try:
            return os.path.relpath(target, base).replace("\\", "/")
        except ValueError:
            return target.as_posix()
    rel = os.path.relpath(target, base).replace("\\", "/")
    return "" if rel == "." else rel


def validate_containment(target, base) -> str:
    """Validate that target stays within base and return its canonical form.

    Checks, in order:
    1. Null bytes -> InvalidPath
    2. Explicit ".." segment in the input -> PathTraversal (before resolution)
    3. Canonical containment -> PathTraversal

    Callers must use the returned path rather than the input.

    Args:
        target: Path to validate (absolute, or relative to base).
        base: Directory the path must stay within.

    Returns:
        Normalized absolute canonical path string.

    Raises:
        InvalidPath: Null byte, or path cannot be resolved.
        PathTraversal: Path escapes base.
    """
    raw = os.fspath(target)
    if "\x00" in raw:
        raise InvalidPath(f"Path contains null byte: {raw!r}", raw)

    if ".." in raw.replace("\\", "/").split("/"):
        raise PathTraversal(f"Path traversal detected: {raw}", raw)

    base_real = resolve_real(base)
    candidate = Path(raw)
    if not candidate.is_absolute():
        candidate = Path(os.fspath(base)) / candidate
    target_real = resolve_real(candidate)

    if _outside_resolved(target_real, base_real):
        log_gate("BLOCK", f"Containment violation: {truncate_path(raw)} -> {target_real}")
        raise PathTraversal(f"Path escapes {base_real}: {raw}", raw)

    return normalize(str(target_real))
