#!/usr/bin/env python3
"""Access evaluation: decide allow / warn / block for one tool invocation.

Rule cascade for mutating tools (first match wins):

    Rule0           path under an always-allow prefix -> allow
    Rule3           path resolves outside the worktree -> violation
    StateCorrupted  state unreadable and unrecoverable -> violation
    Rule1           no active task, or task has no scopes -> violation
    Rule2           path matches none of the task's scopes -> violation

Shell tools are checked against the destructive table (Rule4).

A violation is allowed (with warned=True) in warn mode and blocked in
block mode. Evaluation is pure: no I/O beyond path resolution and the
cached policy load.
"""

import fnmatch
import sys
from dataclasses import dataclass
from enum import Enum

from _gate_utils import (
    TASK_LIST_FILENAME,
    InvalidArguments,
    PathResolutionError,
    get_spec_dir,
    log_gate,
    truncate_command,
)
from path_guard import is_outside, to_worktree_relative
from policy_config import PolicyConfig, load_policy_config
from shell_lexer import find_destructive
from state_store import GuardMode, Role, StateResult, StateStatus

WRITE_TOOLS = frozenset({"edit", "write", "multiedit", "notebookedit", "patch"})
SHELL_TOOLS = frozenset({"bash"})


class Rule(Enum):
    RULE0 = "Rule0"
    RULE1 = "Rule1"
    RULE2 = "Rule2"
    RULE3 = "Rule3"
    RULE4 = "Rule4"
    ROLE_ALLOWED = "RoleAllowed"
    ROLE_DENIED = "RoleDenied"
    STATE_CORRUPTED = "StateCorrupted"


_FINAL_RULES = frozenset({Rule.RULE0, Rule.RULE3, Rule.STATE_CORRUPTED})


@dataclass(frozen=True)
class AccessResult:
    allowed: bool
    warned: bool = False
    message: str | None = None
    rule: Rule | None = None


# ============================================================
# Helpers
# ============================================================


def _case_insensitive() -> bool:
    return sys.platform != "linux"


def _fold(text: str) -> str:
    return text.lower() if _case_insensitive() else text


def _check_mode(mode) -> GuardMode:
    if isinstance(mode, str):
        mode = next((m for m in GuardMode if m.value == mode.strip().lower()), mode)
    if mode not in (GuardMode.WARN, GuardMode.BLOCK):
        raise InvalidArguments(f"Evaluation mode must be warn or block, got {mode!r}")
    return mode


def _violation(mode: GuardMode, rule: Rule, message: str) -> AccessResult:
    return AccessResult(allowed=mode is GuardMode.WARN, warned=True, message=message, rule=rule)


def expand_braces(pattern: str) -> list[str]:
    """Expand the first {a,b} group recursively: "src/{a,b}/*" -> two globs."""
    start = pattern.find("{")
    if start == -1:
        return [pattern]
    depth = 0
    for end in range(start, len(pattern)):
        if pattern[end] == "{":
            depth += 1
        elif pattern[end] == "}":
            depth -= 1
            if depth == 0:
                break
    else:
        return [pattern]

    body = pattern[start + 1 : end]
    options, current, depth = [], [], 0
    for ch in body:
        if ch == "," and depth == 0:
            options.append("".join(current))
            current = []
            continue
        if ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
        current.append(ch)
    options.append("".join(current))
    if len(options) < 2:
        return [pattern]

    head, tail = pattern[:start], pattern[end + 1 :]
    expanded = []
    for option in options:
        expanded.extend(expand_braces(head + option + tail))
    return expanded


def _component_matches(name: str, pattern: str) -> bool:
    # Wildcards never match a leading dot unless the pattern spells it out
    if name.startswith(".") and not pattern.startswith("."):
        return False
    return fnmatch.fnmatchcase(name, pattern)


def _match_recursive_glob(path_parts: list[str], pattern_parts: list[str]) -> bool:
    """Match path components against glob components with ** support.

    Args:
        path_parts: e.g. ['src', 'main.py']
        pattern_parts: e.g. ['src', '**', '*.py']
    """
    if not pattern_parts:
        return not path_parts

    if not path_parts:
        return all(p == "**" for p in pattern_parts)

    if pattern_parts[0] == "**":
        if _match_recursive_glob(path_parts, pattern_parts[1:]):
            return True
        if path_parts[0].startswith("."):
            return False
        return _match_recursive_glob(path_parts[1:], pattern_parts)

    if _component_matches(path_parts[0], pattern_parts[0]):
        return _match_recursive_glob(path_parts[1:], pattern_parts[1:])

    return False


def matches_scope(rel_path: str, scopes) -> bool:
    """Check a worktree-relative path against scope globs.

    `*` stays within one path component, `**` spans components, a
    trailing "/" means everything below, and braces expand.
    """
    path_parts = [p for p in _fold(rel_path).split("/") if p]
    for scope in scopes:
        glob = _fold(scope.strip().replace("\\", "/"))
        while glob.startswith("./"):
            glob = glob[2:]
        if not glob:
            continue
        if glob.endswith("/"):
            glob += "**"
        for variant in expand_braces(glob):
            if _match_recursive_glob(path_parts, [p for p in variant.split("/") if p]):
                return True
    return False


def _in_spec_tree(rel: str) -> bool:
    spec_dir = _fold(get_spec_dir())
    folded = _fold(rel)
    return folded == spec_dir or folded.startswith(spec_dir + "/")


# ============================================================
# Evaluation
# ============================================================


def evaluate_access(
    tool_kind: str,
    file_path: str | None,
    command: str | None,
    state_result: StateResult,
    worktree_root,
    mode,
    policy: PolicyConfig | None = None,
) -> AccessResult:
    """Run the rule cascade for one tool invocation.

    Args:
        tool_kind: Tool name (edit, write, multiedit, bash, ...), any case.
        file_path: Target path for mutating tools.
        command: Shell command for shell tools.
        state_result: Result of state_store.read_state().
        worktree_root: Worktree root directory.
        mode: GuardMode.WARN or GuardMode.BLOCK (or their names).
        policy: Loaded policy; loaded on demand when omitted.

    Returns:
        AccessResult.

    Raises:
        InvalidArguments: mode outside {warn, block} or unknown state status.
        ConfigInvalid: Policy document is malformed.
    """
    mode = _check_mode(mode)
    if policy is None:
        policy = load_policy_config()
    kind = (tool_kind or "").lower()

    if kind not in WRITE_TOOLS:
        if kind in SHELL_TOOLS and command:
            hit = find_destructive(command, policy.destructive_bash)
            if hit:
                return _violation(
                    mode,
                    Rule.RULE4,
                    f"DESTRUCTIVE_COMMAND: '{truncate_command(command)}' matches '{hit}'",
                )
        return AccessResult(allowed=True)

    if not file_path or not str(file_path).strip():
        return AccessResult(
            allowed=False,
            warned=True,
            message=f"NO_FILE_PATH: {tool_kind} call has no target path",
            rule=Rule.RULE1,
        )

    if "\x00" in str(file_path):
        return _violation(mode, Rule.RULE3, "INVALID_PATH: path contains a null byte")

    try:
        rel = to_worktree_relative(file_path, worktree_root)
    except PathResolutionError as e:
        log_gate("WARN", f"Unresolvable path treated as outside: {e}")
        return _violation(mode, Rule.RULE3, f"OUTSIDE_WORKTREE: cannot resolve {file_path}")

    outside = is_outside(file_path, worktree_root)
    folded = _fold(rel)
    if not outside and any(folded.startswith(_fold(prefix)) for prefix in policy.always_allow):
        return AccessResult(allowed=True, rule=Rule.RULE0)

    if outside:
        return _violation(mode, Rule.RULE3, f"OUTSIDE_WORKTREE: {file_path} resolves outside the worktree")

    status = state_result.status
    if status is StateStatus.CORRUPTED:
        return _violation(
            mode,
            Rule.STATE_CORRUPTED,
            f"STATE_CORRUPTED: {state_result.error}. Restart the task to recreate the state.",
        )
    if status in (StateStatus.OK, StateStatus.RECOVERED):
        state = state_result.state
    elif status is StateStatus.NOT_FOUND:
        state = None
    else:
        raise InvalidArguments(f"Unknown state status: {status!r}")

    if state is None or not state.active_task_id or not state.allowed_scopes:
        return _violation(mode, Rule.RULE1, f"NO_ACTIVE_TASK: start a task before editing {rel}")

    if not matches_scope(rel, state.allowed_scopes):
        return _violation(
            mode,
            Rule.RULE2,
            f"SCOPE_DENIED: {state.active_task_id} may not write {rel}. "
            f"allowedScopes={', '.join(state.allowed_scopes)}",
        )

    return AccessResult(allowed=True)


def evaluate_role_access(
    tool_kind: str,
    file_path: str | None,
    command: str | None,
    state_result: StateResult,
    worktree_root,
    mode,
    policy: PolicyConfig | None = None,
) -> AccessResult:
    """Rule cascade plus the task role's spec-tree policy.

    Rule0, Rule3 and StateCorrupted results are final. Otherwise, with a
    role on a valid state:
    - implementer: inside the spec tree only the task list passes through
    - architect: inside the spec tree is RoleAllowed, outside RoleDenied
    """
    mode = _check_mode(mode)
    base = evaluate_access(tool_kind, file_path, command, state_result, worktree_root, mode, policy)
    if base.rule in _FINAL_RULES:
        return base
    if (tool_kind or "").lower() not in WRITE_TOOLS or not file_path or not str(file_path).strip():
        return base
    if state_result.status not in (StateStatus.OK, StateStatus.RECOVERED) or state_result.state is None:
        return base
    role = state_result.state.role
    if role is None:
        return base

    try:
        rel = to_worktree_relative(file_path, worktree_root)
    except PathResolutionError:
        return base
    in_spec = _in_spec_tree(rel)

    if role is Role.IMPLEMENTER:
        if in_spec and rel.rsplit("/", 1)[-1] != TASK_LIST_FILENAME:
            return _violation(
                mode,
                Rule.ROLE_DENIED,
                f"ROLE_DENIED: implementer may not edit {rel} in {get_spec_dir()}/ "
                f"(only {TASK_LIST_FILENAME})",
            )
        return base

    if role is Role.ARCHITECT:
        if in_spec:
            return AccessResult(allowed=True, rule=Rule.ROLE_ALLOWED)
        return _violation(
            mode,
            Rule.ROLE_DENIED,
            f"ROLE_DENIED: architect may only edit files under {get_spec_dir()}/ (got {rel})",
        )

    raise InvalidArguments(f"Unknown role: {role!r}")


def evaluate_multi_edit(
    files,
    state_result: StateResult,
    worktree_root,
    mode,
    policy: PolicyConfig | None = None,
) -> AccessResult:
    """Evaluate every file of a multi-file edit as an individual edit.

    allowed is the AND of all results, warned the OR. When any file
    warned, the message is "multiedit: k/n files warned" followed by each
    warning and the rule is that of the first violation.

    Raises:
        InvalidArguments: files is not a list of mappings.
    """
    if not isinstance(files, list):
        raise InvalidArguments(f"multiedit files must be a list, got {type(files).__name__}")
    mode = _check_mode(mode)
    if policy is None:
        policy = load_policy_config()

    results = []
    for index, entry in enumerate(files):
        if not isinstance(entry, dict):
            raise InvalidArguments(f"multiedit files[{index}] must be an object")
        path = entry.get("file_path") or entry.get("filePath") or entry.get("path")
        results.append(evaluate_role_access("edit", path, None, state_result, worktree_root, mode, policy))

    warned = [r for r in results if r.warned]
    allowed = all(r.allowed for r in results)
    if not warned:
        return AccessResult(allowed=allowed)

    lines = [f"multiedit: {len(warned)}/{len(results)} files warned"]
    lines.extend(r.message for r in warned if r.message)
    return AccessResult(allowed=allowed, warned=True, message="\n".join(lines), rule=warned[0].rule)
