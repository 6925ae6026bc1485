#!/usr/bin/env python3
"""Task-Scope Gatekeeper Hook (PreToolUse).

Checks every Edit / Write / MultiEdit / NotebookEdit / Bash call against
the active task's scope:
1. Resolve the guard mode (SDD_GUARD_MODE merged with guard-mode.json)
2. disabled -> exit silently (allow)
3. Read task state (recovering from backups when needed)
4. Evaluate the rule cascade and role policy
5. Emit deny (block) or allow-with-warning (warn)

Design Principles:
- Fail-Close: malformed input or any internal error denies the call
- Thin wrapper: decisions live in access_evaluator.py
"""

import json
import sys
from pathlib import Path

# Add hooks directory to path
sys.path.insert(0, str(Path(__file__).parent))

try:
    from _gate_utils import (
        deny_response,
        get_worktree_root,
        log_gate,
        truncate_command,
        truncate_path,
        warn_response,
    )
    from access_evaluator import (
        SHELL_TOOLS,
        WRITE_TOOLS,
        evaluate_multi_edit,
        evaluate_role_access,
    )
    from guard_mode import load_effective_guard_mode
    from state_store import GuardMode, StateResult, StateStatus, read_state
except ImportError as e:
    # Fail-close: gate unavailable = block all
    print(
        json.dumps(
            {
                "hookSpecificOutput": {
                    "hookEventName": "PreToolUse",
                    "permissionDecision": "deny",
                    "permissionDecisionReason": f"Scope gate unavailable: {e}",
                }
            }
        )
    )
    sys.exit(0)


def _target_path(tool_input: dict) -> str | None:
    for key in ("file_path", "notebook_path", "path", "filePath"):
        value = tool_input.get(key)
        if isinstance(value, str) and value:
            return value
    return None


def main() -> None:
    """Main hook entry point."""
    # Parse input - FAIL-CLOSE on invalid JSON
    try:
        input_data = json.load(sys.stdin)
    except json.JSONDecodeError as e:
        log_gate("ERROR", f"Malformed JSON input: {e}")
        print(json.dumps(deny_response("Invalid hook input (malformed JSON)")))
        sys.exit(0)

    if not isinstance(input_data, dict):
        print(json.dumps(deny_response("Invalid hook input structure")))
        sys.exit(0)

    tool_name = input_data.get("tool_name", "")
    if not isinstance(tool_name, str):
        sys.exit(0)
    kind = tool_name.lower()
    if kind not in WRITE_TOOLS and kind not in SHELL_TOOLS:
        # Not a gated tool - exit silently (no response means allow)
        sys.exit(0)

    tool_input = input_data.get("tool_input", {})
    if not isinstance(tool_input, dict):
        log_gate("WARN", f"Invalid tool_input type: {type(tool_input).__name__}")
        print(json.dumps(deny_response("Invalid tool input structure")))
        sys.exit(0)

    mode = load_effective_guard_mode()
    if mode is GuardMode.DISABLED:
        log_gate("DEBUG", f"Guard disabled, skipping {tool_name}")
        sys.exit(0)

    worktree_root = get_worktree_root()

    if kind in SHELL_TOOLS:
        command = tool_input.get("command", "")
        if not isinstance(command, str):
            print(json.dumps(deny_response("Invalid command in tool input")))
            sys.exit(0)
        preview = truncate_command(command)
        # Shell checks never consult the task state
        result = evaluate_role_access(
            kind, None, command, StateResult(StateStatus.NOT_FOUND), worktree_root, mode
        )
    elif kind == "multiedit" and "files" in tool_input:
        files = tool_input.get("files")
        preview = f"{len(files) if isinstance(files, list) else '?'} files"
        result = evaluate_multi_edit(files, read_state(), worktree_root, mode)
    else:
        file_path = _target_path(tool_input)
        preview = truncate_path(file_path or "<no path>")
        result = evaluate_role_access(kind, file_path, None, read_state(), worktree_root, mode)

    rule = result.rule.value if result.rule else "-"
    if not result.allowed:
        log_gate("BLOCK", f"{tool_name} [{rule}] {preview}: {result.message}")
        print(json.dumps(deny_response(result.message or f"{tool_name} blocked by task scope gate")))
        sys.exit(0)

    if result.warned:
        log_gate("WARN", f"{tool_name} [{rule}] {preview}: {result.message}")
        print(json.dumps(warn_response(result.message or f"{tool_name} outside task scope")))
        sys.exit(0)

    log_gate("ALLOW", f"{tool_name} [{rule}] {preview}")
    sys.exit(0)


if __name__ == "__main__":
    try:
        main()
    except Exception as e:
        # Fail-close: on unexpected errors (bad policy, busy lock), deny for safety
        log_gate("ERROR", f"Gatekeeper error: {type(e).__name__}: {e}")
        print(
            json.dumps(
                {
                    "hookSpecificOutput": {
                        "hookEventName": "PreToolUse",
                        "permissionDecision": "deny",
                        "permissionDecisionReason": f"Scope gate error: {e}",
                    }
                }
            )
        )
        sys.exit(0)
