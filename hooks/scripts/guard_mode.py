#!/usr/bin/env python3
"""Guard-mode resolution: never let one policy source weaken another.

Two sources:
- request level: SDD_GUARD_MODE in the hook's environment
- file level: guard-mode.json written by the explicit set-guard-mode command

The effective mode is the strictest of the two (disabled < warn < block).
An absent source counts as disabled.
"""

import os

from _gate_utils import (
    InvalidArguments,
    PathValidationError,
    StateCorrupted,
    append_audit,
    log_gate,
    utc_timestamp,
)
from state_store import GuardMode, GuardModeState, read_guard_mode_state, write_guard_mode_state

_MODE_RANK = {GuardMode.DISABLED: 0, GuardMode.WARN: 1, GuardMode.BLOCK: 2}


def mode_rank(mode: GuardMode) -> int:
    return _MODE_RANK[mode]


def parse_guard_mode(value) -> GuardMode | None:
    """Parse a mode string leniently.

    Returns:
        The GuardMode, or None for absent/unrecognised values (logged).
    """
    if value is None:
        return None
    if isinstance(value, GuardMode):
        return value
    text = str(value).strip().lower()
    if not text:
        return None
    for mode in GuardMode:
        if mode.value == text:
            return mode
    log_gate("WARN", f"Ignoring unrecognised guard mode {value!r}")
    return None


def resolve_guard_mode(env_requested, file_state: GuardModeState | None) -> GuardMode:
    """Merge request-level and file-level modes, strictest wins.

    Audit entries:
    - FAIL_CLOSED when no persisted file state exists (the effective mode
      falls back to the request value or disabled)
    - DENIED_WEAKENING when an explicit request is overridden upward

    Resolving is idempotent: feeding the result back in as the request
    yields the same mode.

    Args:
        env_requested: GuardMode, mode string, or None.
        file_state: Persisted record, or None when absent.

    Returns:
        Effective GuardMode.
    """
    env_mode = parse_guard_mode(env_requested)
    file_mode = file_state.mode if file_state is not None else None

    if file_mode is None:
        append_audit(
            "FAIL_CLOSED",
            "No persisted guard mode; using request level "
            f"({env_mode.value if env_mode else 'absent'}) or disabled",
            envMode=env_mode.value if env_mode else None,
        )

    effective = max(env_mode or GuardMode.DISABLED, file_mode or GuardMode.DISABLED, key=mode_rank)

    if env_mode is not None and file_mode is not None and mode_rank(file_mode) > mode_rank(env_mode):
        append_audit(
            "DENIED_WEAKENING",
            f"Request asked for {env_mode.value} but file level is {file_mode.value}; "
            f"keeping {effective.value}",
            envMode=env_mode.value,
            fileMode=file_mode.value,
            updatedBy=file_state.updated_by,
        )
    return effective


def load_effective_guard_mode(env_value: str | None = None) -> GuardMode:
    """Resolve the mode for this invocation from SDD_GUARD_MODE and the file.

    A guard-mode file that exists but is unusable (and has no valid
    backup) enforces block.
    """
    if env_value is None:
        env_value = os.environ.get("SDD_GUARD_MODE")
    try:
        file_state = read_guard_mode_state()
    except StateCorrupted as e:
        append_audit("FAIL_CLOSED", f"Guard mode file unusable ({e}); enforcing block", kind=e.kind)
        log_gate("ERROR", f"Guard mode file unusable, enforcing block: {e}")
        return GuardMode.BLOCK
    except PathValidationError as e:
        append_audit("FAIL_CLOSED", f"Guard mode file rejected ({e}); enforcing block", kind="path")
        log_gate("ERROR", f"Guard mode file rejected, enforcing block: {e}")
        return GuardMode.BLOCK
    return resolve_guard_mode(env_value, file_state)


def set_guard_mode(mode, updated_by: str | None = None) -> GuardModeState:
    """Persist a new file-level guard mode (the explicit user command).

    Raises:
        InvalidArguments: mode is not disabled, warn or block.
    """
    text = mode.value if isinstance(mode, GuardMode) else str(mode).strip().lower()
    valid = {m.value for m in GuardMode}
    if text not in valid:
        raise InvalidArguments(f"Invalid guard mode {mode!r}; expected one of: {', '.join(sorted(valid))}")
    who = updated_by or os.environ.get("USER") or os.environ.get("USERNAME") or "unknown"
    state = GuardModeState(mode=GuardMode(text), updated_at=utc_timestamp(), updated_by=who)
    return write_guard_mode_state(state)
