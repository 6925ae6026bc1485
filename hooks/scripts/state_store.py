#!/usr/bin/env python3
"""Durable task state: locking, hashing, atomic writes, backups, recovery.

Layout of the state directory (SDD_STATE_DIR, default .opencode/state):

    current_context.json        active TaskState
    current_context.json.bak    newest backup (.bak.1, .bak.2 older)
    guard-mode.json             persisted GuardModeState (+ backups)
    .lock/                      directory lock, holds .lock-info.json
    state-hmac.key              HMAC key (unless SDD_STATE_HMAC_KEY is set)
    state-audit.log             JSON-lines audit trail

Writers serialize on the .lock directory and publish via temp file +
os.replace, so lock-free readers always see a complete document.
Integrity: tasksMdHash binds the state to the task document, stateHash
(HMAC-SHA256) binds every other field. Anything that fails to parse,
validate or verify is "corrupted" and recovered from the newest valid
backup, never fabricated.
"""

import dataclasses
import hashlib
import hmac
import json
import os
import random
import secrets
import shutil
import sys
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable

from _gate_utils import (
    BACKUP_GENERATIONS,
    GUARD_MODE_FILENAME,
    HMAC_KEY_FILENAME,
    LOCK_DIRNAME,
    LOCK_INFO_FILENAME,
    STATE_FILENAME,
    InvalidArguments,
    LockBusy,
    StateCorrupted,
    append_audit,
    current_owner,
    get_lock_backoff_seconds,
    get_lock_retries,
    get_lock_stale_seconds,
    get_state_dir,
    get_tasks_path,
    get_worktree_root,
    log_gate,
    utc_timestamp,
)
from path_guard import validate_containment

STATE_VERSION = 1
MAX_LOCK_BACKOFF_SECONDS = 2.0
_KEY_READ_RETRIES = 20
_KEY_READ_DELAY_SECONDS = 0.01


# ============================================================
# Records
# ============================================================


class Role(Enum):
    ARCHITECT = "architect"
    IMPLEMENTER = "implementer"


class GuardMode(Enum):
    DISABLED = "disabled"
    WARN = "warn"
    BLOCK = "block"


class StateStatus(Enum):
    OK = "ok"
    NOT_FOUND = "not_found"
    CORRUPTED = "corrupted"
    RECOVERED = "recovered"


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _is_text(value: Any) -> bool:
    return isinstance(value, str) and value.strip() != ""


@dataclass
class TaskState:
    """The single active task and its permitted scopes."""

    active_task_id: str
    active_task_title: str
    allowed_scopes: list[str]
    started_at: str
    started_by: str
    validation_attempts: int = 0
    role: Role | None = None
    version: int = STATE_VERSION
    tasks_md_hash: str = ""
    state_hash: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "activeTaskId": self.active_task_id,
            "activeTaskTitle": self.active_task_title,
            "allowedScopes": list(self.allowed_scopes),
            "startedAt": self.started_at,
            "startedBy": self.started_by,
            "validationAttempts": self.validation_attempts,
            "role": self.role.value if self.role else None,
            "tasksMdHash": self.tasks_md_hash,
            "stateHash": self.state_hash,
        }

    @classmethod
    def from_dict(cls, data: Any) -> "TaskState":
        """Build a TaskState from its JSON form.

        Hash fields may be missing or empty (legacy records); everything
        else must be present and well-typed.

        Raises:
            StateCorrupted: kind="schema" listing every problem found.
        """
        if not isinstance(data, dict):
            raise StateCorrupted("Invalid state schema: not a JSON object", kind="schema")

        problems = []
        if not _is_int(data.get("version")):
            problems.append("version must be an integer")
        for key in ("activeTaskId", "activeTaskTitle", "startedAt", "startedBy"):
            if not _is_text(data.get(key)):
                problems.append(f"{key} must be a non-empty string")
        scopes = data.get("allowedScopes")
        if not isinstance(scopes, list) or not all(isinstance(s, str) for s in scopes):
            problems.append("allowedScopes must be a list of strings")
        attempts = data.get("validationAttempts")
        if not _is_int(attempts) or attempts < 0:
            problems.append("validationAttempts must be a non-negative integer")
        role = data.get("role")
        if role is not None and role not in {r.value for r in Role}:
            problems.append(f"role must be architect, implementer or null, got {role!r}")
        for key in ("tasksMdHash", "stateHash"):
            if key in data and data[key] is not None and not isinstance(data[key], str):
                problems.append(f"{key} must be a string")

        if problems:
            raise StateCorrupted("Invalid state schema: " + "; ".join(problems), kind="schema")

        return cls(
            version=data["version"],
            active_task_id=data["activeTaskId"],
            active_task_title=data["activeTaskTitle"],
            allowed_scopes=list(scopes),
            started_at=data["startedAt"],
            started_by=data["startedBy"],
            validation_attempts=attempts,
            role=Role(role) if role else None,
            tasks_md_hash=data.get("tasksMdHash") or "",
            state_hash=data.get("stateHash") or "",
        )


@dataclass
class GuardModeState:
    """Persisted guard-mode override."""

    mode: GuardMode
    updated_at: str
    updated_by: str

    def to_dict(self) -> dict[str, Any]:
        return {"mode": self.mode.value, "updatedAt": self.updated_at, "updatedBy": self.updated_by}

    @classmethod
    def from_dict(cls, data: Any) -> "GuardModeState":
        if not isinstance(data, dict):
            raise StateCorrupted("Invalid guard mode: not a JSON object", kind="schema")
        mode = data.get("mode")
        if mode not in {m.value for m in GuardMode}:
            raise StateCorrupted(f"Invalid guard mode value: {mode!r}", kind="schema")
        if not _is_text(data.get("updatedAt")) or not _is_text(data.get("updatedBy")):
            raise StateCorrupted("Invalid guard mode: updatedAt/updatedBy missing", kind="schema")
        return cls(mode=GuardMode(mode), updated_at=data["updatedAt"], updated_by=data["updatedBy"])


@dataclass
class LockOwnership:
    task_id: str | None
    pid: int
    host: str
    started_at: str

    def to_dict(self) -> dict[str, Any]:
        return {"taskId": self.task_id, "pid": self.pid, "host": self.host, "startedAt": self.started_at}

    @classmethod
    def from_dict(cls, data: Any) -> "LockOwnership | None":
        """Parse an owner record; None when it is not usable."""
        if not isinstance(data, dict) or not _is_int(data.get("pid")):
            return None
        task_id = data.get("taskId")
        return cls(
            task_id=task_id if isinstance(task_id, str) else None,
            pid=data["pid"],
            host=str(data.get("host", "")),
            started_at=str(data.get("startedAt", "")),
        )


@dataclass
class StateResult:
    """Outcome of read_state()."""

    status: StateStatus
    state: TaskState | None = None
    error: str | None = None
    from_backup: str | None = None


@dataclass
class LockDiagnosis:
    lock_path: str
    locked: bool
    age_seconds: float | None = None
    owner: LockOwnership | None = None
    owner_readable: bool = False
    state_path: str = ""
    state_status: str = "missing"

    def report(self) -> str:
        lines = [f"Lock: {self.lock_path}"]
        if not self.locked:
            lines.append("  status: not held")
        else:
            lines.append("  status: HELD")
            if self.age_seconds is not None:
                lines.append(f"  age: {self.age_seconds:.1f}s")
            if self.owner is not None:
                lines.append(
                    f"  owner: pid={self.owner.pid} host={self.owner.host} "
                    f"task={self.owner.task_id or '-'} since={self.owner.started_at}"
                )
            else:
                lines.append("  owner: unknown (owner record missing or unreadable)")
        lines.append(f"State: {self.state_path}")
        lines.append(f"  json: {self.state_status}")
        return "\n".join(lines)


@dataclass
class ForceUnlockResult:
    released: bool
    message: str
    diagnosis: LockDiagnosis = field(default_factory=lambda: LockDiagnosis("", False))


# ============================================================
# Paths
# ============================================================


def _state_file(name: str) -> Path:
    """Canonical path of a state directory entry; links may not leave it."""
    return Path(validate_containment(name, get_state_dir()))


def _sibling(path: Path, name: str) -> Path:
    return Path(validate_containment(name, path.parent))


def get_state_path() -> Path:
    return _state_file(STATE_FILENAME)


def get_guard_mode_path() -> Path:
    return _state_file(GUARD_MODE_FILENAME)


def get_lock_path() -> Path:
    return _state_file(LOCK_DIRNAME)


def get_hmac_key_path() -> Path:
    return _state_file(HMAC_KEY_FILENAME)


def get_tasks_document_path() -> Path:
    """Task document path; a relative SDD_TASKS_PATH must stay in the worktree."""
    path = get_tasks_path()
    if os.path.isabs(os.environ.get("SDD_TASKS_PATH", "")):
        return path
    return Path(validate_containment(path, get_worktree_root()))


def backup_paths(path: Path, generations: int = BACKUP_GENERATIONS) -> list[Path]:
    """Backup generations of path, newest first: .bak, .bak.1, .bak.2 ..."""
    names = [f"{path.name}.bak"] + [f"{path.name}.bak.{i}" for i in range(1, generations)]
    return [_sibling(path, name) for name in names]


# ============================================================
# Directory Lock
# ============================================================


def _discard_lock_dir(lock_dir: Path) -> bool:
    """Atomically move a lock directory aside and delete it.

    Only one contender can win the rename, so two processes breaking the
    same stale lock cannot both succeed.
    """
    graveyard = lock_dir.with_name(f"{lock_dir.name}.released.{os.getpid()}.{secrets.token_hex(4)}")
    try:
        os.rename(lock_dir, graveyard)
    except FileNotFoundError:
        return False
    shutil.rmtree(graveyard, ignore_errors=True)
    return True


def _break_stale_lock(lock_dir: Path, stale_seconds: float) -> bool:
    try:
        age = time.time() - lock_dir.stat().st_mtime
    except FileNotFoundError:
        return True  # released meanwhile, retry immediately
    if age <= stale_seconds:
        return False
    owner = _read_owner(lock_dir)
    if _discard_lock_dir(lock_dir):
        append_audit(
            "LOCK_STALE_BROKEN",
            f"Broke stale lock {lock_dir} (age {age:.1f}s)",
            lockPath=str(lock_dir),
            ageSeconds=round(age, 3),
            owner=owner.to_dict() if owner else None,
        )
    return True


def _read_owner(lock_dir: Path) -> LockOwnership | None:
    try:
        with open(lock_dir / LOCK_INFO_FILENAME, encoding="utf-8") as f:
            return LockOwnership.from_dict(json.load(f))
    except (OSError, json.JSONDecodeError):
        return None


@contextmanager
def state_dir_lock(task_id: str | None = None):
    """Hold the state directory lock for the duration of the block.

    The lock is a directory created with os.mkdir (atomic on every
    platform). Contention is retried with jittered exponential backoff;
    locks older than SDD_LOCK_STALE ms are broken. The owner record and the
    directory are removed on every exit path.

    Args:
        task_id: Task recorded in the owner record (diagnostics only).

    Raises:
        LockBusy: Retry budget exhausted.
    """
    state_dir = get_state_dir()
    state_dir.mkdir(parents=True, exist_ok=True)
    lock_dir = get_lock_path()

    retries = get_lock_retries()
    stale_seconds = get_lock_stale_seconds()
    base_delay = get_lock_backoff_seconds()
    attempt = 0
    while True:
        try:
            os.mkdir(lock_dir)
            break
        except FileExistsError:
            if _break_stale_lock(lock_dir, stale_seconds):
                continue
            if attempt >= retries:
                message = (
                    f"State lock is busy: {lock_dir} (gave up after {attempt + 1} attempts). "
                    "If no other session is running, release it with "
                    "`force_unlock.py --force`."
                )
                owner = _read_owner(lock_dir)
                append_audit(
                    "LOCK_BUSY",
                    message,
                    lockPath=str(lock_dir),
                    attempts=attempt + 1,
                    owner=owner.to_dict() if owner else None,
                )
                raise LockBusy(message)
            delay = min(base_delay * (2**attempt), MAX_LOCK_BACKOFF_SECONDS)
            time.sleep(delay / 2 + random.uniform(0, delay / 2))
            attempt += 1

    try:
        pid, host = current_owner()
        owner = LockOwnership(task_id=task_id, pid=pid, host=host, started_at=utc_timestamp())
        with open(lock_dir / LOCK_INFO_FILENAME, "w", encoding="utf-8") as f:
            json.dump(owner.to_dict(), f)
        yield owner
    finally:
        try:
            (lock_dir / LOCK_INFO_FILENAME).unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            log_gate("WARN", f"Could not remove lock owner record: {e}")
        try:
            os.rmdir(lock_dir)
        except FileNotFoundError:
            pass
        except OSError as e:
            # Leftover content: move the whole directory aside instead
            log_gate("WARN", f"Lock directory not empty on release ({e}), discarding")
            _discard_lock_dir(lock_dir)


# ============================================================
# Hashing
# ============================================================


def compute_tasks_md_hash(path: Path | None = None) -> str:
    """SHA-256 of the task document; of empty content when it is absent."""
    path = path or get_tasks_document_path()
    try:
        content = path.read_bytes()
    except FileNotFoundError:
        content = b""
    return hashlib.sha256(content).hexdigest()


def _load_hmac_key(create: bool = False) -> bytes:
    """Return the HMAC key: SDD_STATE_HMAC_KEY, else the per-directory key file.

    Only writers (create=True) make the key file, exclusively and with mode
    0600. A concurrent creator may have created but not yet filled it, so
    reads retry briefly. Readers never touch the filesystem beyond reading:
    a missing key means no sealed state can verify.
    """
    env_key = os.environ.get("SDD_STATE_HMAC_KEY", "")
    if env_key:
        return env_key.encode("utf-8")

    key_path = get_hmac_key_path()
    if create:
        key_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            fd = os.open(key_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        except FileExistsError:
            pass
        else:
            key = secrets.token_hex(32)
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(key)
            return key.encode("utf-8")

    for _ in range(_KEY_READ_RETRIES):
        try:
            key = key_path.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            raise StateCorrupted(
                f"HMAC key file is missing: {key_path}", kind="hash", code="HMAC_KEY_MISSING"
            ) from None
        if key:
            return key.encode("utf-8")
        time.sleep(_KEY_READ_DELAY_SECONDS)
    raise StateCorrupted(f"HMAC key file is empty: {key_path}", kind="hash", code="HMAC_KEY_EMPTY")


def _hash_payload(state: TaskState) -> bytes:
    payload = {
        "version": state.version,
        "activeTaskId": state.active_task_id,
        "activeTaskTitle": state.active_task_title,
        "allowedScopes": list(state.allowed_scopes),
        "startedAt": state.started_at,
        "startedBy": state.started_by,
        "validationAttempts": state.validation_attempts,
        "role": state.role.value if state.role else None,
        "tasksMdHash": state.tasks_md_hash,
    }
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def compute_state_hash(state: TaskState, create_key: bool = False) -> str:
    """HMAC-SHA256 over every field except stateHash, in a fixed key order.

    Args:
        state: State to hash.
        create_key: Create the key file when missing (writers only).
    """
    return hmac.new(_load_hmac_key(create_key), _hash_payload(state), hashlib.sha256).hexdigest()


# ============================================================
# Atomic File Primitives
# ============================================================


def _temp_path(path: Path) -> Path:
    return _sibling(path, f"{path.name}.{os.getpid()}.{secrets.token_hex(6)}.tmp")


def _atomic_write_bytes(path: Path, data: bytes) -> None:
    """Write to a unique sibling temp file and rename it over path."""
    tmp = _temp_path(path)
    try:
        with open(tmp, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)
    finally:
        try:
            tmp.unlink()
        except FileNotFoundError:
            pass


def _atomic_write_json(path: Path, data: dict[str, Any]) -> None:
    text = json.dumps(data, indent=2, ensure_ascii=False) + "\n"
    _atomic_write_bytes(path, text.encode("utf-8"))


def rotate_backups(path: Path, generations: int = BACKUP_GENERATIONS) -> None:
    """Shift backups one generation down and snapshot path into .bak.

    The oldest generation is discarded. Caller must hold the lock.
    """
    if not path.exists():
        return
    gens = backup_paths(path, generations)
    try:
        gens[-1].unlink()
    except FileNotFoundError:
        pass
    for index in range(len(gens) - 1, 0, -1):
        try:
            os.replace(gens[index - 1], gens[index])
        except FileNotFoundError:
            pass
    _atomic_write_bytes(gens[0], path.read_bytes())


# ============================================================
# Reading & Verification
# ============================================================


def _read_json(path: Path) -> Any:
    """Parse a JSON document. FileNotFoundError propagates untouched."""
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        raise
    except (OSError, UnicodeDecodeError) as e:
        raise StateCorrupted(f"Cannot read {path.name}: {e}", kind="parse") from e
    try:
        return json.loads(text)
    except json.JSONDecodeError as e:
        raise StateCorrupted(f"Invalid JSON in {path.name}: {e}", kind="parse") from e


def _load_task_state(path: Path) -> TaskState:
    """Load and verify one state document (primary or backup).

    Legacy records without hashes are migrated in memory: a missing
    tasksMdHash is taken from the current task document, and a record
    without stateHash has nothing to verify until the next write seals it.

    Raises:
        FileNotFoundError: Document does not exist.
        StateCorrupted: Parse, schema or hash failure.
    """
    state = TaskState.from_dict(_read_json(path))

    current_tasks_hash = compute_tasks_md_hash()
    if not state.tasks_md_hash:
        log_gate("INFO", f"Migrating legacy state {path.name}: tasksMdHash computed")
        state.tasks_md_hash = current_tasks_hash

    if state.tasks_md_hash != current_tasks_hash:
        raise StateCorrupted(
            "TASKS_HASH_MISMATCH: task document changed since the task was started",
            kind="hash",
            code="TASKS_HASH_MISMATCH",
        )
    if not state.state_hash:
        log_gate("INFO", f"Migrating legacy state {path.name}: stateHash added on next write")
        return state
    if not hmac.compare_digest(state.state_hash, compute_state_hash(state)):
        raise StateCorrupted(
            "STATE_HASH_MISMATCH: state was modified outside the state store",
            kind="hash",
            code="STATE_HASH_MISMATCH",
        )
    return state


def _load_guard_mode(path: Path) -> GuardModeState:
    return GuardModeState.from_dict(_read_json(path))


def _audit_corruption(prefix: str, path: Path, error: StateCorrupted) -> None:
    event = error.code if error.kind == "hash" and error.code else f"{prefix}_CORRUPTED_PARSE"
    append_audit(event, str(error), path=str(path), kind=error.kind)


def _recover_from_backups(prefix: str, path: Path, loader: Callable[[Path], Any], error: StateCorrupted):
    """Restore path from its newest valid backup.

    Returns:
        (value, backup_path) for the recovered document, (value, None) when
        another writer repaired the primary meanwhile, or None when no
        backup validates. A primary removed meanwhile is re-raised as
        FileNotFoundError.

    Raises:
        LockBusy: Lock could not be acquired to publish the repair.
    """
    for backup in backup_paths(path):
        try:
            value = loader(backup)
        except FileNotFoundError:
            continue
        except StateCorrupted as backup_error:
            append_audit(
                f"{prefix}_CORRUPTED_PARSE_BACKUP",
                str(backup_error),
                backup=str(backup),
                kind=backup_error.kind,
            )
            continue

        with state_dir_lock(getattr(value, "active_task_id", None)):
            # Another writer may have repaired or replaced the primary
            try:
                return loader(path), None
            except StateCorrupted:
                pass
            _atomic_write_bytes(path, backup.read_bytes())

        append_audit(
            f"{prefix}_RECOVERED",
            f"Recovered {path.name} from {backup.name} after: {error}",
            path=str(path),
            backup=str(backup),
        )
        log_gate("WARN", f"Recovered {path.name} from {backup.name}")
        return value, str(backup)

    append_audit(f"{prefix}_UNRECOVERABLE", f"No valid backup for {path.name}: {error}", path=str(path))
    return None


def read_state() -> StateResult:
    """Read the active task state without taking the lock.

    Returns:
        StateResult: ok, not_found, recovered (restored from a backup) or
        corrupted (nothing valid found; error carries the primary failure).

    Raises:
        LockBusy: Recovery needed the lock and could not get it.
    """
    path = get_state_path()
    try:
        return StateResult(StateStatus.OK, state=_load_task_state(path))
    except FileNotFoundError:
        return StateResult(StateStatus.NOT_FOUND)
    except StateCorrupted as error:
        _audit_corruption("STATE", path, error)
        log_gate("WARN", f"State corrupted ({error.kind}): {error}")
        try:
            recovered = _recover_from_backups("STATE", path, _load_task_state, error)
        except FileNotFoundError:
            return StateResult(StateStatus.NOT_FOUND)
        if recovered is None:
            return StateResult(StateStatus.CORRUPTED, error=str(error))
        state, backup = recovered
        if backup is None:
            return StateResult(StateStatus.OK, state=state)
        return StateResult(StateStatus.RECOVERED, state=state, from_backup=backup)


def read_guard_mode_state() -> GuardModeState | None:
    """Read the persisted guard mode.

    Returns:
        The record, the newest valid backup when the primary is damaged, or
        None when no guard-mode file exists.

    Raises:
        StateCorrupted: File present but neither it nor a backup is valid.
    """
    path = get_guard_mode_path()
    try:
        return _load_guard_mode(path)
    except FileNotFoundError:
        return None
    except StateCorrupted as error:
        _audit_corruption("GUARD_MODE", path, error)
        try:
            recovered = _recover_from_backups("GUARD_MODE", path, _load_guard_mode, error)
        except FileNotFoundError:
            return None
        if recovered is None:
            raise
        return recovered[0]


# ============================================================
# Writing
# ============================================================


def _seal(state: TaskState) -> TaskState:
    """Return a copy of state with fresh tasksMdHash and stateHash."""
    sealed = dataclasses.replace(state, allowed_scopes=list(state.allowed_scopes), state_hash="")
    sealed.tasks_md_hash = compute_tasks_md_hash()
    try:
        TaskState.from_dict(sealed.to_dict())
    except StateCorrupted as e:
        raise InvalidArguments(str(e)) from e
    sealed.state_hash = compute_state_hash(sealed, create_key=True)
    return sealed


def _write_locked(path: Path, record: dict[str, Any]) -> None:
    """Rotate backups and publish record. Caller holds the lock."""
    rotate_backups(path)
    _atomic_write_json(path, record)


def write_state(state: TaskState) -> TaskState:
    """Persist a task state atomically.

    Under the directory lock: hash the task document, seal the record with
    its HMAC, rotate backups, then temp-write + rename.

    Args:
        state: State to persist; hash fields are recomputed.

    Returns:
        The sealed state as written.

    Raises:
        LockBusy: Lock not acquired.
        InvalidArguments: State fails schema validation.
        OSError: Filesystem failure (audited STATE_WRITE_FAILED).
    """
    path = get_state_path()
    with state_dir_lock(state.active_task_id):
        try:
            sealed = _seal(state)
            _write_locked(path, sealed.to_dict())
        except Exception as e:
            append_audit(
                "STATE_WRITE_FAILED",
                f"{type(e).__name__}: {e}",
                taskId=state.active_task_id,
            )
            raise
    append_audit(
        "STATE_WRITE",
        f"taskId={sealed.active_task_id} by={sealed.started_by}",
        taskId=sealed.active_task_id,
        role=sealed.role.value if sealed.role else None,
    )
    return sealed


def increment_validation_attempts() -> TaskState:
    """Bump validationAttempts on the current state in one lock hold.

    Raises:
        InvalidArguments: No active state.
        StateCorrupted: Primary state does not verify.
        LockBusy: Lock not acquired.
    """
    path = get_state_path()
    with state_dir_lock():
        try:
            current = _load_task_state(path)
        except FileNotFoundError as e:
            raise InvalidArguments("No active task state to update") from e
        bumped = dataclasses.replace(current, validation_attempts=current.validation_attempts + 1)
        sealed = _seal(bumped)
        _write_locked(path, sealed.to_dict())
    append_audit(
        "STATE_WRITE",
        f"taskId={sealed.active_task_id} validationAttempts={sealed.validation_attempts}",
        taskId=sealed.active_task_id,
    )
    return sealed


def clear_state() -> bool:
    """End the active task: remove the state document and its backups.

    Returns:
        True if a primary state document was removed.
    """
    path = get_state_path()
    removed = False
    with state_dir_lock():
        for target in [path] + backup_paths(path):
            try:
                target.unlink()
            except FileNotFoundError:
                continue
            if target == path:
                removed = True
    append_audit("STATE_CLEARED", f"Cleared {path.name} (primary existed: {removed})", path=str(path))
    return removed


def write_guard_mode_state(state: GuardModeState) -> GuardModeState:
    """Persist the guard-mode override with the same lock/backup/rename path."""
    path = get_guard_mode_path()
    record = state.to_dict()
    try:
        GuardModeState.from_dict(record)
    except StateCorrupted as e:
        raise InvalidArguments(str(e)) from e
    with state_dir_lock():
        _write_locked(path, record)
    append_audit(
        "GUARD_MODE_WRITE",
        f"mode={state.mode.value} by={state.updated_by}",
        mode=state.mode.value,
        updatedBy=state.updated_by,
    )
    return state


# ============================================================
# Lock Diagnosis & Force Release
# ============================================================


def diagnose_lock() -> LockDiagnosis:
    """Describe the lock and the JSON health of the primary state file."""
    lock_dir = get_lock_path()
    state_path = get_state_path()
    diagnosis = LockDiagnosis(lock_path=str(lock_dir), locked=lock_dir.is_dir(), state_path=str(state_path))

    if diagnosis.locked:
        try:
            diagnosis.age_seconds = time.time() - lock_dir.stat().st_mtime
        except FileNotFoundError:
            diagnosis.locked = False
        diagnosis.owner = _read_owner(lock_dir)
        diagnosis.owner_readable = diagnosis.owner is not None

    try:
        _read_json(state_path)
        diagnosis.state_status = "valid-json"
    except FileNotFoundError:
        diagnosis.state_status = "missing"
    except StateCorrupted:
        diagnosis.state_status = "invalid-json"
    return diagnosis


def _pid_alive(pid: int) -> bool:
    if sys.platform == "win32":
        return True  # cannot probe safely; treat as alive
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except OSError:
        # EPERM: process exists but belongs to someone else
        return True
    return True


def _owned_by_someone_else(owner: LockOwnership | None) -> bool:
    if owner is None:
        return False
    pid, host = current_owner()
    if owner.host and owner.host != host:
        return True
    if owner.pid == pid:
        return False
    return _pid_alive(owner.pid)


def force_unlock(force: bool = False, override_owner: bool = False) -> ForceUnlockResult:
    """Diagnose and optionally remove the state lock.

    Nothing is removed unless force is True. A lock whose recorded owner is
    a live process (or another host) additionally needs override_owner.

    Returns:
        ForceUnlockResult with the diagnosis taken before any removal.
    """
    diagnosis = diagnose_lock()
    if not diagnosis.locked:
        return ForceUnlockResult(False, "No lock is held.", diagnosis)
    if not force:
        return ForceUnlockResult(False, "Dry run: lock left in place (pass --force to release).", diagnosis)

    if _owned_by_someone_else(diagnosis.owner) and not override_owner:
        owner = diagnosis.owner
        message = (
            f"Lock is owned by pid {owner.pid} on {owner.host}; "
            "pass --override-owner to release it anyway."
        )
        append_audit("LOCK_FORCE_REFUSED", message, lockPath=diagnosis.lock_path, owner=owner.to_dict())
        return ForceUnlockResult(False, message, diagnosis)

    released = _discard_lock_dir(Path(diagnosis.lock_path))
    message = "Lock released." if released else "Lock disappeared before it could be released."
    append_audit(
        "LOCK_FORCE_RELEASED" if released else "LOCK_FORCE_SKIPPED",
        message,
        lockPath=diagnosis.lock_path,
        owner=diagnosis.owner.to_dict() if diagnosis.owner else None,
    )
    return ForceUnlockResult(released, message, diagnosis)
