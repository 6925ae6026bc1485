#!/usr/bin/env python3
"""Concurrent writers must serialize: one valid record, no debris.

Threads exercise the lock within one process; subprocesses exercise it
across processes the way parallel hook invocations do.

Run: python -m pytest tests/regression/test_concurrent_writes.py -v
"""
import json
import subprocess
import sys
import threading
import unittest
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))
import _bootstrap  # noqa: F401, E402

from _gate_fixtures import SCRIPTS_DIR, GateTestCase, gate_env, make_state  # noqa: E402
from state_store import (  # noqa: E402
    StateStatus,
    backup_paths,
    get_lock_path,
    get_state_path,
    read_state,
    write_state,
)

WRITERS = 24

_WRITER_SCRIPT = """
import sys
sys.path.insert(0, sys.argv[1])
from state_store import TaskState, write_state
for i in range(3):
    write_state(TaskState(
        active_task_id=f"P-{sys.argv[2]}-{i}",
        active_task_title="subprocess writer",
        allowed_scopes=["src/**"],
        started_at="2026-01-01T00:00:00.000Z",
        started_by="writer",
    ))
"""


class TestConcurrentWrites(GateTestCase):
    env = {"SDD_LOCK_RETRIES": "200", "SDD_LOCK_BACKOFF_MS": "5"}

    def assert_clean_state_dir(self):
        self.assertEqual(list(self.state_dir.glob("*.tmp")), [])
        self.assertEqual(list(self.state_dir.glob(".lock*")), [])
        result = read_state()
        self.assertEqual(result.status, StateStatus.OK)
        return result.state

    def test_threads(self):
        errors = []
        barrier = threading.Barrier(WRITERS)

        def writer(index):
            try:
                barrier.wait()
                write_state(make_state(task_id=f"T-{index}"))
            except Exception as e:  # collected and reported below
                errors.append(e)

        threads = [threading.Thread(target=writer, args=(i,)) for i in range(WRITERS)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=60)

        self.assertEqual(errors, [])
        state = self.assert_clean_state_dir()
        self.assertIn(state.active_task_id, {f"T-{i}" for i in range(WRITERS)})

        for backup in backup_paths(get_state_path()):
            data = json.loads(backup.read_text(encoding="utf-8"))
            self.assertTrue(data["activeTaskId"].startswith("T-"))

        writes = [e for e in self.audit_events() if e == "STATE_WRITE"]
        self.assertEqual(len(writes), WRITERS)

    def test_processes(self):
        env = gate_env(self.worktree, SDD_LOCK_RETRIES=200, SDD_LOCK_BACKOFF_MS=5)
        procs = [
            subprocess.Popen(
                [sys.executable, "-c", _WRITER_SCRIPT, str(SCRIPTS_DIR), str(i)],
                env=env,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
            )
            for i in range(4)
        ]
        for proc in procs:
            _, stderr = proc.communicate(timeout=120)
            self.assertEqual(proc.returncode, 0, stderr)

        state = self.assert_clean_state_dir()
        self.assertTrue(state.active_task_id.startswith("P-"))
        self.assertFalse(get_lock_path().exists())


if __name__ == "__main__":
    unittest.main()
