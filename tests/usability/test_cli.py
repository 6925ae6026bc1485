#!/usr/bin/env python3
"""Tests for the operator commands: set_guard_mode.py and force_unlock.py.

Run: python -m pytest tests/usability/test_cli.py -v
"""
import io
import json
import os
import socket
import sys
import unittest
from contextlib import redirect_stderr, redirect_stdout
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))
import _bootstrap  # noqa: F401, E402

import force_unlock as force_unlock_cli  # noqa: E402
import set_guard_mode as set_guard_mode_cli  # noqa: E402
from _gate_fixtures import GateTestCase, make_state  # noqa: E402
from state_store import GuardMode, get_lock_path, read_guard_mode_state, write_state  # noqa: E402


def _run(main, argv):
    out = io.StringIO()
    with redirect_stdout(out):
        code = main(argv)
    return code, out.getvalue()


class TestSetGuardModeCommand(GateTestCase):
    def test_sets_mode(self):
        code, output = _run(set_guard_mode_cli.main, ["warn", "--by", "alice"])
        self.assertEqual(code, 0)
        self.assertIn("Guard mode set to warn (by alice", output)
        state = read_guard_mode_state()
        self.assertEqual(state.mode, GuardMode.WARN)
        self.assertEqual(state.updated_by, "alice")

    def test_notes_stricter_env(self):
        os.environ["SDD_GUARD_MODE"] = "block"
        code, output = _run(set_guard_mode_cli.main, ["disabled"])
        self.assertEqual(code, 0)
        self.assertIn("SDD_GUARD_MODE=block is stricter", output)

    def test_rejects_unknown_mode(self):
        with redirect_stderr(io.StringIO()):
            with self.assertRaises(SystemExit) as ctx:
                set_guard_mode_cli.main(["strict"])
        self.assertEqual(ctx.exception.code, 2)
        self.assertIsNone(read_guard_mode_state())


class TestForceUnlockCommand(GateTestCase):
    def hold_lock(self, pid=None, host=None):
        lock = get_lock_path()
        lock.mkdir(parents=True)
        if pid is not None:
            owner = {"taskId": "T-1", "pid": pid, "host": host, "startedAt": "2026-01-01T00:00:00.000Z"}
            (lock / ".lock-info.json").write_text(json.dumps(owner), encoding="utf-8")
        return lock

    def test_no_lock(self):
        code, output = _run(force_unlock_cli.main, [])
        self.assertEqual(code, 0)
        self.assertIn("status: not held", output)
        self.assertIn("No lock is held.", output)

    def test_dry_run_reports_and_keeps_lock(self):
        write_state(make_state())
        lock = self.hold_lock(pid=os.getpid(), host=socket.gethostname())
        code, output = _run(force_unlock_cli.main, [])
        self.assertEqual(code, 0)
        self.assertIn("status: HELD", output)
        self.assertIn(f"pid={os.getpid()}", output)
        self.assertIn("json: valid-json", output)
        self.assertIn("Dry run", output)
        self.assertTrue(lock.exists())

    def test_force_releases_own_lock(self):
        lock = self.hold_lock(pid=os.getpid(), host=socket.gethostname())
        code, output = _run(force_unlock_cli.main, ["--force"])
        self.assertEqual(code, 0)
        self.assertIn("Lock released.", output)
        self.assertFalse(lock.exists())
        self.assertIn("LOCK_FORCE_RELEASED", self.audit_events())

    def test_force_releases_ownerless_lock(self):
        lock = self.hold_lock()
        code, output = _run(force_unlock_cli.main, ["--force"])
        self.assertEqual(code, 0)
        self.assertIn("owner: unknown", output)
        self.assertFalse(lock.exists())

    def test_foreign_owner_needs_override(self):
        lock = self.hold_lock(pid=4242, host="some-other-host")
        code, output = _run(force_unlock_cli.main, ["--force"])
        self.assertEqual(code, 1)
        self.assertIn("--override-owner", output)
        self.assertTrue(lock.exists())
        self.assertIn("LOCK_FORCE_REFUSED", self.audit_events())

        code, output = _run(force_unlock_cli.main, ["--force", "--override-owner"])
        self.assertEqual(code, 0)
        self.assertFalse(lock.exists())

    def test_released_lock_can_be_taken_again(self):
        self.hold_lock(pid=os.getpid(), host=socket.gethostname())
        _run(force_unlock_cli.main, ["--force"])
        os.environ["SDD_LOCK_RETRIES"] = "0"
        write_state(make_state())
        self.assertFalse(get_lock_path().exists())


if __name__ == "__main__":
    unittest.main()
