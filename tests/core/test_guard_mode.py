#!/usr/bin/env python3
"""Tests for guard-mode resolution (strictest source wins).

Run:
    python -m pytest tests/core/test_guard_mode.py -v
"""

import itertools
import os
import shutil
import sys
import tempfile
import unittest
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))
import _bootstrap  # noqa: F401, E402

from _gate_fixtures import GateTestCase  # noqa: E402
from _gate_utils import InvalidArguments  # noqa: E402
from guard_mode import (  # noqa: E402
    load_effective_guard_mode,
    mode_rank,
    parse_guard_mode,
    resolve_guard_mode,
    set_guard_mode,
)
from state_store import GuardMode, GuardModeState, get_guard_mode_path, read_guard_mode_state  # noqa: E402

MODES = [GuardMode.DISABLED, GuardMode.WARN, GuardMode.BLOCK]


def _file(mode):
    return GuardModeState(mode=mode, updated_at="2026-01-01T00:00:00.000Z", updated_by="owner")


class TestParse(unittest.TestCase):
    def test_lenient(self):
        self.assertEqual(parse_guard_mode(" Block "), GuardMode.BLOCK)
        self.assertEqual(parse_guard_mode(GuardMode.WARN), GuardMode.WARN)
        self.assertIsNone(parse_guard_mode(None))
        self.assertIsNone(parse_guard_mode(""))

    def test_unknown_value_ignored(self):
        self.assertIsNone(parse_guard_mode("strict"))


class TestResolve(GateTestCase):
    def test_never_weaker_than_either_source(self):
        for env_mode, file_mode in itertools.product(MODES + [None], MODES + [None]):
            with self.subTest(env=env_mode, file=file_mode):
                file_state = _file(file_mode) if file_mode else None
                effective = resolve_guard_mode(env_mode, file_state)
                if env_mode is not None:
                    self.assertGreaterEqual(mode_rank(effective), mode_rank(env_mode))
                if file_mode is not None:
                    self.assertGreaterEqual(mode_rank(effective), mode_rank(file_mode))

    def test_idempotent(self):
        for env_mode, file_mode in itertools.product(MODES, MODES):
            with self.subTest(env=env_mode, file=file_mode):
                once = resolve_guard_mode(env_mode, _file(file_mode))
                self.assertEqual(resolve_guard_mode(once, _file(file_mode)), once)

    def test_both_absent_is_disabled(self):
        self.assertEqual(resolve_guard_mode(None, None), GuardMode.DISABLED)
        self.assertIn("FAIL_CLOSED", self.audit_events())

    def test_request_used_without_file(self):
        self.assertEqual(resolve_guard_mode("warn", None), GuardMode.WARN)

    def test_request_cannot_weaken_file(self):
        self.assertEqual(resolve_guard_mode("warn", _file(GuardMode.BLOCK)), GuardMode.BLOCK)
        self.assertIn("DENIED_WEAKENING", self.audit_events())

    def test_request_can_strengthen_file(self):
        self.assertEqual(resolve_guard_mode("block", _file(GuardMode.WARN)), GuardMode.BLOCK)
        self.assertNotIn("DENIED_WEAKENING", self.audit_events())

    def test_invalid_request_ignored(self):
        self.assertEqual(resolve_guard_mode("off", _file(GuardMode.WARN)), GuardMode.WARN)


class TestLoadEffective(GateTestCase):
    def test_env_only(self):
        os.environ["SDD_GUARD_MODE"] = "warn"
        self.assertEqual(load_effective_guard_mode(), GuardMode.WARN)

    def test_nothing_configured(self):
        self.assertEqual(load_effective_guard_mode(), GuardMode.DISABLED)

    def test_file_overrides_weaker_env(self):
        set_guard_mode("block", updated_by="owner")
        self.assertEqual(load_effective_guard_mode("disabled"), GuardMode.BLOCK)

    def test_corrupted_file_enforces_block(self):
        self.state_dir.mkdir(parents=True)
        get_guard_mode_path().write_text("garbage", encoding="utf-8")
        self.assertEqual(load_effective_guard_mode("disabled"), GuardMode.BLOCK)
        self.assertIn("FAIL_CLOSED", self.audit_events())

    @unittest.skipIf(sys.platform == "win32", "symlinks need privileges on Windows")
    def test_file_linked_outside_enforces_block(self):
        outside = Path(tempfile.mkdtemp(prefix="gate_outside_"))
        self.addCleanup(shutil.rmtree, outside, True)
        target = outside / "guard-mode.json"
        target.write_text('{"mode": "disabled"}', encoding="utf-8")
        self.state_dir.mkdir(parents=True)
        os.symlink(target, self.state_dir / "guard-mode.json")
        self.assertEqual(load_effective_guard_mode("disabled"), GuardMode.BLOCK)
        self.assertIn("FAIL_CLOSED", self.audit_events())


class TestSetGuardMode(GateTestCase):
    def test_persists(self):
        state = set_guard_mode("WARN", updated_by="alice")
        self.assertEqual(state.mode, GuardMode.WARN)
        self.assertEqual(read_guard_mode_state(), state)

    def test_default_updated_by(self):
        os.environ["USER"] = "bob"
        self.assertEqual(set_guard_mode(GuardMode.BLOCK).updated_by, "bob")

    def test_invalid_mode(self):
        with self.assertRaises(InvalidArguments):
            set_guard_mode("strict")
        self.assertFalse(get_guard_mode_path().exists())


if __name__ == "__main__":
    unittest.main()
