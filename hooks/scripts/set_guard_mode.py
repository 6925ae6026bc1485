#!/usr/bin/env python3
"""Set the persisted (file-level) guard mode.

Usage:
    set_guard_mode.py block
    set_guard_mode.py warn --by alice

The request-level SDD_GUARD_MODE can only tighten what is set here.
"""

import argparse
import os
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent))

from _gate_utils import GateError  # noqa: E402
from guard_mode import mode_rank, parse_guard_mode, set_guard_mode  # noqa: E402
from state_store import GuardMode  # noqa: E402


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="set_guard_mode.py",
        description="Persist the task-scope guard mode for this worktree.",
    )
    parser.add_argument("mode", choices=[m.value for m in GuardMode], help="new file-level mode")
    parser.add_argument("--by", dest="updated_by", default=None, help="recorded author (default: $USER)")
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    try:
        state = set_guard_mode(args.mode, args.updated_by)
    except (GateError, OSError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    print(f"Guard mode set to {state.mode.value} (by {state.updated_by} at {state.updated_at})")
    env_mode = parse_guard_mode(os.environ.get("SDD_GUARD_MODE"))
    if env_mode is not None and mode_rank(env_mode) > mode_rank(state.mode):
        print(f"Note: SDD_GUARD_MODE={env_mode.value} is stricter and still applies.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
