#!/usr/bin/env python3
"""Diagnose and release a stuck state lock.

Without --force this only prints a report. A lock held by a live process
(or by another host) also needs --override-owner.
"""

import argparse
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent))

from state_store import force_unlock  # noqa: E402


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="force_unlock.py",
        description="Report on the task state lock and optionally remove it.",
    )
    parser.add_argument("--force", action="store_true", help="actually remove the lock")
    parser.add_argument(
        "--override-owner",
        action="store_true",
        help="remove even if the recorded owner process is still alive",
    )
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    try:
        result = force_unlock(force=args.force, override_owner=args.override_owner)
    except OSError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    print(result.diagnosis.report())
    print(result.message)
    if args.force and result.diagnosis.locked and not result.released:
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
