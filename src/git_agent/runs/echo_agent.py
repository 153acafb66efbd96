"""Local deterministic agent for integration tests and smoke runs.

Writes the task text into a file of the current working directory and can
optionally commit it, sleep, or fail, so every run outcome can be produced
without a real coding agent.
"""

from __future__ import annotations

import argparse
import os
import subprocess
import sys
import time
from pathlib import Path


def main(argv: list[str] | None = None) -> int:
    """Run the echo agent in the current working directory."""

    parser = argparse.ArgumentParser()
    parser.add_argument("task")
    parser.add_argument("--file", default="AGENT_OUTPUT.md")
    parser.add_argument("--commit", action="store_true")
    parser.add_argument("--no-write", action="store_true")
    parser.add_argument("--sleep", type=float, default=0.0)
    parser.add_argument("--exit-code", type=int, default=0)
    args = parser.parse_args(argv)

    if args.sleep > 0:
        time.sleep(args.sleep)

    agent = os.getenv("GIT_AGENT_NAME", "echo")
    print(f"{agent}: {args.task}")
    if args.exit_code != 0:
        print(f"{agent} failing on purpose", file=sys.stderr)
        return int(args.exit_code)
    if args.no_write:
        return 0

    target = Path(args.file)
    target.parent.mkdir(parents=True, exist_ok=True)
    with target.open("a", encoding="utf-8") as handle:
        handle.write(f"{args.task}\n")
    if args.commit:
        subprocess.run(["git", "add", "--", str(target)], check=True)
        subprocess.run(["git", "commit", "--quiet", "-m", f"echo: {args.task}"], check=True)
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
