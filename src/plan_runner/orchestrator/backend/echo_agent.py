"""Local scriptable agent for CLI backend integration tests.

Behaviour is driven by ``agent:key=value`` directives found in the
instructions text, so every subtask of a plan can ask for a different run:

- ``agent:exit=N``    exit with status N
- ``agent:work=S``    keep printing progress for S seconds
- ``agent:silent=S``  sleep S seconds without output
- ``agent:touch=NAME`` write NAME into the working directory
- ``agent:require=NAME`` fail unless NAME already exists in the working directory
"""

from __future__ import annotations

import argparse
import os
import re
import sys
import time
from pathlib import Path

_DIRECTIVE_RE = re.compile(r"agent:(exit|work|silent|touch|require)=([\w.\-]+)")
_WORK_TICK_SECONDS = 0.2


def parse_directives(text: str) -> dict[str, list[str]]:
    directives: dict[str, list[str]] = {}
    for key, value in _DIRECTIVE_RE.findall(text):
        directives.setdefault(key, []).append(value)
    return directives


def main(argv: list[str] | None = None) -> int:
    """Run a deterministic agent session."""

    parser = argparse.ArgumentParser()
    parser.add_argument("--instructions-file", required=True)
    parser.add_argument("--session", default="")
    args = parser.parse_args(argv)

    instructions = Path(args.instructions_file).read_text("utf-8")
    directives = parse_directives(instructions)
    workdir = Path.cwd()
    subtask_id = os.getenv("PLAN_RUNNER_SUBTASK_ID", "unknown")

    print(f"Starting session {args.session} for {subtask_id}", flush=True)

    for name in directives.get("require", []):
        if not (workdir / name).exists():
            print(f"Error: missing prerequisite {name}", file=sys.stderr, flush=True)
            return 3

    for raw_seconds in directives.get("work", []):
        deadline = time.monotonic() + float(raw_seconds)
        tick = 0
        while time.monotonic() < deadline:
            tick += 1
            print(f"Progress: step {tick}", flush=True)
            time.sleep(_WORK_TICK_SECONDS)

    for raw_seconds in directives.get("silent", []):
        time.sleep(float(raw_seconds))

    for name in directives.get("touch", []):
        (workdir / name).write_text(f"{subtask_id}\n", "utf-8")
        print(f"Writing {name}", flush=True)

    exit_code = int(directives.get("exit", ["0"])[-1])
    if exit_code != 0:
        print(f"Failed: exiting with status {exit_code}", file=sys.stderr, flush=True)
        return exit_code

    print(f"Completed {subtask_id}", flush=True)
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
