"""Per-session run directory layout for agent executions."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any

from plan_runner.orchestrator.contracts import write_json


@dataclass(slots=True)
class MaterializedSession:
    """Paths prepared for one agent process."""

    base_dir: Path
    instructions_path: Path
    stdout_path: Path
    stderr_path: Path
    meta_path: Path


class SubtaskWorkdirManager:
    """Creates deterministic per-session directory layout."""

    def __init__(self, root_dir: Path) -> None:
        self.root_dir = root_dir

    def materialize(
        self,
        *,
        plan_id: str,
        subtask_id: str,
        session_name: str,
        instructions: str,
        meta: dict[str, Any],
    ) -> MaterializedSession:
        base_dir = self.root_dir / plan_id / subtask_id / session_name
        input_dir = base_dir / "input"
        output_dir = base_dir / "output"
        input_dir.mkdir(parents=True, exist_ok=True)
        output_dir.mkdir(parents=True, exist_ok=True)

        instructions_path = input_dir / "instructions.txt"
        instructions_path.write_text(instructions, "utf-8")
        meta_path = base_dir / "session.json"
        write_json(meta_path, meta)

        return MaterializedSession(
            base_dir=base_dir,
            instructions_path=instructions_path,
            stdout_path=output_dir / "agent_stdout.log",
            stderr_path=output_dir / "agent_stderr.log",
            meta_path=meta_path,
        )
