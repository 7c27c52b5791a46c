"""Agent instruction synthesis and per-subtask worker selection."""

from __future__ import annotations

import re
from pathlib import Path

from plan_runner.orchestrator.models import Subtask, WorkerKind

_WORKER_KIND_BY_TYPE: dict[str, WorkerKind] = {
    "frontend": WorkerKind.CODE_GENERATOR,
    "backend": WorkerKind.CODE_GENERATOR,
    "database": WorkerKind.CODE_GENERATOR,
    "development": WorkerKind.CODE_GENERATOR,
    "testing": WorkerKind.TESTER,
    "documentation": WorkerKind.DOCUMENTATION,
    "integration": WorkerKind.DEPLOYMENT,
}

COMPLEXITY_KEYWORDS: tuple[str, ...] = (
    "complete",
    "full",
    "entire",
    "comprehensive",
    "build",
    "deploy",
    "frontend",
    "backend",
    "database",
    "authentication",
    "api",
)
_COMPLEXITY_KEYWORD_THRESHOLD = 2
_WORD_RE = re.compile(r"[a-z]+")


def worker_kind_for(subtask: Subtask) -> WorkerKind:
    return _WORKER_KIND_BY_TYPE.get(subtask.subtask_type.lower(), WorkerKind.CODE_GENERATOR)


def is_high_complexity(subtask: Subtask) -> bool:
    """Explicit flag, or at least two complexity keywords in the subtask text."""

    if subtask.high_complexity:
        return True
    words = set(_WORD_RE.findall(f"{subtask.name} {subtask.description}".lower()))
    matches = sum(1 for keyword in COMPLEXITY_KEYWORDS if keyword in words)
    return matches >= _COMPLEXITY_KEYWORD_THRESHOLD


def build_instructions(
    *,
    task_description: str,
    subtask: Subtask,
    working_directory: Path,
) -> str:
    """Compose the text handed to the external agent for one subtask."""

    dependency_line = (
        ", ".join(subtask.dependencies) if subtask.dependencies else "none (first wave)"
    )
    return (
        "You are working on one subtask of a larger project. "
        "Other agents handle the remaining subtasks.\n"
        "\n"
        f"Original task: {task_description}\n"
        "\n"
        f"Your subtask: {subtask.name}\n"
        f"Description: {subtask.description or subtask.name}\n"
        f"Type: {subtask.subtask_type}\n"
        f"Priority: {subtask.priority}\n"
        f"Completed prerequisites: {dependency_line}\n"
        f"Working directory: {working_directory}\n"
        "\n"
        "Requirements:\n"
        "1. Produce a complete, buildable implementation of this subtask only.\n"
        "2. Include every file, dependency manifest and configuration it needs.\n"
        "3. Document setup and usage in README.md.\n"
        "4. Add basic tests that exercise the functionality.\n"
        "\n"
        "Do not start servers or other long-running processes. "
        "Create the files and exit when the subtask is done.\n"
    )
