"""Post-completion inspection of a plan's working directory."""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

_README_NAMES = ("README.md", "README.txt", "README.rst", "readme.md")
_SOURCE_SUFFIXES = frozenset(
    {".js", ".ts", ".tsx", ".jsx", ".py", ".java", ".cpp", ".c", ".go", ".rs", ".php"},
)
_SKIPPED_DIRS = frozenset({".git", "node_modules", ".venv", "__pycache__", ".plan_runner"})
_MAX_SCANNED_FILES = 5_000


@dataclass(slots=True)
class WorkspaceReport:
    """What an agent-produced workspace appears to contain."""

    status: str
    manifests: list[str] = field(default_factory=list)
    has_readme: bool = False
    source_files: int = 0
    buildable: bool = False
    suggested_commands: list[str] = field(default_factory=list)

    def to_details(self) -> dict[str, Any]:
        return asdict(self)


def inspect_workspace(working_directory: Path) -> WorkspaceReport:
    """Check for dependency manifests, a README and source files."""

    if not working_directory.is_dir():
        return WorkspaceReport(status="skipped")

    report = WorkspaceReport(status="inspected")
    package_json = working_directory / "package.json"
    if package_json.is_file():
        report.manifests.append("package.json")
        report.suggested_commands.append("npm install")
        if _has_npm_test_script(package_json):
            report.suggested_commands.append("npm test")
    for name, command in (
        ("pyproject.toml", "pip install -e ."),
        ("requirements.txt", "pip install -r requirements.txt"),
    ):
        if (working_directory / name).is_file():
            report.manifests.append(name)
            report.suggested_commands.append(command)

    report.has_readme = any((working_directory / name).is_file() for name in _README_NAMES)
    report.source_files = _count_source_files(working_directory)
    python_manifest = any(name != "package.json" for name in report.manifests)
    if python_manifest and _has_python_tests(working_directory):
        report.suggested_commands.append("python -m pytest")
    report.buildable = bool(report.manifests) and report.source_files > 0
    return report


def _has_npm_test_script(path: Path) -> bool:
    try:
        payload = json.loads(path.read_text("utf-8"))
    except (OSError, ValueError):
        return False
    scripts = payload.get("scripts") if isinstance(payload, dict) else None
    return isinstance(scripts, dict) and "test" in scripts


def _has_python_tests(root: Path) -> bool:
    return (root / "tests").is_dir() or any(root.glob("test_*.py"))


def _count_source_files(root: Path) -> int:
    count = 0
    scanned = 0
    for path in root.rglob("*"):
        if any(part in _SKIPPED_DIRS for part in path.relative_to(root).parts):
            continue
        scanned += 1
        if scanned > _MAX_SCANNED_FILES:
            break
        if path.is_file() and path.suffix in _SOURCE_SUFFIXES:
            count += 1
    return count
