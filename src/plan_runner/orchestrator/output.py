"""Agent output cleaning and line categorization."""

from __future__ import annotations

import re
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum

_MAX_LINE_CHARS = 2_000

_Replacement = str | Callable[[re.Match[str]], str]

_REDACTIONS: tuple[tuple[re.Pattern[str], _Replacement], ...] = (
    (
        re.compile(r"(?i)\b(bearer)\s+[a-z0-9._\-]{8,}\b"),
        r"\1 [redacted-token]",
    ),
    (
        re.compile(r"(?i)\b(sk-[a-z0-9\-]{8,})\b"),
        "[redacted-token]",
    ),
    (
        re.compile(
            r"(?i)\b(openai|anthropic|gemini|goose|github)[a-z0-9_]*_?(api_)?(key|token)\b"
            r"\s*[:=]\s*['\"]?[^'\" \n\r\t]+['\"]?",
        ),
        "[redacted-secret]",
    ),
    (
        re.compile(r"(?i)([?&](?:token|key|signature|auth)=[^&\s]+)"),
        lambda match: match.group(1).split("=")[0] + "=[redacted]",
    ),
)

_SESSION_PREFIX_RE = re.compile(r"^\[[\w-]+\]\s*")
_TIMESTAMP_PREFIX_RE = re.compile(r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}(?:\.\d+)?Z?\s*")

_PROGRESS_MARKERS = ("Starting", "Completed", "Creating", "Writing", "Progress:", "%")
_ERROR_MARKERS = ("Error:", "Failed:", "Warning:", "Traceback")
_TASK_MARKERS = ("Task:", "Working on:", "Analyzing", "Building")


class OutputCategory(str, Enum):
    PROGRESS = "progress"
    ERROR = "error"
    TASK = "task"
    DEBUG = "debug"


@dataclass(slots=True)
class OutputLine:
    """One categorized line of agent output."""

    stream: str
    category: OutputCategory
    important: bool
    text: str


def clean_line(text: str, *, max_chars: int = _MAX_LINE_CHARS) -> str:
    """Strip session/timestamp prefixes, redact obvious secrets, clamp size."""

    compact = text.strip()
    compact = _SESSION_PREFIX_RE.sub("", compact)
    compact = _TIMESTAMP_PREFIX_RE.sub("", compact).strip()
    for pattern, replacement in _REDACTIONS:
        compact = pattern.sub(replacement, compact)
    return compact[:max_chars]


def categorize_line(raw: str, *, stream: str = "stdout") -> OutputLine:
    trimmed = raw.strip()
    # Bare timestamps and session-id echoes carry no content of their own.
    if (
        not trimmed
        or _TIMESTAMP_PREFIX_RE.fullmatch(trimmed)
        or _SESSION_PREFIX_RE.fullmatch(trimmed)
    ):
        return OutputLine(stream=stream, category=OutputCategory.DEBUG, important=False, text="")

    text = clean_line(trimmed)
    if _contains_any(text, _ERROR_MARKERS):
        category, important = OutputCategory.ERROR, True
    elif _contains_any(text, _PROGRESS_MARKERS):
        category, important = OutputCategory.PROGRESS, True
    elif _contains_any(text, _TASK_MARKERS):
        category, important = OutputCategory.TASK, True
    else:
        category, important = OutputCategory.DEBUG, False
    return OutputLine(stream=stream, category=category, important=important, text=text)


class LineSplitter:
    """Reassemble stream chunks into complete lines."""

    def __init__(self) -> None:
        self._pending = ""

    def feed(self, chunk: str) -> list[str]:
        data = self._pending + chunk
        *lines, self._pending = data.replace("\r\n", "\n").split("\n")
        return lines

    def flush(self) -> list[str]:
        if not self._pending:
            return []
        rest, self._pending = self._pending, ""
        return [rest]


def _contains_any(text: str, markers: tuple[str, ...]) -> bool:
    return any(marker in text for marker in markers)
