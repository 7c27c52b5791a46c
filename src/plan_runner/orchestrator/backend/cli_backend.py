"""Subprocess-based backend runner for CLI agents."""

from __future__ import annotations

import codecs
import logging
import os
import shlex
import subprocess
import threading
import time
from collections.abc import Callable
from pathlib import Path
from typing import BinaryIO

from plan_runner.orchestrator.backend.base import BackendRunRequest, BackendRunResult
from plan_runner.orchestrator.models import TerminationReason

logger = logging.getLogger(__name__)

_READ_CHUNK_BYTES = 4096
_READER_JOIN_SECONDS = 2.0


class BackendRunError(RuntimeError):
    """Backend execution error with retryability hint."""

    def __init__(self, message: str, *, transient: bool) -> None:
        super().__init__(message)
        self.transient = transient


class CliAgentBackend:
    """Execute the agent command template as one subprocess per request."""

    def run(self, request: BackendRunRequest) -> BackendRunResult:
        request.stdout_path.parent.mkdir(parents=True, exist_ok=True)
        request.stderr_path.parent.mkdir(parents=True, exist_ok=True)
        request.working_directory.mkdir(parents=True, exist_ok=True)

        run_args = build_run_args(
            command_template=request.command_template,
            instructions=request.instructions,
            instructions_file=request.instructions_file,
            session_name=request.session_name,
            working_directory=request.working_directory,
        )

        env = os.environ.copy()
        env.update(request.env)
        env["PLAN_RUNNER_SESSION"] = request.session_name

        try:
            with (
                request.stdout_path.open("wb") as stdout_handle,
                request.stderr_path.open("wb") as stderr_handle,
            ):
                return _run_subprocess(
                    run_args=run_args,
                    request=request,
                    env=env,
                    stdout_handle=stdout_handle,
                    stderr_handle=stderr_handle,
                )
        except FileNotFoundError as error:
            raise BackendRunError(
                f"Agent command not found: {run_args[0]}",
                transient=False,
            ) from error
        except PermissionError as error:
            raise BackendRunError(
                f"Agent command is not executable: {run_args[0]}",
                transient=False,
            ) from error
        except OSError as error:
            raise BackendRunError(
                f"Agent process failed to start: {error}",
                transient=True,
            ) from error


def build_run_args(
    *,
    command_template: str,
    instructions: str,
    instructions_file: Path,
    session_name: str,
    working_directory: Path,
) -> list[str]:
    """Render the command template into an argv list."""

    stripped = command_template.strip()
    if not stripped:
        raise BackendRunError("Agent command template is empty.", transient=False)
    if "{instructions}" not in stripped and "{instructions_file}" not in stripped:
        raise BackendRunError(
            "Agent command template must include {instructions} or {instructions_file}.",
            transient=False,
        )

    try:
        rendered = stripped.format(
            instructions=shlex.quote(instructions),
            instructions_file=shlex.quote(str(instructions_file)),
            session=shlex.quote(session_name),
            workdir=shlex.quote(str(working_directory)),
        )
    except (KeyError, IndexError) as error:
        raise BackendRunError(
            f"Unsupported command template placeholder: {error}",
            transient=False,
        ) from error

    argv = shlex.split(rendered)
    if not argv:
        raise BackendRunError(
            "Agent command template rendered empty command.",
            transient=False,
        )
    return argv


def _run_subprocess(
    *,
    run_args: list[str],
    request: BackendRunRequest,
    env: dict[str, str],
    stdout_handle: BinaryIO,
    stderr_handle: BinaryIO,
) -> BackendRunResult:
    process = subprocess.Popen(  # noqa: S603
        run_args,
        cwd=request.working_directory,
        env=env,
        stdin=subprocess.DEVNULL,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
    )
    start_monotonic = time.monotonic()
    logger.debug("Spawned agent pid=%s session=%s", process.pid, request.session_name)
    if request.on_spawn is not None:
        request.on_spawn(process.pid)

    readers = [
        _start_reader(process.stdout, "stdout", stdout_handle, request.on_output),
        _start_reader(process.stderr, "stderr", stderr_handle, request.on_output),
    ]
    terminated: TerminationReason | None = None
    forced_kill = False
    try:
        while process.poll() is None:
            reason = request.termination_check() if request.termination_check else None
            if reason is not None:
                logger.info(
                    "Terminating agent pid=%s session=%s reason=%s",
                    process.pid,
                    request.session_name,
                    reason.value,
                )
                terminated = reason
                forced_kill = terminate_process(
                    process,
                    graceful_seconds=request.graceful_shutdown_seconds,
                )
                break
            time.sleep(request.poll_interval_seconds)
    finally:
        if process.poll() is None:
            forced_kill = terminate_process(
                process,
                graceful_seconds=request.graceful_shutdown_seconds,
            )
        for reader in readers:
            reader.join(timeout=_READER_JOIN_SECONDS)

    return BackendRunResult(
        exit_code=process.returncode,
        stdout_path=request.stdout_path,
        stderr_path=request.stderr_path,
        duration_seconds=time.monotonic() - start_monotonic,
        terminated=terminated,
        forced_kill=forced_kill,
    )


def _start_reader(
    pipe: BinaryIO | None,
    stream: str,
    sink: BinaryIO,
    on_output: Callable[[str, str], None] | None,
) -> threading.Thread:
    thread = threading.Thread(
        target=_pump_stream,
        args=(pipe, stream, sink, on_output),
        name=f"agent-{stream}-reader",
        daemon=True,
    )
    thread.start()
    return thread


def _pump_stream(
    pipe: BinaryIO | None,
    stream: str,
    sink: BinaryIO,
    on_output: Callable[[str, str], None] | None,
) -> None:
    if pipe is None:
        return
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    try:
        for chunk in iter(lambda: pipe.read1(_READ_CHUNK_BYTES), b""):  # type: ignore[attr-defined]
            sink.write(chunk)
            sink.flush()
            if on_output is None:
                continue
            try:
                on_output(stream, decoder.decode(chunk))
            except Exception:  # noqa: BLE001
                logger.exception("Agent output handler failed for %s chunk", stream)
    except (OSError, ValueError):
        logger.debug("Agent %s pipe closed while reading", stream)
    finally:
        pipe.close()


def terminate_process(process: subprocess.Popen[bytes], *, graceful_seconds: float) -> bool:
    """Terminate, wait the grace period, then kill. Returns True when kill was needed."""

    try:
        process.terminate()
    except OSError:
        return False
    try:
        process.wait(timeout=max(0.0, graceful_seconds))
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return False
        process.wait(timeout=5)
        return True
    return False
