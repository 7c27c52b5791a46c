from __future__ import annotations

import shlex
import sys
import threading
from pathlib import Path

import allure
import pytest

from plan_runner.orchestrator.backend import BackendRunError, BackendRunRequest, CliAgentBackend
from plan_runner.orchestrator.backend.cli_backend import build_run_args
from plan_runner.orchestrator.backend.echo_agent import parse_directives
from plan_runner.orchestrator.models import TerminationReason

pytestmark = [
    allure.epic("Plan Runtime"),
    allure.feature("CLI Agent Backend"),
]


def _request(tmp_path: Path, template: str, instructions: str, **overrides) -> BackendRunRequest:
    instructions_file = tmp_path / "input" / "instructions.txt"
    instructions_file.parent.mkdir(parents=True, exist_ok=True)
    instructions_file.write_text(instructions, "utf-8")
    fields = {
        "instructions": instructions,
        "instructions_file": instructions_file,
        "working_directory": tmp_path / "ws",
        "session_name": "session-1",
        "command_template": template,
        "stdout_path": tmp_path / "output" / "agent_stdout.log",
        "stderr_path": tmp_path / "output" / "agent_stderr.log",
        "graceful_shutdown_seconds": 1.0,
        "poll_interval_seconds": 0.05,
    }
    fields.update(overrides)
    return BackendRunRequest(**fields)


def test_build_run_args_quotes_placeholders() -> None:
    argv = build_run_args(
        command_template="agent --text {instructions} --name {session} --dir {workdir}",
        instructions="build it; rm -rf /",
        instructions_file=Path("in.txt"),
        session_name="s 1",
        working_directory=Path("/tmp/my dir"),
    )

    assert argv == [
        "agent",
        "--text",
        "build it; rm -rf /",
        "--name",
        "s 1",
        "--dir",
        "/tmp/my dir",
    ]


@pytest.mark.parametrize(
    ("template", "message"),
    [
        ("", "empty"),
        ("agent --name {session}", "must include"),
        ("agent {instructions} --model {model}", "Unsupported command template placeholder"),
    ],
)
def test_build_run_args_rejects_bad_templates(template: str, message: str) -> None:
    with pytest.raises(BackendRunError, match=message) as error:
        build_run_args(
            command_template=template,
            instructions="x",
            instructions_file=Path("in.txt"),
            session_name="s",
            working_directory=Path("."),
        )

    assert error.value.transient is False


def test_parse_directives_collects_repeated_keys() -> None:
    directives = parse_directives("agent:touch=a.txt then agent:touch=b.txt agent:exit=2")

    assert directives == {"touch": ["a.txt", "b.txt"], "exit": ["2"]}


def test_echo_agent_run_captures_output(tmp_path: Path, echo_command_template: str) -> None:
    chunks: list[str] = []
    spawned: list[int] = []
    request = _request(
        tmp_path,
        echo_command_template,
        "agent:touch=result.txt",
        on_output=lambda stream, text: chunks.append(text),
        on_spawn=spawned.append,
    )

    result = CliAgentBackend().run(request)

    assert result.exit_code == 0
    assert result.terminated is None
    assert len(spawned) == 1
    assert (tmp_path / "ws" / "result.txt").is_file()
    stdout = result.stdout_path.read_text("utf-8")
    assert "Starting session session-1" in stdout
    assert "Writing result.txt" in stdout
    assert "Writing result.txt" in "".join(chunks)


def test_echo_agent_nonzero_exit_is_reported(tmp_path: Path, echo_command_template: str) -> None:
    result = CliAgentBackend().run(_request(tmp_path, echo_command_template, "agent:exit=5"))

    assert result.exit_code == 5
    assert "Failed: exiting with status 5" in result.stderr_path.read_text("utf-8")


def test_termination_check_stops_the_process(tmp_path: Path, echo_command_template: str) -> None:
    request = _request(
        tmp_path,
        echo_command_template,
        "agent:work=30",
        termination_check=lambda: TerminationReason.CANCELED,
    )

    result = CliAgentBackend().run(request)

    assert result.terminated is TerminationReason.CANCELED
    assert result.exit_code != 0
    assert result.duration_seconds < 20


def test_agent_ignoring_terminate_is_killed_after_grace(tmp_path: Path) -> None:
    script = tmp_path / "stubborn_agent.py"
    script.write_text(
        "import signal, time\n"
        "signal.signal(signal.SIGTERM, signal.SIG_IGN)\n"
        "print('ready', flush=True)\n"
        "time.sleep(30)\n",
        "utf-8",
    )
    ready = threading.Event()

    def on_output(stream: str, text: str) -> None:
        if "ready" in text:
            ready.set()

    request = _request(
        tmp_path,
        f"{shlex.quote(sys.executable)} {shlex.quote(str(script))} {{instructions_file}}",
        "ignore terminate",
        graceful_shutdown_seconds=0.5,
        on_output=on_output,
        termination_check=lambda: TerminationReason.CANCELED if ready.is_set() else None,
    )

    result = CliAgentBackend().run(request)

    assert ready.is_set()
    assert result.terminated is TerminationReason.CANCELED
    assert result.forced_kill is True
    assert result.exit_code != 0
    assert result.duration_seconds < 20


def test_missing_binary_is_a_permanent_spawn_error(tmp_path: Path) -> None:
    request = _request(tmp_path, "plan-runner-no-such-agent {instructions_file}", "x")

    with pytest.raises(BackendRunError, match="not found") as error:
        CliAgentBackend().run(request)

    assert error.value.transient is False
