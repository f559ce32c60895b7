"""Execution backends: shell, interpreted script and reasoning agent.

All three share one contract: take an entity plus its labeled inputs, run the
payload in the workspace directory and hand back an ``ExecutionResult``. Shell
and script runs are bounded by a wall-clock timeout and a per-stream output
cap; the reasoning agent manages its own budget.
"""

from __future__ import annotations

import json
import os
import re
import signal
import subprocess
import tempfile
import threading
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import IO, Any, Protocol

from .errors import UnknownExecutionModeError
from .models import LEAF_MODES, ExecutionMode, PlanningEntity

MAX_OUTPUT_BYTES = 1 << 20
DEFAULT_EXEC_TIMEOUT_SEC = 600
TIMEOUT_EXIT_CODE = 124
LAUNCH_FAILURE_EXIT_CODE = 127
NO_CODE_EXIT_CODE = 1
INPUT_ERROR_EXIT_CODE = 1
PREVIOUS_SIBLING_LABEL = "prev"
_READ_CHUNK = 64 * 1024


class FailureCause(str, Enum):
    NONE = "none"
    NO_CODE = "no_code"
    INPUT_COLLISION = "input_collision"
    TIMEOUT = "timeout"
    NONZERO_EXIT = "nonzero_exit"
    LAUNCH = "launch"


@dataclass(frozen=True)
class ExecutionResult:
    success: bool
    stdout: str = ""
    stderr: str = ""
    exit_code: int = 0
    error: str = ""
    cause: FailureCause = FailureCause.NONE
    duration_ms: int = 0
    truncated: bool = False


class CappedBuffer:
    """Keeps the first ``limit`` bytes written and counts the rest."""

    def __init__(self, limit: int | None):
        self.limit = limit
        self.dropped = 0
        self._chunks: list[bytes] = []
        self._size = 0

    def write(self, data: bytes) -> None:
        if self.limit is None:
            self._chunks.append(data)
            self._size += len(data)
            return
        room = self.limit - self._size
        if room <= 0:
            self.dropped += len(data)
            return
        kept = data[:room]
        self._chunks.append(kept)
        self._size += len(kept)
        self.dropped += len(data) - len(kept)

    def getvalue(self) -> bytes:
        return b"".join(self._chunks)

    def text(self) -> str:
        return self.getvalue().decode("utf-8", errors="replace")


def _drain(stream: IO[bytes], sink: CappedBuffer) -> None:
    try:
        while True:
            chunk = stream.read(_READ_CHUNK)
            if not chunk:
                break
            sink.write(chunk)
    finally:
        stream.close()


def _kill_tree(process: subprocess.Popen) -> None:
    if os.name != "nt":
        try:
            os.killpg(process.pid, signal.SIGKILL)
            return
        except (ProcessLookupError, PermissionError):
            pass
    process.kill()


def build_subprocess_env(extra_env: dict[str, str] | None = None) -> dict[str, str]:
    env = os.environ.copy()
    if extra_env:
        env.update(extra_env)
    return env


def run_command(
    cmd: list[str],
    cwd: Path,
    timeout_sec: float | None,
    extra_env: dict[str, str] | None = None,
    output_cap: int | None = MAX_OUTPUT_BYTES,
) -> ExecutionResult:
    """Run ``cmd`` and capture both streams.

    ``timeout_sec=None`` disables the deadline and ``output_cap=None`` keeps
    everything. A timed-out process group is killed and reported with
    ``TIMEOUT_EXIT_CODE`` whatever it printed before.
    """
    started = time.monotonic()
    try:
        cwd.mkdir(parents=True, exist_ok=True)
    except OSError as err:
        message = f"workspace directory unavailable: {cwd}: {err}"
        return ExecutionResult(
            success=False,
            stderr=message,
            exit_code=LAUNCH_FAILURE_EXIT_CODE,
            error=message,
            cause=FailureCause.LAUNCH,
        )
    try:
        process = subprocess.Popen(
            cmd,
            cwd=str(cwd),
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            env=build_subprocess_env(extra_env),
            start_new_session=os.name != "nt",
        )
    except FileNotFoundError as err:
        missing = err.filename or (cmd[0] if cmd else "")
        message = f"[ENOENT] command not found: {missing}"
        return ExecutionResult(
            success=False,
            stderr=message,
            exit_code=LAUNCH_FAILURE_EXIT_CODE,
            error=message,
            cause=FailureCause.LAUNCH,
        )
    except OSError as err:
        message = f"failed to launch {cmd[0] if cmd else ''}: {err}"
        return ExecutionResult(
            success=False,
            stderr=message,
            exit_code=LAUNCH_FAILURE_EXIT_CODE,
            error=message,
            cause=FailureCause.LAUNCH,
        )

    out_buf = CappedBuffer(output_cap)
    err_buf = CappedBuffer(output_cap)
    readers = [
        threading.Thread(target=_drain, args=(process.stdout, out_buf), daemon=True),
        threading.Thread(target=_drain, args=(process.stderr, err_buf), daemon=True),
    ]
    for reader in readers:
        reader.start()

    timed_out = False
    deadline = None if timeout_sec is None else started + timeout_sec
    while True:
        wait_for = 1.0
        if deadline is not None:
            wait_for = max(0.05, min(1.0, deadline - time.monotonic()))
        try:
            process.wait(timeout=wait_for)
            break
        except subprocess.TimeoutExpired:
            if deadline is not None and time.monotonic() >= deadline:
                timed_out = True
                _kill_tree(process)
                process.wait()
                break
    for reader in readers:
        reader.join(timeout=5)

    duration_ms = int((time.monotonic() - started) * 1000)
    stdout = out_buf.text()
    stderr = err_buf.text()
    truncated = bool(out_buf.dropped or err_buf.dropped)
    if timed_out:
        message = f"execution timed out after {timeout_sec}s"
        return ExecutionResult(
            success=False,
            stdout=stdout,
            stderr=stderr + f"\n[TIMEOUT] {message}",
            exit_code=TIMEOUT_EXIT_CODE,
            error=message,
            cause=FailureCause.TIMEOUT,
            duration_ms=duration_ms,
            truncated=truncated,
        )
    code = process.returncode or 0
    if code != 0:
        return ExecutionResult(
            success=False,
            stdout=stdout,
            stderr=stderr,
            exit_code=code,
            error=f"exit status {code}",
            cause=FailureCause.NONZERO_EXIT,
            duration_ms=duration_ms,
            truncated=truncated,
        )
    return ExecutionResult(success=True, stdout=stdout, stderr=stderr, duration_ms=duration_ms, truncated=truncated)


def input_env_name(label: str) -> str:
    return "INPUT_" + re.sub(r"[^A-Za-z0-9]", "_", label).upper()


def input_name_collisions(inputs: dict[str, Any]) -> dict[str, list[str]]:
    """Variable names claimed by more than one label, e.g. ``a-b`` and ``a_b``."""
    claimed: dict[str, list[str]] = {}
    for label in sorted(inputs):
        claimed.setdefault(input_env_name(label), []).append(label)
    return {name: labels for name, labels in claimed.items() if len(labels) > 1}


def input_environment(inputs: dict[str, Any], scratch_dir: Path) -> dict[str, str]:
    """Expose each input as ``INPUT_<LABEL>`` and as a JSON file.

    The file path lands in ``INPUT_<LABEL>_FILE``; scripts that need the exact
    JSON should read the file since shell echo mangles escape sequences.
    Labels that map to the same variable name raise ``ValueError``.
    """
    collisions = input_name_collisions(inputs)
    if collisions:
        listed = "; ".join(f"{name} <- {', '.join(labels)}" for name, labels in sorted(collisions.items()))
        raise ValueError(f"input labels collide: {listed}")
    env: dict[str, str] = {}
    for label in sorted(inputs):
        name = input_env_name(label)
        encoded = json.dumps(inputs[label])
        path = scratch_dir / f"{name.lower()}.json"
        path.write_text(encoded, encoding="utf-8")
        env[name] = encoded
        env[f"{name}_FILE"] = str(path)
    return env


class Backend(Protocol):
    def run(self, entity: PlanningEntity, inputs: dict[str, Any]) -> ExecutionResult: ...


class _CodeBackend:
    label = ""

    def __init__(self, interpreter: list[str], workspace_dir: Path, timeout_sec: float = DEFAULT_EXEC_TIMEOUT_SEC):
        self.interpreter = list(interpreter)
        self.workspace_dir = Path(workspace_dir)
        self.timeout_sec = timeout_sec

    def run(self, entity: PlanningEntity, inputs: dict[str, Any]) -> ExecutionResult:
        code = entity.code
        if not code.strip():
            message = f"no code provided for {self.label} execution"
            return ExecutionResult(
                success=False,
                stderr=message,
                exit_code=NO_CODE_EXIT_CODE,
                error=message,
                cause=FailureCause.NO_CODE,
            )
        with tempfile.TemporaryDirectory(prefix="plan-agent-inputs-") as td:
            try:
                env = input_environment(inputs, Path(td))
            except ValueError as exc:
                return ExecutionResult(
                    success=False,
                    stderr=str(exc),
                    exit_code=INPUT_ERROR_EXIT_CODE,
                    error=str(exc),
                    cause=FailureCause.INPUT_COLLISION,
                )
            return run_command(
                [*self.interpreter, code],
                cwd=self.workspace_dir,
                timeout_sec=self.timeout_sec,
                extra_env=env,
            )


class ShellBackend(_CodeBackend):
    label = "BASH"

    def __init__(self, shell_cmd: str, workspace_dir: Path, timeout_sec: float = DEFAULT_EXEC_TIMEOUT_SEC):
        super().__init__([shell_cmd, "-c"], workspace_dir, timeout_sec)


class PythonBackend(_CodeBackend):
    label = "PYTHON"

    def __init__(self, python_cmd: str, workspace_dir: Path, timeout_sec: float = DEFAULT_EXEC_TIMEOUT_SEC):
        super().__init__([python_cmd, "-c"], workspace_dir, timeout_sec)


def build_prompt(entity: PlanningEntity, inputs: dict[str, Any], workspace_dir: Path, *, hybrid: bool = False) -> str:
    sections = [
        "You are executing a planning entity as an autonomous agent. "
        "Complete the task below and report what you accomplished.",
        f"# Task: {entity.title or entity.id}",
    ]
    if entity.description:
        sections.append(f"## Description\n{entity.description}")
    if entity.rationale:
        sections.append(f"## Rationale\n{entity.rationale}")
    if hybrid and entity.code.strip():
        sections.append(
            "## Reference Code\n"
            "Use this code as context for the task. Do not assume it has been run.\n"
            f"```\n{entity.code.strip()}\n```"
        )
    if inputs:
        lines = ["## Available Inputs"]
        for label in sorted(inputs):
            heading = f"### {label}"
            if label == PREVIOUS_SIBLING_LABEL:
                heading += " (Previous Sibling Output)"
            lines.append(f"{heading}\n```json\n{json.dumps(inputs[label], indent=2, sort_keys=True)}\n```")
        sections.append("\n\n".join(lines))
    criteria = entity.success_criteria
    if not criteria.is_empty():
        lines = ["## Success Criteria"]
        if criteria.description:
            lines.append(criteria.description)
        if criteria.measurable_outcomes:
            lines.append("### Measurable Outcomes")
            lines.extend(f"- {outcome}" for outcome in criteria.measurable_outcomes)
        if criteria.validation_rules:
            lines.append("### Validation Rules")
            lines.append(f"```json\n{json.dumps(criteria.validation_rules, indent=2, sort_keys=True)}\n```")
        sections.append("\n".join(lines))
    if entity.output_schema:
        sections.append(
            "## Expected Output Format\n"
            "Finish your response with a JSON object in a ```json block matching this schema:\n"
            f"```json\n{json.dumps(entity.output_schema, indent=2, sort_keys=True)}\n```"
        )
    sections.append(
        "## Guidelines\n"
        f"- Work inside {workspace_dir}; save any artifacts you create there.\n"
        "- Meet every success criterion listed above.\n"
        "- If you are blocked, document the blocker instead of guessing.\n"
        "- Use the provided inputs rather than re-deriving them."
    )
    sections.append(
        "## Instructions\n"
        "When finished, summarize:\n"
        "1. What you accomplished\n"
        "2. Artifacts created and where they are\n"
        "3. Status of each success criterion\n"
        "4. Any blockers or issues encountered"
    )
    return "\n\n".join(sections) + "\n"


class ReasoningAgentBackend:
    def __init__(self, agent_cmd: str, workspace_dir: Path, *, hybrid: bool = False):
        self.agent_cmd = agent_cmd
        self.workspace_dir = Path(workspace_dir)
        self.hybrid = hybrid

    def run(self, entity: PlanningEntity, inputs: dict[str, Any]) -> ExecutionResult:
        prompt = build_prompt(entity, inputs, self.workspace_dir, hybrid=self.hybrid)
        return run_command(
            [self.agent_cmd, "-p", prompt],
            cwd=self.workspace_dir,
            timeout_sec=None,
            output_cap=None,
        )


def _require_exhaustive(table: dict[ExecutionMode, Backend]) -> None:
    missing = LEAF_MODES - set(table)
    extra = set(table) - LEAF_MODES
    if missing or extra:
        raise RuntimeError(
            "backend table out of sync: "
            f"missing={sorted(m.value for m in missing)} extra={sorted(m.value for m in extra)}"
        )


class BackendRegistry:
    """Maps every leaf execution mode to the backend that runs it."""

    def __init__(self, table: dict[ExecutionMode, Backend]):
        _require_exhaustive(table)
        self._table = dict(table)

    @classmethod
    def build(
        cls,
        *,
        workspace_dir: Path,
        timeout_sec: float = DEFAULT_EXEC_TIMEOUT_SEC,
        shell_cmd: str = "sh",
        python_cmd: str = "python3",
        agent_cmd: str = "claude",
    ) -> "BackendRegistry":
        python = PythonBackend(python_cmd, workspace_dir, timeout_sec)
        return cls(
            {
                ExecutionMode.BASH: ShellBackend(shell_cmd, workspace_dir, timeout_sec),
                ExecutionMode.PYTHON: python,
                ExecutionMode.PYTHON_SANDBOX: python,
                ExecutionMode.LLM_REASONING: ReasoningAgentBackend(agent_cmd, workspace_dir),
                ExecutionMode.HYBRID: ReasoningAgentBackend(agent_cmd, workspace_dir, hybrid=True),
            }
        )

    @classmethod
    def from_config(cls, config: Any) -> "BackendRegistry":
        return cls.build(
            workspace_dir=Path(config.workspace_dir),
            timeout_sec=config.exec_timeout_sec,
            shell_cmd=config.shell_cmd,
            python_cmd=config.python_cmd,
            agent_cmd=config.agent_cmd,
        )

    def backend_for(self, mode: ExecutionMode) -> Backend:
        try:
            return self._table[mode]
        except KeyError:
            raise UnknownExecutionModeError(mode.value) from None

    def dispatch(self, mode: ExecutionMode, entity: PlanningEntity, inputs: dict[str, Any]) -> ExecutionResult:
        return self.backend_for(mode).run(entity, inputs)
