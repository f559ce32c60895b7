"""Drives every child task of a Process entity through the lifecycle."""

from __future__ import annotations

import threading
from dataclasses import asdict, dataclass
from typing import Any

from .errors import AskUserSkipped, PlanAgentError, UnknownExecutionModeError
from .executors import BackendRegistry
from .lifecycle import PlanningAPI, run_entity
from .logging_utils import AgentLogger
from .models import CompleteRequest, ExecutionMode, ExecutionOutputs, PlanningEntity, RunStatus

INTERRUPTED_REASON = "Process execution interrupted by signal"


@dataclass(frozen=True)
class ProcessSummary:
    entity_id: str
    run_id: str
    status: RunStatus
    tasks_executed: int
    interrupted: bool
    last_error: str = ""

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["status"] = self.status.value
        return payload


def run_process(
    client: PlanningAPI,
    entity: PlanningEntity,
    *,
    agent_id: str,
    backends: BackendRegistry,
    logger: AgentLogger,
    cancel: threading.Event,
    run_id: str = "",
) -> ProcessSummary:
    """Execute the children of ``entity`` one at a time until none remain.

    Pass ``run_id`` to resume an existing Process run instead of starting a
    new one. Leaf failures are recorded and the loop keeps going; only
    cancellation or a failed fetch ends it early. Raises ``PlanAgentError``
    when the Process run cannot be started or completed.
    """
    if not run_id:
        started = client.start_execution(entity.id, ExecutionMode.PROCESS, agent_id)
        run_id = started.execution_id
    log = logger.bind(process_id=entity.id, run_id=run_id)
    log.info("process run active", title=entity.title)

    tasks_executed = 0
    interrupted = False
    last_error = ""
    aborted: set[str] = set()
    while True:
        if cancel.is_set():
            interrupted = True
            log.warning("process interrupted")
            break
        try:
            nxt = client.fetch_next_task_for_process(agent_id, entity.id)
        except PlanAgentError as exc:
            last_error = f"failed to fetch next task: {exc}"
            log.error("next task fetch failed", error=str(exc))
            break
        if nxt.task is None:
            log.info("process exhausted", pending=nxt.pending_count, message=nxt.message)
            break

        task_id = nxt.task.id
        if task_id in aborted:
            log.error("oracle repeated an aborted task, stopping", task_id=task_id)
            break
        try:
            result = run_entity(client, task_id, agent_id=agent_id, backends=backends, logger=log)
        except AskUserSkipped:
            log.info("task awaiting user response", task_id=task_id)
            continue
        except (PlanAgentError, UnknownExecutionModeError) as exc:
            aborted.add(task_id)
            last_error = f"task {task_id}: {exc}"
            log.error("task aborted", task_id=task_id, error=str(exc))
            continue
        if result.success:
            tasks_executed += 1
            log.info("task succeeded", task_id=task_id, tasks_executed=tasks_executed)
        else:
            last_error = f"task {task_id} failed: {result.error}"
            log.warning("task failed", task_id=task_id, error=result.error)

    if interrupted:
        status, reason = RunStatus.ABANDONED, INTERRUPTED_REASON
    elif last_error:
        status, reason = RunStatus.FAILED, last_error
    else:
        status, reason = RunStatus.SUCCESS, ""
    client.complete_execution(
        run_id,
        CompleteRequest(
            status=status,
            outputs=ExecutionOutputs(metrics={"tasks_executed": tasks_executed, "interrupted": interrupted}),
            failure_reason=reason,
        ),
    )
    log.info("process run completed", status=status.value, tasks_executed=tasks_executed)
    return ProcessSummary(
        entity_id=entity.id,
        run_id=run_id,
        status=status,
        tasks_executed=tasks_executed,
        interrupted=interrupted,
        last_error=last_error,
    )
