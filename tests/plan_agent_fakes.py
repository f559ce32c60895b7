"""In-memory planning API used by lifecycle, driver and loop tests."""

from __future__ import annotations

import io
import threading
from typing import Any

from plan_agent.errors import APIError
from plan_agent.logging_utils import AgentLogger
from plan_agent.models import (
    AbandonStaleResponse,
    ActivateResponse,
    CompleteRequest,
    DependencyStatus,
    EntityExecuteResponse,
    ExecutionMode,
    NextTaskResponse,
    PendingDependency,
    PlanningEntity,
    RecoverRunsResponse,
    SecretsResponse,
    StartResponse,
    TaskInfo,
)


def quiet_logger() -> AgentLogger:
    return AgentLogger.create(level="CRITICAL", stream=io.StringIO())


def make_entity(entity_id: str, **fields: Any) -> PlanningEntity:
    payload = {"id": entity_id, "type": "Task", "title": f"Task {entity_id}"}
    payload.update(fields)
    return PlanningEntity.from_dict(payload)


class FakeClient:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.details: dict[str, EntityExecuteResponse] = {}
        self.start_inputs: dict[str, dict[str, Any]] = {}
        self.agent_queue: list[Any] = []
        self.process_queues: dict[str, list[Any]] = {}
        self.process_gate: threading.Event | None = None
        self.recover_response: Any = RecoverRunsResponse()
        self.complete_error: Exception | None = None
        self.secrets: dict[str, str] = {}
        self.fetch_calls: list[str] = []
        self.start_calls: list[tuple[str, ExecutionMode, str]] = []
        self.completions: list[tuple[str, CompleteRequest]] = []
        self.next_calls = 0
        self.process_next_calls: list[str] = []
        self.activations: list[tuple[str, bool]] = []
        self._run_counter = 0

    def add_entity(
        self,
        entity: PlanningEntity,
        inputs: dict[str, Any] | None = None,
        pending: list[tuple[str, str]] | None = None,
        start_inputs: dict[str, Any] | None = None,
    ) -> None:
        status = DependencyStatus(
            all_met=not pending,
            pending=[PendingDependency(label=label, entity_id=eid) for label, eid in (pending or [])],
        )
        self.details[entity.id] = EntityExecuteResponse(entity=entity, dependencies_status=status, inputs=dict(inputs or {}))
        self.start_inputs[entity.id] = dict(start_inputs if start_inputs is not None else (inputs or {}))

    def fetch_entity_for_execution(self, entity_id: str) -> EntityExecuteResponse:
        with self._lock:
            self.fetch_calls.append(entity_id)
        if entity_id not in self.details:
            raise APIError(404, f"entity {entity_id} not found")
        return self.details[entity_id]

    def start_execution(self, entity_id: str, mode: ExecutionMode, agent_id: str) -> StartResponse:
        with self._lock:
            self.start_calls.append((entity_id, mode, agent_id))
            self._run_counter += 1
            run_id = f"run-{self._run_counter}"
        return StartResponse(execution_id=run_id, attempt_number=1, inputs=dict(self.start_inputs.get(entity_id, {})))

    def complete_execution(self, run_id: str, request: CompleteRequest) -> None:
        if self.complete_error is not None:
            raise self.complete_error
        with self._lock:
            self.completions.append((run_id, request))

    def _pop(self, queue: list[Any]) -> NextTaskResponse:
        if not queue:
            return NextTaskResponse()
        item = queue.pop(0)
        if isinstance(item, Exception):
            raise item
        return NextTaskResponse(task=TaskInfo(id=item), pending_count=len(queue))

    def fetch_next_task(self, agent_id: str) -> NextTaskResponse:
        with self._lock:
            self.next_calls += 1
            queue = self.agent_queue
        return self._pop(queue)

    def fetch_next_task_for_process(self, agent_id: str, process_id: str) -> NextTaskResponse:
        if self.process_gate is not None:
            self.process_gate.wait(10)
        with self._lock:
            self.process_next_calls.append(process_id)
            queue = self.process_queues.setdefault(process_id, [])
        return self._pop(queue)

    def recover_runs(self, agent_id: str) -> RecoverRunsResponse:
        if isinstance(self.recover_response, Exception):
            raise self.recover_response
        return self.recover_response

    def activate_entity(self, entity_id: str, recursive: bool = False) -> ActivateResponse:
        self.activations.append((entity_id, recursive))
        return ActivateResponse(activated_count=3 if recursive else 1)

    def abandon_stale_runs(self, agent_id: str) -> AbandonStaleResponse:
        return AbandonStaleResponse(abandoned_count=2)

    def fetch_secrets(self, agent_id: str, command: str = "") -> SecretsResponse:
        return SecretsResponse(env=dict(self.secrets))

    def completion_for(self, run_id: str) -> CompleteRequest:
        for rid, request in self.completions:
            if rid == run_id:
                return request
        raise AssertionError(f"no completion recorded for {run_id}")
