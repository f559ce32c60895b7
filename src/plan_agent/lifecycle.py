"""Single-entity execution lifecycle.

fetch -> dependency check -> input validation -> start -> dispatch ->
output validation -> complete. Anything that goes wrong before ``start``
raises without leaving a run behind; anything after ``start`` ends in a
completed run unless reporting completion itself fails.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Protocol

from .errors import (
    AskUserSkipped,
    DependenciesNotMetError,
    InputValidationError,
    OutputExtractionError,
    SchemaValidationError,
)
from .executors import BackendRegistry, ExecutionResult, FailureCause, LAUNCH_FAILURE_EXIT_CODE
from .logging_utils import AgentLogger
from .models import (
    CompleteRequest,
    EntityExecuteResponse,
    ExecutionMode,
    ExecutionOutputs,
    NextTaskResponse,
    PlanningEntity,
    RecoverRunsResponse,
    RunStatus,
    StartResponse,
    ValidationOutcome,
    ValidationRecord,
    ValidationSeverity,
)
from .output_validation import extract_json_object, format_inputs_for_display, validate_inputs, validate_outputs

COMPLETION_TARGET = "execution_completion"
OUTPUT_SCHEMA_TARGET = "output_schema"


class PlanningAPI(Protocol):
    def fetch_next_task(self, agent_id: str) -> NextTaskResponse: ...

    def fetch_next_task_for_process(self, agent_id: str, process_id: str) -> NextTaskResponse: ...

    def fetch_entity_for_execution(self, entity_id: str) -> EntityExecuteResponse: ...

    def start_execution(self, entity_id: str, mode: ExecutionMode, agent_id: str) -> StartResponse: ...

    def complete_execution(self, run_id: str, request: CompleteRequest) -> None: ...

    def recover_runs(self, agent_id: str) -> RecoverRunsResponse: ...


@dataclass(frozen=True)
class LifecycleResult:
    success: bool
    entity_id: str
    run_id: str
    attempt_number: int
    exit_code: int
    duration_ms: int
    error: str = ""


def completion_record(result: ExecutionResult) -> ValidationRecord:
    if result.success:
        return ValidationRecord(
            validation_type="OUTPUT",
            outcome=ValidationOutcome.PASS,
            severity=ValidationSeverity.INFO,
            validation_target=COMPLETION_TARGET,
            actual={"exit_code": result.exit_code, "duration_ms": result.duration_ms},
        )
    return ValidationRecord(
        validation_type="OUTPUT",
        outcome=ValidationOutcome.FAIL,
        severity=ValidationSeverity.CRITICAL,
        validation_target=COMPLETION_TARGET,
        actual={"exit_code": result.exit_code, "duration_ms": result.duration_ms},
        failure_reason=f"Execution failed with exit code {result.exit_code}: {result.error}",
    )


def output_schema_check(stdout: str, schema: dict[str, Any]) -> tuple[dict[str, Any] | None, ValidationRecord]:
    """Extract structured output and check it; never raises."""
    try:
        structured = extract_json_object(stdout)
    except OutputExtractionError as exc:
        return None, ValidationRecord(
            validation_type="OUTPUT_SCHEMA",
            outcome=ValidationOutcome.WARN,
            severity=ValidationSeverity.WARNING,
            validation_target=OUTPUT_SCHEMA_TARGET,
            failure_reason=f"Failed to extract structured output: {exc}",
        )
    try:
        validate_outputs(structured, schema)
    except SchemaValidationError as exc:
        return structured, ValidationRecord(
            validation_type="OUTPUT_SCHEMA",
            outcome=ValidationOutcome.FAIL,
            severity=ValidationSeverity.WARNING,
            validation_target=OUTPUT_SCHEMA_TARGET,
            actual=structured,
            failure_reason=str(exc),
        )
    return structured, ValidationRecord(
        validation_type="OUTPUT_SCHEMA",
        outcome=ValidationOutcome.PASS,
        severity=ValidationSeverity.INFO,
        validation_target=OUTPUT_SCHEMA_TARGET,
        actual=structured,
    )


def _dispatch(backends: BackendRegistry, mode: ExecutionMode, entity: PlanningEntity, inputs: dict[str, Any]) -> ExecutionResult:
    try:
        return backends.dispatch(mode, entity, inputs)
    except OSError as exc:
        message = f"backend failed to start: {exc}"
        return ExecutionResult(
            success=False,
            stderr=message,
            exit_code=LAUNCH_FAILURE_EXIT_CODE,
            error=message,
            cause=FailureCause.LAUNCH,
        )


def run_entity(
    client: PlanningAPI,
    entity_id: str,
    *,
    agent_id: str,
    backends: BackendRegistry,
    logger: AgentLogger,
) -> LifecycleResult:
    log = logger.bind(entity_id=entity_id)
    detail = client.fetch_entity_for_execution(entity_id)
    entity = detail.entity

    status = detail.dependencies_status
    if not status.all_met:
        raise DependenciesNotMetError((dep.label, dep.entity_id) for dep in status.pending)

    if entity.input_schema:
        try:
            validate_inputs(detail.inputs, entity.input_schema)
        except SchemaValidationError as exc:
            raise InputValidationError(str(exc)) from exc

    mode = ExecutionMode.parse(entity.execution_mode)
    if mode is not ExecutionMode.ASK_USER:
        backends.backend_for(mode)

    started = client.start_execution(entity.id or entity_id, mode, agent_id)
    log = log.bind(run_id=started.execution_id, attempt=started.attempt_number)
    log.info("execution started", mode=mode.value, title=entity.title)

    if mode is ExecutionMode.ASK_USER:
        log.info("ask-user task left open for a human response")
        raise AskUserSkipped(entity.id or entity_id, started.execution_id)

    if started.inputs:
        log.debug("resolved inputs\n" + format_inputs_for_display(started.inputs))
    begin = time.monotonic()
    result = _dispatch(backends, mode, entity, started.inputs)
    log.info(
        "backend finished",
        success=result.success,
        exit_code=result.exit_code,
        cause=result.cause.value,
        **logger.with_duration(begin),
    )

    records = [completion_record(result)]
    structured = None
    if result.success and entity.output_schema:
        structured, schema_record = output_schema_check(result.stdout, entity.output_schema)
        records.append(schema_record)
        if schema_record.outcome is not ValidationOutcome.PASS:
            log.warning("output schema check did not pass", reason=schema_record.failure_reason)

    outputs = ExecutionOutputs(
        stdout=result.stdout,
        stderr=result.stderr,
        metrics={"duration_ms": result.duration_ms, "exit_code": result.exit_code},
        structured=structured,
    )
    failure_reason = records[0].failure_reason
    client.complete_execution(
        started.execution_id,
        CompleteRequest(
            status=RunStatus.SUCCESS if result.success else RunStatus.FAILED,
            outputs=outputs,
            failure_reason=failure_reason,
            validation_records=records,
        ),
    )
    log.info("execution completed", status="SUCCESS" if result.success else "FAILED")
    return LifecycleResult(
        success=result.success,
        entity_id=entity.id or entity_id,
        run_id=started.execution_id,
        attempt_number=started.attempt_number,
        exit_code=result.exit_code,
        duration_ms=result.duration_ms,
        error=failure_reason,
    )


def execute_entity(
    client: PlanningAPI,
    entity_id: str,
    *,
    agent_id: str,
    backends: BackendRegistry,
    logger: AgentLogger,
) -> bool:
    """Run one entity end to end and report whether the backend succeeded.

    Raises ``AskUserSkipped`` for ask-user entities and ``PlanAgentError``
    subclasses for infrastructure or precondition failures.
    """
    return run_entity(client, entity_id, agent_id=agent_id, backends=backends, logger=logger).success
