"""Wire models for the planning API.

Every model parses from the snake_case JSON the API serves (``from_dict``) and
serialises back with ``to_dict``. Unknown keys are ignored; missing keys fall
back to empty values so a partial payload never raises on parse.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any

from .errors import UnknownExecutionModeError


class ExecutionMode(str, Enum):
    LLM_REASONING = "LLM_REASONING"
    PYTHON_SANDBOX = "PYTHON_SANDBOX"  # legacy alias of PYTHON
    HYBRID = "HYBRID"
    BASH = "BASH"
    PYTHON = "PYTHON"
    ASK_USER = "ASK_USER"
    PROCESS = "PROCESS"  # marks a Process run, never dispatched to a backend

    @classmethod
    def parse(cls, raw: Any) -> "ExecutionMode":
        text = str(raw or "").strip().upper()
        try:
            return cls(text)
        except ValueError:
            raise UnknownExecutionModeError(str(raw or "")) from None


LEAF_MODES = frozenset(
    {
        ExecutionMode.LLM_REASONING,
        ExecutionMode.PYTHON_SANDBOX,
        ExecutionMode.HYBRID,
        ExecutionMode.BASH,
        ExecutionMode.PYTHON,
    }
)


class RunStatus(str, Enum):
    RUNNING = "RUNNING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    ABANDONED = "ABANDONED"


class ValidationOutcome(str, Enum):
    PASS = "PASS"
    FAIL = "FAIL"
    WARN = "WARN"
    COUNTERFACTUAL = "COUNTERFACTUAL"
    PARTIAL = "PARTIAL"


class ValidationSeverity(str, Enum):
    INFO = "INFO"
    WARNING = "WARNING"
    CRITICAL = "CRITICAL"


def _str(value: Any) -> str:
    return "" if value is None else str(value)


def _dict(value: Any) -> dict[str, Any]:
    return dict(value) if isinstance(value, dict) else {}


def _list(value: Any) -> list[Any]:
    return list(value) if isinstance(value, list) else []


def _int(value: Any, default: int = 0) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _rules(value: Any) -> dict[str, Any] | list[Any]:
    # served as an object; older payloads send a list of rule objects
    if isinstance(value, dict):
        return dict(value)
    return _list(value)


@dataclass(frozen=True)
class SuccessCriteria:
    description: str = ""
    measurable_outcomes: list[str] = field(default_factory=list)
    validation_rules: dict[str, Any] | list[Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, payload: Any) -> "SuccessCriteria":
        data = _dict(payload)
        return cls(
            description=_str(data.get("description")),
            measurable_outcomes=[_str(item) for item in _list(data.get("measurable_outcomes"))],
            validation_rules=_rules(data.get("validation_rules")),
        )

    def is_empty(self) -> bool:
        return not (self.description or self.measurable_outcomes or self.validation_rules)


@dataclass(frozen=True)
class PlanningEntity:
    id: str
    type: str = ""
    title: str = ""
    description: str = ""
    execution_mode: str = ""
    status: str = ""
    rationale: str = ""
    code: str = ""
    input_schema: dict[str, Any] = field(default_factory=dict)
    output_schema: dict[str, Any] = field(default_factory=dict)
    success_criteria: SuccessCriteria = field(default_factory=SuccessCriteria)
    dependencies: list[str] = field(default_factory=list)
    dependencies_labeled: dict[str, str] = field(default_factory=dict)
    sequence_order: int = 0
    parent_id: str = ""
    account_id: str = ""

    @property
    def is_process(self) -> bool:
        return self.type.strip().lower() == "process"

    @classmethod
    def from_dict(cls, payload: Any) -> "PlanningEntity":
        data = _dict(payload)
        labeled = {_str(k): _str(v) for k, v in _dict(data.get("dependencies_labeled")).items()}
        return cls(
            id=_str(data.get("id")),
            type=_str(data.get("type")),
            title=_str(data.get("title")),
            description=_str(data.get("description")),
            execution_mode=_str(data.get("execution_mode")),
            status=_str(data.get("status")),
            rationale=_str(data.get("rationale")),
            code=_str(data.get("code")),
            input_schema=_dict(data.get("input_schema")),
            output_schema=_dict(data.get("output_schema")),
            success_criteria=SuccessCriteria.from_dict(data.get("success_criteria")),
            dependencies=[_str(item) for item in _list(data.get("dependencies"))],
            dependencies_labeled=labeled,
            sequence_order=_int(data.get("sequence_order")),
            parent_id=_str(data.get("parent_id")),
            account_id=_str(data.get("account_id")),
        )


@dataclass(frozen=True)
class PendingDependency:
    label: str
    entity_id: str

    @classmethod
    def from_dict(cls, payload: Any) -> "PendingDependency":
        data = _dict(payload)
        return cls(label=_str(data.get("label")), entity_id=_str(data.get("entity_id")))


@dataclass(frozen=True)
class DependencyStatus:
    all_met: bool = True
    pending: list[PendingDependency] = field(default_factory=list)

    @classmethod
    def from_dict(cls, payload: Any) -> "DependencyStatus":
        if not isinstance(payload, dict):
            return cls()
        return cls(
            all_met=bool(payload.get("all_met", True)),
            pending=[PendingDependency.from_dict(item) for item in _list(payload.get("pending"))],
        )


@dataclass(frozen=True)
class EntityExecuteResponse:
    entity: PlanningEntity
    dependencies_status: DependencyStatus = field(default_factory=DependencyStatus)
    inputs: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, payload: Any) -> "EntityExecuteResponse":
        data = _dict(payload)
        return cls(
            entity=PlanningEntity.from_dict(data.get("entity")),
            dependencies_status=DependencyStatus.from_dict(data.get("dependencies_status")),
            inputs=_dict(data.get("inputs")),
        )


@dataclass(frozen=True)
class StartResponse:
    execution_id: str
    attempt_number: int = 1
    inputs: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, payload: Any) -> "StartResponse":
        data = _dict(payload)
        return cls(
            execution_id=_str(data.get("execution_id")),
            attempt_number=_int(data.get("attempt_number"), 1),
            inputs=_dict(data.get("inputs")),
        )


@dataclass
class ExecutionOutputs:
    stdout: str = ""
    stderr: str = ""
    metrics: dict[str, Any] = field(default_factory=dict)
    structured: dict[str, Any] | None = None
    artifacts: list[dict[str, Any]] = field(default_factory=list)
    next_actions: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"metrics": dict(self.metrics)}
        if self.stdout:
            payload["stdout"] = self.stdout
        if self.stderr:
            payload["stderr"] = self.stderr
        if self.structured is not None:
            payload["structured"] = self.structured
        if self.artifacts:
            payload["artifacts"] = list(self.artifacts)
        if self.next_actions:
            payload["next_actions"] = list(self.next_actions)
        return payload


@dataclass(frozen=True)
class ValidationRecord:
    validation_type: str
    outcome: ValidationOutcome
    severity: ValidationSeverity
    validation_target: str
    actual: Any = None
    failure_reason: str = ""

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "validation_type": self.validation_type,
            "outcome": self.outcome.value,
            "severity": self.severity.value,
            "validation_target": self.validation_target,
        }
        if self.actual is not None:
            payload["actual"] = self.actual
        if self.failure_reason:
            payload["failure_reason"] = self.failure_reason
        return payload


@dataclass
class CompleteRequest:
    status: RunStatus
    outputs: ExecutionOutputs = field(default_factory=ExecutionOutputs)
    failure_reason: str = ""
    validation_records: list[ValidationRecord] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "status": self.status.value,
            "outputs": self.outputs.to_dict(),
        }
        if self.failure_reason:
            payload["failure_reason"] = self.failure_reason
        if self.validation_records:
            payload["validation_records"] = [record.to_dict() for record in self.validation_records]
        return payload


@dataclass(frozen=True)
class TaskInfo:
    id: str
    title: str = ""
    type: str = ""
    execution_mode: str = ""
    parent_id: str = ""
    sequence_order: int = 0

    @classmethod
    def from_dict(cls, payload: Any) -> "TaskInfo":
        data = _dict(payload)
        return cls(
            id=_str(data.get("id")),
            title=_str(data.get("title")),
            type=_str(data.get("type")),
            execution_mode=_str(data.get("execution_mode")),
            parent_id=_str(data.get("parent_id")),
            sequence_order=_int(data.get("sequence_order")),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class NextTaskResponse:
    task: TaskInfo | None = None
    message: str = ""
    pending_count: int = 0

    @classmethod
    def from_dict(cls, payload: Any) -> "NextTaskResponse":
        data = _dict(payload)
        raw_task = data.get("task")
        task = TaskInfo.from_dict(raw_task) if isinstance(raw_task, dict) and raw_task.get("id") else None
        return cls(task=task, message=_str(data.get("message")), pending_count=_int(data.get("pending_count")))

    def to_dict(self) -> dict[str, Any]:
        return {
            "task": self.task.to_dict() if self.task else None,
            "message": self.message,
            "pending_count": self.pending_count,
        }


@dataclass(frozen=True)
class ResumedRun:
    run_id: str
    entity_id: str
    mode: str = ""

    @classmethod
    def from_dict(cls, payload: Any) -> "ResumedRun":
        data = _dict(payload)
        return cls(
            run_id=_str(data.get("run_id") or data.get("execution_id")),
            entity_id=_str(data.get("entity_id")),
            mode=_str(data.get("execution_mode") or data.get("mode")),
        )


@dataclass(frozen=True)
class RecoverRunsResponse:
    resumed: list[ResumedRun] = field(default_factory=list)
    failed_count: int = 0
    skipped_ask_user_count: int = 0

    @classmethod
    def from_dict(cls, payload: Any) -> "RecoverRunsResponse":
        data = _dict(payload)
        return cls(
            resumed=[ResumedRun.from_dict(item) for item in _list(data.get("resumed"))],
            failed_count=_int(data.get("failed_count")),
            skipped_ask_user_count=_int(data.get("skipped_ask_user_count")),
        )


@dataclass(frozen=True)
class ActivateResponse:
    activated_count: int = 0
    activated_ids: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, payload: Any) -> "ActivateResponse":
        data = _dict(payload)
        ids = [_str(item) for item in _list(data.get("activated_ids"))]
        return cls(activated_count=_int(data.get("activated_count"), len(ids)), activated_ids=ids)


@dataclass(frozen=True)
class AbandonStaleResponse:
    abandoned_count: int = 0

    @classmethod
    def from_dict(cls, payload: Any) -> "AbandonStaleResponse":
        return cls(abandoned_count=_int(_dict(payload).get("abandoned_count")))


@dataclass(frozen=True)
class SecretsResponse:
    env: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, payload: Any) -> "SecretsResponse":
        env = _dict(_dict(payload).get("env"))
        return cls(env={_str(k): _str(v) for k, v in env.items() if _str(k)})
