import pathlib
import sys
import tempfile
import unittest
from unittest import mock

ROOT = pathlib.Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
TESTS = ROOT / "tests"
for path in (SRC, TESTS):
    if str(path) not in sys.path:
        sys.path.insert(0, str(path))

from plan_agent import executors
from plan_agent.errors import (
    APIError,
    AskUserSkipped,
    DependenciesNotMetError,
    InputValidationError,
    UnknownExecutionModeError,
)
from plan_agent.executors import BackendRegistry
from plan_agent.lifecycle import execute_entity, run_entity
from plan_agent.models import ExecutionMode, RunStatus, ValidationOutcome, ValidationSeverity
from plan_agent_fakes import FakeClient, make_entity, quiet_logger

SUMMARY_SCHEMA = {
    "type": "object",
    "properties": {"summary": {"type": "string"}},
    "required": ["summary"],
}


class LifecycleTests(unittest.TestCase):
    def setUp(self):
        self._td = tempfile.TemporaryDirectory()
        self.addCleanup(self._td.cleanup)
        self.backends = BackendRegistry.build(
            workspace_dir=pathlib.Path(self._td.name),
            timeout_sec=30,
            shell_cmd="sh",
            python_cmd=sys.executable,
        )
        self.client = FakeClient()
        self.logger = quiet_logger()

    def _execute(self, entity_id):
        return execute_entity(
            self.client, entity_id, agent_id="agent-1", backends=self.backends, logger=self.logger
        )

    def test_echo_hello_succeeds(self):
        self.client.add_entity(make_entity("e1", execution_mode="BASH", code="echo hello"))
        self.assertTrue(self._execute("e1"))

        self.assertEqual(self.client.start_calls, [("e1", ExecutionMode.BASH, "agent-1")])
        run_id, request = self.client.completions[0]
        self.assertEqual(run_id, "run-1")
        self.assertEqual(request.status, RunStatus.SUCCESS)
        self.assertEqual(request.outputs.stdout, "hello\n")
        self.assertEqual(request.outputs.metrics["exit_code"], 0)
        self.assertIn("duration_ms", request.outputs.metrics)
        self.assertIsNone(request.outputs.structured)
        self.assertEqual(len(request.validation_records), 1)
        record = request.validation_records[0]
        self.assertEqual(record.validation_target, "execution_completion")
        self.assertEqual(record.outcome, ValidationOutcome.PASS)
        self.assertEqual(record.severity, ValidationSeverity.INFO)
        self.assertEqual(request.to_dict()["status"], "SUCCESS")

    def test_empty_code_reports_failed_without_spawning(self):
        self.client.add_entity(make_entity("e1", execution_mode="BASH", code=""))
        with mock.patch.object(executors.subprocess, "Popen") as popen:
            self.assertFalse(self._execute("e1"))
        popen.assert_not_called()
        _, request = self.client.completions[0]
        self.assertEqual(request.status, RunStatus.FAILED)
        self.assertEqual(request.outputs.metrics["exit_code"], 1)
        self.assertIn("no code provided", request.failure_reason)
        record = request.validation_records[0]
        self.assertEqual(record.outcome, ValidationOutcome.FAIL)
        self.assertEqual(record.severity, ValidationSeverity.CRITICAL)
        self.assertTrue(record.failure_reason.startswith("Execution failed with exit code 1"))

    def test_nonzero_exit_is_failed_run_not_error(self):
        self.client.add_entity(make_entity("e1", execution_mode="BASH", code="echo oops >&2; exit 4"))
        self.assertFalse(self._execute("e1"))
        _, request = self.client.completions[0]
        self.assertEqual(request.status, RunStatus.FAILED)
        self.assertEqual(request.outputs.metrics["exit_code"], 4)
        self.assertEqual(request.outputs.stderr, "oops\n")
        self.assertEqual(request.failure_reason, "Execution failed with exit code 4: exit status 4")
        self.assertEqual(request.failure_reason, request.validation_records[0].failure_reason)

    def test_colliding_input_labels_fail_run(self):
        self.client.add_entity(
            make_entity("e1", execution_mode="BASH", code="env"), inputs={"raw-data": "x", "raw_data": "y"}
        )
        self.assertFalse(self._execute("e1"))
        _, request = self.client.completions[0]
        self.assertEqual(request.status, RunStatus.FAILED)
        self.assertEqual(
            request.failure_reason,
            "Execution failed with exit code 1: input labels collide: INPUT_RAW_DATA <- raw-data, raw_data",
        )

    def test_unmet_dependencies_create_no_run(self):
        self.client.add_entity(
            make_entity("e1", execution_mode="BASH", code="echo hi"),
            pending=[("research", "e0")],
        )
        with self.assertRaises(DependenciesNotMetError) as ctx:
            self._execute("e1")
        self.assertIn("research (e0)", str(ctx.exception))
        self.assertEqual(self.client.start_calls, [])
        self.assertEqual(self.client.completions, [])

    def test_input_schema_violation_creates_no_run(self):
        entity = make_entity(
            "e1",
            execution_mode="BASH",
            code="echo hi",
            input_schema={"type": "object", "required": ["prev"]},
        )
        self.client.add_entity(entity, inputs={"other": 1})
        with self.assertRaises(InputValidationError):
            self._execute("e1")
        self.assertEqual(self.client.start_calls, [])

    def test_fetch_error_propagates(self):
        with self.assertRaises(APIError):
            self._execute("missing")
        self.assertEqual(self.client.start_calls, [])

    def test_unknown_mode_creates_no_run(self):
        self.client.add_entity(make_entity("e1", execution_mode="TELEPATHY", code="echo hi"))
        with self.assertRaises(UnknownExecutionModeError):
            self._execute("e1")
        self.assertEqual(self.client.start_calls, [])

    def test_ask_user_is_skipped_and_never_completed(self):
        self.client.add_entity(make_entity("e1", execution_mode="ASK_USER"))
        with self.assertRaises(AskUserSkipped) as ctx:
            self._execute("e1")
        self.assertEqual(ctx.exception.run_id, "run-1")
        self.assertEqual(len(self.client.start_calls), 1)
        self.assertEqual(self.client.completions, [])

    def test_executes_inputs_returned_by_start(self):
        self.client.add_entity(
            make_entity("e1", execution_mode="BASH", code='cat "$INPUT_DATA_FILE"'),
            inputs={"data": "stale"},
            start_inputs={"data": "fresh"},
        )
        self.assertTrue(self._execute("e1"))
        _, request = self.client.completions[0]
        self.assertEqual(request.outputs.stdout, '"fresh"')

    def test_valid_structured_output(self):
        code = """printf 'done\\n```json\\n{"summary": "ok"}\\n```\\n'"""
        self.client.add_entity(make_entity("e1", execution_mode="BASH", code=code, output_schema=SUMMARY_SCHEMA))
        self.assertTrue(self._execute("e1"))
        _, request = self.client.completions[0]
        self.assertEqual(request.outputs.structured, {"summary": "ok"})
        schema_record = request.validation_records[1]
        self.assertEqual(schema_record.validation_target, "output_schema")
        self.assertEqual(schema_record.outcome, ValidationOutcome.PASS)
        self.assertEqual(schema_record.actual, {"summary": "ok"})
        self.assertEqual(request.failure_reason, "")

    def test_schema_failure_does_not_fail_run(self):
        code = """echo '{"summary": 5}'"""
        self.client.add_entity(make_entity("e1", execution_mode="BASH", code=code, output_schema=SUMMARY_SCHEMA))
        self.assertTrue(self._execute("e1"))
        _, request = self.client.completions[0]
        self.assertEqual(request.status, RunStatus.SUCCESS)
        schema_record = request.validation_records[1]
        self.assertEqual(schema_record.outcome, ValidationOutcome.FAIL)
        self.assertEqual(schema_record.severity, ValidationSeverity.WARNING)
        self.assertEqual(schema_record.actual, {"summary": 5})
        self.assertIn("output validation failed", schema_record.failure_reason)

    def test_extraction_failure_is_warning(self):
        self.client.add_entity(
            make_entity("e1", execution_mode="BASH", code="echo no json here", output_schema=SUMMARY_SCHEMA)
        )
        self.assertTrue(self._execute("e1"))
        _, request = self.client.completions[0]
        self.assertEqual(request.status, RunStatus.SUCCESS)
        self.assertIsNone(request.outputs.structured)
        schema_record = request.validation_records[1]
        self.assertEqual(schema_record.outcome, ValidationOutcome.WARN)
        self.assertEqual(schema_record.severity, ValidationSeverity.WARNING)
        self.assertTrue(schema_record.failure_reason.startswith("Failed to extract structured output"))

    def test_schema_skipped_for_failed_backend(self):
        self.client.add_entity(
            make_entity("e1", execution_mode="BASH", code="exit 2", output_schema=SUMMARY_SCHEMA)
        )
        self.assertFalse(self._execute("e1"))
        _, request = self.client.completions[0]
        self.assertEqual(len(request.validation_records), 1)

    def test_legacy_sandbox_mode_runs_python(self):
        self.client.add_entity(make_entity("e1", execution_mode="PYTHON_SANDBOX", code="print(6 * 7)"))
        result = run_entity(self.client, "e1", agent_id="agent-1", backends=self.backends, logger=self.logger)
        self.assertTrue(result.success)
        self.assertEqual(self.client.completions[0][1].outputs.stdout, "42\n")

    def test_complete_failure_surfaces(self):
        self.client.add_entity(make_entity("e1", execution_mode="BASH", code="echo hi"))
        self.client.complete_error = APIError(500, "boom")
        with self.assertRaises(APIError):
            self._execute("e1")
        self.assertEqual(len(self.client.start_calls), 1)


if __name__ == "__main__":
    unittest.main()
