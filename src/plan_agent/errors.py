"""Error taxonomy for the plan agent.

Infrastructure failures derive from ``PlanAgentError``; the poll loop backs
off and retries on them. ``AskUserSkipped`` is not a ``PlanAgentError``: it
means "move on", never "failed".
"""

from __future__ import annotations

from typing import Iterable


class PlanAgentError(RuntimeError):
    """Base class for infrastructure and precondition failures."""


class APIError(PlanAgentError):
    def __init__(self, status: int | None, body: str):
        self.status = status
        self.body = body
        if status is None:
            super().__init__(f"API request failed: {body}")
        else:
            super().__init__(f"API error ({status}): {body}")


class ConfigError(ValueError):
    """Missing or malformed configuration."""


class DependenciesNotMetError(PlanAgentError):
    def __init__(self, pending: Iterable[tuple[str, str]]):
        self.pending = list(pending)
        listed = ", ".join(f"{label} ({entity_id})" if label else entity_id for label, entity_id in self.pending)
        super().__init__(f"dependencies not met: {listed or 'unknown'}")


class InputValidationError(PlanAgentError):
    """Resolved inputs violate the entity's input schema."""


class UnknownExecutionModeError(ValueError):
    def __init__(self, mode: str):
        self.mode = mode
        super().__init__(f"unknown execution mode: {mode!r}")


class OutputExtractionError(ValueError):
    """No JSON object could be pulled out of backend output."""


class SchemaValidationError(ValueError):
    """Data does not conform to a JSON schema."""


class AskUserSkipped(Exception):
    """Raised for ASK_USER entities: the run stays open for a human to answer."""

    def __init__(self, entity_id: str = "", run_id: str = ""):
        self.entity_id = entity_id
        self.run_id = run_id
        super().__init__("ASK_USER task started, awaiting user response")
