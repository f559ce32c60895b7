"""HTTP client for the planning API.

Stdlib ``urllib`` only. Every failure, transport or HTTP, surfaces as
``APIError`` so callers can tell infrastructure trouble from task outcomes.
"""

from __future__ import annotations

import json
from typing import Any
from urllib import error as urllib_error
from urllib import parse as urllib_parse
from urllib import request as urllib_request

from .errors import APIError
from .models import (
    AbandonStaleResponse,
    ActivateResponse,
    CompleteRequest,
    EntityExecuteResponse,
    ExecutionMode,
    NextTaskResponse,
    RecoverRunsResponse,
    SecretsResponse,
    StartResponse,
)

VERSION = "0.4.0"
USER_AGENT = f"plan-agent/{VERSION}"
SERVICE_KEY_HEADER = "X-Service-Key"
_ERROR_BODY_LIMIT = 500


def _quote(segment: str) -> str:
    return urllib_parse.quote(str(segment), safe="")


class PlanningAPIClient:
    def __init__(self, base_url: str, service_key: str, timeout_sec: int = 30):
        self._base_url = base_url.rstrip("/")
        self._service_key = service_key
        self._timeout = timeout_sec

    @classmethod
    def from_config(cls, config: Any) -> "PlanningAPIClient":
        return cls(config.api_url, config.service_key, timeout_sec=config.http_timeout_sec)

    @property
    def base_url(self) -> str:
        return self._base_url

    def _request(
        self,
        method: str,
        path: str,
        *,
        query: dict[str, str] | None = None,
        body: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> Any:
        url = f"{self._base_url}{path}"
        if query:
            url += "?" + urllib_parse.urlencode(query)
        all_headers = {
            "Authorization": f"Bearer {self._service_key}",
            "Accept": "application/json",
            "User-Agent": USER_AGENT,
        }
        data = None
        if body is not None:
            data = json.dumps(body).encode("utf-8")
            all_headers["Content-Type"] = "application/json"
        if headers:
            all_headers.update(headers)
        req = urllib_request.Request(url, data=data, method=method, headers=all_headers)
        try:
            with urllib_request.urlopen(req, timeout=self._timeout) as resp:
                raw = resp.read().decode("utf-8", errors="replace")
        except urllib_error.HTTPError as exc:
            try:
                detail = exc.read().decode("utf-8", errors="replace")
            except OSError:
                detail = ""
            raise APIError(exc.code, (detail or str(exc.reason))[:_ERROR_BODY_LIMIT]) from exc
        except (urllib_error.URLError, TimeoutError, OSError) as exc:
            raise APIError(None, f"{method} {path}: {exc}") from exc
        if not raw.strip():
            return {}
        try:
            return json.loads(raw)
        except json.JSONDecodeError as exc:
            raise APIError(None, f"{method} {path}: invalid JSON response: {exc}") from exc

    def fetch_next_task(self, agent_id: str) -> NextTaskResponse:
        payload = self._request("GET", "/api/cli/plan/next", query={"agent_id": agent_id})
        if isinstance(payload, dict) and payload.get("error"):
            raise APIError(None, str(payload["error"]))
        return NextTaskResponse.from_dict(payload)

    def fetch_next_task_for_process(self, agent_id: str, process_id: str) -> NextTaskResponse:
        payload = self._request(
            "GET",
            "/api/cli/plan/next",
            query={"agent_id": agent_id, "process_id": process_id},
        )
        if isinstance(payload, dict) and payload.get("error"):
            raise APIError(None, str(payload["error"]))
        return NextTaskResponse.from_dict(payload)

    def fetch_entity_for_execution(self, entity_id: str) -> EntityExecuteResponse:
        payload = self._request("GET", f"/api/planning/entity/{_quote(entity_id)}/execute")
        response = EntityExecuteResponse.from_dict(payload)
        if not response.entity.id:
            raise APIError(None, f"entity {entity_id} missing from execute response")
        return response

    def start_execution(self, entity_id: str, mode: ExecutionMode, agent_id: str) -> StartResponse:
        payload = self._request(
            "POST",
            "/api/planning/execution/start",
            body={"entity_id": entity_id, "execution_mode": mode.value, "agent_id": agent_id},
        )
        response = StartResponse.from_dict(payload)
        if not response.execution_id:
            raise APIError(None, "start response missing execution_id")
        return response

    def complete_execution(self, run_id: str, request: CompleteRequest) -> None:
        self._request("POST", f"/api/planning/execution/{_quote(run_id)}/complete", body=request.to_dict())

    def recover_runs(self, agent_id: str) -> RecoverRunsResponse:
        payload = self._request("POST", "/api/planning/execution/recover", body={"agent_id": agent_id})
        return RecoverRunsResponse.from_dict(payload)

    def abandon_stale_runs(self, agent_id: str) -> AbandonStaleResponse:
        payload = self._request("POST", "/api/planning/execution/abandon-stale", body={"agent_id": agent_id})
        if isinstance(payload, dict) and payload.get("error"):
            raise APIError(None, str(payload["error"]))
        return AbandonStaleResponse.from_dict(payload)

    def activate_entity(self, entity_id: str, recursive: bool = False) -> ActivateResponse:
        payload = self._request(
            "POST",
            f"/api/planning/entity/{_quote(entity_id)}/activate",
            body={"recursive": bool(recursive)},
        )
        return ActivateResponse.from_dict(payload)

    def fetch_secrets(self, agent_id: str, command: str = "") -> SecretsResponse:
        payload = self._request(
            "GET",
            f"/api/agent-containers/{_quote(agent_id)}/secrets",
            query={"command": command} if command else None,
            headers={SERVICE_KEY_HEADER: self._service_key},
        )
        return SecretsResponse.from_dict(payload)
