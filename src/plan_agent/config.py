"""Agent configuration, resolved once per command invocation.

Precedence, highest first: command-line flags, environment variables, the
config file, built-in defaults. The resulting ``AgentConfig`` is passed
explicitly to every component; nothing reads ambient state after startup.
"""

from __future__ import annotations

import json
import os
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Mapping

import yaml

from .errors import ConfigError

DEFAULT_API_URL = "https://kindship.ai"
DEFAULT_POLL_INTERVAL_SEC = 30
DEFAULT_WORKSPACE_DIR = "/workspace"
DEFAULT_EXEC_TIMEOUT_SEC = 600
DEFAULT_HTTP_TIMEOUT_SEC = 30
DEFAULT_CONFIG_PATH = Path("~/.plan-agent/config.yaml")
CONFIG_PATH_ENV = "PLAN_AGENT_CONFIG"

# field -> environment variables consulted, first match wins
ENV_KEYS: dict[str, tuple[str, ...]] = {
    "agent_id": ("PLAN_AGENT_ID", "AGENT_ID"),
    "service_key": ("PLAN_AGENT_SERVICE_KEY",),
    "api_url": ("PLAN_AGENT_API_URL",),
    "poll_interval_sec": ("PLAN_AGENT_POLL_INTERVAL",),
    "workspace_dir": ("PLAN_AGENT_WORKSPACE",),
    "exec_timeout_sec": ("PLAN_AGENT_EXEC_TIMEOUT",),
    "http_timeout_sec": ("PLAN_AGENT_HTTP_TIMEOUT",),
    "shell_cmd": ("PLAN_AGENT_SHELL",),
    "python_cmd": ("PLAN_AGENT_PYTHON",),
    "agent_cmd": ("PLAN_AGENT_AGENT_CMD",),
    "log_level": ("PLAN_AGENT_LOG_LEVEL",),
    "log_file": ("PLAN_AGENT_LOG_FILE",),
}


@dataclass(frozen=True)
class AgentConfig:
    agent_id: str = ""
    service_key: str = ""
    api_url: str = DEFAULT_API_URL
    poll_interval_sec: int = DEFAULT_POLL_INTERVAL_SEC
    workspace_dir: str = DEFAULT_WORKSPACE_DIR
    exec_timeout_sec: int = DEFAULT_EXEC_TIMEOUT_SEC
    http_timeout_sec: int = DEFAULT_HTTP_TIMEOUT_SEC
    shell_cmd: str = "sh"
    python_cmd: str = "python3"
    agent_cmd: str = "claude"
    log_level: str = "INFO"
    log_file: str = ""
    config_path: str = ""

    @classmethod
    def resolve(
        cls,
        flags: Mapping[str, Any] | None = None,
        environ: Mapping[str, str] | None = None,
        config_path: str | Path | None = None,
    ) -> "AgentConfig":
        environ = os.environ if environ is None else environ
        path = _config_file_path(config_path, environ)
        from_file = load_config_file(path) if path is not None else {}

        merged: dict[str, Any] = {}
        for key, value in from_file.items():
            if key in ENV_KEYS and value is not None:
                merged[key] = value
        for key, names in ENV_KEYS.items():
            for name in names:
                raw = environ.get(name)
                if raw is not None and str(raw).strip():
                    merged[key] = raw
                    break
        for key, value in (flags or {}).items():
            if key in ENV_KEYS and value is not None and str(value).strip():
                merged[key] = value

        def _str(key: str, default: str) -> str:
            return str(merged.get(key, default)).strip() or default

        def _int(key: str, default: int) -> int:
            raw = merged.get(key)
            if raw is None:
                return default
            try:
                value = int(raw)
            except (TypeError, ValueError):
                return default
            return value if value > 0 else default

        return cls(
            agent_id=_str("agent_id", ""),
            service_key=_str("service_key", ""),
            api_url=_str("api_url", DEFAULT_API_URL).rstrip("/"),
            poll_interval_sec=_int("poll_interval_sec", DEFAULT_POLL_INTERVAL_SEC),
            workspace_dir=_str("workspace_dir", DEFAULT_WORKSPACE_DIR),
            exec_timeout_sec=_int("exec_timeout_sec", DEFAULT_EXEC_TIMEOUT_SEC),
            http_timeout_sec=_int("http_timeout_sec", DEFAULT_HTTP_TIMEOUT_SEC),
            shell_cmd=_str("shell_cmd", "sh"),
            python_cmd=_str("python_cmd", "python3"),
            agent_cmd=_str("agent_cmd", "claude"),
            log_level=_str("log_level", "INFO").upper(),
            log_file=_str("log_file", ""),
            config_path=str(path) if path is not None else "",
        )

    def require_credentials(self) -> None:
        missing = []
        if not self.agent_id:
            missing.append("agent id (--agent-id or PLAN_AGENT_ID)")
        if not self.service_key:
            missing.append("service key (--service-key or PLAN_AGENT_SERVICE_KEY)")
        if missing:
            raise ConfigError("missing " + " and ".join(missing))

    def require_service_key(self) -> None:
        if not self.service_key:
            raise ConfigError("missing service key (--service-key or PLAN_AGENT_SERVICE_KEY)")

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["service_key"] = "set" if self.service_key else ""
        return payload


def _config_file_path(explicit: str | Path | None, environ: Mapping[str, str]) -> Path | None:
    if explicit:
        path = Path(explicit).expanduser()
        if not path.exists():
            raise ConfigError(f"config file not found: {path}")
        return path
    raw = str(environ.get(CONFIG_PATH_ENV, "")).strip()
    if raw:
        path = Path(raw).expanduser()
        if not path.exists():
            raise ConfigError(f"config file not found: {path}")
        return path
    default = DEFAULT_CONFIG_PATH.expanduser()
    return default if default.exists() else None


def _read_structured(path: Path) -> Any:
    text = path.read_text(encoding="utf-8")
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        try:
            return yaml.safe_load(text)
        except yaml.YAMLError as err:
            raise ConfigError(f"invalid config file {path}: {err}") from err


def load_config_file(path: Path) -> dict[str, Any]:
    try:
        payload = _read_structured(path)
    except OSError as err:
        raise ConfigError(f"unable to read config file {path}: {err}") from err
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise ConfigError(f"config file {path} must contain a mapping")
    return payload
