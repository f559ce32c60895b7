"""Command-line entry point for the plan agent."""

from __future__ import annotations

import argparse
import json
import sys
import threading
from typing import Any

from .agent_loop import AgentLoop, install_signal_handlers
from .api_client import VERSION, PlanningAPIClient
from .config import AgentConfig
from .errors import AskUserSkipped, ConfigError, PlanAgentError
from .executors import BackendRegistry
from .lifecycle import run_entity
from .logging_utils import AgentLogger
from .models import RunStatus
from .process_driver import run_process
from .secrets_exec import run_with_secrets

EXIT_OK = 0
EXIT_EXECUTION_FAILED = 1
EXIT_INFRASTRUCTURE = 2
EXIT_INTERRUPTED = 130


def _emit(payload: dict[str, Any]) -> None:
    print(json.dumps(payload, indent=2, sort_keys=True))


def _emit_error(command: str, err: BaseException) -> None:
    print(
        json.dumps({"ok": False, "error": str(err), "command": command}, indent=2, sort_keys=True),
        file=sys.stderr,
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="plan-agent", description="Planning entity agent runner")
    parser.add_argument("--config", default="", help="path to a YAML or JSON config file")
    parser.add_argument("--api-url", default="", help="planning API base URL")
    parser.add_argument("--agent-id", default="", help="agent identifier")
    parser.add_argument("--service-key", default="", help="service credential for the planning API")
    parser.add_argument("--workspace", default="", help="working directory for executions")
    parser.add_argument("--log-level", default="", help="DEBUG, INFO, WARNING or ERROR")
    parser.add_argument("--log-file", default="", help="append NDJSON log events to this file")

    sub = parser.add_subparsers(dest="command", required=True)
    run = sub.add_parser("run", help="execute one entity (or a whole Process)")
    run.add_argument("entity_id")
    loop = sub.add_parser("loop", help="poll for tasks until interrupted")
    loop.add_argument("--poll-interval", type=int, default=None, help="seconds to sleep when idle")
    loop.add_argument("--max-iterations", type=int, default=None, help=argparse.SUPPRESS)
    sub.add_parser("next", help="show the next runnable task")
    activate = sub.add_parser("activate", help="activate an entity")
    activate.add_argument("entity_id")
    activate.add_argument("--recursive", action="store_true")
    sub.add_parser("abandon-stale", help="abandon this agent's stale runs")
    auth = sub.add_parser("auth", help="run a command with the agent's secrets in its environment")
    auth.add_argument("cmd", nargs=argparse.REMAINDER)
    sub.add_parser("version")
    return parser


def _resolve_config(args: argparse.Namespace) -> AgentConfig:
    flags = {
        "api_url": args.api_url,
        "agent_id": args.agent_id,
        "service_key": args.service_key,
        "workspace_dir": args.workspace,
        "log_level": args.log_level,
        "log_file": args.log_file,
    }
    if getattr(args, "poll_interval", None):
        flags["poll_interval_sec"] = args.poll_interval
    return AgentConfig.resolve(flags, config_path=args.config or None)


def _cmd_run(args: argparse.Namespace, cfg: AgentConfig, logger: AgentLogger) -> int:
    cfg.require_credentials()
    client = PlanningAPIClient.from_config(cfg)
    backends = BackendRegistry.from_config(cfg)
    detail = client.fetch_entity_for_execution(args.entity_id)
    if detail.entity.is_process:
        cancel = threading.Event()
        install_signal_handlers(cancel, logger)
        summary = run_process(
            client,
            detail.entity,
            agent_id=cfg.agent_id,
            backends=backends,
            logger=logger,
            cancel=cancel,
        )
        _emit({"ok": summary.status is RunStatus.SUCCESS, **summary.to_dict()})
        if summary.status is RunStatus.ABANDONED:
            return EXIT_INTERRUPTED
        return EXIT_OK if summary.status is RunStatus.SUCCESS else EXIT_EXECUTION_FAILED

    try:
        result = run_entity(client, args.entity_id, agent_id=cfg.agent_id, backends=backends, logger=logger)
    except AskUserSkipped as skipped:
        _emit(
            {
                "ok": True,
                "skipped": True,
                "entity_id": skipped.entity_id,
                "run_id": skipped.run_id,
                "message": str(skipped),
            }
        )
        return EXIT_OK
    _emit(
        {
            "ok": result.success,
            "entity_id": result.entity_id,
            "run_id": result.run_id,
            "attempt_number": result.attempt_number,
            "exit_code": result.exit_code,
            "duration_ms": result.duration_ms,
            "error": result.error,
        }
    )
    return EXIT_OK if result.success else EXIT_EXECUTION_FAILED


def _cmd_loop(args: argparse.Namespace, cfg: AgentConfig, logger: AgentLogger) -> int:
    cfg.require_credentials()
    cancel = threading.Event()
    install_signal_handlers(cancel, logger)
    loop = AgentLoop(
        PlanningAPIClient.from_config(cfg),
        agent_id=cfg.agent_id,
        backends=BackendRegistry.from_config(cfg),
        logger=logger,
        cancel=cancel,
        poll_interval_sec=cfg.poll_interval_sec,
    )
    loop.run(max_iterations=args.max_iterations)
    cancel.set()
    loop.join_resumptions(timeout=cfg.exec_timeout_sec)
    return EXIT_OK


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command == "version":
        print(VERSION)
        return EXIT_OK

    try:
        cfg = _resolve_config(args)
    except ConfigError as err:
        _emit_error(args.command, err)
        return EXIT_INFRASTRUCTURE
    logger = AgentLogger.from_config(cfg)

    try:
        if args.command == "run":
            return _cmd_run(args, cfg, logger)
        if args.command == "loop":
            return _cmd_loop(args, cfg, logger)
        if args.command == "next":
            cfg.require_credentials()
            nxt = PlanningAPIClient.from_config(cfg).fetch_next_task(cfg.agent_id)
            _emit(nxt.to_dict())
            return EXIT_OK
        if args.command == "activate":
            cfg.require_service_key()
            activated = PlanningAPIClient.from_config(cfg).activate_entity(args.entity_id, recursive=args.recursive)
            print(f"Activated {activated.activated_count} entities")
            return EXIT_OK
        if args.command == "abandon-stale":
            cfg.require_credentials()
            abandoned = PlanningAPIClient.from_config(cfg).abandon_stale_runs(cfg.agent_id)
            _emit({"ok": True, "abandoned_count": abandoned.abandoned_count})
            return EXIT_OK
        if args.command == "auth":
            cfg.require_credentials()
            command = args.cmd[1:] if args.cmd[:1] == ["--"] else list(args.cmd)
            return run_with_secrets(PlanningAPIClient.from_config(cfg), cfg.agent_id, command, logger=logger)
    except (ConfigError, PlanAgentError, ValueError) as err:
        logger.error("command failed", command=args.command, error=str(err))
        _emit_error(args.command, err)
        return EXIT_INFRASTRUCTURE
    finally:
        logger.flush()

    return EXIT_INFRASTRUCTURE


if __name__ == "__main__":
    raise SystemExit(main())
