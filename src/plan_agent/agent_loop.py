"""Autonomous poll loop with startup recovery of interrupted runs."""

from __future__ import annotations

import signal
import threading
import time
from typing import Any

from .errors import AskUserSkipped, PlanAgentError, UnknownExecutionModeError
from .executors import BackendRegistry
from .lifecycle import PlanningAPI, run_entity
from .logging_utils import AgentLogger
from .models import PlanningEntity, ResumedRun
from .process_driver import run_process


class ResumeRegistry:
    """Run ids currently being resumed; safe for concurrent use."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._active: set[str] = set()

    def try_add(self, run_id: str) -> bool:
        with self._lock:
            if run_id in self._active:
                return False
            self._active.add(run_id)
            return True

    def discard(self, run_id: str) -> None:
        with self._lock:
            self._active.discard(run_id)

    def active(self) -> set[str]:
        with self._lock:
            return set(self._active)


def install_signal_handlers(cancel: threading.Event, logger: AgentLogger | None = None) -> None:
    def _handler(signum: int, _frame: Any) -> None:
        if logger is not None:
            logger.info("shutdown requested", signal=signal.Signals(signum).name)
        cancel.set()

    signal.signal(signal.SIGINT, _handler)
    signal.signal(signal.SIGTERM, _handler)


class AgentLoop:
    def __init__(
        self,
        client: PlanningAPI,
        *,
        agent_id: str,
        backends: BackendRegistry,
        logger: AgentLogger,
        cancel: threading.Event,
        poll_interval_sec: float = 30,
    ):
        self.client = client
        self.agent_id = agent_id
        self.backends = backends
        self.logger = logger.bind(agent_id=agent_id)
        self.cancel = cancel
        self.poll_interval_sec = poll_interval_sec
        self.resumes = ResumeRegistry()
        self._threads: list[threading.Thread] = []
        self._threads_lock = threading.Lock()

    def _resume(self, run: ResumedRun) -> None:
        log = self.logger.bind(run_id=run.run_id, entity_id=run.entity_id)
        try:
            summary = run_process(
                self.client,
                PlanningEntity(id=run.entity_id),
                agent_id=self.agent_id,
                backends=self.backends,
                logger=log,
                cancel=self.cancel,
                run_id=run.run_id,
            )
            log.info("resumption finished", status=summary.status.value, tasks_executed=summary.tasks_executed)
        except PlanAgentError as exc:
            log.error("resumption failed", error=str(exc))
        finally:
            self.resumes.discard(run.run_id)

    def launch_resumption(self, run: ResumedRun) -> bool:
        if not self.resumes.try_add(run.run_id):
            self.logger.info("run already being resumed", run_id=run.run_id)
            return False
        thread = threading.Thread(target=self._resume, args=(run,), name=f"resume-{run.run_id}", daemon=True)
        with self._threads_lock:
            self._threads.append(thread)
        thread.start()
        return True

    def recover(self) -> int:
        """Reconcile runs left open by a previous instance; returns launches."""
        try:
            recovered = self.client.recover_runs(self.agent_id)
        except PlanAgentError as exc:
            self.logger.warning("run recovery failed, continuing", error=str(exc))
            return 0
        self.logger.info(
            "run recovery",
            resumed=len(recovered.resumed),
            failed=recovered.failed_count,
            skipped_ask_user=recovered.skipped_ask_user_count,
        )
        launched = 0
        for run in recovered.resumed:
            if self.launch_resumption(run):
                launched += 1
        return launched

    def join_resumptions(self, timeout: float | None = None) -> bool:
        """Wait for background resumptions; True when all have finished."""
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._threads_lock:
            threads = list(self._threads)
        for thread in threads:
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            thread.join(remaining)
        return not any(thread.is_alive() for thread in threads)

    def poll_once(self) -> bool:
        """Fetch and run at most one task.

        True means poll again straight away: a task ran to a terminal outcome or
        was left for a user. False means wait one poll interval first, after an
        empty queue or any infrastructure or precondition error.
        """
        try:
            nxt = self.client.fetch_next_task(self.agent_id)
        except PlanAgentError as exc:
            self.logger.error("next task fetch failed", error=str(exc))
            return False
        if nxt.task is None:
            self.logger.debug("no task available", pending=nxt.pending_count)
            return False

        task_id = nxt.task.id
        try:
            result = run_entity(self.client, task_id, agent_id=self.agent_id, backends=self.backends, logger=self.logger)
        except AskUserSkipped:
            self.logger.info("task awaiting user response", task_id=task_id)
        except (PlanAgentError, UnknownExecutionModeError) as exc:
            self.logger.error("task aborted", task_id=task_id, error=str(exc))
            self.logger.flush()
            return False
        else:
            if result.success:
                self.logger.info("task succeeded", task_id=task_id, run_id=result.run_id)
            else:
                self.logger.warning("task failed", task_id=task_id, run_id=result.run_id, error=result.error)
        self.logger.flush()
        return True

    def run(self, max_iterations: int | None = None) -> int:
        """Recover, then poll until cancelled; returns completed iterations."""
        self.logger.info("agent loop starting", poll_interval_sec=self.poll_interval_sec)
        self.recover()
        iterations = 0
        while not self.cancel.is_set():
            if max_iterations is not None and iterations >= max_iterations:
                break
            iterations += 1
            if self.poll_once():
                continue
            if self.cancel.wait(self.poll_interval_sec):
                break
        self.logger.info("agent loop stopped", iterations=iterations, active_resumptions=len(self.resumes.active()))
        return iterations
