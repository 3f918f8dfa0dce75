# -*- coding: utf-8 -*-
"""
Process supervisor.

Policies:
- the primary process (torrent daemon) is never restarted; its exit stops
  everything and becomes the supervisor exit status
- secondary processes are restarted up to spec.max_restarts times, after
  restart_delay_s; exhausting the budget is fatal
- on a shutdown request the primary is signalled first and given the full
  grace period before any secondary is touched

Child exits are delivered to the supervising thread through a queue; all
state transitions that follow an exit happen on that thread.
"""
from __future__ import annotations

import logging
import queue
import signal
import threading
import time
from typing import Dict, List, Optional, Sequence, Tuple

from ..errors import ProcessError
from ..metrics import SupervisorMetrics
from .process import ManagedProcess, ProcessSnapshot, ProcessSpec

logger = logging.getLogger("rtbootstrap.supervisor")

EVENT_POLL_INTERVAL_S = 0.2


class Supervisor:
    def __init__(
        self,
        specs: Sequence[ProcessSpec],
        *,
        grace_period_s: float = 10.0,
        restart_delay_s: float = 2.0,
        metrics: Optional[SupervisorMetrics] = None,
    ) -> None:
        primaries = [s for s in specs if s.primary]
        if len(primaries) != 1:
            raise ValueError(f"exactly one primary process required, got {len(primaries)}")
        self.grace_period_s = grace_period_s
        self.restart_delay_s = restart_delay_s
        self.metrics = metrics or SupervisorMetrics()
        self._events: "queue.Queue[ManagedProcess]" = queue.Queue()
        self.processes: List[ManagedProcess] = [
            ManagedProcess(s, on_exit=self._events.put, metrics=self.metrics) for s in specs
        ]
        self.primary = next(p for p in self.processes if p.spec.primary)
        self._pending_restarts: Dict[str, Tuple[float, ManagedProcess]] = {}
        # plain attribute: written from signal handlers, polled by run()
        self._shutdown_reason: Optional[str] = None
        self._stopping = False
        self._done = threading.Event()

    # ---------- external control ----------

    def request_shutdown(self, reason: str = "request") -> None:
        if self._shutdown_reason is None:
            self._shutdown_reason = reason

    def install_signal_handlers(self) -> None:
        if threading.current_thread() is not threading.main_thread():
            logger.debug("signal_handlers_skipped", extra={"thread_name": threading.current_thread().name})
            return
        for sig in (signal.SIGTERM, signal.SIGINT):
            signal.signal(sig, self._on_signal)

    def _on_signal(self, signum, frame) -> None:
        self.request_shutdown(signal.Signals(signum).name)

    def snapshot(self) -> List[ProcessSnapshot]:
        return [p.snapshot() for p in self.processes]

    def wait_done(self, timeout: Optional[float] = None) -> bool:
        return self._done.wait(timeout)

    # ---------- main loop ----------

    def run(self) -> int:
        """Start every process in order and block until the supervisor finishes."""
        try:
            self._start_all()
            return self._loop()
        finally:
            self._done.set()

    def _start_all(self) -> None:
        for proc in self.processes:
            try:
                proc.start()
            except ProcessError:
                logger.error("spawn_failed", extra={"child": proc.name})
                self._stop_all()
                raise

    def _loop(self) -> int:
        while True:
            if self._shutdown_reason is not None:
                return self._graceful_shutdown(self._shutdown_reason)
            try:
                proc = self._events.get(timeout=EVENT_POLL_INTERVAL_S)
            except queue.Empty:
                self._run_due_restarts()
                continue
            rc = self._on_exit(proc)
            if rc is not None:
                return rc

    def _on_exit(self, proc: ManagedProcess) -> Optional[int]:
        if self._stopping:
            return None
        if proc is self.primary:
            rc = proc.exit_status()
            logger.error(
                "primary_exited",
                extra={"child": proc.name, "returncode": proc.returncode, "exit_code": rc},
            )
            self._stop_all()
            return rc

        if proc.restarts < proc.spec.max_restarts:
            proc.restarts += 1
            due = time.monotonic() + self.restart_delay_s
            self._pending_restarts[proc.name] = (due, proc)
            logger.warning(
                "restart_scheduled",
                extra={
                    "child": proc.name,
                    "returncode": proc.returncode,
                    "attempt": proc.restarts,
                    "max_restarts": proc.spec.max_restarts,
                    "delay_s": self.restart_delay_s,
                },
            )
            return None

        rc = proc.exit_status() or 1
        logger.error(
            "restart_budget_exhausted",
            extra={"child": proc.name, "returncode": proc.returncode, "restarts": proc.restarts, "exit_code": rc},
        )
        self._stop_all()
        return rc

    def _run_due_restarts(self) -> None:
        now = time.monotonic()
        for name, (due, proc) in list(self._pending_restarts.items()):
            if due > now:
                continue
            del self._pending_restarts[name]
            self.metrics.restarts.labels(process=name).inc()
            try:
                proc.start()
            except ProcessError:
                logger.error("restart_failed", extra={"child": name})
                self._stop_all()
                raise

    # ---------- stopping ----------

    def _graceful_shutdown(self, reason: str) -> int:
        logger.info("shutdown_requested", extra={"reason": reason, "grace_s": self.grace_period_s})
        clean = self._stop_all()
        if not clean:
            logger.warning("shutdown_forced", extra={"child": self.primary.name})
        logger.info("shutdown_complete")
        return 0

    def _stop_all(self) -> bool:
        """
        Primary first with the full grace period, then every other process.
        Returns False when the primary had to be killed.
        """
        self._stopping = True
        self._pending_restarts.clear()
        clean = self.primary.stop(self.grace_period_s)
        others = [p for p in reversed(self.processes) if p is not self.primary]
        signalled = [p for p in others if p.send_signal(p.spec.stop_signal)]
        deadline = time.monotonic() + self.grace_period_s
        for p in signalled:
            if not p.wait(max(0.0, deadline - time.monotonic())):
                logger.warning("process_stop_timeout", extra={"child": p.name, "grace_s": self.grace_period_s})
                p.kill()
                p.wait(self.grace_period_s)
        return clean
