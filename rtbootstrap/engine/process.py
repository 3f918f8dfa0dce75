# -*- coding: utf-8 -*-
"""
Managed child process with an explicit lifecycle.

    STARTING --(readiness delay elapsed | readiness port accepts)--> RUNNING
    STARTING/RUNNING --(exit code 0)--> EXITED
    STARTING/RUNNING --(non-zero exit or signal)--> FAILED

Each start spawns two daemon threads: one blocks in wait() and records the
exit, the other promotes the process to RUNNING once it looks ready.
State is written only by this object; readers take snapshots.
"""
from __future__ import annotations

import logging
import os
import signal
import socket
import subprocess
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, Optional, Tuple

from ..errors import ProcessError, ProcessErrorKind
from ..metrics import SupervisorMetrics

logger = logging.getLogger("rtbootstrap.process")

READINESS_POLL_INTERVAL_S = 0.2
DEFAULT_KILL_TIMEOUT_S = 5.0


class ProcessState(str, Enum):
    STARTING = "starting"
    RUNNING = "running"
    EXITED = "exited"
    FAILED = "failed"


@dataclass(frozen=True)
class ProcessSpec:
    name: str
    command: Tuple[str, ...]
    cwd: Optional[str] = None
    env: Dict[str, str] = field(default_factory=dict)
    primary: bool = False
    required: bool = True
    max_restarts: int = 0
    readiness_delay_s: float = 1.0
    readiness_port: Optional[int] = None
    readiness_host: str = "127.0.0.1"
    startup_timeout_s: float = 30.0
    stop_signal: int = signal.SIGTERM
    uid: Optional[int] = None
    gid: Optional[int] = None


@dataclass(frozen=True)
class ProcessSnapshot:
    name: str
    state: ProcessState
    pid: Optional[int]
    returncode: Optional[int]
    restarts: int
    primary: bool
    required: bool


ExitListener = Callable[["ManagedProcess"], None]


def port_accepts(host: str, port: int, timeout: float = 0.5) -> bool:
    try:
        with socket.create_connection((host, port), timeout=timeout):
            return True
    except OSError:
        return False


def exit_status(returncode: Optional[int]) -> int:
    """Shell convention: death by signal N becomes 128+N."""
    if returncode is None:
        return 1
    if returncode < 0:
        return 128 + (-returncode)
    return returncode


class ManagedProcess:
    def __init__(
        self,
        spec: ProcessSpec,
        *,
        on_exit: Optional[ExitListener] = None,
        metrics: Optional[SupervisorMetrics] = None,
    ) -> None:
        self.spec = spec
        self.state = ProcessState.STARTING
        self.returncode: Optional[int] = None
        self.restarts = 0
        self._proc: Optional[subprocess.Popen] = None
        self._generation = 0
        self._exited = threading.Event()
        self._lock = threading.RLock()
        self._on_exit = on_exit
        self._metrics = metrics

    @property
    def name(self) -> str:
        return self.spec.name

    @property
    def pid(self) -> Optional[int]:
        proc = self._proc
        return proc.pid if proc is not None else None

    def is_alive(self) -> bool:
        return self._proc is not None and not self._exited.is_set()

    def _preexec(self) -> Optional[Callable[[], None]]:
        uid, gid = self.spec.uid, self.spec.gid
        if os.geteuid() != 0 or (uid is None and gid is None):
            return None

        def _drop_priv() -> None:
            if gid is not None:
                os.setgroups([gid])
                os.setgid(gid)
            if uid is not None:
                os.setuid(uid)

        return _drop_priv

    def start(self) -> None:
        """Spawn the child. Non-blocking; readiness is tracked in the background."""
        with self._lock:
            if self.is_alive():
                raise ProcessError(ProcessErrorKind.SPAWN_FAILED, "already running", process=self.name)
            self._generation += 1
            gen = self._generation
            self.state = ProcessState.STARTING
            self.returncode = None
            self._exited.clear()

            env = os.environ.copy()
            env.update(self.spec.env)
            try:
                proc = subprocess.Popen(
                    list(self.spec.command),
                    cwd=self.spec.cwd,
                    env=env,
                    preexec_fn=self._preexec(),
                    start_new_session=True,
                )
            except OSError as exc:
                self.state = ProcessState.FAILED
                raise ProcessError(
                    ProcessErrorKind.SPAWN_FAILED,
                    f"cannot execute {self.spec.command[0]!r}: {exc.strerror or exc}",
                    process=self.name,
                ) from exc
            self._proc = proc

        logger.info("process_started", extra={"child": self.name, "pid": proc.pid, "command": list(self.spec.command)})
        if self._metrics:
            self._metrics.starts.labels(process=self.name).inc()
        threading.Thread(target=self._watch, args=(proc, gen), name=f"watch-{self.name}", daemon=True).start()
        threading.Thread(target=self._await_readiness, args=(gen,), name=f"ready-{self.name}", daemon=True).start()

    def _await_readiness(self, gen: int) -> None:
        spec = self.spec
        if spec.readiness_port is None:
            if not self._exited.wait(spec.readiness_delay_s):
                self._mark_running(gen)
            return
        deadline = time.monotonic() + spec.startup_timeout_s
        while not self._exited.is_set():
            if port_accepts(spec.readiness_host, spec.readiness_port):
                self._mark_running(gen)
                return
            if time.monotonic() >= deadline:
                logger.warning(
                    "process_readiness_timeout",
                    extra={"child": self.name, "port": spec.readiness_port, "timeout_s": spec.startup_timeout_s},
                )
                return
            self._exited.wait(READINESS_POLL_INTERVAL_S)

    def _mark_running(self, gen: int) -> None:
        with self._lock:
            if gen != self._generation or self.state is not ProcessState.STARTING:
                return
            self.state = ProcessState.RUNNING
        logger.info("process_running", extra={"child": self.name, "pid": self.pid})
        if self._metrics:
            self._metrics.running.labels(process=self.name).set(1)

    def _watch(self, proc: subprocess.Popen, gen: int) -> None:
        rc = proc.wait()
        with self._lock:
            if gen != self._generation:
                return
            self.returncode = rc
            self.state = ProcessState.EXITED if rc == 0 else ProcessState.FAILED
        log = logger.info if rc == 0 else logger.warning
        log("process_exited", extra={"child": self.name, "pid": proc.pid, "returncode": rc})
        if self._metrics:
            self._metrics.running.labels(process=self.name).set(0)
            self._metrics.exits.labels(process=self.name, outcome=self.state.value).inc()
        self._exited.set()
        if self._on_exit:
            self._on_exit(self)

    # ---------- stopping ----------

    def send_signal(self, sig: int) -> bool:
        with self._lock:
            proc = self._proc
        if proc is None or self._exited.is_set():
            return False
        try:
            proc.send_signal(sig)
        except ProcessLookupError:
            return False
        logger.debug("process_signalled", extra={"child": self.name, "signal": signal.Signals(sig).name})
        return True

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until the child has exited; False on timeout."""
        if self._proc is None:
            return True
        return self._exited.wait(timeout)

    def kill(self) -> None:
        self.send_signal(signal.SIGKILL)

    def stop(self, grace_s: float, kill_timeout_s: float = DEFAULT_KILL_TIMEOUT_S) -> bool:
        """
        Graceful stop: stop_signal, wait grace_s, then SIGKILL.
        Returns True when the child exited within the grace period.
        """
        if not self.send_signal(self.spec.stop_signal):
            return True
        if self.wait(grace_s):
            return True
        logger.warning("process_stop_timeout", extra={"child": self.name, "grace_s": grace_s})
        self.kill()
        self.wait(kill_timeout_s)
        return False

    def exit_status(self) -> int:
        return exit_status(self.returncode)

    def snapshot(self) -> ProcessSnapshot:
        return ProcessSnapshot(
            name=self.name,
            state=self.state,
            pid=self.pid,
            returncode=self.returncode,
            restarts=self.restarts,
            primary=self.spec.primary,
            required=self.spec.required,
        )
