import itertools
import logging
import os
import socket
import sys
import threading
import time
from pathlib import Path
from typing import Callable, Dict, List, Tuple

import pytest

from rtbootstrap.config import known_variables
from rtbootstrap.engine.process import ProcessSpec


# ------------------------------
# Helpers
# ------------------------------

def wait_for(predicate: Callable[[], bool], timeout: float = 5.0, interval: float = 0.02) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


def free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


def py_spec(name: str, code: str, **kwargs) -> ProcessSpec:
    """ProcessSpec running a short Python snippet as the child."""
    kwargs.setdefault("readiness_delay_s", 0.05)
    return ProcessSpec(name=name, command=(sys.executable, "-c", code), **kwargs)


class FakePopen:
    """subprocess.Popen stand-in; exits only when told to or when signalled."""

    _pids = itertools.count(4242)

    def __init__(self, args, journal: List[Tuple[float, str, int]], stubborn: frozenset, **kwargs):
        self.args = args
        self.kwargs = kwargs
        self.name = os.path.basename(args[0])
        self.pid = next(self._pids)
        self.returncode = None
        self._journal = journal
        self._stubborn = stubborn
        self._done = threading.Event()

    def poll(self):
        return self.returncode

    def wait(self, timeout=None):
        self._done.wait(timeout)
        return self.returncode

    def send_signal(self, sig):
        self._journal.append((time.monotonic(), self.name, int(sig)))
        if sig == 9 or self.name not in self._stubborn:
            self.finish(-int(sig))

    def finish(self, rc: int) -> None:
        if self.returncode is None:
            self.returncode = rc
            self._done.set()


# ------------------------------
# Fixtures
# ------------------------------

@pytest.fixture(autouse=True)
def strict_env(monkeypatch):
    # local health requests must not go through a proxy
    for var in ("HTTP_PROXY", "HTTPS_PROXY", "http_proxy", "https_proxy", "ALL_PROXY", "all_proxy"):
        monkeypatch.delenv(var, raising=False)


@pytest.fixture(autouse=True)
def restore_root_logging():
    # setup_logging() replaces root handlers; keep tests isolated
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    for h in list(root.handlers):
        if h not in handlers:
            root.removeHandler(h)
            h.close()
    for h in handlers:
        if h not in root.handlers:
            root.addHandler(h)
    root.setLevel(level)


@pytest.fixture
def clean_environ(monkeypatch):
    for name in known_variables():
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


@pytest.fixture
def mounts(tmp_path) -> Dict[str, Path]:
    paths = {
        "data": tmp_path / "data",
        "downloads": tmp_path / "downloads",
        "passwd": tmp_path / "passwd",
        "etc": tmp_path / "etc",
        "webroot": tmp_path / "www",
    }
    for p in paths.values():
        p.mkdir()
    return paths


@pytest.fixture
def base_env(mounts) -> Dict[str, str]:
    return {
        "PUID": str(os.getuid()),
        "PGID": str(os.getgid()),
        "DATA_DIR": str(mounts["data"]),
        "DOWNLOADS_DIR": str(mounts["downloads"]),
        "PASSWD_DIR": str(mounts["passwd"]),
        "ETC_DIR": str(mounts["etc"]),
        "RUTORRENT_WEBROOT": str(mounts["webroot"]),
    }


@pytest.fixture
def fake_popen(monkeypatch):
    """
    Patches Popen inside the process engine. Returns a registry with the
    spawned fakes, the signal journal and the set of names that ignore
    graceful stop signals.
    """
    from rtbootstrap.engine import process as process_mod

    state = {"procs": {}, "journal": [], "stubborn": set()}

    def _factory(args, **kwargs):
        proc = FakePopen(args, state["journal"], frozenset(state["stubborn"]), **kwargs)
        state["procs"][proc.name] = proc
        return proc

    monkeypatch.setattr(process_mod.subprocess, "Popen", _factory)
    yield state
    for proc in state["procs"].values():
        proc.finish(0)
