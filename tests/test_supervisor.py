import logging
import signal
import threading

import pytest

from conftest import py_spec, wait_for
from rtbootstrap.engine.process import ProcessSpec, ProcessState
from rtbootstrap.engine.supervisor import Supervisor
from rtbootstrap.errors import ProcessError, ProcessErrorKind

SLEEP = "import time; time.sleep(30)"


class _Runner:
    """Runs Supervisor.run() on a worker thread and captures the result."""

    def __init__(self, sup: Supervisor):
        self.sup = sup
        self.rc = None
        self.error = None
        self.thread = threading.Thread(target=self._target, daemon=True)

    def _target(self):
        try:
            self.rc = self.sup.run()
        except Exception as e:  # surfaced to the test through .error
            self.error = e

    def start(self):
        self.thread.start()
        return self

    def join(self, timeout=15.0):
        self.thread.join(timeout)
        assert not self.thread.is_alive(), "supervisor did not finish"
        return self.rc


def _fake_specs(**web_kwargs):
    return [
        ProcessSpec(name="rtorrent", command=("rtorrent",), primary=True, readiness_delay_s=0.01,
                    stop_signal=signal.SIGINT),
        ProcessSpec(name="php-fpm", command=("php-fpm",), readiness_delay_s=0.01, stop_signal=signal.SIGQUIT,
                    **web_kwargs),
        ProcessSpec(name="nginx", command=("nginx",), readiness_delay_s=0.01, stop_signal=signal.SIGQUIT,
                    **web_kwargs),
    ]


def _all_running(sup):
    return all(s.state is ProcessState.RUNNING for s in sup.snapshot())


def test_requires_exactly_one_primary():
    with pytest.raises(ValueError):
        Supervisor([ProcessSpec(name="a", command=("a",))])


def test_starts_in_order_without_blocking(fake_popen):
    sup = Supervisor(_fake_specs(), grace_period_s=1)
    runner = _Runner(sup).start()
    assert wait_for(lambda: _all_running(sup))
    assert list(fake_popen["procs"]) == ["rtorrent", "php-fpm", "nginx"]
    sup.request_shutdown()
    assert runner.join() == 0


def test_shutdown_signals_primary_first(fake_popen):
    sup = Supervisor(_fake_specs(), grace_period_s=1)
    runner = _Runner(sup).start()
    assert wait_for(lambda: _all_running(sup))
    sup.request_shutdown("SIGTERM")
    assert runner.join() == 0

    journal = fake_popen["journal"]
    assert journal[0][1:] == ("rtorrent", signal.SIGINT)
    assert {name for _, name, _ in journal[1:]} == {"php-fpm", "nginx"}
    assert all(sig == signal.SIGQUIT for _, _, sig in journal[1:])
    for s in sup.snapshot():
        assert s.state in (ProcessState.EXITED, ProcessState.FAILED)


def test_shutdown_waits_grace_then_kills_primary(fake_popen):
    fake_popen["stubborn"].add("rtorrent")
    grace = 0.5
    sup = Supervisor(_fake_specs(), grace_period_s=grace)
    runner = _Runner(sup).start()
    assert wait_for(lambda: _all_running(sup))
    sup.request_shutdown("SIGTERM")
    assert runner.join() == 0

    journal = fake_popen["journal"]
    names = [(name, sig) for _, name, sig in journal]
    assert names[:2] == [("rtorrent", signal.SIGINT), ("rtorrent", signal.SIGKILL)]
    graceful_at, killed_at = journal[0][0], journal[1][0]
    assert killed_at - graceful_at >= grace * 0.9
    # web tier untouched until the primary was dealt with
    for ts, name, _ in journal[2:]:
        assert name in ("php-fpm", "nginx")
        assert ts >= killed_at


def test_primary_exit_stops_everything(fake_popen):
    sup = Supervisor(_fake_specs(), grace_period_s=1)
    runner = _Runner(sup).start()
    assert wait_for(lambda: _all_running(sup))
    fake_popen["procs"]["rtorrent"].finish(3)
    assert runner.join() == 3
    assert {name for _, name, _ in fake_popen["journal"]} == {"php-fpm", "nginx"}


def test_primary_exit_real_processes():
    specs = [
        py_spec("primary", "import sys, time; time.sleep(0.5); sys.exit(3)", primary=True),
        py_spec("secondary", SLEEP),
    ]
    sup = Supervisor(specs, grace_period_s=5)
    rc = _Runner(sup).start().join()
    assert rc == 3
    secondary = next(p for p in sup.processes if p.name == "secondary")
    assert not secondary.is_alive()
    assert secondary.returncode == -signal.SIGTERM


def test_primary_killed_by_signal_maps_to_128_plus_n():
    specs = [
        py_spec("primary", "import os, signal, time; time.sleep(0.2); os.kill(os.getpid(), signal.SIGKILL)",
                primary=True),
        py_spec("secondary", SLEEP),
    ]
    rc = _Runner(Supervisor(specs, grace_period_s=5)).start().join()
    assert rc == 128 + signal.SIGKILL


def test_web_tier_restarts_then_gives_up():
    specs = [
        py_spec("primary", SLEEP, primary=True),
        py_spec("web", "import sys, time; time.sleep(0.1); sys.exit(4)", max_restarts=2),
    ]
    sup = Supervisor(specs, grace_period_s=5, restart_delay_s=0.05)
    rc = _Runner(sup).start().join()
    assert rc == 4
    web = next(p for p in sup.processes if p.name == "web")
    assert web.restarts == 2
    reg = sup.metrics.registry
    assert reg.get_sample_value("rtbootstrap_process_starts_total", {"process": "web"}) == 3.0
    assert reg.get_sample_value("rtbootstrap_process_restarts_total", {"process": "web"}) == 2.0
    assert not sup.primary.is_alive()


def test_web_tier_clean_exit_beyond_budget_is_nonzero():
    specs = [
        py_spec("primary", SLEEP, primary=True),
        py_spec("web", "pass", max_restarts=0),
    ]
    rc = _Runner(Supervisor(specs, grace_period_s=5)).start().join()
    assert rc == 1


def test_web_tier_recovers_within_budget(tmp_path):
    flag = tmp_path / "crashed-once"
    code = (
        "import pathlib, sys, time\n"
        f"flag = pathlib.Path({str(flag)!r})\n"
        "if not flag.exists():\n"
        "    flag.touch()\n"
        "    sys.exit(1)\n"
        "time.sleep(30)\n"
    )
    specs = [py_spec("primary", SLEEP, primary=True), py_spec("web", code, max_restarts=1)]
    sup = Supervisor(specs, grace_period_s=5, restart_delay_s=0.05)
    runner = _Runner(sup).start()
    web = next(p for p in sup.processes if p.name == "web")
    assert wait_for(lambda: web.restarts == 1 and web.state is ProcessState.RUNNING)
    assert _all_running(sup)
    sup.request_shutdown()
    assert runner.join() == 0


def test_spawn_failure_aborts_and_cleans_up(tmp_path):
    specs = [
        py_spec("primary", SLEEP, primary=True),
        ProcessSpec(name="web", command=(str(tmp_path / "missing-binary"),)),
    ]
    sup = Supervisor(specs, grace_period_s=5)
    runner = _Runner(sup).start()
    runner.join()
    assert isinstance(runner.error, ProcessError)
    assert runner.error.kind is ProcessErrorKind.SPAWN_FAILED
    assert not sup.primary.is_alive()


def test_signal_handler_requests_shutdown(fake_popen):
    sup = Supervisor(_fake_specs(), grace_period_s=1)
    runner = _Runner(sup).start()
    assert wait_for(lambda: _all_running(sup))
    sup._on_signal(signal.SIGTERM, None)
    assert runner.join() == 0
    assert fake_popen["journal"][0][1] == "rtorrent"


def test_signal_handlers_skipped_off_main_thread_with_debug_logging(fake_popen):
    root = logging.getLogger()
    root.setLevel(logging.DEBUG)
    sup = Supervisor(_fake_specs(), grace_period_s=1)
    errors = []

    def _install():
        try:
            sup.install_signal_handlers()
        except Exception as e:  # reported back to the test thread
            errors.append(e)

    t = threading.Thread(target=_install)
    t.start()
    t.join(5)
    assert errors == []
    assert signal.getsignal(signal.SIGTERM) != sup._on_signal
