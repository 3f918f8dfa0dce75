# -*- coding: utf-8 -*-
"""
Container entrypoint orchestration.

    resolve config -> logging -> timezone -> render -> health listener
    -> supervisor (blocks) -> exit status

Nothing is spawned until configuration and rendering have succeeded; a
config or render failure exits with EXIT_CONFIG and leaves no child behind.
"""
from __future__ import annotations

import logging
import os
import signal
import sys
import time
from pathlib import Path
from typing import List, Mapping, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .config import RuntimeConfig, resolve
from .engine.process import ProcessSpec
from .engine.supervisor import Supervisor
from .errors import EXIT_RUNTIME, ConfigError, ProcessError, RenderError
from .health import HealthServer
from .logging_setup import setup_logging
from .render import RenderedFile, render

logger = logging.getLogger("rtbootstrap.bootstrap")

ZONEINFO_DIR = Path("/usr/share/zoneinfo")
PHP_FPM_READY_DELAY_S = 1.0
_FALSY = {"0", "false", "no", "off"}


def build_process_specs(cfg: RuntimeConfig) -> List[ProcessSpec]:
    """Command lines and policies for the daemon and the web tier, in start order."""
    as_root = os.geteuid() == 0
    uid = cfg.puid if as_root else None
    gid = cfg.pgid if as_root else None
    tz_env = {"TZ": cfg.tz}
    return [
        ProcessSpec(
            name="rtorrent",
            # -n: skip ~/.rtorrent.rc; the rendered file imports it last
            command=(cfg.rtorrent_bin, "-n", "-o", f"import={cfg.rtlocal_path}"),
            cwd=str(cfg.rtorrent_dir),
            env={**tz_env, "HOME": str(cfg.rtorrent_dir)},
            primary=True,
            readiness_port=cfg.rt_inc_port,
            startup_timeout_s=cfg.startup_timeout_seconds,
            # rtorrent saves its session on SIGINT
            stop_signal=signal.SIGINT,
            uid=uid,
            gid=gid,
        ),
        ProcessSpec(
            name="php-fpm",
            command=(cfg.php_fpm_bin, "-F"),
            env=dict(tz_env),
            max_restarts=cfg.web_max_restarts,
            readiness_delay_s=PHP_FPM_READY_DELAY_S,
            startup_timeout_s=cfg.startup_timeout_seconds,
            stop_signal=signal.SIGQUIT,
            uid=uid,
            gid=gid,
        ),
        ProcessSpec(
            name="nginx",
            command=(cfg.nginx_bin, "-g", "daemon off;"),
            env=dict(tz_env),
            max_restarts=cfg.web_max_restarts,
            readiness_port=cfg.rutorrent_port,
            startup_timeout_s=cfg.startup_timeout_seconds,
            stop_signal=signal.SIGQUIT,
            uid=uid,
            gid=gid,
        ),
    ]


def apply_timezone(cfg: RuntimeConfig, zoneinfo_dir: Path = ZONEINFO_DIR) -> bool:
    """
    Make TZ effective for this process and its children. As root the
    system localtime link under ETC_DIR is updated as well.
    An unknown zone is logged and ignored.
    """
    try:
        ZoneInfo(cfg.tz)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("timezone_unknown", extra={"tz": cfg.tz})
        return False

    os.environ["TZ"] = cfg.tz
    time.tzset()

    if os.geteuid() == 0:
        zone_file = zoneinfo_dir / cfg.tz
        localtime = cfg.etc_dir / "localtime"
        try:
            if zone_file.is_file():
                tmp = localtime.with_name("localtime.tmp")
                if tmp.is_symlink() or tmp.exists():
                    tmp.unlink()
                tmp.symlink_to(zone_file)
                os.replace(tmp, localtime)
            (cfg.etc_dir / "timezone").write_text(cfg.tz + "\n", encoding="utf-8")
        except OSError as e:
            logger.warning("timezone_link_failed", extra={"tz": cfg.tz, "error": str(e)})
    logger.info("timezone_applied", extra={"tz": cfg.tz})
    return True


def prepare(environ: Optional[Mapping[str, str]] = None, *, write: bool = True) -> List[RenderedFile]:
    """Resolve and render only. Raises ConfigError/RenderError."""
    cfg = resolve(environ, check_paths=write)
    return render(cfg, write=write)


def _early_logging(env: Mapping[str, str], level: Optional[str]) -> None:
    json_output = (env.get("LOG_JSON") or "true").strip().lower() not in _FALSY
    setup_logging(level or env.get("LOG_LEVEL") or None, json_output=json_output)


def run(
    environ: Optional[Mapping[str, str]] = None,
    *,
    install_signals: bool = True,
    log_level: Optional[str] = None,
) -> int:
    """
    Full container lifecycle. Returns the process exit status.
    log_level, when given, overrides LOG_LEVEL for the whole run.
    """
    env = os.environ if environ is None else environ
    _early_logging(env, log_level)

    try:
        cfg = resolve(env)
        setup_logging(log_level or cfg.log_level, json_output=cfg.log_json, log_file=cfg.log_dir / "bootstrap.log")
        apply_timezone(cfg)
        render(cfg)
    except (ConfigError, RenderError) as e:
        logger.error("bootstrap_config_failed", extra={"error": str(e), "kind": e.kind.value})
        print(f"rtbootstrap: {e}", file=sys.stderr)
        return e.exit_code

    supervisor = Supervisor(
        build_process_specs(cfg),
        grace_period_s=cfg.shutdown_grace_seconds,
        restart_delay_s=cfg.web_restart_delay_seconds,
    )
    health = HealthServer(supervisor.snapshot, port=cfg.rutorrent_health_port, metrics=supervisor.metrics)
    try:
        health.start()
    except OSError as e:
        logger.error("health_server_failed", extra={"port": cfg.rutorrent_health_port, "error": str(e)})
        print(f"rtbootstrap: cannot bind health port {cfg.rutorrent_health_port}: {e}", file=sys.stderr)
        return EXIT_RUNTIME

    if install_signals:
        supervisor.install_signal_handlers()
    try:
        rc = supervisor.run()
    except ProcessError as e:
        logger.error("bootstrap_process_failed", extra={"error": str(e), "child": e.process})
        print(f"rtbootstrap: {e}", file=sys.stderr)
        rc = e.exit_code
    finally:
        health.stop()

    logger.info("bootstrap_exit", extra={"exit_code": rc})
    return rc
