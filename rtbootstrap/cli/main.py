# -*- coding: utf-8 -*-
# rtbootstrap CLI: container entrypoint and operator tooling.
from __future__ import annotations

import argparse
import json
import os
import sys
import typing as t

from ..bootstrap import prepare, run
from ..config import resolve
from ..errors import EXIT_CONFIG, EXIT_OK, EXIT_UNHEALTHY, ConfigError, RenderError
from ..health import probe
from ..logging_setup import setup_logging

DEFAULT_PROBE_HOST = os.getenv("RTBOOTSTRAP_HEALTH_HOST", "127.0.0.1")
DEFAULT_PROBE_TIMEOUT = 3.0


def _print_json(obj: t.Any) -> None:
    sys.stdout.write(json.dumps(obj, ensure_ascii=False, indent=2, sort_keys=True) + "\n")


def _fail(e: Exception, code: int) -> int:
    sys.stderr.write(f"rtbootstrap: {e}\n")
    return code


def cmd_run(args: argparse.Namespace) -> int:
    return run(log_level=args.log_level)


def cmd_render(args: argparse.Namespace) -> int:
    setup_logging(args.log_level or "WARNING", json_output=False)
    try:
        files = prepare(write=not args.dry_run)
    except (ConfigError, RenderError) as e:
        return _fail(e, e.exit_code)
    _print_json(
        [
            {"template": f.template_id, "path": str(f.destination), "sha256": f.sha256, "changed": f.changed}
            for f in files
        ]
    )
    return EXIT_OK


def cmd_check_config(args: argparse.Namespace) -> int:
    setup_logging(args.log_level or "WARNING", json_output=False)
    try:
        cfg = resolve(check_paths=args.check_paths)
    except ConfigError as e:
        return _fail(e, e.exit_code)
    if args.show:
        sys.stdout.write(cfg.summary_json() + "\n")
    return EXIT_OK


def _default_health_port() -> int:
    cfg = resolve(check_paths=False)
    return cfg.rutorrent_health_port


def _probe_timeout(args: argparse.Namespace) -> float:
    if args.timeout is not None:
        return args.timeout
    raw = os.getenv("RTBOOTSTRAP_HEALTH_TIMEOUT_S")
    if not raw:
        return DEFAULT_PROBE_TIMEOUT
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"RTBOOTSTRAP_HEALTH_TIMEOUT_S: not a number: {raw!r}") from None


def cmd_healthcheck(args: argparse.Namespace) -> int:
    try:
        timeout = _probe_timeout(args)
    except ValueError as e:
        return _fail(e, EXIT_CONFIG)
    port = args.port
    if port is None:
        try:
            port = _default_health_port()
        except ConfigError as e:
            return _fail(e, EXIT_CONFIG)
    status = probe(args.host, port, timeout=timeout)
    if not args.quiet:
        _print_json({"healthy": status.healthy, "reason": status.reason, "port": port})
    return EXIT_OK if status.healthy else EXIT_UNHEALTHY


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="rtbootstrap",
        description="rTorrent/ruTorrent container bootstrap and process supervisor.",
    )
    p.add_argument("--log-level", default=None, help="Log level (default: LOG_LEVEL; operator commands default to WARNING)")
    sub = p.add_subparsers(dest="cmd", required=True)

    sp = sub.add_parser("run", help="Resolve config, render files and supervise the daemons (entrypoint)")
    sp.set_defaults(func=cmd_run)

    sp = sub.add_parser("render", help="Render configuration files and print what changed")
    sp.add_argument("--dry-run", action="store_true", help="Report changes without writing; mounts are not checked")
    sp.set_defaults(func=cmd_render)

    sp = sub.add_parser("check-config", help="Validate the environment")
    sp.add_argument("--no-paths", dest="check_paths", action="store_false", help="Skip mount and permission checks")
    sp.add_argument("--show", action="store_true", help="Print the resolved configuration as JSON")
    sp.set_defaults(func=cmd_check_config, check_paths=True)

    sp = sub.add_parser("healthcheck", help="Probe the health listener (for Docker HEALTHCHECK)")
    sp.add_argument("--host", default=DEFAULT_PROBE_HOST)
    sp.add_argument("--port", type=int, default=None, help="Health port (default: RUTORRENT_PORT + 1)")
    sp.add_argument(
        "--timeout", type=float, default=None,
        help=f"Seconds (default: RTBOOTSTRAP_HEALTH_TIMEOUT_S or {DEFAULT_PROBE_TIMEOUT})",
    )
    sp.add_argument("-q", "--quiet", action="store_true")
    sp.set_defaults(func=cmd_healthcheck)
    return p


def main(argv: t.Optional[t.Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
