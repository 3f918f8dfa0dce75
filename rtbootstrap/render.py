# -*- coding: utf-8 -*-
"""
Template renderer for daemon and web-tier configuration files.

Rendering is a pure function of RuntimeConfig and the static template
bodies. Writing is atomic and skipped when the destination already holds
identical bytes, so file watchers do not see spurious changes.
"""
from __future__ import annotations

import hashlib
import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional, Sequence, Tuple
from uuid import uuid4

from jinja2 import BaseLoader, Environment, FileSystemLoader, StrictUndefined, TemplateNotFound, UndefinedError

from .config import RuntimeConfig
from .errors import RenderError, RenderErrorKind

logger = logging.getLogger("rtbootstrap.render")

TEMPLATES_DIR = Path(__file__).resolve().parent / "templates"

_UNDEFINED_RE = re.compile(r"'(?P<name>[^']+)' is undefined")


@dataclass(frozen=True)
class TemplateSpec:
    template_id: str
    template_name: str
    destination: Callable[[RuntimeConfig], Path]
    mode: int = 0o644


@dataclass(frozen=True)
class RenderedFile:
    template_id: str
    destination: Path
    sha256: str
    changed: bool


DEFAULT_TEMPLATE_SET: Tuple[TemplateSpec, ...] = (
    TemplateSpec("rtlocal", "rtlocal.rc.j2", lambda c: c.rtlocal_path),
    TemplateSpec("rutorrent-config", "rutorrent_config.php.j2", lambda c: c.rutorrent_dir / "conf" / "config.php"),
    TemplateSpec("php-fpm-pool", "php_fpm_pool.conf.j2", lambda c: c.etc_dir / "php-fpm.d" / "rutorrent.conf"),
    TemplateSpec("nginx-site", "nginx_site.conf.j2", lambda c: c.etc_dir / "nginx" / "conf.d" / "rutorrent.conf"),
)


def build_environment(loader: Optional[BaseLoader] = None) -> Environment:
    return Environment(
        loader=loader or FileSystemLoader(str(TEMPLATES_DIR)),
        undefined=StrictUndefined,
        keep_trailing_newline=True,
        trim_blocks=True,
        lstrip_blocks=True,
        autoescape=False,
    )


def render_text(config: RuntimeConfig, spec: TemplateSpec, env: Environment) -> str:
    try:
        tmpl = env.get_template(spec.template_name)
        return tmpl.render(**config.template_context())
    except UndefinedError as e:
        m = _UNDEFINED_RE.search(str(e))
        placeholder = m.group("name") if m else None
        raise RenderError(
            RenderErrorKind.MISSING_PLACEHOLDER,
            f"unknown configuration key {placeholder or str(e)!r}",
            template_id=spec.template_id,
            placeholder=placeholder,
        ) from e
    except TemplateNotFound as e:
        raise RenderError(
            RenderErrorKind.TEMPLATE_NOT_FOUND,
            f"template {spec.template_name!r} not found",
            template_id=spec.template_id,
        ) from e


def _sha256(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def _read_existing(path: Path) -> Optional[bytes]:
    try:
        return path.read_bytes()
    except (FileNotFoundError, NotADirectoryError):
        return None


def _atomic_write_bytes(path: Path, data: bytes, mode: int, owner: Optional[Tuple[int, int]]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(path.name + f".tmp.{uuid4().hex}")
    try:
        with open(tmp, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.chmod(tmp, mode)
        if owner is not None:
            os.chown(tmp, owner[0], owner[1])
        os.replace(tmp, path)
    finally:
        if tmp.exists():
            tmp.unlink()


def render(
    config: RuntimeConfig,
    template_set: Sequence[TemplateSpec] = DEFAULT_TEMPLATE_SET,
    *,
    loader: Optional[BaseLoader] = None,
    write: bool = True,
) -> List[RenderedFile]:
    """
    Render every template in order and write the results.

    All templates are rendered before anything is written, so a missing
    placeholder in the last template leaves the disk untouched.
    """
    env = build_environment(loader)
    rendered: List[Tuple[TemplateSpec, Path, bytes]] = []
    for spec in template_set:
        text = render_text(config, spec, env)
        rendered.append((spec, Path(spec.destination(config)), text.encode("utf-8")))

    # files under the data root belong to the daemon user
    data_root = config.data_dir.resolve()
    as_root = os.geteuid() == 0

    results: List[RenderedFile] = []
    for spec, dest, data in rendered:
        digest = _sha256(data)
        existing = _read_existing(dest)
        changed = existing is None or _sha256(existing) != digest
        if changed and write:
            owner = None
            if as_root and data_root in dest.resolve().parents:
                owner = (config.puid, config.pgid)
            try:
                _atomic_write_bytes(dest, data, spec.mode, owner)
            except OSError as e:
                raise RenderError(
                    RenderErrorKind.WRITE_FAILED,
                    f"cannot write {dest}: {e.strerror or e}",
                    template_id=spec.template_id,
                ) from e
        results.append(RenderedFile(spec.template_id, dest, digest, changed))
        logger.info(
            "template_rendered" if changed else "template_unchanged",
            extra={"template": spec.template_id, "path": str(dest), "sha256": digest[:12], "dry_run": not write},
        )
    return results
