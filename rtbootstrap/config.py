# -*- coding: utf-8 -*-
"""
Runtime configuration resolver.

Features:
- Typed, frozen settings (pydantic v2 + pydantic-settings)
- Source is an explicit environment mapping; empty values count as absent
- Domain checks (ports, preallocation type, buffer sizes, log levels)
- Public address lookup through WAN_IP_CMD
- Mount verification against PUID/PGID and creation of owned subdirectories

Example:
    cfg = resolve(os.environ)
    cfg.rutorrent_health_port  # 8081
"""
from __future__ import annotations

import ipaddress
import json
import logging
import os
import stat
import subprocess
from pathlib import Path
from typing import Any, Dict, Iterable, List, Literal, Mapping, Optional, Tuple

from pydantic import Field, IPvAnyAddress, ValidationError, field_validator
from pydantic.fields import FieldInfo
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict

from .errors import ConfigError, ConfigErrorKind

logger = logging.getLogger("rtbootstrap.config")

_SIZE_PATTERN = r"^\d+[KMG]?$"
WAN_IP_CMD_TIMEOUT_S = 10.0


# ---------------- Settings source ----------------

class MappingSettingsSource(PydanticBaseSettingsSource):
    """
    Settings source backed by a plain mapping (normally os.environ).
    Keys are matched case-insensitively against the upper-cased field name.
    Blank values are treated as unset so that compose files may pass
    "${VAR}" for variables the operator did not define.
    """

    def __init__(self, settings_cls: type[BaseSettings], environ: Mapping[str, str]):
        super().__init__(settings_cls)
        self._environ = {str(k).upper(): v for k, v in environ.items()}

    def get_field_value(self, field: FieldInfo, field_name: str) -> Tuple[Any, str, bool]:
        raw = self._environ.get(field_name.upper())
        if raw is None or not str(raw).strip():
            return None, field_name, False
        return str(raw).strip(), field_name, False

    def __call__(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {}
        for field_name, field in self.settings_cls.model_fields.items():
            value, key, _ = self.get_field_value(field, field_name)
            if value is not None:
                data[key] = value
        return data


# ---------------- RuntimeConfig ----------------

class RuntimeConfig(BaseSettings):
    """
    Immutable snapshot of the container settings.
    Environment variable name == upper-cased field name.
    """

    model_config = SettingsConfigDict(
        case_sensitive=False,
        extra="ignore",
        frozen=True,
    )

    # ---- identity / locale ----
    puid: int = Field(1000, ge=0, le=2**31 - 1)
    pgid: int = Field(1000, ge=0, le=2**31 - 1)
    tz: str = Field("UTC", min_length=1)

    # ---- network ----
    wan_ip: Optional[IPvAnyAddress] = None
    wan_ip_cmd: Optional[str] = None
    xmlrpc_port: int = Field(8000, ge=1, le=65535)
    rutorrent_port: int = Field(8080, ge=1, le=65534)
    rt_dht_port: int = Field(6881, ge=1, le=65535)
    rt_inc_port: int = Field(50000, ge=1, le=65535)

    # ---- rtorrent ----
    rt_send_buffer_size: str = Field("4M", pattern=_SIZE_PATTERN)
    rt_receive_buffer_size: str = Field("4M", pattern=_SIZE_PATTERN)
    rt_preallocate_type: int = 0
    rt_log_level: Literal["critical", "error", "warn", "notice", "info", "debug"] = "info"
    rt_log_execute: bool = False
    rt_log_xmlrpc: bool = False
    rt_tracker_delay_scrape: bool = True
    rt_session_save_seconds: int = Field(3600, ge=1)

    # ---- ruTorrent ----
    ru_locale: str = Field("UTF8", min_length=1)
    ru_http_user_agent: str = "Mozilla/5.0 (Windows NT 6.0; WOW64; rv:12.0) Gecko/20100101 Firefox/12.0"
    ru_http_time_out: int = Field(30, ge=1)
    ru_http_use_gzip: bool = True
    ru_rpc_time_out: int = Field(5, ge=1)
    ru_log_rpc_calls: bool = False
    ru_log_rpc_faults: bool = True
    ru_php_use_gzip: bool = False
    ru_php_gzip_level: int = Field(2, ge=1, le=9)
    ru_schedule_rand: int = Field(10, ge=0)
    ru_do_diagnostic: bool = True
    ru_save_uploaded_torrents: bool = True
    ru_overwrite_uploaded_torrents: bool = False
    ru_forbid_user_settings: bool = False

    # ---- php-fpm / nginx ----
    memory_limit: str = Field("256M", pattern=_SIZE_PATTERN)
    upload_max_size: str = Field("16M", pattern=_SIZE_PATTERN)
    clear_env: bool = True
    opcache_mem_size: int = Field(128, ge=8)
    max_file_uploads: int = Field(50, ge=1)
    real_ip_from: str = "0.0.0.0/32"
    real_ip_header: str = Field("X-Forwarded-For", min_length=1)
    log_ip_var: str = Field("remote_addr", min_length=1)
    log_access: bool = True

    # ---- paths ----
    data_dir: Path = Path("/data")
    downloads_dir: Path = Path("/downloads")
    passwd_dir: Path = Path("/passwd")
    etc_dir: Path = Path("/etc")
    rutorrent_webroot: Path = Path("/var/www/rutorrent")

    # ---- executables ----
    rtorrent_bin: str = "rtorrent"
    php_fpm_bin: str = "php-fpm"
    nginx_bin: str = "nginx"

    # ---- supervision ----
    shutdown_grace_seconds: float = Field(10.0, gt=0)
    startup_timeout_seconds: float = Field(30.0, gt=0)
    web_max_restarts: int = Field(3, ge=0)
    web_restart_delay_seconds: float = Field(2.0, ge=0)

    # ---- bootstrap logging ----
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    log_json: bool = True

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> Tuple[PydanticBaseSettingsSource, ...]:
        # resolve() hands the mapping in through init kwargs; the process
        # environment is never consulted implicitly.
        return (init_settings,)

    # --------- Validators ---------
    @field_validator("rt_send_buffer_size", "rt_receive_buffer_size", "memory_limit", "upload_max_size", mode="before")
    @classmethod
    def _upper_size(cls, v: Any) -> Any:
        return v.upper() if isinstance(v, str) else v

    @field_validator("rt_log_level", mode="before")
    @classmethod
    def _lower_level(cls, v: Any) -> Any:
        return v.lower() if isinstance(v, str) else v

    @field_validator("log_level", mode="before")
    @classmethod
    def _upper_level(cls, v: Any) -> Any:
        return v.upper() if isinstance(v, str) else v

    @field_validator("rt_preallocate_type")
    @classmethod
    def _preallocate(cls, v: int) -> int:
        if v not in (0, 1, 2):
            raise ValueError("must be one of 0 (disabled), 1 (new files), 2 (all files)")
        return v

    @field_validator("real_ip_from")
    @classmethod
    def _cidr(cls, v: str) -> str:
        ipaddress.ip_network(v, strict=False)
        return v

    # --------- Derived values ---------
    @property
    def rutorrent_health_port(self) -> int:
        return self.rutorrent_port + 1

    @property
    def rtorrent_dir(self) -> Path:
        return self.data_dir / "rtorrent"

    @property
    def log_dir(self) -> Path:
        return self.rtorrent_dir / "log"

    @property
    def session_dir(self) -> Path:
        return self.rtorrent_dir / ".session"

    @property
    def watch_dir(self) -> Path:
        return self.rtorrent_dir / "watch"

    @property
    def run_dir(self) -> Path:
        return self.rtorrent_dir / "run"

    @property
    def scgi_socket(self) -> Path:
        return self.run_dir / "scgi.socket"

    @property
    def rutorrent_dir(self) -> Path:
        return self.data_dir / "rutorrent"

    @property
    def rtlocal_path(self) -> Path:
        return self.rtorrent_dir / ".rtlocal.rc"

    def owned_dirs(self) -> List[Path]:
        """Subdirectories of the data root created and owned by the bootstrap."""
        return [
            self.log_dir,
            self.session_dir,
            self.watch_dir,
            self.run_dir,
            self.rutorrent_dir / "conf",
            self.rutorrent_dir / "share",
        ]

    def mounts(self) -> Dict[str, Path]:
        return {
            "DATA_DIR": self.data_dir,
            "DOWNLOADS_DIR": self.downloads_dir,
            "PASSWD_DIR": self.passwd_dir,
        }

    def template_context(self) -> Dict[str, Any]:
        ctx = self.model_dump()
        ctx.update(
            rutorrent_health_port=self.rutorrent_health_port,
            rtorrent_dir=self.rtorrent_dir,
            log_dir=self.log_dir,
            session_dir=self.session_dir,
            watch_dir=self.watch_dir,
            run_dir=self.run_dir,
            scgi_socket=self.scgi_socket,
            rutorrent_dir=self.rutorrent_dir,
        )
        return ctx

    def summary_json(self) -> str:
        data = self.model_dump(mode="json")
        data["rutorrent_health_port"] = self.rutorrent_health_port
        return json.dumps(data, ensure_ascii=False, indent=2, sort_keys=True)


# ---------------- Resolution ----------------

def _lookup_wan_ip(cmd: str) -> Optional[str]:
    try:
        proc = subprocess.run(
            cmd,
            shell=True,
            capture_output=True,
            text=True,
            timeout=WAN_IP_CMD_TIMEOUT_S,
        )
    except (OSError, subprocess.TimeoutExpired) as e:
        logger.warning("wan_ip_cmd_failed", extra={"cmd": cmd, "error": str(e)})
        return None
    out = (proc.stdout or "").strip().splitlines()
    if proc.returncode != 0 or not out:
        logger.warning("wan_ip_cmd_failed", extra={"cmd": cmd, "returncode": proc.returncode})
        return None
    candidate = out[0].strip()
    try:
        ipaddress.ip_address(candidate)
    except ValueError:
        logger.warning("wan_ip_cmd_bad_output", extra={"cmd": cmd, "output": candidate})
        return None
    return candidate


def _check_port_conflicts(cfg: RuntimeConfig) -> None:
    tcp_ports = [
        ("XMLRPC_PORT", cfg.xmlrpc_port),
        ("RUTORRENT_PORT", cfg.rutorrent_port),
        ("RUTORRENT_PORT", cfg.rutorrent_health_port),
        ("RT_INC_PORT", cfg.rt_inc_port),
    ]
    seen: Dict[int, str] = {}
    for name, port in tcp_ports:
        if port in seen and seen[port] != name:
            raise ConfigError(
                ConfigErrorKind.INVALID_VALUE,
                f"TCP port {port} is already used by {seen[port]}",
                variable=name,
            )
        seen.setdefault(port, name)


def is_writable_by(path: Path, uid: int, gid: int) -> bool:
    """
    Permission bits check for a directory on behalf of uid/gid.
    Owner class wins over group class, group over other (POSIX order).
    Supplementary groups are not considered.
    """
    if uid == 0:
        return True
    st = path.stat()
    mode = st.st_mode
    if st.st_uid == uid:
        return bool(mode & stat.S_IWUSR) and bool(mode & stat.S_IXUSR)
    if st.st_gid == gid:
        return bool(mode & stat.S_IWGRP) and bool(mode & stat.S_IXGRP)
    return bool(mode & stat.S_IWOTH) and bool(mode & stat.S_IXOTH)


def check_mounts(cfg: RuntimeConfig) -> None:
    for variable, path in cfg.mounts().items():
        if not path.is_dir():
            raise ConfigError(
                ConfigErrorKind.MISSING_PATH,
                f"mount point {path} does not exist or is not a directory",
                variable=variable,
                path=str(path),
            )
        if not is_writable_by(path, cfg.puid, cfg.pgid):
            raise ConfigError(
                ConfigErrorKind.PERMISSION_DENIED,
                f"{path} is not writable by uid={cfg.puid} gid={cfg.pgid}",
                variable=variable,
                path=str(path),
            )


def ensure_owned_dirs(cfg: RuntimeConfig) -> List[Path]:
    created: List[Path] = []
    as_root = os.geteuid() == 0
    for d in cfg.owned_dirs():
        try:
            if not d.exists():
                d.mkdir(parents=True, mode=0o755)
                created.append(d)
            if as_root:
                os.chown(d, cfg.puid, cfg.pgid)
        except OSError as e:
            raise ConfigError(
                ConfigErrorKind.PERMISSION_DENIED,
                f"cannot prepare directory: {e.strerror or e}",
                path=str(d),
            ) from e
    if created:
        logger.info("runtime_dirs_created", extra={"dirs": [str(p) for p in created]})
    return created


def _invalid_value(e: ValidationError, values: Mapping[str, Any]) -> ConfigError:
    errors = e.errors()
    first = errors[0]
    field = str(first["loc"][0]) if first.get("loc") else None
    variable = field.upper() if field else None
    raw = values.get(field) if field else None
    msg = first.get("msg", "invalid value")
    if raw is not None:
        msg = f"{msg} (got {raw!r})"
    if len(errors) > 1:
        msg += f"; {len(errors) - 1} more invalid setting(s)"
    return ConfigError(ConfigErrorKind.INVALID_VALUE, msg, variable=variable)


def resolve(environ: Optional[Mapping[str, str]] = None, *, check_paths: bool = True) -> RuntimeConfig:
    """
    Build the RuntimeConfig from an environment mapping.

    Raises ConfigError on any out-of-domain value, missing mount or a mount
    not writable by PUID/PGID. With check_paths=False only the values are
    validated and nothing on disk is inspected or created.
    """
    env = os.environ if environ is None else environ
    values = MappingSettingsSource(RuntimeConfig, env)()

    if "wan_ip" not in values and values.get("wan_ip_cmd"):
        found = _lookup_wan_ip(values["wan_ip_cmd"])
        if found:
            values["wan_ip"] = found

    try:
        cfg = RuntimeConfig(**values)
    except ValidationError as e:
        raise _invalid_value(e, values) from e

    _check_port_conflicts(cfg)

    if check_paths:
        check_mounts(cfg)
        ensure_owned_dirs(cfg)

    logger.info(
        "config_resolved",
        extra={
            "puid": cfg.puid,
            "pgid": cfg.pgid,
            "rutorrent_port": cfg.rutorrent_port,
            "xmlrpc_port": cfg.xmlrpc_port,
            "overrides": sorted(k.upper() for k in values),
        },
    )
    return cfg


def known_variables() -> Iterable[str]:
    return (name.upper() for name in RuntimeConfig.model_fields)
