# -*- coding: utf-8 -*-
"""
Error taxonomy for the container bootstrap.

All fatal errors carry an exit code so the CLI can map them without
inspecting messages. Config and render errors are raised before any child
process is spawned.
"""
from __future__ import annotations

from enum import Enum
from typing import Optional

EXIT_OK = 0
EXIT_UNHEALTHY = 1
EXIT_CONFIG = 2
EXIT_RUNTIME = 10


class BootstrapError(RuntimeError):
    exit_code: int = EXIT_RUNTIME


class ConfigErrorKind(str, Enum):
    INVALID_VALUE = "invalid_value"
    MISSING_PATH = "missing_path"
    PERMISSION_DENIED = "permission_denied"


class ConfigError(BootstrapError):
    exit_code = EXIT_CONFIG

    def __init__(
        self,
        kind: ConfigErrorKind,
        message: str,
        *,
        variable: Optional[str] = None,
        path: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.variable = variable
        self.path = path

    def __str__(self) -> str:
        subject = self.variable or self.path
        base = super().__str__()
        return f"{self.kind.value}: {subject}: {base}" if subject else f"{self.kind.value}: {base}"


class RenderErrorKind(str, Enum):
    MISSING_PLACEHOLDER = "missing_placeholder"
    TEMPLATE_NOT_FOUND = "template_not_found"
    WRITE_FAILED = "write_failed"


class RenderError(BootstrapError):
    exit_code = EXIT_CONFIG

    def __init__(
        self,
        kind: RenderErrorKind,
        message: str,
        *,
        template_id: Optional[str] = None,
        placeholder: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.template_id = template_id
        self.placeholder = placeholder

    def __str__(self) -> str:
        base = super().__str__()
        if self.template_id:
            return f"{self.kind.value}: template {self.template_id}: {base}"
        return f"{self.kind.value}: {base}"


class ProcessErrorKind(str, Enum):
    SPAWN_FAILED = "spawn_failed"


class ProcessError(BootstrapError):
    def __init__(self, kind: ProcessErrorKind, message: str, *, process: Optional[str] = None) -> None:
        super().__init__(message)
        self.kind = kind
        self.process = process
