# -*- coding: utf-8 -*-
"""rTorrent/ruTorrent container bootstrap: config resolution, rendering and supervision."""
from .config import RuntimeConfig, resolve
from .errors import BootstrapError, ConfigError, ProcessError, RenderError
from .render import RenderedFile, render

__all__ = [
    "BootstrapError",
    "ConfigError",
    "ProcessError",
    "RenderError",
    "RenderedFile",
    "RuntimeConfig",
    "render",
    "resolve",
]

__version__ = "0.1.0"
