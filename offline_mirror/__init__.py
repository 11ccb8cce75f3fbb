"""Offline website mirroring: crawl, capture, rewrite and replay."""

from .errors import BackendError, ConfigError, MirrorError, UnsafeOutputDirError
from .mirror import MirrorReport, mirror_site, run_mirror
from .settings import Settings

__version__ = "0.1.0"

__all__ = [
    "BackendError",
    "ConfigError",
    "MirrorError",
    "MirrorReport",
    "Settings",
    "UnsafeOutputDirError",
    "mirror_site",
    "run_mirror",
]
