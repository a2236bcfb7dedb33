from __future__ import annotations

from .config import config_sha256, load_config, resolve_runtime_secrets
from .config_schema import AppConfig
from .errors import ConfigError
from .extract import classify
from .post import Post

__all__ = [
    "AppConfig",
    "ConfigError",
    "Post",
    "classify",
    "config_sha256",
    "load_config",
    "resolve_runtime_secrets",
]
