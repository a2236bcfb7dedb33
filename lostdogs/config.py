from __future__ import annotations

import hashlib
import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping

import yaml
from pydantic import ValidationError

from .config_schema import AppConfig
from .errors import ConfigError


@dataclass(frozen=True)
class RuntimeSecrets:
    vk_token: str
    telegram_token: str | None = None
    vk_repost_token: str | None = None

    def __repr__(self) -> str:
        return (
            "RuntimeSecrets("
            f"vk_token={mask_secret(self.vk_token)!r}, "
            f"telegram_token={mask_secret(self.telegram_token)!r}, "
            f"vk_repost_token={mask_secret(self.vk_repost_token)!r})"
        )


def mask_secret(value: str | None) -> str | None:
    if value is None:
        return None
    if len(value) < 5:
        return "******"
    return f"{value[:2]}***{value[-3:]}"


def load_config(path: str | Path) -> AppConfig:
    """
    Load a YAML config file and validate it into a typed AppConfig.

    Raises ConfigError with a readable validation message on failure.
    """
    p = Path(path)

    if not p.exists():
        raise ConfigError(f"Config file not found: {p}")

    try:
        raw_text = p.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"Failed to read config file: {p}") from e

    try:
        data = yaml.safe_load(raw_text)
    except yaml.YAMLError as e:
        raise ConfigError(f"Failed to parse YAML in {p}: {e}") from e

    if data is None:
        data = {}

    if not isinstance(data, dict):
        raise ConfigError(f"Top-level YAML in {p} must be a mapping/object")

    try:
        return AppConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigError(_format_pydantic_errors(e, p)) from e


def _env_value(env: Mapping[str, str], name: str | None) -> str:
    if not name:
        return ""
    return (env.get(name) or "").strip()


def resolve_runtime_secrets(
    config: AppConfig, *, environ: Mapping[str, str] | None = None
) -> RuntimeSecrets:
    """
    Read tokens from the environment variables named in the config.

    The VK token is always required; channel tokens only when their channel is
    enabled. The VK repost token falls back to the main VK token.
    """
    env = os.environ if environ is None else environ

    vk_token = _env_value(env, config.vk.token_env)
    tg_token = _env_value(env, config.telegram.token_env)
    repost_token = _env_value(env, config.vk_repost.token_env) or vk_token

    missing: list[str] = []
    if not vk_token:
        missing.append(config.vk.token_env)
    if config.telegram.enabled and not tg_token:
        missing.append(config.telegram.token_env)

    if missing:
        joined = ", ".join(missing)
        raise ConfigError(f"Missing required environment variables: {joined}")

    return RuntimeSecrets(
        vk_token=vk_token,
        telegram_token=tg_token or None,
        vk_repost_token=repost_token or None,
    )


def config_sha256(config: AppConfig) -> str:
    """
    Compute a stable SHA-256 hash of the config values, logged at startup.
    """
    payload = json.dumps(
        config.model_dump(mode="json"),
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
    ).encode("utf-8")
    return hashlib.sha256(payload).hexdigest()


def _format_pydantic_errors(err: ValidationError, path: Path) -> str:
    lines: list[str] = [f"Invalid configuration in {path}:"]
    for item in err.errors():
        loc = ".".join(str(part) for part in item.get("loc", [])) or "<root>"
        msg = item.get("msg", "invalid value")
        lines.append(f"- {loc}: {msg}")
    return "\n".join(lines)
