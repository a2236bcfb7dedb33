from __future__ import annotations

import re
from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .delivery import DeliveryRule
from .post import ANIMAL_TYPES, POST_TYPES

_ENV_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_SCREEN_NAME_RE = re.compile(r"^[A-Za-z0-9_.]+$")


def _normalize_name_list(values: list[str], *, allow_empty: bool) -> list[str]:
    out: list[str] = []
    seen: set[str] = set()

    for item in values:
        name = (item or "").strip()
        if not name:
            continue
        key = name.casefold()
        if key in seen:
            continue
        seen.add(key)
        out.append(name)

    if not allow_empty and not out:
        raise ValueError("must contain at least one non-empty name")
    return out


def _validate_env_var_name(value: str) -> str:
    name = (value or "").strip()
    if not _ENV_NAME_RE.fullmatch(name):
        raise ValueError("must be a valid environment variable name")
    return name


PositiveInt = Annotated[int, Field(ge=1)]
PositiveFloat = Annotated[float, Field(gt=0)]
NonNegativeFloat = Annotated[float, Field(ge=0)]


class VKConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    token_env: str = "VK_TOKEN"
    api_version: str = "5.199"
    timeout_seconds: PositiveFloat = 10.0

    @field_validator("token_env")
    @classmethod
    def _token_env_must_be_valid(cls, v: str) -> str:
        return _validate_env_var_name(v)


class FeedConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    groups: list[str] = Field(default_factory=lambda: ["zoopoisk_18"])
    wall_count: int = Field(50, ge=1, le=100)

    @field_validator("groups")
    @classmethod
    def _normalize_groups(cls, v: list[str]) -> list[str]:
        groups = _normalize_name_list(v, allow_empty=False)
        bad = [g for g in groups if not _SCREEN_NAME_RE.fullmatch(g)]
        if bad:
            raise ValueError(f"invalid group screen names: {', '.join(bad)}")
        return groups


class PollConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    interval_seconds: PositiveFloat = 60.0
    inter_group_delay_seconds: NonNegativeFloat = 0.5
    pass_timeout_seconds: PositiveFloat = 20.0
    exists_timeout_seconds: PositiveFloat = 0.5


class StorageConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    path: str = "data/lostdogs.db"
    operation_timeout_seconds: PositiveFloat = 2.0

    @field_validator("path")
    @classmethod
    def _path_must_be_non_empty(cls, v: str) -> str:
        p = (v or "").strip()
        if not p:
            raise ValueError("must be non-empty")
        return p


class LoggingConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    level: Literal["DEBUG", "INFO", "WARN", "ERROR"] = "INFO"
    path: str | None = None

    @field_validator("level", mode="before")
    @classmethod
    def _upper_level(cls, v: object) -> object:
        if isinstance(v, str):
            s = v.strip().upper()
            return "WARN" if s == "WARNING" else s
        return v


class WorkerConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    rate_seconds: NonNegativeFloat = 1.0
    max_retries: PositiveInt = 5
    lease_ttl_seconds: PositiveFloat = 30.0
    batch: PositiveInt = 10
    tick_timeout_seconds: PositiveFloat = 10.0
    interval_seconds: PositiveFloat = 1.0


class DeliveryConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    types: list[str] = Field(default_factory=lambda: ["lost", "found", "sighting"])
    animals: list[str] = Field(default_factory=lambda: ["dog"])

    @field_validator("types")
    @classmethod
    def _types_must_be_known(cls, v: list[str]) -> list[str]:
        values = _normalize_name_list(v, allow_empty=False)
        unknown = [t for t in values if t not in POST_TYPES]
        if unknown:
            raise ValueError(f"unknown post types: {', '.join(unknown)}")
        return values

    @field_validator("animals")
    @classmethod
    def _animals_must_be_known(cls, v: list[str]) -> list[str]:
        values = _normalize_name_list(v, allow_empty=False)
        unknown = [a for a in values if a not in ANIMAL_TYPES]
        if unknown:
            raise ValueError(f"unknown animal types: {', '.join(unknown)}")
        return values

    def rule(self) -> DeliveryRule:
        return DeliveryRule.of(self.types, self.animals)


class TelegramConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    enabled: bool = False
    token_env: str = "TG_TOKEN"
    chat_id: int | None = None
    timeout_seconds: PositiveFloat = 10.0
    worker: WorkerConfig = Field(default_factory=WorkerConfig)
    delivery: DeliveryConfig = Field(default_factory=DeliveryConfig)

    @field_validator("token_env")
    @classmethod
    def _token_env_must_be_valid(cls, v: str) -> str:
        return _validate_env_var_name(v)

    @model_validator(mode="after")
    def _enabled_needs_chat(self) -> "TelegramConfig":
        if self.enabled and not self.chat_id:
            raise ValueError("chat_id must be set when telegram is enabled")
        return self


class VKRepostConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    enabled: bool = False
    # Falls back to vk.token_env when unset.
    token_env: str | None = "VK_OUT_TOKEN"
    owner_id: int | None = None
    from_group: bool = True
    timeout_seconds: PositiveFloat = 10.0
    worker: WorkerConfig = Field(default_factory=WorkerConfig)
    delivery: DeliveryConfig = Field(default_factory=DeliveryConfig)

    @field_validator("token_env")
    @classmethod
    def _token_env_must_be_valid(cls, v: str | None) -> str | None:
        if v is None:
            return None
        return _validate_env_var_name(v)

    @model_validator(mode="after")
    def _enabled_needs_owner(self) -> "VKRepostConfig":
        if self.enabled and not self.owner_id:
            raise ValueError("owner_id must be set when vk_repost is enabled")
        return self


class AppConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    vk: VKConfig = Field(default_factory=VKConfig)
    feed: FeedConfig = Field(default_factory=FeedConfig)
    poll: PollConfig = Field(default_factory=PollConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    telegram: TelegramConfig = Field(default_factory=TelegramConfig)
    vk_repost: VKRepostConfig = Field(default_factory=VKRepostConfig)
