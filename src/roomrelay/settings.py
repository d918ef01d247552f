from __future__ import annotations

from pathlib import Path
from typing import Annotated, Any

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    PositiveFloat,
    StringConstraints,
    ValidationError,
    field_validator,
)
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic_settings.sources import TomlConfigSettingsSource

from .config import ConfigError, display_path, resolve_config_path
from .constants import DEFAULT_CHAT_URL, DEFAULT_STATE_PATH, DEFAULT_WORKER_IMAGE
from .model import DEFAULT_POLL_INTERVAL, Subscription

NonEmptyStr = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1)]


def _validate_http_url(value: str) -> str:
    if not value.startswith(("http://", "https://")):
        raise ValueError("must be an http:// or https:// URL")
    return value


class SubscriptionRequest(BaseModel):
    """Subscription as submitted by an operator; validated before any lifecycle call."""

    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)

    api_key: NonEmptyStr
    room_id: NonEmptyStr = Field(validation_alias=AliasChoices("room_id", "room"))
    sender: NonEmptyStr
    target_url: NonEmptyStr = Field(
        validation_alias=AliasChoices("target_url", "target")
    )
    poll_interval: PositiveFloat = DEFAULT_POLL_INTERVAL

    @field_validator("target_url")
    @classmethod
    def _validate_target_url(cls, value: str) -> str:
        return _validate_http_url(value)

    def to_subscription(self) -> Subscription:
        return Subscription(
            api_key=self.api_key,
            room_id=self.room_id,
            sender=self.sender,
            target_url=self.target_url,
            poll_interval=self.poll_interval,
        )


class WorkerSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="ROOMRELAY_",
        extra="ignore",
        str_strip_whitespace=True,
    )

    api_key: NonEmptyStr
    room_id: NonEmptyStr
    sender: NonEmptyStr
    target_url: NonEmptyStr
    poll_interval: PositiveFloat = DEFAULT_POLL_INTERVAL

    chat_url: NonEmptyStr = DEFAULT_CHAT_URL
    state_path: Path = DEFAULT_STATE_PATH
    request_timeout: PositiveFloat = 30.0
    delivery_attempts: int = Field(default=4, ge=1)
    delivery_delay: float = Field(default=5.0, ge=0)
    rate_limit_retries: int = Field(default=5, ge=0)
    rate_limit_cooldown: float = Field(default=30.0, ge=0)

    @field_validator("target_url", "chat_url")
    @classmethod
    def _validate_urls(cls, value: str) -> str:
        return _validate_http_url(value)

    @property
    def subscription(self) -> Subscription:
        return Subscription(
            api_key=self.api_key,
            room_id=self.room_id,
            sender=self.sender,
            target_url=self.target_url,
            poll_interval=self.poll_interval,
        )


class ManagerSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="ROOMRELAY_MANAGER__",
        env_nested_delimiter="__",
        extra="ignore",
        str_strip_whitespace=True,
    )

    image: NonEmptyStr = DEFAULT_WORKER_IMAGE
    chat_url: NonEmptyStr = DEFAULT_CHAT_URL
    network: NonEmptyStr | None = None
    restart_retries: int = Field(default=5, ge=0)
    log_tail: int = Field(default=100, ge=1)
    stale_created_after: PositiveFloat = 60.0
    docker_timeout: PositiveFloat = 10.0
    worker_env: dict[str, str] = Field(default_factory=dict)

    host: NonEmptyStr = "127.0.0.1"
    port: int = Field(default=8080, ge=1, le=65535)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            TomlConfigSettingsSource(settings_cls),
            file_secret_settings,
        )


def load_worker_settings(**overrides: Any) -> WorkerSettings:
    try:
        return WorkerSettings(**overrides)
    except ValidationError as exc:
        raise ConfigError(f"Invalid worker environment: {exc}") from exc


def load_manager_settings(
    path: str | Path | None = None,
) -> tuple[ManagerSettings, Path | None]:
    cfg_path = resolve_config_path(path)
    if cfg_path.exists() and not cfg_path.is_file():
        raise ConfigError(
            f"Config path {display_path(cfg_path)} exists but is not a file."
        )
    if not cfg_path.exists():
        if path is not None:
            raise ConfigError(f"Missing config file {display_path(cfg_path)}.")
        try:
            return ManagerSettings(), None
        except ValidationError as exc:
            raise ConfigError(f"Invalid manager settings: {exc}") from exc
    cfg = dict(ManagerSettings.model_config)
    cfg["toml_file"] = cfg_path
    Bound = type(
        "ManagerSettingsBound",
        (ManagerSettings,),
        {"model_config": SettingsConfigDict(**cfg)},
    )
    try:
        return Bound(), cfg_path
    except ValidationError as exc:
        raise ConfigError(f"Invalid config in {cfg_path}: {exc}") from exc
