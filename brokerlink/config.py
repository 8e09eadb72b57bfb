"""Broker profile configuration loading helpers."""

from __future__ import annotations

import logging
from pathlib import Path

import tomllib

from pydantic import BaseModel, Field, ValidationError, field_validator

from .models import (
    DEFAULT_PASSWORD,
    DEFAULT_USERNAME,
    DEFAULT_VIRTUAL_HOST,
    Address,
    ConnectionParameters,
)

LOG = logging.getLogger(__name__)

CONFIG_FILE = Path.home() / ".config" / "brokerlink" / "config.toml"


class BrokerProfileConfig(BaseModel):
    """Named set of candidate brokers plus the credentials used for them."""

    name: str
    addresses: list[str] = Field(default_factory=lambda: ["localhost"])
    username: str = DEFAULT_USERNAME
    password: str = DEFAULT_PASSWORD
    virtual_host: str = DEFAULT_VIRTUAL_HOST
    channel_max: int = Field(default=0, ge=0)
    frame_max: int = Field(default=0, ge=0)
    heartbeat: int = Field(default=0, ge=0)
    max_redirects: int = Field(default=0, ge=0)
    connect_timeout: float = Field(default=3.0, gt=0)
    tls: bool = False
    tls_verify: bool = True

    @field_validator("addresses")
    @classmethod
    def validate_addresses(cls, value: list[str]) -> list[str]:
        for item in value:
            Address.parse(item)
        return value

    def parsed_addresses(self) -> tuple[Address, ...]:
        return tuple(Address.parse(item) for item in self.addresses)

    def to_parameters(self) -> ConnectionParameters:
        """Snapshot credentials and negotiation limits for one establishment."""

        return ConnectionParameters(
            username=self.username,
            password=self.password,
            virtual_host=self.virtual_host,
            requested_channel_max=self.channel_max,
            requested_frame_max=self.frame_max,
            requested_heartbeat=self.heartbeat,
        )


class AppConfig(BaseModel):
    """Shape of the configuration file."""

    profiles: list[BrokerProfileConfig] = Field(default_factory=lambda: list(_default_profiles()))
    active_profile: str | None = None

    def profile(self, name: str) -> BrokerProfileConfig:
        for profile in self.profiles:
            if profile.name == name:
                return profile
        raise ValueError(f"Profile '{name}' not found.")

    def with_active_profile(self, name: str) -> AppConfig:
        """Return a copy with the active profile updated."""

        return self.model_copy(update={"active_profile": name})


def load_config() -> AppConfig:
    """Load configuration from disk; fall back to defaults if missing."""

    try:
        with CONFIG_FILE.open("rb") as handle:
            raw = tomllib.load(handle)
    except FileNotFoundError:
        return AppConfig()
    except (tomllib.TOMLDecodeError, OSError):
        LOG.warning("Ignoring unreadable config file", extra={"path": str(CONFIG_FILE)})
        return AppConfig()

    data: dict[str, object] = {}
    active_profile = raw.get("active_profile")
    if isinstance(active_profile, str):
        data["active_profile"] = active_profile
    profiles = raw.get("profiles")
    if isinstance(profiles, list):
        parsed: list[BrokerProfileConfig] = []
        for entry in profiles:
            if not isinstance(entry, dict):
                continue
            try:
                parsed.append(BrokerProfileConfig.model_validate(entry))
            except (ValidationError, ValueError) as exc:
                LOG.warning(
                    "Skipping malformed profile",
                    extra={"profile": entry.get("name"), "error": str(exc)},
                )
        if parsed:
            data["profiles"] = parsed
    return AppConfig(**data)


def save_config(config: AppConfig) -> None:
    """Persist configuration to disk."""

    CONFIG_FILE.parent.mkdir(parents=True, exist_ok=True)
    lines: list[str] = []
    if config.active_profile:
        lines.append(f"active_profile = {_toml_string(config.active_profile)}")
    for profile in config.profiles:
        lines.append("")
        lines.append("[[profiles]]")
        lines.append(f"name = {_toml_string(profile.name)}")
        addresses = ", ".join(_toml_string(item) for item in profile.addresses)
        lines.append(f"addresses = [{addresses}]")
        lines.append(f"username = {_toml_string(profile.username)}")
        lines.append(f"password = {_toml_string(profile.password)}")
        lines.append(f"virtual_host = {_toml_string(profile.virtual_host)}")
        for key in ("channel_max", "frame_max", "heartbeat", "max_redirects"):
            value = getattr(profile, key)
            if value:
                lines.append(f"{key} = {value}")
        lines.append(f"connect_timeout = {profile.connect_timeout}")
        if profile.tls:
            lines.append("tls = true")
            lines.append(f"tls_verify = {str(profile.tls_verify).lower()}")
    CONFIG_FILE.write_text("\n".join(lines) + "\n")


def _toml_string(value: str) -> str:
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    escaped = escaped.replace("\n", "\\n").replace("\t", "\\t").replace("\r", "\\r")
    return f'"{escaped}"'


def _default_profiles() -> tuple[BrokerProfileConfig, ...]:
    """Default profile used before the config is customized."""

    return (BrokerProfileConfig(name="Local Broker", addresses=["localhost:5672"]),)


__all__ = [
    "AppConfig",
    "BrokerProfileConfig",
    "CONFIG_FILE",
    "load_config",
    "save_config",
]
