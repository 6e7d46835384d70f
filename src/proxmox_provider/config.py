"""Configuration management for the Proxmox provider."""

from pathlib import Path
from typing import Any

import yaml
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Config file keys (camelCase, as in the provider's YAML file) to settings fields
_FILE_KEYS = {
    "url": "url",
    "username": "username",
    "password": "password",
    "realm": "realm",
    "tokenID": "token_id",
    "tokenSecret": "token_secret",
    "token": "token",
    "insecureSkipVerify": "insecure_skip_verify",
    "timeout": "timeout",
}


def clean_env(value: Any) -> Any:
    """Strip whitespace and one layer of matching quotes from a string value."""
    if not isinstance(value, str):
        return value
    value = value.strip()
    if len(value) >= 2 and value[0] == value[-1] and value[0] in ("'", '"'):
        return value[1:-1]
    return value


class ProxmoxSettings(BaseSettings):
    """Proxmox API connection settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="PROXMOX_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    url: str = Field(default="", description="API URL, e.g. https://pve.example.com:8006/api2/json")
    username: str = Field(default="", description="User name for password login")
    password: str = Field(default="", description="Password for password login")
    realm: str = Field(default="", description="Authentication realm, e.g. pam or pve")
    token_id: str = Field(default="", description="API token id, e.g. root@pam!omni")
    token_secret: str = Field(default="", description="API token secret")
    token: str = Field(default="", description="Full API token, user@realm!name=secret")
    insecure_skip_verify: bool = Field(default=False, description="Skip TLS verification")
    timeout: int = Field(default=30, ge=1, description="HTTP request timeout in seconds")

    @field_validator(
        "url", "username", "password", "realm", "token_id", "token_secret", "token", mode="before"
    )
    @classmethod
    def _strip_quotes(cls, value: Any) -> Any:
        return clean_env(value)

    @property
    def has_password_auth(self) -> bool:
        return bool(self.username and self.password)

    @property
    def has_token_auth(self) -> bool:
        return bool(self.token or (self.token_id and self.token_secret))


class ProviderSettings(BaseSettings):
    """Provider behaviour settings."""

    model_config = SettingsConfigDict(
        env_prefix="PROVIDER_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    image_factory_url: str = Field(
        default="https://factory.talos.dev", description="Talos image factory base URL"
    )
    deprovision_poll_interval: float = Field(
        default=5.0, gt=0, description="Seconds between task polls while deprovisioning"
    )
    max_step_attempts: int = Field(
        default=720, ge=1, description="Local runner: invocations allowed per step"
    )

    @field_validator("image_factory_url", mode="before")
    @classmethod
    def _strip_quotes(cls, value: Any) -> Any:
        return clean_env(value)


def load_config_file(path: Path) -> ProxmoxSettings:
    """Load Proxmox settings from a YAML config file.

    The file has a single ``proxmox`` section. Values in the file win over
    environment variables; anything the file omits falls back to the
    environment.

    Raises:
        FileNotFoundError: If the file does not exist
        ValueError: If the file is not a mapping with a ``proxmox`` section
    """
    with open(path) as f:
        document = yaml.safe_load(f) or {}

    section = document.get("proxmox") if isinstance(document, dict) else None
    if not isinstance(section, dict):
        raise ValueError(f"config file {path} has no 'proxmox' section")

    overrides = {_FILE_KEYS[key]: value for key, value in section.items() if key in _FILE_KEYS}
    return ProxmoxSettings(**overrides)


def get_settings(config_file: Path | None = None) -> ProxmoxSettings:
    """Get Proxmox settings from a config file or the environment."""
    settings = load_config_file(config_file) if config_file else ProxmoxSettings()
    if not settings.url:
        raise ValueError("proxmox URL is required (set via config file or PROXMOX_URL env var)")
    return settings


def get_provider_settings() -> ProviderSettings:
    """Get provider settings."""
    return ProviderSettings()
