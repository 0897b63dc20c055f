# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/agentlab

import json
import os
import stat
from pathlib import Path
from typing import Any

from loguru import logger
from pydantic import BaseModel, ValidationError, field_validator
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict

from agentlab.endpoint import normalize_endpoint
from agentlab.errors import ConfigError

CONFIG_DIR_NAME = "agentlab"
CONFIG_FILE_NAME = "config.json"


def client_config_path() -> Path:
    """Returns the per-user credentials file path.

    ``AGENTLAB_CONFIG`` overrides the location; otherwise the file lives under
    ``$XDG_CONFIG_HOME`` (default ``~/.config``).
    """
    override = os.environ.get("AGENTLAB_CONFIG", "").strip()
    if override:
        return Path(override).expanduser()
    base = os.environ.get("XDG_CONFIG_HOME", "").strip()
    root = Path(base) if base else Path.home() / ".config"
    return root / CONFIG_DIR_NAME / CONFIG_FILE_NAME


class TailscaleAdminConfig(BaseModel):
    """Credentials for the Tailscale admin API (API key or OAuth client)."""

    tailnet: str | None = None
    api_key: str | None = None
    oauth_client_id: str | None = None
    oauth_client_secret: str | None = None
    oauth_scopes: list[str] | None = None

    def has_credentials(self) -> bool:
        if (self.api_key or "").strip():
            return True
        return bool((self.oauth_client_id or "").strip() and (self.oauth_client_secret or "").strip())


class ClientConfig(BaseModel):
    """Contents of the credentials file."""

    endpoint: str = ""
    token: str = ""
    jump_host: str = ""
    jump_user: str = ""
    tailscale_admin: TailscaleAdminConfig | None = None

    @field_validator("endpoint", "token", "jump_host", "jump_user", mode="before")
    @classmethod
    def _strip(cls, value: Any) -> Any:
        if value is None:
            return ""
        return value.strip() if isinstance(value, str) else value


def load_client_config(path: Path | None = None) -> tuple[ClientConfig, bool]:
    """Loads the credentials file.

    Args:
        path: File to read. Defaults to :func:`client_config_path`.

    Returns:
        tuple[ClientConfig, bool]: The config and whether the file existed.

    Raises:
        ConfigError: If the file exists but cannot be read or parsed.
    """
    path = path or client_config_path()
    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return ClientConfig(), False
    except OSError as e:
        raise ConfigError(f"read client config {path}: {e.strerror or e}") from e

    mode = stat.S_IMODE(path.stat().st_mode)
    if mode & 0o077:
        logger.warning(f"Tightening permissions on {path} from {oct(mode)} to 0o600")
        path.chmod(0o600)

    if not raw.strip():
        return ClientConfig(), True
    try:
        data = json.loads(raw)
        return ClientConfig.model_validate(data), True
    except (json.JSONDecodeError, ValidationError) as e:
        raise ConfigError(f"parse client config {path}: {e}") from e


def write_client_config(cfg: ClientConfig, path: Path | None = None) -> Path:
    """Atomically writes the credentials file with mode 0600.

    The endpoint is normalized first. Data goes to ``<path>.tmp``, is fsynced,
    then renamed over the destination.

    Raises:
        ConfigError: If the endpoint is invalid or the file cannot be written.
    """
    path = path or client_config_path()
    try:
        endpoint = normalize_endpoint(cfg.endpoint)
    except ValueError as e:
        raise ConfigError(str(e)) from e
    cfg = cfg.model_copy(update={"endpoint": endpoint})
    data = {k: v for k, v in cfg.model_dump(exclude_none=True).items() if v not in ("", {}, [])}

    tmp = path.with_name(path.name + ".tmp")
    try:
        path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
        fd = os.open(tmp, os.O_CREAT | os.O_WRONLY | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
            f.write("\n")
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)
        path.chmod(0o600)
    except OSError as e:
        tmp.unlink(missing_ok=True)
        raise ConfigError(f"write client config {path}: {e.strerror or e}") from e
    logger.debug(f"Wrote client config to {path}")
    return path


def remove_client_config(path: Path | None = None) -> bool:
    """Deletes the credentials file. Returns True if a file was removed."""
    path = path or client_config_path()
    try:
        path.unlink()
    except FileNotFoundError:
        return False
    except OSError as e:
        raise ConfigError(f"remove client config {path}: {e.strerror or e}") from e
    return True


class ClientConfigFileSource(PydanticBaseSettingsSource):
    """
    Custom Pydantic Settings Source that reads the per-user credentials file.
    """

    def get_field_value(self, field: Any, field_name: str) -> tuple[Any, str, bool]:
        # Unused: __call__ returns the full mapping.
        return None, field_name, False  # pragma: no cover

    def __call__(self) -> dict[str, Any]:
        cfg, exists = load_client_config()
        if not exists:
            return {}
        return {k: v for k, v in cfg.model_dump(exclude_none=True).items() if v not in ("", None)}


class ClientSettings(BaseSettings):
    """
    Resolved connection settings.

    Precedence (highest first): explicit flags passed as init kwargs,
    ``AGENTLAB_*`` environment variables, then the credentials file.
    """

    endpoint: str = ""
    token: str = ""
    jump_host: str = ""
    jump_user: str = ""
    tailscale_admin: TailscaleAdminConfig | None = None

    model_config = SettingsConfigDict(
        env_prefix="AGENTLAB_",
        env_ignore_empty=True,
        extra="ignore",
    )

    @field_validator("endpoint", "token", "jump_host", "jump_user", mode="after")
    @classmethod
    def _strip(cls, value: str) -> str:
        return value.strip()

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        return (
            init_settings,
            env_settings,
            ClientConfigFileSource(settings_cls),
        )


def resolve_settings(**flags: str | None) -> ClientSettings:
    """Builds :class:`ClientSettings`, letting only non-empty flags override.

    Raises:
        ConfigError: If a source holds an invalid value (for example a bad endpoint).
    """
    overrides = {k: v.strip() for k, v in flags.items() if v is not None and v.strip()}
    try:
        return ClientSettings(**overrides)
    except ValidationError as e:
        errors = e.errors()
        detail = str(errors[0].get("ctx", {}).get("error") or errors[0].get("msg")) if errors else str(e)
        raise ConfigError(detail) from e


class TailscaleAdminSettings(BaseSettings):
    """Tailscale admin API credentials from ``AGENTLAB_TAILSCALE_*`` variables."""

    tailnet: str = ""
    api_key: str = ""
    oauth_client_id: str = ""
    oauth_client_secret: str = ""
    oauth_scopes: str = ""

    model_config = SettingsConfigDict(
        env_prefix="AGENTLAB_TAILSCALE_",
        env_ignore_empty=True,
        extra="ignore",
    )
