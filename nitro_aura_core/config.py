"""Client configuration loading and validation."""

from __future__ import annotations

from typing import Any, ClassVar

from pydantic import Field, SecretStr, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import ConfigurationError
from .protocol import Allowance


class ClientSettings(BaseSettings):
    """Validated settings for the clearing-node RPC client.

    Values come from keyword arguments, the process environment (``WS_URL``,
    ``SERVER_PRIVATE_KEY``, ...) or a ``.env`` file, in that order.
    """

    model_config: ClassVar[SettingsConfigDict] = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    ws_url: str = Field(description="Clearing-node WebSocket endpoint.")
    server_private_key: SecretStr | None = Field(
        default=None,
        description="Hex private key of the signing identity.",
    )
    app_name: str = Field(default="Nitro Aura", min_length=1)
    session_key: str | None = Field(
        default=None,
        description="Session key address; defaults to the signing identity.",
    )
    request_timeout: float = Field(default=10.0, gt=0)
    handshake_timeout: float = Field(default=10.0, gt=0)
    keepalive_interval: float = Field(default=30.0, gt=0)
    reconnect_base_delay: float = Field(default=1.0, ge=0)
    max_reconnect_attempts: int = Field(default=5, ge=0)
    allowance_asset: str = Field(default="usdc", min_length=1)
    allowance_amount: str = Field(default="100000000000")

    @field_validator("ws_url")
    @classmethod
    def _check_ws_url(cls, value: str) -> str:
        if not value.startswith(("ws://", "wss://")):
            raise ValueError("ws_url must use the ws:// or wss:// scheme")
        return value

    @field_validator("allowance_amount")
    @classmethod
    def _check_amount(cls, value: str) -> str:
        if not value.isdigit():
            raise ValueError("allowance_amount must be a non-negative integer string")
        return value

    @property
    def allowances(self) -> tuple[Allowance, ...]:
        return (Allowance(self.allowance_asset, self.allowance_amount),)


def load_settings(**overrides: Any) -> ClientSettings:
    """Load settings, converting validation failures to ConfigurationError."""
    try:
        return ClientSettings(**overrides)
    except ValidationError as err:
        raise ConfigurationError(f"Invalid client settings: {err}") from err
