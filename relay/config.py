"""Configuration management for the relay."""

import tempfile
from enum import Enum
from pathlib import Path

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_TMP = Path(tempfile.gettempdir())


class AutoApprovePolicy(str, Enum):
    """When low-risk permissions may be approved without asking."""

    OFF = "off"
    MODE = "mode"  # only while the control mode equals auto_approve_mode
    ANY = "any"


class Settings(BaseSettings):
    """Relay configuration loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    telegram_bot_token: str = ""
    telegram_chat_id: int = 0

    # Shared stores
    pending_store_path: Path = _TMP / "relay-pending.json"
    control_state_path: Path = _TMP / "relay-control-state.json"
    store_lock_wait: float = 2.0
    store_lock_retry_interval: float = 0.015
    store_file_mode: int = 0o600

    # Requester side
    question_poll_interval: float = 1.0
    question_poll_timeout: float = 300.0  # 5 minutes
    question_trace_path: Path | None = None

    # Expiry
    question_open_ttl: float = 360.0  # 6 minutes
    request_ttl: float = 1800.0  # 30 minutes

    # Takeover supervision
    stall_threshold: float = 90.0
    retry_limit: int = 1
    maintenance_interval: float = 5.0

    auto_approve: AutoApprovePolicy = AutoApprovePolicy.OFF
    auto_approve_mode: str = "delegate"

    # Agent API
    agent_api_url: str = "http://localhost:4096"
    agent_api_timeout: float = 10.0
    agent_directory: str | None = None
    question_match_attempts: int = 3
    answer_handoff_grace: float = 15.0

    # Status endpoint
    bridge_host: str = "127.0.0.1"
    bridge_port: int = 8765

    @field_validator("store_file_mode", mode="before")
    @classmethod
    def _parse_file_mode(cls, value):
        if isinstance(value, str):
            try:
                value = int(value, 8)
            except ValueError:
                raise ValueError(f"store_file_mode must be an octal string, got {value!r}")
        if not 0 <= value <= 0o777:
            raise ValueError(f"store_file_mode out of range: {value:o}")
        return value


settings = Settings()
