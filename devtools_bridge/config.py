from functools import lru_cache
from pathlib import Path
from typing import Optional, Tuple

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_STATE_DIR = Path.home() / ".obsidian-devtools-mcp"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        extra="ignore",
        populate_by_name=True,
        env_file=".env",
        env_file_encoding="utf-8",
    )

    # --- Socket listener ---
    host: str = Field(default="127.0.0.1", validation_alias="DEVTOOLS_HOST")
    port_min: int = Field(default=27125, ge=1, le=65535, validation_alias="DEVTOOLS_PORT_MIN")
    port_max: int = Field(default=27135, ge=1, le=65535, validation_alias="DEVTOOLS_PORT_MAX")
    ping_interval: float = Field(default=5.0, gt=0, validation_alias="DEVTOOLS_PING_INTERVAL")
    listener_restart_delay: float = Field(default=2.0, ge=0, validation_alias="DEVTOOLS_LISTENER_RESTART_DELAY")
    max_message_size: int = Field(default=100 * 1024 * 1024, gt=0, validation_alias="DEVTOOLS_MAX_MESSAGE_SIZE")

    # --- Port allocation ---
    bind_retry_delay: float = Field(default=2.0, ge=0, validation_alias="DEVTOOLS_BIND_RETRY_DELAY")
    sweep_retry_delay: float = Field(default=5.0, ge=0, validation_alias="DEVTOOLS_SWEEP_RETRY_DELAY")
    max_sweeps: int = Field(default=0, ge=0, validation_alias="DEVTOOLS_MAX_SWEEPS")  # 0 = retry forever

    # --- Request correlation ---
    request_timeout: float = Field(default=15.0, gt=0, validation_alias="DEVTOOLS_REQUEST_TIMEOUT")

    # --- Health checks ---
    health_check_interval: float = Field(default=30.0, gt=0, validation_alias="DEVTOOLS_HEALTH_CHECK_INTERVAL")
    health_check_delay: float = Field(default=10.0, ge=0, validation_alias="DEVTOOLS_HEALTH_CHECK_DELAY")

    # --- Supervisor ---
    max_restarts: int = Field(default=5, ge=1, validation_alias="DEVTOOLS_MAX_RESTARTS")
    restart_cooldown: float = Field(default=60.0, ge=0, validation_alias="DEVTOOLS_RESTART_COOLDOWN")
    restart_delay: float = Field(default=2.0, ge=0, validation_alias="DEVTOOLS_RESTART_DELAY")
    supervisor_check_interval: float = Field(default=10.0, gt=0, validation_alias="DEVTOOLS_SUPERVISOR_CHECK_INTERVAL")
    child_stop_timeout: float = Field(default=5.0, gt=0, validation_alias="DEVTOOLS_CHILD_STOP_TIMEOUT")
    relay_dedupe: bool = Field(default=True, validation_alias="DEVTOOLS_RELAY_DEDUPE")

    # --- Files ---
    state_dir: Path = Field(default=DEFAULT_STATE_DIR, validation_alias="DEVTOOLS_STATE_DIR")
    port_file: Optional[Path] = Field(default=None, validation_alias="DEVTOOLS_PORT_FILE")
    log_file: Optional[Path] = Field(default=None, validation_alias="DEVTOOLS_LOG_FILE")
    debug: bool = Field(default=False, validation_alias="DEVTOOLS_DEBUG")

    @model_validator(mode="after")
    def _check_port_range(self) -> "Settings":
        if self.port_min > self.port_max:
            raise ValueError(f"port_min ({self.port_min}) must not exceed port_max ({self.port_max})")
        return self

    @property
    def port_range(self) -> Tuple[int, int]:
        return (self.port_min, self.port_max)

    @property
    def resolved_port_file(self) -> Path:
        return self.port_file or self.state_dir / "active_port.txt"

    @property
    def resolved_log_file(self) -> Path:
        return self.log_file or self.state_dir / "mcp_service.log"

    @property
    def service_pid_file(self) -> Path:
        return self.state_dir / "service.pid"

    @property
    def bridge_pid_file(self) -> Path:
        return self.state_dir / "bridge.pid"


@lru_cache
def get_settings() -> Settings:
    return Settings()
