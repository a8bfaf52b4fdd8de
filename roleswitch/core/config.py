from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="ROLESWITCH_",
        extra="ignore",
    )

    # App
    app_name: str = "RoleSwitch"
    debug: bool = False
    log_level: str = "INFO"

    # API
    host: str = "127.0.0.1"
    port: int = 3030
    cors_origins: list[str] = ["*"]

    # Persistence: the whole blob is loaded and saved as one JSON document
    data_file: str = "roleswitch-data.json"

    # Session timing (seed values for the persisted device settings)
    transition_seconds: int = 30
    min_session_seconds: int = 300

    # Authentication
    enable_authentication: bool = True
    signature_tolerance_seconds: int = 300  # replay window for signed requests
    require_signed_sync: bool = True  # /sync/push and /sync/bidirectional need X-Signature

    # Sync
    enable_sync: bool = False
    sync_interval_minutes: int = 5
    sync_timeout_seconds: float = 30.0
    device_id: str = ""  # generated and persisted on first use when empty
    device_name: str = "RoleSwitch Device"


@lru_cache
def get_settings() -> Settings:
    return Settings()
