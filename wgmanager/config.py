import os
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field

load_dotenv()


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("true", "1", "yes", "on")


class Settings(BaseModel):
    model_config = ConfigDict(frozen=True)

    database_url: str = Field(
        default=os.getenv("DATABASE_URL", "sqlite:///./wgmanager.db")
    )
    db_pool_size: int = Field(default=int(os.getenv("DB_POOL_SIZE", "10")))
    db_max_overflow: int = Field(default=int(os.getenv("DB_MAX_OVERFLOW", "20")))
    db_pool_timeout: int = Field(default=int(os.getenv("DB_POOL_TIMEOUT", "30")))
    db_pool_recycle: int = Field(default=int(os.getenv("DB_POOL_RECYCLE", "1800")))
    sqlite_busy_timeout: int = Field(
        default=int(os.getenv("SQLITE_BUSY_TIMEOUT", "30"))
    )

    # Logging
    log_level: str = Field(default=os.getenv("LOG_LEVEL", "INFO"))
    log_json: bool = Field(default=_env_bool("LOG_JSON", "false"))

    # Private keys at rest (Fernet key, see wireguard_crypto)
    wireguard_key_encryption_key: Optional[str] = Field(
        default=os.getenv("WIREGUARD_KEY_ENCRYPTION_KEY")
    )

    # Peer provisioning
    peer_create_max_attempts: int = Field(
        default=int(os.getenv("PEER_CREATE_MAX_ATTEMPTS", "5"))
    )
    peer_create_isolation_level: str = Field(
        default=os.getenv("PEER_CREATE_ISOLATION_LEVEL", "SERIALIZABLE")
    )
    default_persistent_keepalive: int = Field(
        default=int(os.getenv("DEFAULT_PERSISTENT_KEEPALIVE", "25"))
    )

    # Interface defaults
    default_dns: str = Field(default=os.getenv("WIREGUARD_DEFAULT_DNS", "8.8.8.8"))
    default_mtu: int = Field(default=int(os.getenv("WIREGUARD_DEFAULT_MTU", "1420")))

    # Kernel apply pipeline
    restart_grace_seconds: float = Field(
        default=float(os.getenv("WIREGUARD_RESTART_GRACE_SECONDS", "0.2"))
    )
    wg_command_timeout_seconds: float = Field(
        default=float(os.getenv("WIREGUARD_COMMAND_TIMEOUT_SECONDS", "15"))
    )
    wireguard_config_dir: str = Field(
        default=os.getenv("WIREGUARD_CONFIG_DIR", "/etc/wireguard")
    )
    import_existing_configs: bool = Field(
        default=_env_bool("WIREGUARD_IMPORT_EXISTING", "true")
    )
    wireguard_endpoint_host: Optional[str] = Field(
        default=os.getenv("WIREGUARD_ENDPOINT_HOST")
    )

    # Status
    handshake_window_seconds: int = Field(
        default=int(os.getenv("WIREGUARD_HANDSHAKE_WINDOW_SECONDS", "180"))
    )
    status_poll_interval_seconds: float = Field(
        default=float(os.getenv("WIREGUARD_STATUS_POLL_INTERVAL", "5"))
    )
    peer_stats_sync_seconds: int = Field(
        default=int(os.getenv("WIREGUARD_PEER_STATS_SYNC_SECONDS", "60"))
    )

    # Background jobs
    redis_url: str = Field(default=os.getenv("REDIS_URL", "redis://localhost:6379/0"))
    celery_broker_url: Optional[str] = Field(default=os.getenv("CELERY_BROKER_URL"))
    celery_result_backend: Optional[str] = Field(
        default=os.getenv("CELERY_RESULT_BACKEND")
    )
    celery_timezone: str = Field(default=os.getenv("CELERY_TIMEZONE", "UTC"))


settings = Settings()
