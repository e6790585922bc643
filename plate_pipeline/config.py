"""
Configurações do plate-pipeline usando pydantic-settings.
"""

from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ConfigurationError(Exception):
    """Raised when a process cannot start with the current settings."""

    pass


class Settings(BaseSettings):
    """Configurações da API de ingestão, do worker pool e da CLI."""

    model_config = SettingsConfigDict(
        env_prefix="PLATE_PIPELINE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,
    )

    # Logging settings
    log_level: str = Field(
        default="INFO",
        description="Nível de log (DEBUG, INFO, WARNING, ERROR)",
    )
    log_json: bool = Field(
        default=True,
        description="Logs em formato JSON (True) ou colorido (False)",
    )
    quiet_loggers: str = Field(
        default="botocore,boto3,s3transfer,urllib3",
        description="Loggers de bibliotecas mantidos em quiet_log_level, separados por vírgula",
    )
    quiet_log_level: str = Field(
        default="WARNING",
        description="Nível mínimo dos loggers em quiet_loggers",
    )

    @property
    def quiet_loggers_list(self) -> list[str]:
        """Retorna a lista de loggers silenciados."""
        return [name.strip() for name in self.quiet_loggers.split(",") if name.strip()]

    # Sentry / GlitchTip settings
    sentry_dsn: str | None = Field(default=None, description="Sentry/GlitchTip DSN")
    sentry_environment: str = Field(default="production", description="Environment tag")
    sentry_traces_sample_rate: float = Field(default=0.1, description="Transaction sampling rate")

    # API settings
    api_host: str = Field(default="0.0.0.0", description="Host da API")
    api_port: int = Field(default=9000, description="Porta da API")
    api_key: str | None = Field(default=None, description="API key master (env)")
    api_keys: str | None = Field(
        default=None, description="Lista de API keys separadas por vírgula"
    )
    upload_dir: Path = Field(
        default=Path("/tmp/plate-pipeline"),
        description="Diretório local onde a API grava as imagens recebidas",
    )
    max_upload_bytes: int = Field(
        default=10 * 1024 * 1024,
        gt=0,
        description="Tamanho máximo de imagem aceito pela API",
    )

    @property
    def api_keys_list(self) -> list[str]:
        """Retorna lista de API keys do ambiente."""
        keys = []
        if self.api_key:
            keys.append(self.api_key)
        if self.api_keys:
            keys.extend([k.strip() for k in self.api_keys.split(",") if k.strip()])
        return keys

    # Redis settings (each queue may live on its own instance)
    intake_redis_url: str = Field(
        default="redis://localhost:6379/0",
        description="Redis holding the intake (raw job) queue",
    )
    output_redis_url: str = Field(
        default="redis://localhost:6379/0",
        description="Redis holding the output (prediction result) queue",
    )
    pubsub_redis_url: str = Field(
        default="redis://localhost:6379/0",
        description="Redis used as Pub/Sub broker for notifications",
    )
    redis_max_connections: int = Field(
        default=50,
        ge=1,
        description="Maximum Redis connections per pool",
    )
    redis_socket_timeout: float | None = Field(
        default=30.0,
        description="Socket timeout for Redis commands (must exceed poll timeout)",
    )

    # Queue settings
    intake_queue_name: str = Field(default="queue:plate:intake")
    output_queue_name: str = Field(default="queue:plate:output")
    dead_letter_queue_name: str = Field(default="queue:plate:dlq")
    max_queue_size: int = Field(
        default=1000,
        description="Maximum jobs allowed in the intake queue",
    )
    dead_letter_enabled: bool = Field(
        default=True,
        description="Record failed items in the dead letter queue",
    )

    # Artifact store (S3) settings
    s3_bucket: str | None = Field(default=None, description="Bucket for processed images")
    s3_base_path: str = Field(
        default="",
        description="Key prefix prepended verbatim to the file name (include trailing '/')",
    )
    s3_region: str | None = Field(default=None)
    s3_endpoint_url: str | None = Field(
        default=None, description="Custom endpoint (MinIO, LocalStack)"
    )
    aws_access_key_id: str | None = Field(default=None)
    aws_secret_access_key: str | None = Field(default=None)
    s3_connect_timeout: float = Field(default=5.0, gt=0)
    s3_read_timeout: float = Field(default=30.0, gt=0)
    s3_max_attempts: int = Field(
        default=3,
        ge=1,
        description="Attempts made by botocore itself before an upload fails",
    )

    # Notification settings
    notification_topic: str = Field(
        default="plate:predictions",
        description="Pub/Sub channel for completed predictions",
    )

    # Worker pool settings
    worker_count: int = Field(default=4, ge=1, le=64)
    poll_timeout_seconds: float = Field(
        default=5.0,
        gt=0,
        description="BLPOP timeout per dequeue call",
    )
    empty_backoff_seconds: float = Field(
        default=0.5,
        ge=0,
        description="Sleep after an empty dequeue",
    )
    error_backoff_seconds: float = Field(
        default=1.0,
        gt=0,
        description="Initial sleep after a queue connectivity error",
    )
    max_error_backoff_seconds: float = Field(default=30.0, gt=0)
    drain_timeout_seconds: float = Field(
        default=60.0,
        gt=0,
        description="How long stop() waits for in-flight items",
    )
    worker_health_port: int = Field(
        default=9010,
        description="Worker health check port",
    )

    # Reconciliation
    orphan_retention_hours: float = Field(
        default=72.0,
        gt=0,
        description="Age after which unreferenced local files may be swept",
    )

    @field_validator("upload_dir", mode="before")
    @classmethod
    def resolve_path(cls, v: str | Path) -> Path:
        """Resolve o caminho para Path absoluto."""
        return Path(v).expanduser().resolve()

    def require_worker_settings(self) -> None:
        """Fail fast when the worker pool cannot run with these settings."""
        if not self.s3_bucket:
            raise ConfigurationError("PLATE_PIPELINE_S3_BUCKET is required for the worker")
        # One connection per blocked BLPOP plus one for depth/dead-letter commands
        if self.redis_max_connections < self.worker_count + 1:
            raise ConfigurationError(
                f"redis_max_connections ({self.redis_max_connections}) must be at least "
                f"worker_count + 1 ({self.worker_count + 1})"
            )
        if self.redis_socket_timeout is not None and (
            self.redis_socket_timeout <= self.poll_timeout_seconds
        ):
            raise ConfigurationError(
                "redis_socket_timeout must be greater than poll_timeout_seconds"
            )


# Singleton para configurações globais
_settings: Settings | None = None


def get_settings() -> Settings:
    """Retorna as configurações (singleton)."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reset_settings() -> None:
    """Reseta as configurações (útil para testes)."""
    global _settings
    _settings = None
