from __future__ import annotations

from functools import lru_cache
from urllib.parse import quote_plus

from pydantic import Field, PostgresDsn, computed_field
from pydantic_settings import BaseSettings, SettingsConfigDict

_DEFAULT_ALLOWED_MIME_TYPES = ",".join(
    [
        "application/pdf",
        "text/plain",
        "text/csv",
        "application/csv",
        "text/tab-separated-values",
        "application/vnd.ms-excel",
        "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        "image/*",
    ]
)
_DEFAULT_ALLOWED_EXTENSIONS = ".txt,.csv,.tsv,.pdf,.xlsx,.xls,.png,.jpg,.jpeg,.webp,.gif"


def _build_postgres_dsn(
    *,
    host: str,
    port: int,
    name: str,
    user: str,
    password: str,
    ssl_mode: str,
) -> str:
    encoded_user = quote_plus(user)
    encoded_password = quote_plus(password) if password else ""
    auth = f"{encoded_user}:{encoded_password}" if encoded_password else encoded_user
    dsn = f"postgresql://{auth}@{host}:{port}/{name}"
    if ssl_mode:
        dsn = f"{dsn}?sslmode={quote_plus(ssl_mode)}"
    return dsn


def _split_csv(value: str, *, lower: bool = True) -> list[str]:
    items = [item.strip() for item in value.split(",") if item.strip()]
    if lower:
        items = [item.lower() for item in items]
    return items


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    environment: str = Field(default="development", validation_alias="ENVIRONMENT")
    log_level: str = Field(default="INFO", validation_alias="LOG_LEVEL")
    frontend_origins: str = Field(default="http://localhost:3000", validation_alias="FRONTEND_ORIGINS")

    db_host: str = Field(default="localhost", validation_alias="DB_HOST")
    db_port: int = Field(default=5432, validation_alias="DB_PORT")
    db_name: str = Field(default="attachflow_dev", validation_alias="DB_NAME")
    db_user: str = Field(default="attachflow", validation_alias="DB_USER")
    db_password: str = Field(default="attachflow", validation_alias="DB_PASSWORD")
    db_ssl_mode: str = Field(default="prefer", validation_alias="DB_SSL_MODE")

    database_url: PostgresDsn | None = Field(default=None, validation_alias="DATABASE_URL")

    upload_storage_dir: str = Field(default="storage/uploads", validation_alias="UPLOAD_STORAGE_DIR")
    upload_max_size_bytes: int = Field(default=20 * 1024 * 1024, validation_alias="UPLOAD_MAX_SIZE_BYTES")
    upload_allowed_mime_types: str = Field(
        default=_DEFAULT_ALLOWED_MIME_TYPES,
        validation_alias="UPLOAD_ALLOWED_MIME_TYPES",
    )
    upload_allowed_extensions: str = Field(
        default=_DEFAULT_ALLOWED_EXTENSIONS,
        validation_alias="UPLOAD_ALLOWED_EXTENSIONS",
    )
    upload_chunk_size_bytes: int = Field(default=256 * 1024, validation_alias="UPLOAD_CHUNK_SIZE_BYTES")
    upload_max_concurrency: int = Field(default=3, validation_alias="UPLOAD_MAX_CONCURRENCY")
    upload_deadline_seconds: float | None = Field(default=None, validation_alias="UPLOAD_DEADLINE_SECONDS")

    retry_max_retries: int = Field(default=3, validation_alias="RETRY_MAX_RETRIES")
    retry_initial_delay_ms: int = Field(default=1000, validation_alias="RETRY_INITIAL_DELAY_MS")
    retry_max_delay_ms: int = Field(default=10_000, validation_alias="RETRY_MAX_DELAY_MS")
    retry_backoff_multiplier: float = Field(default=2, validation_alias="RETRY_BACKOFF_MULTIPLIER")

    notification_buffer_size: int = Field(default=100, validation_alias="NOTIFICATION_BUFFER_SIZE")

    @computed_field
    @property
    def database_dsn(self) -> str:
        if self.database_url is not None:
            return str(self.database_url)
        return _build_postgres_dsn(
            host=self.db_host,
            port=self.db_port,
            name=self.db_name,
            user=self.db_user,
            password=self.db_password,
            ssl_mode=self.db_ssl_mode,
        )

    @property
    def frontend_origin_list(self) -> list[str]:
        return _split_csv(self.frontend_origins, lower=False)

    @property
    def upload_allowed_mime_type_set(self) -> frozenset[str]:
        return frozenset(_split_csv(self.upload_allowed_mime_types))

    @property
    def upload_allowed_extension_set(self) -> frozenset[str]:
        normalized = {
            item if item.startswith(".") else f".{item}"
            for item in _split_csv(self.upload_allowed_extensions)
        }
        return frozenset(normalized)


@lru_cache
def get_settings() -> Settings:
    return Settings()
