"""
ARIS Configuration Module
=========================

Centralized configuration management using environment variables.
Supports both .env files and system environment variables.

Environment Variables:
    DATABASE_URL: Full PostgreSQL URL (overrides the individual settings)
    DATABASE_HOST: PostgreSQL host (default: localhost)
    DATABASE_PORT: PostgreSQL port (default: 5432)
    DATABASE_NAME: Database name (default: aris)
    DATABASE_USER: Database user (default: aris_app)
    DATABASE_PASSWORD: Database password
    DATABASE_POOL_MIN: Minimum pool connections (default: 2)
    DATABASE_POOL_MAX: Maximum pool connections (default: 10)

    OPENAI_API_KEY / GPT_API_KEY: OpenAI key for embeddings and chat
    EMBEDDING_MODEL: Embedding model (default: text-embedding-3-small)
    EMBEDDING_DIMENSIONS: Vector width (default: 1536)
    LLM_PROVIDER: anthropic | openai (default: auto-detect)

    RAG_STORE_BACKEND: pgvector | memory (default: pgvector)
    RAG_RECORD_DELAY_MS: Pause between records in adapter batches (default: 100)
    RAG_DEFAULT_LIMIT: Default retrieval limit (default: 10)
    RAG_SIMILARITY_THRESHOLD: Default retrieval threshold (default: 0.7)
    RAG_CONFIG_CACHE_TTL: Context config cache TTL in seconds (default: 300)

    METAKOCKA_API_URL / METAKOCKA_SECRET_KEY / METAKOCKA_COMPANY_ID: ERP credentials
    MAGENTO_BASE_URL / MAGENTO_ACCESS_TOKEN: Catalog credentials

    REDIS_URL: Redis URL for the config cache (optional, falls back to memory)
"""

import os
from dataclasses import dataclass, field
from typing import Optional
from pathlib import Path
from dotenv import load_dotenv


# Load environment variables from .env file if present
env_path = Path(__file__).parent.parent.parent / ".env"
if env_path.exists():
    load_dotenv(env_path)


def get_env(key: str, default: Optional[str] = None, required: bool = False) -> Optional[str]:
    """
    Get environment variable with optional default and required validation.

    Args:
        key: Environment variable name
        default: Default value if not set
        required: If True, raises ValueError when not set

    Returns:
        Environment variable value or default

    Raises:
        ValueError: If required=True and variable is not set
    """
    value = os.getenv(key, default)
    if required and value is None:
        raise ValueError(f"Required environment variable '{key}' is not set")
    return value


def get_env_int(key: str, default: int) -> int:
    """Get environment variable as integer."""
    value = os.getenv(key)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        raise ValueError(f"Environment variable '{key}' must be an integer, got: {value}")


def get_env_float(key: str, default: float) -> float:
    """Get environment variable as float."""
    value = os.getenv(key)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        raise ValueError(f"Environment variable '{key}' must be a float, got: {value}")


def get_env_bool(key: str, default: bool) -> bool:
    """Get environment variable as boolean."""
    value = os.getenv(key)
    if value is None:
        return default
    return value.lower() in ("true", "1", "yes", "on")


@dataclass
class DatabaseConfig:
    """PostgreSQL database configuration."""

    url: Optional[str] = field(default_factory=lambda: get_env("DATABASE_URL"))
    host: str = field(default_factory=lambda: get_env("DATABASE_HOST", "localhost"))
    port: int = field(default_factory=lambda: get_env_int("DATABASE_PORT", 5432))
    name: str = field(default_factory=lambda: get_env("DATABASE_NAME", "aris"))
    user: str = field(default_factory=lambda: get_env("DATABASE_USER", "aris_app"))
    password: str = field(default_factory=lambda: get_env("DATABASE_PASSWORD", ""))

    # Connection pool settings
    pool_min_size: int = field(default_factory=lambda: get_env_int("DATABASE_POOL_MIN", 2))
    pool_max_size: int = field(default_factory=lambda: get_env_int("DATABASE_POOL_MAX", 10))

    connect_timeout: int = field(default_factory=lambda: get_env_int("DATABASE_CONNECT_TIMEOUT", 10))

    # SSL mode: disable, allow, prefer, require, verify-ca, verify-full
    ssl_mode: str = field(default_factory=lambda: get_env("DATABASE_SSL_MODE", "prefer"))

    @property
    def connection_dict(self) -> dict:
        """Connection parameters as dictionary for psycopg2."""
        if self.url:
            return {"dsn": self.url, "connect_timeout": self.connect_timeout}
        return {
            "host": self.host,
            "port": self.port,
            "dbname": self.name,
            "user": self.user,
            "password": self.password,
            "sslmode": self.ssl_mode,
            "connect_timeout": self.connect_timeout,
        }

    @property
    def is_configured(self) -> bool:
        return bool(self.url or self.password)

    def __post_init__(self):
        """Validate configuration."""
        if self.pool_min_size > self.pool_max_size:
            raise ValueError("pool_min_size cannot exceed pool_max_size")


@dataclass
class OpenAIConfig:
    """OpenAI embeddings and chat configuration."""

    api_key: Optional[str] = field(
        default_factory=lambda: get_env("OPENAI_API_KEY") or get_env("GPT_API_KEY")
    )
    embedding_model: str = field(default_factory=lambda: get_env("EMBEDDING_MODEL", "text-embedding-3-small"))
    embedding_dimensions: int = field(default_factory=lambda: get_env_int("EMBEDDING_DIMENSIONS", 1536))
    embedding_max_retries: int = field(default_factory=lambda: get_env_int("EMBEDDING_MAX_RETRIES", 3))
    llm_provider: Optional[str] = field(default_factory=lambda: get_env("LLM_PROVIDER"))
    llm_model: Optional[str] = field(default_factory=lambda: get_env("LLM_MODEL"))

    def __post_init__(self):
        if self.embedding_dimensions <= 0:
            raise ValueError("embedding_dimensions must be positive")


@dataclass
class RAGConfig:
    """Ingestion, retrieval and context assembly defaults."""

    store_backend: str = field(default_factory=lambda: get_env("RAG_STORE_BACKEND", "pgvector"))

    # Fixed pause between records inside adapter batches
    record_delay_ms: int = field(default_factory=lambda: get_env_int("RAG_RECORD_DELAY_MS", 100))

    default_limit: int = field(default_factory=lambda: get_env_int("RAG_DEFAULT_LIMIT", 10))
    similarity_threshold: float = field(default_factory=lambda: get_env_float("RAG_SIMILARITY_THRESHOLD", 0.7))

    # Context manager config cache
    config_cache_ttl_seconds: int = field(default_factory=lambda: get_env_int("RAG_CONFIG_CACHE_TTL", 300))

    # Stale source eviction
    stale_after_days: int = field(default_factory=lambda: get_env_int("RAG_STALE_AFTER_DAYS", 30))

    @property
    def record_delay_seconds(self) -> float:
        return self.record_delay_ms / 1000.0

    def __post_init__(self):
        if self.store_backend not in ("pgvector", "memory"):
            raise ValueError(f"RAG_STORE_BACKEND must be 'pgvector' or 'memory', got: {self.store_backend}")
        if not 0.0 <= self.similarity_threshold <= 1.0:
            raise ValueError("similarity_threshold must be between 0 and 1")
        if self.record_delay_ms < 0:
            raise ValueError("record_delay_ms cannot be negative")


@dataclass
class MetakockaConfig:
    """Metakocka ERP configuration."""

    api_url: str = field(default_factory=lambda: get_env(
        "METAKOCKA_API_URL", "https://main.metakocka.si/rest/eshop/v1/json/"
    ))
    secret_key: Optional[str] = field(default_factory=lambda: get_env("METAKOCKA_SECRET_KEY"))
    company_id: Optional[str] = field(default_factory=lambda: get_env("METAKOCKA_COMPANY_ID"))
    request_timeout: int = field(default_factory=lambda: get_env_int("METAKOCKA_REQUEST_TIMEOUT", 30))

    @property
    def is_configured(self) -> bool:
        return bool(self.secret_key and self.company_id)


@dataclass
class MagentoConfig:
    """Magento catalog configuration."""

    base_url: Optional[str] = field(default_factory=lambda: get_env("MAGENTO_BASE_URL"))
    access_token: Optional[str] = field(default_factory=lambda: get_env("MAGENTO_ACCESS_TOKEN"))
    page_size: int = field(default_factory=lambda: get_env_int("MAGENTO_PAGE_SIZE", 100))
    max_retries: int = field(default_factory=lambda: get_env_int("MAGENTO_MAX_RETRIES", 3))
    retry_delay: float = field(default_factory=lambda: get_env_float("MAGENTO_RETRY_DELAY", 1.0))
    request_timeout: int = field(default_factory=lambda: get_env_int("MAGENTO_REQUEST_TIMEOUT", 30))

    @property
    def is_configured(self) -> bool:
        return bool(self.base_url and self.access_token)


@dataclass
class CacheConfig:
    """Redis cache configuration."""

    redis_url: Optional[str] = field(default_factory=lambda: get_env("REDIS_URL"))
    prefix: str = field(default_factory=lambda: get_env("CACHE_PREFIX", "aris"))


@dataclass
class LoggingConfig:
    """Logging configuration."""

    level: str = field(default_factory=lambda: get_env("LOG_LEVEL", "INFO"))
    log_file: Optional[str] = field(default_factory=lambda: get_env("LOG_FILE"))

    # Structured logging
    json_logs: bool = field(default_factory=lambda: get_env_bool("LOG_JSON", False))


@dataclass
class Settings:
    """Main application settings container."""

    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    openai: OpenAIConfig = field(default_factory=OpenAIConfig)
    rag: RAGConfig = field(default_factory=RAGConfig)
    metakocka: MetakockaConfig = field(default_factory=MetakockaConfig)
    magento: MagentoConfig = field(default_factory=MagentoConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    # Application metadata
    app_name: str = "aris-rag"
    app_version: str = "1.0.0"
    environment: str = field(default_factory=lambda: get_env("ENVIRONMENT", "development"))

    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment.lower() in ("production", "prod")


def load_settings() -> Settings:
    """
    Load and validate all application settings.

    Raises:
        ValueError: If configuration is invalid
    """
    return Settings()


# Global settings instance (lazy-loaded)
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get the global settings instance."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings


def reset_settings() -> None:
    """Drop the cached settings so the next call re-reads the environment."""
    global _settings
    _settings = None
