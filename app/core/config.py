"""
Configuration Management using Pydantic Settings
Loads configuration from environment variables with validation
"""
import os
import tempfile
from functools import lru_cache
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = Field(default="Operations Ingestion Service", description="Application name")
    app_version: str = Field(default="0.1.0", description="Application version")
    debug: bool = Field(default=False, description="Debug mode")
    environment: str = Field(default="development", description="Environment: development, staging, production")

    # API Settings
    api_v1_prefix: str = Field(default="/api/v1", description="API version 1 prefix")
    cors_origins: list[str] = Field(default=["*"], description="Allowed CORS origins")

    # Database - PostgreSQL (Local Docker)
    postgres_host: str = Field(default="localhost", description="PostgreSQL host")
    postgres_port: int = Field(default=5432, description="PostgreSQL port")
    postgres_user: str = Field(default="ops", description="PostgreSQL user")
    postgres_password: str = Field(default="ops_secret", description="PostgreSQL password")
    postgres_db: str = Field(default="ops_ingestion", description="PostgreSQL database name")

    # Database - Cloud (Production)
    database_url: Optional[str] = Field(default=None, description="Full database URL (Cloud)")

    @property
    def postgres_url(self) -> str:
        """
        Construct async database connection URL.
        Prioritizes DATABASE_URL (cloud) over individual settings (local).
        Non-Postgres URLs (e.g. sqlite+aiosqlite) are passed through untouched.
        """
        if self.database_url:
            url = self.database_url
            if url.startswith("postgresql://"):
                url = url.replace("postgresql://", "postgresql+asyncpg://", 1)
            elif url.startswith("postgres://"):
                url = url.replace("postgres://", "postgresql+asyncpg://", 1)
            return url

        return f"postgresql+asyncpg://{self.postgres_user}:{self.postgres_password}@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"

    @property
    def postgres_url_sync(self) -> str:
        """
        Construct synchronous PostgreSQL connection URL (for Alembic migrations).

        Handles ssl=require -> sslmode=require for psycopg2.
        """
        if self.database_url:
            url = self.database_url
            if url.startswith("postgres://"):
                url = url.replace("postgres://", "postgresql://", 1)
            url = url.replace("postgresql+asyncpg://", "postgresql://")
            if "ssl=require" in url:
                url = url.replace("ssl=require", "sslmode=require")
            return url

        return f"postgresql://{self.postgres_user}:{self.postgres_password}@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"

    # Embedding provider (Vector Generator)
    embedding_provider: str = Field(default="lmstudio", description="Embedding provider: lmstudio, openrouter, google")
    ai_host: str = Field(default="http://localhost:1234/v1", description="LM Studio (OpenAI-compatible) base URL")
    embedding_model: str = Field(default="text-embedding-nomic-embed-text-v1.5", description="LM Studio embedding model")
    openrouter_api_key: Optional[str] = Field(default=None, description="OpenRouter API key")
    openrouter_base_url: str = Field(default="https://openrouter.ai/api/v1", description="OpenRouter API base URL")
    openrouter_embedding_model: str = Field(default="openai/text-embedding-3-small", description="OpenRouter embedding model")
    openrouter_referer: str = Field(default="http://localhost:3000", description="HTTP-Referer header sent to OpenRouter")
    openrouter_title: str = Field(default="Operations Tools", description="X-Title header sent to OpenRouter")
    google_api_key: Optional[str] = Field(default=None, description="Google Gemini API key")
    google_embedding_model: str = Field(default="models/gemini-embedding-001", description="Gemini embedding model")
    embedding_dimensions: int = Field(default=768, description="Embedding vector dimensions (Gemini MRL)")
    embedding_timeout_seconds: float = Field(default=60.0, description="Timeout for a single embedding request")

    # Ingestion pipeline
    ingest_chunk_size: int = Field(default=100, description="Rows per Phase 1 batch")
    vectorize_batch_size: int = Field(default=50, description="Records per Phase 2 batch")
    max_embedding_retries: int = Field(default=3, description="Embedding attempts per record before it is marked failed")
    vectorize_backoff_seconds: float = Field(default=2.0, description="Pause after a Phase 2 batch with zero successes")
    content_min_length: int = Field(default=10, description="Minimum length for a recognised content field")

    # Chunked upload (server side)
    upload_dir: str = Field(
        default=os.path.join(tempfile.gettempdir(), "csv-uploads"),
        description="Directory holding in-flight chunked upload sessions",
    )
    upload_max_chunks: int = Field(default=100, description="Maximum chunks per upload session")
    upload_max_chunk_bytes: int = Field(default=4 * 1024 * 1024, description="Maximum size of one chunk")
    upload_max_total_bytes: int = Field(default=100 * 1024 * 1024, description="Maximum assembled payload size")
    upload_session_ttl_seconds: int = Field(default=600, description="Idle lifetime of an upload session")

    # Chunked upload (client side)
    upload_chunk_threshold_bytes: int = Field(default=3 * 1024 * 1024, description="Payloads above this size use chunked upload")
    upload_client_chunk_bytes: int = Field(default=3 * 1024 * 1024, description="Byte range sent per chunk")
    upload_client_max_retries: int = Field(default=3, description="Attempts per chunk")
    upload_client_retry_delay_seconds: float = Field(default=1.0, description="Linear backoff step between chunk attempts")

    # Logging
    log_level: str = Field(default="INFO", description="Logging level")

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        allowed = ["development", "staging", "production"]
        if v not in allowed:
            raise ValueError(f"environment must be one of {allowed}")
        return v

    @field_validator("embedding_provider")
    @classmethod
    def validate_embedding_provider(cls, v: str) -> str:
        allowed = ["lmstudio", "openrouter", "google"]
        if v.lower() not in allowed:
            raise ValueError(f"embedding_provider must be one of {allowed}")
        return v.lower()

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        allowed = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in allowed:
            raise ValueError(f"log_level must be one of {allowed}")
        return v.upper()


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()


# Export settings instance for convenience
settings = get_settings()
