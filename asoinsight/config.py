"""Configuration management using Pydantic Settings."""
from pydantic_settings import BaseSettings
from pydantic import Field
from typing import Optional


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # PostgreSQL Configuration (authorization store)
    postgres_host: str = Field(default="postgres", description="PostgreSQL host")
    postgres_port: int = Field(default=5432, description="PostgreSQL port")
    postgres_user: str = Field(default="asoinsight", description="PostgreSQL user")
    postgres_password: str = Field(default="asoinsight_dev_password", description="PostgreSQL password")
    postgres_db: str = Field(default="asoinsight", description="PostgreSQL database name")
    database_url: Optional[str] = Field(default=None, description="Full SQLAlchemy URL, overrides the postgres_* fields")

    # Redis Configuration
    redis_host: str = Field(default="redis", description="Redis host")
    redis_port: int = Field(default=6379, description="Redis port")
    redis_password: Optional[str] = Field(default=None, description="Redis password")
    redis_db: int = Field(default=0, description="Redis database number")

    # Hot Cache Configuration
    cache_enabled: bool = Field(default=True, description="Enable the analytics hot cache")
    cache_ttl: int = Field(default=30, description="Hot cache TTL in seconds")
    cache_backend: str = Field(default="memory", description="Hot cache backend: 'memory' (process-local) or 'redis' (shared)")
    cache_key_prefix: str = Field(default="aso:v1", description="Prefix for hot cache keys")
    cache_max_entries: int = Field(default=1024, description="Maximum entries held by the in-memory cache")

    # Application Configuration
    service_name: str = Field(default="aso-analytics", description="Service name used in logs and metrics")
    log_level: str = Field(default="INFO", description="Logging level")
    environment: str = Field(default="development", description="Environment (development, staging, production)")
    health_check_timeout: float = Field(default=2.0, description="Timeout for each readiness dependency check in seconds")

    # Authentication Configuration
    jwt_secret_key: str = Field(default="dev-secret-key-change-in-production", description="Auth provider JWT secret")
    jwt_algorithm: str = Field(default="HS256", description="JWT algorithm")
    jwt_audience: Optional[str] = Field(default="authenticated", description="Expected JWT audience (None disables the check)")
    elevated_roles: list = Field(default_factory=lambda: ["SUPER_ADMIN"], description="Roles treated as platform-wide elevated identities")

    # Access Scope Configuration
    over_ask_policy: str = Field(default="narrow", description="Requested-but-unauthorized app ids: 'narrow' drops them, 'strict' rejects")

    # Warehouse (BigQuery) Configuration
    bigquery_project_id: Optional[str] = Field(default=None, description="BigQuery project id (defaults to the service account project)")
    bigquery_credentials: Optional[str] = Field(default=None, description="Service account credentials JSON")
    bigquery_dataset: str = Field(default="client_reports", description="Dataset holding ASO fact rows")
    bigquery_table: str = Field(default="aso_all_apple", description="Table holding ASO fact rows")
    bigquery_location: Optional[str] = Field(default=None, description="BigQuery job location")
    bigquery_api_url: str = Field(default="https://bigquery.googleapis.com/bigquery/v2", description="BigQuery REST base URL")
    google_token_url: str = Field(default="https://oauth2.googleapis.com/token", description="Google OAuth token endpoint")
    warehouse_timeout: float = Field(default=10.0, description="Warehouse query timeout in seconds")
    warehouse_max_rows: int = Field(default=100000, description="Maximum rows returned by a warehouse query")

    # Retry Settings (warehouse transient failures only)
    retry_enabled: bool = Field(default=True, description="Enable retry with exponential backoff")
    retry_max_attempts: int = Field(default=2, description="Maximum number of attempts")
    retry_initial_delay: float = Field(default=0.1, description="Initial retry delay in seconds")
    retry_max_delay: float = Field(default=2.0, description="Maximum retry delay in seconds")
    retry_exponential_base: float = Field(default=2.0, description="Base for exponential backoff calculation")
    retry_jitter: bool = Field(default=True, description="Add random jitter to retry delays")

    # Audit Configuration
    audit_enabled: bool = Field(default=True, description="Record analytics access audit events")
    audit_backend: str = Field(default="log", description="Audit sink: 'log' or 'database'")

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False

    @property
    def postgres_url(self) -> str:
        """Generate PostgreSQL connection URL."""
        if self.database_url:
            return self.database_url
        return f"postgresql+asyncpg://{self.postgres_user}:{self.postgres_password}@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"

    @property
    def redis_url(self) -> str:
        """Generate Redis connection URL."""
        if self.redis_password:
            return f"redis://:{self.redis_password}@{self.redis_host}:{self.redis_port}/{self.redis_db}"
        return f"redis://{self.redis_host}:{self.redis_port}/{self.redis_db}"


# Global settings instance
settings = Settings()
