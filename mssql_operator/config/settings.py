"""
Operator configuration using Pydantic Settings.
Loads configuration from environment variables with validation.
"""
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Main operator settings with environment variable loading."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = Field(default="SQL Server Database Operator", description="Application name")
    app_version: str = Field(default="1.0.0", description="Application version")
    environment: str = Field(default="development", description="Environment (development/staging/production/testing)")
    debug: bool = Field(default=False, description="Debug mode")
    log_level: str = Field(default="INFO", description="Logging level")

    # Health / metrics server
    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=8080, ge=1, le=65535, description="Server port")

    # Kubernetes
    kubeconfig_path: Optional[str] = Field(
        default=None, description="Path to kubeconfig file (None for in-cluster)"
    )
    k8s_in_cluster: bool = Field(default=False, description="Running inside Kubernetes cluster")
    watch_namespace: Optional[str] = Field(
        default=None, description="Namespace to watch (None for cluster-wide)"
    )
    k8s_request_timeout_seconds: float = Field(
        default=10.0, gt=0, le=120, description="Timeout for Kubernetes API requests"
    )

    # Custom resources
    crd_group: str = Field(default="actions.msft.isd.coe.io", description="Database CRD group")
    crd_version: str = Field(default="v1alpha1", description="Database CRD version")
    crd_plural: str = Field(default="databases", description="Database CRD plural")
    server_crd_group: str = Field(default="sql.arcdata.microsoft.com", description="Managed server CRD group")
    server_crd_version: str = Field(default="v1", description="Managed server CRD version")
    server_crd_plural: str = Field(default="sqlmanagedinstances", description="Managed server CRD plural")

    # Reconciler
    sync_poll_interval_seconds: float = Field(
        default=10.0, gt=0, le=3600, description="Requeue delay after an in-sync pass"
    )
    reconcile_workers: int = Field(default=4, ge=1, le=64, description="Concurrent reconciliation workers")
    resync_interval_seconds: float = Field(
        default=300.0, ge=10, le=86400, description="Full relist interval"
    )
    error_backoff_base_seconds: float = Field(default=1.0, gt=0, description="Initial error backoff")
    error_backoff_max_seconds: float = Field(default=300.0, gt=0, description="Maximum error backoff")
    track_read_committed_snapshot: bool = Field(
        default=True, description="Include allowReadCommittedSnapshot in drift detection"
    )

    # SQL Server
    sql_driver: str = Field(default="ODBC Driver 18 for SQL Server", description="ODBC driver name")
    sql_timeout_seconds: int = Field(default=5, ge=1, le=120, description="Per-call SQL timeout in seconds")
    sql_trust_server_certificate: bool = Field(default=True, description="Trust the server TLS certificate")
    sql_identifier_attempts: int = Field(
        default=3, ge=1, le=10, description="Attempts to read back a new database's identifier"
    )

    # Leader election (Redis)
    leader_election_enabled: bool = Field(default=False, description="Gate the controller on a Redis lease")
    redis_url: str = Field(default="redis://localhost:6379/0", description="Redis connection URL")
    redis_max_connections: int = Field(default=10, ge=1, le=100, description="Redis max connections")
    leader_lease_seconds: int = Field(default=30, ge=5, le=300, description="Leader lease duration")

    # Monitoring
    prometheus_enabled: bool = Field(default=True, description="Enable Prometheus metrics")
    sentry_dsn: Optional[str] = Field(default=None, description="Sentry DSN for error tracking")
    sentry_traces_sample_rate: float = Field(
        default=0.1, ge=0.0, le=1.0, description="Sentry traces sample rate"
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Log level must be one of {valid_levels}")
        return v.upper()

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        """Validate environment."""
        valid_envs = ["development", "staging", "production", "testing"]
        if v.lower() not in valid_envs:
            raise ValueError(f"Environment must be one of {valid_envs}")
        return v.lower()

    @property
    def is_production(self) -> bool:
        """Check if running in production."""
        return self.environment == "production"

    @property
    def is_development(self) -> bool:
        """Check if running in development."""
        return self.environment == "development"


# Global settings instance
settings = Settings()
