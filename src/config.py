"""
Centralized configuration management using Pydantic Settings.

All configuration is loaded from environment variables with sensible defaults
for a local OpenSearch node. No secrets are hardcoded.
"""

from __future__ import annotations

from pydantic import Field
from pydantic_settings import BaseSettings


class OpenSearchConfig(BaseSettings):
    """OpenSearch connection configuration."""

    model_config = {"env_prefix": "OPENSEARCH_"}

    node: str = Field(
        default="https://localhost:9200",
        description="Base URL of the OpenSearch node",
    )
    username: str | None = Field(default=None, description="Basic auth user")
    password: str | None = Field(default=None, description="Basic auth password")
    verify_certs: bool = Field(
        default=False,
        description="Verify TLS certificates (local clusters use self-signed certs)",
    )
    request_timeout_seconds: float = Field(
        default=60.0,
        description="Timeout for bulk requests",
    )
    ping_timeout_seconds: float = Field(
        default=3.0,
        description="Timeout for the startup cluster health check",
    )


class IngestConfig(BaseSettings):
    """Ingestion pipeline configuration."""

    model_config = {"env_prefix": "INGEST_"}

    total_records: int = Field(
        default=500_000,
        description="Number of log records to generate and ingest",
    )
    batch_size: int = Field(
        default=5_000,
        description="Records per bulk request",
    )
    concurrency: int = Field(
        default=2,
        description="Maximum number of bulk requests in flight",
    )
    chunk_size: int = Field(
        default=100,
        description="Records generated before yielding to the event loop",
    )
    index_prefix: str = Field(
        default="logs-stream",
        description="Prefix of the target index, suffixed with the base date",
    )
    progress_interval_seconds: float = Field(
        default=2.0,
        description="Minimum seconds between progress lines",
    )


class ErrorLogConfig(BaseSettings):
    """Error log file configuration."""

    model_config = {"env_prefix": "ERROR_LOG_"}

    directory: str = Field(default="./logs", description="Directory for error log files")
    max_errors_in_memory: int = Field(
        default=1000,
        description="Flush the error buffer to disk once it holds this many entries",
    )


class MetricsConfig(BaseSettings):
    """Prometheus metrics configuration."""

    model_config = {"env_prefix": "METRICS_"}

    enabled: bool = Field(default=False, description="Expose the metrics HTTP server")
    port: int = Field(default=9090, description="Prometheus metrics server port")
    namespace: str = Field(
        default="log_ingest",
        description="Prometheus metric name prefix",
    )


class AppConfig:
    """Top-level configuration aggregator."""

    def __init__(self) -> None:
        self.opensearch = OpenSearchConfig()
        self.ingest = IngestConfig()
        self.error_log = ErrorLogConfig()
        self.metrics = MetricsConfig()


# Module-level singleton
settings = AppConfig()
