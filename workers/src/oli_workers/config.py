import os
from dataclasses import dataclass


@dataclass(frozen=True)
class Config:
    database_url: str
    poll_interval_seconds: float = 5.0
    batch_size: int = 10
    max_retries: int = 3
    health_port: int = 8081
    log_format: str = "json"
    pipeline_version: int = 1
    confidence_threshold: float = 0.5
    ingest_timeout_seconds: float = 10.0
    provider_timeout_seconds: float = 15.0
    provider_base_url: str | None = None
    provider_api_token: str | None = None
    recompute_interval_hours: int = 24

    @classmethod
    def from_env(cls) -> "Config":
        database_url = os.environ.get("DATABASE_URL")
        if not database_url:
            raise RuntimeError("DATABASE_URL must be set")

        threshold = float(os.environ.get("OLI_CONFIDENCE_THRESHOLD", "0.5"))
        if not 0.0 <= threshold <= 1.0:
            raise RuntimeError("OLI_CONFIDENCE_THRESHOLD must be within [0, 1]")

        return cls(
            database_url=database_url,
            poll_interval_seconds=float(os.environ.get("OLI_POLL_INTERVAL", "5.0")),
            batch_size=int(os.environ.get("OLI_BATCH_SIZE", "10")),
            max_retries=int(os.environ.get("OLI_MAX_RETRIES", "3")),
            health_port=int(os.environ.get("OLI_HEALTH_PORT", "8081")),
            log_format=os.environ.get("OLI_LOG_FORMAT", "json"),
            pipeline_version=int(os.environ.get("OLI_PIPELINE_VERSION", "1")),
            confidence_threshold=threshold,
            ingest_timeout_seconds=float(os.environ.get("OLI_INGEST_TIMEOUT_SECONDS", "10")),
            provider_timeout_seconds=float(os.environ.get("OLI_PROVIDER_TIMEOUT_SECONDS", "15")),
            provider_base_url=os.environ.get("OLI_PROVIDER_BASE_URL") or None,
            provider_api_token=os.environ.get("OLI_PROVIDER_API_TOKEN") or None,
            recompute_interval_hours=int(os.environ.get("OLI_RECOMPUTE_INTERVAL_HOURS", "24")),
        )
