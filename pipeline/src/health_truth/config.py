import os
from dataclasses import dataclass


@dataclass(frozen=True)
class Config:
    database_url: str
    listen_database_url: str
    poll_interval_seconds: float = 5.0
    batch_size: int = 10
    max_retries: int = 3
    http_port: int = 8081
    log_format: str = "json"
    oura_webhook_secret: str | None = None
    oura_api_base_url: str = "https://api.ouraring.com"
    withings_api_base_url: str = "https://wbsapi.withings.net"
    resync_days: int = 30
    resync_chunk_size: int = 450
    recompute_interval_hours: int = 24

    @classmethod
    def from_env(cls) -> "Config":
        database_url = os.environ.get("DATABASE_URL")
        if not database_url:
            raise RuntimeError("DATABASE_URL must be set")

        return cls(
            database_url=database_url,
            listen_database_url=os.environ.get("TRUTH_LISTEN_DATABASE_URL") or database_url,
            poll_interval_seconds=float(os.environ.get("TRUTH_POLL_INTERVAL", "5.0")),
            batch_size=int(os.environ.get("TRUTH_BATCH_SIZE", "10")),
            max_retries=int(os.environ.get("TRUTH_MAX_RETRIES", "3")),
            http_port=int(os.environ.get("TRUTH_HTTP_PORT", "8081")),
            log_format=os.environ.get("TRUTH_LOG_FORMAT", "json"),
            oura_webhook_secret=os.environ.get("OURA_WEBHOOK_SECRET") or None,
            oura_api_base_url=os.environ.get(
                "OURA_API_BASE_URL", "https://api.ouraring.com"
            ).rstrip("/"),
            withings_api_base_url=os.environ.get(
                "WITHINGS_API_BASE_URL", "https://wbsapi.withings.net"
            ).rstrip("/"),
            resync_days=int(os.environ.get("TRUTH_RESYNC_DAYS", "30")),
            resync_chunk_size=int(os.environ.get("TRUTH_RESYNC_CHUNK_SIZE", "450")),
            recompute_interval_hours=int(
                os.environ.get("TRUTH_RECOMPUTE_INTERVAL_HOURS", "24")
            ),
        )
