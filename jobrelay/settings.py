from pydantic_settings import BaseSettings

class Settings(BaseSettings):
    database_url: str = "sqlite+pysqlite:///./jobrelay.db"
    redis_url: str = "redis://localhost:6379/0"

    job_queue: str = "job_queue"
    job_processing: str = "job_processing"
    job_inflight: str = "job_inflight"

    queue_wait_seconds: int = 20
    queue_batch_size: int = 10
    visibility_timeout_seconds: int = 30
    receive_backoff_seconds: float = 5.0

    cleanup_retention_days: int = 7
    timezone: str = "UTC"
    scheduler_max_workers: int = 8

    api_host: str = "0.0.0.0"
    api_port: int = 8080

    log_level: str = "INFO"

settings = Settings()
