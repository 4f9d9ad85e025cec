# Configuration management

from pydantic_settings import BaseSettings  # type: ignore
from functools import lru_cache
from typing import Optional


class Settings(BaseSettings):
    # Session stores
    store_dir: Optional[str] = None  # None = process-private temp directory
    sqlite_busy_timeout: float = 5.0

    # Schema inference
    root_table_name: str = "root"
    sample_size: int = 5
    max_depth: int = 32
    max_staged_rows: int = 100_000

    # Query execution
    query_max_rows: int = 1000
    query_timeout_seconds: Optional[float] = None

    # Processing report
    low_confidence_threshold: float = 0.8

    # Observability
    log_level: str = "INFO"
    json_logs: bool = True
    metrics_enabled: bool = True

    class Config:
        env_file = ".env"
        env_prefix = "GRAPHSTAGE_"
        case_sensitive = False


@lru_cache()
def get_settings() -> Settings:
    return Settings()
