from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    model_config = {
        "env_file": ".env",
        "extra": "ignore",
        "env_prefix": "GENFLOW_",
        "case_sensitive": False,
    }

    # Remote API
    api_base_url: str = "http://localhost:8888/.netlify/functions"
    api_token: str = ""
    request_timeout_seconds: float = 10.0

    # Credits
    credit_cost: int = 2
    credit_action: str = "image.gen"
    finalize_max_attempts: int = 5
    finalize_backoff_seconds: float = 0.5

    # Polling
    poll_interval_seconds: float = 2.0
    poll_max_attempts: int = 30
    default_estimated_seconds: float = 45.0

    # Cache
    cache_max_size_bytes: int = 100 * 1024 * 1024  # 100 MB
    cache_ttl_seconds: float = 24 * 60 * 60

    # Local durable store ("" keeps everything in memory)
    store_dir: str = ""

    # App
    environment: str = "development"
    log_level: str = "INFO"
    log_file: str = ""
    use_mock_services: bool = True


settings = Settings()
