"""Application configuration via environment variables."""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    database_url: str = "sqlite+aiosqlite:///./paygate.db"
    log_level: str = "INFO"
    simulator_failure_rate: float = 0.0  # fraction of simulated provider calls that fail
    simulator_latency_ms: int = 0  # simulated provider round-trip latency
    status_check_max_retries: int = 2
    recurring_default_total_count: int = 120  # Razorpay requires a finite cycle count

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


settings = Settings()
