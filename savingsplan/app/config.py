from pydantic_settings import BaseSettings
from functools import lru_cache

class Settings(BaseSettings):
    # Database settings
    database_url: str = "sqlite:///./savingsplan.db"

    # Monthly planning
    undo_grace_period_hours: int = 24
    days_per_month: float = 30.436875
    attention_threshold: float = 5000.0
    critical_threshold: float = 10000.0
    display_currency: str = "USD"

    # Exchange rate API settings
    exchange_rate_api_url: str = "https://api.exchangerate.host/latest"
    exchange_rate_api_key: str = ""
    exchange_rate_timeout_seconds: float = 10.0
    rate_cache_ttl_seconds: int = 300

    # Recalculation triggers and automation
    recalculation_debounce_seconds: float = 0.5
    auto_start_enabled: bool = True
    auto_complete_enabled: bool = True

    log_level: str = "INFO"

    class Config:
        env_file = ".env"

@lru_cache()
def get_settings():
    return Settings()
