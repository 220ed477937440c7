from pathlib import Path
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # Polling
    min_interval: float = 5
    max_interval: float = 30
    max_retries: int = 3
    backoff_multiplier: float = 2.0
    inactivity_threshold_minutes: float = 30
    resolved_retention_days: int = 30

    # Street matching
    max_fuzzy_distance: int = 3
    match_cache_max_age_days: float = 30
    geohash_precision: int = 7
    fallback_latitude: Optional[float] = None
    fallback_longitude: Optional[float] = None

    # Upstream throttling
    rate_limit_min_delay_ms: float = 1000
    rate_limit_max_retries: int = 3
    ckan_base_url: str = 'https://ckan0.cf.opendata.inter.prod-toronto.ca'
    http_timeout: float = 30.0

    # Reference geometry
    geometry_refresh_hour: int = 7
    geometry_refresh_enabled: bool = True

    db_path: Path = Path('disruptions.duckdb')
    log_level: str = 'INFO'

    model_config = SettingsConfigDict(
        env_prefix='DISRUPTION_',
        env_file='.env',
        extra='ignore',
    )


settings = Settings()
