"""Settings and configuration."""
from typing import List, Tuple

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_RELAYS = [
    "wss://relay.damus.io",
    "wss://nos.lol",
    "wss://relay.nostr.band",
]


def parse_limit(limit: str) -> Tuple[int, float]:
    """Parse a ``"count/window_seconds"`` limit string, e.g. ``"10/1"``."""
    try:
        count_str, seconds_str = limit.split("/")
        count, seconds = int(count_str), float(seconds_str)
    except ValueError:
        raise ValueError(f"Invalid limit format: {limit!r}, expected 'count/seconds'")
    if count < 1 or seconds <= 0:
        raise ValueError(f"Invalid limit values: {limit!r}")
    return count, seconds


class Settings(BaseSettings):
    # Relays
    relays: List[str] = DEFAULT_RELAYS

    # Rate Limiting
    publish_rate_limit: str = "10/1"
    query_rate_limit: str = "10/1"
    min_interval_ms: int = 100

    # Backoff (publish fails fast, query can wait)
    publish_max_attempts: int = 3
    publish_initial_delay_ms: int = 500
    publish_max_delay_ms: int = 5000
    query_max_attempts: int = 5
    query_initial_delay_ms: int = 1000
    query_max_delay_ms: int = 60000

    # Timeouts
    signer_timeout_seconds: float = 120.0
    query_timeout_seconds: float = 10.0

    model_config = SettingsConfigDict(
        env_prefix="RELAYVAULT_",
        env_file=".env",
        extra="ignore",
    )

    @field_validator("publish_rate_limit", "query_rate_limit")
    @classmethod
    def validate_limit(cls, v: str) -> str:
        parse_limit(v)
        return v

    @field_validator("relays")
    @classmethod
    def validate_relays(cls, v: List[str]) -> List[str]:
        for url in v:
            if not url.startswith(("wss://", "ws://")):
                raise ValueError(f"Relay URL must use ws:// or wss://: {url}")
        return v


settings = Settings()
