from __future__ import annotations

from typing import Dict

from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache

# Default sampling temperature per prompt key
DEFAULT_TEMPERATURES: Dict[str, float] = {
    "time_datetime": 0.3,
    "time_delta": 0.3,
    "location_initial": 0.5,
    "location_update": 0.5,
    "climate_initial": 0.3,
    "climate_update": 0.3,
    "characters_initial": 0.7,
    "characters_update": 0.7,
    "scene_initial": 0.6,
    "scene_update": 0.6,
    "event_extract": 0.4,
    "chapter_boundary": 0.5,
    "relationship_initial": 0.6,
    "relationship_update": 0.6,
}

FALLBACK_TEMPERATURE = 0.5


class Settings(BaseSettings):
    app_name: str = "Narrative Tracker"
    # Local sqlite by default; point at postgresql+asyncpg:// in production
    database_url: str = "sqlite+aiosqlite:///./tracker.db"

    # Extraction endpoint. Empty means no endpoint is configured.
    extraction_model: str = ""

    # Sliding window of chat messages handed to each stage
    last_x_messages: int = 10
    max_response_tokens: int = 4000

    # Per-category extraction toggles
    track_time: bool = True
    track_location: bool = True
    track_climate: bool = True
    track_characters: bool = True
    track_scene: bool = True
    track_events: bool = True
    track_relationships: bool = True

    # Climate comes from the weather provider when one is wired in
    use_procedural_weather: bool = True

    # Narrative minutes that count as a time jump between chapters
    chapter_time_threshold: int = 60
    include_relationship_secrets: bool = True

    custom_temperatures: Dict[str, float] = {}

    # Resilient client retry settings
    resilient_max_retries: int = 10
    resilient_base_delay: int = 2  # seconds, used with exponential backoff

    # API key cooldown after exhaustion
    key_cooldown_seconds: int = 60

    # JSON log output; an empty log_file keeps logs on stderr only
    log_level: str = "INFO"
    log_file: str = "tracker.log"

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    def get_temperature(self, key: str) -> float:
        """Custom override first, then the built-in default for *key*."""
        if key in self.custom_temperatures:
            return self.custom_temperatures[key]
        return DEFAULT_TEMPERATURES.get(key, FALLBACK_TEMPERATURE)


@lru_cache
def get_settings():
    return Settings()
