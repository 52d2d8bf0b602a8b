from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional, List, Literal


class Settings(BaseSettings):
    google_cloud_project: str = ""
    google_application_credentials: str = ""
    firestore_emulator_host: Optional[str] = None
    # "memory" keeps all room state in-process (local dev, tests)
    store_backend: Literal["firestore", "memory"] = "memory"

    # Phase durations (seconds)
    prompt_duration_seconds: int = 3
    submission_duration_seconds: int = 20
    voting_duration_seconds: int = 15
    results_duration_seconds: int = 8

    # Match rules
    winning_votes_threshold: int = 20
    star_threshold: int = 6
    min_players: int = 2
    max_players: int = 12
    max_submission_length: int = 120

    # Reconciliation sweep
    sweep_enabled: bool = True
    sweep_interval_seconds: float = 10.0
    sweep_grace_seconds: float = 2.0
    # Client advances are honoured once at most this much of the phase remains
    advance_tolerance_seconds: float = 1.0

    # Prompt pool cache
    prompt_cache_ttl_seconds: float = 300.0
    prompt_pool_limit: int = 50

    # XP handed to the progression system
    xp_round_participation: int = 10
    xp_round_win: int = 25
    xp_star_bonus: int = 50
    xp_match_win: int = 100

    # CORS origins — set ALLOWED_ORIGINS env var for production (JSON list)
    allowed_origins: List[str] = [
        "http://localhost:5173",
        "http://localhost:3000",
        "http://127.0.0.1:5173",
    ]
    debug: bool = False

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_ignore_empty=True,
    )


settings = Settings()
