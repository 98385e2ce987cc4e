from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional, List, Literal


class Settings(BaseSettings):
    # "memory" keeps everything in-process (tests, local dev); "firestore" is production
    store_backend: Literal["memory", "firestore"] = "memory"
    google_cloud_project: str = ""
    google_application_credentials: str = ""
    firestore_emulator_host: Optional[str] = None
    # CORS origins — set ALLOWED_ORIGINS env var for production (comma-separated)
    allowed_origins: List[str] = [
        "http://localhost:5173",
        "http://localhost:3000",
        "http://127.0.0.1:5173",
    ]
    # Extra production origin (e.g. Cloud Run URL); appended to allowed_origins
    extra_origin: str = ""

    max_players: int = 6
    session_code_length: int = 6
    player_id_length: int = 8
    max_name_length: int = 24

    presence_refresh_seconds: float = 15.0
    queue_stale_seconds: float = 60.0
    queue_sweep_seconds: float = 15.0

    transaction_max_attempts: int = 5
    id_max_attempts: int = 5

    default_label_scheme: Literal["classic", "english"] = "classic"
    debug: bool = False

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_ignore_empty=True,
    )


settings = Settings()
