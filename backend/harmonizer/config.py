from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

_ENV_FILE = Path(__file__).resolve().parent.parent / ".env"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=str(_ENV_FILE),
        env_file_encoding="utf-8",
    )

    APP_NAME: str = "ControlHarmonizer"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    DATABASE_URL: str

    CORS_ORIGINS: str = "http://localhost:5173,http://localhost:3000"

    # Similarity scorer: sbert | embedding_api | token_overlap
    SCORER_BACKEND: str = "sbert"
    SBERT_MODEL: str = "all-MiniLM-L6-v2"
    EMBEDDING_API_URL: str = "http://localhost:11434"
    EMBEDDING_API_KEY: str = ""
    EMBEDDING_MODEL: str = "text-embedding-3-small"
    SCORER_TIMEOUT_SECONDS: float = 10.0

    # Concurrency limits
    MATCH_MAX_WORKERS: int = 8
    HARMONIZE_MAX_CONCURRENCY: int = 3

    # Auto-map thresholds (integer percentages)
    AUTO_MAP_MIN_CONFIDENCE: int = 75
    AUTO_MAP_EQUIVALENT_CONFIDENCE: int = 90
    AUTO_MAP_RESULT_LIMIT: int = 500

    @property
    def cors_origins_list(self) -> list[str]:
        return [origin.strip() for origin in self.CORS_ORIGINS.split(",")]


settings = Settings()
