from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # Database Configuration
    # Production runs on PostgreSQL; the default keeps local runs self-contained.
    DATABASE_URL: str = "sqlite:///./series.db"
    USE_IN_MEMORY_STORE: bool = False

    # Runtime guard: when False, runtime entry points do nothing and say why
    SERIES_ORCHESTRATION_ENABLED: bool = True

    # Execution Policy
    MAX_BLOCK_EXECUTION_ATTEMPTS: int = 3
    RETRY_BASE_DELAY_SECONDS: int = 30
    MAX_EXECUTION_DEPTH: int = 50
    ALLOW_REENROLLMENT: bool = False

    # Backstop sweep bounds
    DEFAULT_SERIES_SCAN_LIMIT: int = 5000
    MAX_SERIES_SCAN_LIMIT: int = 20000
    DEFAULT_WAITING_BATCH_LIMIT: int = 1000
    MAX_WAITING_BATCH_LIMIT: int = 5000

    # Read limits
    DEFAULT_STATS_SCAN_LIMIT: int = 5000
    DEFAULT_TELEMETRY_LIMIT: int = 500
    MAX_TELEMETRY_LIMIT: int = 2000

    # Loads from a .env file in the root directory
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


# Singleton instance
settings = Settings()
