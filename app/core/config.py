from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # Local registry store (any async SQLAlchemy URL)
    DATABASE_URL: str = "sqlite+aiosqlite:///./data/schema-registry.db"
    DB_ECHO: bool = False

    # Remote platform
    BUDIBASE_URL: str
    BUDIBASE_API_KEY: str
    REQUEST_TIMEOUT_MS: int = 30000
    MAX_RETRIES: int = 3

    # Schema older than this is re-fetched on the next non-forced sync
    SCHEMA_MAX_AGE_MS: int = 3600000

    LOG_LEVEL: str = "INFO"

    # This tells Pydantic to read from the .env file
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


# Create a single instance of the settings to use everywhere
settings = Settings()
