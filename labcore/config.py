from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    database_url: str = "sqlite:///./labcore.db"
    app_env: str = "dev"
    log_level: str = "INFO"

    allowed_origins: str = "http://localhost:3000"
    search_fuzzy_threshold: int = 70
    search_default_limit: int = 20
    lock_timeout_seconds: float = 5.0
    unsectioned_title: str = "General"
    seed_catalog_on_startup: bool = True


settings = Settings()
