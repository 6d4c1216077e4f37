from typing import List

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Runtime configuration for the directory API.
    Values come from the environment or a local .env file.
    """

    APP_NAME: str = "Business Directory API"

    # --- Security ---
    SECRET_KEY: str = "supersecretkey"
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_DAYS: int = 7
    BCRYPT_ROUNDS: int = 12

    # --- Persistence ---
    DATABASE_URL: str = "mongodb://localhost:27017"
    DATABASE_NAME: str = "directory"

    # --- HTTP ---
    FRONTEND_URL: str = "http://localhost:5173"

    # --- Logging ---
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "console"

    # --- Bootstrap admin ---
    DEFAULT_ADMIN_NAME: str = "Default Administrator"
    DEFAULT_ADMIN_EMAIL: str = "admin@example.com"
    DEFAULT_ADMIN_PASSWORD: str = "Admin@123"

    @property
    def cors_origins(self) -> List[str]:
        return [o.strip() for o in self.FRONTEND_URL.split(",") if o.strip()]

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


settings = Settings()
