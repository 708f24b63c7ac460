from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache

class Settings(BaseSettings):
    DATABASE_URL: str = "sqlite+aiosqlite:///./sharing.db"
    LOG_LEVEL: str = "INFO"
    SECRET_KEY: str = "YOUR_SUPER_SECRET_KEY_CHANGE_THIS"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60 * 24 * 7  # 7 days
    CORS_ORIGINS: list[str] = ["http://localhost:5173"]

    # Share code issuance
    SHARE_CODE_RATE_LIMIT: int = 10
    SHARE_CODE_RATE_WINDOW_MINUTES: int = 60
    SHARE_CODE_MAX_CANDIDATES: int = 50

    # Redemption attempts (brute force protection)
    REDEEM_RATE_LIMIT: int = 5
    REDEEM_RATE_WINDOW_MINUTES: int = 15

    model_config = SettingsConfigDict(env_file=".env")

@lru_cache
def get_settings():
    return Settings()
