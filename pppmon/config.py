from pydantic_settings import BaseSettings
from dotenv import load_dotenv

load_dotenv()  # Optional if you use a .env file

class Settings(BaseSettings):
    # SQLite for local runs - use postgresql://... in production
    DATABASE_URL: str = "sqlite+aiosqlite:///./pppmon.db"
    LOG_LEVEL: str = "INFO"

    # Usage sync scheduler
    SYNC_ENABLED: bool = True
    SYNC_INTERVAL_SECONDS: float = 30
    SYNC_STUCK_TIMEOUT_SECONDS: float = 120
    SYNC_EXECUTION_TIMEOUT_SECONDS: float = 90

    # Serving cache / read path
    CACHE_TTL_SECONDS: float = 45
    LIVE_FETCH_TIMEOUT_SECONDS: float = 3

    # MikroTik API
    MIKROTIK_CONNECT_TIMEOUT: float = 5
    MIKROTIK_TIMEOUT: float = 15
    MIKROTIK_DEFAULT_PORT: int = 8728
    DEFAULT_RESTORE_PROFILE: str = "default"

    # Telegram reports
    TELEGRAM_API_URL: str = "https://api.telegram.org"
    TELEGRAM_MESSAGE_LIMIT: int = 4096
    TELEGRAM_TIMEOUT_SECONDS: float = 10

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"

settings = Settings()
