from pydantic_settings import BaseSettings
from typing import Optional
import os
from dotenv import load_dotenv

load_dotenv()


class Settings(BaseSettings):
    SECRET_KEY: str = "your-secret-key-change-in-production"
    JWT_SECRET: Optional[str] = None
    ALGORITHM: str = "HS256"
    # Default token lifetime (in minutes). Adjust via ACCESS_TOKEN_EXPIRE_MINUTES env var.
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 300

    @property
    def secret_key(self) -> str:
        return self.JWT_SECRET or self.SECRET_KEY

    # DATABASE_URL must be provided via environment (Supabase/Postgres in production).
    DATABASE_URL: str = os.getenv("DATABASE_URL", "")

    ALLOWED_ORIGINS: str = "http://localhost:5173,http://localhost:3000"
    FRONTEND_URL: str = "http://localhost:5173"

    # Auction creation rejects a start_time in the past. Browsers submit
    # "now" a few seconds before the request lands, so allow a small skew.
    AUCTION_START_GRACE_SECONDS: int = 60

    # Change feed: per-subscriber queue capacity (oldest events are dropped
    # on overflow) and the SSE keep-alive comment interval.
    REALTIME_QUEUE_SIZE: int = 100
    REALTIME_KEEPALIVE_SECONDS: float = 15.0

    class Config:
        # Do not silently read .env in CI; the platform injects env
        env_file = None
        env_file_encoding = "utf-8"
        extra = "ignore"


# Fail fast on import when no database is configured
_db_url = os.getenv("DATABASE_URL")
if not _db_url:
    raise RuntimeError("DATABASE_URL is required (Supabase/Postgres).")

settings = Settings()
