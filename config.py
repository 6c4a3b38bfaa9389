import os
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel


class Settings(BaseModel):
    """Runtime configuration. Built once at startup and passed to whatever needs it."""

    database_url: str = "sqlite+aiosqlite:///./darkdrop.db"
    storage_root: str = "./storage"
    # Hex-encoded. When unset, accounts with encryption enabled store plaintext.
    master_key: Optional[str] = None
    kdf_iterations: int = 100_000
    public_base_url: str = "http://localhost:3000"
    session_ttl_hours: int = 24 * 7
    session_cleanup_interval_seconds: int = 3600
    max_upload_bytes: int = 5 * 1024 * 1024 * 1024
    cors_origins: list[str] = ["*"]
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        load_dotenv()
        defaults = cls()
        origins = os.getenv("CORS_ORIGINS")
        return cls(
            database_url=os.getenv("DATABASE_URL", defaults.database_url),
            storage_root=os.getenv("STORAGE_ROOT", defaults.storage_root),
            master_key=os.getenv("DARKDROP_MASTER_KEY") or None,
            kdf_iterations=int(os.getenv("KDF_ITERATIONS", str(defaults.kdf_iterations))),
            public_base_url=os.getenv("PUBLIC_BASE_URL", defaults.public_base_url),
            session_ttl_hours=int(os.getenv("SESSION_TTL_HOURS", str(defaults.session_ttl_hours))),
            session_cleanup_interval_seconds=int(
                os.getenv("SESSION_CLEANUP_INTERVAL_SECONDS", str(defaults.session_cleanup_interval_seconds))
            ),
            max_upload_bytes=int(os.getenv("MAX_UPLOAD_BYTES", str(defaults.max_upload_bytes))),
            cors_origins=[o.strip() for o in origins.split(",")] if origins else defaults.cors_origins,
            log_level=os.getenv("LOG_LEVEL", defaults.log_level),
        )
