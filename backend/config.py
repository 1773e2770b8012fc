from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    """Application configuration loaded from environment variables."""

    # Application
    app_name: str = "Secure Bank"
    debug: bool = False

    # Database: the demo bank ships a local SQLite file
    database_url: str = "sqlite+aiosqlite:///bank.db"

    # AES-256-GCM key for the legacy encrypted SSN column, base64 of 32 bytes.
    # Generate with: python -c "import base64, os; print(base64.b64encode(os.urandom(32)).decode())"
    # Empty means the public development key is used (never in production).
    encryption_key: str = ""

    # HMAC key for SSN lookup digests.  Opaque text, required, no fallback.
    ssn_hmac_key: str = ""

    # Migration tooling
    migration_batch_size: int = 500

    model_config = {
        "env_file": (".env", ".env.local"),
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }


@lru_cache
def get_settings() -> Settings:
    return Settings()
