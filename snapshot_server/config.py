# snapshot_server/config.py
from functools import lru_cache
from pathlib import Path
from typing import Optional
import os
from dotenv import load_dotenv

ROOT = Path(__file__).resolve().parents[1]

# Load in ascending precedence; later overrides earlier
load_dotenv(ROOT / ".env")
load_dotenv(ROOT / ".env.local", override=True)
load_dotenv(ROOT / "snapshot_server" / ".env", override=True)
load_dotenv(ROOT / "snapshot_server" / ".env.local", override=True)


def _verify_setting(raw: str) -> bool | str:
    val = raw.strip()
    if val.lower() in ("0", "false", "no", ""):
        return False
    if val.lower() in ("1", "true", "yes"):
        return True
    return val  # CA bundle path


class Settings:
    # Server
    HOST: str = os.getenv("HOST", "0.0.0.0")
    PORT: int = int(os.getenv("PORT", "8080"))
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "DEBUG").upper()

    # LXD
    LXD_URL: str = os.getenv("LXD_URL", "https://127.0.0.1:8443").rstrip("/")
    LXD_CLIENT_CERT: Optional[str] = os.getenv("LXD_CLIENT_CERT")
    LXD_CLIENT_KEY: Optional[str] = os.getenv("LXD_CLIENT_KEY")
    LXD_VERIFY: bool | str = _verify_setting(os.getenv("LXD_VERIFY", "0"))
    LXD_HTTP_TIMEOUT: float = float(os.getenv("LXD_HTTP_TIMEOUT", "30"))

    # Jobs
    JOB_RETENTION_MINUTES: float = float(os.getenv("JOB_RETENTION_MINUTES", "120"))
    PRUNE_INTERVAL_MINUTES: float = float(os.getenv("PRUNE_INTERVAL_MINUTES", "120"))
    ACCEPT_GRACE_SECONDS: float = float(os.getenv("ACCEPT_GRACE_SECONDS", "0"))
    START_TIMEOUT: int = int(os.getenv("START_TIMEOUT", "120"))
    STOP_TIMEOUT: int = int(os.getenv("STOP_TIMEOUT", "2"))

    # Files
    BACKUP_ROOT: Optional[str] = os.getenv("BACKUP_ROOT") or None
    RUN_LOG_DIR: Optional[str] = os.getenv("RUN_LOG_DIR") or None


@lru_cache
def get_settings() -> Settings:
    return Settings()
