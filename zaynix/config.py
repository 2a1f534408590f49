"""Configuration settings for the Zaynix gateway."""
import os
from dataclasses import dataclass
from typing import Mapping, Optional

from dotenv import load_dotenv

from zaynix.app.errors import ConfigurationError

# Storage limits
MAX_FILE_SIZE = 200 * 1024 * 1024  # 200MB
# Slack for multipart boundaries and part headers on top of the file itself
MULTIPART_OVERHEAD = 64 * 1024

# Upstream
DEFAULT_BUCKET = "zaynix-files"
UPSTREAM_CONNECT_TIMEOUT = 30.0
UPLOAD_CACHE_CONTROL = "max-age=3600"
CHUNK_SIZE = 64 * 1024

# Delete
DEFAULT_DELETE_TOKEN = "changeme_delete_token"
DELETE_BODY_LIMIT = 64 * 1024

# Server
DEFAULT_HOST = "0.0.0.0"
DEFAULT_PORT = 3000

STORAGE_BACKENDS = ("supabase", "memory")


def _int_env(env: Mapping[str, str], key: str, default: int) -> int:
    raw = env.get(key)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(f"{key} must be an integer, got {raw!r}")


def _float_env(env: Mapping[str, str], key: str, default: float) -> float:
    raw = env.get(key)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigurationError(f"{key} must be a number, got {raw!r}")


@dataclass(frozen=True)
class Settings:
    supabase_url: Optional[str] = None
    supabase_key: Optional[str] = None
    bucket: str = DEFAULT_BUCKET
    max_file_size: int = MAX_FILE_SIZE
    delete_token: str = DEFAULT_DELETE_TOKEN
    storage_backend: str = "supabase"
    connect_timeout: float = UPSTREAM_CONNECT_TIMEOUT
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> 'Settings':
        """Build settings from the environment, reading a local .env first.

        Variables already present in the environment win over the .env file.
        """
        if env is None:
            load_dotenv(".env", override=False)
            env = os.environ

        backend = env.get("STORAGE_BACKEND", "supabase").lower()
        if backend not in STORAGE_BACKENDS:
            raise ConfigurationError(
                f"STORAGE_BACKEND must be one of {', '.join(STORAGE_BACKENDS)}, got {backend!r}"
            )

        max_file_size = _int_env(env, "MAX_FILE_SIZE", MAX_FILE_SIZE)
        if max_file_size <= 0:
            raise ConfigurationError("MAX_FILE_SIZE must be positive")

        return cls(
            supabase_url=env.get("SUPABASE_URL") or None,
            supabase_key=env.get("SUPABASE_KEY") or None,
            bucket=env.get("SUPABASE_BUCKET") or DEFAULT_BUCKET,
            max_file_size=max_file_size,
            delete_token=env.get("DELETE_TOKEN") or DEFAULT_DELETE_TOKEN,
            storage_backend=backend,
            connect_timeout=_float_env(env, "UPSTREAM_CONNECT_TIMEOUT", UPSTREAM_CONNECT_TIMEOUT),
            host=env.get("HOST") or DEFAULT_HOST,
            port=_int_env(env, "PORT", DEFAULT_PORT),
        )

    @property
    def has_store_credentials(self) -> bool:
        return bool(self.supabase_url and self.supabase_key)

    @property
    def upload_ceiling(self) -> int:
        """Most request-body bytes accepted for an upload before aborting."""
        return self.max_file_size + MULTIPART_OVERHEAD
