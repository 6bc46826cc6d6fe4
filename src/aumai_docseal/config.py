"""Runtime configuration for aumai-docseal.

Settings are read from ``DOCSEAL_*`` environment variables by
:meth:`Settings.from_env`; every field has a default suitable for local use.
"""

from __future__ import annotations

import os
from pathlib import Path

from pydantic import BaseModel, Field

DEFAULT_DATABASE_URL = "sqlite:///docseal.db"
DEFAULT_VERIFICATION_BASE_URL = "http://localhost:3000"


class Settings(BaseModel):
    """Validated configuration values."""

    database_url: str = DEFAULT_DATABASE_URL
    storage_root: Path = Field(default_factory=Path.cwd)
    verification_base_url: str = DEFAULT_VERIFICATION_BASE_URL
    key_size: int = Field(default=4096, ge=2048)
    batch_workers: int = Field(default=8, ge=1)
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None) -> Settings:
        """Build settings from *environ* (defaults to :data:`os.environ`)."""
        env = os.environ if environ is None else environ
        values: dict[str, object] = {}
        mapping = {
            "DOCSEAL_DATABASE_URL": "database_url",
            "DOCSEAL_STORAGE_ROOT": "storage_root",
            "DOCSEAL_VERIFICATION_BASE_URL": "verification_base_url",
            "DOCSEAL_KEY_SIZE": "key_size",
            "DOCSEAL_BATCH_WORKERS": "batch_workers",
            "DOCSEAL_LOG_LEVEL": "log_level",
        }
        for env_name, field_name in mapping.items():
            raw = env.get(env_name)
            if raw:
                values[field_name] = raw
        return cls.model_validate(values)


__all__ = ["DEFAULT_DATABASE_URL", "DEFAULT_VERIFICATION_BASE_URL", "Settings"]
