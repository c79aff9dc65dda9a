from __future__ import annotations

import os
from typing import Literal, Optional

from pydantic import BaseModel, Field, ValidationError


# Environment variable names
ENV_BACKEND = "SATSPAY_BACKEND"
ENV_STORAGE_PREFIX = "SATSPAY_STORAGE_PREFIX"
ENV_STATE_FILE = "SATSPAY_STATE_FILE"
ENV_S3_BUCKET = "SATSPAY_S3_BUCKET"
ENV_S3_PREFIX = "SATSPAY_S3_PREFIX"
ENV_FERNET_KEY = "SATSPAY_FERNET_KEY"
ENV_AWS_REGION = "SATSPAY_AWS_REGION"
ENV_CAPACITY_BYTES = "SATSPAY_CAPACITY_BYTES"
ENV_MAX_RETRIES = "SATSPAY_MAX_RETRIES"
ENV_AUTOSAVE_INTERVAL = "SATSPAY_AUTOSAVE_INTERVAL"
ENV_AUTOSAVE = "SATSPAY_AUTOSAVE"
ENV_AUTO_AUTHENTICATE = "SATSPAY_AUTO_AUTHENTICATE"
ENV_BRIDGE_TIMEOUT = "SATSPAY_BRIDGE_TIMEOUT"
ENV_LOG_LEVEL = "SATSPAY_LOG_LEVEL"

DEFAULT_PREFIX = "satspay_"
DEFAULT_CAPACITY_BYTES = 5 * 1024 * 1024

_TRUTHY = {"1", "true", "yes", "on"}
_FALSY = {"0", "false", "no", "off"}


def _getenv(name: str, default: Optional[str] = None) -> Optional[str]:
    val = os.environ.get(name)
    return val if val not in (None, "") else default


def _parse_bool(name: str, raw: Optional[str], default: bool) -> bool:
    if raw is None:
        return default
    low = raw.strip().lower()
    if low in _TRUTHY:
        return True
    if low in _FALSY:
        return False
    raise RuntimeError(f"Invalid boolean for {name}: {raw!r}")


class Settings(BaseModel):
    """
    Runtime configuration for the state layer.

    Fields
    - backend: which durable backend to build ("memory", "file" or "s3").
    - storage_prefix: prefix for every durable key owned by the persistence layer.
    - state_file: JSON file path for the "file" backend.
    - s3_bucket / s3_prefix / fernet_key / aws_region: "s3" backend settings.
    - capacity_bytes: assumed backend capacity used by the quota check.
    - max_retries: save attempts before a write is reported as failed.
    - autosave_interval / autosave: periodic re-persist of the whole state.
    - auto_authenticate: keep the session authenticated with a placeholder user.
    - bridge_timeout: seconds the legacy bridge waits for the store to initialize.
    """

    backend: Literal["memory", "file", "s3"] = "memory"
    storage_prefix: str = DEFAULT_PREFIX
    state_file: str = ".satspay/state.json"
    s3_bucket: Optional[str] = None
    s3_prefix: str = "satspay/"
    fernet_key: Optional[str] = None
    aws_region: Optional[str] = None
    capacity_bytes: int = Field(default=DEFAULT_CAPACITY_BYTES, gt=0)
    max_retries: int = Field(default=3, gt=0)
    autosave_interval: float = Field(default=30.0, gt=0)
    autosave: bool = True
    auto_authenticate: bool = False
    bridge_timeout: float = Field(default=10.0, gt=0)
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        raw = {
            "backend": _getenv(ENV_BACKEND),
            "storage_prefix": _getenv(ENV_STORAGE_PREFIX),
            "state_file": _getenv(ENV_STATE_FILE),
            "s3_bucket": _getenv(ENV_S3_BUCKET),
            "s3_prefix": _getenv(ENV_S3_PREFIX),
            "fernet_key": _getenv(ENV_FERNET_KEY),
            "aws_region": _getenv(ENV_AWS_REGION),
            "capacity_bytes": _getenv(ENV_CAPACITY_BYTES),
            "max_retries": _getenv(ENV_MAX_RETRIES),
            "autosave_interval": _getenv(ENV_AUTOSAVE_INTERVAL),
            "log_level": _getenv(ENV_LOG_LEVEL),
        }
        values = {k: v for k, v in raw.items() if v is not None}
        values["autosave"] = _parse_bool(ENV_AUTOSAVE, _getenv(ENV_AUTOSAVE), True)
        values["auto_authenticate"] = _parse_bool(
            ENV_AUTO_AUTHENTICATE, _getenv(ENV_AUTO_AUTHENTICATE), False
        )
        timeout = _getenv(ENV_BRIDGE_TIMEOUT)
        if timeout is not None:
            values["bridge_timeout"] = timeout

        try:
            settings = cls.model_validate(values)
        except ValidationError as ve:
            raise RuntimeError(f"Invalid state layer configuration: {ve}") from ve

        if settings.backend == "s3":
            settings.require_s3()
        return settings

    def require_s3(self) -> None:
        """Raise RuntimeError naming the S3 variables that are unset."""
        missing = [
            name
            for name, val in [(ENV_S3_BUCKET, self.s3_bucket), (ENV_FERNET_KEY, self.fernet_key)]
            if not val
        ]
        if missing:
            raise RuntimeError(
                f"Missing required environment variables for S3 backend: {', '.join(missing)}"
            )


__all__ = ["Settings", "DEFAULT_PREFIX", "DEFAULT_CAPACITY_BYTES"]
