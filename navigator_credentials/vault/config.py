"""
Credentials Configuration — Master key loading and validated settings.

Reads settings from environment variables:
    ENCRYPTION_KEY = <64 hex chars, or any passphrase to be hashed>
    CREDENTIALS_CIPHER_BACKEND = aesgcm | chacha20
    AUDIT_MAX_PAGE_SIZE, AUDIT_EXPORT_CHUNK_SIZE
    MIGRATION_WORKERS, MIGRATION_BATCH_SIZE, MIGRATION_TIMEOUT

Security Note:
    Never log key material. Only log key fingerprints.
"""
import os
import secrets
import logging
from typing import Optional

from pydantic import BaseModel, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from ..exceptions import ConfigurationError
from .crypto import SecretCodec, derive_key, key_fingerprint

logger = logging.getLogger("navigator.credentials")

ENCRYPTION_KEY_ENV = "ENCRYPTION_KEY"


def load_master_key() -> str:
    """Read the master key material from the ENCRYPTION_KEY env var.

    Returns:
        The configured key material, as-is.

    Raises:
        ConfigurationError: If ENCRYPTION_KEY is missing or blank.
    """
    value = os.environ.get(ENCRYPTION_KEY_ENV)
    if value is None or not value.strip():
        raise ConfigurationError(
            f"{ENCRYPTION_KEY_ENV} is not configured. "
            "Refusing to start without a master key."
        )
    return value


def generate_master_key() -> str:
    """Generate a random 32-byte master key and return it as 64 hex chars.

    This is a utility for operators to generate new keys.
    """
    return secrets.token_hex(32)


class CredentialsConfig(BaseModel):
    """Validated credentials/audit configuration."""

    master_key: bytes
    cipher_backend: str = Field(default="aesgcm")
    audit_max_page_size: int = Field(default=50, ge=1, le=1000)
    audit_export_chunk_size: int = Field(default=500, ge=1, le=10000)
    migration_workers: int = Field(default=8, ge=4, le=16)
    migration_batch_size: int = Field(default=100, ge=1, le=10000)
    migration_timeout: Optional[float] = Field(default=None, gt=0)

    model_config = {"frozen": True}

    @field_validator("master_key")
    @classmethod
    def validate_master_key(cls, v: bytes) -> bytes:
        """Master key must be 32 bytes of derived key material."""
        if len(v) != 32:
            raise ValueError(
                f"master_key must be exactly 32 bytes, got {len(v)}"
            )
        return v

    @field_validator("cipher_backend")
    @classmethod
    def validate_cipher(cls, v: str) -> str:
        """Validate cipher backend is supported."""
        v = v.lower()
        if v not in ("aesgcm", "chacha20"):
            raise ValueError(f"Unsupported cipher backend: {v}")
        return v

    def codec(self) -> SecretCodec:
        """Return the codec bound to the current master key."""
        return SecretCodec(self.master_key, backend=self.cipher_backend)

    @classmethod
    def from_env(cls) -> "CredentialsConfig":
        """Create CredentialsConfig by loading values from environment.

        Raises:
            ConfigurationError: If the master key is missing or any
                setting is invalid.
        """
        master_key = derive_key(load_master_key())
        env = os.environ
        values = {
            "master_key": master_key,
            "cipher_backend": env.get("CREDENTIALS_CIPHER_BACKEND", "aesgcm"),
        }
        optional = {
            "audit_max_page_size": "AUDIT_MAX_PAGE_SIZE",
            "audit_export_chunk_size": "AUDIT_EXPORT_CHUNK_SIZE",
            "migration_workers": "MIGRATION_WORKERS",
            "migration_batch_size": "MIGRATION_BATCH_SIZE",
            "migration_timeout": "MIGRATION_TIMEOUT",
        }
        for field, name in optional.items():
            raw = env.get(name)
            if raw not in (None, ""):
                values[field] = raw
        try:
            config = cls(**values)
        except PydanticValidationError as err:
            # only field names and constraint messages, never input values
            problems = "; ".join(
                f"{'.'.join(str(p) for p in e['loc'])}: {e['msg']}"
                for e in err.errors()
            )
            raise ConfigurationError(
                f"Invalid credentials configuration: {problems}"
            ) from None
        logger.debug(
            "Credentials config loaded: cipher=%s key=%s",
            config.cipher_backend, key_fingerprint(config.master_key),
        )
        return config
