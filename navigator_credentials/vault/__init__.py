"""Credential Vault — Encrypted-at-rest secrets for inventory entities.

Security Note (Threat Model):
    Secrets are decrypted in process memory only while a single record is
    being displayed or re-encrypted. A memory dump of the application
    process could expose the master key and any plaintext being handled.
    Keeping the key outside process memory needs an HSM or KMS, which
    this package does not integrate with.
"""

from .crypto import SecretCodec, derive_key, encrypt, decrypt
from .config import CredentialsConfig, load_master_key, generate_master_key
from .records import (
    SecretEntity,
    SecretRecord,
    SecretRepository,
    EMAIL_CREDENTIAL,
    DEVICE_PASSWORD,
    build_repositories,
)
from .secret_vault import (
    SecretVault,
    SecretPage,
    Revealed,
    UNDECRYPTABLE,
    WITHHELD,
)
from .key_rotation import (
    KeyMigrationJob,
    MigrationAborted,
    MigrationFailure,
    MigrationResult,
    MigrationState,
)

__all__ = [
    "SecretCodec",
    "derive_key",
    "encrypt",
    "decrypt",
    "CredentialsConfig",
    "load_master_key",
    "generate_master_key",
    "SecretEntity",
    "SecretRecord",
    "SecretRepository",
    "EMAIL_CREDENTIAL",
    "DEVICE_PASSWORD",
    "build_repositories",
    "SecretVault",
    "SecretPage",
    "Revealed",
    "UNDECRYPTABLE",
    "WITHHELD",
    "KeyMigrationJob",
    "MigrationAborted",
    "MigrationFailure",
    "MigrationResult",
    "MigrationState",
]
