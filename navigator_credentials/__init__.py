"""Navigator Credentials.

Field-level encryption of stored credentials, redacted audit logging
and master key migration for aiohttp applications.
"""
from .version import __version__
from .exceptions import (
    CredentialsError,
    ConfigurationError,
    DecryptionError,
    PersistenceError,
    ValidationError,
)
from .handlers import setup_credentials

__all__ = [
    "__version__",
    "CredentialsError",
    "ConfigurationError",
    "DecryptionError",
    "PersistenceError",
    "ValidationError",
    "setup_credentials",
]
