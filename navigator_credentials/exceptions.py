"""Exception taxonomy for Navigator Credentials."""


class CredentialsError(Exception):
    """Base class for every error raised by this package."""


class ConfigurationError(CredentialsError):
    """Missing or invalid master key / settings. Fatal at startup."""


class DecryptionError(CredentialsError):
    """Ciphertext blob is malformed or was encrypted under another key.

    The message never contains plaintext, ciphertext or key material.
    """


class PersistenceError(CredentialsError):
    """The backing store is unavailable or rejected the operation."""


class ValidationError(CredentialsError):
    """Caller supplied invalid input (bad filter, bad request body)."""

    def __init__(self, message: str, field: str = None):
        super().__init__(message)
        self.field = field
