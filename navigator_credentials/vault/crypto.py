"""
Credentials Crypto Core — Key derivation, encryption/decryption of secrets.

Every stored secret is a single text blob:
    ``<nonce hex>:<ciphertext + tag hex>``
encrypted with an AEAD cipher (AES-256-GCM by default) under the master key,
so a wrong key fails authentication instead of returning garbage.

Security Note:
    Never log plaintext or ciphertext values.
    Nonces are random 96-bit; collision probability negligible under normal usage.
"""
import os
import logging
from typing import Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM, ChaCha20Poly1305

from ..exceptions import ConfigurationError, DecryptionError

logger = logging.getLogger("navigator.credentials")

NONCE_SIZE = 12  # 96-bit nonce
TAG_SIZE = 16
KEY_LENGTH = 32  # AES-256
SEPARATOR = ":"

CIPHERS = {
    "aesgcm": AESGCM,
    "chacha20": ChaCha20Poly1305,
}


def _get_cipher_cls(backend: str) -> type:
    try:
        return CIPHERS[backend.lower()]
    except KeyError:
        raise ConfigurationError(
            f"Unsupported cipher backend: {backend}"
        ) from None


def _sha256(data: bytes) -> bytes:
    digest = hashes.Hash(hashes.SHA256())
    digest.update(data)
    return digest.finalize()


# ---------------------------------------------------------------------------
# Key derivation
# ---------------------------------------------------------------------------

def derive_key(material: Union[str, bytes]) -> bytes:
    """Turn configured key material into a 32-byte key.

    A 64-character hex string is taken as raw key bytes; any other value
    (an operator passphrase) is hashed with SHA-256.

    Args:
        material: Key material from configuration or from a migration request.

    Returns:
        32-byte key.

    Raises:
        ConfigurationError: If material is empty.
    """
    if isinstance(material, bytes):
        if len(material) == KEY_LENGTH:
            return material
        try:
            material = material.decode("utf-8")
        except UnicodeDecodeError:
            return _sha256(material)
    if not material:
        raise ConfigurationError("Key material cannot be empty")
    if len(material) == KEY_LENGTH * 2:
        try:
            return bytes.fromhex(material)
        except ValueError:
            pass
    return _sha256(material.encode("utf-8"))


def key_fingerprint(key: bytes) -> str:
    """Short non-reversible identifier of a key, safe to log."""
    return _sha256(b"fingerprint:" + key).hex()[:12]


# ---------------------------------------------------------------------------
# Blob encryption
# ---------------------------------------------------------------------------

def encrypt(plaintext: str, key: bytes, backend: str = "aesgcm") -> str:
    """Encrypt a secret string.

    Format: ``<nonce 12B hex>:<encrypted_payload + tag 16B hex>``

    Args:
        plaintext: Secret to encrypt.
        key: 32-byte key from :func:`derive_key`.
        backend: AEAD cipher name.

    Returns:
        Self-describing ciphertext blob.
    """
    cipher = _get_cipher_cls(backend)(key)
    nonce = os.urandom(NONCE_SIZE)
    ct = cipher.encrypt(nonce, plaintext.encode("utf-8"), None)
    return f"{nonce.hex()}{SEPARATOR}{ct.hex()}"


def decrypt(blob: str, key: bytes, backend: str = "aesgcm") -> str:
    """Decrypt a ciphertext blob produced by :func:`encrypt`.

    Raises:
        DecryptionError: If the blob is malformed or the key does not match.
    """
    if not isinstance(blob, str):
        raise DecryptionError("Ciphertext must be a string")
    parts = blob.split(SEPARATOR)
    if len(parts) != 2:
        raise DecryptionError(
            f"Malformed ciphertext: expected 2 segments, got {len(parts)}"
        )
    try:
        nonce = bytes.fromhex(parts[0])
        ct = bytes.fromhex(parts[1])
    except ValueError:
        raise DecryptionError("Malformed ciphertext: invalid hex") from None
    if len(nonce) != NONCE_SIZE:
        raise DecryptionError(
            f"Malformed ciphertext: nonce must be {NONCE_SIZE} bytes, "
            f"got {len(nonce)}"
        )
    if len(ct) < TAG_SIZE:
        raise DecryptionError(
            f"Malformed ciphertext: payload too short ({len(ct)} bytes)"
        )
    cipher = _get_cipher_cls(backend)(key)
    try:
        data = cipher.decrypt(nonce, ct, None)
    except InvalidTag:
        raise DecryptionError(
            "Authentication failed: wrong key or tampered ciphertext"
        ) from None
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError:
        raise DecryptionError("Decrypted payload is not valid UTF-8") from None


class SecretCodec:
    """Encrypts and decrypts secrets under one immutable master key.

    Built once at startup (see ``CredentialsConfig.codec()``) and injected
    into every component that needs encryption.
    """

    __slots__ = ("_key", "_backend", "_fingerprint")

    def __init__(self, key: bytes, backend: str = "aesgcm"):
        if len(key) != KEY_LENGTH:
            raise ConfigurationError(
                f"Master key must be {KEY_LENGTH} bytes, got {len(key)}"
            )
        _get_cipher_cls(backend)
        self._key = bytes(key)
        self._backend = backend.lower()
        self._fingerprint = key_fingerprint(self._key)

    @classmethod
    def from_material(cls, material: Union[str, bytes], backend: str = "aesgcm") -> "SecretCodec":
        return cls(derive_key(material), backend=backend)

    @property
    def fingerprint(self) -> str:
        return self._fingerprint

    @property
    def backend(self) -> str:
        return self._backend

    def encrypt(self, plaintext: str) -> str:
        return encrypt(plaintext, self._key, self._backend)

    def decrypt(self, blob: str) -> str:
        return decrypt(blob, self._key, self._backend)

    def can_decrypt(self, blob: str) -> bool:
        try:
            self.decrypt(blob)
        except DecryptionError:
            return False
        return True

    def __repr__(self) -> str:
        return f"<SecretCodec backend={self._backend} key={self._fingerprint}>"
