"""
Sensitive field redaction for audit snapshots.

Secret-bearing keys are removed entirely rather than masked, so neither the
value nor its length reaches the audit log.
"""
from typing import Any, Optional
from collections.abc import Mapping

# any key containing one of these fragments (case-insensitive)
_FRAGMENTS = (
    "senha",
    "password",
    "secret",
    "token",
)

# exact field names used by secret-bearing entities
_EXACT_KEYS = frozenset({
    "chave",
    "key",
    "passwd",
    "pwd",
    "ciphertext",
})


def is_sensitive_key(key: Any) -> bool:
    lowered = str(key).lower()
    return lowered in _EXACT_KEYS or any(f in lowered for f in _FRAGMENTS)


def _redact_value(value: Any) -> Any:
    if isinstance(value, Mapping):
        return redact(value)
    if isinstance(value, (list, tuple)):
        return [_redact_value(item) for item in value]
    return value


def redact(snapshot: Optional[Mapping[str, Any]]) -> Optional[dict[str, Any]]:
    """Return a copy of the snapshot without secret-bearing keys.

    Nested mappings, and mappings inside lists, are redacted too.
    ``None`` is returned unchanged.
    """
    if snapshot is None:
        return None
    return {
        key: _redact_value(value)
        for key, value in snapshot.items()
        if not is_sensitive_key(key)
    }


def collect_secrets(snapshot: Optional[Mapping[str, Any]]) -> set[str]:
    """Return the non-empty string values that :func:`redact` would drop."""
    found: set[str] = set()
    if snapshot is None:
        return found

    def _walk(value: Any, sensitive: bool) -> None:
        if isinstance(value, Mapping):
            for key, item in value.items():
                _walk(item, sensitive or is_sensitive_key(key))
        elif isinstance(value, (list, tuple)):
            for item in value:
                _walk(item, sensitive)
        elif sensitive and value not in (None, ""):
            found.add(str(value))

    _walk(snapshot, False)
    return found
