"""Registry key derivation.

A registry key is the lowercase hex SHA-1 of ``tenant + name``. It is both the
compaction key of the log record and the key of the in-memory view, so the
algorithm must never change: existing registries would lose their identity.
"""

import hashlib

KEY_LENGTH = 40


def derive_key(tenant: str, name: str) -> str:
    """Return the registry key for a (tenant, resource name) pair."""
    return hashlib.sha1((tenant + name).encode("utf-8")).hexdigest()
