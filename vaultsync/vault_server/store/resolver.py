"""
Conflict resolution rule for versioned entries.

Last-write-wins by version number only. Arrival order and wall-clock time
play no part: an incoming write replaces the stored one if and only if its
version is strictly greater. On an exact tie the stored value is kept, which
is what makes replaying the same write a no-op.

The rule lives here once and is rendered into the store's upsert guard
(ACCEPT_SQL) so the storage engine evaluates it atomically. Keep the two in
agreement.
"""

from __future__ import annotations

# Guard for "INSERT ... ON CONFLICT DO UPDATE ... WHERE <guard>".
# `excluded` is the incoming row, `entries` the stored one.
ACCEPT_SQL = "excluded.version > entries.version"

# Largest version SQLite can store as a 64-bit INTEGER.
MAX_VERSION = 2**63 - 1


def accept(incoming_version: int, stored_version: int | None) -> bool:
    """Decide whether an incoming write replaces the stored entry.

    Args:
        incoming_version: Version carried by the write
        stored_version: Version currently stored, or None if the key is absent

    Returns:
        True if the write should be applied
    """
    if stored_version is None:
        return True
    return incoming_version > stored_version


def normalize_version(version: int) -> int:
    """Coerce client versions below 1 to 1."""
    return version if version >= 1 else 1
