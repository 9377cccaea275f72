"""Per-identity serialisation of onboarding transitions.

Every state-changing StepController operation runs under the identity's
lock, so two tabs submitting for the same identity are applied one after
the other. Different identities never wait on each other.

Note: This is an in-process guard (single event loop). Cross-process safety
comes from the row lock taken by ProfileRepository.commit_completion() and
the upsert semantics of draft writes.
"""

import asyncio
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager


class IdentityLocks:
    """Registry of asyncio locks keyed by identity.

    Locks are created on demand and dropped once nobody holds or waits on
    them, so the registry does not grow with the number of identities seen.
    """

    def __init__(self) -> None:
        """Initialize an empty registry."""
        self._locks: dict[uuid.UUID, asyncio.Lock] = {}
        self._users: dict[uuid.UUID, int] = {}

    @asynccontextmanager
    async def hold(self, identity_id: uuid.UUID) -> AsyncIterator[None]:
        """Hold the identity's lock for the duration of the block.

        Args:
            identity_id: Identity whose transitions to serialise.
        """
        lock = self._locks.setdefault(identity_id, asyncio.Lock())
        self._users[identity_id] = self._users.get(identity_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[identity_id] -= 1
            if self._users[identity_id] == 0:
                del self._users[identity_id]
                del self._locks[identity_id]

    def active_count(self) -> int:
        """Number of identities currently holding or waiting on a lock."""
        return len(self._locks)

    def clear(self) -> None:
        """Drop all locks (for testing)."""
        self._locks.clear()
        self._users.clear()


# Singleton instance for the application
_identity_locks: IdentityLocks | None = None


def get_identity_locks() -> IdentityLocks:
    """Get the singleton lock registry.

    Returns:
        The IdentityLocks singleton.
    """
    global _identity_locks
    if _identity_locks is None:
        _identity_locks = IdentityLocks()
    return _identity_locks


def reset_identity_locks() -> None:
    """Reset the lock registry singleton (for testing)."""
    global _identity_locks
    if _identity_locks is not None:
        _identity_locks.clear()
    _identity_locks = None
