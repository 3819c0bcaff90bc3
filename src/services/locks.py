"""Per-key mutual exclusion for ledger units of work.

Balance updates are serialized per property, redemptions per token, rate
activations per category and token issuance per payment. Locks are
re-entrant for the task holding them. Redemption takes the token lock
before the property lock; no path takes them in the other order.

These locks serialize work inside one process. Across processes the
compare-and-set UPDATE statements and row locks in the repository carry the
guarantee.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Hashable


class _LockEntry:
    __slots__ = ("lock", "owner", "depth", "waiters")

    def __init__(self) -> None:
        self.lock = asyncio.Lock()
        self.owner: asyncio.Task | None = None
        self.depth = 0
        self.waiters = 0


class KeyedLock:
    """Registry of re-entrant asyncio locks addressed by key."""

    def __init__(self) -> None:
        self._entries: dict[Hashable, _LockEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def is_held(self, key: Hashable) -> bool:
        entry = self._entries.get(key)
        return entry is not None and entry.owner is not None

    @asynccontextmanager
    async def hold(self, key: Hashable) -> AsyncIterator[None]:
        """Hold the lock for ``key`` for the duration of the block."""
        task = asyncio.current_task()
        entry = self._entries.get(key)

        if entry is not None and task is not None and entry.owner is task:
            entry.depth += 1
            try:
                yield
            finally:
                entry.depth -= 1
            return

        if entry is None:
            entry = _LockEntry()
            self._entries[key] = entry

        entry.waiters += 1
        try:
            async with entry.lock:
                entry.owner = task
                entry.depth = 1
                try:
                    yield
                finally:
                    entry.owner = None
                    entry.depth = 0
        finally:
            entry.waiters -= 1
            # Drop idle entries so the registry does not grow with every key seen
            if entry.waiters == 0 and self._entries.get(key) is entry:
                del self._entries[key]


def property_key(property_id: int) -> tuple[str, int]:
    return ("property", property_id)


def token_key(code: str) -> tuple[str, str]:
    return ("token", code)


def category_key(category: str) -> tuple[str, str]:
    return ("rate_category", getattr(category, "value", category))


def payment_key(payment_id: str) -> tuple[str, str]:
    return ("payment", payment_id)


# Process-wide registry shared by all services unless one is injected
ledger_locks = KeyedLock()


__all__ = [
    "KeyedLock",
    "category_key",
    "ledger_locks",
    "payment_key",
    "property_key",
    "token_key",
]
