import asyncio
from typing import Dict


class SymbolLocks:
    """One asyncio.Lock per symbol, created on first use."""

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}

    def get(self, symbol: str) -> asyncio.Lock:
        lock = self._locks.get(symbol)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[symbol] = lock
        return lock

    def __call__(self, symbol: str) -> asyncio.Lock:
        return self.get(symbol)

    def __len__(self) -> int:
        return len(self._locks)
