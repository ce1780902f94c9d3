"""
进程内按键互斥锁
"""
import asyncio
from contextlib import asynccontextmanager
from typing import Dict, Hashable


class RunLockManager:
    """
    按键获取的 asyncio 锁

    同一个键（运行ID，或 工作流ID+记录ID）上的临界区串行执行，
    没有等待者时自动回收锁对象。
    """

    def __init__(self):
        self._locks: Dict[Hashable, asyncio.Lock] = {}
        self._waiters: Dict[Hashable, int] = {}

    @asynccontextmanager
    async def hold(self, key: Hashable):
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._waiters[key] = self._waiters.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._waiters[key] -= 1
            if self._waiters[key] == 0:
                del self._waiters[key]
                del self._locks[key]

    def is_locked(self, key: Hashable) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    def __len__(self) -> int:
        return len(self._locks)
