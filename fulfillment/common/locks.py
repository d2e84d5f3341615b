"""
共通 — キー単位の直列化 (Keyed Lock)

同じ商品 / 同じ注文に対する読み取り→更新を、プロセス内で 1 つずつ実行する。
複数キーを同時に取る場合はソート順で取得し、デッドロックを防ぐ。

プロセスをまたぐ排他はストア側の条件付き UPDATE / バージョン比較が担う。
"""

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager


class KeyedLock:
    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._waiters: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, *keys: str) -> AsyncIterator[None]:
        ordered = sorted(set(keys))
        acquired: list[str] = []
        try:
            for key in ordered:
                lock = self._locks.setdefault(key, asyncio.Lock())
                self._waiters[key] = self._waiters.get(key, 0) + 1
                try:
                    await lock.acquire()
                except BaseException:
                    self._forget(key)
                    raise
                acquired.append(key)
            yield
        finally:
            for key in reversed(acquired):
                self._locks[key].release()
                self._forget(key)

    def _forget(self, key: str) -> None:
        self._waiters[key] -= 1
        if self._waiters[key] == 0:
            del self._waiters[key]
            del self._locks[key]

    def is_locked(self, key: str) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()
