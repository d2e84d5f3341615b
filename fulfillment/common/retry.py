"""
共通 — 指数バックオフ付きリトライ

ブローカーへの publish / 接続など、一時的な障害で失敗する操作に使う。
"""

import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

from . import config

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def retry_async(
    fn: Callable[[], Awaitable[T]],
    *,
    retry_on: tuple[type[BaseException], ...],
    attempts: int = config.BUS_RETRY_ATTEMPTS,
    backoff: float = config.BUS_RETRY_BACKOFF,
    what: str = "operation",
) -> T:
    """
    fn を最大 attempts 回実行する。

    retry_on に含まれる例外のみ再試行し、待ち時間は
    backoff * 2**(attempt-1) 秒。最後の例外はそのまま送出する。
    """
    for attempt in range(1, attempts + 1):
        try:
            return await fn()
        except retry_on as exc:
            if attempt == attempts:
                logger.error("%s failed after %s attempts: %s", what, attempts, exc)
                raise
            delay = backoff * (2 ** (attempt - 1))
            logger.warning(
                "%s failed (attempt %s/%s): %s; retrying in %.2fs",
                what,
                attempt,
                attempts,
                exc,
                delay,
            )
            await asyncio.sleep(delay)
    raise RuntimeError("unreachable")
