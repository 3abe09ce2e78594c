"""有効期限前の事前リフレッシュを予約するスケジューラ。"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Optional, Protocol

from cloudauth.auth.models import CredentialRecord

logger = logging.getLogger(__name__)

DEFAULT_REFRESH_MARGIN_SECONDS = 300.0


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


TimerFactory = Callable[[float, Callable[[], None]], TimerHandle]
RefreshCallback = Callable[[CredentialRecord], Awaitable[Any]]


def _loop_timer(delay: float, callback: Callable[[], None]) -> TimerHandle:
    return asyncio.get_running_loop().call_later(delay, callback)


class RefreshScheduler:
    """マネージャ1つにつきタイマーを高々1つだけ保持する。

    新しいレコードを受け取るたびに既存タイマーを取り消し、
    expires_at - margin の時刻に再設定する。その時刻を過ぎている、または
    有効期限が不明な場合はタイマーを設定しない。発火時のリフレッシュは
    1回だけ試み、失敗しても自動では再試行しない。
    """

    def __init__(
        self,
        on_fire: RefreshCallback,
        *,
        clock: Callable[[], float] = time.time,
        margin_seconds: float = DEFAULT_REFRESH_MARGIN_SECONDS,
        timer_factory: Optional[TimerFactory] = None,
    ) -> None:
        self._on_fire = on_fire
        self._clock = clock
        self._margin = margin_seconds
        self._timer_factory = timer_factory or _loop_timer
        self._handle: Optional[TimerHandle] = None
        self._scheduled_at: Optional[float] = None
        self._scheduled_user: Optional[str] = None
        self._fire_task: Optional[asyncio.Task[Any]] = None
        self._closed = False

    @property
    def is_armed(self) -> bool:
        return self._handle is not None

    @property
    def scheduled_at(self) -> Optional[float]:
        """予約中のリフレッシュ時刻（UNIX秒）"""
        return self._scheduled_at

    @property
    def scheduled_user(self) -> Optional[str]:
        return self._scheduled_user

    def schedule(self, record: CredentialRecord) -> bool:
        """レコードに対してタイマーを張り直す。

        Returns:
            bool: タイマーを設定した場合 True。
        """
        self.cancel()
        if self._closed or record.expires_at is None:
            return False

        fire_at = record.expires_at - self._margin
        delay = fire_at - self._clock()
        if delay <= 0:
            logger.debug(
                "Refresh instant already passed for %s:%s; relying on reactive refresh",
                record.backend_id,
                record.user_id,
            )
            return False

        self._handle = self._timer_factory(delay, lambda: self._fire(record))
        self._scheduled_at = fire_at
        self._scheduled_user = record.user_id
        logger.debug("Refresh armed for %s:%s in %.0fs", record.backend_id, record.user_id, delay)
        return True

    def cancel(self) -> None:
        """予約中のタイマーを取り消す。実行中のリフレッシュには影響しない。"""
        if self._handle is not None:
            self._handle.cancel()
        self._handle = None
        self._scheduled_at = None
        self._scheduled_user = None

    def close(self) -> None:
        """タイマーを取り消し、以後の予約を拒否する。"""
        self._closed = True
        self.cancel()
        if self._fire_task is not None and not self._fire_task.done():
            self._fire_task.cancel()

    async def join(self) -> None:
        """発火済みのリフレッシュ処理の完了を待つ。"""
        task = self._fire_task
        if task is not None:
            try:
                await task
            except asyncio.CancelledError:
                pass

    def _fire(self, record: CredentialRecord) -> None:
        self._handle = None
        self._scheduled_at = None
        self._scheduled_user = None
        if self._closed:
            return
        self._fire_task = asyncio.ensure_future(self._run(record))

    async def _run(self, record: CredentialRecord) -> None:
        try:
            await self._on_fire(record)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Scheduled refresh for %s:%s failed", record.backend_id, record.user_id)
