"""
过期清理任务

每 5s 删除超过有效窗口（30s）的记录；有记录被删除时持久化快照。
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from .clock import LamportClock
from .models import utcnow
from .persistence import PersistenceManager
from .store import RecordStore


class EvictionScheduler:
    """
    可取消的周期任务

    start() 启动后台任务，stop() 设置停止信号并等待任务结束。
    """

    def __init__(
        self,
        store: RecordStore,
        clock: LamportClock,
        persistence: Optional[PersistenceManager] = None,
        interval: float = 5.0,
        window: timedelta = timedelta(seconds=30),
        now: Callable[[], datetime] = utcnow,
        logger: Optional[logging.Logger] = None,
    ):
        self.store = store
        self.clock = clock
        self.persistence = persistence
        self.interval = interval
        self.window = window
        self._now = now
        self._logger = logger or logging.getLogger(__name__)
        self._stop_event = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self) -> int:
        """执行一次清理，返回删除数量"""
        removed = await self.store.evict_expired(self._now(), self.window)
        if removed and self.persistence is not None:
            await self.persistence.persist(self.store, self.clock)
        return removed

    async def _loop(self):
        self._logger.info(
            f"Starting eviction task (interval={self.interval}s, window={self.window.total_seconds():.0f}s)"
        )
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval)
                break
            except asyncio.TimeoutError:
                pass

            try:
                await self.run_once()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._logger.error(f"Eviction error: {e}", exc_info=True)

        self._logger.info("Eviction task stopped")

    def start(self):
        if self.running:
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._loop())

    async def stop(self):
        """发出停止信号并等待当前一轮结束"""
        self._stop_event.set()
        task = self._task
        self._task = None
        if task is None:
            return
        try:
            await task
        except asyncio.CancelledError:
            pass
