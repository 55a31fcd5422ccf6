"""
内存记录存储

每个站点只保留最新一条记录（upsert 替换，不追加）。
所有读写都经过同一把 asyncio 锁，读者不会看到更新到一半的站点。
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional

from .models import UpsertResult, WeatherRecord


class RecordStore:
    """
    站点记录表

    管理：
    - records: {station: WeatherRecord}
    """

    def __init__(self, logger: Optional[logging.Logger] = None):
        self._records: Dict[str, WeatherRecord] = {}
        self._lock = asyncio.Lock()
        self._logger = logger or logging.getLogger(__name__)

    async def upsert(self, record: WeatherRecord) -> UpsertResult:
        """插入或替换站点记录，返回该站点此前是否不存在"""
        async with self._lock:
            is_new = record.station not in self._records
            self._records[record.station] = record
        self._logger.debug(
            f"Upserted station {record.station} @ {record.logical_timestamp} (new={is_new})"
        )
        return UpsertResult(is_new=is_new)

    async def get(self, station: str) -> Optional[WeatherRecord]:
        async with self._lock:
            return self._records.get(station)

    async def snapshot(self) -> List[WeatherRecord]:
        """某一时刻的一致副本（顺序不保证，需要时按 logical_timestamp 排序）"""
        async with self._lock:
            return list(self._records.values())

    async def valid_records(self, now: datetime, window: timedelta) -> List[WeatherRecord]:
        """
        未过期的记录，按 Lamport 时间升序

        与清理使用同一个有效窗口，清理尚未运行时过期记录也不会返回。
        """
        records = await self.snapshot()
        valid = [r for r in records if not r.is_expired(now, window)]
        valid.sort(key=lambda r: (r.logical_timestamp, r.station))
        return valid

    async def evict_expired(self, now: datetime, window: timedelta) -> int:
        """
        删除所有过期记录

        Returns:
            删除的数量（调用方据此决定是否持久化）
        """
        async with self._lock:
            expired = [
                station for station, record in self._records.items()
                if record.is_expired(now, window)
            ]
            for station in expired:
                del self._records[station]

        if expired:
            self._logger.info(f"Evicted {len(expired)} expired records: {', '.join(sorted(expired))}")
        return len(expired)

    async def load(self, records: Iterable[WeatherRecord]):
        """整体替换（启动时从快照恢复）"""
        async with self._lock:
            self._records = {r.station: r for r in records}
            count = len(self._records)
        self._logger.info(f"Loaded {count} records into store")

    async def clear(self):
        """清空（停止服务时不持久化）"""
        async with self._lock:
            self._records.clear()

    def __len__(self) -> int:
        return len(self._records)
