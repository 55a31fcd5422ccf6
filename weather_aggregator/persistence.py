"""
快照持久化

把 (时钟值, 全部记录) 作为一个 JSON 文档写入磁盘：
先写同目录下的临时文件并 fsync，再 os.replace 原子替换，
崩溃时旧快照保持完整，读者不会看到写了一半的文件。
"""

import asyncio
import logging
import os
import tempfile
from pathlib import Path
from typing import List, Optional, Tuple

from pydantic import ValidationError

from .clock import LamportClock
from .exceptions import PersistenceError, SnapshotCorruptError
from .models import SnapshotDocument, WeatherRecord
from .store import RecordStore


class PersistenceManager:
    """
    快照文件的唯一所有者

    其他组件不直接访问文件系统。
    """

    def __init__(
        self,
        path: str,
        discard_corrupt: bool = False,
        logger: Optional[logging.Logger] = None,
    ):
        self.path = Path(path)
        self.discard_corrupt = discard_corrupt
        self._logger = logger or logging.getLogger(__name__)
        # 串行化写入，保证最后落盘的是最新快照
        self._write_lock = asyncio.Lock()

    # =========================================================================
    # 同步 I/O
    # =========================================================================

    def save(self, clock_value: int, records: List[WeatherRecord]):
        """
        原子写入快照

        Raises:
            PersistenceError: 写入或替换失败（旧快照不受影响）
        """
        document = SnapshotDocument(clock_value=clock_value, records=records)
        data = document.model_dump_json(indent=2).encode("utf-8")

        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                prefix=f".{self.path.name}.", suffix=".tmp", dir=str(self.path.parent)
            )
        except OSError as e:
            raise PersistenceError(f"cannot create temp file for {self.path}: {e}") from e

        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, self.path)
            self._fsync_dir()
        except OSError as e:
            try:
                os.unlink(tmp_name)
            except FileNotFoundError:
                pass
            raise PersistenceError(f"failed to write snapshot {self.path}: {e}") from e

        self._logger.debug(f"Snapshot saved: clock={clock_value}, records={len(records)}")

    def _fsync_dir(self):
        """rename 本身也需要落盘（Windows 不支持目录 fsync）"""
        if os.name == "nt":
            return
        dir_fd = os.open(str(self.path.parent), os.O_RDONLY)
        try:
            os.fsync(dir_fd)
        finally:
            os.close(dir_fd)

    def load(self) -> Optional[Tuple[int, List[WeatherRecord]]]:
        """
        读取快照

        Returns:
            (clock_value, records)；文件不存在（冷启动）时返回 None

        Raises:
            SnapshotCorruptError: 文件存在但无法读取或解析
        """
        if not self.path.exists():
            return None

        try:
            data = self.path.read_bytes()
            document = SnapshotDocument.model_validate_json(data)
        except (OSError, ValidationError) as e:
            raise SnapshotCorruptError(f"cannot load snapshot {self.path}: {e}", str(self.path)) from e

        return document.clock_value, list(document.records)

    # =========================================================================
    # 异步接口
    # =========================================================================

    async def restore(self, store: RecordStore, clock: LamportClock) -> bool:
        """
        启动时恢复存储和时钟

        时钟设为持久化值减一，下一次 observe/tick 恰好重现持久化值（重放约定）。

        Returns:
            是否从快照恢复了状态
        """
        try:
            loaded = await asyncio.to_thread(self.load)
        except SnapshotCorruptError as e:
            if not self.discard_corrupt:
                raise
            aside = self.path.with_name(self.path.name + ".corrupt")
            os.replace(self.path, aside)
            self._logger.warning(f"{e}; moved to {aside}, starting empty")
            return False

        if loaded is None:
            self._logger.info(f"No snapshot at {self.path}, starting empty")
            return False

        clock_value, records = loaded
        clock.restore(max(clock_value - 1, 0))
        await store.load(records)
        self._logger.info(f"Restored snapshot: clock={clock_value}, records={len(records)}")
        return True

    async def persist(self, store: RecordStore, clock: LamportClock) -> bool:
        """
        复制后写入：在写锁内取快照，文件 I/O 在线程中执行，不占用存储锁

        Returns:
            是否写入成功；失败只记录警告，内存状态仍然是权威的
        """
        async with self._write_lock:
            records = await store.snapshot()
            clock_value = clock.current()
            try:
                await asyncio.to_thread(self.save, clock_value, records)
            except PersistenceError as e:
                self._logger.warning(f"Durability warning: {e}")
                return False
            except Exception as e:
                self._logger.warning(f"Durability warning: unexpected snapshot error: {e}", exc_info=True)
                return False
        return True
