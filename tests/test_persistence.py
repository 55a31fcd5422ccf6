"""
单元测试：快照持久化

测试覆盖：
- save/load 往返（逐字段一致）
- 恢复时的重放约定（时钟设为持久化值减一）
- 冷启动、损坏文件、写入失败
"""

import json
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

# 添加项目路径到 sys.path
sys.path.insert(0, str(Path(__file__).parent.parent))

from weather_aggregator.clock import LamportClock
from weather_aggregator.exceptions import PersistenceError, SnapshotCorruptError
from weather_aggregator.models import WeatherRecord
from weather_aggregator.persistence import PersistenceManager
from weather_aggregator.store import RecordStore

BASE_TIME = datetime(2026, 1, 20, 10, 0, 0, tzinfo=timezone.utc)


def sample_records():
    return [
        WeatherRecord(
            station="IDS60901",
            fields={"air_temp": "13.3", "rel_hum": "86", "name": "Adelaide (West Terrace / ngayirdapira)"},
            producer_id="cs-1",
            logical_timestamp=4,
            received_at=BASE_TIME,
        ),
        WeatherRecord(
            station="IDS60902",
            fields={"air_temp": "9.1"},
            producer_id=None,
            logical_timestamp=7,
            received_at=BASE_TIME + timedelta(seconds=3, microseconds=250),
        ),
    ]


@pytest.fixture
def snapshot_path(tmp_path):
    return tmp_path / "data" / "weather_snapshot.json"


@pytest.fixture
def manager(snapshot_path):
    return PersistenceManager(str(snapshot_path))


class TestSaveLoad:
    """同步读写"""

    def test_cold_start(self, manager):
        """测试：文件不存在 → None"""
        assert manager.load() is None

    def test_round_trip(self, manager):
        """测试：save 后 load 得到相同的时钟值和记录"""
        records = sample_records()
        manager.save(8, records)

        clock_value, loaded = manager.load()
        assert clock_value == 8
        assert loaded == records

    def test_document_layout(self, manager, snapshot_path):
        """测试：单个自描述 JSON 文档"""
        manager.save(8, sample_records())
        document = json.loads(snapshot_path.read_text(encoding="utf-8"))

        assert document["version"] == 1
        assert document["clock_value"] == 8
        assert "saved_at" in document
        first = document["records"][0]
        assert set(first) == {"station", "fields", "producer_id", "logical_timestamp", "received_at"}

    def test_overwrite_leaves_no_temp_files(self, manager, snapshot_path):
        """测试：多次写入后目录里只剩快照文件"""
        manager.save(1, sample_records()[:1])
        manager.save(2, sample_records())
        manager.save(3, [])

        assert [p.name for p in snapshot_path.parent.iterdir()] == [snapshot_path.name]
        assert manager.load() == (3, [])

    def test_failed_write_keeps_previous_snapshot(self, manager, snapshot_path, monkeypatch):
        """测试：替换失败时旧快照保持完整"""
        manager.save(5, sample_records())

        def broken_replace(src, dst):
            raise OSError("disk full")

        monkeypatch.setattr("weather_aggregator.persistence.os.replace", broken_replace)
        with pytest.raises(PersistenceError):
            manager.save(6, [])
        monkeypatch.undo()

        clock_value, records = manager.load()
        assert clock_value == 5
        assert len(records) == 2
        assert [p.name for p in snapshot_path.parent.iterdir()] == [snapshot_path.name]

    @pytest.mark.parametrize("content", [
        "",
        "{not json",
        '{"clock_value": -1, "records": []}',
        '{"clock_value": 3, "records": [{"station": "S1"}]}',
    ])
    def test_corrupt_file(self, manager, snapshot_path, content):
        """测试：已存在但无法解析的文件 → SnapshotCorruptError"""
        snapshot_path.parent.mkdir(parents=True)
        snapshot_path.write_text(content, encoding="utf-8")
        with pytest.raises(SnapshotCorruptError):
            manager.load()


class TestRestore:
    """恢复与异步持久化"""

    @pytest.mark.asyncio
    async def test_restore_replay_convention(self, manager):
        """测试：恢复后下一次 tick/observe 重现持久化的时钟值"""
        manager.save(8, sample_records())

        store = RecordStore()
        clock = LamportClock()
        assert await manager.restore(store, clock) is True

        assert clock.current() == 7
        assert clock.tick() == 8
        assert sorted(r.station for r in await store.snapshot()) == ["IDS60901", "IDS60902"]

    @pytest.mark.asyncio
    async def test_restore_then_observe(self, manager):
        """测试：恢复后 observe 小于持久化值的时间戳，结果等于持久化值"""
        manager.save(8, [])
        clock = LamportClock()
        await manager.restore(RecordStore(), clock)
        assert clock.observe(2) == 8

    @pytest.mark.asyncio
    async def test_restore_zero_clock(self, manager):
        """测试：持久化值为 0 时不会出现负数"""
        manager.save(0, [])
        clock = LamportClock()
        await manager.restore(RecordStore(), clock)
        assert clock.current() == 0

    @pytest.mark.asyncio
    async def test_restore_cold_start(self, manager):
        """测试：冷启动不修改状态"""
        clock = LamportClock(initial=3)
        store = RecordStore()
        assert await manager.restore(store, clock) is False
        assert clock.current() == 3
        assert len(store) == 0

    @pytest.mark.asyncio
    async def test_restore_corrupt_is_fatal_by_default(self, manager, snapshot_path):
        """测试：默认情况下损坏的快照阻止启动"""
        snapshot_path.parent.mkdir(parents=True)
        snapshot_path.write_text("garbage", encoding="utf-8")
        with pytest.raises(SnapshotCorruptError):
            await manager.restore(RecordStore(), LamportClock())

    @pytest.mark.asyncio
    async def test_restore_discard_corrupt(self, snapshot_path):
        """测试：discard_corrupt 时移走损坏文件并以空状态启动"""
        snapshot_path.parent.mkdir(parents=True)
        snapshot_path.write_text("garbage", encoding="utf-8")
        manager = PersistenceManager(str(snapshot_path), discard_corrupt=True)

        assert await manager.restore(RecordStore(), LamportClock()) is False
        assert not snapshot_path.exists()
        assert snapshot_path.with_name(snapshot_path.name + ".corrupt").read_text() == "garbage"

    @pytest.mark.asyncio
    async def test_persist_writes_current_state(self, manager):
        """测试：persist 写入存储和时钟的当前状态"""
        store = RecordStore()
        clock = LamportClock(initial=11)
        for record in sample_records():
            await store.upsert(record)

        assert await manager.persist(store, clock) is True
        clock_value, records = manager.load()
        assert clock_value == 11
        assert {r.station for r in records} == {"IDS60901", "IDS60902"}

    @pytest.mark.asyncio
    async def test_persist_failure_is_warning(self, manager, monkeypatch, caplog):
        """测试：写入失败只记录警告，返回 False"""
        def broken_save(clock_value, records):
            raise PersistenceError("disk full")

        monkeypatch.setattr(manager, "save", broken_save)
        with caplog.at_level("WARNING"):
            ok = await manager.persist(RecordStore(), LamportClock())

        assert ok is False
        assert "Durability warning" in caplog.text

    @pytest.mark.asyncio
    async def test_persist_unexpected_error_is_warning(self, manager, monkeypatch, caplog):
        """测试：序列化等非 I/O 错误同样只记录警告"""
        def broken_save(clock_value, records):
            raise TypeError("cannot serialize")

        monkeypatch.setattr(manager, "save", broken_save)
        with caplog.at_level("WARNING"):
            ok = await manager.persist(RecordStore(), LamportClock())

        assert ok is False
        assert "unexpected snapshot error: cannot serialize" in caplog.text
