"""
Lamport 逻辑时钟

进程内唯一的计数器，为所有被接受的写入提供逻辑时间。
规则：收到时间戳 t 时，本地值更新为 max(本地, t) + 1。
"""

import threading


class LamportClock:
    """
    线程安全的 Lamport 时钟

    所有读改写操作都在同一把锁内完成，并发的 observe 不会丢失更新。
    """

    def __init__(self, initial: int = 0):
        if initial < 0:
            raise ValueError(f"clock value must be non-negative, got {initial}")
        self._value = initial
        self._lock = threading.Lock()

    def tick(self) -> int:
        """本地事件：自增并返回新值"""
        with self._lock:
            self._value += 1
            return self._value

    def observe(self, received: int) -> int:
        """
        收到外部时间戳

        Args:
            received: 请求携带的 Lamport 时间戳

        Returns:
            更新后的本地时钟值（严格大于更新前的值和 received）
        """
        if received < 0:
            raise ValueError(f"received timestamp must be non-negative, got {received}")
        with self._lock:
            self._value = max(self._value, received) + 1
            return self._value

    def current(self) -> int:
        """读取当前值"""
        with self._lock:
            return self._value

    def restore(self, value: int):
        """管理性设置（仅在加载快照时使用）"""
        if value < 0:
            raise ValueError(f"clock value must be non-negative, got {value}")
        with self._lock:
            self._value = value

    def __repr__(self) -> str:
        return f"LamportClock({self.current()})"
