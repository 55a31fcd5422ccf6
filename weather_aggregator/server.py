"""
聚合服务器

每个连接一个任务：读取请求 → 分发 → 写回响应 → 关闭连接。
后台清理任务与请求处理并发运行，共享同一个存储和时钟。
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable, Optional, Set

from .clock import LamportClock
from .config import AppConfig
from .eviction import EvictionScheduler
from .exceptions import ProtocolError, TransportError
from .models import WeatherPayload, utcnow
from .persistence import PersistenceManager
from .protocol import (
    HEADER_LAMPORT_CLOCK,
    HEADER_PRODUCER_ID,
    Command,
    GetCommand,
    MalformedCommand,
    PutCommand,
    Response,
    encode_response,
    read_request,
)
from .store import RecordStore


def parse_lamport_header(raw: Optional[str]) -> int:
    """
    解析 Lamport-Clock 头

    只接受 ASCII 十进制数字（不接受符号、下划线或全角数字）。

    Raises:
        ProtocolError: 缺失或不是非负整数
    """
    if raw is None:
        raise ProtocolError("missing Lamport-Clock header")
    value = raw.strip()
    if not (value.isascii() and value.isdigit()):
        raise ProtocolError(f"invalid Lamport-Clock header: {raw!r}")
    return int(value)


class ConnectionDispatcher:
    """
    把解析好的请求应用到存储和时钟，生成响应

    不涉及网络 I/O，可以直接用 Command 对象测试。
    """

    def __init__(
        self,
        store: RecordStore,
        clock: LamportClock,
        persistence: Optional[PersistenceManager] = None,
        window: timedelta = timedelta(seconds=30),
        now: Callable[[], datetime] = utcnow,
        logger: Optional[logging.Logger] = None,
    ):
        self.store = store
        self.clock = clock
        self.persistence = persistence
        self.window = window
        self._now = now
        self._logger = logger or logging.getLogger(__name__)

    def _with_clock(self, response: Response) -> Response:
        response.headers[HEADER_LAMPORT_CLOCK] = str(self.clock.current())
        return response

    async def dispatch(self, command: Command) -> Response:
        """
        分发请求

        协议/校验错误返回 400，其余未预期异常返回 500。
        """
        if isinstance(command, MalformedCommand):
            self._logger.warning(f"Malformed request: {command.reason}")
            return Response.text(400, command.reason)

        try:
            if isinstance(command, PutCommand):
                return await self.handle_put(command)
            return await self.handle_get(command)
        except ProtocolError as e:
            self._logger.warning(f"Rejected request: {e}")
            return Response.text(400, str(e))
        except Exception as e:
            self._logger.error(f"Error processing request: {e}", exc_info=True)
            return Response.text(500, "Error processing request")

    async def handle_put(self, command: PutCommand) -> Response:
        """
        处理写入

        1. 校验 Lamport-Clock 头（失败不修改任何状态）
        2. 更新时钟
        3. 空请求体 → 204，不修改存储
        4. 解析请求体，缺少站点标识 → 400
        5. 以更新后的时钟值构建记录并 upsert
        6. 同步持久化（失败仅告警）
        7. 新站点 201，已有站点 200
        """
        received = parse_lamport_header(command.header(HEADER_LAMPORT_CLOCK))
        logical_ts = self.clock.observe(received)

        if not command.body:
            self._logger.info(f"Empty PUT accepted (clock={logical_ts})")
            return self._with_clock(Response.empty(204))

        payload = WeatherPayload.from_body(command.body)
        record = payload.to_record(
            logical_timestamp=logical_ts,
            received_at=self._now(),
            producer_id=command.header(HEADER_PRODUCER_ID) or None,
        )
        result = await self.store.upsert(record)

        if self.persistence is not None:
            await self.persistence.persist(self.store, self.clock)

        status = 201 if result.is_new else 200
        self._logger.info(
            f"Stored weather data from station {record.station} @ {logical_ts} ({status})"
        )
        return self._with_clock(Response.text(status, "PUT received and recorded"))

    async def handle_get(self, command: GetCommand) -> Response:
        """返回未过期记录（按 Lamport 时间升序），无数据时 204"""
        records = await self.store.valid_records(self._now(), self.window)
        self._logger.info(f"GET {command.path}: {len(records)} records")
        if not records:
            return self._with_clock(Response.empty(204))
        return self._with_clock(Response.json(200, [r.to_wire() for r in records]))


class AggregationServer:
    """
    TCP 服务器

    负责监听、为每个连接创建任务、启动/停止清理任务。
    """

    def __init__(
        self,
        config: Optional[AppConfig] = None,
        store: Optional[RecordStore] = None,
        clock: Optional[LamportClock] = None,
        persistence: Optional[PersistenceManager] = None,
        now: Callable[[], datetime] = utcnow,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or AppConfig()
        self._logger = logger or logging.getLogger(__name__)
        self.store = store if store is not None else RecordStore(logger=logger)
        self.clock = clock if clock is not None else LamportClock()

        if persistence is None and self.config.persistence.enabled:
            persistence = PersistenceManager(
                self.config.persistence.path,
                discard_corrupt=self.config.persistence.discard_corrupt,
                logger=logger,
            )
        self.persistence = persistence

        window = self.config.store.window
        self.dispatcher = ConnectionDispatcher(
            self.store, self.clock, self.persistence, window=window, now=now, logger=logger
        )
        self.eviction = EvictionScheduler(
            self.store,
            self.clock,
            self.persistence,
            interval=self.config.eviction.interval,
            window=window,
            now=now,
            logger=logger,
        )
        self._server: Optional[asyncio.AbstractServer] = None
        # 正在处理的连接任务，stop() 在清空存储前等待它们结束
        self._connections: Set[asyncio.Task] = set()

    @property
    def port(self) -> int:
        """实际监听的端口（配置为 0 时由系统分配）"""
        if self._server is None or not self._server.sockets:
            raise RuntimeError("server is not started")
        return self._server.sockets[0].getsockname()[1]

    async def restore(self) -> bool:
        """从快照恢复（未启用持久化时直接返回 False）"""
        if self.persistence is None:
            return False
        return await self.persistence.restore(self.store, self.clock)

    async def start(self):
        """
        绑定端口并启动清理任务

        Raises:
            OSError: 端口无法绑定
        """
        cfg = self.config.server
        self._server = await asyncio.start_server(
            self.handle_connection,
            host=cfg.host,
            port=cfg.port,
            limit=cfg.max_header_bytes,
        )
        self.eviction.start()
        self._logger.info(f"Aggregation server listening on {cfg.host}:{self.port}")

    async def serve_forever(self):
        if self._server is None:
            await self.start()
        await self._server.serve_forever()

    async def stop(self):
        """
        停止监听和清理任务，清空内存存储（不再持久化）

        先等待正在处理的连接结束（最多 read_timeout），
        避免仍在等待写锁的 PUT 在清空之后把空存储写入快照。
        """
        await self.eviction.stop()
        if self._server is not None:
            self._server.close()
            await self._drain_connections()
            await self._server.wait_closed()
            self._server = None
        await self.store.clear()
        self._logger.info("Aggregation server stopped")

    async def _drain_connections(self):
        pending = set(self._connections)
        if not pending:
            return
        self._logger.info(f"Waiting for {len(pending)} in-flight connections")
        _, pending = await asyncio.wait(pending, timeout=self.config.server.read_timeout)
        for task in pending:
            task.cancel()
        if pending:
            self._logger.warning(f"Cancelled {len(pending)} connections at shutdown")
            await asyncio.gather(*pending, return_exceptions=True)

    async def __aenter__(self) -> "AggregationServer":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.stop()

    async def handle_connection(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        """单个连接：一个请求，一个响应，然后关闭"""
        task = asyncio.current_task()
        self._connections.add(task)
        peer = writer.get_extra_info("peername")
        cfg = self.config.server
        self._logger.debug(f"Accepted connection from {peer}")

        try:
            try:
                command = await asyncio.wait_for(
                    read_request(reader, cfg.max_header_bytes, cfg.max_body_bytes),
                    timeout=cfg.read_timeout,
                )
            except asyncio.TimeoutError:
                command = MalformedCommand("timed out waiting for request")

            response = await self.dispatcher.dispatch(command)
            writer.write(encode_response(response))
            await writer.drain()
        except TransportError as e:
            self._logger.warning(f"Abandoned connection from {peer}: {e}")
        except (ConnectionError, OSError) as e:
            self._logger.warning(f"Connection error from {peer}: {e}")
        finally:
            self._connections.discard(task)
            writer.close()
            try:
                await writer.wait_closed()
            except (ConnectionError, OSError):
                pass
