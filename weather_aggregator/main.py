"""
主程序入口

启动流程：
1. 解析命令行参数并加载配置
2. 配置日志
3. 获取单实例锁（快照文件只能由一个进程持有）
4. 从快照恢复存储和时钟
5. 启动 TCP 服务与清理任务
"""

import argparse
import asyncio
import logging
import os
import sys
from pathlib import Path
from typing import List, Optional

from . import __version__
from .config import AppConfig, get_config, load_config, set_config
from .exceptions import ConfigError, SnapshotCorruptError
from .server import AggregationServer


def setup_logging(config: AppConfig):
    """配置日志"""
    log_format = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    level = getattr(logging, config.logging.level.upper(), logging.INFO)

    logging.basicConfig(
        level=level,
        format=log_format,
        handlers=[logging.StreamHandler(sys.stdout)],
        force=True,
    )

    # 如果配置了文件日志
    if config.logging.file:
        log_path = Path(config.logging.file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(str(log_path), encoding="utf-8")
        file_handler.setFormatter(logging.Formatter(log_format))
        logging.getLogger().addHandler(file_handler)

    logging.getLogger("asyncio").setLevel(logging.WARNING)


def acquire_single_instance_lock(lock_path: Path):
    """
    防止两个进程同时持有同一个快照文件。

    通过文件锁实现：同一路径下只能有一个进程持锁。
    """
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    handle = open(lock_path, "a+b")
    # 锁定固定的首字节，避免 Windows 上因文件指针位置不同而锁到不同区域
    handle.seek(0)
    if handle.read(1) == b"":
        handle.write(b"0")
        handle.flush()
    handle.seek(0)

    try:
        if os.name == "nt":
            import msvcrt  # type: ignore

            msvcrt.locking(handle.fileno(), msvcrt.LK_NBLCK, 1)
        else:
            import fcntl  # type: ignore

            fcntl.flock(handle, fcntl.LOCK_EX | fcntl.LOCK_NB)
    except OSError as e:
        handle.close()
        raise RuntimeError(f"Another Weather Aggregator instance is already running (lock: {lock_path})") from e

    handle.seek(0)
    handle.truncate()
    handle.write(str(os.getpid()).encode("utf-8"))
    handle.flush()
    return handle


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="weather-aggregator",
        description="天气数据聚合服务器",
    )
    parser.add_argument("--config", help="配置文件路径（默认 config.yaml 或 $WEATHER_AGGREGATOR_CONFIG）")
    parser.add_argument("--host", help="监听地址")
    parser.add_argument("--port", type=int, help="监听端口")
    parser.add_argument("--data-file", help="快照文件路径")
    parser.add_argument("--log-level", help="日志级别（DEBUG/INFO/WARNING/ERROR）")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def apply_overrides(config: AppConfig, args: argparse.Namespace) -> AppConfig:
    """命令行参数覆盖配置文件"""
    server_update = {}
    if args.host is not None:
        server_update["host"] = args.host
    if args.port is not None:
        server_update["port"] = args.port

    update = {}
    if server_update:
        update["server"] = config.server.model_copy(update=server_update)
    if args.data_file is not None:
        update["persistence"] = config.persistence.model_copy(
            update={"path": args.data_file, "enabled": True}
        )
    if args.log_level is not None:
        update["logging"] = config.logging.model_copy(update={"level": args.log_level})

    return config.model_copy(update=update) if update else config


async def main(config: Optional[AppConfig] = None) -> int:
    """主函数：恢复状态并运行服务，返回退出码"""
    logger = logging.getLogger(__name__)
    config = config or get_config()

    logger.info("=" * 60)
    logger.info(f"Weather Aggregator v{__version__}")
    logger.info("=" * 60)
    logger.info(f"Config loaded: listen={config.server.host}:{config.server.port}")

    lock_handle = None
    if config.persistence.enabled:
        logger.info(f"Snapshot file: {config.persistence.path}")
        snapshot_path = Path(config.persistence.path)
        try:
            lock_handle = acquire_single_instance_lock(
                snapshot_path.with_name(snapshot_path.name + ".lock")
            )
        except (RuntimeError, OSError) as e:
            logger.error(str(e))
            return 1

    server = AggregationServer(config)
    try:
        try:
            await server.restore()
        except SnapshotCorruptError as e:
            logger.error(f"Cannot start: {e}")
            return 1

        try:
            await server.start()
        except OSError as e:
            logger.error(f"Cannot bind {config.server.host}:{config.server.port}: {e}")
            return 1

        try:
            await server.serve_forever()
        except asyncio.CancelledError:
            logger.info("Tasks cancelled, shutting down...")
        finally:
            await server.stop()
    finally:
        if lock_handle is not None:
            lock_handle.close()

    return 0


def cli(argv: Optional[List[str]] = None):
    """命令行入口"""
    args = build_arg_parser().parse_args(argv)

    try:
        config = apply_overrides(load_config(args.config), args)
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    set_config(config)
    setup_logging(config)

    try:
        exit_code = asyncio.run(main())
    except KeyboardInterrupt:
        print("\nShutdown requested, exiting...")
        exit_code = 0
    sys.exit(exit_code)


if __name__ == "__main__":
    cli()
