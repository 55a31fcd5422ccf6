"""
配置加载模块

从 config.yaml 加载配置，使用 Pydantic 验证，支持环境变量指定配置路径。
"""

import os
from datetime import timedelta
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field, ValidationError

from .exceptions import ConfigError


class ServerConfig(BaseModel):
    """监听配置"""
    host: str = "0.0.0.0"
    port: int = Field(default=4567, ge=0, le=65535)
    read_timeout: float = Field(default=10.0, gt=0, description="单个连接读取请求的超时（秒）")
    max_header_bytes: int = Field(default=16 * 1024, gt=0)
    max_body_bytes: int = Field(default=1024 * 1024, gt=0)


class StoreConfig(BaseModel):
    """记录有效期"""
    expiry_seconds: float = Field(default=30.0, gt=0)

    @property
    def window(self) -> timedelta:
        return timedelta(seconds=self.expiry_seconds)


class EvictionConfig(BaseModel):
    """清理任务配置"""
    interval: float = Field(default=5.0, gt=0)


class PersistenceConfig(BaseModel):
    """快照持久化配置"""
    enabled: bool = True
    path: str = "data/weather_snapshot.json"
    discard_corrupt: bool = Field(default=False, description="快照损坏时移到一边并以空状态启动")


class LoggingConfig(BaseModel):
    """日志配置"""
    level: str = "INFO"
    file: Optional[str] = None


class AppConfig(BaseModel):
    """应用配置（完整配置）"""
    server: ServerConfig = Field(default_factory=ServerConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)
    eviction: EvictionConfig = Field(default_factory=EvictionConfig)
    persistence: PersistenceConfig = Field(default_factory=PersistenceConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


def load_config(config_path: Optional[str] = None) -> AppConfig:
    """
    加载配置文件

    优先级：
    1. 参数指定的路径
    2. 环境变量 WEATHER_AGGREGATOR_CONFIG
    3. 默认路径 config.yaml

    文件不存在时使用默认配置；文件内的相对路径以配置文件所在目录为基准。

    Raises:
        ConfigError: 文件内容不是合法 YAML 或校验失败
    """
    if config_path is None:
        config_path = os.environ.get("WEATHER_AGGREGATOR_CONFIG", "config.yaml")

    config_file = Path(config_path)
    if not config_file.exists():
        # 配置文件不存在时使用默认配置
        return AppConfig()

    try:
        with open(config_file, "r", encoding="utf-8") as f:
            raw_config = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"invalid YAML in {config_file}: {e}") from e

    if not isinstance(raw_config, dict):
        raise ConfigError(f"{config_file} must contain a mapping at the top level")

    base_dir = config_file.resolve().parent

    def _resolve_path(value: Optional[str]) -> Optional[str]:
        if not value:
            return value
        path = Path(value)
        if path.is_absolute():
            return str(path)
        return str((base_dir / path).resolve())

    persistence = raw_config.get("persistence")
    if isinstance(persistence, dict) and persistence.get("path"):
        persistence["path"] = _resolve_path(persistence["path"])

    logging_section = raw_config.get("logging")
    if isinstance(logging_section, dict) and logging_section.get("file"):
        logging_section["file"] = _resolve_path(logging_section["file"])

    try:
        return AppConfig(**raw_config)
    except ValidationError as e:
        raise ConfigError(f"invalid configuration in {config_file}: {e}") from e


# 全局配置实例（延迟加载）
_config: Optional[AppConfig] = None


def get_config() -> AppConfig:
    """获取全局配置实例（单例模式）"""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def set_config(config: AppConfig):
    """替换全局配置（命令行参数覆盖后使用）"""
    global _config
    _config = config


def reset_config():
    """重置配置（主要用于测试）"""
    global _config
    _config = None
