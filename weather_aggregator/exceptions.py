"""
异常定义

按错误来源分类：协议、传输、持久化、配置。
"""


class AggregatorError(Exception):
    """所有聚合服务异常的基类"""


class ConfigError(AggregatorError):
    """配置文件无效"""


class ProtocolError(AggregatorError):
    """请求格式错误（返回 400）"""


class PayloadError(ProtocolError):
    """请求体无法解析为天气记录（返回 400）"""


class TransportError(AggregatorError):
    """连接在读取过程中中断（不返回响应）"""


class PersistenceError(AggregatorError):
    """快照写入失败"""


class SnapshotCorruptError(PersistenceError):
    """已存在的快照文件无法读取或解析"""

    def __init__(self, message: str, path: str = ""):
        self.path = path
        super().__init__(message)
