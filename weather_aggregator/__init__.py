"""
Weather Aggregator - 天气数据聚合服务

负责：
- 接收各内容服务器推送的天气记录（PUT）
- 基于 Lamport 逻辑时钟为写入排序
- 按站点 upsert 到内存存储，30s 过期
- 每 5s 清理过期记录并持久化快照
- 向 GET 客户端返回按逻辑时间排序的记录
"""

__version__ = "1.0.0"
