"""
数据模型定义

包括：
- 天气记录（存储单元，不可变）
- PUT 请求体的严格校验模型
- 持久化快照文档
"""

import json
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .exceptions import PayloadError

# 请求体中站点标识字段（按优先级）
STATION_KEYS = ("id", "station")

SNAPSHOT_VERSION = 1


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# 存储模型
# =============================================================================

class WeatherRecord(BaseModel):
    """单个站点的最新天气记录"""

    model_config = ConfigDict(frozen=True)

    station: str = Field(..., min_length=1, description="站点标识（主键）")
    fields: Dict[str, str] = Field(default_factory=dict, description="站点上报的属性，原样保存为字符串")
    producer_id: Optional[str] = Field(None, description="最后写入该站点的内容服务器")
    logical_timestamp: int = Field(..., ge=0, description="接受写入时分配的 Lamport 时间")
    received_at: datetime = Field(..., description="接受写入时的墙钟时间（仅用于过期判断）")

    @field_validator("received_at")
    @classmethod
    def _ensure_tz_aware(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    def is_expired(self, now: datetime, window: timedelta) -> bool:
        """now - received_at 超过窗口即视为过期"""
        return now - self.received_at > window

    def to_wire(self) -> Dict[str, Any]:
        """GET 响应与快照共用的 JSON 结构"""
        return self.model_dump(mode="json")


@dataclass(frozen=True)
class UpsertResult:
    is_new: bool


# =============================================================================
# 请求体模型
# =============================================================================

class WeatherPayload(BaseModel):
    """
    PUT 请求体

    扁平 JSON 对象，必须包含字符串类型的站点标识字段（id，兼容 station；两者都有时取 id）。
    其余字段的值必须是字符串、数字或布尔值，统一转为字符串保存；
    null、数组、嵌套对象直接拒绝，不做静默转换。
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    station: str
    fields: Dict[str, str] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def _split_station(cls, data: Any) -> Dict[str, Any]:
        if not isinstance(data, dict):
            raise ValueError("payload must be a JSON object")

        for key, value in data.items():
            if value is None or isinstance(value, (dict, list)):
                raise ValueError(f"field {key!r} must be a string, number or boolean")

        station_key = next((key for key in STATION_KEYS if key in data), None)
        if station_key is None:
            raise ValueError("missing station identifier field 'id'")
        station = data[station_key]
        if not isinstance(station, str):
            raise ValueError(f"station identifier {station_key!r} must be a JSON string")

        # 未被选为标识的另一个键作为普通字段保存
        fields = {
            key: value if isinstance(value, str) else json.dumps(value)
            for key, value in data.items()
            if key != station_key
        }
        return {"station": station, "fields": fields}

    @field_validator("station")
    @classmethod
    def _normalize_station(cls, value: str) -> str:
        station = value.strip()
        if not station:
            raise ValueError("station identifier must be non-empty")
        return station

    @classmethod
    def from_body(cls, body: bytes) -> "WeatherPayload":
        """
        解析请求体

        Raises:
            PayloadError: JSON 无效或缺少站点标识
        """
        try:
            return cls.model_validate_json(body)
        except ValidationError as e:
            messages = "; ".join(err["msg"] for err in e.errors())
            raise PayloadError(f"invalid weather payload: {messages}") from e

    def to_record(
        self,
        logical_timestamp: int,
        received_at: datetime,
        producer_id: Optional[str] = None,
    ) -> WeatherRecord:
        return WeatherRecord(
            station=self.station,
            fields=dict(self.fields),
            producer_id=producer_id,
            logical_timestamp=logical_timestamp,
            received_at=received_at,
        )


# =============================================================================
# 持久化快照
# =============================================================================

class SnapshotDocument(BaseModel):
    """磁盘快照：时钟值 + 全部记录"""

    version: int = SNAPSHOT_VERSION
    clock_value: int = Field(..., ge=0)
    saved_at: datetime = Field(default_factory=utcnow)
    records: List[WeatherRecord] = Field(default_factory=list)
