"""
线路协议编解码

请求格式（每个连接一个请求）：
    <METHOD> <path> [HTTP/1.1]
    Name: value
    ...
    <空行>
    <Content-Length 字节的请求体>

响应格式：
    HTTP/1.1 <code> <reason>
    Content-Type / Content-Length / Connection: close
    <空行>
    <响应体>
"""

import asyncio
import json
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Union

from .exceptions import TransportError

PROTOCOL_VERSION = "HTTP/1.1"

METHOD_PUT = "PUT"
METHOD_GET = "GET"

HEADER_LAMPORT_CLOCK = "Lamport-Clock"
HEADER_CONTENT_LENGTH = "Content-Length"
HEADER_CONTENT_TYPE = "Content-Type"
HEADER_PRODUCER_ID = "Producer-Id"

REASON_PHRASES = {
    200: "OK",
    201: "Created",
    204: "No Content",
    400: "Bad Request",
    500: "Internal Server Error",
}

DEFAULT_MAX_HEADER_BYTES = 16 * 1024
DEFAULT_MAX_BODY_BYTES = 1024 * 1024


# =============================================================================
# 请求
# =============================================================================

@dataclass(frozen=True)
class PutCommand:
    """写入请求"""
    path: str
    headers: Dict[str, str] = field(default_factory=dict)
    body: bytes = b""

    def header(self, name: str) -> Optional[str]:
        return self.headers.get(name.lower())


@dataclass(frozen=True)
class GetCommand:
    """读取请求"""
    path: str
    headers: Dict[str, str] = field(default_factory=dict)

    def header(self, name: str) -> Optional[str]:
        return self.headers.get(name.lower())


@dataclass(frozen=True)
class MalformedCommand:
    """无法识别的请求（方法未知、请求行截断、头部非法）"""
    reason: str


Command = Union[PutCommand, GetCommand, MalformedCommand]


async def _read_line(reader: asyncio.StreamReader) -> Optional[bytes]:
    """读取一行；行过长时返回 None"""
    try:
        return await reader.readline()
    except (asyncio.LimitOverrunError, ValueError):
        return None


async def read_request(
    reader: asyncio.StreamReader,
    max_header_bytes: int = DEFAULT_MAX_HEADER_BYTES,
    max_body_bytes: int = DEFAULT_MAX_BODY_BYTES,
) -> Command:
    """
    从连接读取并解析一个请求

    Returns:
        PutCommand / GetCommand / MalformedCommand

    Raises:
        TransportError: 连接在请求行之前关闭，或请求体不足 Content-Length
    """
    raw_line = await _read_line(reader)
    if raw_line is None:
        return MalformedCommand("request line too long")
    if not raw_line:
        raise TransportError("connection closed before request line")
    if not raw_line.endswith(b"\n"):
        return MalformedCommand("truncated request line")

    parts = raw_line.decode("latin-1").strip().split()
    if len(parts) < 2 or len(parts) > 3:
        return MalformedCommand(f"invalid request line: {raw_line[:80]!r}")
    method, path = parts[0], parts[1]
    if method not in (METHOD_PUT, METHOD_GET):
        return MalformedCommand(f"unsupported method: {method}")

    # 读取头部直到空行
    headers: Dict[str, str] = {}
    header_bytes = 0
    while True:
        line = await _read_line(reader)
        if line is None:
            return MalformedCommand("header line too long")
        if not line:
            raise TransportError("connection closed while reading headers")
        header_bytes += len(line)
        if header_bytes > max_header_bytes:
            return MalformedCommand("headers too large")

        text = line.decode("latin-1").rstrip("\r\n")
        if not text:
            break
        if ":" not in text:
            return MalformedCommand(f"invalid header line: {text[:80]!r}")
        name, value = text.split(":", 1)
        name = name.strip()
        if not name:
            return MalformedCommand("empty header name")
        headers[name.lower()] = value.strip()

    # Content-Length 缺失视为空请求体
    content_length = 0
    raw_length = headers.get(HEADER_CONTENT_LENGTH.lower())
    if raw_length is not None:
        if not (raw_length.isascii() and raw_length.isdigit()):
            return MalformedCommand(f"invalid Content-Length: {raw_length!r}")
        content_length = int(raw_length)
        if content_length > max_body_bytes:
            return MalformedCommand(f"body too large: {content_length} bytes")

    body = b""
    if content_length:
        try:
            body = await reader.readexactly(content_length)
        except asyncio.IncompleteReadError as e:
            raise TransportError(
                f"incomplete body: expected {content_length} bytes, got {len(e.partial)}"
            ) from e

    if method == METHOD_PUT:
        return PutCommand(path=path, headers=headers, body=body)
    return GetCommand(path=path, headers=headers)


# =============================================================================
# 响应
# =============================================================================

@dataclass
class Response:
    """一个完整响应"""
    status: int
    reason: str = ""
    headers: Dict[str, str] = field(default_factory=dict)
    body: bytes = b""

    def __post_init__(self):
        if not self.reason:
            self.reason = REASON_PHRASES.get(self.status, "Unknown")

    @classmethod
    def empty(cls, status: int) -> "Response":
        return cls(status=status)

    @classmethod
    def text(cls, status: int, message: str) -> "Response":
        return cls(
            status=status,
            headers={HEADER_CONTENT_TYPE: "text/plain; charset=utf-8"},
            body=message.encode("utf-8"),
        )

    @classmethod
    def json(cls, status: int, payload: Any) -> "Response":
        return cls(
            status=status,
            headers={HEADER_CONTENT_TYPE: "application/json"},
            body=json.dumps(payload, ensure_ascii=False).encode("utf-8"),
        )


def encode_response(response: Response) -> bytes:
    """序列化为线路格式（非空响应体总是带正确的 Content-Length）"""
    headers = dict(response.headers)
    if response.body:
        headers.setdefault(HEADER_CONTENT_TYPE, "application/octet-stream")
        headers[HEADER_CONTENT_LENGTH] = str(len(response.body))
    elif response.status != 204:
        headers[HEADER_CONTENT_LENGTH] = "0"
    headers["Connection"] = "close"

    lines = [f"{PROTOCOL_VERSION} {response.status} {response.reason}"]
    lines.extend(f"{name}: {value}" for name, value in headers.items())
    head = "\r\n".join(lines) + "\r\n\r\n"

    body = response.body if response.status != 204 else b""
    return head.encode("latin-1") + body
