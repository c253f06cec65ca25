"""
WebVPN 隧道协议

中继 WebSocket 上交换的消息，均为 JSON 对象:

中继 -> 客户端:
- 请求帧: {id, method, path, headers, body}

客户端 -> 中继:
- 响应帧: {id, status, headers, body} 或 {id, error}
- 心跳: {type: "heartbeat"}，只发不收

请求体和响应体均以标准 base64 文本传输
"""

import base64
import binascii
import json
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

# 单个值，或按顺序排列的重复值
HeaderValue = str | list[str]


class MessageType(str, Enum):
    """控制消息类型"""

    HEARTBEAT = "heartbeat"


class InvalidFrameError(ValueError):
    """
    无法处理的入站消息

    携带能解析出的请求 ID，错误响应仍可被中继关联
    """

    def __init__(self, message: str, request_id: str = ""):
        super().__init__(message)
        self.request_id = request_id


# ============== 消息体编解码 ==============


def encode_body(data: bytes) -> str:
    """原始字节编码为传输文本"""
    return base64.b64encode(data).decode("ascii")


def decode_body(text: str | None) -> bytes:
    """
    解码传输文本

    空或缺失的消息体即零字节，不是错误

    Raises:
        ValueError: 不是合法的带填充 base64
    """
    if not text:
        return b""
    try:
        return base64.b64decode(text, validate=True)
    except binascii.Error as e:
        raise ValueError(f"illegal base64 data: {e}") from e


def normalize_header_value(value: Any) -> HeaderValue | None:
    """
    解码单个入站头部值

    字符串原样保留，列表只保留字符串元素，其他形状视为缺失（None）
    """
    if isinstance(value, str):
        return value
    if isinstance(value, list):
        return [item for item in value if isinstance(item, str)]
    return None


# ============== 帧 ==============


class RequestFrame(BaseModel):
    """
    HTTP 请求（中继 -> 客户端）

    中继把收到的 HTTP 调用序列化为此帧，经 WebSocket 下发
    """

    model_config = ConfigDict(extra="ignore")

    id: str = Field(default="", description="请求 ID，响应中原样返回")
    method: str = Field(default="GET", description="HTTP 方法")
    path: str = Field(default="", description="请求路径（含查询串）")
    headers: dict[str, HeaderValue] = Field(
        default_factory=dict, description="请求头，单值或重复值"
    )
    body: str = Field(default="", description="base64 请求体")

    @field_validator("method", mode="before")
    @classmethod
    def _method_default(cls, value: Any) -> Any:
        # 空方法即 GET
        if value is None or value == "":
            return "GET"
        return value

    @field_validator("path", "body", mode="before")
    @classmethod
    def _null_as_empty(cls, value: Any) -> Any:
        return "" if value is None else value

    @field_validator("headers", mode="before")
    @classmethod
    def _decode_headers(cls, value: Any) -> Any:
        if value is None:
            return {}
        if not isinstance(value, dict):
            # 交给 pydantic 拒绝
            return value
        headers = {}
        for name, raw in value.items():
            decoded = normalize_header_value(raw)
            if decoded is not None:
                headers[name] = decoded
        return headers

    def decoded_body(self) -> bytes:
        """原始请求实体"""
        return decode_body(self.body)


class ResponseFrame(BaseModel):
    """
    HTTP 响应（客户端 -> 中继）

    status/headers/body 与 error 二选一，空字段不序列化
    """

    id: str = Field(default="", description="对应的请求 ID")
    status: int | None = Field(default=None, description="HTTP 状态码")
    headers: dict[str, list[str]] | None = Field(
        default=None, description="响应头，每个名称对应其全部值"
    )
    body: str | None = Field(default=None, description="base64 响应体")
    error: str | None = Field(default=None, description="转发失败时的错误信息")

    @classmethod
    def failure(cls, request_id: str, message: str) -> "ResponseFrame":
        """构造错误帧"""
        return cls(id=request_id, error=message)

    @property
    def is_error(self) -> bool:
        return self.error is not None

    def to_json(self) -> str:
        return self.model_dump_json(exclude_none=True)


class HeartbeatMessage(BaseModel):
    """保活消息（客户端 -> 中继），无需回复"""

    type: MessageType = MessageType.HEARTBEAT

    def to_json(self) -> str:
        return self.model_dump_json()


# ============== 解码 ==============


def decode_request_frame(raw: str | bytes) -> RequestFrame:
    """
    将一条入站消息解码为请求帧

    Args:
        raw: WebSocket 消息内容（文本或二进制）

    Returns:
        校验通过且 ID 非空的请求帧

    Raises:
        InvalidFrameError: 非 JSON、嵌套过深、非对象、字段类型错误或 ID 为空，
            ``request_id`` 为能读出的 ID
    """
    try:
        data = json.loads(raw)
    except (ValueError, RecursionError) as e:
        raise InvalidFrameError(f"malformed JSON: {e}") from e

    if not isinstance(data, dict):
        raise InvalidFrameError("frame is not a JSON object")

    partial_id = data.get("id")
    if not isinstance(partial_id, str):
        partial_id = ""

    try:
        frame = RequestFrame.model_validate(data)
    except ValidationError as e:
        raise InvalidFrameError(f"invalid frame: {e}", partial_id) from e

    if not frame.id:
        raise InvalidFrameError("missing request id")
    return frame
