"""
WebVPN Client - 到本地 HTTP 服务的反向隧道

通过 WebSocket 主动连接 WebVPN 中继，用 127.0.0.1 上的服务响应隧道下发的
HTTP 请求，支持：
- 连接时 key/version 认证
- 心跳保活
- 固定间隔自动重连
- 多值请求头与二进制安全的消息体（base64）
"""

__version__ = "0.1.0"

from .protocol import (
    RequestFrame,
    ResponseFrame,
    HeartbeatMessage,
    MessageType,
    InvalidFrameError,
    decode_request_frame,
)
from .config import TunnelClientConfig, ConnectionTarget
from .forwarder import LocalForwarder, ForwardingError
from .dispatcher import FrameDispatcher, ConnectionWriter
from .client import TunnelClient, RetryPolicy, run_tunnel_client

__all__ = [
    # 版本
    "__version__",
    # 协议
    "RequestFrame",
    "ResponseFrame",
    "HeartbeatMessage",
    "MessageType",
    "InvalidFrameError",
    "decode_request_frame",
    # 配置
    "TunnelClientConfig",
    "ConnectionTarget",
    # 转发
    "LocalForwarder",
    "ForwardingError",
    "FrameDispatcher",
    "ConnectionWriter",
    # 客户端
    "TunnelClient",
    "RetryPolicy",
    "run_tunnel_client",
]
