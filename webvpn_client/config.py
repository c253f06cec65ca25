"""
WebVPN 客户端配置
"""

from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings

# 中继接受隧道客户端的端点
TUNNEL_PATH = "/ws"

_SCHEME_UPGRADE = {
    "http": "ws",
    "https": "wss",
    "ws": "ws",
    "wss": "wss",
}


class TunnelClientConfig(BaseSettings):
    """客户端配置"""

    # 中继连接
    server_url: str = Field(
        default="http://localhost:3000", description="中继基础 URL（http 或 https）"
    )
    key: str = Field(..., description="客户端密钥")
    version: str | None = Field(default=None, description="上报给中继的客户端版本")

    # 本地服务
    port: int = Field(default=80, ge=1, le=65535, description="本地服务端口")

    # 时间配置
    reconnect_interval: float = Field(default=3.0, gt=0, description="重连间隔（秒）")
    heartbeat_interval: float = Field(default=10.0, gt=0, description="心跳间隔（秒）")
    request_timeout: float = Field(default=30.0, gt=0, description="本地请求超时（秒）")

    model_config = {
        "env_prefix": "WEBVPN_CLIENT_",
        "env_file": ".env",
        "extra": "ignore",
    }

    @field_validator("key")
    @classmethod
    def _key_required(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("client key must not be empty")
        return value


class ConnectionTarget(BaseModel):
    """
    单次连接尝试的 WebSocket URL

    每次拨号前都由配置重新计算，key 和 version 只放在查询串里，不进入帧
    """

    url: str
    redacted_url: str

    @classmethod
    def from_config(cls, config: TunnelClientConfig) -> "ConnectionTarget":
        """
        构造拨号目标

        http -> ws，https -> wss，路径替换为隧道端点，查询串追加 key
        （设置了 version 时一并追加）
        """
        parts = urlsplit(config.server_url)
        scheme = _SCHEME_UPGRADE.get(parts.scheme.lower(), "ws")

        query = [
            (name, value)
            for name, value in parse_qsl(parts.query, keep_blank_values=True)
            if name not in ("key", "version")
        ]

        def build(key: str) -> str:
            params = query + [("key", key)]
            if config.version:
                params.append(("version", config.version))
            return urlunsplit((scheme, parts.netloc, TUNNEL_PATH, urlencode(params), ""))

        return cls(url=build(config.key), redacted_url=build("REDACTED"))
