"""
WebVPN 隧道客户端

与中继保持一条 WebSocket 连接，调用本地服务响应请求帧，任何故障后固定间隔重连

使用示例:
    from webvpn_client import TunnelClient

    client = TunnelClient(
        server_url="https://vpn.example.com",
        key="ck_xxx",
        port=8080,
    )

    # 启动客户端（阻塞）
    await client.run()

    # 或在后台运行
    task = asyncio.create_task(client.run())
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable

import websockets
from websockets.exceptions import ConnectionClosed, InvalidHandshake, InvalidURI

from .config import ConnectionTarget, TunnelClientConfig
from .dispatcher import ConnectionWriter, FrameDispatcher
from .forwarder import LocalForwarder
from .protocol import HeartbeatMessage, RequestFrame

logger = logging.getLogger(__name__)

# 中继拒绝密钥时使用的关闭码
AUTH_CLOSE_CODES = {
    4001: "missing key",
    4003: "invalid key",
}


@dataclass
class RetryPolicy:
    """固定间隔重连策略，无限重试"""

    interval: float = 3.0
    sleep: Callable[[float], Awaitable[None]] = field(default=asyncio.sleep)

    async def wait(self) -> None:
        await self.sleep(self.interval)


def describe_disconnect(error: BaseException | None) -> str:
    """连接断开或失败的单行原因"""
    if error is None:
        return "connection ended"
    if isinstance(error, ConnectionClosed):
        close = error.rcvd or error.sent
        if close is None:
            return "connection closed without a close frame"
        if close.code in AUTH_CLOSE_CODES:
            return f"authentication rejected by relay ({close.code} {close.reason or AUTH_CLOSE_CODES[close.code]})"
        if close.reason:
            return f"connection closed ({close.code} {close.reason})"
        return f"connection closed ({close.code})"
    if isinstance(error, InvalidHandshake):
        return f"handshake failed: {error}"
    return str(error) or error.__class__.__name__


class TunnelClient:
    """
    隧道客户端

    连接中继并处理请求帧，断开后等待并重新连接，直到调用 stop() 或任务被取消
    """

    def __init__(
        self,
        config: TunnelClientConfig | None = None,
        *,
        server_url: str | None = None,
        key: str | None = None,
        port: int | None = None,
        version: str | None = None,
        forwarder: LocalForwarder | None = None,
        retry_policy: RetryPolicy | None = None,
    ):
        """
        初始化客户端

        Args:
            config: 客户端配置（为空时使用直接参数）
            server_url: 中继基础 URL
            key: 客户端密钥
            port: 本地服务端口
            version: 上报给中继的客户端版本
            forwarder: 本地转发器覆盖
            retry_policy: 重连策略覆盖
        """
        if config:
            self.config = config
        else:
            overrides = {
                "server_url": server_url,
                "key": key,
                "port": port,
                "version": version,
            }
            self.config = TunnelClientConfig(
                **{name: value for name, value in overrides.items() if value is not None}
            )

        self.forwarder = forwarder or LocalForwarder(timeout=self.config.request_timeout)
        self.retry_policy = retry_policy or RetryPolicy(interval=self.config.reconnect_interval)

        self._websocket = None
        self._running = False
        self._connected = False
        self._reconnect_count = 0

        # 回调
        self._on_connect: Callable[[], None] | None = None
        self._on_disconnect: Callable[[], None] | None = None
        self._on_request: Callable[[RequestFrame], None] | None = None

    @property
    def is_connected(self) -> bool:
        return self._connected

    @property
    def reconnect_count(self) -> int:
        """自上次成功连接以来的重连次数"""
        return self._reconnect_count

    def on_connect(self, callback: Callable[[], None]) -> None:
        self._on_connect = callback

    def on_disconnect(self, callback: Callable[[], None]) -> None:
        self._on_disconnect = callback

    def on_request(self, callback: Callable[[RequestFrame], None]) -> None:
        self._on_request = callback

    async def run(self) -> None:
        """
        运行客户端

        每次失败都记录日志，固定间隔后再次尝试，不限次数
        """
        self._running = True

        while self._running:
            error: Exception | None = None
            try:
                await self._connect_and_run()
            except (OSError, InvalidURI, InvalidHandshake, ConnectionClosed, asyncio.TimeoutError) as e:
                error = e
            except Exception as e:
                logger.error(f"Session error: {e}", exc_info=True)
                error = e

            was_connected = self._connected
            self._connected = False
            self._websocket = None

            if not self._running:
                break

            if was_connected and self._on_disconnect:
                self._on_disconnect()

            self._reconnect_count += 1
            logger.warning(
                f"Disconnected: {describe_disconnect(error)}, reconnecting in "
                f"{self.retry_policy.interval:g}s (attempt {self._reconnect_count})"
            )
            await self.retry_policy.wait()

    async def stop(self) -> None:
        """停止客户端并关闭当前连接"""
        self._running = False
        if self._websocket:
            await self._websocket.close()

    async def _connect_and_run(self) -> None:
        """连接一次并持续服务直到连接失败"""
        target = ConnectionTarget.from_config(self.config)
        logger.info(f"Connecting to {target.redacted_url}...")

        async with websockets.connect(target.url, max_size=None) as websocket:
            self._websocket = websocket
            self._connected = True
            self._reconnect_count = 0
            logger.info(f"Connected to relay, forwarding to 127.0.0.1:{self.config.port}")

            if self._on_connect:
                self._on_connect()

            await self._serve(websocket)

    async def _serve(self, websocket) -> None:
        """运行分发器，同时发送心跳"""
        writer = ConnectionWriter(websocket)
        writer.start()
        heartbeat = asyncio.create_task(self._heartbeat_loop(writer))

        dispatcher = FrameDispatcher(self.forwarder, self.config.port, on_request=self._on_request)
        try:
            await dispatcher.run(websocket, writer)
        finally:
            heartbeat.cancel()
            try:
                await heartbeat
            except asyncio.CancelledError:
                pass
            await writer.close()
            logger.info(f"Session ended: {dispatcher.handled} forwarded, {dispatcher.failed} failed")

    async def _heartbeat_loop(self, writer: ConnectionWriter) -> None:
        """按间隔发送心跳直到被取消"""
        while True:
            await asyncio.sleep(self.config.heartbeat_interval)
            writer.post(HeartbeatMessage())


async def run_tunnel_client(
    server_url: str,
    key: str,
    port: int = 80,
    version: str | None = None,
) -> None:
    """
    运行隧道客户端

    便捷函数，用于快速启动

    Args:
        server_url: 中继基础 URL
        key: 客户端密钥
        port: 本地服务端口
        version: 上报给中继的客户端版本
    """
    config = TunnelClientConfig(
        server_url=server_url,
        key=key,
        port=port,
        version=version,
    )
    client = TunnelClient(config=config)
    await client.run()
