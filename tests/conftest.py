"""
测试配置和 fixtures
"""

import asyncio
import contextlib
import json
import socket
from typing import AsyncGenerator

import httpx
import pytest
import websockets


class FakeRelay:
    """
    临时回环端口上的模拟中继

    记录每个连接的请求路径，默认把客户端发送的每条消息收集到 ``received``
    """

    def __init__(self):
        self.port = 0
        self.paths: list[str] = []
        self.received: asyncio.Queue = asyncio.Queue()
        self.handler = self.collect

    @property
    def base_url(self) -> str:
        return f"http://127.0.0.1:{self.port}"

    async def serve(self, connection) -> None:
        self.paths.append(connection.request.path)
        await self.handler(connection)

    async def collect(self, connection) -> None:
        async for message in connection:
            await self.received.put(json.loads(message))


class LocalService:
    """
    隧道后方 HTTP 服务的模拟

    响应以流方式返回，读取方式与真实套接字响应一致
    """

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.status = 200
        self.headers: list[tuple[str, str]] = [("Content-Type", "application/json")]
        self.body = b'{"ok":true}'
        self.delay = 0.0

    async def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.delay:
            await asyncio.sleep(self.delay)
        return httpx.Response(
            self.status,
            headers=self.headers,
            stream=httpx.ByteStream(self.body),
        )

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)


@pytest.fixture
async def relay() -> AsyncGenerator[FakeRelay, None]:
    """运行中的模拟中继"""
    fake = FakeRelay()
    async with websockets.serve(fake.serve, "127.0.0.1", 0) as server:
        fake.port = server.sockets[0].getsockname()[1]
        yield fake


@pytest.fixture
def local_service() -> LocalService:
    return LocalService()


@pytest.fixture
def unused_port() -> int:
    """无人监听的回环端口"""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


@pytest.fixture
async def run_client():
    """后台启动客户端，测试结束后停止"""
    started = []

    def start(client) -> asyncio.Task:
        task = asyncio.create_task(client.run())
        started.append((client, task))
        return task

    yield start

    for client, task in started:
        await client.stop()
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
