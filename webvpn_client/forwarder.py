"""
本地转发

将请求帧重放到 127.0.0.1 上的服务，并把真实响应封装为响应帧
"""

import asyncio
import logging
import time

import httpx

from .protocol import RequestFrame, ResponseFrame, decode_body, encode_body

logger = logging.getLogger(__name__)

LOOPBACK_HOST = "127.0.0.1"

# 实体长度等由解码后的消息体重新计算
_FRAMING_HEADERS = frozenset({"content-length", "transfer-encoding", "host"})


class ForwardingError(Exception):
    """本地调用未能产生响应"""


def canonical_header_name(name: str) -> str:
    """content-type -> Content-Type"""
    return "-".join(part.capitalize() for part in name.split("-"))


def build_request_headers(headers: dict[str, str | list[str]]) -> list[tuple[str, str]]:
    """
    将帧的头部映射展开为有序头部列表

    字符串值覆盖之前出现的同名头部，列表每个元素追加一次，Host 固定为回环地址
    """
    result: list[tuple[str, str]] = []
    for name, value in headers.items():
        lowered = name.lower()
        if lowered in _FRAMING_HEADERS:
            continue
        if isinstance(value, str):
            result = [item for item in result if item[0].lower() != lowered]
            result.append((name, value))
        else:
            result.extend((name, item) for item in value if isinstance(item, str))
    result.append(("Host", LOOPBACK_HOST))
    return result


def collect_response_headers(headers: httpx.Headers) -> dict[str, list[str]]:
    """按规范名称归组响应头，重复值保持顺序"""
    collected: dict[str, list[str]] = {}
    for name, value in headers.multi_items():
        collected.setdefault(canonical_header_name(name), []).append(value)
    return collected


class LocalForwarder:
    """
    对本地服务执行请求帧

    每次调用独立创建客户端，帧之间不共享状态
    """

    def __init__(
        self,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """
        Args:
            timeout: 整个本地调用的超时上限（秒）
            transport: httpx 传输层覆盖，测试用
        """
        self.timeout = timeout
        self._transport = transport

    async def forward(self, frame: RequestFrame, port: int) -> ResponseFrame:
        """
        执行一个请求帧

        Args:
            frame: 已解码的请求帧
            port: 本地服务端口

        Returns:
            含状态码、响应头和 base64 响应体的响应帧，空响应头和空响应体省略

        Raises:
            ForwardingError: 消息体编码错误、路径非法、超时或传输失败
        """
        try:
            body = decode_body(frame.body)
        except ValueError as e:
            raise ForwardingError(f"invalid body encoding: {e}") from e

        # 路径必须以 / 开头，否则会改变目标主机
        if frame.path and not frame.path.startswith("/"):
            raise ForwardingError(f"invalid request path: {frame.path!r}")

        url = f"http://{LOOPBACK_HOST}:{port}{frame.path}"
        start_time = time.time()

        try:
            request = httpx.Request(
                method=frame.method,
                url=url,
                headers=build_request_headers(frame.headers),
                content=body,
            )
        except (httpx.InvalidURL, ValueError) as e:
            raise ForwardingError(f"invalid request: {e}") from e

        if request.url.host != LOOPBACK_HOST:
            raise ForwardingError(f"invalid request path: {frame.path!r}")

        try:
            status, headers, content = await asyncio.wait_for(
                self._send(request), timeout=self.timeout
            )
        except (asyncio.TimeoutError, httpx.TimeoutException) as e:
            raise ForwardingError(f"local request timed out after {self.timeout:g}s") from e
        except httpx.ConnectError as e:
            raise ForwardingError(f"local service unavailable: {str(e) or 'connection failed'}") from e
        except httpx.HTTPError as e:
            raise ForwardingError(str(e) or e.__class__.__name__) from e

        duration_ms = int((time.time() - start_time) * 1000)
        logger.debug(
            f"{frame.method} {frame.path} -> {status} ({len(content)} bytes, {duration_ms}ms)"
        )

        return ResponseFrame(
            id=frame.id,
            status=status,
            headers=headers or None,
            body=encode_body(content) or None,
        )

    async def _send(self, request: httpx.Request) -> tuple[int, dict[str, list[str]], bytes]:
        # 回环请求不走环境代理
        async with httpx.AsyncClient(
            timeout=httpx.Timeout(self.timeout),
            transport=self._transport,
            trust_env=False,
        ) as client:
            response = await client.send(request, stream=True)
            try:
                # 原始字节，与 Content-Encoding 保持一致
                content = b"".join([chunk async for chunk in response.aiter_raw()])
            finally:
                await response.aclose()
            return response.status_code, collect_response_headers(response.headers), content
