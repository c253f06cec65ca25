"""
帧分发

逐个读取中继连接上的请求帧，转发到本地服务并写回响应
所有写操作都经由唯一的 ConnectionWriter 任务
"""

import asyncio
import logging
from typing import Any, Callable

from pydantic import BaseModel

from .forwarder import ForwardingError, LocalForwarder
from .protocol import InvalidFrameError, RequestFrame, ResponseFrame, decode_request_frame

logger = logging.getLogger(__name__)

INVALID_REQUEST = "Invalid request"


class ConnectionWriter:
    """
    WebSocket 连接的唯一写入者

    消息入队后由一个后台任务按序发送，分发器与心跳不会并发写
    """

    def __init__(self, websocket: Any):
        self._websocket = websocket
        self._queue: asyncio.Queue[tuple[str, asyncio.Future | None]] = asyncio.Queue()
        self._task: asyncio.Task | None = None

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._write_loop())

    async def close(self) -> None:
        """停止写入，队列中未发送的消息以 ConnectionError 失败"""
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        while not self._queue.empty():
            _, future = self._queue.get_nowait()
            if future is not None and not future.done():
                future.set_exception(ConnectionError("connection writer closed"))

    async def send(self, message: BaseModel) -> None:
        """
        发送消息并等待写出

        Raises:
            Exception: 底层写操作抛出的异常
        """
        if self._task is None:
            raise ConnectionError("connection writer is not running")
        future = asyncio.get_running_loop().create_future()
        await self._queue.put((message.to_json(), future))
        await future

    def post(self, message: BaseModel) -> None:
        """入队后立即返回，写失败被忽略"""
        if self._task is None:
            return
        self._queue.put_nowait((message.to_json(), None))

    async def _write_loop(self) -> None:
        while True:
            payload, future = await self._queue.get()
            if future is not None and future.done():
                # 发送方已放弃等待
                continue
            try:
                await self._websocket.send(payload)
            except asyncio.CancelledError:
                if future is not None and not future.done():
                    future.set_exception(ConnectionError("connection writer closed"))
                raise
            except Exception as e:
                if future is not None:
                    future.set_exception(e)
                else:
                    logger.debug(f"Dropped unacknowledged message: {e}")
            else:
                if future is not None:
                    future.set_result(None)


class FrameDispatcher:
    """
    请求帧读取循环

    每个帧响应完毕后才读取下一个
    """

    def __init__(
        self,
        forwarder: LocalForwarder,
        port: int,
        on_request: Callable[[RequestFrame], None] | None = None,
    ):
        self.forwarder = forwarder
        self.port = port
        self.on_request = on_request

        # 统计
        self.handled = 0
        self.failed = 0

    async def dispatch(self, raw: str | bytes) -> ResponseFrame:
        """
        将一条入站消息转换为要写回的响应

        协议错误和转发错误都转为错误帧，坏帧不会抛出异常
        """
        try:
            frame = decode_request_frame(raw)
        except InvalidFrameError as e:
            self.failed += 1
            logger.warning(f"Rejected frame: {e}")
            return ResponseFrame.failure(e.request_id, INVALID_REQUEST)

        if self.on_request:
            self.on_request(frame)

        try:
            response = await self.forwarder.forward(frame, self.port)
        except ForwardingError as e:
            self.failed += 1
            logger.warning(f"Forwarding failed: id={frame.id} {frame.method} {frame.path}: {e}")
            return ResponseFrame.failure(frame.id, str(e))

        self.handled += 1
        return response

    async def run(self, websocket: Any, writer: ConnectionWriter) -> None:
        """
        持续处理帧直到连接失败

        不会正常返回：连接关闭表现为 recv() 抛出的 ConnectionClosed，
        响应写失败原样抛出
        """
        while True:
            raw = await websocket.recv()
            response = await self.dispatch(raw)
            await writer.send(response)
