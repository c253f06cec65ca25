"""
隧道客户端测试

在回环地址上运行真实的 WebSocket 中继，本地服务使用模拟实现
"""

import asyncio
import base64
import json
import logging
from unittest.mock import MagicMock

import pytest
from websockets.exceptions import ConnectionClosedError, InvalidHandshake
from websockets.frames import Close

from webvpn_client.client import RetryPolicy, TunnelClient, describe_disconnect
from webvpn_client.config import TunnelClientConfig
from webvpn_client.forwarder import LocalForwarder


def make_config(relay, **overrides) -> TunnelClientConfig:
    overrides.setdefault("heartbeat_interval", 60.0)
    overrides.setdefault("port", 8080)
    return TunnelClientConfig(server_url=relay.base_url, key="ck_test", **overrides)


class TestDescribeDisconnect:
    """测试断开原因描述"""

    def test_auth_rejection(self):
        error = ConnectionClosedError(Close(4003, "Invalid key"), None)
        assert describe_disconnect(error) == "authentication rejected by relay (4003 Invalid key)"

    def test_auth_rejection_without_reason(self):
        error = ConnectionClosedError(Close(4001, ""), None)
        assert describe_disconnect(error) == "authentication rejected by relay (4001 missing key)"

    def test_abnormal_close(self):
        error = ConnectionClosedError(None, None)
        assert describe_disconnect(error) == "connection closed without a close frame"

    def test_close_code(self):
        error = ConnectionClosedError(Close(1011, ""), None)
        assert describe_disconnect(error) == "connection closed (1011)"

    def test_handshake(self):
        assert describe_disconnect(InvalidHandshake("bad status")).startswith("handshake failed")

    def test_plain_error(self):
        assert describe_disconnect(ConnectionRefusedError()) == "ConnectionRefusedError"


class TestTunnelClient:
    """测试端到端会话"""

    def test_init_from_arguments(self):
        client = TunnelClient(server_url="https://vpn.example.com", key="ck_test", port=8080)
        assert client.config.server_url == "https://vpn.example.com"
        assert client.config.port == 8080
        assert client.retry_policy.interval == 3.0
        assert client.forwarder.timeout == 30.0
        assert client.is_connected is False

    @pytest.mark.asyncio
    async def test_status_scenario(self, relay, local_service, run_client):
        """测试请求帧经隧道得到响应"""
        client = TunnelClient(
            make_config(relay),
            forwarder=LocalForwarder(transport=local_service.transport),
        )

        async def handler(connection):
            await connection.send(
                json.dumps({"id": "1", "method": "GET", "path": "/status", "headers": {}, "body": ""})
            )
            await connection.send("not-json")
            for _ in range(2):
                await relay.received.put(json.loads(await connection.recv()))
            await connection.wait_closed()

        relay.handler = handler
        run_client(client)

        first = await asyncio.wait_for(relay.received.get(), timeout=5)
        second = await asyncio.wait_for(relay.received.get(), timeout=5)

        assert first == {
            "id": "1",
            "status": 200,
            "headers": {"Content-Type": ["application/json"]},
            "body": base64.b64encode(b'{"ok":true}').decode(),
        }
        assert second == {"id": "", "error": "Invalid request"}
        assert relay.paths == ["/ws?key=ck_test"]
        assert local_service.requests[0].headers["host"] == "127.0.0.1"
        assert client.is_connected is True

    @pytest.mark.asyncio
    async def test_unreachable_service_keeps_serving(self, relay, unused_port, run_client):
        """测试转发失败后仍继续处理后续帧"""
        config = make_config(relay, port=unused_port, request_timeout=5.0)
        client = TunnelClient(config)

        async def handler(connection):
            for request_id in ("a", "b"):
                await connection.send(json.dumps({"id": request_id, "method": "GET", "path": "/"}))
                await relay.received.put(json.loads(await connection.recv()))
            await connection.wait_closed()

        relay.handler = handler
        run_client(client)

        first = await asyncio.wait_for(relay.received.get(), timeout=10)
        second = await asyncio.wait_for(relay.received.get(), timeout=10)

        assert first["id"] == "a"
        assert first["error"]
        assert second["id"] == "b"
        assert second["error"]
        assert relay.paths == ["/ws?key=ck_test"]

    @pytest.mark.asyncio
    async def test_heartbeat(self, relay, run_client):
        """测试按配置间隔发送心跳"""
        client = TunnelClient(make_config(relay, heartbeat_interval=0.05))
        run_client(client)

        for _ in range(2):
            message = await asyncio.wait_for(relay.received.get(), timeout=5)
            assert message == {"type": "heartbeat"}

    @pytest.mark.asyncio
    async def test_version_sent_on_connect(self, relay, run_client):
        client = TunnelClient(make_config(relay, version="2.0.1"))
        run_client(client)

        for _ in range(50):
            if relay.paths:
                break
            await asyncio.sleep(0.05)
        assert relay.paths == ["/ws?key=ck_test&version=2.0.1"]


class TestReconnect:
    """测试重连循环"""

    @pytest.mark.asyncio
    async def test_reconnect_after_close(self, relay, caplog):
        """测试会话关闭后记录日志、等待并重新连接"""
        config = make_config(relay, version="1.0.0")
        sleeps = []

        async def fake_sleep(interval):
            sleeps.append(interval)
            if len(sleeps) == 1:
                config.version = "1.0.1"
            else:
                await client.stop()

        client = TunnelClient(config, retry_policy=RetryPolicy(interval=3.0, sleep=fake_sleep))
        disconnects = MagicMock()
        client.on_disconnect(disconnects)

        async def handler(connection):
            await connection.close(1011, "restarting")

        relay.handler = handler

        with caplog.at_level(logging.INFO, logger="webvpn_client"):
            await asyncio.wait_for(client.run(), timeout=10)

        assert sleeps == [3.0, 3.0]
        assert relay.paths == [
            "/ws?key=ck_test&version=1.0.0",
            "/ws?key=ck_test&version=1.0.1",
        ]
        assert disconnects.call_count == 2
        assert "Disconnected: connection closed (1011 restarting)" in caplog.text
        assert "ck_test" not in caplog.text

    @pytest.mark.asyncio
    async def test_auth_rejection_retried(self, relay, caplog):
        sleeps = []

        async def fake_sleep(interval):
            sleeps.append(interval)
            await client.stop()

        client = TunnelClient(make_config(relay), retry_policy=RetryPolicy(sleep=fake_sleep))

        async def handler(connection):
            await connection.close(4003, "Invalid key")

        relay.handler = handler

        with caplog.at_level(logging.WARNING, logger="webvpn_client"):
            await asyncio.wait_for(client.run(), timeout=10)

        assert sleeps == [3.0]
        assert "authentication rejected by relay (4003 Invalid key)" in caplog.text

    @pytest.mark.asyncio
    async def test_dial_failure_retried(self, unused_port, caplog):
        """测试连接被拒后无限重试"""
        sleeps = []

        async def fake_sleep(interval):
            sleeps.append(interval)
            if len(sleeps) == 3:
                await client.stop()

        config = TunnelClientConfig(server_url=f"http://127.0.0.1:{unused_port}", key="ck_test")
        client = TunnelClient(config, retry_policy=RetryPolicy(sleep=fake_sleep))
        connects = MagicMock()
        client.on_connect(connects)

        with caplog.at_level(logging.WARNING, logger="webvpn_client"):
            await asyncio.wait_for(client.run(), timeout=10)

        assert sleeps == [3.0, 3.0, 3.0]
        assert client.reconnect_count == 3
        assert caplog.text.count("Disconnected") == 3
        connects.assert_not_called()

    @pytest.mark.asyncio
    async def test_reconnect_count_resets_on_connect(self, relay):
        sleeps = []

        async def fake_sleep(interval):
            sleeps.append(interval)
            assert client.reconnect_count == 1
            if len(sleeps) == 2:
                await client.stop()

        client = TunnelClient(make_config(relay), retry_policy=RetryPolicy(sleep=fake_sleep))

        async def handler(connection):
            await connection.close()

        relay.handler = handler

        await asyncio.wait_for(client.run(), timeout=10)
        assert len(relay.paths) == 2
