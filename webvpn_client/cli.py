"""
WebVPN 客户端命令行

使用示例:
    # 暴露 8080 端口上的本地服务
    webvpn-client connect --server https://vpn.example.com --key ck_xxx --port 8080

    # 同上，通过环境变量配置
    WEBVPN_CLIENT_KEY=ck_xxx WEBVPN_CLIENT_PORT=8080 webvpn-client connect
"""

import asyncio
import logging
import sys

import click
from pydantic import ValidationError
from rich.console import Console
from rich.logging import RichHandler

from . import __version__
from .client import TunnelClient
from .config import ConnectionTarget, TunnelClientConfig

console = Console()


def setup_logging(verbose: bool = False) -> None:
    """配置日志"""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True)],
    )


def load_config(**options) -> TunnelClientConfig:
    """
    由命令行选项构造配置

    未指定的选项依次回退到 WEBVPN_CLIENT_* 环境变量和默认值，配置错误时以状态 1 退出
    """
    try:
        return TunnelClientConfig(
            **{name: value for name, value in options.items() if value is not None}
        )
    except ValidationError as e:
        for error in e.errors():
            field = ".".join(str(part) for part in error["loc"]) or "config"
            if error["type"] == "missing":
                console.print(f"[red]✗[/red] Missing --{field}")
            else:
                console.print(f"[red]✗[/red] Invalid {field}: {error['msg']}")
        sys.exit(1)


@click.group()
@click.version_option(version=__version__)
def main():
    """WebVPN Client - 到本地 HTTP 服务的反向隧道"""
    pass


@main.command()
@click.option("--server", "-s", "server_url", help="中继基础 URL（默认 http://localhost:3000）")
@click.option("--key", "-k", help="客户端密钥")
@click.option("--port", "-p", type=int, help="本地服务端口（默认 80）")
@click.option("--version", "version", help="上报给中继的客户端版本")
@click.option("--reconnect", "-r", "reconnect_interval", type=float, help="重连间隔（秒）")
@click.option("--verbose", "-v", is_flag=True, help="详细日志")
def connect(
    server_url: str | None,
    key: str | None,
    port: int | None,
    version: str | None,
    reconnect_interval: float | None,
    verbose: bool,
):
    """连接中继并将请求转发到本地服务"""
    config = load_config(
        server_url=server_url,
        key=key,
        port=port,
        version=version,
        reconnect_interval=reconnect_interval,
    )
    setup_logging(verbose)

    console.print("[bold blue]WebVPN Client[/bold blue]")
    console.print(f"  Relay: {ConnectionTarget.from_config(config).redacted_url}")
    console.print(f"  Local: http://127.0.0.1:{config.port}")
    if config.version:
        console.print(f"  Version: {config.version}")
    console.print()

    client = TunnelClient(config=config)

    def on_connect():
        console.print("[green]✓[/green] Connected to WebVPN server")

    def on_disconnect():
        console.print("[yellow]![/yellow] Disconnected")

    client.on_connect(on_connect)
    client.on_disconnect(on_disconnect)

    try:
        asyncio.run(client.run())
    except KeyboardInterrupt:
        console.print("\n[dim]Stopped[/dim]")
        sys.exit(0)


if __name__ == "__main__":
    main()
