#!/usr/bin/env python3

from __future__ import annotations
import asyncio
import os

import aioconsole
import typer
from rich.console import Console

from shared.envelope import DEFAULT_TYPE_TAG, Envelope, create_envelope
from shared.log import get_logger
from shared.utils import parse_hostport
from .udp_client import ClientSession

app = typer.Typer(help="UDP peer for talking to a running bridge")
console = Console()
logger = get_logger(__name__)


def _default_bridge() -> str:
    return os.getenv("UDP_BRIDGE_ADDR", "127.0.0.1:9090")


def _resolve(bridge: str) -> tuple[str, int]:
    parsed = parse_hostport(bridge)
    if parsed is None:
        raise typer.BadParameter(f"expected host:port, got {bridge!r}", param_hint="--bridge")
    return parsed


def _show(env: Envelope) -> None:
    console.print(f"[bold cyan]{env.topic}[/] ({env.type}): ", end="")
    console.print(env.msg.get("data"), markup=False, highlight=False)


@app.command()
def encode(
    data: str = typer.Argument(..., help="String payload for msg.data"),
    topic: str = typer.Option("/chatter", help="Envelope topic"),
    type_tag: str = typer.Option(DEFAULT_TYPE_TAG, "--type", help="Envelope type tag"),
):
    """Print the wire envelope for DATA and exit."""
    typer.echo(create_envelope(topic, data, type_tag).to_json())


@app.command()
def send(
    data: str = typer.Argument(..., help="String payload for msg.data"),
    bridge: str = typer.Option(_default_bridge(), help="Bridge address host:port"),
    topic: str = typer.Option("/chatter", help="Envelope topic"),
    type_tag: str = typer.Option(DEFAULT_TYPE_TAG, "--type", help="Envelope type tag"),
    wait: float = typer.Option(0.0, help="Seconds to wait for one reply (0 = don't wait)"),
):
    """Send one envelope to the bridge, optionally waiting for a reply."""
    host, port = _resolve(bridge)

    async def main_loop() -> int:
        session = ClientSession(host, port, type_tag=type_tag)
        await session.connect()
        try:
            sent = await session.publish(topic, data)
            console.print(f"Sent {sent} bytes to {host}:{port}")
            if wait > 0:
                try:
                    _show(await session.recv(timeout=wait))
                except asyncio.TimeoutError:
                    console.print(f"[yellow]No reply within {wait}s[/]")
                    return 1
            return 0
        finally:
            await session.close()

    raise typer.Exit(code=asyncio.run(main_loop()))


@app.command()
def chat(
    bridge: str = typer.Option(_default_bridge(), help="Bridge address host:port"),
    topic: str = typer.Option("/chatter", help="Topic for lines you type"),
    type_tag: str = typer.Option(DEFAULT_TYPE_TAG, "--type", help="Envelope type tag"),
):
    """Interactive loop: typed lines go to the bridge, replies are printed."""
    host, port = _resolve(bridge)
    console.print(f"[bold green]UDP client[/] -> {host}:{port} on {topic}  (/quit to exit)")

    async def main_loop() -> None:
        session = ClientSession(host, port, type_tag=type_tag)
        await session.connect()

        async def default_handler(env: Envelope) -> None:
            _show(env)

        recv_task = asyncio.create_task(session.recv_loop(default_handler))
        try:
            while True:
                line = (await aioconsole.ainput(": ")).strip()
                if not line:
                    continue
                if line in {"/quit", "/exit"}:
                    break
                await session.publish(topic, line)
        except EOFError:
            pass
        finally:
            recv_task.cancel()
            await session.close()

    asyncio.run(main_loop())


def main() -> None:
    app()


if __name__ == "__main__":
    main()
