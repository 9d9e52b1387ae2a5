#!/usr/bin/env python3

from __future__ import annotations
import asyncio
from contextlib import suppress
from pathlib import Path
from typing import Optional

import aioconsole
import click
import typer
from rich.console import Console
from rich.table import Table

from bridge.bridge import UdpBridge
from bridge.config import LOG_LEVELS, BridgeConfig, ConfigError, load_config
from bridge.core.Bus import LocalBus
from shared.log import configure_root_logging, get_logger

app = typer.Typer(help="Bridge a publish/subscribe bus to UDP using JSON envelopes")
console = Console()
logger = get_logger(__name__)

_LOG_LEVELS = click.Choice(LOG_LEVELS, case_sensitive=False)


def _resolve_config(
    config_path: Optional[Path],
    host: Optional[str],
    port: Optional[int],
    inbound: Optional[str],
    outbound: Optional[str],
    type_tag: Optional[str],
    max_datagram: Optional[int],
    log_level: Optional[str],
) -> BridgeConfig:
    try:
        return load_config(
            config_path,
            host=host,
            port=port,
            inbound_channel=inbound,
            outbound_channel=outbound,
            type_tag=type_tag,
            max_datagram_size=max_datagram,
            log_level=log_level.upper() if log_level else None,
        )
    except ConfigError as e:
        console.print(f"[red]Invalid configuration[/]: {e}")
        raise typer.Exit(code=2)


def config_table(config: BridgeConfig) -> Table:
    table = Table(title="Bridge configuration")
    table.add_column("Key")
    table.add_column("Value")
    for key, value in config.to_dict().items():
        table.add_row(key, str(value))
    return table


async def _feed_stdin(bus: LocalBus, channel: str) -> None:
    """Publish each typed line on the inbound channel until EOF."""
    while True:
        try:
            line = await aioconsole.ainput()
        except EOFError:
            return
        line = line.rstrip("\n")
        if line:
            bus.publish(channel, line)


async def serve(config: BridgeConfig, *, stdin: bool = True) -> None:
    bus = LocalBus()
    bus.subscribe(
        config.outbound_channel,
        lambda payload: console.print(f"[bold cyan]{config.outbound_channel}[/] {payload}", highlight=False),
    )
    bridge = UdpBridge.from_config(config, bus)
    feeder: Optional[asyncio.Task] = None
    try:
        await bridge.start()
        if stdin:
            feeder = asyncio.create_task(_feed_stdin(bus, config.inbound_channel))
        await bridge.run()
    finally:
        if feeder is not None:
            feeder.cancel()
            with suppress(asyncio.CancelledError):
                await feeder
        await bridge.close()


@app.command()
def run(
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", exists=True, dir_okay=False, help="YAML config file"),
    host: Optional[str] = typer.Option(None, help="Bind IP [default: 127.0.0.1]"),
    port: Optional[int] = typer.Option(None, help="Bind port [default: 9090]"),
    inbound: Optional[str] = typer.Option(None, help="Bus channel forwarded to UDP [default: /listener]"),
    outbound: Optional[str] = typer.Option(None, help="Bus channel fed from UDP [default: /chatter]"),
    type_tag: Optional[str] = typer.Option(None, "--type", help="Envelope type tag [default: std_msgs/String]"),
    max_datagram: Optional[int] = typer.Option(None, help="Receive buffer size in bytes [default: 1024]"),
    log_level: Optional[str] = typer.Option(None, click_type=_LOG_LEVELS, help="Log level"),
    stdin: bool = typer.Option(True, "--stdin/--no-stdin", help="Publish typed lines on the inbound channel"),
):
    """Run the bridge on an in-process bus until interrupted."""
    config = _resolve_config(config_path, host, port, inbound, outbound, type_tag, max_datagram, log_level)
    configure_root_logging(config.log_level)
    console.print(f"[bold green]UDP bridge[/] listening on {config.host}:{config.port}")
    try:
        asyncio.run(serve(config, stdin=stdin))
    except KeyboardInterrupt:
        console.print("Stopped")
    except OSError as e:
        console.print(f"[red]Socket error[/]: {e}")
        raise typer.Exit(code=1)


@app.command("show-config")
def show_config(
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", exists=True, dir_okay=False, help="YAML config file"),
    host: Optional[str] = typer.Option(None, help="Bind IP"),
    port: Optional[int] = typer.Option(None, help="Bind port"),
):
    """Print the resolved configuration and exit."""
    config = _resolve_config(config_path, host, port, None, None, None, None, None)
    console.print(config_table(config))


def main() -> None:
    app()


if __name__ == "__main__":
    main()
