# SPDX-License-Identifier: GPL-2.0-or-later
"""Command-line entry point: inspect, back up and restore a Vial keyboard."""
import asyncio
import logging

import typer

from protocol.channel import ChannelError
from protocol.keyboard_comm import Keyboard, ProtocolError
from transport.base import TransportError
from util import init_logger

app = typer.Typer(help="Backup and restore the configuration of Vial keyboards")

ERRORS = (TransportError, ChannelError, ProtocolError)


def _transport(ble):
    if ble:
        from transport.ble_nus import BleNusTransport
        return BleNusTransport()
    from transport.hid_transport import HidTransport
    return HidTransport()


def _selector(device):
    """ A numeric selector picks a device by list index, anything else matches path or name """
    if device.isdigit():
        return int(device)
    return device


def _run(coro, debug):
    init_logger(level=logging.DEBUG if debug else logging.WARNING)
    try:
        return asyncio.run(coro)
    except ERRORS as exc:
        typer.echo("Error: {}".format(exc), err=True)
        raise typer.Exit(code=1) from None


async def _with_keyboard(ble, device, action):
    keyboard = Keyboard(_transport(ble))
    await keyboard.connect(_selector(device))
    try:
        return await action(keyboard)
    finally:
        await keyboard.close()


@app.command("list")
def list_devices(
    ble: bool = typer.Option(False, "--ble", help="Scan for BLE keyboards instead of USB"),
    debug: bool = typer.Option(False, "--debug", help="Log protocol traffic"),
):
    """List connected keyboards."""
    async def scan():
        return await _transport(ble).get_device_list()

    devices = _run(scan(), debug)
    if not devices:
        typer.echo("No keyboards found")
        return
    for idx, desc in enumerate(devices):
        typer.echo("{}: {} [{:04X}:{:04X}] {}".format(idx, desc.name, desc.vid, desc.pid, desc.path))


@app.command("info")
def info(
    device: str = typer.Option("0", "--device", help="Device index, path or name"),
    ble: bool = typer.Option(False, "--ble", help="Connect over BLE instead of USB"),
    debug: bool = typer.Option(False, "--debug", help="Log protocol traffic"),
):
    """Show protocol versions and feature counts of a keyboard."""
    async def describe(keyboard):
        return [
            ("Keyboard id", "0x{:016X}".format(keyboard.keyboard_id)),
            ("VIA protocol", keyboard.via_protocol),
            ("Vial protocol", keyboard.vial_protocol),
            ("Matrix", "{} rows x {} cols".format(keyboard.rows, keyboard.cols)),
            ("Layers", keyboard.layers),
            ("Encoders", keyboard.encoder_count),
            ("Macros", "{} ({} bytes)".format(keyboard.macro_count, keyboard.macro_memory)),
            ("Tap dance", keyboard.tap_dance_count),
            ("Combos", keyboard.combo_count),
            ("Key overrides", keyboard.key_override_count),
        ]

    for name, value in _run(_with_keyboard(ble, device, describe), debug):
        typer.echo("{}: {}".format(name, value))


@app.command("dump")
def dump(
    path: str = typer.Argument(..., help="File to write the layout to"),
    device: str = typer.Option("0", "--device", help="Device index, path or name"),
    ble: bool = typer.Option(False, "--ble", help="Connect over BLE instead of USB"),
    debug: bool = typer.Option(False, "--debug", help="Log protocol traffic"),
):
    """Save the keyboard's configuration to a file."""
    async def save(keyboard):
        return await keyboard.save_layout()

    data = _run(_with_keyboard(ble, device, save), debug)
    with open(path, "wb") as outf:
        outf.write(data)
    typer.echo("Saved layout to {}".format(path))


@app.command("restore")
def restore(
    path: str = typer.Argument(..., help="Layout file written by dump"),
    device: str = typer.Option("0", "--device", help="Device index, path or name"),
    ble: bool = typer.Option(False, "--ble", help="Connect over BLE instead of USB"),
    debug: bool = typer.Option(False, "--debug", help="Log protocol traffic"),
):
    """Write a saved configuration back to the keyboard."""
    try:
        with open(path, "rb") as inf:
            data = inf.read()
    except OSError as exc:
        typer.echo("Error: {}".format(exc), err=True)
        raise typer.Exit(code=1) from None

    async def load(keyboard):
        await keyboard.restore_layout(data)

    _run(_with_keyboard(ble, device, load), debug)
    typer.echo("Restored layout from {}".format(path))


def run():
    app()


if __name__ == "__main__":
    run()
