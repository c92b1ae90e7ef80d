# SPDX-License-Identifier: GPL-2.0-or-later
"""
Nordic UART Service (NUS) transport for BLE keyboards.

Reports are written to the TX characteristic in 20-byte zero-padded chunks.
A report whose length is a multiple of the chunk size (including an empty
one) is followed by one all-zero chunk so the peripheral sees its end.
Notifications on the RX characteristic are delivered as inbound reports.
"""
import asyncio
import logging

from bleak import BleakClient, BleakScanner
from bleak.exc import BleakError

from transport.base import DeviceDescriptor, Transport, TransportError
from util import chunks

NUS_SERVICE_UUID = "6e400001-b5a3-f393-e0a9-e50e24dcca9e"
NUS_TX_CHARACTERISTIC_UUID = "6e400002-b5a3-f393-e0a9-e50e24dcca9e"  # central -> peripheral
NUS_RX_CHARACTERISTIC_UUID = "6e400003-b5a3-f393-e0a9-e50e24dcca9e"  # peripheral -> central

NUS_MTU = 20
DEFAULT_NAME_PREFIX = "(BMP)"
SCAN_TIMEOUT = 5.0


def nus_chunks(data, mtu=NUS_MTU):
    out = [bytes(chunk) + b"\x00" * (mtu - len(chunk)) for chunk in chunks(data, mtu)]
    if len(data) % mtu == 0:
        out.append(bytes(mtu))
    return out


class BleNusTransport(Transport):

    def __init__(self, name_prefix=DEFAULT_NAME_PREFIX, scan_timeout=SCAN_TIMEOUT, mtu=NUS_MTU):
        super().__init__()
        self.name_prefix = name_prefix
        self.scan_timeout = scan_timeout
        self.mtu = mtu
        self.client = None
        self.address = None
        self.discovered = {}

    @property
    def connected(self):
        return self.client is not None and self.client.is_connected

    async def get_device_list(self):
        try:
            found = await BleakScanner.discover(timeout=self.scan_timeout)
        except BleakError as e:
            raise TransportError("BLE scan failed: {}".format(e)) from e

        self.discovered = {}
        devices = []
        for dev in found:
            name = dev.name or ""
            if self.name_prefix and not name.startswith(self.name_prefix):
                continue
            self.discovered[dev.address] = dev
            devices.append(DeviceDescriptor(name=name, opened=dev.address == self.address, path=dev.address))
        return devices

    async def open(self, selector, on_connect=None):
        if self.connected:
            return
        desc = self._select(await self.get_device_list(), selector)
        client = BleakClient(self.discovered.get(desc.path, desc.path),
                             disconnected_callback=self._on_disconnect)
        try:
            await client.connect()
            await client.start_notify(NUS_RX_CHARACTERISTIC_UUID, self._on_notify)
        except (BleakError, asyncio.TimeoutError, OSError) as e:
            if client.is_connected:
                await client.disconnect()
            raise TransportError("BLE connect failed for {}: {}".format(desc.path, e)) from e

        self.client = client
        self.address = desc.path
        logging.info("ble: connected to %s (%s)", desc.name, desc.path)
        if on_connect is not None:
            on_connect()

    async def close(self):
        if self.client is None:
            return
        client, self.client = self.client, None
        self.address = None
        try:
            if client.is_connected:
                await client.stop_notify(NUS_RX_CHARACTERISTIC_UUID)
                await client.disconnect()
        except BleakError as e:
            raise TransportError("BLE disconnect failed: {}".format(e)) from e
        finally:
            logging.info("ble: closed")
            self._notify_close()

    async def write(self, report):
        if not self.connected:
            raise TransportError("not connected")
        logging.debug("ble: writing %s", bytes(report[:8]).hex())
        try:
            for chunk in nus_chunks(report, self.mtu):
                await self.client.write_gatt_char(NUS_TX_CHARACTERISTIC_UUID, chunk, response=True)
        except BleakError as e:
            raise TransportError("BLE write failed: {}".format(e)) from e

    def _on_notify(self, _sender, data):
        self._notify_receive(bytes(data))

    def _on_disconnect(self, client):
        # an explicit close() has already detached the client
        if self.client is not client:
            return
        self.client = None
        self.address = None
        logging.info("ble: peripheral disconnected")
        self._notify_close()
