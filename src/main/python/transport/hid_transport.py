# SPDX-License-Identifier: GPL-2.0-or-later
import asyncio
import logging
import sys

import hid

from transport.base import DeviceDescriptor, Transport, TransportError
from util import MSG_LEN, pad_report

# VIA/Vial raw HID interface
RAWHID_USAGE_PAGE = 0xFF60
RAWHID_USAGE = 0x61

READ_TIMEOUT_MS = 50

# Enable non-exclusive mode on macOS to allow multiple HID clients
if sys.platform == "darwin" and hasattr(hid, "darwin_set_open_exclusive"):
    hid.darwin_set_open_exclusive(0)


def is_rawhid(desc):
    return desc["usage_page"] == RAWHID_USAGE_PAGE and desc["usage"] == RAWHID_USAGE


class HidTransport(Transport):
    """ Raw HID reports through hidapi, read by a task polling the device in a worker thread """

    def __init__(self, backend=hid, msg_len=MSG_LEN, read_timeout_ms=READ_TIMEOUT_MS):
        super().__init__()
        self.backend = backend
        self.msg_len = msg_len
        self.read_timeout_ms = read_timeout_ms
        self.dev = None
        self.desc = None
        self.reader = None

    @property
    def connected(self):
        return self.dev is not None

    async def get_device_list(self):
        devices = []
        seen_paths = set()
        for desc in self.backend.enumerate():
            if not is_rawhid(desc) or desc["path"] in seen_paths:
                continue
            seen_paths.add(desc["path"])
            devices.append(DeviceDescriptor(
                name=desc.get("product_string") or "",
                vid=desc["vendor_id"],
                pid=desc["product_id"],
                opened=self.desc is not None and self.desc.path == desc["path"],
                usage=desc["usage"],
                usage_page=desc["usage_page"],
                path=desc["path"],
            ))
        return devices

    async def open(self, selector, on_connect=None):
        if self.connected:
            return
        desc = self._select(await self.get_device_list(), selector)
        dev = self.backend.device()
        try:
            dev.open_path(desc.path)
        except OSError as e:
            raise TransportError("unable to open {}: {}".format(desc.name, e)) from e
        self.dev = dev
        self.desc = desc
        self.reader = asyncio.get_running_loop().create_task(self._read_loop(dev))
        logging.info("hid: opened %s (%04X:%04X)", desc.name, desc.vid, desc.pid)
        if on_connect is not None:
            on_connect()

    async def close(self):
        if self.dev is None:
            return
        dev, self.dev = self.dev, None
        reader, self.reader = self.reader, None
        # the reader notices the device is gone after at most one read timeout
        if reader is not None and reader is not asyncio.current_task():
            await reader
        dev.close()
        self.desc = None
        logging.info("hid: closed")
        self._notify_close()

    async def write(self, report):
        if self.dev is None:
            raise TransportError("device is not open")
        msg = pad_report(report, self.msg_len)
        logging.debug("hid: writing %s", msg[:8].hex())
        try:
            # add 00 at start for hidapi report id
            written = await asyncio.to_thread(self.dev.write, b"\x00" + msg)
        except OSError as e:
            raise TransportError("write failed: {}".format(e)) from e
        if written != len(msg) + 1:
            raise TransportError("write returned {}, expected {}".format(written, len(msg) + 1))

    async def _read_loop(self, dev):
        while self.dev is dev:
            try:
                data = await asyncio.to_thread(dev.read, self.msg_len, self.read_timeout_ms)
            except OSError as e:
                logging.warning("hid: read failed: %s", e)
                if self.dev is dev:
                    await self.close()
                return
            if data and self.dev is dev:
                self._notify_receive(bytes(data))
