# SPDX-License-Identifier: GPL-2.0-or-later
"""
Transport capability consumed by the protocol client.

A transport is connection-oriented and message based: write() sends one
report, inbound reports are pushed to the receive callback in arrival order,
and the close callback fires once when the connection goes away.
"""
import logging
from dataclasses import dataclass


class TransportError(Exception):
    """Raised when opening, writing to or closing a transport fails."""
    pass


@dataclass(frozen=True)
class DeviceDescriptor:
    name: str
    vid: int = 0
    pid: int = 0
    opened: bool = False
    usage: int = 0
    usage_page: int = 0
    path: object = None


class Transport:

    def __init__(self):
        self.receive_callback = None
        self.close_callback = None

    @property
    def connected(self):
        raise NotImplementedError

    async def get_device_list(self):
        raise NotImplementedError

    async def open(self, selector, on_connect=None):
        raise NotImplementedError

    async def close(self):
        raise NotImplementedError

    async def write(self, report):
        raise NotImplementedError

    def set_receive_callback(self, callback):
        self.receive_callback = callback

    def set_close_callback(self, callback):
        self.close_callback = callback

    def _notify_receive(self, report):
        logging.debug("transport: received %s", bytes(report[:8]).hex())
        if self.receive_callback is not None:
            self.receive_callback(bytes(report))

    def _notify_close(self):
        if self.close_callback is not None:
            self.close_callback()

    @staticmethod
    def _select(devices, selector):
        """ Resolves a selector (list index, descriptor or path) against an enumerated device list """
        if isinstance(selector, DeviceDescriptor):
            return selector
        if isinstance(selector, int):
            if not 0 <= selector < len(devices):
                raise TransportError("no device at index {}".format(selector))
            return devices[selector]
        for desc in devices:
            if desc.path == selector or desc.name == selector:
                return desc
        raise TransportError("no device matching {!r}".format(selector))
