import asyncio
import threading
import time
import unittest
from types import SimpleNamespace
from unittest.mock import patch

from bleak.exc import BleakError

from transport.base import DeviceDescriptor, Transport, TransportError
from transport.ble_nus import BleNusTransport, NUS_RX_CHARACTERISTIC_UUID, NUS_TX_CHARACTERISTIC_UUID, nus_chunks
from transport.hid_transport import HidTransport, RAWHID_USAGE, RAWHID_USAGE_PAGE


class FakeHidDevice:

    def __init__(self, backend):
        self.backend = backend
        self.path = None
        self.closed = False

    def open_path(self, path):
        if path not in self.backend.openable:
            raise OSError("open failed")
        self.path = path

    def write(self, data):
        self.backend.written.append(bytes(data))
        if self.backend.answer:
            self.backend.push(bytes(data[1:]))
        return len(data)

    def read(self, length, timeout_ms):
        with self.backend.lock:
            if self.backend.inbound:
                return list(self.backend.inbound.pop(0))
        if self.backend.read_error:
            raise OSError("read failed")
        time.sleep(timeout_ms / 1000)
        return []

    def close(self):
        self.closed = True


class FakeHidBackend:
    """ Stands in for the hid module: enumerate() and device() """

    def __init__(self, descriptors, answer=False):
        self.descriptors = descriptors
        self.openable = {desc["path"] for desc in descriptors}
        self.answer = answer
        self.written = []
        self.inbound = []
        self.lock = threading.Lock()
        self.read_error = False
        self.devices = []

    def enumerate(self):
        return list(self.descriptors)

    def device(self):
        dev = FakeHidDevice(self)
        self.devices.append(dev)
        return dev

    def push(self, report):
        with self.lock:
            self.inbound.append(report)


def hid_desc(path, usage_page=RAWHID_USAGE_PAGE, usage=RAWHID_USAGE, name="Test keyboard"):
    return {"path": path, "vendor_id": 0xFEED, "product_id": 0x0001, "product_string": name,
            "usage_page": usage_page, "usage": usage}


class TestNusChunks(unittest.TestCase):

    def test_short_report(self):
        self.assertEqual(nus_chunks(b"\x01\x02"), [b"\x01\x02" + bytes(18)])

    def test_padding_and_terminator(self):
        report = bytes(range(1, 33))
        chunks = nus_chunks(report)
        self.assertEqual(len(chunks), 2)
        self.assertEqual(chunks[1], bytes(range(21, 33)) + bytes(8))

        chunks = nus_chunks(bytes(range(1, 41)))
        self.assertEqual(len(chunks), 3)
        self.assertEqual(chunks[2], bytes(20))

    def test_empty_report(self):
        self.assertEqual(nus_chunks(b""), [bytes(20)])


class TestSelect(unittest.TestCase):

    def test_select(self):
        devices = [DeviceDescriptor("one", path="a"), DeviceDescriptor("two", path="b")]
        self.assertIs(Transport._select(devices, 1), devices[1])
        self.assertIs(Transport._select(devices, "b"), devices[1])
        self.assertIs(Transport._select(devices, "one"), devices[0])
        with self.assertRaises(TransportError):
            Transport._select(devices, 2)
        with self.assertRaises(TransportError):
            Transport._select(devices, "c")


class TestHidTransport(unittest.IsolatedAsyncioTestCase):

    async def test_enumerate_filters_rawhid(self):
        backend = FakeHidBackend([
            hid_desc(b"kbd-raw"),
            hid_desc(b"kbd-raw"),
            hid_desc(b"kbd-boot", usage_page=0x0001, usage=0x06),
            hid_desc(b"other-raw", name=None),
        ])
        transport = HidTransport(backend=backend)

        devices = await transport.get_device_list()
        self.assertEqual([desc.path for desc in devices], [b"kbd-raw", b"other-raw"])
        self.assertEqual(devices[0].name, "Test keyboard")
        self.assertEqual(devices[1].name, "")
        self.assertFalse(devices[0].opened)

    async def test_open_failure(self):
        backend = FakeHidBackend([hid_desc(b"kbd-raw")])
        backend.openable = set()
        transport = HidTransport(backend=backend)

        with self.assertRaises(TransportError):
            await transport.open(0)
        self.assertFalse(transport.connected)

    async def test_write_and_receive(self):
        backend = FakeHidBackend([hid_desc(b"kbd-raw")], answer=True)
        transport = HidTransport(backend=backend, read_timeout_ms=5)
        received = asyncio.Queue()
        transport.set_receive_callback(received.put_nowait)
        connected = []

        await transport.open(0, on_connect=lambda: connected.append(True))
        self.assertEqual(connected, [True])
        self.assertTrue(transport.connected)
        self.assertTrue((await transport.get_device_list())[0].opened)

        await transport.write(b"\x01\x02")
        # report id first, then the report padded to its fixed length
        self.assertEqual(backend.written, [b"\x00\x01\x02" + bytes(30)])
        report = await asyncio.wait_for(received.get(), 1)
        self.assertEqual(report, b"\x01\x02" + bytes(30))

        await transport.close()

    async def test_write_rejects_long_report(self):
        backend = FakeHidBackend([hid_desc(b"kbd-raw")])
        transport = HidTransport(backend=backend, read_timeout_ms=5)
        await transport.open(0)

        with self.assertRaises(RuntimeError):
            await transport.write(bytes(33))
        await transport.close()

    async def test_write_when_closed(self):
        transport = HidTransport(backend=FakeHidBackend([]))
        with self.assertRaises(TransportError):
            await transport.write(b"\x01")

    async def test_close_notifies_once(self):
        backend = FakeHidBackend([hid_desc(b"kbd-raw")])
        transport = HidTransport(backend=backend, read_timeout_ms=5)
        closed = []
        transport.set_close_callback(lambda: closed.append(True))

        await transport.open(0)
        await transport.close()
        await transport.close()
        self.assertEqual(closed, [True])
        self.assertTrue(backend.devices[0].closed)
        self.assertFalse(transport.connected)

    async def test_read_error_closes(self):
        backend = FakeHidBackend([hid_desc(b"kbd-raw")])
        transport = HidTransport(backend=backend, read_timeout_ms=5)
        closed = asyncio.Event()
        transport.set_close_callback(closed.set)

        await transport.open(0)
        backend.read_error = True
        await asyncio.wait_for(closed.wait(), 1)
        self.assertFalse(transport.connected)


class FakeBleakClient:

    def __init__(self, stack, address, disconnected_callback):
        self.stack = stack
        self.address = address
        self.disconnected_callback = disconnected_callback
        self.is_connected = False
        self.notify = {}

    async def connect(self):
        if self.stack.connect_error:
            raise BleakError("connect failed")
        self.is_connected = True

    async def start_notify(self, uuid, callback):
        self.notify[uuid] = callback

    async def stop_notify(self, uuid):
        del self.notify[uuid]

    async def disconnect(self):
        self.is_connected = False

    async def write_gatt_char(self, uuid, data, response=False):
        if self.stack.write_error:
            raise BleakError("write failed")
        self.stack.written.append((uuid, bytes(data)))

    def drop(self):
        """ Peripheral goes away """
        self.is_connected = False
        self.disconnected_callback(self)


class FakeBleStack:
    """ Stands in for BleakScanner (discover) and BleakClient """

    def __init__(self, devices):
        self.devices = devices
        self.clients = []
        self.written = []
        self.connect_error = False
        self.write_error = False

    async def discover(self, timeout=None):
        return list(self.devices)

    def client(self, address, disconnected_callback=None):
        client = FakeBleakClient(self, address, disconnected_callback)
        self.clients.append(client)
        return client


class TestBleNusTransport(unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        self.stack = FakeBleStack([SimpleNamespace(name="(BMP) Test keyboard", address="AA:BB"),
                                   SimpleNamespace(name="Headphones", address="CC:DD"),
                                   SimpleNamespace(name=None, address="EE:FF")])
        for target, fake in (("transport.ble_nus.BleakScanner", self.stack),
                             ("transport.ble_nus.BleakClient", self.stack.client)):
            patcher = patch(target, fake)
            patcher.start()
            self.addCleanup(patcher.stop)

    async def open_transport(self):
        transport = BleNusTransport()
        closed = []
        transport.set_close_callback(lambda: closed.append(True))
        await transport.open(0)
        return transport, closed

    async def test_scan_filters_name_prefix(self):
        devices = await BleNusTransport().get_device_list()
        self.assertEqual([(desc.name, desc.path) for desc in devices], [("(BMP) Test keyboard", "AA:BB")])
        self.assertFalse(devices[0].opened)

    async def test_write_sends_chunks(self):
        transport, _ = await self.open_transport()
        self.assertTrue(transport.connected)
        self.assertIn(NUS_RX_CHARACTERISTIC_UUID, self.stack.clients[0].notify)

        await transport.write(bytes(range(1, 33)))
        self.assertEqual(self.stack.written, [
            (NUS_TX_CHARACTERISTIC_UUID, bytes(range(1, 21))),
            (NUS_TX_CHARACTERISTIC_UUID, bytes(range(21, 33)) + bytes(8)),
        ])

        # a report that fills its last chunk is followed by an empty one
        self.stack.written = []
        await transport.write(bytes(range(1, 41)))
        self.assertEqual([data for _, data in self.stack.written],
                         [bytes(range(1, 21)), bytes(range(21, 41)), bytes(20)])
        await transport.close()

    async def test_notify_is_received(self):
        transport, _ = await self.open_transport()
        received = []
        transport.set_receive_callback(received.append)

        self.stack.clients[0].notify[NUS_RX_CHARACTERISTIC_UUID](None, bytearray(b"\x01\x02"))
        self.assertEqual(received, [b"\x01\x02"])
        await transport.close()

    async def test_write_error(self):
        transport, _ = await self.open_transport()
        self.stack.write_error = True

        with self.assertRaises(TransportError):
            await transport.write(b"\x01")
        await transport.close()

    async def test_write_when_closed(self):
        with self.assertRaises(TransportError):
            await BleNusTransport().write(b"\x01")

    async def test_connect_failure(self):
        self.stack.connect_error = True
        transport = BleNusTransport()

        with self.assertRaises(TransportError):
            await transport.open(0)
        self.assertFalse(transport.connected)

    async def test_peripheral_disconnect_notifies_once(self):
        transport, closed = await self.open_transport()

        self.stack.clients[0].drop()
        self.assertEqual(closed, [True])
        self.assertFalse(transport.connected)

        await transport.close()
        self.assertEqual(closed, [True])

    async def test_disconnect_after_close_is_ignored(self):
        transport, closed = await self.open_transport()
        client = self.stack.clients[0]

        await transport.close()
        self.assertEqual(closed, [True])
        self.assertEqual(client.notify, {})

        client.drop()
        self.assertEqual(closed, [True])
