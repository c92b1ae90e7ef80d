import struct
import unittest

from protocol.keyboard_comm import Keyboard
from protocol.qmk_settings import QSID_WIDTHS, SETTINGS_TABS, qsid_serialize, qsid_deserialize
from simulated_device import SimulatedDevice


def qsid_list(*qsids):
    return struct.pack("<{}H".format(len(qsids)), *qsids)


class TestSettingsCatalog(unittest.TestCase):

    def test_widths(self):
        self.assertEqual(QSID_WIDTHS[7], 2)
        self.assertEqual(QSID_WIDTHS[21], 2)
        self.assertEqual(QSID_WIDTHS[1], 1)
        self.assertEqual(QSID_WIDTHS[4], 1)

    def test_bit_fields_share_width(self):
        for tab in SETTINGS_TABS:
            for field in tab["fields"]:
                self.assertEqual(field["width"], QSID_WIDTHS[field["qsid"]], field["title"])
                if field["type"] == "boolean":
                    self.assertLess(field["bit"], 8 * field["width"])

    def test_value_encoding(self):
        self.assertEqual(qsid_serialize(7, 200), b"\xc8\x00")
        self.assertEqual(qsid_serialize(1, 5), b"\x05")
        self.assertEqual(qsid_serialize(1000, 1), b"\x01\x00\x00\x00")
        self.assertEqual(qsid_deserialize(7, b"\xc8\x00\xff\xff"), 200)
        self.assertEqual(qsid_deserialize(1, b"\x05\xff"), 5)


class TestSettingsProtocol(unittest.IsolatedAsyncioTestCase):

    async def test_query_pages_until_exhausted(self):
        dev = SimulatedDevice()
        dev.expect("FE090000", qsid_list(1, 2, 3, 0xFFFF))
        dev.expect("FE090300", qsid_list(7, 99, 0xFFFF))
        dev.expect("FE096300", qsid_list(0xFFFF))
        kb = Keyboard(dev)

        self.assertEqual(await kb.query_quantum_settings(), {1, 2, 3, 7, 99})
        dev.finish()

    async def test_get_masks_to_width(self):
        dev = SimulatedDevice()
        dev.expect("FE0A0700", b"\x00\xc8\x00\xaa\xbb")
        dev.expect("FE0A0100", b"\x00\x05\xaa\xbb\xcc")
        # rejected by the firmware
        dev.expect("FE0A1500", b"\x01\xff\xff")
        kb = Keyboard(dev)

        values = await kb.get_quantum_settings([7, 1, 21])
        self.assertEqual(values, {7: 200, 1: 5})
        self.assertEqual(kb.settings, {7: 200, 1: 5})
        dev.finish()

    async def test_set(self):
        dev = SimulatedDevice()
        dev.expect("FE0B0700C800", "00")
        dev.expect("FE0B15000003", "00")
        dev.expect("FE0B010001", "00")
        kb = Keyboard(dev)

        # bit fields are written as the whole word of their qsid
        await kb.set_quantum_settings({7: 200, 21: 0x0300, 1: 1})
        self.assertEqual(kb.settings[21], 0x0300)
        dev.finish()

    async def test_reset(self):
        dev = SimulatedDevice()
        dev.expect("FE0C", "00")
        kb = Keyboard(dev)
        kb.settings = {7: 200}

        await kb.reset_quantum_settings()
        self.assertEqual(kb.settings, {})
        dev.finish()

    async def test_save_and_restore(self):
        dev = SimulatedDevice()
        dev.expect("FE090000", qsid_list(2, 7, 500, 0xFFFF))
        dev.expect("FE09F401", qsid_list(0xFFFF))
        dev.expect("FE0A0200", b"\x00\x32\x00")
        dev.expect("FE0A0700", b"\x00\xc8\x00")
        kb = Keyboard(dev)

        # qsid 500 is not in the catalog, so its width is unknown and it is left out
        saved = await kb.save_settings()
        self.assertEqual(saved, {"2": 50, "7": 200})
        dev.finish()

        dev.expect("FE0B02003200", "00")
        dev.expect("FE0B0700C800", "00")
        await kb.restore_settings(saved)
        dev.finish()
