import struct
import unittest

from keycodes.keycodes import KeycodeConverter
from protocol.base_protocol import ProtocolError
from protocol.keyboard_comm import Keyboard
from protocol.macro_action import ActionText, ActionTap, ActionDown, ActionUp, ActionDelay, \
    macro_action_subtype, encode_delay, decode_delay, macro_serialize, macro_deserialize, \
    split_macro_buffer, join_macro_buffer, macro_save, macro_restore
from simulated_device import SimulatedDevice

MACRO_GET = 0x0E
MACRO_SET = 0x0F


class TestMacroCodec(unittest.TestCase):

    def test_subtype_promotion(self):
        self.assertEqual(macro_action_subtype(1, 0x04), 1)
        self.assertEqual(macro_action_subtype(1, 0xFF), 1)
        self.assertEqual(macro_action_subtype(1, 0x100), 5)
        self.assertEqual(macro_action_subtype(2, 0x1234), 6)
        self.assertEqual(macro_action_subtype(3, 0x7E00), 7)
        self.assertEqual(macro_action_subtype(5, 0x04), 1)
        self.assertEqual(macro_action_subtype(7, 0xFF), 3)
        self.assertEqual(macro_action_subtype(6, 0x1234), 6)
        self.assertEqual(macro_action_subtype(4, 500), 4)

    def test_delay_encoding(self):
        self.assertEqual(encode_delay(0), b"\x01\x01")
        self.assertEqual(encode_delay(254), b"\xff\x01")
        self.assertEqual(encode_delay(255), b"\x01\x02")
        self.assertEqual(encode_delay(500), b"\xf6\x02")
        for delay in (0, 1, 254, 255, 256, 500, 1000, 65024):
            lo, hi = encode_delay(delay)
            self.assertNotIn(0, (lo, hi))
            self.assertEqual(decode_delay(lo, hi), delay)
        with self.assertRaises(ValueError):
            encode_delay(65025)
        with self.assertRaises(ValueError):
            encode_delay(-1)

    def test_serialize_actions(self):
        self.assertEqual(ActionTap(0x04).serialize(), b"\x01\x01\x04")
        self.assertEqual(ActionDown(0xE1).serialize(), b"\x01\x02\xe1")
        self.assertEqual(ActionUp(0xE1).serialize(), b"\x01\x03\xe1")
        self.assertEqual(ActionTap(0x1234).serialize(), b"\x01\x05\x34\x12")
        self.assertEqual(ActionDown(0x0204).serialize(), b"\x01\x06\x04\x02")
        self.assertEqual(ActionDelay(500).serialize(), b"\x01\x04\xf6\x02")
        self.assertEqual(ActionText("Hi").serialize(), b"Hi")
        self.assertEqual(ActionTap(0).serialize(), b"")

    def test_text_cannot_hold_escape_bytes(self):
        with self.assertRaises(ValueError):
            ActionText("a\x01b").serialize()
        with self.assertRaises(ValueError):
            ActionText("a\x00b").serialize()

    def test_extended_keycode_cannot_end_in_zero(self):
        # TD(0), M0 and TO(0) would put a terminator inside the slot
        for action in (ActionTap(0x5700), ActionDown(0x7700), ActionUp(0x5200)):
            with self.assertRaises(ValueError):
                action.serialize()
        self.assertEqual(ActionTap(0x5701).serialize(), b"\x01\x05\x01\x57")

    def test_idempotence(self):
        actions = [
            ActionText("Hello, world"),
            ActionTap(0x04),
            ActionDelay(0),
            ActionDelay(500),
            ActionTap(0x1234),
            ActionDown(0xE1),
            ActionText("x"),
            ActionUp(0xE1),
            ActionDelay(255),
        ]
        self.assertEqual(macro_deserialize(macro_serialize(actions)), actions)

    def test_deserialize_stops_at_terminator(self):
        self.assertEqual(macro_deserialize(b"ab\x00cd"), [ActionText("ab")])
        self.assertEqual(macro_deserialize(b""), [])

    def test_deserialize_skips_malformed(self):
        self.assertEqual(macro_deserialize(b"a\x01\x09b"), [ActionText("a"), ActionText("b")])
        self.assertEqual(macro_deserialize(b"ab\x01\x05\x04"), [ActionText("ab")])
        self.assertEqual(macro_deserialize(b"ab\x01"), [ActionText("ab")])

    def test_multi_slot_law(self):
        slots = [
            [ActionText("first")],
            [],
            [ActionTap(0x04), ActionDelay(100), ActionTap(0x7E01)],
            [ActionDown(0xE0), ActionText("c"), ActionUp(0xE0)],
        ]
        buffer = join_macro_buffer(macro_serialize(actions) for actions in slots)
        self.assertEqual(buffer.count(b"\x00"), len(slots))
        self.assertEqual([macro_deserialize(slot) for slot in split_macro_buffer(buffer)], slots)

    def test_split_drops_unterminated_tail(self):
        self.assertEqual(split_macro_buffer(b"ab\x00cd\x00ef"), [b"ab", b"cd"])
        self.assertEqual(split_macro_buffer(b""), [])

    def test_save_restore(self):
        conv = KeycodeConverter()
        actions = [ActionText("hi"), ActionTap(0x04), ActionDown(0x0204), ActionDelay(20)]
        saved = macro_save(actions, conv)
        self.assertEqual(saved, [["text", "hi"], ["tap", "KC_A"], ["down", "LSFT(KC_A)"], ["delay", 20]])
        self.assertEqual(macro_restore(saved, conv), actions)
        with self.assertRaises(ValueError):
            macro_restore([["wiggle", 1]], conv)


class TestMacroStorage(unittest.IsolatedAsyncioTestCase):

    @staticmethod
    def keyboard(dev, count, memory):
        kb = Keyboard(dev)
        kb.macro_count = count
        kb.macro_memory = memory
        return kb

    async def test_partial_read(self):
        buffer = b"a" * 50 + b"\x00" + b"b" * 70 + b"\x00" + b"c" * 10 + b"\x00"
        buffer += b"\x00" * (300 - len(buffer))
        dev = SimulatedDevice()
        kb = self.keyboard(dev, 3, 300)

        dev.expect_buffer_read(MACRO_GET, 0, buffer[0:112])
        self.assertEqual(await kb.get_macro(0), [ActionText("a" * 50)])
        dev.finish()
        self.assertEqual(len(kb.macro_slots), 1)

        # already cached
        self.assertEqual(await kb.get_macro(0), [ActionText("a" * 50)])

        dev.expect_buffer_read(MACRO_GET, 112, buffer[112:224])
        self.assertEqual(await kb.get_macro(2), [ActionText("c" * 10)])
        self.assertEqual(await kb.get_macro(1), [ActionText("b" * 70)])
        dev.finish()

    async def test_partial_rewrite(self):
        buffer = b"a" * 50 + b"\x00" + b"b" * 70 + b"\x00" + b"c" * 10 + b"\x00"
        buffer += b"\x00" * (300 - len(buffer))
        dev = SimulatedDevice()
        kb = self.keyboard(dev, 3, 300)
        dev.expect_buffer_read(MACRO_GET, 0, buffer[0:112])
        dev.expect_buffer_read(MACRO_GET, 112, buffer[112:224])

        # only slot 1 onwards is rewritten, starting right after slot 0's terminator
        dev.expect_buffer_write(MACRO_SET, 51, b"xy\x00" + b"c" * 10 + b"\x00")
        await kb.set_macro(1, [ActionText("xy")])
        dev.finish()

        self.assertEqual(await kb.get_macro(1), [ActionText("xy")])
        self.assertEqual(await kb.get_macro(2), [ActionText("c" * 10)])

    async def test_unterminated_tail_is_a_slot(self):
        dev = SimulatedDevice()
        kb = self.keyboard(dev, 3, 8)
        dev.expect_buffer_read(MACRO_GET, 0, b"abc\x00defg")

        self.assertEqual(await kb.get_macro(1), [ActionText("defg")])
        self.assertEqual(await kb.get_macro(2), [])
        dev.finish()

    async def test_write_into_empty_slot(self):
        dev = SimulatedDevice()
        kb = self.keyboard(dev, 4, 16)
        dev.expect_buffer_read(MACRO_GET, 0, b"ab\x00" + b"\x00" * 13)

        actions = [ActionTap(0x04)]
        dev.expect_buffer_write(MACRO_SET, 4, b"\x01\x01\x04\x00" + b"\x00")
        await kb.set_macro(2, actions)
        dev.finish()
        self.assertEqual(await kb.get_macro(2), actions)

    async def test_overflow_sends_nothing(self):
        dev = SimulatedDevice()
        kb = self.keyboard(dev, 2, 8)
        dev.expect_buffer_read(MACRO_GET, 0, b"\x00" * 8)

        with self.assertRaises(ProtocolError):
            await kb.set_macro(0, [ActionText("too long for this")])
        dev.finish()

    async def test_unstorable_keycode_sends_nothing(self):
        dev = SimulatedDevice()
        kb = self.keyboard(dev, 2, 16)
        dev.expect_buffer_read(MACRO_GET, 0, b"\x00" * 16)

        with self.assertRaises(ValueError):
            await kb.set_macro(0, [ActionTap(0x5700), ActionText("b")])
        dev.finish()
        self.assertEqual(await kb.get_macro(0), [])

    async def test_macro_count_and_size(self):
        dev = SimulatedDevice()
        dev.expect_macro_info(16, 1024)
        kb = Keyboard(dev)

        await kb.reload_macros()
        self.assertEqual(kb.macro_count, 16)
        self.assertEqual(kb.macro_memory, 1024)
        dev.finish()

    async def test_reset(self):
        dev = SimulatedDevice()
        dev.expect("10", "10")
        kb = self.keyboard(dev, 2, 8)
        kb.macro_slots = [b"ab"]

        await kb.reset_macros()
        self.assertEqual(kb.macro_slots, [])
        dev.finish()

    async def test_raw_buffer_access(self):
        dev = SimulatedDevice()
        kb = self.keyboard(dev, 2, 64)
        dev.expect_buffer_read(MACRO_GET, 10, b"0123456789")
        self.assertEqual(await kb.get_macro_buffer(10, 10), b"0123456789")

        dev.expect(struct.pack(">BHB", MACRO_SET, 4, 3) + b"xyz", "0F")
        await kb.set_macro_buffer(4, b"xyz")
        dev.finish()
