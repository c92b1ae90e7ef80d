# SPDX-License-Identifier: GPL-2.0-or-later
"""
Tap dance entries over the Vial dynamic entry sub-protocol.

Tap dance entry format (10 bytes, little-endian):
    on_tap: keycode for single tap (uint16)
    on_hold: keycode for hold (uint16)
    on_double_tap: keycode for double tap (uint16)
    on_tap_hold: keycode for tap then hold (uint16)
    tapping_term: timing in ms (uint16)
"""
import struct

from protocol.base_protocol import BaseProtocol
from protocol.constants import DYNAMIC_VIAL_TAP_DANCE_GET, DYNAMIC_VIAL_TAP_DANCE_SET

TAP_DANCE_FORMAT = "<HHHHH"


class TapDanceEntry:

    def __init__(self, args=None):
        if args is None:
            args = [0] * 5
        self.on_tap, self.on_hold, self.on_double_tap, self.on_tap_hold, self.tapping_term = args

    def serialize(self):
        return struct.pack(TAP_DANCE_FORMAT, self.on_tap, self.on_hold, self.on_double_tap,
                           self.on_tap_hold, self.tapping_term)

    def keycodes(self):
        return [self.on_tap, self.on_hold, self.on_double_tap, self.on_tap_hold]

    def save(self, converter):
        """Serializes into layout file format: four key names and the tapping term."""
        return [converter.serialize(kc) for kc in self.keycodes()] + [self.tapping_term]

    @classmethod
    def restore(cls, data, converter):
        keys = [converter.deserialize(kc, reraise=True) for kc in data[:4]]
        return cls(keys + [data[4]])

    def __eq__(self, other):
        return isinstance(other, TapDanceEntry) and self.serialize() == other.serialize()

    def __repr__(self):
        return "TapDance<tap=0x{:04X} hold=0x{:04X} double_tap=0x{:04X} tap_hold=0x{:04X} term={}>".format(
            self.on_tap, self.on_hold, self.on_double_tap, self.on_tap_hold, self.tapping_term)


class ProtocolTapDance(BaseProtocol):

    tap_dance_entries = None

    async def get_tap_dance(self, ids):
        """Reads tap dance entries by index; returns them in the order requested."""
        ids = list(ids)
        raw = await self._retrieve_dynamic_entries(DYNAMIC_VIAL_TAP_DANCE_GET, ids, TAP_DANCE_FORMAT)
        entries = [TapDanceEntry(e) for e in raw]
        self.tap_dance_entries.update(zip(ids, entries))
        return entries

    async def set_tap_dance(self, entries):
        """Writes {index: TapDanceEntry}."""
        entries = dict(entries)
        await self._store_dynamic_entries(DYNAMIC_VIAL_TAP_DANCE_SET,
                                          [(idx, e.serialize()) for idx, e in entries.items()])
        self.tap_dance_entries.update(entries)

    async def save_tap_dance(self):
        entries = await self.get_tap_dance(range(self.tap_dance_count))
        return [e.save(self.converter) for e in entries]

