# SPDX-License-Identifier: GPL-2.0-or-later
"""
Combo entries over the Vial dynamic entry sub-protocol.

Combo entry format (10 bytes, little-endian):
    input[4]: 4 trigger keycodes (uint16 each), KC_NO for unused triggers
    output: output keycode (uint16)
"""
import struct

from protocol.base_protocol import BaseProtocol
from protocol.constants import DYNAMIC_VIAL_COMBO_GET, DYNAMIC_VIAL_COMBO_SET

COMBO_FORMAT = "<HHHHH"


class ComboEntry:

    def __init__(self, args=None):
        if args is None:
            args = [0] * 5
        self.keys = list(args[:4])
        self.output = args[4]

    def serialize(self):
        return struct.pack(COMBO_FORMAT, *self.keys, self.output)

    def save(self, converter):
        return [converter.serialize(kc) for kc in self.keys + [self.output]]

    @classmethod
    def restore(cls, data, converter):
        return cls([converter.deserialize(kc, reraise=True) for kc in data[:5]])

    def __eq__(self, other):
        return isinstance(other, ComboEntry) and self.serialize() == other.serialize()

    def __repr__(self):
        return "Combo<keys={} output=0x{:04X}>".format(
            ",".join("0x{:04X}".format(kc) for kc in self.keys), self.output)


class ProtocolCombo(BaseProtocol):

    combo_entries = None

    async def get_combo(self, ids):
        """Reads combo entries by index; returns them in the order requested."""
        ids = list(ids)
        raw = await self._retrieve_dynamic_entries(DYNAMIC_VIAL_COMBO_GET, ids, COMBO_FORMAT)
        entries = [ComboEntry(e) for e in raw]
        self.combo_entries.update(zip(ids, entries))
        return entries

    async def set_combo(self, entries):
        """Writes {index: ComboEntry}."""
        entries = dict(entries)
        await self._store_dynamic_entries(DYNAMIC_VIAL_COMBO_SET,
                                          [(idx, e.serialize()) for idx, e in entries.items()])
        self.combo_entries.update(entries)

    async def save_combo(self):
        entries = await self.get_combo(range(self.combo_count))
        return [e.save(self.converter) for e in entries]

