# SPDX-License-Identifier: GPL-2.0-or-later
"""
Key override entries over the Vial dynamic entry sub-protocol.

Key override entry format (10 bytes, little-endian):
    trigger: trigger keycode (uint16)
    replacement: replacement keycode (uint16)
    layers: layer mask (uint16), one bit per layer
    trigger_mods: required modifiers (uint8)
    negative_mod_mask: modifiers that cancel override (uint8)
    suppressed_mods: modifiers to suppress (uint8)
    options: option flags (uint8) - bit 7 = enabled
"""
import struct

from protocol.base_protocol import BaseProtocol
from protocol.constants import DYNAMIC_VIAL_KEY_OVERRIDE_GET, DYNAMIC_VIAL_KEY_OVERRIDE_SET

KEY_OVERRIDE_FORMAT = "<HHHBBBB"


class KeyOverrideOptions:
    """Options for key override entries."""

    def __init__(self, data=0):
        self.activation_trigger_down = bool(data & (1 << 0))
        self.activation_required_mod_down = bool(data & (1 << 1))
        self.activation_negative_mod_up = bool(data & (1 << 2))
        self.one_mod = bool(data & (1 << 3))
        self.no_reregister_trigger = bool(data & (1 << 4))
        self.no_unregister_on_other_key_down = bool(data & (1 << 5))
        # Bit 6 reserved
        self.enabled = bool(data & (1 << 7))

    def serialize(self):
        return (
            (int(self.activation_trigger_down) << 0)
            | (int(self.activation_required_mod_down) << 1)
            | (int(self.activation_negative_mod_up) << 2)
            | (int(self.one_mod) << 3)
            | (int(self.no_reregister_trigger) << 4)
            | (int(self.no_unregister_on_other_key_down) << 5)
            | (int(self.enabled) << 7)
        )

    def __eq__(self, other):
        return isinstance(other, KeyOverrideOptions) and self.serialize() == other.serialize()

    def __repr__(self):
        return "KeyOverrideOptions<{}>".format(self.serialize())


class KeyOverrideEntry:

    def __init__(self, args=None):
        if args is None:
            args = [0] * 7
        self.trigger, self.replacement, self.layers, self.trigger_mods, \
            self.negative_mod_mask, self.suppressed_mods, opt = args
        self.options = KeyOverrideOptions(opt)

    def serialize(self):
        return struct.pack(
            KEY_OVERRIDE_FORMAT,
            self.trigger,
            self.replacement,
            self.layers,
            self.trigger_mods,
            self.negative_mod_mask,
            self.suppressed_mods,
            self.options.serialize()
        )

    def __repr__(self):
        return (
            "KeyOverride<trigger=0x{:04X} replacement=0x{:04X} layers=0x{:04X} trigger_mods={} "
            "negative_mod_mask={} suppressed_mods={} options={}>".format(
                self.trigger, self.replacement, self.layers, self.trigger_mods,
                self.negative_mod_mask, self.suppressed_mods, self.options
            )
        )

    def __eq__(self, other):
        return isinstance(other, KeyOverrideEntry) and self.serialize() == other.serialize()

    def save(self, converter):
        """Serializes into layout file format."""
        return {
            "trigger": converter.serialize(self.trigger),
            "replacement": converter.serialize(self.replacement),
            "layers": self.layers,
            "trigger_mods": self.trigger_mods,
            "negative_mod_mask": self.negative_mod_mask,
            "suppressed_mods": self.suppressed_mods,
            "options": self.options.serialize()
        }

    @classmethod
    def restore(cls, data, converter):
        return cls([
            converter.deserialize(data["trigger"], reraise=True),
            converter.deserialize(data["replacement"], reraise=True),
            data["layers"] & 0xFFFF,
            data["trigger_mods"],
            data["negative_mod_mask"],
            data["suppressed_mods"],
            data["options"],
        ])


class ProtocolKeyOverride(BaseProtocol):

    key_override_entries = None

    async def get_override(self, ids):
        """Reads key override entries by index; returns them in the order requested."""
        ids = list(ids)
        raw = await self._retrieve_dynamic_entries(DYNAMIC_VIAL_KEY_OVERRIDE_GET, ids, KEY_OVERRIDE_FORMAT)
        entries = [KeyOverrideEntry(e) for e in raw]
        self.key_override_entries.update(zip(ids, entries))
        return entries

    async def set_override(self, entries):
        """Writes {index: KeyOverrideEntry}."""
        entries = dict(entries)
        await self._store_dynamic_entries(DYNAMIC_VIAL_KEY_OVERRIDE_SET,
                                          [(idx, e.serialize()) for idx, e in entries.items()])
        self.key_override_entries.update(entries)

    async def save_key_override(self):
        entries = await self.get_override(range(self.key_override_count))
        return [e.save(self.converter) for e in entries]

