# SPDX-License-Identifier: GPL-2.0-or-later
import json
import logging
import lzma
import struct
from collections import OrderedDict

from kle_serial import Serial as KleSerial

from keycodes.keycodes import KeycodeConverter
from protocol.base_protocol import ProtocolError
from protocol.channel import CommandChannel
from protocol.combo import ComboEntry, ProtocolCombo
from protocol.constants import CMD_VIA_GET_PROTOCOL_VERSION, CMD_VIA_GET_KEYBOARD_VALUE, CMD_VIA_SET_KEYBOARD_VALUE, \
    CMD_VIA_SET_KEYCODE, CMD_VIA_GET_LAYER_COUNT, CMD_VIA_KEYMAP_GET_BUFFER, CMD_VIA_KEYMAP_SET_BUFFER, \
    CMD_VIA_CUSTOM_SET_VALUE, CMD_VIA_CUSTOM_GET_VALUE, CMD_VIA_CUSTOM_SAVE, CMD_VIA_EEPROM_RESET, \
    CMD_VIA_VIAL_PREFIX, CMD_VIA_UNHANDLED, VIA_LAYOUT_OPTIONS, VIA_BUFFER_CHUNK_SIZE, \
    CMD_VIAL_GET_KEYBOARD_ID, CMD_VIAL_GET_SIZE, CMD_VIAL_GET_DEFINITION, CMD_VIAL_GET_ENCODER, CMD_VIAL_SET_ENCODER, \
    VIAL_DEFINITION_PAGE_SIZE, VIAL_PROTOCOL_DYNAMIC, VIAL_PROTOCOL_QMK_SETTINGS, SUPPORTED_VIA_PROTOCOL, \
    LAYOUT_FILE_VERSION, COMMAND_TIMEOUT, BATCH_STALL_TIMEOUT, POLL_INTERVAL, BATCH_DEPTH
from protocol.dynamic import ProtocolDynamic
from protocol.key_override import KeyOverrideEntry, ProtocolKeyOverride
from protocol.macro import ProtocolMacro
from protocol.macro_action import macro_restore, macro_serialize
from protocol.paged import read_paged, write_paged
from protocol.qmk_settings import ProtocolQmkSettings, QSID_WIDTHS
from protocol.tap_dance import ProtocolTapDance, TapDanceEntry

__all__ = ["Keyboard", "ProtocolError"]


class Keyboard(ProtocolMacro, ProtocolDynamic, ProtocolTapDance, ProtocolCombo, ProtocolKeyOverride,
               ProtocolQmkSettings):
    """ Low-level communication with a vial-enabled keyboard """

    def __init__(self, transport, timeout=COMMAND_TIMEOUT, stall_timeout=BATCH_STALL_TIMEOUT,
                 poll_interval=POLL_INTERVAL, batch_depth=BATCH_DEPTH, keycode_table=None):
        self.transport = transport
        self.channel = CommandChannel(transport, timeout=timeout, stall_timeout=stall_timeout,
                                      poll_interval=poll_interval, batch_depth=batch_depth)
        self.transport.set_close_callback(self._on_close)
        self.keycode_table = keycode_table
        self.converter = KeycodeConverter(table=keycode_table)

        self.definition = None
        self.via_protocol = self.vial_protocol = -1
        self.keyboard_id = 0
        self.rows = self.cols = self.layers = 0
        self.layout_options = -1
        self.custom_keycodes = None

        # n.b. using OrderedDict here to make order of layout requests consistent for tests
        self.rowcol = OrderedDict()
        self.encoder_count = 0

        self.invalidate_caches()

    def invalidate_caches(self):
        """ Drops everything read from the device """
        self.layout = dict()
        self.encoder_layout = dict()
        self.macro_slots = []
        self.macro_tail = b""
        self.tap_dance_entries = dict()
        self.combo_entries = dict()
        self.key_override_entries = dict()
        self.settings = dict()

    def _on_close(self):
        logging.info("keyboard disconnected, dropping cached state")
        self.invalidate_caches()

    async def connect(self, selector=0):
        await self.transport.open(selector)
        await self.reload()

    async def close(self):
        await self.transport.close()

    async def reload(self):
        """ Load information about the keyboard: protocol, definition, layers and feature counts """
        self.invalidate_caches()

        self.via_protocol = await self.get_protocol_version()
        if self.via_protocol not in SUPPORTED_VIA_PROTOCOL:
            raise ProtocolError("unsupported VIA protocol version {}".format(self.via_protocol))
        self.vial_protocol, self.keyboard_id = await self.get_keyboard_id()
        logging.info("VIA protocol %d, Vial protocol %d, keyboard id 0x%016X",
                     self.via_protocol, self.vial_protocol, self.keyboard_id)

        self.reload_definition(await self.get_definition())
        self.layers = await self.get_layer_count()
        await self.reload_macros()

        if self.vial_protocol >= VIAL_PROTOCOL_DYNAMIC:
            await self.reload_dynamic()
        else:
            self.tap_dance_count = self.combo_count = self.key_override_count = 0

        self.layout_options = -1
        if "labels" in self.definition.get("layouts", {}):
            self.layout_options = await self.get_layout_options()

        # based on the number of layers, macros and tap dances, this generates the keyboard's keycodes
        self.converter = KeycodeConverter(self.layers, self.custom_keycodes, self.macro_count,
                                          self.tap_dance_count, table=self.keycode_table)

    def reload_definition(self, definition):
        """ Takes matrix size, custom keycodes and key/encoder positions from the keyboard definition """
        try:
            self.rows = definition["matrix"]["rows"]
            self.cols = definition["matrix"]["cols"]
            keymap = definition["layouts"]["keymap"]
        except (KeyError, TypeError) as e:
            raise ProtocolError("malformed keyboard definition: missing {}".format(e)) from e
        self.definition = definition
        self.custom_keycodes = definition.get("customKeycodes")

        self.rowcol = OrderedDict()
        self.encoder_count = 0
        kb = KleSerial().deserialize(keymap)
        for key in kb.keys:
            if key.labels[4] == "e":
                idx, _ = key.labels[0].split(",")
                self.encoder_count = max(self.encoder_count, int(idx) + 1)
            elif key.decal or (key.labels[0] and "," in key.labels[0]):
                row, col = 0, 0
                if key.labels[0] and "," in key.labels[0]:
                    row, col = key.labels[0].split(",")
                    row, col = int(row), int(col)
                if row >= self.rows or col >= self.cols:
                    raise ProtocolError("malformed vial.json, key references {},{} but matrix declares rows={} cols={}"
                                        .format(row, col, self.rows, self.cols))
                self.rowcol[(row, col)] = True

    async def get_protocol_version(self):
        data = await self.via_send(struct.pack("B", CMD_VIA_GET_PROTOCOL_VERSION))
        return struct.unpack(">H", data[1:3])[0]

    async def get_keyboard_id(self):
        """ Returns (vial protocol version, 64-bit keyboard uid) """
        data = await self.vial_send(struct.pack("B", CMD_VIAL_GET_KEYBOARD_ID))
        return struct.unpack("<IQ", data[0:12])

    async def get_definition(self):
        """ Fetches the lzma-compressed keyboard definition and decodes its JSON """
        data = await self.vial_send(struct.pack("B", CMD_VIAL_GET_SIZE))
        sz = struct.unpack("<I", data[0:4])[0]
        logging.debug("definition size: %d bytes", sz)

        payload = await read_paged(
            self.channel, sz, VIAL_DEFINITION_PAGE_SIZE,
            lambda offset, size: struct.pack("<BBI", CMD_VIA_VIAL_PREFIX, CMD_VIAL_GET_DEFINITION,
                                             offset // VIAL_DEFINITION_PAGE_SIZE),
            lambda data, size: data[:size])
        try:
            return json.loads(lzma.decompress(payload))
        except (lzma.LZMAError, ValueError) as e:
            raise ProtocolError("cannot decode keyboard definition: {}".format(e)) from e

    async def get_layer_count(self):
        data = await self.via_send(struct.pack("B", CMD_VIA_GET_LAYER_COUNT))
        return data[1]

    def _check_layer(self, layer):
        if not 0 <= layer < self.layers:
            raise IndexError("layer {} out of range".format(layer))

    def _layer_offset(self, layer):
        return layer * self.rows * self.cols * 2

    async def get_layer(self, layer):
        """ Reads one layer of the keymap as a flat row-major list of keycodes """
        self._check_layer(layer)
        count = self.rows * self.cols
        base = self._layer_offset(layer)
        buffer = await read_paged(
            self.channel, count * 2, VIA_BUFFER_CHUNK_SIZE,
            lambda offset, size: struct.pack(">BHB", CMD_VIA_KEYMAP_GET_BUFFER, base + offset, size),
            lambda data, size: data[4:4 + size])
        keycodes = list(struct.unpack(">{}H".format(count), buffer))
        self.layout[layer] = keycodes
        return list(keycodes)

    async def set_layer(self, layer, keycodes):
        """ Writes one layer of the keymap from a flat row-major list of keycodes """
        self._check_layer(layer)
        keycodes = list(keycodes)
        if len(keycodes) != self.rows * self.cols:
            raise ValueError("layer needs {} keycodes, got {}".format(self.rows * self.cols, len(keycodes)))
        base = self._layer_offset(layer)
        await write_paged(
            self.channel, struct.pack(">{}H".format(len(keycodes)), *keycodes), VIA_BUFFER_CHUNK_SIZE,
            lambda offset, chunk: struct.pack(">BHB", CMD_VIA_KEYMAP_SET_BUFFER, base + offset, len(chunk)) + chunk)
        self.layout[layer] = keycodes

    async def set_key(self, layer, row, col, code):
        self._check_layer(layer)
        await self.via_send(struct.pack(">BBBBH", CMD_VIA_SET_KEYCODE, layer, row, col, code))
        if layer in self.layout:
            self.layout[layer][row * self.cols + col] = code

    async def get_encoder(self, layer, count=None):
        """ Returns [[cw, ccw], ...] for the first `count` encoders of a layer """
        if count is None:
            count = self.encoder_count
        responses = await self.via_batch([
            struct.pack("BBBB", CMD_VIA_VIAL_PREFIX, CMD_VIAL_GET_ENCODER, layer, idx) for idx in range(count)
        ])
        encoders = [list(struct.unpack(">HH", data[0:4])) for data in responses]
        for idx, actions in enumerate(encoders):
            self.encoder_layout[(layer, idx, 0)] = actions[0]
            self.encoder_layout[(layer, idx, 1)] = actions[1]
        return encoders

    async def set_encoder(self, entries):
        """ entries: (layer, index, direction, keycode) tuples, written in one batch """
        entries = list(entries)
        await self.via_batch([
            struct.pack(">BBBBBH", CMD_VIA_VIAL_PREFIX, CMD_VIAL_SET_ENCODER, layer, idx, direction, code)
            for layer, idx, direction, code in entries
        ])
        for layer, idx, direction, code in entries:
            self.encoder_layout[(layer, idx, direction)] = code

    async def get_layout_options(self):
        data = await self.via_send(struct.pack("BB", CMD_VIA_GET_KEYBOARD_VALUE, VIA_LAYOUT_OPTIONS))
        return struct.unpack(">I", data[2:6])[0]

    async def set_layout_options(self, options):
        await self.via_send(struct.pack(">BBI", CMD_VIA_SET_KEYBOARD_VALUE, VIA_LAYOUT_OPTIONS, options))
        self.layout_options = options

    @staticmethod
    def _custom_value_id(value_id):
        """ Custom value ids are byte sequences, e.g. [channel, value] """
        if isinstance(value_id, int):
            raise TypeError("custom value id must be a byte sequence, not an int")
        return bytes(value_id)

    async def get_custom_value(self, value_id):
        """
        Reads a keyboard-specific value.

        Packet: [0xFF] [0x08] [id...]
        Response: [0xFF] [0x08] [id...] [value, 32-bit little-endian]
        """
        value_id = self._custom_value_id(value_id)
        data = await self.via_send(struct.pack("BB", CMD_VIA_UNHANDLED, CMD_VIA_CUSTOM_GET_VALUE) + value_id)
        start = 2 + len(value_id)
        return struct.unpack("<I", data[start:start + 4])[0]

    async def set_custom_value(self, value_id, value):
        value_id = self._custom_value_id(value_id)
        await self.via_send(struct.pack("BB", CMD_VIA_UNHANDLED, CMD_VIA_CUSTOM_SET_VALUE) + value_id
                            + struct.pack("<I", value & 0xFFFFFFFF))

    async def save_custom_value(self, value_id):
        await self.via_send(struct.pack("BB", CMD_VIA_UNHANDLED, CMD_VIA_CUSTOM_SAVE) + self._custom_value_id(value_id))

    async def reset_eeprom(self):
        await self.via_send(struct.pack("BB", CMD_VIA_UNHANDLED, CMD_VIA_EEPROM_RESET))
        self.invalidate_caches()

    async def save_layout(self):
        """ Serializes the current device configuration to a binary """
        data = {"version": LAYOUT_FILE_VERSION, "uid": self.keyboard_id}

        layout = []
        for l in range(self.layers):
            keycodes = await self.get_layer(l)
            layout.append([[self.serialize_keycode(keycodes[r * self.cols + c]) for c in range(self.cols)]
                           for r in range(self.rows)])

        encoder_layout = []
        for l in range(self.layers):
            encoders = await self.get_encoder(l, self.encoder_count)
            encoder_layout.append([[self.serialize_keycode(kc) for kc in actions] for actions in encoders])

        data["via_protocol"] = self.via_protocol
        data["vial_protocol"] = self.vial_protocol
        data["layout"] = layout
        data["encoder_layout"] = encoder_layout
        data["layout_options"] = self.layout_options
        data["macro"] = await self.save_macro()
        data["tap_dance"] = await self.save_tap_dance()
        data["combo"] = await self.save_combo()
        data["key_override"] = await self.save_key_override()
        data["settings"] = await self.save_settings() if self.vial_protocol >= VIAL_PROTOCOL_QMK_SETTINGS else {}

        return json.dumps(data).encode("utf-8")

    def _decode_layout(self, data):
        """ Resolves every symbolic name in a saved layout; nothing is sent to the keyboard """
        conv = self.converter
        layout = [[[conv.deserialize(code, reraise=True) for code in row] for row in layer]
                  for layer in data.get("layout", [])[:self.layers]]
        encoders = [[[conv.deserialize(code, reraise=True) for code in encoder] for encoder in layer]
                    for layer in data.get("encoder_layout", [])[:self.layers]]
        macros = [macro_restore(actions, conv) for actions in data.get("macro", [])]
        for actions in macros:
            # text that cannot be stored raises here, before any write
            macro_serialize(actions)
        tap_dance = {idx: TapDanceEntry.restore(e, conv)
                     for idx, e in enumerate(data.get("tap_dance", [])[:self.tap_dance_count])}
        combo = {idx: ComboEntry.restore(e, conv)
                 for idx, e in enumerate(data.get("combo", [])[:self.combo_count])}
        key_override = {idx: KeyOverrideEntry.restore(e, conv)
                        for idx, e in enumerate(data.get("key_override", [])[:self.key_override_count])}
        settings = {int(qsid): value for qsid, value in data.get("settings", dict()).items()
                    if int(qsid) in QSID_WIDTHS}
        return layout, encoders, macros, tap_dance, combo, key_override, settings

    async def restore_layout(self, data):
        """ Restores a saved layout; only keys that differ from the keyboard are rewritten """
        try:
            data = json.loads(data.decode("utf-8") if isinstance(data, bytes) else data)
            layout, encoders, macros, tap_dance, combo, key_override, settings = self._decode_layout(data)
        except (ValueError, KeyError, TypeError, IndexError) as e:
            raise ProtocolError("cannot restore layout: {}".format(e)) from e

        for l, layer in enumerate(layout):
            current = self.layout.get(l)
            if current is None:
                current = await self.get_layer(l)
            for r, row in enumerate(layer[:self.rows]):
                for c, code in enumerate(row[:self.cols]):
                    if (r, c) in self.rowcol and current[r * self.cols + c] != code:
                        await self.set_key(l, r, c, code)

        changed = []
        for l, layer in enumerate(encoders):
            for idx, actions in enumerate(layer[:self.encoder_count]):
                for direction, code in enumerate(actions[:2]):
                    if self.encoder_layout.get((l, idx, direction)) != code:
                        changed.append((l, idx, direction, code))
        if changed:
            await self.set_encoder(changed)

        options = data.get("layout_options", -1)
        if self.layout_options != -1 and options != -1 and options != self.layout_options:
            await self.set_layout_options(options)

        if macros:
            await self.restore_macros(macros)
        if tap_dance:
            await self.set_tap_dance(tap_dance)
        if combo:
            await self.set_combo(combo)
        if key_override:
            await self.set_override(key_override)
        if settings and self.vial_protocol >= VIAL_PROTOCOL_QMK_SETTINGS:
            await self.set_quantum_settings(settings)
