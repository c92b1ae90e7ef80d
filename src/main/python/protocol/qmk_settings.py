# SPDX-License-Identifier: GPL-2.0-or-later
"""
QMK settings ("quantum settings"): firmware-wide values addressed by a qsid.

Each qsid has a fixed byte width. Values travel as little-endian words;
boolean fields are single bits inside one qsid's word.
"""
import logging
import struct

from protocol.base_protocol import BaseProtocol
from protocol.constants import CMD_VIA_VIAL_PREFIX, CMD_VIAL_QMK_SETTINGS_QUERY, CMD_VIAL_QMK_SETTINGS_GET, \
    CMD_VIAL_QMK_SETTINGS_SET, CMD_VIAL_QMK_SETTINGS_RESET, QMK_SETTINGS_END


def _bits(qsid, width, titles):
    return [{"type": "boolean", "title": title, "qsid": qsid, "width": width, "bit": bit}
            for title, bit in titles]


def _integer(qsid, width, title, min_value=0, max_value=None):
    if max_value is None:
        max_value = (1 << (8 * width)) - 1
    return {"type": "integer", "title": title, "qsid": qsid, "width": width, "min": min_value, "max": max_value}


SETTINGS_TABS = [
    {"name": "Magic", "fields": _bits(21, 2, [
        ("Swap Control and Caps Lock", 0),
        ("Treat Caps Lock as Control", 1),
        ("Swap Left Alt and GUI", 2),
        ("Swap Right Alt and GUI", 3),
        ("Disable the GUI keys", 4),
        ("Swap ` and Escape", 5),
        ("Swap \\ and Backspace", 6),
        ("Swap Left Control and GUI", 8),
        ("Swap Right Control and GUI", 9),
    ])},
    {"name": "Grave Escape", "fields": _bits(1, 1, [
        ("Send Esc if Alt is pressed", 0),
        ("Send Esc if Control is pressed", 1),
        ("Send Esc if GUI is pressed", 2),
        ("Send Esc if Shift is pressed", 3),
    ])},
    {"name": "Tap-Hold", "fields": [
        _integer(7, 2, "Tapping term (ms)"),
        *_bits(8, 1, [
            ("Permissive hold", 0),
            ("Ignore Mod Tap interrupt", 1),
            ("Tapping force hold", 2),
            ("Retro tapping", 3),
        ]),
        _integer(18, 2, "Tap code delay (ms)", 0, 500),
        _integer(19, 2, "Tap hold Caps Lock delay (ms)", 0, 500),
        _integer(20, 1, "Tapping toggle", 0, 99),
    ]},
    {"name": "Auto Shift", "fields": [
        *_bits(3, 1, [
            ("Enable", 0),
            ("Enable for modifiers", 1),
            ("Do not Auto Shift special keys", 2),
            ("Do not Auto Shift numeric keys", 3),
            ("Do not Auto Shift alpha characters", 4),
            ("Enable keyrepeat", 5),
            ("Disable keyrepeat when timeout is exceeded", 6),
        ]),
        _integer(4, 1, "Timeout (ms)"),
    ]},
    {"name": "Combo", "fields": [
        _integer(2, 2, "Combo term (ms)", 0, 500),
    ]},
    {"name": "One Shot Keys", "fields": [
        _integer(5, 1, "Tap toggle count", 0, 50),
        _integer(6, 2, "One shot key timeout (ms)"),
    ]},
    {"name": "Mouse Keys", "fields": [
        _integer(9, 2, "Delay (ms)", 0, 500),
        _integer(10, 2, "Interval (ms)", 0, 500),
        _integer(11, 2, "Move delta", 0, 500),
        _integer(12, 2, "Max speed", 0, 500),
        _integer(13, 2, "Time to max speed (ms)", 0, 500),
        _integer(14, 2, "Wheel delay (ms)", 0, 500),
        _integer(15, 2, "Wheel interval (ms)", 0, 500),
        _integer(16, 2, "Wheel max speed", 0, 500),
        _integer(17, 2, "Wheel time to max speed (ms)", 0, 500),
    ]},
]


def qsid_widths():
    """ qsid -> byte width of every setting in the catalog """
    widths = dict()
    for tab in SETTINGS_TABS:
        for field in tab["fields"]:
            widths[field["qsid"]] = field["width"]
    return widths


QSID_WIDTHS = qsid_widths()


def qsid_serialize(qsid, data):
    """ Serialize from internal representation into binary that can be sent to the firmware """
    return int(data).to_bytes(QSID_WIDTHS.get(qsid, 4), byteorder="little")


def qsid_deserialize(qsid, data):
    """ Deserialize from binary received from firmware into internal representation """
    return int.from_bytes(bytes(data[0:QSID_WIDTHS.get(qsid, 4)]), byteorder="little")


class ProtocolQmkSettings(BaseProtocol):

    settings = None

    async def query_quantum_settings(self):
        """
        Lists the qsids the firmware supports.

        Each query returns qsids greater than `cur` as little-endian words,
        terminated by 0xFFFF; querying continues from the highest one seen
        until a response brings no higher qsid.
        """
        supported = set()
        cur = 0
        while True:
            data = await self.vial_send(struct.pack("<BH", CMD_VIAL_QMK_SETTINGS_QUERY, cur))
            start = cur
            for x in range(0, len(data) - 1, 2):
                qsid = int.from_bytes(data[x:x + 2], byteorder="little")
                if qsid == QMK_SETTINGS_END:
                    break
                cur = max(cur, qsid)
                supported.add(qsid)
            if cur == start:
                break
        return supported

    async def get_quantum_settings(self, ids):
        """Reads settings in one batch; returns {qsid: value}, leaving out rejected qsids."""
        ids = list(ids)
        responses = await self.via_batch([
            struct.pack("<BBH", CMD_VIA_VIAL_PREFIX, CMD_VIAL_QMK_SETTINGS_GET, qsid) for qsid in ids
        ])
        values = dict()
        for qsid, data in zip(ids, responses):
            # Response: [status] [value bytes...]
            if data[0] != 0:
                logging.debug("qmk settings: qsid %d rejected with status %d", qsid, data[0])
                continue
            values[qsid] = qsid_deserialize(qsid, data[1:5])
        if self.settings is not None:
            self.settings.update(values)
        return values

    async def set_quantum_settings(self, values):
        """Writes {qsid: value}."""
        values = dict(values)
        await self.via_batch([
            struct.pack("<BBH", CMD_VIA_VIAL_PREFIX, CMD_VIAL_QMK_SETTINGS_SET, qsid) + qsid_serialize(qsid, value)
            for qsid, value in values.items()
        ])
        if self.settings is not None:
            self.settings.update(values)

    async def reset_quantum_settings(self):
        await self.vial_send(struct.pack("B", CMD_VIAL_QMK_SETTINGS_RESET))
        self.settings = dict()

    async def save_settings(self):
        supported = await self.query_quantum_settings()
        values = await self.get_quantum_settings(sorted(qsid for qsid in supported if qsid in QSID_WIDTHS))
        return {str(qsid): value for qsid, value in sorted(values.items())}

    async def restore_settings(self, data):
        values = {int(qsid): value for qsid, value in data.items()}
        if values:
            await self.set_quantum_settings(values)
