# SPDX-License-Identifier: GPL-2.0-or-later
"""
Macro action language.

A macro is a byte string. Bytes other than 0x01 are literal text; 0x01 opens
an escape whose next byte selects the action:
    01 01 kc        tap key (8-bit keycode)
    01 02 kc        press key (8-bit keycode)
    01 03 kc        release key (8-bit keycode)
    01 04 lo hi     delay of (lo - 1) + (hi - 1) * 255 ms
    01 05 lo hi     tap key (16-bit keycode)
    01 06 lo hi     press key (16-bit keycode)
    01 07 lo hi     release key (16-bit keycode)
Both delay bytes are biased by one so a delay never contains 0x00, which
terminates a macro slot in the device buffer.
"""
import logging
import struct

SS_QMK_PREFIX = 0x01

SS_TAP_CODE = 0x01
SS_DOWN_CODE = 0x02
SS_UP_CODE = 0x03
SS_DELAY_CODE = 0x04
VIAL_MACRO_EXT_TAP = 0x05
VIAL_MACRO_EXT_DOWN = 0x06
VIAL_MACRO_EXT_UP = 0x07

EXT_OFFSET = VIAL_MACRO_EXT_TAP - SS_TAP_CODE

MAX_DELAY = 254 * 255 + 254


def macro_action_subtype(code, keycode):
    """
    Subtype byte written for a key action. Basic subtypes 1..3 only carry an
    8-bit keycode, so a larger keycode is promoted to the extended subtype
    5..7; an extended subtype with a keycode that fits in 8 bits is demoted.
    """
    if SS_TAP_CODE <= code <= SS_UP_CODE and keycode > 0xFF:
        return code + EXT_OFFSET
    if VIAL_MACRO_EXT_TAP <= code <= VIAL_MACRO_EXT_UP and keycode <= 0xFF:
        return code - EXT_OFFSET
    return code


def encode_delay(delay):
    if not 0 <= delay <= MAX_DELAY:
        raise ValueError("delay must be between 0 and {} ms".format(MAX_DELAY))
    upper = delay // 255 + 1
    return struct.pack("BB", delay - (upper - 1) * 255 + 1, upper)


def decode_delay(lo, hi):
    return (lo - 1) + (hi - 1) * 255


def encode_key_action(code, keycode):
    subtype = macro_action_subtype(code, keycode)
    if subtype >= VIAL_MACRO_EXT_TAP:
        if keycode & 0xFF == 0:
            # the low byte would end the macro slot
            raise ValueError("keycode 0x{:04X} cannot be stored in a macro".format(keycode))
        return struct.pack("BBBB", SS_QMK_PREFIX, subtype, keycode & 0xFF, keycode >> 8)
    return struct.pack("BBB", SS_QMK_PREFIX, subtype, keycode)


class BasicAction:

    tag = "unknown"

    def serialize(self):
        raise NotImplementedError

    def save(self, converter=None):
        return [self.tag]

    def __eq__(self, other):
        return type(self) is type(other) and self.save() == other.save()

    def __repr__(self):
        return "{}<{}>".format(type(self).__name__, ", ".join(str(x) for x in self.save()[1:]))


class ActionText(BasicAction):

    tag = "text"

    def __init__(self, text=""):
        self.text = text

    def serialize(self):
        data = self.text.encode("latin-1")
        if b"\x00" in data or bytes([SS_QMK_PREFIX]) in data:
            raise ValueError("macro text cannot contain 0x00 or 0x01")
        return data

    def save(self, converter=None):
        return [self.tag, self.text]


class ActionKey(BasicAction):

    code = None

    def __init__(self, keycode=0):
        self.keycode = keycode

    def serialize(self):
        # KC_NO does nothing and is left out of the buffer
        if self.keycode == 0:
            return b""
        return encode_key_action(self.code, self.keycode)

    def save(self, converter=None):
        if converter is not None:
            return [self.tag, converter.serialize(self.keycode)]
        return [self.tag, self.keycode]


class ActionTap(ActionKey):
    tag = "tap"
    code = SS_TAP_CODE


class ActionDown(ActionKey):
    tag = "down"
    code = SS_DOWN_CODE


class ActionUp(ActionKey):
    tag = "up"
    code = SS_UP_CODE


class ActionDelay(BasicAction):

    tag = "delay"

    def __init__(self, delay=0):
        self.delay = delay

    def serialize(self):
        return struct.pack("BB", SS_QMK_PREFIX, SS_DELAY_CODE) + encode_delay(self.delay)

    def save(self, converter=None):
        return [self.tag, self.delay]


KEY_ACTIONS = {
    SS_TAP_CODE: ActionTap,
    SS_DOWN_CODE: ActionDown,
    SS_UP_CODE: ActionUp,
}

TAG_TO_ACTION = {cls.tag: cls for cls in (ActionText, ActionTap, ActionDown, ActionUp, ActionDelay)}


def macro_serialize(actions):
    return b"".join(act.serialize() for act in actions)


def macro_deserialize(data):
    """ Parses one macro slot; a 0x00 byte ends it, malformed escapes are skipped """
    data = bytes(data).split(b"\x00", 1)[0]
    actions = []
    text = bytearray()

    def flush_text():
        if text:
            actions.append(ActionText(text.decode("latin-1")))
            text.clear()

    idx = 0
    while idx < len(data):
        if data[idx] != SS_QMK_PREFIX:
            text.append(data[idx])
            idx += 1
            continue

        flush_text()
        if idx + 1 >= len(data):
            break
        subtype = data[idx + 1]
        if subtype in KEY_ACTIONS:
            if idx + 2 >= len(data):
                break
            actions.append(KEY_ACTIONS[subtype](data[idx + 2]))
            idx += 3
        elif subtype == SS_DELAY_CODE:
            if idx + 3 >= len(data):
                break
            actions.append(ActionDelay(decode_delay(data[idx + 2], data[idx + 3])))
            idx += 4
        elif subtype - EXT_OFFSET in KEY_ACTIONS:
            if idx + 3 >= len(data):
                break
            actions.append(KEY_ACTIONS[subtype - EXT_OFFSET](data[idx + 2] | (data[idx + 3] << 8)))
            idx += 4
        else:
            logging.debug("macro: skipping unknown escape subtype %d", subtype)
            idx += 2
    flush_text()
    return actions


def split_macro_buffer(data):
    """ Splits a device macro buffer into its complete (zero-terminated) slots """
    return bytes(data).split(b"\x00")[:-1]


def join_macro_buffer(slots):
    return b"".join(bytes(slot) + b"\x00" for slot in slots)


def macro_save(actions, converter=None):
    return [act.save(converter) for act in actions]


def macro_restore(data, converter=None):
    actions = []
    for act in data:
        cls = TAG_TO_ACTION.get(act[0])
        if cls is None:
            raise ValueError("unknown macro action {!r}".format(act[0]))
        if issubclass(cls, ActionKey):
            keycode = act[1]
            if converter is not None:
                keycode = converter.deserialize(keycode, reraise=True)
            actions.append(cls(keycode))
        else:
            actions.append(cls(act[1]))
    return actions
