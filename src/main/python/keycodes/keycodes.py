# coding: utf-8

# SPDX-License-Identifier: GPL-2.0-or-later

import json
import logging
import os

QMK_KEYCODES_PATH = os.path.join(os.path.dirname(os.path.abspath(__file__)), "qmk_keycodes.json")

KEYCODE_MASK = 0xFFFF
MODS_MASK = 0x1F
LAYER_TAP_LAYER_MASK = 0x0F


class ModifierBit:
    CTRL = 0x01
    SHIFT = 0x02
    ALT = 0x04
    GUI = 0x08
    USE_RIGHT = 0x10


MODIFIERS = [
    (ModifierBit.CTRL, "Ctrl", "CTL"),
    (ModifierBit.SHIFT, "Shift", "SFT"),
    (ModifierBit.ALT, "Alt", "ALT"),
    (ModifierBit.GUI, "GUI", "GUI"),
]

# keyboard-dependent keycodes, one per layer
LAYER_FUNCTIONS = [
    ("QK_TO", "TO"),
    ("QK_MOMENTARY", "MO"),
    ("QK_DEF_LAYER", "DF"),
    ("QK_TOGGLE_LAYER", "TG"),
    ("QK_ONE_SHOT_LAYER", "OSL"),
    ("QK_LAYER_TAP_TOGGLE", "TT"),
]


def mod_label(mods):
    """ Human readable modifier mask: "*Ctrl+Shift" for left hand, "Ctrl+Shift*" for right hand """
    names = "+".join(name for bit, name, _ in MODIFIERS if mods & bit)
    if mods & ModifierBit.USE_RIGHT:
        return "{}*".format(names)
    return "*{}".format(names)


def mod_value_to_string(mods):
    """ Convert numeric mod value to MOD_xxx string """
    prefix = "MOD_R" if mods & ModifierBit.USE_RIGHT else "MOD_L"
    return "|".join("{}{}".format(prefix, short) for bit, _, short in MODIFIERS if mods & bit)


def mod_function_key(mods, inner):
    """ Wraps a key name in QMK modifier functions, e.g. LCTL(LSFT(KC_A)) """
    side = "R" if mods & ModifierBit.USE_RIGHT else "L"
    key = inner
    for bit, _, short in reversed(MODIFIERS):
        if mods & bit:
            key = "{}{}({})".format(side, short, key)
    return key


def parse_range(spec):
    """ "0x0100/0x1EFF" -> (0x0100, 0x1FFF), bounds inclusive """
    start, size = spec.split("/")
    start = int(start, 16)
    return start, start + int(size, 16)


def _value(kc):
    if isinstance(kc, Keycode):
        return kc.value
    if kc is None:
        return 0
    return kc


class Keycode:
    """ A decoded 16-bit keycode. Composite keycodes carry their tap/hold parts and modifier mask. """

    def __init__(self, value, key, label=None, group=None, aliases=None,
                 mod_label=None, hold_label=None, tap=None, hold=None, mods=0):
        self.value = value
        self.key = key
        self.aliases = list(aliases or [])
        if not label:
            label = self.aliases[0] if self.aliases else key
        self.label = label
        self.group = group
        self.mod_label = mod_label
        self.hold_label = hold_label
        self.tap = tap
        self.hold = hold
        self.mods = mods

    def __eq__(self, other):
        return isinstance(other, Keycode) and self.value == other.value and self.key == other.key

    def __hash__(self):
        return hash((self.value, self.key))

    def __repr__(self):
        return "Keycode<0x{:04X} {} group={}>".format(self.value, self.key, self.group)


class KeycodeTable:
    """
    Static capability table in the QMK constants format: direct keycode entries
    plus named numeric ranges. Loaded once and shared by every converter.
    """

    _default = None

    def __init__(self, keycodes, ranges, version=None):
        self.keycodes = keycodes
        self.ranges = ranges
        self.version = version

    @classmethod
    def from_json(cls, data):
        keycodes = {int(value, 0): entry for value, entry in data["keycodes"].items()}
        ranges = {}
        for spec, entry in data["ranges"].items():
            ranges[entry["define"]] = parse_range(spec)
        return cls(keycodes, ranges, data.get("version"))

    @classmethod
    def load(cls, path=QMK_KEYCODES_PATH):
        with open(path, "r") as inf:
            table = cls.from_json(json.load(inf))
        logging.debug("loaded %d keycodes and %d ranges from %s", len(table.keycodes), len(table.ranges), path)
        return table

    @classmethod
    def default(cls):
        if cls._default is None:
            cls._default = cls.load()
        return cls._default

    def range(self, define):
        return self.ranges.get(define)

    def in_range(self, define, value):
        bounds = self.ranges.get(define)
        return bounds is not None and bounds[0] <= value <= bounds[1]


class KeycodeConverter:
    """ Decodes and composes keycodes for one keyboard (its layers, macros, tap dances and custom keycodes) """

    def __init__(self, layers=0, custom_keycodes=None, macro_count=0, tap_dance_count=0, table=None):
        self.table = table or KeycodeTable.default()
        self.custom_keycodes = custom_keycodes or []
        self.direct = dict(self.table.keycodes)
        self.by_key = None

        for define, fn in LAYER_FUNCTIONS:
            self._generate(define, layers, "layer", lambda n, fn=fn: "{}({})".format(fn, n))
        self._generate("QK_MACRO", macro_count, "macro", lambda n: "M{}".format(n))
        self._generate("QK_TAP_DANCE", tap_dance_count, "tap_dance", lambda n: "TD({})".format(n))

    def _generate(self, define, count, group, name):
        bounds = self.table.range(define)
        if bounds is None:
            return
        for n in range(min(count, bounds[1] - bounds[0] + 1)):
            key = name(n)
            self.direct[bounds[0] + n] = {"group": group, "key": key, "label": key}

    def decode(self, value):
        """ Maps a 16-bit keycode to its description; never fails """
        value &= KEYCODE_MASK

        custom = self._decode_custom(value)
        if custom is not None:
            return custom

        entry = self.direct.get(value)
        if entry is not None:
            return Keycode(value, entry["key"], label=entry.get("label"), group=entry.get("group"),
                           aliases=entry.get("aliases"))

        if self.table.in_range("QK_MODS", value):
            return self._decode_modified(value)
        if self.table.in_range("QK_MOD_TAP", value):
            return self._decode_mod_tap(value)
        if self.table.in_range("QK_LAYER_TAP", value):
            return self._decode_layer_tap(value)
        return self._decode_unknown(value)

    def _decode_custom(self, value):
        if not self.custom_keycodes or not self.table.in_range("QK_KB", value):
            return None
        idx = value - self.table.range("QK_KB")[0]
        if idx >= len(self.custom_keycodes):
            return None
        entry = self.custom_keycodes[idx]
        key = entry.get("name") or "USER{:02}".format(idx)
        return Keycode(value, key, label=entry.get("shortName") or entry.get("title"), group="custom")

    def _decode_modified(self, value):
        mods = (value >> 8) & MODS_MASK
        base = self.decode(value & 0xFF)
        key = mod_function_key(mods, base.key) if mods & 0x0F else self._any(value)
        return Keycode(value, key, label=base.label, group="modified", mod_label=mod_label(mods),
                       tap=base.value, hold=0, mods=mods)

    def _decode_mod_tap(self, value):
        mods = (value >> 8) & MODS_MASK
        tap = self.decode(value & 0xFF)
        if mods & 0x0F:
            key = "MT({}, {})".format(mod_value_to_string(mods), tap.key)
        else:
            key = self._any(value)
        return Keycode(value, key, label=tap.label, group="mod_tap", hold_label=mod_label(mods),
                       tap=tap.value, hold=self.table.range("QK_MOD_TAP")[0], mods=mods)

    def _decode_layer_tap(self, value):
        layer = (value >> 8) & LAYER_TAP_LAYER_MASK
        tap = self.decode(value & 0xFF)
        return Keycode(value, "LT({}, {})".format(layer, tap.key), label=tap.label, group="layer_tap",
                       hold_label="Layer{}".format(layer), tap=tap.value, hold=value & 0xFF00)

    def _decode_unknown(self, value):
        return Keycode(value, self._any(value), group="unknown")

    @staticmethod
    def _any(value):
        return "Any({})".format(value)

    def is_basic(self, kc):
        return self.table.in_range("QK_BASIC", _value(kc))

    def is_mod_tap_base(self, kc):
        value = _value(kc)
        return self.table.in_range("QK_MOD_TAP", value) and value & 0xFF == 0

    def is_layer_tap_base(self, kc):
        value = _value(kc)
        return self.table.in_range("QK_LAYER_TAP", value) and value & 0xFF == 0

    def _is_composite(self, value):
        return (self.table.in_range("QK_MODS", value) or self.table.in_range("QK_MOD_TAP", value)
                or self.table.in_range("QK_LAYER_TAP", value))

    def combine(self, tap, hold=None, mods=0):
        """
        Composes a keycode from its tap side, hold side and modifier mask.
        Layer-tap keycodes have no room for modifiers, so mods are dropped for them.
        """
        tap_value, hold_value = _value(tap), _value(hold)
        mods &= MODS_MASK
        if hold_value == 0 and self.is_basic(tap_value):
            return self.decode(tap_value | (mods << 8))
        if self.is_mod_tap_base(hold_value):
            return self.decode((hold_value & 0xFF00) | (mods << 8) | (tap_value & 0xFF))
        if self.is_layer_tap_base(hold_value):
            return self.decode((hold_value & 0xFF00) | (tap_value & 0xFF))
        return self.decode(tap_value)

    def tap_keycode(self, kc):
        value = _value(kc)
        if self._is_composite(value):
            return self.decode(value & 0xFF)
        return self.decode(value)

    def hold_keycode(self, kc):
        value = _value(kc)
        if self.table.in_range("QK_MOD_TAP", value):
            return self.decode(self.table.range("QK_MOD_TAP")[0])
        if self.table.in_range("QK_LAYER_TAP", value):
            return self.decode(value & 0xFF00)
        return self.decode(0)

    def modifier(self, kc):
        value = _value(kc)
        if self.table.in_range("QK_MODS", value) or self.table.in_range("QK_MOD_TAP", value):
            return (value >> 8) & MODS_MASK
        return 0

    def serialize(self, code):
        """ Converts integer keycode to string """
        return self.decode(code).key

    def deserialize(self, val, reraise=False):
        """ Converts string keycode to integer """
        if isinstance(val, int):
            return val & KEYCODE_MASK
        if self.by_key is None:
            self._build_reverse_map()
        if val in self.by_key:
            return self.by_key[val]
        if reraise:
            raise ValueError("unknown keycode {!r}".format(val))
        logging.warning("unknown keycode %r, using KC_NO", val)
        return 0

    def _build_reverse_map(self):
        self.by_key = dict()
        for value in range(KEYCODE_MASK + 1):
            kc = self.decode(value)
            self.by_key.setdefault(kc.key, value)
            for alias in kc.aliases:
                self.by_key.setdefault(alias, value)
