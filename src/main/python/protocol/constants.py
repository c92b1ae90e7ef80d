# SPDX-License-Identifier: GPL-2.0-or-later

# VIA commands
CMD_VIA_GET_PROTOCOL_VERSION = 0x01
CMD_VIA_GET_KEYBOARD_VALUE = 0x02
CMD_VIA_SET_KEYBOARD_VALUE = 0x03
CMD_VIA_GET_KEYCODE = 0x04
CMD_VIA_SET_KEYCODE = 0x05
CMD_VIA_KEYMAP_RESET = 0x06
CMD_VIA_CUSTOM_SET_VALUE = 0x07
CMD_VIA_CUSTOM_GET_VALUE = 0x08
CMD_VIA_CUSTOM_SAVE = 0x09
CMD_VIA_EEPROM_RESET = 0x0A
CMD_VIA_BOOTLOADER_JUMP = 0x0B
CMD_VIA_MACRO_GET_COUNT = 0x0C
CMD_VIA_MACRO_GET_BUFFER_SIZE = 0x0D
CMD_VIA_MACRO_GET_BUFFER = 0x0E
CMD_VIA_MACRO_SET_BUFFER = 0x0F
CMD_VIA_MACRO_RESET = 0x10
CMD_VIA_GET_LAYER_COUNT = 0x11
CMD_VIA_KEYMAP_GET_BUFFER = 0x12
CMD_VIA_KEYMAP_SET_BUFFER = 0x13
CMD_VIA_VIAL_PREFIX = 0xFE
CMD_VIA_UNHANDLED = 0xFF

# keyboard value ids
VIA_LAYOUT_OPTIONS = 0x02

# Vial sub-commands, sent as [0xFE] [cmd] ...
CMD_VIAL_GET_KEYBOARD_ID = 0x00
CMD_VIAL_GET_SIZE = 0x01
CMD_VIAL_GET_DEFINITION = 0x02
CMD_VIAL_GET_ENCODER = 0x03
CMD_VIAL_SET_ENCODER = 0x04
CMD_VIAL_QMK_SETTINGS_QUERY = 0x09
CMD_VIAL_QMK_SETTINGS_GET = 0x0A
CMD_VIAL_QMK_SETTINGS_SET = 0x0B
CMD_VIAL_QMK_SETTINGS_RESET = 0x0C
CMD_VIAL_DYNAMIC_ENTRY_OP = 0x0D

# dynamic entry ops, sent as [0xFE] [0x0D] [op] ...
DYNAMIC_VIAL_GET_NUMBER_OF_ENTRIES = 0x00
DYNAMIC_VIAL_TAP_DANCE_GET = 0x01
DYNAMIC_VIAL_TAP_DANCE_SET = 0x02
DYNAMIC_VIAL_COMBO_GET = 0x03
DYNAMIC_VIAL_COMBO_SET = 0x04
DYNAMIC_VIAL_KEY_OVERRIDE_GET = 0x05
DYNAMIC_VIAL_KEY_OVERRIDE_SET = 0x06

# paging
VIA_BUFFER_CHUNK_SIZE = 28
VIAL_DEFINITION_PAGE_SIZE = 32
MACRO_READ_CHUNK = VIA_BUFFER_CHUNK_SIZE * 4

# channel timing, in seconds
COMMAND_TIMEOUT = 0.5
BATCH_STALL_TIMEOUT = 0.5
POLL_INTERVAL = 0.001
BATCH_DEPTH = 3

QMK_SETTINGS_END = 0xFFFF

SUPPORTED_VIA_PROTOCOL = [-1, 9, 10, 11, 12]

# first Vial protocol versions carrying these features
VIAL_PROTOCOL_DYNAMIC = 4
VIAL_PROTOCOL_QMK_SETTINGS = 4

LAYOUT_FILE_VERSION = 1
