# SPDX-License-Identifier: GPL-2.0-or-later
import logging
import struct

from protocol.base_protocol import BaseProtocol
from protocol.constants import CMD_VIA_VIAL_PREFIX, CMD_VIAL_DYNAMIC_ENTRY_OP, DYNAMIC_VIAL_GET_NUMBER_OF_ENTRIES


class ProtocolDynamic(BaseProtocol):

    async def get_dynamic_entry_count(self):
        """
        Asks the firmware how many dynamic entries it stores.

        Response: [tap_dance_count] [combo_count] [key_override_count]
        """
        data = await self.via_send(struct.pack("BBB", CMD_VIA_VIAL_PREFIX, CMD_VIAL_DYNAMIC_ENTRY_OP,
                                               DYNAMIC_VIAL_GET_NUMBER_OF_ENTRIES))
        return data[0], data[1], data[2]

    async def reload_dynamic(self):
        self.tap_dance_count, self.combo_count, self.key_override_count = await self.get_dynamic_entry_count()
        logging.debug("dynamic entries: %d tap dance, %d combo, %d key override",
                      self.tap_dance_count, self.combo_count, self.key_override_count)
        self.tap_dance_entries = {}
        self.combo_entries = {}
        self.key_override_entries = {}
