# SPDX-License-Identifier: GPL-2.0-or-later
import logging
import struct

from protocol.constants import CMD_VIA_VIAL_PREFIX, CMD_VIAL_DYNAMIC_ENTRY_OP


class ProtocolError(Exception):
    pass


class BaseProtocol:
    channel = None  # CommandChannel for the open connection
    converter = None  # KeycodeConverter built by reload()

    macro_count = 0
    macro_memory = 0

    tap_dance_count = 0
    combo_count = 0
    key_override_count = 0

    async def via_send(self, msg):
        """Send a VIA command and return its response."""
        return await self.channel.send(msg)

    async def vial_send(self, msg):
        """Send a command of the Vial 0xFE sub-protocol."""
        return await self.channel.send(struct.pack("B", CMD_VIA_VIAL_PREFIX) + msg)

    async def via_batch(self, msgs, strict=True):
        return await self.channel.send_batch(msgs, strict=strict)

    def serialize_keycode(self, code):
        return self.converter.serialize(code)

    async def _retrieve_dynamic_entries(self, op, ids, fmt):
        """
        Reads dynamic entries in one batch.

        Response: [status] [entry data...]; a nonzero status marks an unused
        index, which decodes to an all-zero record.
        """
        ids = list(ids)
        size = struct.calcsize(fmt)
        responses = await self.via_batch([
            struct.pack("BBBB", CMD_VIA_VIAL_PREFIX, CMD_VIAL_DYNAMIC_ENTRY_OP, op, idx) for idx in ids
        ])
        out = []
        for idx, data in zip(ids, responses):
            if data[0] != 0:
                logging.debug("dynamic entry op %d: index %d rejected with status %d", op, idx, data[0])
                out.append(struct.unpack(fmt, bytes(size)))
                continue
            out.append(struct.unpack(fmt, data[1:1 + size]))
        return out

    async def _store_dynamic_entries(self, op, entries):
        """ entries: (index, packed record) pairs """
        await self.via_batch([
            struct.pack("BBBB", CMD_VIA_VIAL_PREFIX, CMD_VIAL_DYNAMIC_ENTRY_OP, op, idx) + payload
            for idx, payload in entries
        ])
