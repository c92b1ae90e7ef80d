# SPDX-License-Identifier: GPL-2.0-or-later
"""
Macro storage.

The device keeps every macro in one flat buffer, each slot terminated by a
single 0x00. The client caches the slots it has read so far, always a
contiguous prefix of the buffer, and only reads further when a higher slot
is needed. Writing slot N rewrites the buffer from slot N's offset to the
end; lower slots stay untouched on the device.
"""
import logging
import struct

from protocol.base_protocol import BaseProtocol, ProtocolError
from protocol.constants import CMD_VIA_MACRO_GET_COUNT, CMD_VIA_MACRO_GET_BUFFER_SIZE, CMD_VIA_MACRO_GET_BUFFER, \
    CMD_VIA_MACRO_SET_BUFFER, CMD_VIA_MACRO_RESET, VIA_BUFFER_CHUNK_SIZE, MACRO_READ_CHUNK
from protocol.macro_action import macro_deserialize, macro_serialize, split_macro_buffer, join_macro_buffer, \
    macro_save
from protocol.paged import read_paged, write_paged


class ProtocolMacro(BaseProtocol):

    macro_slots = None  # cached slot payloads, without terminators
    macro_tail = b""  # bytes read past the last complete slot

    async def get_macro_count(self):
        data = await self.via_send(struct.pack("B", CMD_VIA_MACRO_GET_COUNT))
        return data[1]

    async def get_macro_buffer_size(self):
        data = await self.via_send(struct.pack("B", CMD_VIA_MACRO_GET_BUFFER_SIZE))
        return struct.unpack(">H", data[1:3])[0]

    async def reload_macros(self):
        self.macro_count = await self.get_macro_count()
        self.macro_memory = await self.get_macro_buffer_size()
        self.macro_slots = []
        self.macro_tail = b""
        logging.debug("macros: %d slots in %d bytes", self.macro_count, self.macro_memory)

    async def get_macro_buffer(self, offset, length):
        """Reads `length` bytes of the macro buffer starting at `offset`."""
        return await read_paged(
            self.channel, length, VIA_BUFFER_CHUNK_SIZE,
            lambda off, sz: struct.pack(">BHB", CMD_VIA_MACRO_GET_BUFFER, offset + off, sz),
            lambda data, sz: data[4:4 + sz])

    async def set_macro_buffer(self, offset, data):
        """Writes `data` into the macro buffer starting at `offset`."""
        await write_paged(
            self.channel, data, VIA_BUFFER_CHUNK_SIZE,
            lambda off, chunk: struct.pack(">BHB", CMD_VIA_MACRO_SET_BUFFER, offset + off, len(chunk)) + chunk)

    def _macro_offset(self, index):
        return sum(len(slot) + 1 for slot in self.macro_slots[:index])

    async def _fill_macro_cache(self, index):
        """Reads further into the buffer until slot `index` is cached or the buffer ends."""
        while len(self.macro_slots) <= index and len(self.macro_slots) < self.macro_count:
            start = self._macro_offset(len(self.macro_slots)) + len(self.macro_tail)
            if start >= self.macro_memory:
                # an unterminated tail at the end of the buffer still counts as a slot
                if self.macro_tail:
                    self.macro_slots.append(self.macro_tail)
                    self.macro_tail = b""
                break
            data = self.macro_tail + await self.get_macro_buffer(start, min(MACRO_READ_CHUNK,
                                                                           self.macro_memory - start))
            slots = split_macro_buffer(data)
            self.macro_tail = data[sum(len(s) + 1 for s in slots):]
            self.macro_slots.extend(slots[:self.macro_count - len(self.macro_slots)])

    async def get_macro(self, index):
        """Returns the actions of macro `index`; slots past the end of the buffer are empty."""
        if not 0 <= index < self.macro_count:
            raise IndexError("macro index {} out of range".format(index))
        await self._fill_macro_cache(index)
        if index >= len(self.macro_slots):
            return []
        return macro_deserialize(self.macro_slots[index])

    async def get_macros(self):
        await self._fill_macro_cache(self.macro_count - 1)
        return [await self.get_macro(idx) for idx in range(self.macro_count)]

    async def set_macro(self, index, actions):
        """Replaces macro `index`, rewriting the device buffer from its offset onward."""
        if not 0 <= index < self.macro_count:
            raise IndexError("macro index {} out of range".format(index))
        await self._fill_macro_cache(self.macro_count - 1)

        slots = list(self.macro_slots)
        while len(slots) <= index:
            slots.append(b"")
        slots[index] = macro_serialize(actions)

        offset = sum(len(slot) + 1 for slot in slots[:index])
        tail = join_macro_buffer(slots[index:])
        if offset + len(tail) > self.macro_memory:
            raise ProtocolError("macro buffer overflow: {} bytes needed, {} available".format(
                offset + len(tail), self.macro_memory))

        await self.set_macro_buffer(offset, tail)
        self.macro_slots = slots
        self.macro_tail = b""

    async def reset_macros(self):
        await self.via_send(struct.pack("B", CMD_VIA_MACRO_RESET))
        self.macro_slots = []
        self.macro_tail = b""

    async def save_macro(self):
        macros = await self.get_macros()
        return [macro_save(actions, self.converter) for actions in macros]

    async def restore_macros(self, macros):
        """Writes the given action lists to the lowest slots in one pass; higher slots keep their contents."""
        macros = macros[:self.macro_count]
        await self._fill_macro_cache(self.macro_count - 1)
        slots = [macro_serialize(actions) for actions in macros]
        slots += self.macro_slots[len(slots):]
        buffer = join_macro_buffer(slots)
        if len(buffer) > self.macro_memory:
            raise ProtocolError("macro buffer overflow: {} bytes needed, {} available".format(
                len(buffer), self.macro_memory))
        await self.set_macro_buffer(0, buffer)
        self.macro_slots = slots
        self.macro_tail = b""
