# SPDX-License-Identifier: GPL-2.0-or-later
"""
Paged transfer of device-resident buffers.

A buffer of `length` bytes moves as ceil(length / page_size) commands sent
through one batch. The command builders receive the page's offset relative to
the start of the transfer, so callers add their own base offset.
"""


def page_spans(length, page_size):
    """ (offset, size) of every page covering `length` bytes; the last page may be short """
    return [(offset, min(page_size, length - offset)) for offset in range(0, length, page_size)]


async def read_paged(channel, length, page_size, request, extract):
    """
    Reads `length` bytes.

    request(offset, size) builds the read command for one page and
    extract(response, size) pulls that page's bytes out of its response.
    """
    spans = page_spans(length, page_size)
    responses = await channel.send_batch([request(offset, size) for offset, size in spans])
    buffer = b"".join(extract(response, size) for response, (offset, size) in zip(responses, spans))
    return buffer[:length]


async def write_paged(channel, data, page_size, request):
    """ Writes `data`; request(offset, chunk) builds the write command for one page """
    data = bytes(data)
    spans = page_spans(len(data), page_size)
    await channel.send_batch([request(offset, data[offset:offset + size]) for offset, size in spans])
