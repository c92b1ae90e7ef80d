# SPDX-License-Identifier: GPL-2.0-or-later
"""
Command channel for VIA/Vial reports.

The device does not tag responses, so the next inbound report is taken to be
the answer to the last outbound one. Every exchange, single or batched, runs
under the channel's lock so that assumption holds for the whole connection.

Usage:
    channel = CommandChannel(transport)

    # one command, one response
    response = await channel.send(command_bytes)

    # many commands, responses in send order
    responses = await channel.send_batch([cmd1, cmd2, cmd3])
"""
import asyncio
import logging

from protocol.constants import BATCH_DEPTH, BATCH_STALL_TIMEOUT, COMMAND_TIMEOUT, POLL_INTERVAL
from transport.base import TransportError
from util import chunks


class ChannelError(Exception):
    """Base class for command exchange failures."""
    pass


class CommandTimeout(ChannelError):
    """No report arrived within the command timeout. The connection stays open."""
    pass


class BatchIncomplete(ChannelError):
    """A batch stalled before every command was answered."""

    def __init__(self, responses, expected):
        super().__init__("batch stalled: got {} of {} responses".format(len(responses), expected))
        self.responses = responses
        self.expected = expected


class ResponseSlot:
    """
    Single-slot correlation between an outbound report and its answer.

    A newer report replaces an unclaimed one, matching a device that only
    ever answers the most recent command.
    """

    def __init__(self):
        self.received = None
        self.flag = False

    def put(self, report):
        self.received = bytes(report)
        self.flag = True

    def clear(self):
        self.received = None
        self.flag = False

    async def take(self, timeout, interval=POLL_INTERVAL):
        """ Polls for the next report; returns None when timeout elapses first """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not self.flag and loop.time() < deadline:
            await asyncio.sleep(interval)
        if not self.flag:
            return None
        report = self.received
        self.clear()
        return report


class CommandChannel:
    """
    Serializes commands over one transport connection.

    The lock is owned by the channel rather than shared globally, so several
    connections can be driven side by side.
    """

    def __init__(self, transport, timeout=COMMAND_TIMEOUT, stall_timeout=BATCH_STALL_TIMEOUT,
                 poll_interval=POLL_INTERVAL, batch_depth=BATCH_DEPTH):
        self.transport = transport
        self.timeout = timeout
        self.stall_timeout = stall_timeout
        self.poll_interval = poll_interval
        self.batch_depth = batch_depth
        self.lock = asyncio.Lock()
        self.slot = ResponseSlot()
        self._install_default_hook()

    def _install_default_hook(self):
        self.transport.set_receive_callback(self.slot.put)

    async def send(self, msg, timeout=None):
        """ Writes one report and returns the next inbound one """
        if timeout is None:
            timeout = self.timeout
        async with self.lock:
            self.slot.clear()
            self._install_default_hook()
            try:
                await self._write(msg)
                response = await self.slot.take(timeout, self.poll_interval)
            finally:
                self._install_default_hook()
        if response is None:
            logging.warning("channel: no response to %s within %.3fs", bytes(msg[:4]).hex(), timeout)
            raise CommandTimeout("no response to command {}".format(bytes(msg[:4]).hex()))
        logging.debug("channel: %s -> %s", bytes(msg[:8]).hex(), response[:8].hex())
        return response

    async def send_batch(self, msgs, timeout=None, strict=True):
        """
        Pipelines reports with at most batch_depth outstanding and returns the
        responses in send order.

        A window that stops receiving for `timeout` seconds is abandoned and the
        next window is sent. If the batch ends short, BatchIncomplete is raised,
        or with strict=False the shorter list is returned.
        """
        msgs = list(msgs)
        if timeout is None:
            timeout = self.stall_timeout
        collected = []
        async with self.lock:
            self.transport.set_receive_callback(collected.append)
            try:
                sent = 0
                for window in chunks(msgs, self.batch_depth):
                    for msg in window:
                        await self._write(msg)
                        sent += 1
                    await self._wait_collected(collected, sent, timeout)
                await self._wait_collected(collected, len(msgs), timeout)
            finally:
                self.slot.clear()
                self._install_default_hook()

        responses = [bytes(r) for r in collected[:len(msgs)]]
        if len(responses) < len(msgs):
            logging.warning("channel: batch stalled with %d of %d responses", len(responses), len(msgs))
            if strict:
                raise BatchIncomplete(responses, len(msgs))
        return responses

    async def _wait_collected(self, collected, count, timeout):
        loop = asyncio.get_running_loop()
        last = len(collected)
        deadline = loop.time() + timeout
        while len(collected) < count:
            if len(collected) != last:
                last = len(collected)
                deadline = loop.time() + timeout
            elif loop.time() >= deadline:
                logging.debug("channel: batch window stalled at %d/%d", last, count)
                return False
            await asyncio.sleep(self.poll_interval)
        return True

    async def _write(self, msg):
        try:
            await self.transport.write(bytes(msg))
        except (TransportError, OSError) as e:
            logging.warning("channel: write failed, closing transport: %s", e)
            await self.transport.close()
            if isinstance(e, TransportError):
                raise
            raise TransportError(str(e)) from e
