#!/usr/bin/env python3
"""Issue control commands to the agent and wait for their ``OK`` replies."""

from __future__ import annotations

import asyncio
import sys
from typing import List

from syload.automation.control_channel import ControlChannel, PendingCommand

DEFAULT_COMMAND_TIMEOUT = 10.0
# The agent still answers a command that raised, so the reply order holds.
AGENT_ERROR_PREFIX = "error "


class CommandTimeout(TimeoutError):
    pass


class CommandFailed(RuntimeError):
    pass


class CommandDispatcher:
    """Write one command at a time and correlate replies by arrival order.

    Replies carry no identifier, so correlation relies on the caller awaiting
    each command before issuing the next. A timed-out slot stays queued: if
    its reply shows up later it is consumed by that slot and dropped, which
    keeps every later reply lined up with its own command.
    """

    def __init__(self, channel: ControlChannel, verbose: int = 0):
        self._channel = channel
        self._verbose = verbose
        self.issued: List[str] = []

    @property
    def channel(self) -> ControlChannel:
        return self._channel

    def live_commands(self) -> List[PendingCommand]:
        return [slot for slot in self._channel.pending if not slot.stale and not slot.future.done()]

    async def issue(self, text: str, timeout: float = DEFAULT_COMMAND_TIMEOUT) -> str:
        live = self.live_commands()
        if live:
            print(
                f"[dispatcher] warning: issuing {text!r} while {live[0].text!r} is still awaiting a reply",
                file=sys.stderr,
            )
        slot = PendingCommand(text=text, timeout=timeout, future=asyncio.get_running_loop().create_future())
        self._channel.pending.append(slot)
        try:
            self._channel.write_line(text)
        except Exception:
            self._channel.pending.remove(slot)
            raise
        self.issued.append(text)
        if self._verbose:
            print(f"[dispatcher] >> {text}", file=sys.stderr)

        try:
            reply = await asyncio.wait_for(asyncio.shield(slot.future), timeout)
        except asyncio.TimeoutError:
            slot.stale = True
            raise CommandTimeout(f"Timed out waiting for {text} to complete") from None
        except asyncio.CancelledError:
            slot.stale = True
            raise
        if self._verbose > 1:
            print(f"[dispatcher] << {reply}", file=sys.stderr)
        if reply.startswith(AGENT_ERROR_PREFIX):
            raise CommandFailed(f"{text} failed on the agent: {reply[len(AGENT_ERROR_PREFIX):]}")
        return reply
