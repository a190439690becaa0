"""Shared fakes for driving the control channel without a real agent process."""

import asyncio
from typing import Dict, List, Optional

import pytest

from syload.automation.control_channel import ControlChannel
from syload.automation.dispatcher import CommandDispatcher

GOOD_STATS = "count=10 p10=0.200 p25=0.300 p50=0.400"
BAD_STATS = "count=10 p10=1.500 p25=1.800 p50=2.100"


class FakeAgent:
    """Answers every command written to the channel with an ``OK`` line.

    Replies are fed back through ``ControlChannel.feed`` after a per-command
    delay, which lets tests reorder or hold back replies.
    """

    def __init__(self, stats_replies: Optional[List[str]] = None, delays: Optional[Dict[str, float]] = None):
        self.lines: List[str] = []
        self.progress: List[str] = []
        self.anomalies: List[tuple] = []
        self.stats_replies = list(stats_replies or [])
        self.delays = dict(delays or {})
        self.silent: set = set()
        self.replies: Dict[str, str] = {}
        self.sent_at: List[tuple] = []
        self._last_reply_at = 0.0
        self.channel = ControlChannel(
            writer=self,
            on_progress=self.progress.append,
            on_anomaly=lambda verb, text: self.anomalies.append((verb, text)),
        )

    def write(self, data: bytes) -> None:
        loop = asyncio.get_running_loop()
        for line in data.decode("utf-8").splitlines():
            self.lines.append(line)
            self.sent_at.append((loop.time(), line))
            if line in self.silent:
                continue
            reply = self.reply_for(line)
            # Like the real agent, answer in order: never before the previous reply.
            when = max(loop.time() + self.delays.get(line.split()[0], 0.0), self._last_reply_at + 1e-6)
            self._last_reply_at = when
            loop.call_at(when, self.channel.feed, f"OK {reply}\n".encode("utf-8"))

    def reply_for(self, line: str) -> str:
        if line in self.replies:
            return self.replies[line]
        verb = line.split()[0]
        if verb == "STATS":
            return self.stats_replies.pop(0) if self.stats_replies else GOOD_STATS
        if verb == "ALLSTATS":
            return "count=100 p10=0.250 p50=0.500"
        return f"done {line}"

    def commands(self, verb: str) -> List[str]:
        return [line for line in self.lines if line.split()[0] == verb]


@pytest.fixture
def fake_agent():
    return FakeAgent()


@pytest.fixture
def dispatcher(fake_agent):
    return CommandDispatcher(fake_agent.channel)
