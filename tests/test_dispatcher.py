"""Tests for command issue, FIFO reply correlation and timeouts."""

import asyncio
import random

import pytest

from syload.automation.control_channel import ChannelClosed
from syload.automation.dispatcher import CommandDispatcher, CommandFailed, CommandTimeout

from conftest import FakeAgent


class TestIssue:
    @pytest.mark.asyncio
    async def test_writes_line_and_returns_reply(self, fake_agent, dispatcher):
        reply = await dispatcher.issue("MKUSERS 20")
        assert reply == "done MKUSERS 20"
        assert fake_agent.lines == ["MKUSERS 20"]
        assert dispatcher.issued == ["MKUSERS 20"]

    @pytest.mark.asyncio
    async def test_slot_queued_before_write_returns(self, fake_agent, dispatcher):
        seen = []
        original_write = fake_agent.write

        def write(data):
            seen.append(len(fake_agent.channel.pending))
            original_write(data)

        fake_agent.write = write
        await dispatcher.issue("STATS")
        assert seen == [1]

    @pytest.mark.asyncio
    async def test_replies_match_issue_order_under_jitter(self):
        rng = random.Random(7)
        agent = FakeAgent()
        dispatcher = CommandDispatcher(agent.channel)
        commands = [f"RATE {idx}" for idx in range(20)]
        replies = []
        for command in commands:
            agent.delays["RATE"] = rng.uniform(0.0, 0.01)
            replies.append(await dispatcher.issue(command))
        assert replies == [f"done {command}" for command in commands]

    @pytest.mark.asyncio
    async def test_write_failure_leaves_no_slot(self, fake_agent, dispatcher):
        fake_agent.channel.close()
        with pytest.raises(ChannelClosed):
            await dispatcher.issue("STATS")
        assert not fake_agent.channel.pending
        assert dispatcher.issued == []

    @pytest.mark.asyncio
    async def test_agent_error_reply_raises(self, fake_agent, dispatcher):
        fake_agent.replies["MKROOMS 3"] = "error RuntimeError: MKUSERS must run before MKROOMS"
        with pytest.raises(CommandFailed, match="MKROOMS 3 failed on the agent: RuntimeError"):
            await dispatcher.issue("MKROOMS 3")
        assert not fake_agent.channel.pending
        assert await dispatcher.issue("MKUSERS 3") == "done MKUSERS 3"


class TestTimeout:
    @pytest.mark.asyncio
    async def test_timeout_raises_command_timeout(self, fake_agent, dispatcher):
        fake_agent.silent.add("MKROOMS 5")
        with pytest.raises(CommandTimeout, match="Timed out waiting for MKROOMS 5 to complete"):
            await dispatcher.issue("MKROOMS 5", timeout=0.05)

    @pytest.mark.asyncio
    async def test_timeout_is_a_timeout_error(self, fake_agent, dispatcher):
        fake_agent.silent.add("STATS")
        with pytest.raises(TimeoutError):
            await dispatcher.issue("STATS", timeout=0.01)

    @pytest.mark.asyncio
    async def test_late_reply_is_absorbed_by_stale_slot(self):
        agent = FakeAgent(delays={"STATS": 0.1})
        dispatcher = CommandDispatcher(agent.channel)

        with pytest.raises(CommandTimeout):
            await dispatcher.issue("STATS", timeout=0.02)
        # The stale slot is still queued and waiting for the late reply.
        assert len(agent.channel.pending) == 1
        assert agent.channel.pending[0].stale

        await asyncio.sleep(0.15)
        assert not agent.channel.pending

        reply = await dispatcher.issue("ALLSTATS")
        assert reply.startswith("count=100")

    @pytest.mark.asyncio
    async def test_late_reply_does_not_leak_into_next_command(self):
        agent = FakeAgent(delays={"STATS": 0.05})
        dispatcher = CommandDispatcher(agent.channel)

        with pytest.raises(CommandTimeout):
            await dispatcher.issue("STATS", timeout=0.01)
        # Issued while the stale STATS reply is still in flight.
        reply = await dispatcher.issue("RATE 0")
        assert reply == "done RATE 0"

    @pytest.mark.asyncio
    async def test_live_commands_excludes_stale(self, fake_agent, dispatcher):
        fake_agent.silent.add("STATS")
        with pytest.raises(CommandTimeout):
            await dispatcher.issue("STATS", timeout=0.01)
        assert dispatcher.live_commands() == []
