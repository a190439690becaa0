#!/usr/bin/env python3
"""Phase sequencing for one load test run.

INIT -> PROVISIONING_USERS -> PROVISIONING_ROOMS -> WARMUP -> MEASURE
(-> ABORTED on sustained p10 latency) -> WINDDOWN -> DONE
"""

from __future__ import annotations

import asyncio
import math
import sys
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, List, Optional

from syload.automation.dispatcher import CommandDispatcher
from syload.automation.stats import FailureStreak, StatsSample

MKUSERS_TIMEOUT_S = 50.0
MKROOMS_TIMEOUT_S = 30.0

ABORT_MESSAGE = "E2E latency above 1000msec at p10 for 30sec; stopping test"


class Phase(str, Enum):
    INIT = "INIT"
    PROVISIONING_USERS = "PROVISIONING_USERS"
    PROVISIONING_ROOMS = "PROVISIONING_ROOMS"
    WARMUP = "WARMUP"
    MEASURE = "MEASURE"
    ABORTED = "ABORTED"
    WINDDOWN = "WINDDOWN"
    DONE = "DONE"


class MeasureOutcome(str, Enum):
    COMPLETED_NORMALLY = "CompletedNormally"
    ABORTED_ON_LATENCY = "AbortedOnLatency"


@dataclass
class WarmupStep:
    rate: float
    duration: float


def _format_rate(rate: float) -> str:
    # RATE 1 rather than RATE 1.0, full precision otherwise
    rate = float(rate)
    if rate.is_integer():
        return str(int(rate))
    return repr(rate)


def parse_warmup(schedule) -> List[WarmupStep]:
    """Accept ``"1:60,3:30"`` or a list of ``[rate, duration]`` / mapping entries."""
    if not schedule:
        return []
    if isinstance(schedule, str):
        entries = [part.strip() for part in schedule.split(",") if part.strip()]
    else:
        entries = list(schedule)
    steps: List[WarmupStep] = []
    for entry in entries:
        if isinstance(entry, str):
            rate, sep, duration = entry.partition(":")
            if not sep:
                raise ValueError(f"warmup step {entry!r} must be rate:duration")
        elif isinstance(entry, dict):
            rate, duration = entry.get("rate"), entry.get("duration")
        else:
            rate, duration = entry
        try:
            step = WarmupStep(rate=float(rate), duration=float(duration))
        except (TypeError, ValueError):
            raise ValueError(f"invalid warmup step {entry!r}") from None
        if step.rate < 0 or step.duration <= 0:
            raise ValueError(f"warmup step {entry!r} needs rate >= 0 and duration > 0")
        steps.append(step)
    return steps


@dataclass
class TestParameters:
    users: int = 20
    rooms: int = 20
    rate: float = 5.0
    duration: float = 120.0
    stat_interval: float = 5.0
    warmup: List[WarmupStep] = field(default_factory=lambda: parse_warmup("1:60"))

    __test__ = False

    def __post_init__(self):
        if self.users <= 0 or self.rooms <= 0:
            raise ValueError("users and rooms must be positive")
        if self.rate < 0:
            raise ValueError("rate must not be negative")
        if self.duration <= 0:
            raise ValueError("duration must be positive")
        if self.stat_interval <= 0:
            raise ValueError("stat_interval must be positive")
        if isinstance(self.warmup, str):
            self.warmup = parse_warmup(self.warmup)


@dataclass
class RunResult:
    outcome: MeasureOutcome
    samples: List[StatsSample]
    final_sample: StatsSample
    summary: str
    phases: List[Phase]


class _LatencyAbort(Exception):
    """Raised inside the sampling loop once the failure streak trips."""


StatsObserver = Callable[[StatsSample, bool], None]


class TestOrchestrator:
    __test__ = False

    def __init__(
        self,
        dispatcher: CommandDispatcher,
        params: TestParameters,
        on_stats: Optional[StatsObserver] = None,
        on_phase: Optional[Callable[[Phase], None]] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        streak: Optional[FailureStreak] = None,
    ):
        self._dispatcher = dispatcher
        self._params = params
        self._on_stats = on_stats
        self._on_phase = on_phase
        self._sleep = sleep
        self.streak = streak or FailureStreak()
        self.phase = Phase.INIT
        self.phase_history: List[Phase] = [Phase.INIT]
        self.samples: List[StatsSample] = []
        self._start: Optional[float] = None
        self._ticks_done = 0
        self._in_flight = False

    def _enter(self, phase: Phase) -> None:
        self.phase = phase
        self.phase_history.append(phase)
        if self._on_phase:
            self._on_phase(phase)

    def _elapsed(self) -> float:
        return asyncio.get_running_loop().time() - (self._start or 0.0)

    async def run(self) -> RunResult:
        await self.provision()
        await self.warmup()
        outcome = await self.measure()
        final_sample, summary = await self.winddown()
        self._enter(Phase.DONE)
        return RunResult(
            outcome=outcome,
            samples=list(self.samples),
            final_sample=final_sample,
            summary=summary,
            phases=list(self.phase_history),
        )

    async def provision(self) -> None:
        self._enter(Phase.PROVISIONING_USERS)
        await self._dispatcher.issue(f"MKUSERS {self._params.users}", timeout=MKUSERS_TIMEOUT_S)
        self._enter(Phase.PROVISIONING_ROOMS)
        await self._dispatcher.issue(f"MKROOMS {self._params.rooms}", timeout=MKROOMS_TIMEOUT_S)

    async def warmup(self) -> None:
        self._enter(Phase.WARMUP)
        for step in self._params.warmup:
            await self._dispatcher.issue(f"RATE {_format_rate(step.rate)}")
            await self._sleep(step.duration)

    async def measure(self) -> MeasureOutcome:
        """Hold the target rate for the configured duration, sampling STATS.

        Every cycle waits ``stat_interval`` after the previous sample before
        issuing the next STATS. Once the duration has elapsed no new cycle is
        started: a STATS already in flight is still collected, as is the tick
        that falls on the deadline when replies are prompt. A streak tripped by
        one of those closing samples does not turn the run into an abort.
        """
        self._enter(Phase.MEASURE)
        params = self._params
        await self._dispatcher.issue(f"RATE {_format_rate(params.rate)}")

        loop = asyncio.get_running_loop()
        self._start = loop.time()
        self._ticks_done = 0
        self._in_flight = False
        self.streak.count = 0
        deadline = self._start + params.duration
        due_ticks = int(math.floor(params.duration / params.stat_interval + 1e-9))
        closing = asyncio.Event()

        sampler = asyncio.ensure_future(self._sample_periodically(deadline, closing))
        timer = asyncio.ensure_future(self._sleep_until(deadline))
        try:
            done, _ = await asyncio.wait({sampler, timer}, return_when=asyncio.FIRST_COMPLETED)
            if timer not in done:
                # The sampler only ever finishes early by raising.
                sampler.result()
            closing.set()
            await self._close_sampling(sampler, due_ticks)
        except _LatencyAbort:
            print(ABORT_MESSAGE)
            self._enter(Phase.ABORTED)
            return MeasureOutcome.ABORTED_ON_LATENCY
        finally:
            for task in (sampler, timer):
                if not task.done():
                    task.cancel()
        return MeasureOutcome.COMPLETED_NORMALLY

    async def _close_sampling(self, sampler: asyncio.Future, due_ticks: int) -> None:
        try:
            if sampler.done():
                sampler.result()
            elif self._in_flight:
                await sampler
            else:
                sampler.cancel()
                if self._ticks_done + 1 == due_ticks:
                    await self._sample_once()
        except _LatencyAbort:
            print("[orchestrator] p10 threshold reached on the closing sample; duration already elapsed", file=sys.stderr)

    async def _sleep_until(self, when: float) -> None:
        delay = when - asyncio.get_running_loop().time()
        if delay > 0:
            await self._sleep(delay)

    async def _sample_periodically(self, deadline: float, closing: asyncio.Event) -> None:
        loop = asyncio.get_running_loop()
        while not closing.is_set():
            await self._sleep(self._params.stat_interval)
            if closing.is_set() or loop.time() >= deadline:
                # Past the deadline; measure() decides whether one more sample is taken.
                await closing.wait()
                return
            await self._sample_once()

    async def _sample_once(self) -> None:
        self._in_flight = True
        try:
            sample = await self.take_sample()
        finally:
            self._in_flight = False
        self._ticks_done += 1
        if self.streak.observe(sample):
            raise _LatencyAbort(ABORT_MESSAGE)
        if sample.p10 is None:
            print("[orchestrator] p10 missing from STATS reply; treating as passing", file=sys.stderr)

    async def take_sample(self, final: bool = False) -> StatsSample:
        reply = await self._dispatcher.issue("STATS")
        sample = StatsSample.from_reply(reply, self._elapsed())
        if not final:
            self.samples.append(sample)
        if self._on_stats:
            try:
                self._on_stats(sample, final)
            except Exception as exc:
                print(f"[orchestrator] stats observer failed: {exc}", file=sys.stderr)
        print(f"STATS: {reply}")
        return sample

    async def winddown(self):
        self._enter(Phase.WINDDOWN)
        await self._dispatcher.issue("RATE 0")
        final_sample = await self.take_sample(final=True)
        summary = await self._dispatcher.issue("ALLSTATS")
        print(f"Final STATS for rate={_format_rate(self._params.rate)}: {summary}")
        return final_sample, summary
