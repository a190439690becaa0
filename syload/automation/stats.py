#!/usr/bin/env python3
"""Parsing and evaluation of the agent's ``STATS`` replies."""

from __future__ import annotations

import math
import re
from dataclasses import dataclass, field
from typing import Dict, Optional

_PERCENTILE_TOKEN = re.compile(r"^p(\d+)=(.*)$")

P10_THRESHOLD_S = 1.0
ABORT_STREAK = 6


def parse_percentiles(stats: str) -> Dict[int, float]:
    """Map ``p<N>=<value>`` tokens to ``{N: value}``; other tokens are skipped."""
    percentiles: Dict[int, float] = {}
    for token in stats.split():
        match = _PERCENTILE_TOKEN.match(token)
        if not match:
            continue
        try:
            percentiles[int(match.group(1))] = float(match.group(2))
        except ValueError:
            continue
    return percentiles


@dataclass
class StatsSample:
    raw: str
    elapsed_s: float
    percentiles: Dict[int, float] = field(default_factory=dict)

    @classmethod
    def from_reply(cls, raw: str, elapsed_s: float) -> "StatsSample":
        return cls(raw=raw, elapsed_s=elapsed_s, percentiles=parse_percentiles(raw))

    @property
    def p10(self) -> Optional[float]:
        value = self.percentiles.get(10)
        if value is None or math.isnan(value):
            return None
        return value


@dataclass
class FailureStreak:
    threshold: float = P10_THRESHOLD_S
    limit: int = ABORT_STREAK
    count: int = 0
    missing: int = 0

    def observe(self, sample: StatsSample) -> bool:
        """Fold one sample into the streak; True once the abort limit is reached.

        A sample without a usable p10 counts as passing; ``missing`` keeps
        track of how many such samples were seen.
        """
        p10 = sample.p10
        if p10 is None:
            self.missing += 1
            self.count = 0
        elif p10 <= self.threshold:
            self.count = 0
        else:
            self.count += 1
        return self.count >= self.limit

    @property
    def tripped(self) -> bool:
        return self.count >= self.limit
