"""Tests for STATS reply parsing and the p10 failure streak."""

from syload.automation.stats import ABORT_STREAK, FailureStreak, StatsSample, parse_percentiles


def _sample(p10):
    raw = "count=5" if p10 is None else f"count=5 p10={p10}"
    return StatsSample.from_reply(raw, 1.0)


class TestParsePercentiles:
    def test_basic(self):
        assert parse_percentiles("p10=0.5 p25=0.8 p50=1.1") == {10: 0.5, 25: 0.8, 50: 1.1}

    def test_malformed_tokens_are_ignored(self):
        parsed = parse_percentiles("count=12 p10=0.5 pX=3 p25= p50=abc p=1 p90=2.5 garbage")
        assert parsed == {10: 0.5, 90: 2.5}

    def test_extra_whitespace(self):
        assert parse_percentiles("  p10=0.1\t\tp99=4  ") == {10: 0.1, 99: 4.0}

    def test_empty(self):
        assert parse_percentiles("") == {}


class TestStatsSample:
    def test_p10(self):
        sample = StatsSample.from_reply("p10=0.7 p50=1.2", 5.0)
        assert sample.p10 == 0.7
        assert sample.elapsed_s == 5.0

    def test_nan_and_missing_p10_read_as_none(self):
        assert StatsSample.from_reply("p10=nan", 5.0).p10 is None
        assert StatsSample.from_reply("p50=0.3", 5.0).p10 is None


class TestFailureStreak:
    def test_trips_on_sixth_consecutive_failure(self):
        streak = FailureStreak()
        results = [streak.observe(_sample(1.5)) for _ in range(ABORT_STREAK)]
        assert results == [False] * (ABORT_STREAK - 1) + [True]
        assert streak.tripped

    def test_pass_resets(self):
        streak = FailureStreak()
        for _ in range(5):
            assert not streak.observe(_sample(2.0))
        assert not streak.observe(_sample(0.4))
        assert streak.count == 0
        for _ in range(5):
            assert not streak.observe(_sample(2.0))
        assert streak.observe(_sample(2.0))

    def test_threshold_is_inclusive_pass(self):
        streak = FailureStreak()
        for _ in range(10):
            assert not streak.observe(_sample(1.0))
        assert streak.count == 0

    def test_missing_p10_counts_as_pass(self):
        streak = FailureStreak()
        for _ in range(5):
            streak.observe(_sample(3.0))
        assert not streak.observe(_sample(None))
        assert streak.count == 0
        assert streak.missing == 1
