"""Tests for exponential violation backoff."""

import pytest

from admission.limiter.backoff import MAX_BACKOFF_MS, ExponentialBackoff

BASE_MS = 60_000


class TestExponentialBackoff:
    """Tests for ExponentialBackoff."""

    @pytest.fixture
    def backoff(self, clock) -> ExponentialBackoff:
        return ExponentialBackoff(clock=clock)

    def test_escalation(self, backoff: ExponentialBackoff) -> None:
        """Test 1x, 2x, 4x, 8x for consecutive violations."""
        windows = [backoff.calculate_backoff("client", BASE_MS) for _ in range(4)]

        assert windows == [BASE_MS, 2 * BASE_MS, 4 * BASE_MS, 8 * BASE_MS]
        assert backoff.get_violation_count("client") == 4

    def test_capped_at_one_hour(self, backoff: ExponentialBackoff) -> None:
        for _ in range(20):
            window = backoff.calculate_backoff("client", BASE_MS)

        assert window == MAX_BACKOFF_MS

    def test_huge_violation_count_stays_capped(self, backoff: ExponentialBackoff) -> None:
        for _ in range(200):
            window = backoff.calculate_backoff("client", 1)

        assert window == MAX_BACKOFF_MS

    def test_custom_cap(self, clock) -> None:
        backoff = ExponentialBackoff(max_backoff_ms=3 * BASE_MS, clock=clock)

        for _ in range(3):
            window = backoff.calculate_backoff("client", BASE_MS)

        assert window == 3 * BASE_MS

    def test_inactivity_resets(self, backoff: ExponentialBackoff, clock) -> None:
        """Test a gap longer than 10x the base window starts over."""
        backoff.calculate_backoff("client", BASE_MS)
        backoff.calculate_backoff("client", BASE_MS)

        clock.advance(10 * BASE_MS + 1)

        assert backoff.calculate_backoff("client", BASE_MS) == BASE_MS
        assert backoff.get_violation_count("client") == 1

    def test_gap_at_threshold_keeps_history(self, backoff: ExponentialBackoff, clock) -> None:
        backoff.calculate_backoff("client", BASE_MS)
        clock.advance(10 * BASE_MS)

        assert backoff.calculate_backoff("client", BASE_MS) == 2 * BASE_MS

    def test_identifiers_independent(self, backoff: ExponentialBackoff) -> None:
        backoff.calculate_backoff("a", BASE_MS)
        backoff.calculate_backoff("a", BASE_MS)

        assert backoff.calculate_backoff("b", BASE_MS) == BASE_MS

    def test_current_backoff_does_not_record(self, backoff: ExponentialBackoff) -> None:
        """Test reading the current backoff leaves the count alone."""
        assert backoff.current_backoff("client", BASE_MS) == BASE_MS

        backoff.calculate_backoff("client", BASE_MS)
        backoff.calculate_backoff("client", BASE_MS)

        assert backoff.current_backoff("client", BASE_MS) == 2 * BASE_MS
        assert backoff.current_backoff("client", BASE_MS) == 2 * BASE_MS
        assert backoff.get_violation_count("client") == 2

    def test_current_backoff_stale(self, backoff: ExponentialBackoff, clock) -> None:
        backoff.calculate_backoff("client", BASE_MS)
        backoff.calculate_backoff("client", BASE_MS)
        clock.advance(11 * BASE_MS)

        assert backoff.current_backoff("client", BASE_MS) == BASE_MS

    def test_reset_violations(self, backoff: ExponentialBackoff) -> None:
        backoff.calculate_backoff("client", BASE_MS)
        backoff.calculate_backoff("client", BASE_MS)

        backoff.reset_violations("client")

        assert backoff.get_violation_count("client") == 0
        assert backoff.calculate_backoff("client", BASE_MS) == BASE_MS

    def test_prune_expired(self, backoff: ExponentialBackoff, clock) -> None:
        """Test idle identifiers are dropped by the sweep."""
        backoff.calculate_backoff("idle", BASE_MS)
        clock.advance(10 * BASE_MS + 1)
        backoff.calculate_backoff("active", BASE_MS)

        assert backoff.prune_expired() == 1
        assert backoff.size() == 1
        assert backoff.get_violation_count("idle") == 0

    def test_bounded_ledger(self, clock) -> None:
        """Test the least recently violating identifier is evicted."""
        backoff = ExponentialBackoff(max_entries=2, clock=clock)
        backoff.calculate_backoff("a", BASE_MS)
        backoff.calculate_backoff("b", BASE_MS)
        backoff.calculate_backoff("a", BASE_MS)
        backoff.calculate_backoff("c", BASE_MS)

        assert backoff.size() == 2
        assert backoff.get_violation_count("b") == 0
        assert backoff.get_violation_count("a") == 2

    def test_clear(self, backoff: ExponentialBackoff) -> None:
        backoff.calculate_backoff("client", BASE_MS)
        backoff.clear()

        assert backoff.size() == 0

    def test_inactivity_uses_current_base(self, backoff: ExponentialBackoff, clock) -> None:
        """Test the reset threshold follows the base window of the current call."""
        backoff.calculate_backoff("client", BASE_MS)
        backoff.calculate_backoff("client", BASE_MS)

        # Quiet for 11 s: stale against a 1 s base, fresh against a 60 s base
        clock.advance(11_000)

        assert backoff.current_backoff("client", 1000) == 1000
        assert backoff.current_backoff("client", BASE_MS) == 2 * BASE_MS
        assert backoff.calculate_backoff("client", 1000) == 1000
        assert backoff.get_violation_count("client") == 1


class TestViolationsReport:
    """Tests for the violations summary."""

    def test_report_ranks_offenders(self, clock) -> None:
        backoff = ExponentialBackoff(clock=clock)
        for _ in range(3):
            backoff.calculate_backoff("a", 1000)
        backoff.calculate_backoff("b", 1000)
        clock.advance(10)
        for _ in range(3):
            backoff.calculate_backoff("c", 1000)

        report = backoff.violations_report(top=2)

        assert report["total_violations"] == 7
        assert report["unique_identifiers"] == 3
        top = report["top_violators"]
        assert [v["identifier"] for v in top] == ["c", "a"]
        assert top[0]["violations"] == 3
        assert top[0]["backoff_ms"] == 4000
        assert top[0]["last_violation"].endswith("+00:00")

    def test_report_skips_idle(self, clock) -> None:
        backoff = ExponentialBackoff(clock=clock)
        backoff.calculate_backoff("idle", 1000)
        clock.advance(10_001)
        backoff.calculate_backoff("active", 1000)

        report = backoff.violations_report()

        assert report["unique_identifiers"] == 1
        assert report["top_violators"][0]["identifier"] == "active"

    def test_empty_report(self, clock) -> None:
        report = ExponentialBackoff(clock=clock).violations_report()

        assert report == {"total_violations": 0, "unique_identifiers": 0, "top_violators": []}
