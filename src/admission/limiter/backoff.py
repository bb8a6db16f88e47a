"""Exponential backoff for identifiers that repeatedly exceed their quota."""

import logging
import threading
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable

from admission.store.base import now_ms

logger = logging.getLogger(__name__)

MAX_BACKOFF_MS = 60 * 60 * 1000
INACTIVITY_MULTIPLIER = 10


@dataclass
class BackoffState:
    """Violation history for one identifier."""

    violation_count: int
    last_violation_ms: float
    base_window_ms: int

    def is_stale(self, now: float, base_window_ms: int | None = None) -> bool:
        """
        True once the identifier has been quiet for 10x the base window.

        Uses the base window of the current call when given, otherwise the
        one recorded with the last violation.
        """
        base = self.base_window_ms if base_window_ms is None else base_window_ms
        return now - self.last_violation_ms > base * INACTIVITY_MULTIPLIER


class ExponentialBackoff:
    """
    Escalating cool-down calculator.

    Each call to calculate_backoff() records one violation. The Nth
    violation in a row returns base * 2^(N-1), capped at max_backoff_ms.
    A gap longer than 10x the base window starts the count over.

    The ledger is bounded: once max_entries identifiers are tracked the
    least recently violating one is dropped.
    """

    def __init__(
        self,
        max_backoff_ms: int = MAX_BACKOFF_MS,
        max_entries: int = 10_000,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self._max_backoff = max_backoff_ms
        self._max_entries = max_entries
        self._clock = clock or now_ms
        self._violations: OrderedDict[str, BackoffState] = OrderedDict()
        self._lock = threading.Lock()

    def calculate_backoff(self, identifier: str, base_window_ms: int) -> int:
        """
        Record a violation and return the backoff window for it.

        Args:
            identifier: Client identifier
            base_window_ms: Window of the policy that was exceeded

        Returns:
            Backoff duration in milliseconds
        """
        with self._lock:
            now = self._clock()
            state = self._violations.get(identifier)

            if state is None or state.is_stale(now, base_window_ms):
                state = BackoffState(
                    violation_count=1,
                    last_violation_ms=now,
                    base_window_ms=base_window_ms,
                )
            else:
                state.violation_count += 1
                state.last_violation_ms = now
                state.base_window_ms = base_window_ms

            self._violations[identifier] = state
            self._violations.move_to_end(identifier)
            self._evict_over_capacity()

            return self._escalate(base_window_ms, state.violation_count)

    def _escalate(self, base_window_ms: int, violations: int) -> int:
        # Past 2^62 the cap always wins
        exponent = min(violations - 1, 62)
        return min(base_window_ms * (2 ** exponent), self._max_backoff)

    def current_backoff(self, identifier: str, base_window_ms: int) -> int:
        """
        Backoff earned by the violations recorded so far, without adding one.

        Returns base_window_ms for identifiers with no recent violations.
        """
        with self._lock:
            state = self._violations.get(identifier)
            if state is None or state.is_stale(self._clock(), base_window_ms):
                return base_window_ms
            return self._escalate(base_window_ms, state.violation_count)

    def get_violation_count(self, identifier: str) -> int:
        with self._lock:
            state = self._violations.get(identifier)
            return state.violation_count if state else 0

    def reset_violations(self, identifier: str) -> None:
        with self._lock:
            self._violations.pop(identifier, None)

    def prune_expired(self) -> int:
        """Drop identifiers whose inactivity period has elapsed."""
        with self._lock:
            now = self._clock()
            stale = [k for k, v in self._violations.items() if v.is_stale(now)]
            for key in stale:
                del self._violations[key]

        if stale:
            logger.debug(f"Pruned {len(stale)} idle backoff entries")
        return len(stale)

    def violations_report(self, top: int = 10) -> dict[str, Any]:
        """
        Summarize active violations.

        Args:
            top: Number of worst offenders to list

        Returns:
            Totals plus the top offenders by violation count, most recent
            first on ties
        """
        with self._lock:
            now = self._clock()
            active = [
                (identifier, state)
                for identifier, state in self._violations.items()
                if not state.is_stale(now)
            ]

        ranked = sorted(
            active,
            key=lambda item: (item[1].violation_count, item[1].last_violation_ms),
            reverse=True,
        )
        return {
            "total_violations": sum(state.violation_count for _, state in active),
            "unique_identifiers": len(active),
            "top_violators": [
                {
                    "identifier": identifier,
                    "violations": state.violation_count,
                    "last_violation": datetime.fromtimestamp(
                        state.last_violation_ms / 1000, tz=timezone.utc
                    ).isoformat(),
                    "backoff_ms": self._escalate(state.base_window_ms, state.violation_count),
                }
                for identifier, state in ranked[:top]
            ],
        }

    def size(self) -> int:
        return len(self._violations)

    def clear(self) -> None:
        with self._lock:
            self._violations.clear()

    def _evict_over_capacity(self) -> None:
        """Drop least recently violating identifiers (caller holds lock)."""
        while len(self._violations) > self._max_entries:
            evicted, _ = self._violations.popitem(last=False)
            logger.debug(f"Backoff ledger full, evicted {evicted}")
