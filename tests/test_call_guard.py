"""
Duplicate Call Guard Tests
==========================
"""

from app.services.call_guard import DuplicateCallGuard


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


class TestDuplicateCallGuard:
    """Throttling window behaviour."""

    def test_unknown_key_is_not_duplicate(self):
        guard = DuplicateCallGuard(window_seconds=300, clock=FakeClock())
        assert guard.is_duplicate("user") is False

    def test_within_window_is_duplicate(self):
        clock = FakeClock()
        guard = DuplicateCallGuard(window_seconds=300, clock=clock)

        guard.record("user")
        clock.now += 299

        assert guard.is_duplicate("user") is True
        assert guard.seconds_since_last("user") == 299

    def test_window_elapsed(self):
        clock = FakeClock()
        guard = DuplicateCallGuard(window_seconds=300, clock=clock)

        guard.record("user")
        clock.now += 300

        assert guard.is_duplicate("user") is False
        assert len(guard) == 0

    def test_keys_are_independent(self):
        guard = DuplicateCallGuard(window_seconds=300, clock=FakeClock())
        guard.record("a")

        assert guard.is_duplicate("b") is False

    def test_zero_window_disables(self):
        guard = DuplicateCallGuard(window_seconds=0, clock=FakeClock())
        guard.record("user")

        assert guard.is_duplicate("user") is False
        assert len(guard) == 0

    def test_capacity_evicts_oldest(self):
        clock = FakeClock()
        guard = DuplicateCallGuard(window_seconds=300, max_entries=2, clock=clock)

        for key in ("a", "b", "c"):
            guard.record(key)
            clock.now += 1

        assert len(guard) == 2
        assert guard.is_duplicate("a") is False
        assert guard.is_duplicate("c") is True
