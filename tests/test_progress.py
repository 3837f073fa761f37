import asyncio

import pytest

from transfer.progress import ProgressTracker, compute_percent, format_file_size


class FakeClock:
    def __init__(self, now: float = 100.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.mark.parametrize(
    "transferred,total,expected",
    [
        (0, 100, 0),
        (1, 3, 33),
        (2, 3, 66),
        (999, 1000, 99),
        (1000, 1000, 100),
        (5, 0, 0),
        (0, 0, 0),
        (2000, 1000, 100),
    ],
)
def test_percent_is_floored_and_clamped(transferred, total, expected):
    assert compute_percent(transferred, total) == expected


def test_rate_not_recomputed_inside_window():
    clock = FakeClock()
    tracker = ProgressTracker(clock=clock, window=1.0)
    tracker.start("t1", 100_000)

    clock.advance(1.5)
    first = tracker.update("t1", 30_000, 100_000)
    assert first.rate_bps == pytest.approx(20_000)

    clock.advance(0.01)
    second = tracker.update("t1", 60_000, 100_000)
    assert second.rate_bps == first.rate_bps
    assert second.rate_display == first.rate_display
    assert second.percent == 60


def test_rate_uses_bytes_since_last_sample():
    clock = FakeClock()
    tracker = ProgressTracker(clock=clock, window=1.0)
    tracker.start("t1", 10_000)

    clock.advance(2.0)
    tracker.update("t1", 4_000, 10_000)
    clock.advance(0.5)
    tracker.update("t1", 5_000, 10_000)
    clock.advance(0.75)
    update = tracker.update("t1", 8_000, 10_000)

    # 4000 bytes over the 1.25 s since the 4000-byte sample
    assert update.rate_bps == pytest.approx(3_200)
    assert tracker.get("t1").bytes_at_last_sample == 8_000


def test_rate_display_before_first_sample():
    tracker = ProgressTracker(clock=FakeClock())
    tracker.start("t1", 10)
    update = tracker.update("t1", 5, 10)
    assert update.rate_bps is None
    assert update.rate_display == "0 Bytes/s"


def test_update_unknown_transfer_returns_none():
    tracker = ProgressTracker(clock=FakeClock())
    assert tracker.update("missing", 1, 2) is None


def test_restart_file_resets_anchor():
    clock = FakeClock()
    tracker = ProgressTracker(clock=clock)
    tracker.start("t1", 20_000)
    tracker.update("t1", 20_000, 20_000)

    record = tracker.restart_file("t1", 5_000)
    assert record.total_bytes == 5_000
    assert record.bytes_at_last_sample == 0
    assert record.percent == 0


def test_complete_forces_100_and_removes_record_later():
    async def scenario():
        tracker = ProgressTracker(clock=FakeClock(), cleanup_delay=0.05)
        tracker.start("t1", 1_000)
        tracker.update("t1", 10, 1_000)

        update = tracker.complete("t1")
        assert update.percent == 100
        assert update.complete is True
        assert update.rate_display == "Complete"
        assert "t1" in tracker

        await asyncio.sleep(0.1)
        assert "t1" not in tracker

    asyncio.run(scenario())


def test_finish_file_reports_100_for_empty_file():
    tracker = ProgressTracker(clock=FakeClock())
    tracker.start("t1", 0)
    assert tracker.update("t1", 0, 0).percent == 0
    assert tracker.finish_file("t1").percent == 100


@pytest.mark.parametrize(
    "size,expected",
    [
        (0, "0 Bytes"),
        (512, "512 Bytes"),
        (1024, "1 KB"),
        (1536, "1.5 KB"),
        (1048576, "1 MB"),
        (16384 * 1000, "15.62 MB"),
    ],
)
def test_format_file_size(size, expected):
    assert format_file_size(size) == expected
