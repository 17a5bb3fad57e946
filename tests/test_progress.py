import pytest

from core.parsers import DurationParser, FrameCountParser, PercentageParser, parse_timecode
from core.progress import (MAX_PROCESSING_PROGRESS, ProgressThrottle, clamp_processing,
                           multi_item, single_phase, two_phase)


class FakeClock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now


class TestParsers:

    def test_parse_timecode(self):
        assert parse_timecode("01:02:03.5") == 3723.5
        assert parse_timecode("00:00:10") == 10.0
        assert parse_timecode("10s") is None

    def test_duration_parser_needs_duration_first(self):
        parser = DurationParser()
        assert parser.parse("frame=1 time=00:00:05.00") is None
        assert parser.parse("  Duration: 00:00:20.00, start: 0.0") is None
        assert parser.parse("frame=2 time=00:00:05.00 bitrate=1k") == 25.0

    def test_duration_parser_override_ignores_announced(self):
        parser = DurationParser(total_duration=10.0)
        parser.parse("Duration: 01:00:00.00")
        assert parser.parse("time=00:00:05.00") == 50.0

    def test_percentage_parser(self):
        assert PercentageParser().parse("progress=42.5%") == 42.5
        assert PercentageParser().parse("progress=continue") is None

    def test_frame_count_parser(self):
        parser = FrameCountParser(total_frames=50)
        assert parser.parse("frame=   10 fps=5") == 20.0
        assert parser.last_frame == 10
        assert parser.parse("no frames here") is None
        assert FrameCountParser(total_frames=0).parse("frame=3") is None


class TestMapping:

    def test_processing_never_reaches_100(self):
        assert single_phase(100.0) == MAX_PROCESSING_PROGRESS
        assert clamp_processing(-5) == 0.0

    def test_two_phase_boundaries(self):
        assert two_phase(0, 100.0, 40.0) == 40.0
        assert two_phase(1, 0.0, 40.0) == 40.0
        assert two_phase(0, 50.0, 50.0) == 25.0
        assert two_phase(1, 50.0, 40.0) == 70.0
        assert two_phase(1, 100.0, 40.0) == MAX_PROCESSING_PROGRESS

    def test_multi_item(self):
        # second of four items, half done
        assert multi_item(2, 50.0, 4) == 62.5
        assert multi_item(0, 0.0, 4) == 0.0
        assert multi_item(0, 10.0, 0) == 0.0

    @pytest.mark.parametrize("weight", [40.0, 50.0])
    def test_two_phase_is_monotonic(self, weight):
        values = [two_phase(i, local, weight) for i in (0, 1) for local in range(0, 101, 10)]
        assert values == sorted(values)


class TestThrottle:

    def test_first_update_passes(self):
        assert ProgressThrottle(clock=FakeClock()).should_publish(0.0)

    def test_small_step_within_interval_is_dropped(self):
        clock = FakeClock()
        throttle = ProgressThrottle(min_interval=1.0, min_delta=1.0, clock=clock)
        assert throttle.should_publish(10.0)
        clock.now += 0.2
        assert not throttle.should_publish(10.5)
        assert throttle.should_publish(11.0)

    def test_small_step_after_interval_passes(self):
        clock = FakeClock()
        throttle = ProgressThrottle(min_interval=1.0, min_delta=1.0, clock=clock)
        throttle.should_publish(10.0)
        clock.now += 1.5
        assert throttle.should_publish(10.2)

    def test_never_goes_backwards(self):
        clock = FakeClock()
        throttle = ProgressThrottle(clock=clock)
        throttle.should_publish(50.0)
        clock.now += 10
        assert not throttle.should_publish(50.0)
        assert not throttle.should_publish(20.0)
        assert throttle.last_value == 50.0
