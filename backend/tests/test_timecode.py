"""Tests for time string conversion."""
import pytest

from podclip.errors import InvalidTimecode
from podclip.utils.timecode import format_seconds, seconds_to_time, time_to_seconds


class TestTimeToSeconds:
    """Tests for parsing time values."""

    def test_hours_minutes_seconds(self):
        assert time_to_seconds("01:02:03") == 3723.0

    def test_minutes_seconds(self):
        assert time_to_seconds("02:30") == 150.0

    def test_fractional_seconds(self):
        assert time_to_seconds("00:00:01.5") == pytest.approx(1.5)

    def test_numbers_pass_through(self):
        assert time_to_seconds(90) == 90.0
        assert time_to_seconds(12.25) == 12.25

    def test_minutes_may_exceed_an_hour_without_hours_field(self):
        assert time_to_seconds("75:00") == 4500.0

    @pytest.mark.parametrize("value", [
        "",
        "abc",
        "1:2:3:4",
        "00:61:00",
        "00:00:60",
        "aa:bb",
        "-1:00",
        -5,
        True,
        None,
        float("nan"),
    ])
    def test_invalid_values(self, value):
        with pytest.raises(InvalidTimecode):
            time_to_seconds(value)

    def test_invalid_timecode_is_a_value_error(self):
        with pytest.raises(ValueError):
            time_to_seconds("not a time")


class TestSecondsToTime:
    """Tests for rendering seconds."""

    def test_round_value(self):
        assert seconds_to_time(3723) == "01:02:03"

    def test_fraction_is_floored(self):
        assert seconds_to_time(59.999) == "00:00:59"

    def test_negative_rejected(self):
        with pytest.raises(InvalidTimecode):
            seconds_to_time(-1)

    def test_whole_seconds_survive_a_round_trip(self):
        for value in (0, 59, 60, 3599, 3600, 86399):
            assert time_to_seconds(seconds_to_time(value)) == value


def test_format_seconds_keeps_milliseconds():
    assert format_seconds(3723.456) == "01:02:03.456"
    assert format_seconds(0) == "00:00:00.000"
