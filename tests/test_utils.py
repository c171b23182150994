import calendar
from datetime import date, timedelta

import pandas as pd
import pytest

from pipelines.mixpanel.errors import ConfigError
from pipelines.mixpanel.models import DateRange
from pipelines.mixpanel.utils import (DataFrameSink, clamp_range, generate_range,
                                      next_start, parse_date, plan_slices,
                                      to_utc, validate_timezone, write_rows)

TODAY = date(2026, 1, 1)


def _local_epoch(*args):
    return calendar.timegm(args + (0,) * (6 - len(args)))


def test_daterange_rejects_inverted_bounds():
    with pytest.raises(ConfigError):
        DateRange(date(2020, 1, 2), date(2020, 1, 1))


@pytest.mark.parametrize("size", [1, 2, 3, 7, 10, 19, 20, 30])
def test_plan_slices_partition_range(size):
    rng = DateRange(date(2020, 1, 1), date(2020, 1, 20))
    slices = plan_slices(rng, size, TODAY)
    days = [d for s in slices for d in s.dates()]
    assert days == rng.dates()
    assert all(len(s) <= size for s in slices)
    assert all(a.end + timedelta(days=1) == b.start for a, b in zip(slices, slices[1:]))


def test_plan_slices_default_week():
    rng = DateRange(date(2020, 1, 1), date(2020, 1, 20))
    slices = plan_slices(rng, 7, TODAY)
    assert slices == [
        DateRange(date(2020, 1, 1), date(2020, 1, 7)),
        DateRange(date(2020, 1, 8), date(2020, 1, 14)),
        DateRange(date(2020, 1, 15), date(2020, 1, 20)),
    ]


def test_plan_slices_clamps_to_yesterday_and_warns():
    today = date(2020, 1, 10)
    rng = DateRange(date(2020, 1, 5), today + timedelta(days=1))
    with pytest.warns(UserWarning, match="2020-01-10..2020-01-11"):
        slices = plan_slices(rng, 7, today)
    assert slices[-1].end == date(2020, 1, 9)
    assert slices[0].start == date(2020, 1, 5)


def test_plan_slices_future_only_range_is_empty():
    today = date(2020, 1, 10)
    with pytest.warns(UserWarning):
        assert plan_slices(DateRange(today, today), 7, today) == []


@pytest.mark.parametrize("size", [0, -3])
def test_plan_slices_rejects_bad_size(size):
    with pytest.raises(ConfigError):
        plan_slices(DateRange(date(2020, 1, 1), date(2020, 1, 2)), size, TODAY)


def test_clamp_range_reports_dropped_dates():
    today = date(2020, 1, 10)
    clamped, dropped = clamp_range(DateRange(date(2020, 1, 8), date(2020, 1, 12)), today)
    assert clamped == DateRange(date(2020, 1, 8), date(2020, 1, 9))
    assert dropped == [date(2020, 1, 10), date(2020, 1, 11), date(2020, 1, 12)]


def test_next_start():
    assert next_start(DateRange(date(2020, 2, 22), date(2020, 2, 28))) == date(2020, 2, 29)


def test_generate_range():
    assert generate_range(date(2020, 1, 1), 5, TODAY) == DateRange(date(2020, 1, 1), date(2020, 1, 5))
    assert generate_range(date(2025, 12, 20), None, TODAY) == DateRange(
        date(2025, 12, 20), date(2025, 12, 31)
    )
    with pytest.warns(UserWarning):
        assert generate_range(TODAY, 3, TODAY) is None


def test_parse_date():
    assert parse_date("2020-01-31") == date(2020, 1, 31)
    assert parse_date("3 days ago", today=TODAY) == date(2025, 12, 29)
    with pytest.raises(ConfigError, match="2020-13-01"):
        parse_date("2020-13-01")


def test_validate_timezone():
    validate_timezone("Asia/Tokyo")
    with pytest.raises(ConfigError, match="Mars/Olympus"):
        validate_timezone("Mars/Olympus")
    with pytest.raises(ConfigError):
        validate_timezone("")


@pytest.mark.parametrize("epoch", [0, 1, 1577836800, 1700000000, 86399])
def test_to_utc_fixed_offset_zone(epoch):
    # Etc/GMT+5 es UTC-5 todo el año
    assert to_utc(epoch, "Etc/GMT+5") == epoch + 5 * 3600


def test_to_utc_standard_and_daylight_time():
    winter = _local_epoch(2018, 1, 15, 12)
    summer = _local_epoch(2018, 7, 15, 12)
    assert to_utc(winter, "America/New_York") == winter + 5 * 3600
    assert to_utc(summer, "America/New_York") == summer + 4 * 3600


def test_to_utc_spring_forward_gap_moves_one_hour_ahead():
    # 2018-03-11 02:30 no existe en Nueva York: se lee como 03:30 EDT
    gap = _local_epoch(2018, 3, 11, 2, 30)
    assert to_utc(gap, "America/New_York") == gap + 3600 + 4 * 3600
    assert to_utc(gap, "America/New_York") == _local_epoch(2018, 3, 11, 7, 30)


def test_to_utc_fall_back_ambiguous_takes_dst_side():
    ambiguous = _local_epoch(2018, 11, 4, 1, 30)
    assert to_utc(ambiguous, "America/New_York") == ambiguous + 4 * 3600


def test_sink_and_write_rows(tmp_path):
    sink = DataFrameSink(["event", "props"], json_columns=["props"])
    sink.add(["a", {"k": 1}])
    sink.add(["b", None])
    df = sink.finish()
    assert list(df.columns) == ["event", "props"]
    assert df.loc[0, "props"] == '{"k": 1}'
    with pytest.raises(RuntimeError):
        sink.add(["c", None])

    run_ts = pd.Timestamp("2026-01-01T10:00:00Z").to_pydatetime()
    path = write_rows(df, "{root}/{dataset}/{year}/{month}/{iso_run}.csv", "ev", run_ts, str(tmp_path))
    assert path.startswith(str(tmp_path / "ev" / "2026" / "01"))
    back = pd.read_csv(path)
    assert back["event"].tolist() == ["a", "b"]
