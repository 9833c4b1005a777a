"""Occurrence date generation for recurring series."""

from datetime import date
from itertools import islice

import pytest

from hospital_scheduling.modules.recurring.patterns import occurrence_dates, series_error


def take(n, it):
    return list(islice(it, n))


class TestDaily:
    def test_every_other_day(self):
        dates = take(3, occurrence_dates("daily", 2, date(2030, 1, 1), until=date(2030, 12, 31)))
        assert dates == [date(2030, 1, 1), date(2030, 1, 3), date(2030, 1, 5)]

    def test_until_is_inclusive(self):
        dates = list(occurrence_dates("daily", 1, date(2030, 1, 1), until=date(2030, 1, 3)))
        assert dates[-1] == date(2030, 1, 3)
        assert len(dates) == 3


class TestWeekly:
    def test_days_of_week_within_each_week(self):
        # 2030-01-06 is a Sunday; 1=Monday, 3=Wednesday
        dates = take(4, occurrence_dates("weekly", 1, date(2030, 1, 6), until=date(2030, 12, 31), days_of_week=[3, 1]))
        assert dates == [date(2030, 1, 7), date(2030, 1, 9), date(2030, 1, 14), date(2030, 1, 16)]

    def test_days_before_start_in_first_week_are_skipped(self):
        # start on Wednesday 2030-01-09 with Monday+Friday
        dates = take(3, occurrence_dates("weekly", 1, date(2030, 1, 9), until=date(2030, 12, 31), days_of_week=[1, 5]))
        assert dates == [date(2030, 1, 11), date(2030, 1, 14), date(2030, 1, 18)]

    def test_interval_skips_weeks(self):
        dates = take(3, occurrence_dates("weekly", 2, date(2030, 1, 7), until=date(2030, 12, 31)))
        assert dates == [date(2030, 1, 7), date(2030, 1, 21), date(2030, 2, 4)]


class TestMonthly:
    def test_day_31_clamps_to_end_of_february(self):
        dates = take(4, occurrence_dates("monthly", 1, date(2030, 1, 31), until=date(2030, 12, 31), day_of_month=31))
        assert dates == [date(2030, 1, 31), date(2030, 2, 28), date(2030, 3, 31), date(2030, 4, 30)]

    def test_leap_february(self):
        dates = take(2, occurrence_dates("monthly", 1, date(2032, 1, 31), until=date(2032, 12, 31)))
        assert dates == [date(2032, 1, 31), date(2032, 2, 29)]

    def test_day_of_month_earlier_than_start_begins_next_month(self):
        dates = take(2, occurrence_dates("monthly", 1, date(2030, 1, 20), until=date(2030, 12, 31), day_of_month=5))
        assert dates == [date(2030, 2, 5), date(2030, 3, 5)]

    def test_quarterly_crosses_year(self):
        dates = take(3, occurrence_dates("monthly", 3, date(2030, 11, 15), until=date(2031, 12, 31)))
        assert dates == [date(2030, 11, 15), date(2031, 2, 15), date(2031, 5, 15)]


class TestYearly:
    def test_feb_29_falls_back_to_feb_28(self):
        dates = take(5, occurrence_dates("yearly", 1, date(2028, 2, 29), until=date(2040, 1, 1)))
        assert dates == [date(2028, 2, 29), date(2029, 2, 28), date(2030, 2, 28), date(2031, 2, 28), date(2032, 2, 29)]


class TestHighWaterMark:
    def test_after_excludes_already_generated_dates(self):
        dates = list(occurrence_dates("daily", 1, date(2030, 1, 1), until=date(2030, 1, 5), after=date(2030, 1, 3)))
        assert dates == [date(2030, 1, 4), date(2030, 1, 5)]

    def test_reexpansion_lands_on_same_calendar(self):
        full = list(occurrence_dates("weekly", 2, date(2030, 1, 6), until=date(2030, 6, 30), days_of_week=[2, 4]))
        resumed = list(occurrence_dates("weekly", 2, date(2030, 1, 6), until=date(2030, 6, 30), after=full[3], days_of_week=[2, 4]))
        assert resumed == full[4:]


class TestSeriesValidation:
    @pytest.mark.parametrize(
        "kwargs,message",
        [
            ({"pattern_type": "hourly"}, "pattern_type"),
            ({"interval": 0}, "interval_value"),
            ({"end": date(2029, 12, 31)}, "series_end_date"),
            ({"days_of_week": [7]}, "days_of_week"),
            ({"pattern_type": "daily", "days_of_week": [1]}, "weekly"),
            ({"pattern_type": "monthly", "day_of_month": 32}, "day_of_month"),
            ({"max_occurrences": 0}, "max_occurrences"),
        ],
    )
    def test_rejects_malformed_definitions(self, kwargs, message):
        args = {"pattern_type": "weekly", "interval": 1, "start": date(2030, 1, 1), "end": None}
        args.update(kwargs)
        err = series_error(
            args.pop("pattern_type"), args.pop("interval"), args.pop("start"), args.pop("end"), **args
        )
        assert err is not None and message in err

    def test_accepts_valid_definition(self):
        assert series_error("monthly", 1, date(2030, 1, 31), None, day_of_month=31, max_occurrences=5) is None
