"""
Caseflow — Business Day Calendar Tests
"""

import os
import sys
import unittest
from datetime import date, datetime, timezone

_base = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, _base)

from lifecycle.business_days import HolidayCalendar, add_business_days, due_timestamp


class TestHolidayCalendar(unittest.TestCase):

    def setUp(self):
        self.cal = HolidayCalendar.from_dict({
            "weekend_days": [5, 6],
            "holidays": {"*": ["2025-08-15"], "MH": [date(2025, 8, 27)]},
        })

    def test_weekend(self):
        self.assertFalse(self.cal.is_business_day(date(2025, 8, 16)))   # Saturday
        self.assertTrue(self.cal.is_business_day(date(2025, 8, 18)))    # Monday

    def test_global_holiday(self):
        self.assertFalse(self.cal.is_business_day(date(2025, 8, 15)))
        self.assertFalse(self.cal.is_business_day(date(2025, 8, 15), region="MH"))

    def test_regional_holiday(self):
        self.assertFalse(self.cal.is_business_day(date(2025, 8, 27), region="MH"))
        self.assertTrue(self.cal.is_business_day(date(2025, 8, 27), region="KA"))
        self.assertTrue(self.cal.is_business_day(date(2025, 8, 27)))


class TestAddBusinessDays(unittest.TestCase):

    def setUp(self):
        self.cal = HolidayCalendar.from_dict({"holidays": {"*": ["2025-08-15"]}})

    def test_zero_days(self):
        self.assertEqual(add_business_days(self.cal, date(2025, 8, 13), 0), date(2025, 8, 13))

    def test_skips_weekend_and_holiday(self):
        # Thu 14 Aug + 1 → Fri 15 is a holiday, weekend follows → Mon 18
        self.assertEqual(add_business_days(self.cal, date(2025, 8, 14), 1), date(2025, 8, 18))

    def test_several_days(self):
        self.assertEqual(add_business_days(self.cal, date(2025, 8, 11), 5), date(2025, 8, 19))


class TestDueTimestamp(unittest.TestCase):

    def test_end_of_day_utc(self):
        cal = HolidayCalendar()
        now = datetime(2025, 8, 11, 9, 30, tzinfo=timezone.utc).timestamp()   # Monday
        due = datetime.fromtimestamp(due_timestamp(cal, now, 2), tz=timezone.utc)
        self.assertEqual((due.year, due.month, due.day), (2025, 8, 13))
        self.assertEqual((due.hour, due.minute, due.second), (23, 59, 59))


if __name__ == "__main__":
    unittest.main()
