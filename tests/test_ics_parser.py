import unittest
from datetime import date, datetime, timedelta, timezone

from innsync.errors import FeedParseError
from innsync.ics_parser import parse_ics


AIRBNB_STYLE = """BEGIN:VCALENDAR
VERSION:2.0
PRODID:-//Airbnb Inc//Hosting Calendar 0.8.8//EN
BEGIN:VEVENT
DTSTART;VALUE=DATE:20250310
DTEND;VALUE=DATE:20250312
UID:abc@airbnb.com
SUMMARY:Reserved
END:VEVENT
BEGIN:VEVENT
DTSTART:20250320T150000Z
DURATION:P2D
UID:def@airbnb.com
STATUS:cancelled
SUMMARY:Reserved
END:VEVENT
BEGIN:VEVENT
DTSTART:20250401T160000
DTEND:20250403T100000
SUMMARY:Not available
END:VEVENT
END:VCALENDAR
"""


class IcsParserTests(unittest.TestCase):
    def test_parses_events_in_feed_order(self) -> None:
        events = parse_ics(AIRBNB_STYLE)

        self.assertEqual([event.uid for event in events], ["abc@airbnb.com", "def@airbnb.com", None])
        first, second, third = events
        self.assertEqual(first.start, date(2025, 3, 10))
        self.assertEqual(first.end, date(2025, 3, 12))
        self.assertEqual(first.summary, "Reserved")
        self.assertFalse(first.is_cancelled)

        self.assertEqual(second.start, datetime(2025, 3, 20, 15, 0, tzinfo=timezone.utc))
        self.assertEqual(second.end - second.start, timedelta(days=2))
        self.assertTrue(second.is_cancelled)

        self.assertIsNone(third.start.tzinfo)
        self.assertEqual(third.end, datetime(2025, 4, 3, 10, 0))

    def test_bytes_body_is_accepted(self) -> None:
        self.assertEqual(len(parse_ics(AIRBNB_STYLE.encode("utf-8"))), 3)

    def test_calendar_without_events(self) -> None:
        body = "BEGIN:VCALENDAR\nVERSION:2.0\nPRODID:-//x//y//EN\nEND:VCALENDAR\n"
        self.assertEqual(parse_ics(body), [])

    def test_empty_body_raises(self) -> None:
        with self.assertRaises(FeedParseError):
            parse_ics("   ")

    def test_html_error_page_raises(self) -> None:
        with self.assertRaises(FeedParseError):
            parse_ics("<html><body>Service Unavailable</body></html>")


if __name__ == "__main__":
    unittest.main()
