"""
Tests for filter translation, paging and lookup by id

PATTERN RECOGNITION: SearchEngine runs against the in-memory FakeMailbox,
which evaluates the same SEARCH tokens a real server would receive.
"""

import math
import unittest
from datetime import date, datetime, timezone

import pytest

from email_ops.modules.email_data import EmailFilter
from email_ops.modules.message_codec import MessageCodec
from email_ops.modules.search_engine import (
    SearchEngine,
    build_search_criteria,
    imap_date,
    validate_email_id,
)
from email_ops.utils.errors import NotFoundError, ValidationError

from fakes import FakeIMAPSession, FakeMailbox


class TestBuildSearchCriteria(unittest.TestCase):
    """Filter -> IMAP SEARCH token translation"""

    def test_empty_filter_matches_all(self):
        self.assertEqual(build_search_criteria(EmailFilter()), ["ALL"])

    def test_sender_and_unseen(self):
        criteria = build_search_criteria(EmailFilter(sender="boss@co.com", seen=False))
        self.assertEqual(criteria, ["FROM", '"boss@co.com"', "UNSEEN"])

    def test_all_fields(self):
        criteria = build_search_criteria(EmailFilter(
            sender="a@x.com",
            recipient="b@x.com",
            subject="report",
            since=date(2024, 3, 5),
            before=date(2024, 4, 1),
            seen=True,
            flagged=False,
        ))
        self.assertEqual(criteria, [
            "FROM", '"a@x.com"',
            "TO", '"b@x.com"',
            "SUBJECT", '"report"',
            "SINCE", "05-Mar-2024",
            "BEFORE", "01-Apr-2024",
            "SEEN",
            "UNFLAGGED",
        ])

    def test_non_ascii_term_announces_charset(self):
        criteria = build_search_criteria(EmailFilter(subject="Grüße"))
        self.assertEqual(criteria[:2], ["CHARSET", "UTF-8"])
        self.assertIn('"Grüße"', criteria)

    def test_imap_date_is_locale_independent(self):
        self.assertEqual(imap_date(date(2023, 12, 9)), "09-Dec-2023")


class TestEmailFilter(unittest.TestCase):
    """Closed filter validation"""

    def test_from_dict_maps_front_end_keys(self):
        f = EmailFilter.from_dict({"from": "boss@co.com", "to": "me@x.com", "seen": False})
        self.assertEqual(f.sender, "boss@co.com")
        self.assertEqual(f.recipient, "me@x.com")
        self.assertIs(f.seen, False)

    def test_from_dict_rejects_unknown_keys(self):
        with self.assertRaises(ValidationError) as ctx:
            EmailFilter.from_dict({"from": "a@x.com", "hasAttachment": True})
        self.assertEqual(ctx.exception.code, "INVALID_FILTER")
        self.assertEqual(ctx.exception.details["unknown_fields"], ["hasAttachment"])

    def test_rejects_wrong_types(self):
        with self.assertRaises(ValidationError):
            EmailFilter.from_dict({"seen": "no"})
        with self.assertRaises(ValidationError):
            EmailFilter(sender=42)

    def test_rejects_quote_injection(self):
        with self.assertRaises(ValidationError):
            EmailFilter(subject='x" OR ALL "')

    def test_dates_are_truncated_and_parsed(self):
        f = EmailFilter.from_dict({
            "since": "2024-03-05T15:30:00Z",
            "before": datetime(2024, 3, 9, 23, 0, tzinfo=timezone.utc),
        })
        self.assertEqual(f.since, date(2024, 3, 5))
        self.assertEqual(f.before, date(2024, 3, 9))

    def test_since_must_precede_before(self):
        with self.assertRaises(ValidationError):
            EmailFilter(since=date(2024, 3, 5), before=date(2024, 3, 5))

    def test_empty(self):
        self.assertTrue(EmailFilter().is_empty())
        self.assertTrue(EmailFilter.from_dict(None).is_empty())
        self.assertFalse(EmailFilter(flagged=True).is_empty())


class TestSearchEngine(unittest.TestCase):
    """Paging and hydration over the fake mailbox"""

    def setUp(self):
        self.mailbox = FakeMailbox()
        for i in range(23):
            self.mailbox.add_message(
                subject=f"Message {i + 1}",
                sender="boss@co.com" if i % 3 == 0 else "peer@co.com",
                seen=i % 2 == 0,
            )
        self.session = FakeIMAPSession(self.mailbox)
        self.engine = SearchEngine(MessageCodec())

    def test_items_never_exceed_limit_and_total_is_stable(self):
        totals = set()
        for page in range(1, 6):
            result = self.engine.search(self.session, EmailFilter(), page, 5)
            self.assertLessEqual(len(result.items), 5)
            totals.add(result.total)
        self.assertEqual(totals, {23})

    def test_pages_concatenate_without_gaps_or_duplicates(self):
        for search_filter in (EmailFilter(), EmailFilter(sender="boss@co.com"), EmailFilter(seen=True)):
            first = self.engine.search(self.session, search_filter, 1, 4)
            collected = []
            for page in range(1, math.ceil(first.total / 4) + 1):
                collected += [m.id for m in self.engine.search(self.session, search_filter, page, 4).items]

            self.assertEqual(len(collected), first.total)
            self.assertEqual(len(set(collected)), first.total)
            self.assertEqual(collected, sorted(collected, key=int, reverse=True))

    def test_page_beyond_range_is_empty_with_total(self):
        result = self.engine.search(self.session, EmailFilter(), 10, 5)
        self.assertEqual(result.items, [])
        self.assertEqual(result.total, 23)
        self.assertEqual(result.pages, 5)

    def test_only_requested_page_is_fetched(self):
        self.engine.search(self.session, EmailFilter(), 2, 5)
        self.assertEqual(self.session.fetched_ids, ["18", "17", "16", "15", "14"])

    def test_invalid_paging(self):
        for page, limit in ((0, 5), (1, 0), (-1, 5), (1, True)):
            with self.assertRaises(ValidationError):
                self.engine.search(self.session, EmailFilter(), page, limit)

    def test_read_recent_is_most_recent_first(self):
        recent = self.engine.read_recent(self.session, 3)
        self.assertEqual([m.id for m in recent], ["23", "22", "21"])
        self.assertEqual(recent[0].subject, "Message 23")

    def test_get_by_id(self):
        message = self.engine.get_by_id(self.session, "4")
        self.assertEqual(message.subject, "Message 4")
        self.assertEqual(message.sender, "boss@co.com")

    def test_get_by_id_missing(self):
        with self.assertRaises(NotFoundError):
            self.engine.get_by_id(self.session, "999")

    def test_peek_does_not_mark_seen(self):
        self.engine.get_by_id(self.session, "2")
        self.assertNotIn("\\Seen", self.mailbox.messages[2]["flags"])

    def test_mark_seen_mode(self):
        engine = SearchEngine(MessageCodec(), mark_seen=True)
        engine.get_by_id(self.session, "2")
        self.assertIn("\\Seen", self.mailbox.messages[2]["flags"])


class TestBossScenario(unittest.TestCase):
    def test_only_matching_message_is_returned(self):
        mailbox = FakeMailbox()
        mailbox.add_message(sender="boss@co.com", subject="one", seen=True)
        second = mailbox.add_message(sender="boss@co.com", subject="two", seen=False)
        mailbox.add_message(sender="other@co.com", subject="three", seen=False)

        result = SearchEngine(MessageCodec()).search(
            FakeIMAPSession(mailbox),
            EmailFilter.from_dict({"from": "boss@co.com", "seen": False}),
            1,
            10,
        )

        self.assertEqual(result.total, 1)
        self.assertEqual([m.id for m in result.items], [second])
        self.assertEqual(result.items[0].subject, "two")


class TestDateBoundaries(unittest.TestCase):
    """since is inclusive, before is exclusive"""

    def setUp(self):
        self.mailbox = FakeMailbox()
        for day in (4, 5, 6, 7):
            self.mailbox.add_message(
                subject=f"day {day}",
                received=datetime(2024, 3, day, 12, 0, tzinfo=timezone.utc),
            )
        self.session = FakeIMAPSession(self.mailbox)
        self.engine = SearchEngine(MessageCodec())

    def _subjects(self, **kwargs):
        result = self.engine.search(self.session, EmailFilter(**kwargs), 1, 10)
        return sorted(m.subject for m in result.items)

    def test_since_includes_boundary_day(self):
        self.assertEqual(self._subjects(since=date(2024, 3, 5)), ["day 5", "day 6", "day 7"])

    def test_before_excludes_boundary_day(self):
        self.assertEqual(self._subjects(before=date(2024, 3, 6)), ["day 4", "day 5"])

    def test_range(self):
        self.assertEqual(
            self._subjects(since=date(2024, 3, 5), before=date(2024, 3, 7)),
            ["day 5", "day 6"],
        )


@pytest.mark.parametrize("value", ["abc", "", "0", "-3", None, "1.5"])
def test_validate_email_id_rejects_non_uids(value):
    with pytest.raises(ValidationError):
        validate_email_id(value)


def test_validate_email_id_normalizes():
    assert validate_email_id(" 0042 ") == "42"
    assert validate_email_id(7) == "7"
