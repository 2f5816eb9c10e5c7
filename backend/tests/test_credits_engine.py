import unittest
from datetime import datetime, timedelta, timezone
from unittest import mock

from sqlalchemy.exc import OperationalError

from fakes import NOW, add_account, make_session_factory
from toon_engine.core.errors import LedgerConflictError
from toon_engine.models.account import Account
from toon_engine.models.credit_transaction import CreditTransaction
from toon_engine.models.usage_log import UsageLog
from toon_engine.services import credits_engine
from toon_engine.services.credits_engine import (
    get_credit_balance,
    get_credit_history,
    get_or_create_account,
    grant_purchased_credits,
    grant_signup_bonus,
    last_kst_midnight,
    link_legacy_usage,
    needs_daily_reset,
    recalculate_ledger_total,
    refund_anonymous_usage,
    refund_credits,
    reserve_credits,
)


def _reserve(db, account_id, cost, **kwargs):
    kwargs.setdefault("now", NOW)
    return reserve_credits(
        db,
        account_id=account_id,
        is_authenticated=True,
        cost=cost,
        reason="batch_convert",
        **kwargs,
    )


class TestDailyReset(unittest.TestCase):
    def test_last_kst_midnight(self):
        self.assertEqual(last_kst_midnight(NOW), datetime(2026, 3, 1, 15, 0, tzinfo=timezone.utc))
        late = datetime(2026, 3, 1, 14, 59, tzinfo=timezone.utc)
        self.assertEqual(last_kst_midnight(late), datetime(2026, 2, 28, 15, 0, tzinfo=timezone.utc))

    def test_needs_daily_reset(self):
        midnight = last_kst_midnight(NOW)
        self.assertTrue(needs_daily_reset(None, NOW))
        self.assertTrue(needs_daily_reset(midnight - timedelta(seconds=1), NOW))
        self.assertFalse(needs_daily_reset(midnight, NOW))
        # naive values come back from SQLite and are treated as UTC
        self.assertFalse(needs_daily_reset(midnight.replace(tzinfo=None), NOW))


class TestCreditsEngine(unittest.TestCase):
    def setUp(self):
        self.SessionLocal = make_session_factory()
        self.db = self.SessionLocal()

    def tearDown(self):
        self.db.close()

    def _transactions(self, account_id="acct"):
        return (
            self.db.query(CreditTransaction)
            .filter(CreditTransaction.account_id == account_id)
            .order_by(CreditTransaction.id)
            .all()
        )

    def test_insufficient_balance_leaves_everything_unchanged(self):
        add_account(self.db, "acct", free=3, paid=0)
        res = _reserve(self.db, "acct", 5)
        self.assertFalse(res.ok)
        self.assertEqual(res.error_kind, "INSUFFICIENT_CREDITS")
        bal = get_credit_balance(self.db, "acct", now=NOW)
        self.assertEqual((bal.free, bal.paid), (3, 0))
        self.assertEqual(self._transactions(), [])

    def test_reserve_drains_free_before_paid(self):
        add_account(self.db, "acct", free=3, paid=10)
        res = _reserve(self.db, "acct", 5, reference_id="job-1")
        self.assertTrue(res.ok)
        self.assertEqual((res.free_after, res.paid_after), (0, 8))
        rows = self._transactions()
        self.assertEqual(len(rows), 1)
        self.assertEqual(rows[0].amount, -5)
        self.assertEqual(rows[0].reference_id, "job-1")
        self.assertEqual(rows[0].balance_after, 8)
        self.assertEqual(rows[0].pool, "mixed")

    def test_single_pool_spends_are_tagged_with_that_pool(self):
        add_account(self.db, "acct", free=3, paid=10)
        _reserve(self.db, "acct", 2)
        _reserve(self.db, "acct", 4)
        self.assertEqual([(r.amount, r.pool) for r in self._transactions()], [(-2, "free"), (-4, "mixed")])

        add_account(self.db, "other", free=0, paid=5)
        _reserve(self.db, "other", 2)
        self.assertEqual([(r.amount, r.pool) for r in self._transactions("other")], [(-2, "paid")])

    def test_reserve_bumps_version(self):
        add_account(self.db, "acct", free=3, paid=0)
        _reserve(self.db, "acct", 1)
        acct = self.db.query(Account).filter(Account.id == "acct").one()
        self.assertEqual(acct.version, 1)

    def test_unknown_account(self):
        res = _reserve(self.db, "ghost", 1)
        self.assertFalse(res.ok)
        self.assertEqual(res.error_kind, "USER_NOT_FOUND")

    def test_first_read_ledgers_the_daily_allotment(self):
        get_or_create_account(self.db, "acct")
        bal = get_credit_balance(self.db, "acct", now=NOW)
        self.assertEqual((bal.free, bal.paid, bal.total), (3, 0, 3))
        rows = self._transactions()
        self.assertEqual([(r.amount, r.pool, r.reason) for r in rows], [(3, "free", "daily_reset")])

        get_credit_balance(self.db, "acct", now=NOW + timedelta(hours=1))
        self.assertEqual(len(self._transactions()), 1)

    def test_reset_tops_up_only_the_difference(self):
        add_account(self.db, "acct", free=1, paid=4, reset_at=NOW - timedelta(days=1))
        res = _reserve(self.db, "acct", 2)
        self.assertTrue(res.ok)
        self.assertEqual((res.free_after, res.paid_after), (1, 4))
        rows = self._transactions()
        self.assertEqual([(r.amount, r.reason) for r in rows], [(2, "daily_reset"), (-2, "batch_convert")])

    def test_refund_goes_to_paid_pool(self):
        add_account(self.db, "acct", free=3, paid=0)
        _reserve(self.db, "acct", 3, reference_id="job-1")
        refund_credits(self.db, "acct", 2, "batch_partial_refund", reference_id="job-1", now=NOW)
        bal = get_credit_balance(self.db, "acct", now=NOW)
        self.assertEqual((bal.free, bal.paid), (0, 2))
        last = self._transactions()[-1]
        self.assertEqual((last.amount, last.pool, last.balance_after), (2, "paid", 2))

    def test_refund_of_nothing_is_a_noop(self):
        add_account(self.db, "acct", free=3, paid=0)
        refund_credits(self.db, "acct", 0, "noop", now=NOW)
        self.assertEqual(self._transactions(), [])

    def test_ledger_replays_to_balance(self):
        get_or_create_account(self.db, "acct")
        grant_signup_bonus(self.db, "acct", now=NOW)
        _reserve(self.db, "acct", 5)
        refund_credits(self.db, "acct", 1, "batch_partial_refund", now=NOW)
        _reserve(self.db, "acct", 50)
        tomorrow = NOW + timedelta(days=1)
        _reserve(self.db, "acct", 4, now=tomorrow)

        bal = get_credit_balance(self.db, "acct", now=tomorrow)
        self.assertEqual(recalculate_ledger_total(self.db, "acct"), bal.total)
        self.assertEqual(bal.total, 3 + 10 - 5 + 1 + 3 - 4)

    def test_balances_never_go_negative(self):
        add_account(self.db, "acct", free=3, paid=5)
        for cost in (2, 4, 7, 1, 3, 2, 9, 1):
            _reserve(self.db, "acct", cost)
            if cost % 3 == 0:
                refund_credits(self.db, "acct", 1, "refund", now=NOW)
            acct = self.db.query(Account).filter(Account.id == "acct").populate_existing().one()
            self.assertGreaterEqual(acct.free_credits, 0)
            self.assertGreaterEqual(acct.paid_credits, 0)

    def test_stale_version_write_is_rejected(self):
        add_account(self.db, "acct", free=3, paid=0)
        other = self.SessionLocal()
        try:
            stale = other.query(Account).filter(Account.id == "acct").one()
            _reserve(self.db, "acct", 1)
            ok = credits_engine._swap_balances(other, stale, free=0, paid=0, reset_at=None, now=NOW)
            self.assertFalse(ok)
            other.rollback()
        finally:
            other.close()
        bal = get_credit_balance(self.db, "acct", now=NOW)
        self.assertEqual(bal.free, 2)

    def test_lost_race_retries(self):
        add_account(self.db, "acct", free=3, paid=0)
        real_swap = credits_engine._swap_balances
        outcomes = iter([False])

        def flaky(*args, **kwargs):
            if next(outcomes, True):
                return real_swap(*args, **kwargs)
            return False

        with mock.patch.object(credits_engine, "_swap_balances", side_effect=flaky):
            res = _reserve(self.db, "acct", 2)
        self.assertTrue(res.ok)
        self.assertEqual(len(self._transactions()), 1)

    def test_exhausted_retries_raise_without_writing(self):
        add_account(self.db, "acct", free=3, paid=0)
        with mock.patch.object(credits_engine, "_swap_balances", return_value=False):
            with self.assertRaises(LedgerConflictError):
                _reserve(self.db, "acct", 2)
        self.assertEqual(self._transactions(), [])
        bal = get_credit_balance(self.db, "acct", now=NOW)
        self.assertEqual(bal.free, 3)

    def test_signup_bonus_is_granted_once(self):
        get_or_create_account(self.db, "acct")
        first = grant_signup_bonus(self.db, "acct", now=NOW)
        second = grant_signup_bonus(self.db, "acct", now=NOW)
        self.assertEqual(first.paid, 10)
        self.assertIsNone(second)
        bonus = [r for r in self._transactions() if r.reason == "signup_bonus"]
        self.assertEqual([(r.amount, r.pool) for r in bonus], [(10, "bonus")])

    def test_purchase_is_idempotent_per_payment(self):
        add_account(self.db, "acct", free=3, paid=0)
        grant_purchased_credits(self.db, "acct", "pro", payment_ref="pay-1", now=NOW)
        bal = grant_purchased_credits(self.db, "acct", "pro", payment_ref="pay-1", now=NOW)
        self.assertEqual(bal.paid, 70)
        rows = self._transactions()
        self.assertEqual([(r.amount, r.pool, r.reason) for r in rows], [(60, "paid", "purchase"), (10, "bonus", "purchase_bonus")])

    def test_unknown_package(self):
        add_account(self.db, "acct")
        with self.assertRaises(ValueError):
            grant_purchased_credits(self.db, "acct", "platinum", payment_ref="pay-1", now=NOW)

    def test_history_is_newest_first_and_paginated(self):
        add_account(self.db, "acct", free=3, paid=10)
        for _ in range(5):
            _reserve(self.db, "acct", 1)
        page = get_credit_history(self.db, "acct", limit=2, offset=0)
        self.assertEqual(len(page.transactions), 2)
        self.assertTrue(page.has_more)
        self.assertGreater(page.transactions[0].id, page.transactions[1].id)

        tail = get_credit_history(self.db, "acct", limit=2, offset=4)
        self.assertEqual(len(tail.transactions), 1)
        self.assertFalse(tail.has_more)

    def test_history_limit_is_clamped(self):
        add_account(self.db, "acct", free=3, paid=0)
        self.assertEqual(get_credit_history(self.db, "acct", limit=500).limit, 50)
        self.assertEqual(get_credit_history(self.db, "acct", limit=0).limit, 1)
        self.assertEqual(get_credit_history(self.db, "acct", offset=-3).offset, 0)


class TestAnonymousQuota(unittest.TestCase):
    def setUp(self):
        self.db = make_session_factory()()

    def tearDown(self):
        self.db.close()

    def _reserve(self, cost, now=NOW, reference_id=None):
        return reserve_credits(
            self.db,
            account_id=None,
            is_authenticated=False,
            cost=cost,
            reason="batch_convert",
            reference_id=reference_id,
            legacy_id="visitor",
            now=now,
        )

    def test_daily_limit(self):
        self.assertTrue(self._reserve(2).ok)
        blocked = self._reserve(2)
        self.assertFalse(blocked.ok)
        self.assertEqual(blocked.error_kind, "ANONYMOUS_LIMIT_REACHED")
        self.assertTrue(self._reserve(1).ok)
        self.assertFalse(self._reserve(1).ok)

    def test_usage_before_kst_midnight_does_not_count(self):
        self.assertTrue(self._reserve(3, now=NOW - timedelta(days=1)).ok)
        self.assertTrue(self._reserve(3).ok)

    def test_refund_restores_quota(self):
        self._reserve(3, reference_id="job-1")
        refund_anonymous_usage(self.db, "visitor", 2, "batch_failed_refund", reference_id="job-1", now=NOW)
        self.assertTrue(self._reserve(2).ok)

    def test_storage_failure_fails_open(self):
        error = OperationalError("SELECT", {}, Exception("database is locked"))
        with mock.patch.object(self.db, "query", side_effect=error):
            res = self._reserve(1)
        self.assertTrue(res.ok)

    def test_refund_after_failing_open_does_not_raise_the_cap(self):
        error = OperationalError("SELECT", {}, Exception("database is locked"))
        with mock.patch.object(self.db, "query", side_effect=error):
            self.assertTrue(self._reserve(2, reference_id="job-1").ok)

        refund_anonymous_usage(self.db, "visitor", 2, "batch_failed_refund", reference_id="job-1", now=NOW)
        self.assertEqual(self.db.query(UsageLog).count(), 0)
        self.assertTrue(self._reserve(3).ok)
        self.assertFalse(self._reserve(1).ok)

    def test_refund_is_capped_at_the_units_logged_for_the_reference(self):
        self._reserve(1, reference_id="job-1")
        refund_anonymous_usage(self.db, "visitor", 3, "batch_failed_refund", reference_id="job-1", now=NOW)
        units = [r.units for r in self.db.query(UsageLog).order_by(UsageLog.id).all()]
        self.assertEqual(units, [1, -1])
        self.assertTrue(self._reserve(3).ok)
        self.assertFalse(self._reserve(1).ok)

    def test_link_legacy_usage(self):
        self._reserve(2)
        moved = link_legacy_usage(self.db, "visitor", "acct")
        self.assertEqual(moved, 1)
        rows = self.db.query(UsageLog).all()
        self.assertEqual({r.legacy_id for r in rows}, {"acct"})
        self.assertEqual(link_legacy_usage(self.db, "acct", "acct"), 0)


if __name__ == "__main__":
    unittest.main()
