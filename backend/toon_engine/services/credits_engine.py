from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from toon_engine.core.errors import (
    AccountNotFoundError,
    AnonymousLimitReachedError,
    InsufficientCreditsError,
    LedgerConflictError,
)
from toon_engine.core.settings import settings
from toon_engine.models.account import Account
from toon_engine.models.credit_transaction import CreditTransaction
from toon_engine.models.usage_log import UsageLog
from toon_engine.schemas.credits import CreditBalance, CreditHistory, CreditTransactionOut, ReserveResult
from toon_engine.services.costs import get_package

logger = logging.getLogger(__name__)


KST = timezone(timedelta(hours=9))
MAX_SWAP_ATTEMPTS = 5
HISTORY_MAX_LIMIT = 50

POOL_FREE = "free"
POOL_PAID = "paid"
POOL_BONUS = "bonus"
# A single spend that drew on both free and paid credits.
POOL_MIXED = "mixed"

REASON_DAILY_RESET = "daily_reset"
REASON_SIGNUP_BONUS = "signup_bonus"
REASON_PURCHASE = "purchase"
REASON_PURCHASE_BONUS = "purchase_bonus"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes; everything written here is UTC.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def last_kst_midnight(now: datetime | None = None) -> datetime:
    current = as_utc(now) or utcnow()
    local = current.astimezone(KST)
    return local.replace(hour=0, minute=0, second=0, microsecond=0).astimezone(timezone.utc)


def needs_daily_reset(reset_at: datetime | None, now: datetime | None = None) -> bool:
    stamp = as_utc(reset_at)
    return stamp is None or stamp < last_kst_midnight(now)


def get_or_create_account(db: Session, account_id: str) -> Account:
    acct = db.query(Account).filter(Account.id == account_id).first()
    if acct is None:
        # The daily allotment arrives through the first balance read, as a ledgered reset.
        acct = Account(id=account_id, free_credits=0, paid_credits=0, free_credits_reset_at=None, version=0)
        db.add(acct)
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            acct = db.query(Account).filter(Account.id == account_id).first()
            if acct is None:
                raise
            return acct
        db.refresh(acct)
    return acct


def _load_account(db: Session, account_id: str) -> Account | None:
    return db.query(Account).filter(Account.id == account_id).populate_existing().first()


def _daily_reset_plan(account: Account, now: datetime) -> tuple[int, datetime | None, int]:
    """Return (effective free balance, new reset stamp or None, ledgered top-up)."""
    free = max(0, int(account.free_credits or 0))
    if needs_daily_reset(account.free_credits_reset_at, now):
        allotment = max(0, int(settings.daily_free_credits))
        return allotment, now, allotment - free
    return free, None, 0


def _swap_balances(
    db: Session,
    account: Account,
    *,
    free: int,
    paid: int,
    reset_at: datetime | None,
    now: datetime,
) -> bool:
    values = {
        Account.free_credits: free,
        Account.paid_credits: paid,
        Account.version: func.coalesce(Account.version, 0) + 1,
        Account.updated_at: now,
    }
    if reset_at is not None:
        values[Account.free_credits_reset_at] = reset_at
    updated = (
        db.query(Account)
        .filter(Account.id == account.id, Account.version == account.version)
        .update(values, synchronize_session=False)
    )
    return updated == 1


def _append(
    db: Session,
    *,
    account_id: str,
    amount: int,
    pool: str,
    reason: str,
    reference_id: str | None,
    balance_after: int,
    now: datetime,
) -> None:
    db.add(
        CreditTransaction(
            account_id=account_id,
            amount=int(amount),
            pool=pool,
            reason=reason,
            reference_id=reference_id,
            balance_after=int(balance_after),
            created_at=now,
        )
    )


def _spend_pool(from_free: int, from_paid: int) -> str:
    if from_free and from_paid:
        return POOL_MIXED
    return POOL_FREE if from_free else POOL_PAID


def reserve_credits(
    db: Session,
    *,
    account_id: str | None,
    is_authenticated: bool,
    cost: int,
    reason: str,
    reference_id: str | None = None,
    legacy_id: str | None = None,
    now: datetime | None = None,
) -> ReserveResult:
    now = as_utc(now) or utcnow()
    cost = int(cost)

    if not is_authenticated or not account_id:
        return _reserve_anonymous(db, legacy_id or account_id, cost, reason, reference_id, now)

    for _ in range(MAX_SWAP_ATTEMPTS):
        account = _load_account(db, account_id)
        if account is None:
            logger.info("credits.reserve.unknown_account account_id=%s", account_id)
            return ReserveResult(ok=False, error_kind=AccountNotFoundError.kind)

        free, reset_at, topup = _daily_reset_plan(account, now)
        paid = max(0, int(account.paid_credits or 0))

        if free + paid < cost:
            db.rollback()
            logger.info(
                "credits.reserve.insufficient account_id=%s cost=%s free=%s paid=%s",
                account_id,
                cost,
                free,
                paid,
            )
            return ReserveResult(
                ok=False,
                free_after=free,
                paid_after=paid,
                error_kind=InsufficientCreditsError.kind,
            )
        if cost <= 0:
            db.rollback()
            return ReserveResult(ok=True, free_after=free, paid_after=paid)

        from_free = min(free, cost)
        new_free = free - from_free
        new_paid = paid - (cost - from_free)

        try:
            if not _swap_balances(db, account, free=new_free, paid=new_paid, reset_at=reset_at, now=now):
                db.rollback()
                logger.info("credits.reserve.retry account_id=%s", account_id)
                continue
            if topup:
                _append(
                    db,
                    account_id=account_id,
                    amount=topup,
                    pool=POOL_FREE,
                    reason=REASON_DAILY_RESET,
                    reference_id=None,
                    balance_after=free + paid,
                    now=now,
                )
            _append(
                db,
                account_id=account_id,
                amount=-cost,
                pool=_spend_pool(from_free, cost - from_free),
                reason=reason,
                reference_id=reference_id,
                balance_after=new_free + new_paid,
                now=now,
            )
            db.commit()
        except SQLAlchemyError:
            db.rollback()
            raise

        logger.info(
            "credits.reserve.ok account_id=%s cost=%s from_free=%s from_paid=%s reason=%s reference_id=%s "
            "free_after=%s paid_after=%s",
            account_id,
            cost,
            from_free,
            cost - from_free,
            reason,
            reference_id,
            new_free,
            new_paid,
        )
        return ReserveResult(ok=True, free_after=new_free, paid_after=new_paid)

    raise LedgerConflictError(f"reserve account_id={account_id}")


def _reserve_anonymous(
    db: Session,
    legacy_id: str | None,
    cost: int,
    reason: str,
    reference_id: str | None,
    now: datetime,
) -> ReserveResult:
    cap = max(0, int(settings.anonymous_daily_limit))
    if not legacy_id:
        return ReserveResult(ok=True, free_after=cap, paid_after=0)

    try:
        used = (
            db.query(func.coalesce(func.sum(UsageLog.units), 0))
            .filter(UsageLog.legacy_id == legacy_id)
            .filter(UsageLog.created_at > last_kst_midnight(now))
            .scalar()
        )
        remaining = cap - int(used or 0)
        if remaining < cost:
            db.rollback()
            logger.info("credits.anonymous.limit legacy_id=%s cost=%s remaining=%s", legacy_id, cost, remaining)
            return ReserveResult(
                ok=False,
                free_after=max(0, remaining),
                paid_after=0,
                error_kind=AnonymousLimitReachedError.kind,
            )
        if cost > 0:
            db.add(
                UsageLog(
                    legacy_id=legacy_id,
                    action=reason,
                    units=cost,
                    reference_id=reference_id,
                    created_at=now,
                )
            )
            db.commit()
        return ReserveResult(ok=True, free_after=remaining - cost, paid_after=0)
    except SQLAlchemyError:
        # Availability over strict quota enforcement for the free tier.
        db.rollback()
        logger.exception("credits.anonymous.fail_open legacy_id=%s cost=%s", legacy_id, cost)
        return ReserveResult(ok=True, free_after=cap, paid_after=0)


def _credit(
    db: Session,
    account_id: str,
    entries: list[tuple[int, str, str]],
    reference_id: str | None,
    now: datetime,
) -> CreditBalance:
    """Add (amount, pool, reason) entries to the paid pool in one balance write."""
    total_amount = sum(int(amount) for amount, _, _ in entries)
    for _ in range(MAX_SWAP_ATTEMPTS):
        account = _load_account(db, account_id)
        if account is None:
            raise AccountNotFoundError(f"account_id={account_id}")
        free = max(0, int(account.free_credits or 0))
        paid = max(0, int(account.paid_credits or 0))
        try:
            if not _swap_balances(db, account, free=free, paid=paid + total_amount, reset_at=None, now=now):
                db.rollback()
                continue
            running = free + paid
            for amount, pool, reason in entries:
                running += int(amount)
                _append(
                    db,
                    account_id=account_id,
                    amount=amount,
                    pool=pool,
                    reason=reason,
                    reference_id=reference_id,
                    balance_after=running,
                    now=now,
                )
            db.commit()
        except SQLAlchemyError:
            db.rollback()
            raise
        return CreditBalance(free=free, paid=paid + total_amount, total=free + paid + total_amount)
    raise LedgerConflictError(f"credit account_id={account_id}")


def refund_credits(
    db: Session,
    account_id: str,
    amount: int,
    reason: str,
    reference_id: str | None = None,
    now: datetime | None = None,
) -> None:
    """Credit ``amount`` back to the paid pool. Free-tier allotment is never restored."""
    amount = int(amount)
    if amount <= 0:
        return
    now = as_utc(now) or utcnow()
    balance = _credit(db, account_id, [(amount, POOL_PAID, reason)], reference_id, now)
    logger.info(
        "credits.refund.ok account_id=%s amount=%s reason=%s reference_id=%s paid_after=%s",
        account_id,
        amount,
        reason,
        reference_id,
        balance.paid,
    )


def refund_anonymous_usage(
    db: Session,
    legacy_id: str,
    units: int,
    reason: str,
    reference_id: str | None = None,
    now: datetime | None = None,
) -> None:
    """Give quota units back to a visitor.

    With a ``reference_id`` only units actually logged against that reference
    are returned, so a reservation that failed open cannot raise the daily cap.
    """
    units = int(units)
    if units <= 0 or not legacy_id:
        return
    now = as_utc(now) or utcnow()
    if reference_id is not None:
        try:
            logged = (
                db.query(func.coalesce(func.sum(UsageLog.units), 0))
                .filter(UsageLog.legacy_id == legacy_id)
                .filter(UsageLog.reference_id == reference_id)
                .scalar()
            )
        except SQLAlchemyError:
            db.rollback()
            raise
        logged = int(logged or 0)
        if logged <= 0:
            logger.info(
                "credits.anonymous.refund_skipped legacy_id=%s units=%s reference_id=%s",
                legacy_id,
                units,
                reference_id,
            )
            return
        units = min(units, logged)
    db.add(UsageLog(legacy_id=legacy_id, action=reason, units=-units, reference_id=reference_id, created_at=now))
    try:
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        raise
    logger.info("credits.anonymous.refund legacy_id=%s units=%s reason=%s", legacy_id, units, reason)


def get_credit_balance(db: Session, account_id: str, now: datetime | None = None) -> CreditBalance:
    now = as_utc(now) or utcnow()
    for _ in range(MAX_SWAP_ATTEMPTS):
        account = _load_account(db, account_id)
        if account is None:
            return CreditBalance(free=0, paid=0, total=0)
        free, reset_at, topup = _daily_reset_plan(account, now)
        paid = max(0, int(account.paid_credits or 0))
        if reset_at is None:
            return CreditBalance(free=free, paid=paid, total=free + paid)

        try:
            if not _swap_balances(db, account, free=free, paid=paid, reset_at=reset_at, now=now):
                db.rollback()
                continue
            if topup:
                _append(
                    db,
                    account_id=account_id,
                    amount=topup,
                    pool=POOL_FREE,
                    reason=REASON_DAILY_RESET,
                    reference_id=None,
                    balance_after=free + paid,
                    now=now,
                )
            db.commit()
        except SQLAlchemyError:
            db.rollback()
            raise
        logger.info("credits.daily_reset account_id=%s free=%s topup=%s", account_id, free, topup)
        return CreditBalance(free=free, paid=paid, total=free + paid)
    raise LedgerConflictError(f"balance account_id={account_id}")


def get_credit_history(db: Session, account_id: str, limit: int = 20, offset: int = 0) -> CreditHistory:
    limit = max(1, min(int(20 if limit is None else limit), HISTORY_MAX_LIMIT))
    offset = max(0, int(offset or 0))
    rows = (
        db.query(CreditTransaction)
        .filter(CreditTransaction.account_id == account_id)
        .order_by(CreditTransaction.created_at.desc(), CreditTransaction.id.desc())
        .offset(offset)
        .limit(limit + 1)
        .all()
    )
    return CreditHistory(
        transactions=[CreditTransactionOut.model_validate(r) for r in rows[:limit]],
        has_more=len(rows) > limit,
        limit=limit,
        offset=offset,
    )


def recalculate_ledger_total(db: Session, account_id: str) -> int:
    total = (
        db.query(func.coalesce(func.sum(CreditTransaction.amount), 0))
        .filter(CreditTransaction.account_id == account_id)
        .scalar()
    )
    return int(total or 0)


def grant_signup_bonus(db: Session, account_id: str, now: datetime | None = None) -> CreditBalance | None:
    already = (
        db.query(CreditTransaction.id)
        .filter(CreditTransaction.account_id == account_id, CreditTransaction.reason == REASON_SIGNUP_BONUS)
        .first()
    )
    if already is not None:
        return None
    now = as_utc(now) or utcnow()
    amount = max(0, int(settings.signup_bonus_credits))
    balance = _credit(db, account_id, [(amount, POOL_BONUS, REASON_SIGNUP_BONUS)], None, now)
    logger.info("credits.signup_bonus account_id=%s amount=%s", account_id, amount)
    return balance


def grant_purchased_credits(
    db: Session,
    account_id: str,
    package_id: str,
    payment_ref: str,
    now: datetime | None = None,
) -> CreditBalance:
    pkg = get_package(package_id)
    if pkg is None:
        raise ValueError("unknown_package")
    existing = (
        db.query(CreditTransaction.id)
        .filter(
            CreditTransaction.account_id == account_id,
            CreditTransaction.reason == REASON_PURCHASE,
            CreditTransaction.reference_id == payment_ref,
        )
        .first()
    )
    if existing is not None:
        logger.info("credits.purchase.duplicate account_id=%s payment_ref=%s", account_id, payment_ref)
        return get_credit_balance(db, account_id, now=now)

    now = as_utc(now) or utcnow()
    entries: list[tuple[int, str, str]] = [(pkg.credits, POOL_PAID, REASON_PURCHASE)]
    if pkg.bonus_credits:
        entries.append((pkg.bonus_credits, POOL_BONUS, REASON_PURCHASE_BONUS))
    balance = _credit(db, account_id, entries, payment_ref, now)
    logger.info(
        "credits.purchase.ok account_id=%s package=%s credits=%s bonus=%s payment_ref=%s",
        account_id,
        pkg.id,
        pkg.credits,
        pkg.bonus_credits,
        payment_ref,
    )
    return balance


def link_legacy_usage(db: Session, legacy_id: str, account_id: str) -> int:
    """Re-key a visitor's anonymous usage rows to the account they signed up with."""
    if not legacy_id or not account_id or legacy_id == account_id:
        return 0
    moved = (
        db.query(UsageLog)
        .filter(UsageLog.legacy_id == legacy_id)
        .update({UsageLog.legacy_id: account_id}, synchronize_session=False)
    )
    db.commit()
    logger.info("credits.link_legacy legacy_id=%s account_id=%s rows=%s", legacy_id, account_id, moved)
    return int(moved or 0)
