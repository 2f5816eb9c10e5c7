from datetime import datetime, timezone

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from toon_engine.core.database import Base
from toon_engine.models import account, conversion_job, credit_transaction, generated_image, usage_log  # noqa: F401
from toon_engine.models.credit_transaction import CreditTransaction
from toon_engine.services.credits_engine import (
    get_credit_balance,
    get_or_create_account,
    grant_purchased_credits,
    grant_signup_bonus,
    recalculate_ledger_total,
    refund_credits,
    reserve_credits,
)


def main() -> None:
    engine = create_engine("sqlite:///:memory:", connect_args={"check_same_thread": False})
    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    Base.metadata.create_all(bind=engine)

    db = TestingSessionLocal()
    try:
        account_id = "user-1"
        now = datetime(2026, 3, 2, 3, 0, tzinfo=timezone.utc)
        get_or_create_account(db, account_id)

        bal = get_credit_balance(db, account_id, now=now)
        assert (bal.free, bal.paid) == (3, 0), bal

        grant_signup_bonus(db, account_id, now=now)
        bal = get_credit_balance(db, account_id, now=now)
        assert (bal.free, bal.paid) == (3, 10), bal

        res = reserve_credits(db, account_id=account_id, is_authenticated=True, cost=5, reason="batch_convert", now=now)
        assert res.ok and (res.free_after, res.paid_after) == (0, 8), res

        refund_credits(db, account_id, 2, "batch_partial_refund", now=now)
        bal = get_credit_balance(db, account_id, now=now)
        assert (bal.free, bal.paid) == (0, 10), bal

        res = reserve_credits(db, account_id=account_id, is_authenticated=True, cost=11, reason="batch_convert", now=now)
        assert not res.ok and res.error_kind == "INSUFFICIENT_CREDITS", res

        grant_purchased_credits(db, account_id, "basic", payment_ref="pay-1", now=now)
        grant_purchased_credits(db, account_id, "basic", payment_ref="pay-1", now=now)
        bal = get_credit_balance(db, account_id, now=now)
        assert (bal.free, bal.paid) == (0, 43), bal

        assert recalculate_ledger_total(db, account_id) == bal.total
        rows = db.query(CreditTransaction).filter(CreditTransaction.account_id == account_id).all()
        assert any(r.reason == "daily_reset" and r.pool == "free" for r in rows)
        assert any(r.amount < 0 for r in rows)
    finally:
        db.close()


if __name__ == "__main__":
    main()
    print("OK")
