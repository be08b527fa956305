"""Balance ledger.

Every payout is an atomic `balance = balance + :delta` UPDATE plus one
append-only TransactionRecord. Deferred bonuses are first written as a
SettlementPendingEntry with a unique idempotency key and paid later by
`pay_pending_entry`, which claims the row with a guarded
`settled_at IS NULL` UPDATE so an entry can be paid at most once.

Write-path errors propagate; callers run inside `get_session()` which rolls
back the whole unit of work.
"""

import logging
from datetime import datetime

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from repair_engine.models import (
    CAPPED_BONUS_TYPES,
    SettlementPendingEntry,
    TransactionRecord,
    TransactionType,
    User,
)
from repair_engine.services.engine_config import SettlementRules
from repair_engine.services.errors import NotFound
from repair_engine.services.timeutil import utcnow

logger = logging.getLogger("uvicorn.error")


def withholding_tax(amount: float, rules: SettlementRules) -> tuple[float, float]:
    """Return (tax, after_tax): rate x the part above the tax-free threshold."""
    gross = round(max(0.0, amount), 2)
    tax = round((gross - rules.tax_free_threshold) * rules.tax_rate, 2) if gross > rules.tax_free_threshold else 0.0
    return tax, round(gross - tax, 2)


async def credit_user(
    session: AsyncSession,
    *,
    user_id: int,
    amount: float,
    tx_type: TransactionType,
    tax_deducted: float = 0.0,
    review_id: int | None = None,
    order_id: int | None = None,
    settlement_month: str | None = None,
    description: str | None = None,
    now: datetime | None = None,
) -> TransactionRecord:
    """Atomically add to a user's balance and append the ledger row.

    Raises:
        NotFound: USER_NOT_FOUND when the user row does not exist.
    """
    amount = round(amount, 2)
    res = await session.execute(
        update(User)
        .where(User.id == user_id)
        .values(
            balance=User.balance + amount,
            total_rebate=User.total_rebate + amount,
            version=User.version + 1,
        )
        .execution_options(synchronize_session=False)
    )
    if res.rowcount != 1:
        raise NotFound("USER_NOT_FOUND", f"User {user_id} not found", {"user_id": user_id})

    txn = TransactionRecord(
        user_id=user_id,
        type=tx_type.value,
        amount=amount,
        tax_deducted=round(tax_deducted, 2),
        review_id=review_id,
        order_id=order_id,
        settlement_month=settlement_month,
        description=description,
        created_at=now or utcnow(),
    )
    session.add(txn)
    await session.flush()
    logger.info(
        f"[ledger] credit user_id={user_id} type={tx_type.value} amount={amount} "
        f"tax={txn.tax_deducted} review_id={review_id} order_id={order_id} txn_id={txn.id}"
    )
    return txn


async def find_pending(session: AsyncSession, key: str) -> SettlementPendingEntry | None:
    return (
        await session.execute(select(SettlementPendingEntry).where(SettlementPendingEntry.idempotency_key == key))
    ).scalar_one_or_none()


async def insert_pending(
    session: AsyncSession,
    *,
    key: str,
    bonus_type: TransactionType,
    user_id: int,
    amount_before_tax: float,
    trigger_month: str,
    rules: SettlementRules,
    review_id: int | None = None,
    order_id: int | None = None,
    calc_reason: str | None = None,
    config_version: int = 0,
) -> SettlementPendingEntry | None:
    """Insert a pending bonus unless its idempotency key already exists.

    Returns the new entry, or None when the key was already present. A
    concurrent insert of the same key fails on the unique constraint at flush.
    """
    if await find_pending(session, key) is not None:
        return None

    tax, after_tax = withholding_tax(amount_before_tax, rules)
    entry = SettlementPendingEntry(
        idempotency_key=key,
        bonus_type=bonus_type.value,
        user_id=user_id,
        review_id=review_id,
        order_id=order_id,
        amount_before_tax=round(amount_before_tax, 2),
        tax_deducted=tax,
        amount_after_tax=after_tax,
        trigger_month=trigger_month,
        calc_reason=calc_reason,
        config_version=config_version,
    )
    session.add(entry)
    await session.flush()
    return entry


async def pay_pending_entry(
    session: AsyncSession,
    entry_id: int,
    *,
    settlement_month: str | None = None,
    now: datetime | None = None,
) -> TransactionRecord | None:
    """Pay one pending entry. Returns None if it was already settled."""
    now = now or utcnow()
    entry = await session.get(SettlementPendingEntry, entry_id)
    if entry is None or entry.settled_at is not None:
        return None

    claimed = await session.execute(
        update(SettlementPendingEntry)
        .where(SettlementPendingEntry.id == entry_id)
        .where(SettlementPendingEntry.settled_at.is_(None))
        .values(settled_at=now)
        .execution_options(synchronize_session=False)
    )
    if claimed.rowcount != 1:
        return None

    if entry.amount_after_tax <= 0:
        return None

    txn = await credit_user(
        session,
        user_id=entry.user_id,
        amount=entry.amount_after_tax,
        tx_type=TransactionType(entry.bonus_type),
        tax_deducted=entry.tax_deducted,
        review_id=entry.review_id,
        order_id=entry.order_id,
        settlement_month=settlement_month or entry.trigger_month,
        description=entry.calc_reason,
        now=now,
    )
    await session.execute(
        update(SettlementPendingEntry)
        .where(SettlementPendingEntry.id == entry_id)
        .values(transaction_id=txn.id)
        .execution_options(synchronize_session=False)
    )
    return txn


async def review_capped_total(session: AsyncSession, review_id: int) -> float:
    """Pre-tax total a review holds against its commission cap.

    Counts paid transactions of the capped types plus unsettled pending
    entries of those types (stage follow-ups already promised).
    """
    paid = (
        await session.execute(
            select(func.coalesce(func.sum(TransactionRecord.amount + TransactionRecord.tax_deducted), 0.0))
            .where(TransactionRecord.review_id == review_id)
            .where(TransactionRecord.type.in_(CAPPED_BONUS_TYPES))
        )
    ).scalar_one()
    promised = (
        await session.execute(
            select(func.coalesce(func.sum(SettlementPendingEntry.amount_before_tax), 0.0))
            .where(SettlementPendingEntry.review_id == review_id)
            .where(SettlementPendingEntry.bonus_type.in_(CAPPED_BONUS_TYPES))
            .where(SettlementPendingEntry.settled_at.is_(None))
        )
    ).scalar_one()
    return round(float(paid or 0.0) + float(promised or 0.0), 2)
