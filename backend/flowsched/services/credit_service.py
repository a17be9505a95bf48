"""Credit ledger interface - balance check, FIFO debit and refund.

Ledger bookkeeping beyond these three operations (top-ups, coupons,
payments) belongs to the surrounding platform.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from flowsched.db.models import CreditLedgerEntry, CreditTransaction
from flowsched.errors import InsufficientCredits

logger = logging.getLogger("flowsched.credits")

# Float noise guard for balance comparisons.
_EPSILON = 1e-9


def _spendable(user_id: str, now: datetime):
    return (
        CreditLedgerEntry.user_id == user_id,
        CreditLedgerEntry.remaining > 0,
        or_(CreditLedgerEntry.expires_at.is_(None), CreditLedgerEntry.expires_at > now),
    )


async def available_balance(db: AsyncSession, user_id: str) -> float:
    """Sum of non-expired remaining credit for *user_id*."""
    now = datetime.now(timezone.utc)
    result = await db.execute(
        select(func.coalesce(func.sum(CreditLedgerEntry.remaining), 0)).where(*_spendable(user_id, now))
    )
    return float(result.scalar_one())


async def grant(
    db: AsyncSession,
    user_id: str,
    amount: float,
    *,
    source: str = "topup",
    expires_at: datetime | None = None,
    reference_id: str | None = None,
) -> CreditLedgerEntry:
    entry = CreditLedgerEntry(
        user_id=user_id,
        amount=amount,
        remaining=amount,
        source=source,
        expires_at=expires_at,
        reference_id=reference_id,
    )
    db.add(entry)
    await db.flush()
    return entry


async def debit(
    db: AsyncSession,
    user_id: str,
    amount: float,
    *,
    reference_id: str | None = None,
    description: str | None = None,
) -> None:
    """Draw *amount* from the soonest-expiring entries first.

    Raises ``InsufficientCredits`` (and changes nothing) when the balance is
    short.
    """
    if amount <= 0:
        return
    now = datetime.now(timezone.utc)
    result = await db.execute(
        select(CreditLedgerEntry)
        .where(*_spendable(user_id, now))
        .order_by(
            CreditLedgerEntry.expires_at.is_(None),
            CreditLedgerEntry.expires_at.asc(),
            CreditLedgerEntry.created_at.asc(),
        )
        .with_for_update()
    )
    entries = list(result.scalars().all())
    available = sum(e.remaining for e in entries)
    if available + _EPSILON < amount:
        raise InsufficientCredits(required=amount, available=available)

    outstanding = amount
    for entry in entries:
        if outstanding <= _EPSILON:
            break
        take = min(entry.remaining, outstanding)
        entry.remaining -= take
        outstanding -= take

    db.add(CreditTransaction(
        user_id=user_id,
        amount=-amount,
        kind="usage",
        reference_id=reference_id,
        description=description,
    ))
    await db.flush()
    logger.debug("Debited %.2f credits from user %s (%s)", amount, user_id, reference_id)


async def refund(
    db: AsyncSession,
    user_id: str,
    amount: float,
    *,
    reference_id: str | None = None,
    description: str | None = None,
) -> CreditLedgerEntry | None:
    """Return *amount* to the user as a new non-expiring ledger entry."""
    if amount <= 0:
        return None
    entry = await grant(db, user_id, amount, source="refund", reference_id=reference_id)
    db.add(CreditTransaction(
        user_id=user_id,
        amount=amount,
        kind="refund",
        reference_id=reference_id,
        description=description,
    ))
    await db.flush()
    logger.info("Refunded %.2f credits to user %s (%s)", amount, user_id, reference_id)
    return entry
