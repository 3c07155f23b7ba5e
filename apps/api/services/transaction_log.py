"""Append-only credit transaction log and the expiry-aware reads over it.

Grants form lots. Replaying the log in write order, each debit draws from the live lots
that expire soonest, non-expiring lots last. A lot that lapses forfeits only what was
never drawn from it, so spending an expiring grant cannot eat into a later purchase.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Iterable, List, Optional
import uuid

from sqlalchemy import func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.credit_ledger import CreditTransaction


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; everything is stored as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass
class CreditLot:
    entry_id: str
    reason: str
    remaining: int
    expires_at: Optional[datetime] = None

    def is_live(self, at: datetime) -> bool:
        return self.expires_at is None or self.expires_at > at


@dataclass
class LedgerReplay:
    available: int = 0
    forfeited: int = 0
    unfunded: int = 0
    live_lots: List[CreditLot] = field(default_factory=list)


def _draw_order(lot: CreditLot):
    return (lot.expires_at is None, lot.expires_at or datetime.max.replace(tzinfo=timezone.utc))


def replay_entries(entries: Iterable, now: Optional[datetime] = None) -> LedgerReplay:
    """Fold chronologically ordered entries into lots and evaluate them at ``now``.

    ``entries`` need ``id``, ``delta``, ``reason``, ``expires_at`` and ``created_at``.
    Debits larger than the live lots at their write time are tracked as ``unfunded``
    and still reduce the available balance.
    """
    current = now or utc_now()
    lots: List[CreditLot] = []
    unfunded = 0

    for entry in entries:
        delta = int(entry.delta or 0)
        if delta > 0:
            lots.append(CreditLot(entry.id, entry.reason, delta, ensure_utc(entry.expires_at)))
        elif delta < 0:
            written_at = ensure_utc(entry.created_at) or current
            needed = -delta
            for lot in sorted((lot for lot in lots if lot.remaining > 0 and lot.is_live(written_at)), key=_draw_order):
                taken = min(lot.remaining, needed)
                lot.remaining -= taken
                needed -= taken
                if not needed:
                    break
            unfunded += needed

    live = [lot for lot in lots if lot.remaining > 0 and lot.is_live(current)]
    forfeited = sum(lot.remaining for lot in lots if lot.remaining > 0 and not lot.is_live(current))
    return LedgerReplay(
        available=max(sum(lot.remaining for lot in live) - unfunded, 0),
        forfeited=forfeited,
        unfunded=unfunded,
        live_lots=sorted(live, key=_draw_order),
    )


async def replay_balance(user_id: str, db: AsyncSession, now: Optional[datetime] = None) -> LedgerReplay:
    result = await db.execute(
        select(
            CreditTransaction.id,
            CreditTransaction.delta,
            CreditTransaction.reason,
            CreditTransaction.expires_at,
            CreditTransaction.created_at,
        )
        .where(CreditTransaction.user_id == user_id)
        .order_by(CreditTransaction.created_at.asc(), CreditTransaction.id)
    )
    return replay_entries(result.all(), now)


async def sum_available(user_id: str, db: AsyncSession, now: Optional[datetime] = None) -> int:
    """Credits that can still be spent at ``now``."""
    return (await replay_balance(user_id, db, now)).available


async def sum_all(user_id: str, db: AsyncSession) -> int:
    result = await db.execute(
        select(func.coalesce(func.sum(CreditTransaction.delta), 0)).where(CreditTransaction.user_id == user_id)
    )
    return int(result.scalar() or 0)


async def find_by_job_id(job_id: str, db: AsyncSession) -> Optional[CreditTransaction]:
    result = await db.execute(select(CreditTransaction).where(CreditTransaction.job_id == job_id))
    return result.scalar_one_or_none()


async def find_by_ext_ref(ext_ref: str, db: AsyncSession) -> Optional[CreditTransaction]:
    result = await db.execute(select(CreditTransaction).where(CreditTransaction.ext_ref == ext_ref))
    return result.scalar_one_or_none()


async def count_by_reason(reason: str, db: AsyncSession, *, user_id: Optional[str] = None) -> int:
    """Entries carrying ``reason``, for one user or across the whole ledger."""
    query = select(func.count(CreditTransaction.id)).where(CreditTransaction.reason == reason)
    if user_id is not None:
        query = query.where(CreditTransaction.user_id == user_id)
    result = await db.execute(query)
    return int(result.scalar() or 0)


async def latest_by_reason(user_id: str, reason: str, db: AsyncSession) -> Optional[CreditTransaction]:
    result = await db.execute(
        select(CreditTransaction)
        .where(CreditTransaction.user_id == user_id, CreditTransaction.reason == reason)
        .order_by(CreditTransaction.created_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def append_transaction(
    db: AsyncSession,
    *,
    user_id: str,
    delta: int,
    reason: str,
    balance_after: Optional[int] = None,
    job_id: Optional[str] = None,
    ext_ref: Optional[str] = None,
    expires_at: Optional[datetime] = None,
) -> CreditTransaction:
    """Stage a new entry and flush it. The caller owns the commit."""
    entry = CreditTransaction(
        id=str(uuid.uuid4()),
        user_id=user_id,
        delta=int(delta),
        balance_after=balance_after,
        reason=reason,
        job_id=job_id,
        ext_ref=ext_ref,
        expires_at=expires_at,
        created_at=utc_now(),
    )
    db.add(entry)
    await db.flush()
    return entry


async def list_transactions(
    user_id: str,
    db: AsyncSession,
    *,
    limit: int = 50,
    offset: int = 0,
) -> List[CreditTransaction]:
    result = await db.execute(
        select(CreditTransaction)
        .where(CreditTransaction.user_id == user_id)
        .order_by(CreditTransaction.created_at.desc(), CreditTransaction.id)
        .limit(max(int(limit), 1))
        .offset(max(int(offset), 0))
    )
    return list(result.scalars().all())


async def count_transactions(user_id: str, db: AsyncSession) -> int:
    result = await db.execute(
        select(func.count(CreditTransaction.id)).where(CreditTransaction.user_id == user_id)
    )
    return int(result.scalar() or 0)
