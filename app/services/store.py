"""
Persistent store for waitlist entries.

``WaitlistStore`` is the contract the lifecycle controller depends on; every
method is atomic on a single row. ``SqlAlchemyWaitlistStore`` implements it on
SQLAlchemy's asyncio extension. State transitions are single conditional
UPDATEs and report whether this call changed the row.
"""
from __future__ import annotations

import abc
import logging
from collections import Counter
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from app.exceptions import DuplicateEntryError, TransportError
from app.models.waitlist_entry import WaitlistEntry

logger = logging.getLogger(__name__)

STORE_PROVIDER = "database"


class WaitlistStore(abc.ABC):
    @abc.abstractmethod
    async def get_by_hash(self, email_hash: str) -> WaitlistEntry | None: ...

    @abc.abstractmethod
    async def get_by_verification_token(self, token: str) -> WaitlistEntry | None: ...

    @abc.abstractmethod
    async def get_by_unsubscribe_token(self, token: str) -> WaitlistEntry | None: ...

    @abc.abstractmethod
    async def create(self, entry: WaitlistEntry) -> WaitlistEntry:
        """Persist a new entry. Raises DuplicateEntryError when email_hash exists."""

    @abc.abstractmethod
    async def mark_verified(self, entry_id: str) -> bool:
        """verified=true where verified=false and unsubscribed=false. True if this call flipped it."""

    @abc.abstractmethod
    async def mark_unsubscribed(self, entry_id: str) -> bool:
        """unsubscribed=true where unsubscribed=false. True if this call flipped it."""

    @abc.abstractmethod
    async def update_verification_token(self, entry_id: str, token: str) -> bool:
        """Rotate the token while the entry is unverified and subscribed."""

    @abc.abstractmethod
    async def count_verified(self) -> int:
        """Verified entries that are still subscribed."""

    @abc.abstractmethod
    async def summarize(self, now: datetime) -> dict[str, Any]: ...


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    # SQLite hands back naive datetimes; everything is stored in UTC.
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def build_summary(
    rows: list[tuple[datetime, bool]],
    source_counts: list[tuple[str | None, int]],
    total: int,
    verified: int,
    now: datetime,
) -> dict[str, Any]:
    """Stats payload from (created_at, verified) rows of the last 7 days and per-source counts."""
    now = _as_utc(now)
    recent = sum(1 for created_at, _ in rows if _as_utc(created_at) > now - timedelta(hours=24))
    sources: Counter = Counter()
    for source, count in source_counts:
        sources[source or "direct"] += int(count)
    daily = []
    today = now.date()
    for offset in range(6, -1, -1):
        day = today - timedelta(days=offset)
        day_rows = [r for r in rows if _as_utc(r[0]).date() == day]
        day_verified = sum(1 for r in day_rows if r[1])
        daily.append({
            "date": day.isoformat(),
            "signups": len(day_rows),
            "verified": day_verified,
            "conversion_rate": round(day_verified / len(day_rows) * 100, 2) if day_rows else 0.0,
        })
    return {
        "total_signups": total,
        "verified_signups": verified,
        "recent_signups": recent,
        "conversion_rate": round(verified / total * 100, 2) if total else 0.0,
        "top_sources": [{"source": s, "count": c} for s, c in sources.most_common(5)],
        "daily_stats": daily,
    }


class SqlAlchemyWaitlistStore(WaitlistStore):
    def __init__(self, session_factory: async_sessionmaker):
        self._session_factory = session_factory

    async def _first(self, *criteria) -> WaitlistEntry | None:
        try:
            async with self._session_factory() as session:
                result = await session.execute(select(WaitlistEntry).where(*criteria).limit(1))
                return result.scalars().first()
        except SQLAlchemyError as e:
            raise TransportError("Store lookup failed", provider=STORE_PROVIDER, details=type(e).__name__) from e

    async def _conditional_update(self, entry_id: str, criteria: tuple, values: dict) -> bool:
        stmt = (
            update(WaitlistEntry)
            .where(WaitlistEntry.id == entry_id, *criteria)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        try:
            async with self._session_factory() as session:
                result = await session.execute(stmt)
                await session.commit()
                return result.rowcount == 1
        except SQLAlchemyError as e:
            raise TransportError("Store update failed", provider=STORE_PROVIDER, details=type(e).__name__) from e

    async def get_by_hash(self, email_hash: str) -> WaitlistEntry | None:
        return await self._first(WaitlistEntry.email_hash == email_hash)

    async def get_by_verification_token(self, token: str) -> WaitlistEntry | None:
        return await self._first(WaitlistEntry.verification_token == token)

    async def get_by_unsubscribe_token(self, token: str) -> WaitlistEntry | None:
        return await self._first(WaitlistEntry.unsubscribe_token == token)

    async def create(self, entry: WaitlistEntry) -> WaitlistEntry:
        try:
            async with self._session_factory() as session:
                session.add(entry)
                try:
                    await session.commit()
                except IntegrityError:
                    await session.rollback()
                    logger.info("Insert rejected: email_hash already present")
                    raise DuplicateEntryError("Email already on the waitlist") from None
                return entry
        except SQLAlchemyError as e:
            raise TransportError("Store insert failed", provider=STORE_PROVIDER, details=type(e).__name__) from e

    async def mark_verified(self, entry_id: str) -> bool:
        return await self._conditional_update(
            entry_id,
            (WaitlistEntry.verified.is_(False), WaitlistEntry.unsubscribed.is_(False)),
            {"verified": True, "verified_at": datetime.now(timezone.utc)},
        )

    async def mark_unsubscribed(self, entry_id: str) -> bool:
        return await self._conditional_update(
            entry_id,
            (WaitlistEntry.unsubscribed.is_(False),),
            {"unsubscribed": True, "unsubscribed_at": datetime.now(timezone.utc)},
        )

    async def update_verification_token(self, entry_id: str, token: str) -> bool:
        return await self._conditional_update(
            entry_id,
            (WaitlistEntry.verified.is_(False), WaitlistEntry.unsubscribed.is_(False)),
            {"verification_token": token, "verification_sent_at": datetime.now(timezone.utc)},
        )

    async def count_verified(self) -> int:
        stmt = select(func.count()).select_from(WaitlistEntry).where(
            WaitlistEntry.verified.is_(True), WaitlistEntry.unsubscribed.is_(False)
        )
        try:
            async with self._session_factory() as session:
                return int((await session.execute(stmt)).scalar_one())
        except SQLAlchemyError as e:
            raise TransportError("Store count failed", provider=STORE_PROVIDER, details=type(e).__name__) from e

    async def summarize(self, now: datetime) -> dict[str, Any]:
        subscribed = WaitlistEntry.unsubscribed.is_(False)
        since = now - timedelta(days=7)
        try:
            async with self._session_factory() as session:
                total = (await session.execute(
                    select(func.count()).select_from(WaitlistEntry).where(subscribed)
                )).scalar_one()
                verified = (await session.execute(
                    select(func.count()).select_from(WaitlistEntry).where(subscribed, WaitlistEntry.verified.is_(True))
                )).scalar_one()
                rows = (await session.execute(
                    select(WaitlistEntry.created_at, WaitlistEntry.verified)
                    .where(subscribed, WaitlistEntry.created_at >= since)
                )).all()
                source_counts = (await session.execute(
                    select(WaitlistEntry.source, func.count())
                    .where(subscribed)
                    .group_by(WaitlistEntry.source)
                )).all()
        except SQLAlchemyError as e:
            raise TransportError("Store stats failed", provider=STORE_PROVIDER, details=type(e).__name__) from e
        return build_summary(
            [tuple(r) for r in rows], [tuple(r) for r in source_counts], int(total), int(verified), now
        )
