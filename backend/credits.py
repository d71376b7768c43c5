import enum
import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import case, or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

import config
from db import iso_in, usage_table, users_table, utcnow_iso

logger = logging.getLogger(__name__)

PLAN_FREE = "free"
PLAN_PRO = "pro"


def _insert_for(conn: AsyncConnection):
    return pg_insert if conn.dialect.name == "postgresql" else sqlite_insert


class ConsumeStatus(str, enum.Enum):
    GRANTED = "granted"
    QUOTA_EXHAUSTED = "quota_exhausted"
    UNAUTHENTICATED = "unauthenticated"
    STORAGE_FAILURE = "storage_failure"


@dataclass(frozen=True)
class CreditDecision:
    status: ConsumeStatus
    remaining: int = 0
    reset_at: Optional[str] = None
    quota: int = 0

    @property
    def allowed(self) -> bool:
        return self.status is ConsumeStatus.GRANTED


class CreditLedger:
    def __init__(
        self,
        engine: AsyncEngine,
        free_points: Optional[int] = None,
        pro_points: Optional[int] = None,
        period_seconds: Optional[int] = None,
        cost: Optional[int] = None,
    ):
        self.engine = engine
        self.free_points = config.FREE_CREDITS if free_points is None else free_points
        self.pro_points = config.PRO_CREDITS if pro_points is None else pro_points
        self.period_seconds = config.CREDIT_PERIOD_SECONDS if period_seconds is None else period_seconds
        self.cost = config.GENERATION_COST if cost is None else cost

    def quota_for(self, plan: Optional[str]) -> int:
        return self.pro_points if plan == PLAN_PRO else self.free_points

    async def _plan(self, conn: AsyncConnection, user_id: str) -> Optional[str]:
        return await conn.scalar(select(users_table.c.plan).where(users_table.c.id == user_id))

    async def try_consume(self, user_id: Optional[str], conn: Optional[AsyncConnection] = None) -> CreditDecision:
        """
        Spend one generation's worth of credits for ``user_id``.

        When ``conn`` is given the consumption joins the caller's transaction, so the
        caller can roll it back together with whatever else it writes.
        """
        if not user_id:
            return CreditDecision(ConsumeStatus.UNAUTHENTICATED)
        try:
            if conn is not None:
                return await self._consume(conn, user_id)
            async with self.engine.begin() as own_conn:
                return await self._consume(own_conn, user_id)
        except SQLAlchemyError:
            logger.exception("Credit store unavailable while consuming for user %s", user_id)
            return CreditDecision(ConsumeStatus.STORAGE_FAILURE)

    async def _charge(self, conn: AsyncConnection, user_id: str, quota: int):
        now = utcnow_iso()
        expired = usage_table.c.expire <= now
        can_spend = [usage_table.c.points + self.cost <= quota]
        if self.cost <= quota:
            can_spend.append(expired)
        return (
            await conn.execute(
                update(usage_table)
                .where(usage_table.c.key == user_id)
                .where(or_(*can_spend))
                .values(
                    points=case((expired, self.cost), else_=usage_table.c.points + self.cost),
                    expire=case((expired, iso_in(self.period_seconds)), else_=usage_table.c.expire),
                )
                .returning(usage_table.c.points, usage_table.c.expire)
            )
        ).first()

    async def _ensure_record(self, conn: AsyncConnection, user_id: str) -> None:
        # Starts out already expired, so the next charge opens a fresh period.
        stmt = _insert_for(conn)(usage_table).values(key=user_id, points=0, expire=utcnow_iso())
        await conn.execute(stmt.on_conflict_do_nothing(index_elements=[usage_table.c.key]))

    async def _consume(self, conn: AsyncConnection, user_id: str) -> CreditDecision:
        plan = await self._plan(conn, user_id)
        if plan is None:
            return CreditDecision(ConsumeStatus.UNAUTHENTICATED)
        quota = self.quota_for(plan)
        if self.cost > quota:
            return CreditDecision(ConsumeStatus.QUOTA_EXHAUSTED, quota, None, quota)

        row = await self._charge(conn, user_id, quota)
        if row is None:
            await self._ensure_record(conn, user_id)
            row = await self._charge(conn, user_id, quota)
        if row is not None:
            return CreditDecision(ConsumeStatus.GRANTED, quota - row.points, row.expire, quota)

        existing = (
            await conn.execute(select(usage_table).where(usage_table.c.key == user_id))
        ).mappings().first()
        logger.info("Credits exhausted for user %s (plan=%s, quota=%s)", user_id, plan, quota)
        return CreditDecision(
            ConsumeStatus.QUOTA_EXHAUSTED,
            max(quota - existing["points"], 0),
            existing["expire"],
            quota,
        )

    async def status(self, user_id: Optional[str]) -> CreditDecision:
        if not user_id:
            return CreditDecision(ConsumeStatus.UNAUTHENTICATED)
        try:
            async with self.engine.connect() as conn:
                plan = await self._plan(conn, user_id)
                if plan is None:
                    return CreditDecision(ConsumeStatus.UNAUTHENTICATED)
                quota = self.quota_for(plan)
                existing = (
                    await conn.execute(select(usage_table).where(usage_table.c.key == user_id))
                ).mappings().first()
        except SQLAlchemyError:
            logger.exception("Credit store unavailable while reading status for user %s", user_id)
            return CreditDecision(ConsumeStatus.STORAGE_FAILURE)

        if existing is None or existing["expire"] <= utcnow_iso():
            return CreditDecision(ConsumeStatus.GRANTED, quota, None, quota)
        remaining = max(quota - existing["points"], 0)
        status = ConsumeStatus.GRANTED if remaining >= self.cost else ConsumeStatus.QUOTA_EXHAUSTED
        return CreditDecision(status, remaining, existing["expire"], quota)
