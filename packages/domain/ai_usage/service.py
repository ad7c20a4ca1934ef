"""
AI usage analytics over the append-only ai_usage ledger

Cost is read as stored at insert time; nothing here recomputes prices.
"""
from datetime import date, datetime, timedelta, timezone
from typing import Optional

import structlog
from sqlalchemy import text

from packages.common.database import DatabaseRouter, StorageContext
from packages.domain.ai_usage.schemas import (
    AiUsageHistory,
    AiUsageOverview,
    DailyUsage,
    PeriodUsage,
)

logger = structlog.get_logger()

# created_at is an ISO-8601 string; its first 10 characters are the UTC date
_DAY = "substr(created_at, 1, 10)"


class AiUsageService:
    """Read-only reporting on AI categorization spend"""

    def __init__(self, db: DatabaseRouter):
        self.db = db

    async def get_stats(self, storage: StorageContext = StorageContext()) -> AiUsageOverview:
        """All-time totals plus the last 30 days (omitted when there was no activity)"""
        since = (datetime.now(timezone.utc) - timedelta(days=30)).isoformat()

        async with self.db.session(storage) as session:
            overall = (await session.execute(text("""
                SELECT
                    SUM(CASE WHEN cached THEN 0 ELSE cost_usd END) AS total_cost,
                    SUM(CASE WHEN cached THEN 0 ELSE 1 END) AS total_api_calls,
                    SUM(CASE WHEN cached THEN 1 ELSE 0 END) AS total_cache_hits,
                    SUM(CASE WHEN cached THEN 0 ELSE input_tokens END) AS total_input_tokens,
                    SUM(CASE WHEN cached THEN 0 ELSE output_tokens END) AS total_output_tokens
                FROM ai_usage
            """))).one()

            recent = (await session.execute(
                text("""
                    SELECT
                        SUM(CASE WHEN cached THEN 0 ELSE cost_usd END) AS cost,
                        SUM(CASE WHEN cached THEN 0 ELSE 1 END) AS api_calls,
                        SUM(CASE WHEN cached THEN 1 ELSE 0 END) AS cache_hits
                    FROM ai_usage
                    WHERE created_at >= :since
                """),
                {"since": since},
            )).one()

        api_calls = int(overall.total_api_calls or 0)
        cache_hits = int(overall.total_cache_hits or 0)
        total_cost = float(overall.total_cost or 0.0)
        lookups = api_calls + cache_hits

        last_30_days = None
        if recent.api_calls or recent.cache_hits:
            last_30_days = PeriodUsage(
                cost=float(recent.cost or 0.0),
                api_calls=int(recent.api_calls or 0),
                cache_hits=int(recent.cache_hits or 0),
            )

        return AiUsageOverview(
            total_cost=total_cost,
            total_api_calls=api_calls,
            total_cache_hits=cache_hits,
            cache_hit_rate=cache_hits / lookups if lookups else 0.0,
            avg_cost_per_call=total_cost / api_calls if api_calls else 0.0,
            total_input_tokens=int(overall.total_input_tokens or 0),
            total_output_tokens=int(overall.total_output_tokens or 0),
            last_30_days=last_30_days,
        )

    async def get_history(
        self,
        storage: StorageContext = StorageContext(),
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
    ) -> AiUsageHistory:
        """
        Daily usage aggregates, newest first.

        Args:
            storage: Store to report on
            start_date: Inclusive lower bound (UTC day)
            end_date: Inclusive upper bound (UTC day)
        """
        filters = []
        params = {}
        if start_date:
            filters.append(f"{_DAY} >= :start_date")
            params["start_date"] = start_date.isoformat()
        if end_date:
            filters.append(f"{_DAY} <= :end_date")
            params["end_date"] = end_date.isoformat()
        where = f"WHERE {' AND '.join(filters)}" if filters else ""

        async with self.db.session(storage) as session:
            result = await session.execute(
                text(f"""
                    SELECT
                        {_DAY} AS day,
                        SUM(CASE WHEN cached THEN 0 ELSE 1 END) AS api_calls,
                        SUM(CASE WHEN cached THEN 1 ELSE 0 END) AS cache_hits,
                        SUM(CASE WHEN cached THEN 0 ELSE input_tokens END) AS input_tokens,
                        SUM(CASE WHEN cached THEN 0 ELSE output_tokens END) AS output_tokens,
                        SUM(CASE WHEN cached THEN 0 ELSE cost_usd END) AS cost
                    FROM ai_usage
                    {where}
                    GROUP BY {_DAY}
                    ORDER BY day DESC
                """),
                params,
            )
            records = [
                DailyUsage(
                    date=row.day,
                    api_calls=int(row.api_calls or 0),
                    cache_hits=int(row.cache_hits or 0),
                    input_tokens=int(row.input_tokens or 0),
                    output_tokens=int(row.output_tokens or 0),
                    cost=float(row.cost or 0.0),
                )
                for row in result
            ]

        logger.debug("ai_usage_history_loaded", days=len(records), env=storage.label)

        return AiUsageHistory(
            records=records,
            summary=PeriodUsage(
                cost=sum(r.cost for r in records),
                api_calls=sum(r.api_calls for r in records),
                cache_hits=sum(r.cache_hits for r in records),
            ),
        )
