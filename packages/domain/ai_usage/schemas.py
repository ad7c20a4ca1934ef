"""
Schemas for AI usage reporting
"""
from typing import List, Optional

from pydantic import BaseModel


class PeriodUsage(BaseModel):
    cost: float = 0.0
    api_calls: int = 0
    cache_hits: int = 0


class AiUsageOverview(BaseModel):
    """All-time AI usage with a trailing 30-day window"""
    total_cost: float
    total_api_calls: int
    total_cache_hits: int
    cache_hit_rate: float
    avg_cost_per_call: float
    total_input_tokens: int
    total_output_tokens: int
    last_30_days: Optional[PeriodUsage] = None


class DailyUsage(BaseModel):
    date: str
    api_calls: int
    cache_hits: int
    input_tokens: int
    output_tokens: int
    cost: float


class AiUsageHistory(BaseModel):
    records: List[DailyUsage]
    summary: PeriodUsage
