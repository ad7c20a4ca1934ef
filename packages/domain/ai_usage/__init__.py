"""
AI Usage Module - cost reporting over the ai_usage ledger

Cached rows count as cache hits; cost and tokens come only from real API calls.
"""

from packages.domain.ai_usage.schemas import (
    AiUsageHistory,
    AiUsageOverview,
    DailyUsage,
    PeriodUsage,
)
from packages.domain.ai_usage.service import AiUsageService

__all__ = [
    'AiUsageHistory',
    'AiUsageOverview',
    'AiUsageService',
    'DailyUsage',
    'PeriodUsage',
]
