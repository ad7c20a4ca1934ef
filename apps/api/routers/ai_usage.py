"""
AI usage API - categorization spend and cache effectiveness
"""
from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, Query

from apps.api.dependencies import get_ai_usage_service, get_storage
from packages.common.database import StorageContext
from packages.domain.ai_usage import AiUsageHistory, AiUsageOverview, AiUsageService

router = APIRouter(prefix="/ai-usage", tags=["ai-usage"])


@router.get("/stats", response_model=AiUsageOverview)
async def get_ai_usage_stats(
    storage: StorageContext = Depends(get_storage),
    service: AiUsageService = Depends(get_ai_usage_service),
) -> AiUsageOverview:
    return await service.get_stats(storage)


@router.get("/history", response_model=AiUsageHistory)
async def get_ai_usage_history(
    start_date: Optional[date] = Query(None, description="First day (inclusive)"),
    end_date: Optional[date] = Query(None, description="Last day (inclusive)"),
    storage: StorageContext = Depends(get_storage),
    service: AiUsageService = Depends(get_ai_usage_service),
) -> AiUsageHistory:
    """Daily usage, newest first"""
    return await service.get_history(storage, start_date=start_date, end_date=end_date)
