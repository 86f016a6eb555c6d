from fastapi import APIRouter, Depends

from api.dependencies import get_usage_tracker
from schemas.tryon import UsageStats
from services.usage_tracker import UsageTracker

router = APIRouter(prefix="/usage", tags=["usage"])


@router.get("", response_model=UsageStats)
async def get_usage(tracker: UsageTracker = Depends(get_usage_tracker)):
    """Request counters for today, this month and overall."""
    return await tracker.get_stats()
