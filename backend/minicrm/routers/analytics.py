from datetime import datetime
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query

from minicrm.auth_middleware import get_current_user
from minicrm.routers.dependencies import get_analytics_service, get_campaign_service
from minicrm.services.analytics import AnalyticsService
from minicrm.services.campaign_service import CampaignService

router = APIRouter(tags=["Analytics"])


@router.get("/dashboard")
async def dashboard(
    start_date: Optional[datetime] = Query(None, alias="startDate"),
    end_date: Optional[datetime] = Query(None, alias="endDate"),
    user_id: str = Depends(get_current_user),
    service: AnalyticsService = Depends(get_analytics_service),
) -> Dict[str, Any]:
    """Customer, campaign and order totals with delivery outcome counts."""
    return await service.dashboard(user_id, start_date, end_date)


@router.get("/campaigns/performance")
async def campaign_performance(
    campaign_id: Optional[str] = Query(None, alias="campaignId"),
    period: Optional[int] = Query(None, ge=1, le=365, description="Look-back window in days"),
    user_id: str = Depends(get_current_user),
    service: AnalyticsService = Depends(get_analytics_service),
    campaigns: CampaignService = Depends(get_campaign_service),
) -> Dict[str, Any]:
    if campaign_id:
        await campaigns.get_campaign(user_id, campaign_id)
    return await service.campaign_performance(campaign_id=campaign_id, period_days=period)
