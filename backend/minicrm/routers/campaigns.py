"""
Campaigns API Router.

Create campaigns from a segment rule and a message template, preview the
audience a rule selects, and follow delivery progress.
"""

import json
from typing import List

from fastapi import APIRouter, Depends, Query

from minicrm.auth_middleware import get_current_user
from minicrm.errors import ValidationFailedError
from minicrm.routers.dependencies import get_campaign_service, get_campaign_repository
from minicrm.schemas import (
    CampaignCreate,
    CampaignResponse,
    CampaignRealtimeResponse,
    CampaignStats,
    CommunicationLogResponse,
    CustomerResponse,
    AudiencePreviewResponse,
    SegmentPreviewRequest,
)
from minicrm.services.campaign_repository import CampaignRepository
from minicrm.services.campaign_service import CampaignService

router = APIRouter(tags=["Campaigns"])


def _preview_response(preview: dict) -> AudiencePreviewResponse:
    return AudiencePreviewResponse(
        audienceSize=preview["audienceSize"],
        sample=[CustomerResponse.model_validate(customer) for customer in preview["sample"]],
    )


@router.get("", response_model=List[CampaignResponse])
async def list_campaigns(
    user_id: str = Depends(get_current_user),
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
    service: CampaignService = Depends(get_campaign_service),
):
    campaigns = await service.list_campaigns(user_id, limit=limit, offset=offset)
    return [CampaignResponse.model_validate(campaign) for campaign in campaigns]


@router.post("", response_model=CampaignResponse, status_code=201)
async def create_campaign(
    data: CampaignCreate,
    user_id: str = Depends(get_current_user),
    service: CampaignService = Depends(get_campaign_service),
):
    campaign = await service.create_campaign(user_id, data)
    return CampaignResponse.model_validate(campaign)


@router.get("/preview", response_model=AudiencePreviewResponse)
async def preview_audience_query(
    rules: str = Query(..., description="Segment rule as JSON"),
    sample_size: int = Query(5, ge=0, le=50, alias="sampleSize"),
    user_id: str = Depends(get_current_user),
    service: CampaignService = Depends(get_campaign_service),
):
    try:
        segment_rules = json.loads(rules)
    except ValueError as e:
        raise ValidationFailedError(f"rules is not valid JSON: {e}")
    return _preview_response(await service.preview_audience(segment_rules, sample_size))


@router.post("/preview", response_model=AudiencePreviewResponse)
async def preview_audience(
    request: SegmentPreviewRequest,
    user_id: str = Depends(get_current_user),
    service: CampaignService = Depends(get_campaign_service),
):
    return _preview_response(await service.preview_audience(request.segment_rules, request.sample_size))


@router.get("/{campaign_id}", response_model=CampaignResponse)
async def get_campaign(
    campaign_id: str,
    user_id: str = Depends(get_current_user),
    service: CampaignService = Depends(get_campaign_service),
):
    return CampaignResponse.model_validate(await service.get_campaign(user_id, campaign_id))


@router.get("/{campaign_id}/realtime", response_model=CampaignRealtimeResponse)
async def get_campaign_realtime(
    campaign_id: str,
    user_id: str = Depends(get_current_user),
    service: CampaignService = Depends(get_campaign_service),
):
    realtime = await service.get_realtime_stats(user_id, campaign_id)
    return CampaignRealtimeResponse(
        campaign=CampaignResponse.model_validate(realtime["campaign"]),
        recentActivity=[CommunicationLogResponse.model_validate(log) for log in realtime["recentActivity"]],
        statusDistribution=realtime["statusDistribution"],
        hourlyTrends=realtime["hourlyTrends"],
        realTimeStats=realtime["realTimeStats"],
    )


@router.post("/{campaign_id}/reconcile", response_model=CampaignStats)
async def reconcile_campaign_stats(
    campaign_id: str,
    user_id: str = Depends(get_current_user),
    service: CampaignService = Depends(get_campaign_service),
    repo: CampaignRepository = Depends(get_campaign_repository),
):
    """Recount stats from the communication log (repairs duplicate acknowledgments)."""
    await service.get_campaign(user_id, campaign_id)
    return await repo.reconcile_stats(campaign_id)
