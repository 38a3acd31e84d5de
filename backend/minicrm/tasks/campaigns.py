"""
Campaign Tasks.
"""

from typing import Any, Dict

from minicrm.errors import ValidationFailedError
from minicrm.orchestration import TaskContext, task_handler, CAMPAIGN_QUEUE


@task_handler("process-campaign", CAMPAIGN_QUEUE)
async def process_campaign(payload: Dict[str, Any], ctx: TaskContext):
    """Fan a PENDING campaign out to its audience."""
    campaign_id = payload.get("campaignId")
    if not campaign_id:
        raise ValidationFailedError("process-campaign requires campaignId")
    summary = await ctx.orchestrator.process_campaign(campaign_id)
    return {
        "campaignId": campaign_id,
        "audienceSize": summary.audience_size,
        "dispatched": summary.dispatched,
        "failed": summary.failed,
        "skipped": summary.skipped,
    }
