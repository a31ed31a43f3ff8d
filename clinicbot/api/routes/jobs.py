"""
Jobs API Endpoint.

Lets a scheduler trigger background jobs over HTTP.
"""

import logging

from fastapi import APIRouter, Depends, status

from clinicbot.api.middleware.auth import require_internal_secret
from clinicbot.jobs.reminders import ReminderJob

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/jobs",
    tags=["Jobs"],
    dependencies=[Depends(require_internal_secret)],
)


def get_reminder_job() -> ReminderJob:
    return ReminderJob()


@router.post(
    "/send-reminders",
    status_code=status.HTTP_200_OK,
    summary="Send tomorrow's 24h reminders",
)
async def send_reminders(job: ReminderJob = Depends(get_reminder_job)) -> dict:
    summary = await job.run()
    return summary.to_dict()
