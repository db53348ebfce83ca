# crm_api/jobs/scheduled.py
"""
Scheduled background jobs triggered by Cloud Scheduler → API endpoints.

Jobs:
  - check-approval-escalations: Hourly
"""

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from crm_api.config import settings
from crm_api.database import get_db
from crm_api.services.approval_escalation import check_approval_escalations

logger = structlog.get_logger()
router = APIRouter()


async def _require_internal_auth(request: Request):
    """
    Verify request comes from Cloud Scheduler or internal service.
    Validates X-Internal-Secret header against INTERNAL_JOB_SECRET from settings.
    """
    secret = settings.INTERNAL_JOB_SECRET
    if not secret:
        # In development (DEBUG=True), allow unauthenticated internal calls
        if settings.DEBUG:
            return
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="INTERNAL_JOB_SECRET is not configured",
        )
    provided = request.headers.get("X-Internal-Secret")
    if not provided or provided != secret:
        logger.warning("internal_auth_failed", path=request.url.path)
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Forbidden",
        )


@router.post("/check-approval-escalations")
async def run_approval_escalations(
    background_tasks: BackgroundTasks,
    db: AsyncSession = Depends(get_db),
    _auth: None = Depends(_require_internal_auth),
):
    """Hourly: escalate pending approval requests past their SLA deadline."""
    stats = await check_approval_escalations(db, background_tasks)
    return {"status": "ok", **stats}
