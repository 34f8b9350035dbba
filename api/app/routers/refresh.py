from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel

from app.core.config import settings
from app.core.rate_limit import limiter
from app.services.refresh import RefreshService
from app.services.sync import get_refresh_service

router = APIRouter(tags=["refresh"])


# ─── Schemas ───────────────────────────────────────────────────────────────

class RefreshQueuedResponse(BaseModel):
    success: bool
    job_id: str
    message: str


class RefreshStatusResponse(BaseModel):
    status: str
    job_type: str | None = None
    last_refresh_time: datetime | None = None
    next_scheduled_time: datetime | None = None
    error_message: str | None = None


class RefreshAllResponse(BaseModel):
    success: bool
    total_users: int = 0
    successful_jobs: int = 0
    message: str


# ─── Endpoints ─────────────────────────────────────────────────────────────

@router.post(
    "/users/{user_id}/refresh",
    response_model=RefreshQueuedResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
@limiter.limit(settings.refresh_rate_limit)
def request_refresh(request: Request, user_id: int, service: RefreshService = Depends(get_refresh_service)):
    result = service.request_manual_refresh(user_id)
    if not result["success"]:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=result["message"])
    return RefreshQueuedResponse(success=True, job_id=result["jobId"], message=result["message"])


@router.get("/users/{user_id}/refresh", response_model=RefreshStatusResponse)
def refresh_status(user_id: int, service: RefreshService = Depends(get_refresh_service)):
    result = service.get_refresh_status(user_id)
    return RefreshStatusResponse(
        status=result["status"],
        job_type=result.get("jobType"),
        last_refresh_time=result["lastRefreshTime"],
        next_scheduled_time=result["nextScheduledTime"],
        error_message=result.get("errorMessage"),
    )


@router.post("/refresh/all", response_model=RefreshAllResponse)
@limiter.limit(settings.refresh_rate_limit)
def refresh_all(request: Request, service: RefreshService = Depends(get_refresh_service)):
    result = service.request_manual_refresh_all_users()
    return RefreshAllResponse(
        success=result["success"],
        total_users=result.get("totalUsers", 0),
        successful_jobs=result.get("successfulJobs", 0),
        message=result["message"],
    )
