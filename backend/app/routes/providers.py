"""Provider-facing routes: claiming a job and reporting its result."""

import asyncio

from fastapi import APIRouter, Request

from ..dependencies import JobServiceDep
from ..logging_config import get_logger
from ..models import MatchRequest, ResultCreate, TransitionResponse
from ..rate_limit import limiter

logger = get_logger("api.providers")
router = APIRouter(tags=["providers"])


@router.post("/match", response_model=TransitionResponse, response_model_exclude_none=True)
@limiter.limit("30/minute")
async def match_job(request: Request, match: MatchRequest, service: JobServiceDep):
    """Assign a provider to a FUNDED job."""
    logger.info(f"POST /match | id={match.job_id} | provider={match.provider_addr}")

    job = await asyncio.to_thread(service.match_job, match.job_id, match.provider_addr)
    return TransitionResponse(status=job.status_enum)


@router.post("/results", response_model=TransitionResponse, response_model_exclude_none=True)
@limiter.limit("30/minute")
async def submit_result(request: Request, result: ResultCreate, service: JobServiceDep):
    """
    Record result metadata for a matched job.

    A provider may resubmit until the requester accepts; the latest result
    replaces the previous one.
    """
    logger.info(
        f"POST /results | id={result.job_id} | artifacts={len(result.artifacts)} "
        f"| exit_code={result.exit_code}"
    )

    job = await asyncio.to_thread(service.submit_result, result.to_submission())
    return TransitionResponse(status=job.status_enum)
