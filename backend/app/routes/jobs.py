"""Jobs routes.

Requester-facing endpoints: create, fund, inspect, accept, cancel.
Engine calls run in a worker thread. Accept and cancel block on ledger
confirmation, so they run on the bounded settlement pool and never tie up
the threads that serve reads and other transitions.
"""

import asyncio
import functools
from concurrent.futures import Executor

from coordinator.jobs import JobStatus, JobValidationError
from fastapi import APIRouter, Query, Request

from ..auth import RequesterAddress
from ..dependencies import JobServiceDep, SettlementExecutorDep
from ..logging_config import get_logger
from ..models import (
    AcceptRequest,
    FundRequest,
    JobCreate,
    JobCreatedResponse,
    JobListResponse,
    TransitionResponse,
)
from ..rate_limit import limiter

logger = get_logger("api.jobs")
router = APIRouter(prefix="/jobs", tags=["jobs"])


async def run_settlement(executor: Executor, func, *args):
    """Run a ledger-bound engine call on the settlement pool."""
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(executor, functools.partial(func, *args))


def parse_status_filter(value: str | None) -> JobStatus | None:
    if not value:
        return None
    try:
        return JobStatus(value.strip().upper())
    except ValueError as e:
        raise JobValidationError(f"Unknown status: {value}") from e


@router.post("", response_model=JobCreatedResponse)
@limiter.limit("20/minute")
async def create_job(
    request: Request,
    job: JobCreate,
    requester: RequesterAddress,
    service: JobServiceDep,
):
    """
    Create a job.

    The requester then deposits ``expectedEscrow`` into the escrow contract
    under the returned jobId and reports it via ``/jobs/{jobId}/fund``.
    """
    logger.info(f"POST /jobs | requester={requester} | image={job.image[:50]}")

    spec = job.to_spec(default_verifier=service.config.default_verifier)
    created = await asyncio.to_thread(service.submit_job, requester, spec)

    return JobCreatedResponse(
        job_id=created.id,
        expected_escrow=created.price_cap,
        expected_escrow_eth=created.price_cap,
        status=created.status_enum,
    )


@router.get("", response_model=JobListResponse)
@limiter.limit("120/minute")
async def list_jobs(
    request: Request,
    service: JobServiceDep,
    status_filter: str | None = Query(None, alias="status"),
    provider: str | None = Query(None),
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
):
    """
    List jobs, newest first.

    Filters:
    - status: Only jobs in this status; all jobs when omitted
    - provider: Only jobs assigned to this provider address
    """
    logger.info(f"GET /jobs | status={status_filter} | provider={provider}")

    job_status = parse_status_filter(status_filter)
    views = await asyncio.to_thread(
        service.list_job_views,
        status=job_status,
        provider_addr=provider,
        limit=limit,
        offset=offset,
    )
    return JobListResponse(jobs=views, limit=limit, offset=offset)


@router.get("/{job_id}")
@limiter.limit("120/minute")
async def get_job(request: Request, job_id: str, service: JobServiceDep):
    """Job status joined with its assignment and result, when present."""
    logger.info(f"GET /jobs/{job_id}")
    return await asyncio.to_thread(service.get_job_view, job_id)


@router.get("/{job_id}/transitions")
@limiter.limit("60/minute")
async def get_job_transitions(request: Request, job_id: str, service: JobServiceDep):
    """Audit trail of status changes, oldest first."""
    logger.info(f"GET /jobs/{job_id}/transitions")
    transitions = await asyncio.to_thread(service.get_transitions, job_id)
    return {"jobId": job_id, "transitions": [t.to_dict() for t in transitions]}


@router.post("/{job_id}/fund", response_model=TransitionResponse, response_model_exclude_none=True)
@limiter.limit("20/minute")
async def fund_job(
    request: Request,
    job_id: str,
    service: JobServiceDep,
    fund_request: FundRequest | None = None,
):
    """
    Report that the escrow deposit for a job was made.

    Transitions the job from CREATED to FUNDED and records the funding tx.
    """
    tx = fund_request.tx if fund_request else None
    logger.info(f"POST /jobs/{job_id}/fund | tx={tx}")

    job = await asyncio.to_thread(service.fund_job, job_id, tx)
    return TransitionResponse(status=job.status_enum)


@router.post("/{job_id}/accept", response_model=TransitionResponse, response_model_exclude_none=True)
@limiter.limit("10/minute")
async def accept_job(
    request: Request,
    job_id: str,
    service: JobServiceDep,
    executor: SettlementExecutorDep,
    accept_request: AcceptRequest | None = None,
):
    """
    Accept the submitted result and release the escrow to the provider.

    Blocks until the release transaction confirms. Fails with 409 while
    another transition on the job is in flight.
    """
    provider = accept_request.provider if accept_request else None
    logger.info(f"POST /jobs/{job_id}/accept | provider={provider}")

    job = await run_settlement(executor, service.accept_job, job_id, provider)
    return TransitionResponse(status=job.status_enum, tx_hash=job.settlement_tx)


@router.post("/{job_id}/cancel", response_model=TransitionResponse, response_model_exclude_none=True)
@limiter.limit("10/minute")
async def cancel_job(
    request: Request,
    job_id: str,
    service: JobServiceDep,
    executor: SettlementExecutorDep,
):
    """
    Cancel a job and refund the escrow to the requester.

    Blocks until the refund transaction confirms. Fails with 409 while
    another transition on the job is in flight.
    """
    actor = request.headers.get("x-requester-addr")
    logger.info(f"POST /jobs/{job_id}/cancel | actor={actor}")

    job = await run_settlement(executor, service.cancel_job, job_id, actor)
    return TransitionResponse(status=job.status_enum, tx_hash=job.settlement_tx)
