"""Request dependencies."""

from concurrent.futures import Executor
from typing import Annotated

from coordinator.jobs import JobService
from fastapi import Depends, HTTPException, Request, status


def get_job_service(request: Request) -> JobService:
    """JobService built during application startup."""
    service = getattr(request.app.state, "job_service", None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Job service is not initialized",
        )
    return service


def get_settlement_executor(request: Request) -> Executor:
    """Bounded worker pool for calls that wait on ledger confirmation."""
    executor = getattr(request.app.state, "settlement_executor", None)
    if executor is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Settlement workers are not initialized",
        )
    return executor


JobServiceDep = Annotated[JobService, Depends(get_job_service)]
SettlementExecutorDep = Annotated[Executor, Depends(get_settlement_executor)]
