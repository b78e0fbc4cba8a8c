"""External-facing job views.

A view joins the job header with its optional assignment and result. Absent
sub-records are left out entirely rather than rendered as nulls, so clients
can tell "not yet assigned" apart from "assigned".
"""

from typing import Any, Dict, Optional

from coordinator.jobs.models import Assignment, Job, JobResult


def _iso(value) -> Optional[str]:
    return value.isoformat() if value else None


def build_job_summary(job: Job) -> Dict[str, Any]:
    """Header-only view used by listings."""
    view: Dict[str, Any] = {
        "jobId": job.id,
        "status": job.status,
        "requesterAddr": job.requester_addr,
        "priceCap": job.price_cap,
        "createdAt": _iso(job.created_at),
        "updatedAt": _iso(job.updated_at),
    }
    if job.spec is not None:
        view["spec"] = job.spec.to_dict()
    if job.fund_tx:
        view["fundTx"] = job.fund_tx
    if job.settlement_tx:
        view["txHash"] = job.settlement_tx
    if job.pending_action:
        view["pendingAction"] = job.pending_action
    if job.pending_tx:
        view["pendingTx"] = job.pending_tx
    return view


def build_job_view(
    job: Job,
    assignment: Optional[Assignment] = None,
    result: Optional[JobResult] = None,
) -> Dict[str, Any]:
    """Full status view for a single job."""
    view = build_job_summary(job)

    if assignment is not None:
        view["providerAddr"] = assignment.provider_addr
        view["assignedAt"] = _iso(assignment.assigned_at)
        if assignment.started_at:
            view["startedAt"] = _iso(assignment.started_at)
        if assignment.ended_at:
            view["endedAt"] = _iso(assignment.ended_at)

    if result is not None:
        view["result"] = result.payload
        view["artifactHash"] = result.artifact_hash

    return view
