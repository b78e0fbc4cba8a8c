"""
Job lifecycle engine.

Owns the job state machine and coordinates the two transitions that move
escrowed funds (accept -> release, cancel -> refund). Every transition runs
under a per-job lock and commits through a conditional status update, so two
transitions on the same job never interleave while unrelated jobs proceed in
parallel.

Escrow-backed transitions follow a fixed write order:

1. mark the job with the pending settlement action
2. call the escrow ledger (blocking until confirmation)
3. record the returned transaction reference
4. advance to the terminal status and clear the pending marker

A crash between 2 and 4 leaves a pending marker behind; ``reconcile()``
repairs such jobs from ledger state without re-issuing the call. A call that
was submitted but never confirmed also leaves its transaction hash behind;
the job then refuses further settlement until reconcile has read that
transaction's outcome from the ledger.
"""

import contextlib
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from coordinator.config import CoordinatorConfig
from coordinator.escrow.abi import ZERO_ADDRESS
from coordinator.escrow.service import (
    ConfirmationTimeoutError,
    EscrowClient,
    EscrowServiceError,
)
from coordinator.jobs.identity import generate_job_id
from coordinator.jobs.locks import KeyedLockTable, LockTimeout
from coordinator.jobs.models import (
    SETTLEMENT_TARGETS,
    Assignment,
    Job,
    JobResult,
    JobSpec,
    JobStateTransition,
    JobStatus,
    ResultSubmission,
    SettlementAction,
    is_valid_address,
    utc_now,
)
from coordinator.jobs.storage import JobStorage, StorageError
from coordinator.jobs.views import build_job_view

logger = logging.getLogger(__name__)

# accept/cancel fail with JobBusyError instead of queueing on a held job lock
SETTLEMENT_LOCK_TIMEOUT_SEC = 0.0

_CLEARED_MARKER = {"pending_action": None, "pending_tx": None, "pending_since": None}

__all__ = [
    "JobService",
    "JobServiceError",
    "JobValidationError",
    "JobNotFoundError",
    "InvalidTransitionError",
    "JobBusyError",
    "EscrowUnavailableError",
    "EscrowCallFailedError",
    "StorageError",
    "ReconcileReport",
]


class JobServiceError(Exception):
    """Base exception for job service errors."""

    code = "job_error"


class JobValidationError(JobServiceError):
    """Malformed or incomplete request data."""

    code = "validation_error"


class JobNotFoundError(JobServiceError):
    """Job not found."""

    code = "not_found"


class InvalidTransitionError(JobServiceError):
    """Current status does not permit the requested transition."""

    code = "invalid_transition"


class JobBusyError(InvalidTransitionError):
    """Another transition on the same job is still in flight."""

    code = "job_busy"


class EscrowUnavailableError(JobServiceError):
    """No escrow client is configured."""

    code = "escrow_unavailable"


class EscrowCallFailedError(JobServiceError):
    """Escrow call failed or did not confirm. Job status was not advanced."""

    code = "escrow_call_failed"

    def __init__(self, message: str, tx_hash: Optional[str] = None):
        super().__init__(message)
        self.tx_hash = tx_hash


@dataclass
class ReconcileReport:
    """Outcome of a reconciliation pass, by job id."""

    finalized: List[str] = field(default_factory=list)
    cleared: List[str] = field(default_factory=list)
    unresolved: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    errors: Dict[str, str] = field(default_factory=dict)

    @property
    def checked(self) -> int:
        return (
            len(self.finalized)
            + len(self.cleared)
            + len(self.unresolved)
            + len(self.skipped)
            + len(self.errors)
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "checked": self.checked,
            "finalized": self.finalized,
            "cleared": self.cleared,
            "unresolved": self.unresolved,
            "skipped": self.skipped,
            "errors": self.errors,
        }


class JobService:
    """Service for job lifecycle operations."""

    def __init__(
        self,
        storage: JobStorage,
        escrow: Optional[EscrowClient] = None,
        config: Optional[CoordinatorConfig] = None,
        locks: Optional[KeyedLockTable] = None,
    ):
        """Initialize job service.

        Args:
            storage: Job storage backend
            escrow: Escrow ledger client; accept/cancel fail without one
            config: Coordinator configuration
            locks: Per-job lock table, shared when several services use one store
        """
        self.storage = storage
        self.escrow = escrow
        self.config = config or CoordinatorConfig()
        self._locks = locks or KeyedLockTable()

    # === Helpers ===

    @contextlib.contextmanager
    def _job_lock(self, job_id: str, timeout: Optional[float] = None):
        if timeout is None:
            timeout = self.config.transition_lock_timeout_sec
        try:
            with self._locks.hold(job_id, timeout=timeout):
                yield
        except LockTimeout as e:
            logger.warning(f"Transition rejected, job busy | id={job_id}")
            raise JobBusyError(f"Job {job_id} has another transition in progress") from e

    def _load(self, job_id: str) -> Job:
        job = self.storage.get_job(job_id)
        if job is None:
            raise JobNotFoundError(f"Job {job_id} not found")
        return job

    def _require_transition(self, job: Job, target: JobStatus, action: str) -> None:
        if not job.can_transition_to(target):
            logger.warning(f"Rejected {action} | id={job.id} | status={job.status}")
            raise InvalidTransitionError(f"Cannot {action} job in status {job.status}")

    def _require_settleable(self, job: Job, action: SettlementAction) -> None:
        """Refuse a settlement whose outcome could contradict one in flight."""
        if job.pending_tx:
            logger.warning(
                f"Rejected {action.value} | id={job.id} | unconfirmed tx={job.pending_tx}"
            )
            raise InvalidTransitionError(
                f"Job {job.id} has an unconfirmed {job.pending_action} transaction "
                f"{job.pending_tx}; reconcile first"
            )
        if job.pending_action and job.pending_action != action.value:
            logger.warning(
                f"Rejected {action.value} | id={job.id} | pending={job.pending_action}"
            )
            raise InvalidTransitionError(
                f"Job {job.id} has a pending {job.pending_action}; reconcile first"
            )

    def _require_escrow(self) -> EscrowClient:
        if self.escrow is None:
            raise EscrowUnavailableError("Escrow client is not configured")
        return self.escrow

    @staticmethod
    def _timestamp(job: Job) -> datetime:
        """Current time, never earlier than the job's last update."""
        now = utc_now()
        if job.updated_at and job.updated_at > now:
            return job.updated_at
        return now

    def _commit(
        self,
        job: Job,
        updates: Dict[str, Any],
        *,
        assignment: Optional[Assignment] = None,
        result: Optional[JobResult] = None,
        transition: Optional[JobStateTransition] = None,
    ) -> Job:
        """Persist updates guarded by the job's current status.

        Returns the job with the updates applied.
        """
        applied = self.storage.apply_transition(
            job.id,
            job.status,
            updates,
            assignment=assignment,
            result=result,
            transition=transition,
        )
        if not applied:
            current = self.storage.get_job(job.id)
            if current is None:
                raise JobNotFoundError(f"Job {job.id} not found")
            logger.warning(
                f"Concurrent modification on job {job.id}: "
                f"expected status '{job.status}', found '{current.status}'"
            )
            raise InvalidTransitionError(
                f"Job {job.id} status changed to {current.status} during the transition"
            )

        for name, value in updates.items():
            setattr(job, name, value.value if isinstance(value, JobStatus) else value)
        return job

    def _advance(
        self,
        job: Job,
        new_status: JobStatus,
        actor: Optional[str] = None,
        tx_hash: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        extra_updates: Optional[Dict[str, Any]] = None,
        **related,
    ) -> Job:
        """Move a job to ``new_status`` and append an audit record."""
        now = self._timestamp(job)
        transition = JobStateTransition(
            job_id=job.id,
            from_status=job.status,
            to_status=new_status.value,
            actor=actor,
            tx_hash=tx_hash,
            metadata=metadata or {},
            created_at=now,
        )
        updates: Dict[str, Any] = {"status": new_status.value, "updated_at": now}
        if extra_updates:
            updates.update(extra_updates)
        return self._commit(job, updates, transition=transition, **related)

    # === Job Submission ===

    def submit_job(self, requester_addr: str, spec: JobSpec) -> Job:
        """Create a job in CREATED status.

        Args:
            requester_addr: Address that will fund the escrow
            spec: What to run and the price cap

        Returns:
            The created job

        Raises:
            JobValidationError: If the requester address is missing or invalid
        """
        if not requester_addr:
            raise JobValidationError("Missing requester address")
        if not is_valid_address(requester_addr):
            raise JobValidationError(f"Invalid requester address: {requester_addr}")

        now = utc_now()
        job = Job(
            id=generate_job_id(requester_addr),
            requester_addr=requester_addr,
            price_cap=spec.max_price,
            status=JobStatus.CREATED,
            spec=spec,
            created_at=now,
            updated_at=now,
        )
        self.storage.create_job(
            job,
            JobStateTransition(
                job_id=job.id,
                to_status=JobStatus.CREATED.value,
                actor=requester_addr,
                metadata={"price_cap": job.price_cap, "verifier": spec.verifier},
                created_at=now,
            ),
        )

        logger.info(f"Job created | id={job.id} | requester={requester_addr} | price={job.price_cap}")
        return job

    # === Funding ===

    def fund_job(self, job_id: str, tx: Optional[str] = None) -> Job:
        """Record that the requester funded the escrow.

        Funding happens on-chain outside the coordinator. With
        ``verify_funding`` enabled the escrow balance and depositor are
        checked against the job first.

        A refund marker left by a cancel that failed on the unfunded escrow is
        dropped here. One whose transaction is still unconfirmed blocks
        funding until reconcile has resolved it.

        Raises:
            JobNotFoundError: If job doesn't exist
            InvalidTransitionError: If job is not CREATED, a refund is
                unconfirmed, or on-chain funding does not match the job
        """
        with self._job_lock(job_id):
            job = self._load(job_id)
            self._require_transition(job, JobStatus.FUNDED, "fund")
            if job.pending_tx:
                raise InvalidTransitionError(
                    f"Job {job_id} has an unconfirmed {job.pending_action} transaction "
                    f"{job.pending_tx}; reconcile first"
                )

            if self.config.verify_funding:
                self._verify_funding(job)

            job = self._advance(
                job,
                JobStatus.FUNDED,
                actor=job.requester_addr,
                tx_hash=tx,
                extra_updates={"fund_tx": tx, "pending_action": None, "pending_since": None},
            )

        logger.info(f"Job funded | id={job_id} | tx={tx}")
        return job

    def _verify_funding(self, job: Job) -> None:
        escrow = self._require_escrow()
        try:
            amount = escrow.escrow_amount(job.id)
            depositor = escrow.requester_of(job.id)
        except EscrowServiceError as e:
            raise EscrowCallFailedError(f"Could not read escrow for job {job.id}: {e}") from e

        if amount < job.price_cap_decimal:
            raise InvalidTransitionError(
                f"Escrow holds {amount}, job {job.id} requires {job.price_cap}"
            )
        if depositor.lower() != job.requester_addr.lower():
            raise InvalidTransitionError(
                f"Escrow for job {job.id} was funded by {depositor}, not {job.requester_addr}"
            )

    # === Matching ===

    def match_job(self, job_id: str, provider_addr: str) -> Job:
        """Assign a provider to a funded job.

        Raises:
            JobValidationError: If the provider address is invalid
            JobNotFoundError: If job doesn't exist
            InvalidTransitionError: If job is not FUNDED
        """
        if not is_valid_address(provider_addr):
            raise JobValidationError(f"Invalid provider address: {provider_addr}")

        with self._job_lock(job_id):
            job = self._load(job_id)
            self._require_transition(job, JobStatus.MATCHED, "match")

            assignment = Assignment(
                job_id=job_id,
                provider_addr=provider_addr,
                assigned_at=self._timestamp(job),
            )
            job = self._advance(
                job,
                JobStatus.MATCHED,
                actor=provider_addr,
                metadata={"provider": provider_addr},
                assignment=assignment,
            )

        logger.info(f"Job matched | id={job_id} | provider={provider_addr}")
        return job

    # === Results ===

    def submit_result(self, submission: ResultSubmission) -> Job:
        """Record result metadata from the provider.

        Accepted while MATCHED or RUNNING. A resubmission while
        RESULT_SUBMITTED replaces the stored result and keeps the status.

        Raises:
            JobNotFoundError: If job doesn't exist
            InvalidTransitionError: If job is not awaiting a result
        """
        job_id = submission.job_id
        with self._job_lock(job_id):
            job = self._load(job_id)
            if job.status_enum != JobStatus.RESULT_SUBMITTED:
                self._require_transition(job, JobStatus.RESULT_SUBMITTED, "submit results for")

            now = self._timestamp(job)
            result = JobResult.from_submission(submission, created_at=now)
            metadata = {
                "artifacts": len(submission.artifacts),
                "exit_code": submission.exit_code,
            }

            if job.status_enum == JobStatus.RESULT_SUBMITTED:
                metadata["resubmitted"] = True
                transition = JobStateTransition(
                    job_id=job_id,
                    from_status=job.status,
                    to_status=job.status,
                    metadata=metadata,
                    created_at=now,
                )
                job = self._commit(job, {"updated_at": now}, result=result, transition=transition)
                logger.info(f"Result replaced | id={job_id} | artifacts={len(submission.artifacts)}")
                return job

            job = self._advance(job, JobStatus.RESULT_SUBMITTED, metadata=metadata, result=result)

        logger.info(
            f"Result submitted | id={job_id} | artifacts={len(submission.artifacts)} "
            f"| exit_code={submission.exit_code}"
        )
        return job

    # === Settlement ===

    def accept_job(self, job_id: str, provider_addr: Optional[str] = None) -> Job:
        """Accept the submitted result and release escrow to the provider.

        Args:
            job_id: Job to accept
            provider_addr: Provider the caller expects to pay; must match the
                assignment when given

        Returns:
            The ACCEPTED job; ``settlement_tx`` holds the release tx hash

        Raises:
            JobNotFoundError: If job doesn't exist
            InvalidTransitionError: If job is not RESULT_SUBMITTED, the
                result has no artifacts, or an earlier settlement awaits
                reconciliation
            JobBusyError: If another transition on the job is in flight
            JobValidationError: If provider_addr does not match the assignment
            EscrowUnavailableError: If no escrow client is configured
            EscrowCallFailedError: If the release failed; status is unchanged
        """
        with self._job_lock(job_id, timeout=SETTLEMENT_LOCK_TIMEOUT_SEC):
            job = self._load(job_id)
            self._require_transition(job, JobStatus.ACCEPTED, "accept")
            self._require_settleable(job, SettlementAction.RELEASE)

            assignment = self.storage.get_assignment(job_id)
            if assignment is None:
                raise InvalidTransitionError(f"Job {job_id} has no provider assignment")
            if provider_addr and provider_addr.lower() != assignment.provider_addr.lower():
                raise JobValidationError(
                    f"Provider {provider_addr} is not assigned to job {job_id}"
                )

            result = self.storage.get_result(job_id)
            if result is None or not result.artifact_hash:
                raise InvalidTransitionError(f"Job {job_id} has no result artifacts to accept")

            escrow = self._require_escrow()
            job = self._settle(
                job,
                SettlementAction.RELEASE,
                lambda: escrow.release(job_id, assignment.provider_addr),
                actor=job.requester_addr,
                metadata={"provider": assignment.provider_addr},
            )

        logger.info(
            f"Job accepted | id={job_id} | provider={assignment.provider_addr} "
            f"| tx={job.settlement_tx}"
        )
        return job

    def cancel_job(self, job_id: str, actor: Optional[str] = None) -> Job:
        """Cancel a job and refund the escrow to the requester.

        Raises:
            JobNotFoundError: If job doesn't exist
            InvalidTransitionError: If job is already ACCEPTED or CANCELED, or
                an earlier settlement awaits reconciliation
            JobBusyError: If another transition on the job is in flight
            EscrowUnavailableError: If no escrow client is configured
            EscrowCallFailedError: If the refund failed; status is unchanged
        """
        with self._job_lock(job_id, timeout=SETTLEMENT_LOCK_TIMEOUT_SEC):
            job = self._load(job_id)
            self._require_transition(job, JobStatus.CANCELED, "cancel")
            self._require_settleable(job, SettlementAction.REFUND)

            escrow = self._require_escrow()
            job = self._settle(
                job,
                SettlementAction.REFUND,
                lambda: escrow.cancel(job_id),
                actor=actor or job.requester_addr,
            )

        logger.info(f"Job canceled | id={job_id} | tx={job.settlement_tx}")
        return job

    def _settle(
        self,
        job: Job,
        action: SettlementAction,
        call: Callable[[], str],
        actor: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Job:
        """Run an escrow call and advance the job only after it succeeds.

        Must be called with the job lock held.
        """
        job = self._commit(job, {"pending_action": action.value, "pending_since": utc_now()})

        try:
            tx_hash = call()
        except ConfirmationTimeoutError as e:
            logger.error(
                f"Escrow {action.value} unconfirmed | id={job.id} | tx={e.tx_hash} | error={e}"
            )
            if e.tx_hash:
                self._commit(job, {"pending_tx": e.tx_hash})
            raise EscrowCallFailedError(
                f"Escrow {action.value} for job {job.id} did not confirm: {e}",
                tx_hash=e.tx_hash,
            ) from e
        except EscrowServiceError as e:
            logger.error(f"Escrow {action.value} failed | id={job.id} | error={e}")
            raise EscrowCallFailedError(
                f"Escrow {action.value} failed for job {job.id}: {e}",
                tx_hash=getattr(e, "tx_hash", None),
            ) from e

        # The tx reference lands before the terminal status
        job = self._commit(job, {"settlement_tx": tx_hash})
        return self._advance(
            job,
            SETTLEMENT_TARGETS[action],
            actor=actor,
            tx_hash=tx_hash,
            metadata={"action": action.value, **(metadata or {})},
            extra_updates=_CLEARED_MARKER,
        )

    # === Queries ===

    def get_job(self, job_id: str) -> Job:
        """Get a job by ID.

        Raises:
            JobNotFoundError: If job doesn't exist
        """
        return self._load(job_id)

    def get_job_view(self, job_id: str) -> Dict[str, Any]:
        """Job header joined with its assignment and result."""
        job = self._load(job_id)
        return build_job_view(
            job,
            assignment=self.storage.get_assignment(job_id),
            result=self.storage.get_result(job_id),
        )

    def list_jobs(
        self,
        status: Optional[JobStatus] = None,
        provider_addr: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[Job]:
        """List jobs. Without a status every job is returned."""
        return self.storage.list_jobs(
            status=status, provider_addr=provider_addr, limit=limit, offset=offset
        )

    def list_job_views(
        self,
        status: Optional[JobStatus] = None,
        provider_addr: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[Dict[str, Any]]:
        """List jobs as views including their assignment."""
        jobs = self.list_jobs(status=status, provider_addr=provider_addr, limit=limit, offset=offset)
        return [build_job_view(j, assignment=self.storage.get_assignment(j.id)) for j in jobs]

    def get_transitions(self, job_id: str) -> List[JobStateTransition]:
        """Audit trail for a job, oldest first."""
        self._load(job_id)
        return self.storage.get_transitions(job_id)

    # === Reconciliation ===

    def reconcile(self) -> ReconcileReport:
        """Repair jobs left mid-settlement by a crash or a failed call.

        For each job carrying a pending settlement marker:

        - a submitted but unconfirmed tx is looked up on the ledger: mined
          means the job is finalized with it, reverted means the marker is
          cleared, no receipt yet means the job stays unresolved
        - markers younger than ``reconcile_min_age_sec`` are skipped; their
          settlement may still be running in another process
        - a recorded settlement tx means the ledger call confirmed; the job
          is advanced to its terminal status
        - otherwise the escrow balance decides: funds still held means the
          call never landed and the marker is cleared; an emptied escrow that
          was once deposited means it did land and the job is finalized
        - an escrow that never held a deposit is left for an operator

        Ledger calls are never re-issued.

        Raises:
            EscrowUnavailableError: If no escrow client is configured
        """
        escrow = self._require_escrow()
        report = ReconcileReport()

        for pending in self.storage.list_pending_settlements():
            job_id = pending.id
            try:
                with self._job_lock(job_id):
                    self._reconcile_job(escrow, self._load(job_id), report)
            except JobBusyError:
                report.skipped.append(job_id)
            except (JobServiceError, EscrowServiceError, StorageError) as e:
                logger.error(f"Reconcile failed | id={job_id} | error={e}")
                report.errors[job_id] = str(e)

        logger.info(
            f"Reconcile complete | finalized={len(report.finalized)} "
            f"| cleared={len(report.cleared)} | unresolved={len(report.unresolved)} "
            f"| skipped={len(report.skipped)}"
        )
        return report

    def _reconcile_job(self, escrow: EscrowClient, job: Job, report: ReconcileReport) -> None:
        if not job.pending_action:
            return

        action = SettlementAction(job.pending_action)
        target = SETTLEMENT_TARGETS[action]

        if job.is_terminal:
            # Terminal write landed; only the marker is stale
            self._commit(job, dict(_CLEARED_MARKER))
            report.cleared.append(job.id)
            return

        if job.pending_tx:
            self._reconcile_submitted(escrow, job, action, report)
            return

        if self._marker_is_recent(job):
            logger.info(f"Reconcile: marker too recent, skipped | id={job.id}")
            report.skipped.append(job.id)
            return

        if job.settlement_tx:
            self._finalize(job, target, action, job.settlement_tx)
            report.finalized.append(job.id)
            return

        amount = escrow.escrow_amount(job.id)
        if amount > 0:
            self._commit(job, dict(_CLEARED_MARKER))
            logger.info(f"Reconcile: escrow still funded, marker cleared | id={job.id}")
            report.cleared.append(job.id)
            return

        depositor = escrow.requester_of(job.id)
        if not depositor or depositor.lower() == ZERO_ADDRESS:
            logger.warning(f"Reconcile: no escrow deposit on record | id={job.id}")
            report.unresolved.append(job.id)
            return

        self._finalize(job, target, action, None)
        report.finalized.append(job.id)

    def _reconcile_submitted(
        self, escrow: EscrowClient, job: Job, action: SettlementAction, report: ReconcileReport
    ) -> None:
        """Settle a job from the ledger outcome of its unconfirmed tx."""
        mined = escrow.transaction_status(job.pending_tx)
        if mined is None:
            logger.warning(
                f"Reconcile: tx still unconfirmed | id={job.id} | tx={job.pending_tx}"
            )
            report.unresolved.append(job.id)
        elif mined:
            self._finalize(job, SETTLEMENT_TARGETS[action], action, job.pending_tx)
            report.finalized.append(job.id)
        else:
            self._commit(job, dict(_CLEARED_MARKER))
            logger.info(f"Reconcile: tx reverted, marker cleared | id={job.id} | tx={job.pending_tx}")
            report.cleared.append(job.id)

    def _marker_is_recent(self, job: Job) -> bool:
        if job.pending_since is None:
            return False
        age = utc_now() - job.pending_since
        return age < timedelta(seconds=self.config.reconcile_min_age_sec)

    def _finalize(
        self, job: Job, target: JobStatus, action: SettlementAction, tx_hash: Optional[str]
    ) -> None:
        updates = dict(_CLEARED_MARKER)
        if tx_hash:
            updates["settlement_tx"] = tx_hash
        self._advance(
            job,
            target,
            actor="reconciler",
            tx_hash=tx_hash,
            metadata={"action": action.value, "reconciled": True},
            extra_updates=updates,
        )
        logger.info(f"Reconcile: job finalized | id={job.id} | status={target.value}")
