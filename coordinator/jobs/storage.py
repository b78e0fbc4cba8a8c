"""
Jobs storage layer.

Defines the narrow persistence contract the lifecycle engine relies on and an
in-memory backend for tests and local development. See ``sqlite.py`` for the
durable backend.
"""

import copy
import logging
import threading
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol

from coordinator.jobs.models import (
    Assignment,
    Job,
    JobResult,
    JobStateTransition,
    JobStatus,
)

logger = logging.getLogger(__name__)

# Job columns a transition may change
UPDATABLE_JOB_FIELDS = frozenset(
    {
        "status",
        "fund_tx",
        "pending_action",
        "pending_tx",
        "pending_since",
        "settlement_tx",
        "updated_at",
    }
)


class StorageError(Exception):
    """Underlying store operation failed."""


def check_update_fields(updates: Dict[str, Any]) -> None:
    unknown = set(updates) - UPDATABLE_JOB_FIELDS
    if unknown:
        raise StorageError(f"Cannot update job fields: {sorted(unknown)}")


class JobStorage(Protocol):
    """Protocol for job persistence backends."""

    # Jobs
    def create_job(self, job: Job, transition: Optional[JobStateTransition] = None) -> str:
        """Insert a new job and its first audit record in one unit.

        Raises StorageError if the id already exists; nothing is written then.
        """
        ...

    def get_job(self, job_id: str) -> Optional[Job]:
        """Get a job by ID."""
        ...

    def list_jobs(
        self,
        status: Optional[JobStatus] = None,
        provider_addr: Optional[str] = None,
        requester_addr: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[Job]:
        """List jobs, newest first. No filter means every job."""
        ...

    def list_pending_settlements(self) -> List[Job]:
        """Jobs carrying a pending escrow action marker."""
        ...

    def apply_transition(
        self,
        job_id: str,
        expected_status: str,
        updates: Dict[str, Any],
        *,
        assignment: Optional[Assignment] = None,
        result: Optional[JobResult] = None,
        transition: Optional[JobStateTransition] = None,
    ) -> bool:
        """Conditionally update a job and its related rows in one unit.

        Writes nothing and returns False unless the job exists and its
        stored status still equals ``expected_status``.
        """
        ...

    # Assignments
    def get_assignment(self, job_id: str) -> Optional[Assignment]:
        """Get the assignment for a job."""
        ...

    # Results
    def get_result(self, job_id: str) -> Optional[JobResult]:
        """Get the stored result for a job."""
        ...

    # Transitions (audit log)
    def save_transition(self, transition: JobStateTransition) -> str:
        """Save a state transition record. Returns the transition ID."""
        ...

    def get_transitions(self, job_id: str) -> List[JobStateTransition]:
        """Get all state transitions for a job, oldest first."""
        ...


class InMemoryJobStorage:
    """In-memory job storage for testing and local development."""

    def __init__(self):
        """Initialize empty storage."""
        self._jobs: dict[str, Job] = {}
        self._assignments: dict[str, Assignment] = {}
        self._results: dict[str, JobResult] = {}
        self._transitions: dict[str, list[JobStateTransition]] = {}  # job_id -> list
        self._lock = threading.Lock()

    def _utc_now(self) -> datetime:
        """Get current UTC timestamp."""
        return datetime.now(timezone.utc)

    # === Jobs ===

    def create_job(self, job: Job, transition: Optional[JobStateTransition] = None) -> str:
        """Insert a new job."""
        with self._lock:
            if job.id in self._jobs:
                raise StorageError(f"Job {job.id} already exists")
            self._jobs[job.id] = copy.deepcopy(job)
            self._transitions[job.id] = [transition] if transition is not None else []
        return job.id

    def get_job(self, job_id: str) -> Optional[Job]:
        """Get a job by ID."""
        job = self._jobs.get(job_id)
        return copy.deepcopy(job) if job else None

    def list_jobs(
        self,
        status: Optional[JobStatus] = None,
        provider_addr: Optional[str] = None,
        requester_addr: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[Job]:
        """List jobs with optional filters."""
        jobs = list(self._jobs.values())

        # Apply filters
        if status is not None:
            status_val = status.value if isinstance(status, JobStatus) else status
            jobs = [j for j in jobs if j.status == status_val]
        if provider_addr is not None:
            wanted = provider_addr.lower()
            jobs = [
                j
                for j in jobs
                if j.id in self._assignments
                and self._assignments[j.id].provider_addr.lower() == wanted
            ]
        if requester_addr is not None:
            wanted = requester_addr.lower()
            jobs = [j for j in jobs if j.requester_addr.lower() == wanted]

        # Sort by created_at desc
        jobs.sort(key=lambda j: j.created_at or self._utc_now(), reverse=True)

        return [copy.deepcopy(j) for j in jobs[offset : offset + limit]]

    def list_pending_settlements(self) -> List[Job]:
        """Jobs carrying a pending escrow action marker."""
        return [copy.deepcopy(j) for j in self._jobs.values() if j.pending_action]

    def apply_transition(
        self,
        job_id: str,
        expected_status: str,
        updates: Dict[str, Any],
        *,
        assignment: Optional[Assignment] = None,
        result: Optional[JobResult] = None,
        transition: Optional[JobStateTransition] = None,
    ) -> bool:
        """Conditionally update a job and its related rows."""
        check_update_fields(updates)
        expected = (
            expected_status.value if isinstance(expected_status, JobStatus) else expected_status
        )

        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.status != expected:
                return False
            if assignment is not None and job_id in self._assignments:
                raise StorageError(f"Job {job_id} already has an assignment")

            for name, value in updates.items():
                if isinstance(value, JobStatus):
                    value = value.value
                setattr(job, name, value)
            if assignment is not None:
                self._assignments[job_id] = copy.deepcopy(assignment)
            if result is not None:
                self._results[job_id] = copy.deepcopy(result)
            if transition is not None:
                self._transitions.setdefault(job_id, []).append(transition)
        return True

    # === Assignments ===

    def get_assignment(self, job_id: str) -> Optional[Assignment]:
        """Get the assignment for a job."""
        assignment = self._assignments.get(job_id)
        return copy.deepcopy(assignment) if assignment else None

    # === Results ===

    def get_result(self, job_id: str) -> Optional[JobResult]:
        """Get the stored result for a job."""
        result = self._results.get(job_id)
        return copy.deepcopy(result) if result else None

    # === Transitions ===

    def save_transition(self, transition: JobStateTransition) -> str:
        """Save a state transition record."""
        with self._lock:
            self._transitions.setdefault(transition.job_id, []).append(transition)
        return transition.id

    def get_transitions(self, job_id: str) -> List[JobStateTransition]:
        """Get all state transitions for a job."""
        transitions = self._transitions.get(job_id, [])
        # Sort by created_at asc
        return sorted(transitions, key=lambda t: t.created_at or self._utc_now())
