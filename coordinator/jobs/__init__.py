"""Job lifecycle subsystem.

Models:
- Job: Job header (requester, price cap, status)
- Assignment: Provider matched to a job
- JobResult: Stored result metadata
- JobStatus: Job lifecycle status
- JobStateTransition: Audit log entry for state changes

Storage:
- JobStorage: Persistence protocol
- InMemoryJobStorage / SQLiteJobStorage: Backends

Service:
- JobService: Lifecycle engine (submit, fund, match, results, accept, cancel)
"""

from coordinator.jobs.models import (
    VALID_JOB_TRANSITIONS,
    Assignment,
    Job,
    JobResult,
    JobSpec,
    JobStateTransition,
    JobStatus,
    ResourceRequest,
    ResultArtifact,
    ResultSubmission,
    SettlementAction,
)
from coordinator.jobs.service import (
    EscrowCallFailedError,
    EscrowUnavailableError,
    InvalidTransitionError,
    JobBusyError,
    JobNotFoundError,
    JobService,
    JobServiceError,
    JobValidationError,
    ReconcileReport,
)
from coordinator.jobs.sqlite import SQLiteJobStorage
from coordinator.jobs.storage import InMemoryJobStorage, JobStorage, StorageError

__all__ = [
    # Models
    "Job",
    "JobSpec",
    "ResourceRequest",
    "Assignment",
    "JobResult",
    "ResultArtifact",
    "ResultSubmission",
    "JobStatus",
    "SettlementAction",
    "JobStateTransition",
    "VALID_JOB_TRANSITIONS",
    # Storage
    "JobStorage",
    "InMemoryJobStorage",
    "SQLiteJobStorage",
    "StorageError",
    # Service
    "JobService",
    "JobServiceError",
    "JobValidationError",
    "JobNotFoundError",
    "InvalidTransitionError",
    "JobBusyError",
    "EscrowUnavailableError",
    "EscrowCallFailedError",
    "ReconcileReport",
]
