"""
Job lifecycle data models.

A job moves through a strict forward state machine:

    CREATED -> FUNDED -> MATCHED -> (RUNNING) -> RESULT_SUBMITTED -> ACCEPTED

CANCELED is the alternate terminal, reachable from every status except
ACCEPTED and CANCELED. RUNNING is reserved for execution tracking and is
never entered by the lifecycle engine.
"""

import json
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, List, Optional, Set

ADDRESS_PATTERN = re.compile(r"^0x[a-fA-F0-9]{40}$")


class JobStatus(str, Enum):
    """Job lifecycle status."""

    CREATED = "CREATED"
    FUNDED = "FUNDED"
    MATCHED = "MATCHED"
    RUNNING = "RUNNING"
    RESULT_SUBMITTED = "RESULT_SUBMITTED"
    ACCEPTED = "ACCEPTED"
    CANCELED = "CANCELED"


class SettlementAction(str, Enum):
    """Escrow action a job is waiting on."""

    RELEASE = "release"
    REFUND = "refund"


# Valid state transitions
VALID_JOB_TRANSITIONS: Dict[JobStatus, Set[JobStatus]] = {
    JobStatus.CREATED: {JobStatus.FUNDED, JobStatus.CANCELED},
    JobStatus.FUNDED: {JobStatus.MATCHED, JobStatus.CANCELED},
    JobStatus.MATCHED: {JobStatus.RESULT_SUBMITTED, JobStatus.CANCELED},
    JobStatus.RUNNING: {JobStatus.RESULT_SUBMITTED, JobStatus.CANCELED},
    JobStatus.RESULT_SUBMITTED: {JobStatus.ACCEPTED, JobStatus.CANCELED},
    JobStatus.ACCEPTED: set(),
    JobStatus.CANCELED: set(),
}

TERMINAL_STATUSES = frozenset({JobStatus.ACCEPTED, JobStatus.CANCELED})

SETTLEMENT_TARGETS = {
    SettlementAction.RELEASE: JobStatus.ACCEPTED,
    SettlementAction.REFUND: JobStatus.CANCELED,
}


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(timezone.utc)


def _parse_datetime(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))


def _format_datetime(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def is_valid_address(value: Optional[str]) -> bool:
    """Check a 20-byte hex ledger address."""
    return bool(value) and ADDRESS_PATTERN.match(value) is not None


def parse_price(value: Any) -> Decimal:
    """Parse a decimal price string without going through binary floats.

    Raises:
        ValueError: If the value is not a finite, positive decimal
    """
    if isinstance(value, float):
        raise ValueError("Price must be a decimal string, not a float")
    try:
        price = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise ValueError(f"Invalid price: {value!r}")
    if not price.is_finite():
        raise ValueError(f"Invalid price: {value!r}")
    if price <= 0:
        raise ValueError("Price must be positive")
    return price


@dataclass
class ResourceRequest:
    """Compute resources a job asks for."""

    cpu: float = 1
    ram_gb: float = 1
    gpu: int = 0
    storage_gb: float = 1

    def __post_init__(self):
        for name in ("cpu", "ram_gb", "gpu", "storage_gb"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} cannot be negative")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cpu": self.cpu,
            "ramGB": self.ram_gb,
            "gpu": self.gpu,
            "storageGB": self.storage_gb,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ResourceRequest":
        return cls(
            cpu=data.get("cpu", 1),
            ram_gb=data.get("ramGB", 1),
            gpu=data.get("gpu", 0),
            storage_gb=data.get("storageGB", 1),
        )


@dataclass
class JobSpec:
    """What the requester wants executed.

    The coordinator stores the spec verbatim for providers; it never runs it.
    """

    image: str
    cmd: List[str]
    max_price: str
    resources: ResourceRequest = field(default_factory=ResourceRequest)
    inputs: List[str] = field(default_factory=list)
    outputs: List[str] = field(default_factory=list)
    timeout_sec: int = 600
    verifier: str = "hash-only"

    def __post_init__(self):
        if not self.image or not self.image.strip():
            raise ValueError("Image cannot be empty")
        if not self.cmd:
            raise ValueError("Command cannot be empty")
        if self.timeout_sec <= 0:
            raise ValueError("Timeout must be positive")
        if not self.verifier:
            raise ValueError("Verifier cannot be empty")
        # Normalise to the canonical decimal text
        self.max_price = str(parse_price(self.max_price))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "image": self.image,
            "cmd": list(self.cmd),
            "resources": self.resources.to_dict(),
            "inputs": [{"path": p} for p in self.inputs],
            "outputs": [{"path": p} for p in self.outputs],
            "maxPriceEth": self.max_price,
            "timeoutSec": self.timeout_sec,
            "verifier": self.verifier,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "JobSpec":
        return cls(
            image=data["image"],
            cmd=list(data["cmd"]),
            max_price=data["maxPriceEth"],
            resources=ResourceRequest.from_dict(data.get("resources") or {}),
            inputs=[i["path"] for i in data.get("inputs") or []],
            outputs=[o["path"] for o in data.get("outputs") or []],
            timeout_sec=data.get("timeoutSec", 600),
            verifier=data.get("verifier", "hash-only"),
        )


@dataclass
class Job:
    """A compute job header.

    Attributes:
        id: Ledger-compatible job identifier (0x-prefixed keccak digest)
        requester_addr: Address that funds the escrow
        price_cap: Maximum price as an exact decimal string
        status: Current lifecycle status
        spec: The submitted job specification (optional for legacy rows)
        fund_tx: Funding transaction reported by the requester
        pending_action: Escrow action in flight (release/refund), if any
        settlement_tx: Transaction reference returned by release/cancel
        pending_tx: Settlement transaction submitted without a confirmed
            receipt; the ledger decides its outcome
        pending_since: When the pending action marker was set
    """

    id: str
    requester_addr: str
    price_cap: str
    status: str = JobStatus.CREATED.value
    spec: Optional[JobSpec] = None
    fund_tx: Optional[str] = None
    pending_action: Optional[str] = None
    settlement_tx: Optional[str] = None
    pending_tx: Optional[str] = None
    pending_since: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        if isinstance(self.status, JobStatus):
            self.status = self.status.value
        valid_statuses = {s.value for s in JobStatus}
        if self.status not in valid_statuses:
            raise ValueError(f"Invalid status: {self.status}")

        if isinstance(self.pending_action, SettlementAction):
            self.pending_action = self.pending_action.value
        if self.pending_action is not None and self.pending_action not in {
            a.value for a in SettlementAction
        }:
            raise ValueError(f"Invalid pending action: {self.pending_action}")

        if not is_valid_address(self.requester_addr):
            raise ValueError(f"Invalid requester address: {self.requester_addr}")

        self.price_cap = str(parse_price(self.price_cap))

    @property
    def status_enum(self) -> JobStatus:
        return JobStatus(self.status)

    @property
    def price_cap_decimal(self) -> Decimal:
        return Decimal(self.price_cap)

    @property
    def is_terminal(self) -> bool:
        """ACCEPTED and CANCELED admit no further transitions."""
        return self.status_enum in TERMINAL_STATUSES

    def can_transition_to(self, new_status: JobStatus) -> bool:
        """Check if transition to new status is valid."""
        return new_status in VALID_JOB_TRANSITIONS.get(self.status_enum, set())

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage."""
        return {
            "id": self.id,
            "requester_addr": self.requester_addr,
            "price_cap": self.price_cap,
            "status": self.status,
            "spec": self.spec.to_dict() if self.spec else None,
            "fund_tx": self.fund_tx,
            "pending_action": self.pending_action,
            "settlement_tx": self.settlement_tx,
            "pending_tx": self.pending_tx,
            "pending_since": _format_datetime(self.pending_since),
            "created_at": _format_datetime(self.created_at),
            "updated_at": _format_datetime(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Job":
        """Create from dictionary."""
        spec = data.get("spec")
        if isinstance(spec, str):
            spec = json.loads(spec)
        return cls(
            id=data["id"],
            requester_addr=data["requester_addr"],
            price_cap=data["price_cap"],
            status=data.get("status", JobStatus.CREATED.value),
            spec=JobSpec.from_dict(spec) if spec else None,
            fund_tx=data.get("fund_tx"),
            pending_action=data.get("pending_action"),
            settlement_tx=data.get("settlement_tx"),
            pending_tx=data.get("pending_tx"),
            pending_since=_parse_datetime(data.get("pending_since")),
            created_at=_parse_datetime(data.get("created_at")),
            updated_at=_parse_datetime(data.get("updated_at")),
        )


@dataclass
class Assignment:
    """Provider assigned to a job. One per job; a rematch needs a new job.

    ``started_at``/``ended_at`` are reserved for execution telemetry and are
    never written by a lifecycle transition.
    """

    job_id: str
    provider_addr: str
    assigned_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None

    def __post_init__(self):
        if not is_valid_address(self.provider_addr):
            raise ValueError(f"Invalid provider address: {self.provider_addr}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "provider_addr": self.provider_addr,
            "assigned_at": _format_datetime(self.assigned_at),
            "started_at": _format_datetime(self.started_at),
            "ended_at": _format_datetime(self.ended_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Assignment":
        return cls(
            job_id=data["job_id"],
            provider_addr=data["provider_addr"],
            assigned_at=_parse_datetime(data.get("assigned_at")),
            started_at=_parse_datetime(data.get("started_at")),
            ended_at=_parse_datetime(data.get("ended_at")),
        )


@dataclass
class ResultArtifact:
    """One output file produced by a provider."""

    path: str
    sha256: str
    size: int
    local_uri: str

    def __post_init__(self):
        if not self.path:
            raise ValueError("Artifact path cannot be empty")
        if not self.sha256:
            raise ValueError("Artifact hash cannot be empty")
        if self.size < 0:
            raise ValueError("Artifact size cannot be negative")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "path": self.path,
            "sha256": self.sha256,
            "size": self.size,
            "localUri": self.local_uri,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ResultArtifact":
        return cls(
            path=data["path"],
            sha256=data["sha256"],
            size=data["size"],
            local_uri=data.get("localUri", ""),
        )


@dataclass
class ResultSubmission:
    """Result metadata reported by a provider after execution."""

    job_id: str
    artifacts: List[ResultArtifact]
    stdout_tail: str = ""
    stderr_tail: str = ""
    runtime_sec: float = 0
    exit_code: int = 0

    def __post_init__(self):
        if self.runtime_sec < 0:
            raise ValueError("Runtime cannot be negative")

    @property
    def artifact_hash(self) -> str:
        """Artifact content hashes joined in submission order."""
        return ",".join(a.sha256 for a in self.artifacts)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "jobId": self.job_id,
            "artifacts": [a.to_dict() for a in self.artifacts],
            "stdoutTail": self.stdout_tail,
            "stderrTail": self.stderr_tail,
            "runtimeSec": self.runtime_sec,
            "exitCode": self.exit_code,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ResultSubmission":
        return cls(
            job_id=data["jobId"],
            artifacts=[ResultArtifact.from_dict(a) for a in data.get("artifacts") or []],
            stdout_tail=data.get("stdoutTail", ""),
            stderr_tail=data.get("stderrTail", ""),
            runtime_sec=data.get("runtimeSec", 0),
            exit_code=data.get("exitCode", 0),
        )


@dataclass
class JobResult:
    """Stored result row. At most one per job; resubmission replaces it."""

    job_id: str
    result_json: str
    artifact_hash: str
    runtime_sec: float
    exit_code: int
    created_at: Optional[datetime] = None

    @classmethod
    def from_submission(
        cls, submission: ResultSubmission, created_at: Optional[datetime] = None
    ) -> "JobResult":
        return cls(
            job_id=submission.job_id,
            result_json=json.dumps(submission.to_dict()),
            artifact_hash=submission.artifact_hash,
            runtime_sec=submission.runtime_sec,
            exit_code=submission.exit_code,
            created_at=created_at,
        )

    @property
    def payload(self) -> Dict[str, Any]:
        """Deserialized result payload."""
        return json.loads(self.result_json)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "result_json": self.result_json,
            "artifact_hash": self.artifact_hash,
            "runtime_sec": self.runtime_sec,
            "exit_code": self.exit_code,
            "created_at": _format_datetime(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "JobResult":
        return cls(
            job_id=data["job_id"],
            result_json=data["result_json"],
            artifact_hash=data.get("artifact_hash") or "",
            runtime_sec=data.get("runtime_sec") or 0,
            exit_code=data.get("exit_code") or 0,
            created_at=_parse_datetime(data.get("created_at")),
        )


@dataclass
class JobStateTransition:
    """Audit log entry for job state changes."""

    job_id: str
    to_status: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    from_status: Optional[str] = None
    actor: Optional[str] = None
    tx_hash: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "job_id": self.job_id,
            "from_status": self.from_status,
            "to_status": self.to_status,
            "actor": self.actor,
            "tx_hash": self.tx_hash,
            "metadata": self.metadata,
            "created_at": _format_datetime(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "JobStateTransition":
        metadata = data.get("metadata") or {}
        if isinstance(metadata, str):
            metadata = json.loads(metadata)
        return cls(
            id=data["id"],
            job_id=data["job_id"],
            from_status=data.get("from_status"),
            to_status=data["to_status"],
            actor=data.get("actor"),
            tx_hash=data.get("tx_hash"),
            metadata=metadata,
            created_at=_parse_datetime(data.get("created_at")),
        )
