"""Request and response models for the coordinator API.

Wire field names are camelCase; the engine's dataclasses are built from the
validated models so malformed requests never reach the engine.
"""

from coordinator.jobs import (
    JobSpec,
    JobStatus,
    JobValidationError,
    ResourceRequest,
    ResultArtifact,
    ResultSubmission,
)
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

ADDRESS_REGEX = r"^0x[a-fA-F0-9]{40}$"
JOB_ID_REGEX = r"^0x[a-fA-F0-9]{64}$"


class WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


# =============================================================================
# Requests
# =============================================================================


class ResourcesModel(WireModel):
    cpu: float = Field(1, ge=0)
    ram_gb: float = Field(1, ge=0, alias="ramGB")
    gpu: int = Field(0, ge=0)
    storage_gb: float = Field(1, ge=0, alias="storageGB")


class PathModel(WireModel):
    path: str = Field(..., min_length=1)


class JobCreate(WireModel):
    """Job specification submitted by a requester."""

    image: str = Field(..., min_length=1)
    cmd: list[str] = Field(..., min_length=1)
    resources: ResourcesModel = Field(default_factory=ResourcesModel)
    inputs: list[PathModel] = Field(default_factory=list)
    outputs: list[PathModel] = Field(default_factory=list)
    max_price_eth: str = Field(
        ...,
        validation_alias=AliasChoices("maxPriceEth", "max_price_eth", "price"),
        serialization_alias="maxPriceEth",
    )
    timeout_sec: int = Field(600, gt=0, alias="timeoutSec")
    verifier: str | None = None

    @field_validator("image")
    @classmethod
    def image_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("image cannot be blank")
        return v.strip()

    def to_spec(self, default_verifier: str) -> JobSpec:
        try:
            return JobSpec(
                image=self.image,
                cmd=list(self.cmd),
                max_price=self.max_price_eth,
                resources=ResourceRequest(
                    cpu=self.resources.cpu,
                    ram_gb=self.resources.ram_gb,
                    gpu=self.resources.gpu,
                    storage_gb=self.resources.storage_gb,
                ),
                inputs=[i.path for i in self.inputs],
                outputs=[o.path for o in self.outputs],
                timeout_sec=self.timeout_sec,
                verifier=self.verifier or default_verifier,
            )
        except ValueError as e:
            raise JobValidationError(str(e)) from e


class FundRequest(WireModel):
    tx: str | None = Field(None, max_length=256)


class MatchRequest(WireModel):
    job_id: str = Field(..., alias="jobId", pattern=JOB_ID_REGEX)
    provider_addr: str = Field(..., alias="providerAddr", pattern=ADDRESS_REGEX)


class ArtifactModel(WireModel):
    path: str = Field(..., min_length=1)
    sha256: str = Field(..., min_length=1)
    size: int = Field(..., ge=0)
    local_uri: str = Field("", alias="localUri")


class ResultCreate(WireModel):
    """Result metadata reported by a provider."""

    job_id: str = Field(..., alias="jobId", pattern=JOB_ID_REGEX)
    artifacts: list[ArtifactModel] = Field(default_factory=list)
    stdout_tail: str = Field("", alias="stdoutTail")
    stderr_tail: str = Field("", alias="stderrTail")
    runtime_sec: float = Field(0, ge=0, alias="runtimeSec")
    exit_code: int = Field(0, alias="exitCode")

    def to_submission(self) -> ResultSubmission:
        try:
            return ResultSubmission(
                job_id=self.job_id,
                artifacts=[
                    ResultArtifact(
                        path=a.path, sha256=a.sha256, size=a.size, local_uri=a.local_uri
                    )
                    for a in self.artifacts
                ],
                stdout_tail=self.stdout_tail,
                stderr_tail=self.stderr_tail,
                runtime_sec=self.runtime_sec,
                exit_code=self.exit_code,
            )
        except ValueError as e:
            raise JobValidationError(str(e)) from e


class AcceptRequest(WireModel):
    provider: str | None = Field(None, pattern=ADDRESS_REGEX)


# =============================================================================
# Responses
# =============================================================================


class JobCreatedResponse(WireModel):
    job_id: str = Field(..., serialization_alias="jobId")
    expected_escrow: str = Field(..., serialization_alias="expectedEscrow")
    # Name used by existing clients
    expected_escrow_eth: str = Field(..., serialization_alias="expectedEscrowEth")
    status: JobStatus


class TransitionResponse(WireModel):
    ok: bool = True
    status: JobStatus
    tx_hash: str | None = Field(None, serialization_alias="txHash")


class JobListResponse(WireModel):
    jobs: list[dict]
    limit: int
    offset: int
