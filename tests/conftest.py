"""
Pytest fixtures for coordinator library tests.
"""

import pytest

from coordinator.config import CoordinatorConfig
from coordinator.jobs import (
    InMemoryJobStorage,
    JobService,
    JobSpec,
    ResultArtifact,
    ResultSubmission,
    SQLiteJobStorage,
)
from coordinator.testing import FakeEscrowClient

REQUESTER = "0x" + "aa" * 20
PROVIDER = "0x" + "bb" * 20
OTHER_PROVIDER = "0x" + "cc" * 20


@pytest.fixture
def requester():
    return REQUESTER


@pytest.fixture
def provider():
    return PROVIDER


@pytest.fixture
def other_provider():
    return OTHER_PROVIDER


@pytest.fixture
def storage():
    """Create in-memory storage for testing."""
    return InMemoryJobStorage()


@pytest.fixture
def sqlite_storage(tmp_path):
    """SQLite storage in a temporary directory."""
    return SQLiteJobStorage(tmp_path / "coord.db")


@pytest.fixture
def escrow():
    """Recording in-memory escrow ledger."""
    return FakeEscrowClient()


@pytest.fixture
def config(tmp_path):
    """Create test configuration."""
    return CoordinatorConfig(
        transition_lock_timeout_sec=5.0, reconcile_min_age_sec=0, db_path=tmp_path / "coord.db"
    )


@pytest.fixture
def service(storage, escrow, config):
    """Create job service for testing."""
    return JobService(storage=storage, escrow=escrow, config=config)


@pytest.fixture
def make_spec():
    """Factory for job specifications."""

    def _make(price="0.01", **overrides):
        fields = {
            "image": "alpine:3.19",
            "cmd": ["sh", "-c", "echo hello > /out/hello.txt"],
            "max_price": price,
            "outputs": ["/out/hello.txt"],
        }
        fields.update(overrides)
        return JobSpec(**fields)

    return _make


@pytest.fixture
def make_submission():
    """Factory for provider result submissions."""

    def _make(job_id, sha256="a665a45920422f9d417e4867efdc4fb8a04a1f3fff1fa07e998e86f7f7a27ae3", **overrides):
        artifacts = []
        if sha256:
            artifacts.append(
                ResultArtifact(
                    path="/out/hello.txt",
                    sha256=sha256,
                    size=12,
                    local_uri=f"/outputs/{job_id}/hello.txt",
                )
            )
        fields = {
            "job_id": job_id,
            "artifacts": artifacts,
            "stdout_tail": "ok",
            "runtime_sec": 2,
            "exit_code": 0,
        }
        fields.update(overrides)
        return ResultSubmission(**fields)

    return _make


@pytest.fixture
def job_at(service, escrow, make_spec, make_submission):
    """Drive a fresh job to the given status and return it.

    The escrow ledger is funded with the price cap once the job is FUNDED.
    """

    def _drive(status: str, requester_addr=REQUESTER, provider_addr=PROVIDER, price="0.01"):
        job = service.submit_job(requester_addr, make_spec(price=price))
        if status == "CREATED":
            return job
        escrow.deposit(job.id, requester_addr, price)
        job = service.fund_job(job.id, tx="0x" + "11" * 32)
        if status == "FUNDED":
            return job
        job = service.match_job(job.id, provider_addr)
        if status == "MATCHED":
            return job
        job = service.submit_result(make_submission(job.id))
        if status == "RESULT_SUBMITTED":
            return job
        if status == "ACCEPTED":
            return service.accept_job(job.id)
        if status == "CANCELED":
            return service.cancel_job(job.id)
        raise ValueError(f"Unsupported status: {status}")

    return _drive
