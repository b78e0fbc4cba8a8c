"""Pytest configuration and fixtures."""

import os
import tempfile
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

import pytest

# Settings are read at import time; keep the app off the network and the
# operator's job store
_TEST_HOME = Path(tempfile.mkdtemp(prefix="coordinator-test-"))
os.environ["COORDINATOR_DB"] = str(_TEST_HOME / "coord.db")
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["RECONCILE_ON_STARTUP"] = "false"
for _name in ("CHAIN_RPC", "ESCROW_ADDRESS", "REQUESTER_PRIVKEY"):
    os.environ.pop(_name, None)

from app.main import app  # noqa: E402
from coordinator.config import CoordinatorConfig  # noqa: E402
from coordinator.jobs import InMemoryJobStorage, JobService  # noqa: E402
from coordinator.testing import FakeEscrowClient  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

REQUESTER = "0x" + "aa" * 20
PROVIDER = "0x" + "bb" * 20
ARTIFACT_SHA256 = "a665a45920422f9d417e4867efdc4fb8a04a1f3fff1fa07e998e86f7f7a27ae3"


@pytest.fixture
def escrow():
    return FakeEscrowClient()


@pytest.fixture
def job_service(escrow, tmp_path):
    """Engine over in-memory storage and a fake ledger."""
    config = CoordinatorConfig(transition_lock_timeout_sec=0.2, db_path=tmp_path / "coord.db")
    return JobService(InMemoryJobStorage(), escrow=escrow, config=config)


@pytest.fixture
def settlement_executor():
    executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="settlement")
    yield executor
    executor.shutdown(wait=True)


@pytest.fixture
def client(job_service, settlement_executor):
    """Create a test client bound to the test job service."""
    app.state.job_service = job_service
    app.state.settlement_executor = settlement_executor
    try:
        yield TestClient(app)
    finally:
        app.state.job_service = None
        app.state.settlement_executor = None


@pytest.fixture
def requester_headers():
    return {"x-requester-addr": REQUESTER}


@pytest.fixture
def job_payload():
    """Factory for job creation bodies."""

    def _make(**overrides):
        body = {
            "image": "alpine:3.19",
            "cmd": ["sh", "-c", "echo hello > /out/hello.txt"],
            "resources": {"cpu": 1, "ramGB": 1, "gpu": 0, "storageGB": 1},
            "outputs": [{"path": "/out/hello.txt"}],
            "maxPriceEth": "0.01",
            "timeoutSec": 600,
        }
        body.update(overrides)
        return body

    return _make


@pytest.fixture
def result_payload():
    """Factory for provider result bodies."""

    def _make(job_id, with_artifact=True, **overrides):
        body = {
            "jobId": job_id,
            "artifacts": [],
            "stdoutTail": "hello",
            "runtimeSec": 2,
            "exitCode": 0,
        }
        if with_artifact:
            body["artifacts"].append(
                {
                    "path": "/out/hello.txt",
                    "sha256": ARTIFACT_SHA256,
                    "size": 12,
                    "localUri": f"/outputs/{job_id}/hello.txt",
                }
            )
        body.update(overrides)
        return body

    return _make


@pytest.fixture
def job_in(client, escrow, requester_headers, job_payload, result_payload):
    """Drive a fresh job through the API to the given status; returns its id."""

    def _drive(status: str) -> str:
        response = client.post("/jobs", json=job_payload(), headers=requester_headers)
        assert response.status_code == 200, response.text
        job_id = response.json()["jobId"]
        if status == "CREATED":
            return job_id
        escrow.deposit(job_id, REQUESTER, "0.01")
        assert client.post(f"/jobs/{job_id}/fund", json={"tx": "0x" + "11" * 32}).status_code == 200
        if status == "FUNDED":
            return job_id
        match = client.post("/match", json={"jobId": job_id, "providerAddr": PROVIDER})
        assert match.status_code == 200, match.text
        if status == "MATCHED":
            return job_id
        assert client.post("/results", json=result_payload(job_id)).status_code == 200
        if status == "RESULT_SUBMITTED":
            return job_id
        raise ValueError(f"Unsupported status: {status}")

    return _drive
