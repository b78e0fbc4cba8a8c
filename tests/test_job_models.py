"""Tests for job data models."""

import json
from datetime import datetime, timezone
from decimal import Decimal

import pytest

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
    is_valid_address,
    parse_price,
)

JOB_ID = "0x" + "12" * 32
REQUESTER = "0x" + "aa" * 20
PROVIDER = "0x" + "bb" * 20


class TestJobStatus:
    """Tests for the status table."""

    def test_all_statuses_have_transition_entries(self):
        assert set(VALID_JOB_TRANSITIONS) == set(JobStatus)

    def test_forward_path(self):
        assert JobStatus.FUNDED in VALID_JOB_TRANSITIONS[JobStatus.CREATED]
        assert JobStatus.MATCHED in VALID_JOB_TRANSITIONS[JobStatus.FUNDED]
        assert JobStatus.RESULT_SUBMITTED in VALID_JOB_TRANSITIONS[JobStatus.MATCHED]
        assert JobStatus.ACCEPTED in VALID_JOB_TRANSITIONS[JobStatus.RESULT_SUBMITTED]

    def test_cancel_reachable_from_every_non_terminal_status(self):
        for status in JobStatus:
            if status in (JobStatus.ACCEPTED, JobStatus.CANCELED):
                assert VALID_JOB_TRANSITIONS[status] == set()
            else:
                assert JobStatus.CANCELED in VALID_JOB_TRANSITIONS[status]

    def test_nothing_transitions_into_running(self):
        for targets in VALID_JOB_TRANSITIONS.values():
            assert JobStatus.RUNNING not in targets

    def test_status_values_are_wire_strings(self):
        assert JobStatus.RESULT_SUBMITTED.value == "RESULT_SUBMITTED"
        assert JobStatus("CANCELED") is JobStatus.CANCELED


class TestParsePrice:
    """Tests for decimal price parsing."""

    def test_parses_decimal_string(self):
        assert parse_price("0.05") == Decimal("0.05")

    def test_keeps_full_precision(self):
        assert parse_price("0.000000000000000001") == Decimal("1E-18")

    @pytest.mark.parametrize("value", ["0", "-1", "abc", "", "NaN", "Infinity"])
    def test_rejects_invalid(self, value):
        with pytest.raises(ValueError):
            parse_price(value)

    def test_rejects_float(self):
        with pytest.raises(ValueError, match="float"):
            parse_price(0.1)


class TestAddresses:
    def test_valid_address(self):
        assert is_valid_address(REQUESTER)
        assert is_valid_address("0xAbCdEf0123456789abcdef0123456789ABCDEF01")

    @pytest.mark.parametrize("value", [None, "", "0x123", "aa" * 20, "0x" + "zz" * 20])
    def test_invalid_address(self, value):
        assert not is_valid_address(value)


class TestJobSpec:
    """Tests for JobSpec."""

    def test_defaults(self):
        spec = JobSpec(image="alpine", cmd=["echo", "hi"], max_price="0.01")
        assert spec.timeout_sec == 600
        assert spec.verifier == "hash-only"
        assert spec.resources == ResourceRequest()

    def test_wire_format(self):
        spec = JobSpec(
            image="alpine",
            cmd=["echo", "hi"],
            max_price="0.010",
            resources=ResourceRequest(cpu=2, ram_gb=4, gpu=1, storage_gb=10),
            inputs=["/in/data.csv"],
            outputs=["/out/hello.txt"],
            timeout_sec=120,
        )
        data = spec.to_dict()
        assert data["maxPriceEth"] == "0.010"
        assert data["resources"] == {"cpu": 2, "ramGB": 4, "gpu": 1, "storageGB": 10}
        assert data["inputs"] == [{"path": "/in/data.csv"}]
        assert data["outputs"] == [{"path": "/out/hello.txt"}]
        assert data["timeoutSec"] == 120
        assert JobSpec.from_dict(data) == spec

    def test_empty_image_rejected(self):
        with pytest.raises(ValueError, match="Image"):
            JobSpec(image=" ", cmd=["x"], max_price="1")

    def test_empty_command_rejected(self):
        with pytest.raises(ValueError, match="Command"):
            JobSpec(image="alpine", cmd=[], max_price="1")

    def test_non_positive_price_rejected(self):
        with pytest.raises(ValueError, match="positive"):
            JobSpec(image="alpine", cmd=["x"], max_price="0")

    def test_negative_resources_rejected(self):
        with pytest.raises(ValueError, match="cpu"):
            ResourceRequest(cpu=-1)


class TestJob:
    """Tests for Job dataclass."""

    def test_create_basic_job(self):
        job = Job(id=JOB_ID, requester_addr=REQUESTER, price_cap="0.01")

        assert job.status == "CREATED"
        assert job.status_enum is JobStatus.CREATED
        assert job.price_cap_decimal == Decimal("0.01")
        assert job.pending_action is None
        assert not job.is_terminal

    def test_status_enum_is_normalised(self):
        job = Job(id=JOB_ID, requester_addr=REQUESTER, price_cap="1", status=JobStatus.FUNDED)
        assert job.status == "FUNDED"

    def test_invalid_status_rejected(self):
        with pytest.raises(ValueError, match="Invalid status"):
            Job(id=JOB_ID, requester_addr=REQUESTER, price_cap="1", status="DONE")

    def test_invalid_pending_action_rejected(self):
        with pytest.raises(ValueError, match="pending action"):
            Job(id=JOB_ID, requester_addr=REQUESTER, price_cap="1", pending_action="pay")

    def test_pending_action_enum_is_normalised(self):
        job = Job(
            id=JOB_ID,
            requester_addr=REQUESTER,
            price_cap="1",
            pending_action=SettlementAction.REFUND,
        )
        assert job.pending_action == "refund"

    def test_invalid_requester_rejected(self):
        with pytest.raises(ValueError, match="requester"):
            Job(id=JOB_ID, requester_addr="alice", price_cap="1")

    @pytest.mark.parametrize("status", [JobStatus.ACCEPTED, JobStatus.CANCELED])
    def test_terminal_statuses(self, status):
        job = Job(id=JOB_ID, requester_addr=REQUESTER, price_cap="1", status=status)
        assert job.is_terminal
        assert not job.can_transition_to(JobStatus.CANCELED)

    def test_can_transition_to(self):
        job = Job(id=JOB_ID, requester_addr=REQUESTER, price_cap="1")
        assert job.can_transition_to(JobStatus.FUNDED)
        assert not job.can_transition_to(JobStatus.MATCHED)

    def test_dict_round_trip_with_spec(self):
        now = datetime.now(timezone.utc)
        job = Job(
            id=JOB_ID,
            requester_addr=REQUESTER,
            price_cap="0.5",
            status="FUNDED",
            spec=JobSpec(image="alpine", cmd=["true"], max_price="0.5"),
            fund_tx="0x" + "ab" * 32,
            pending_action="release",
            pending_tx="0x" + "cd" * 32,
            pending_since=now,
            created_at=now,
            updated_at=now,
        )
        restored = Job.from_dict(job.to_dict())
        assert restored == job

    def test_from_dict_accepts_json_spec(self):
        spec = JobSpec(image="alpine", cmd=["true"], max_price="0.5")
        job = Job.from_dict(
            {
                "id": JOB_ID,
                "requester_addr": REQUESTER,
                "price_cap": "0.5",
                "spec": json.dumps(spec.to_dict()),
            }
        )
        assert job.spec == spec


class TestAssignment:
    def test_invalid_provider_rejected(self):
        with pytest.raises(ValueError, match="provider"):
            Assignment(job_id=JOB_ID, provider_addr="bob")

    def test_round_trip(self):
        now = datetime.now(timezone.utc)
        assignment = Assignment(job_id=JOB_ID, provider_addr=PROVIDER, assigned_at=now)
        assert Assignment.from_dict(assignment.to_dict()) == assignment


class TestResults:
    """Tests for result submission and stored result."""

    def _submission(self, *hashes):
        return ResultSubmission(
            job_id=JOB_ID,
            artifacts=[
                ResultArtifact(path=f"/out/{i}", sha256=h, size=1, local_uri="")
                for i, h in enumerate(hashes)
            ],
            stdout_tail="ok",
            runtime_sec=1.5,
            exit_code=0,
        )

    def test_artifact_hash_joins_in_order(self):
        assert self._submission("aa", "bb", "cc").artifact_hash == "aa,bb,cc"

    def test_artifact_hash_empty_without_artifacts(self):
        assert self._submission().artifact_hash == ""

    def test_wire_format(self):
        data = self._submission("aa").to_dict()
        assert data["jobId"] == JOB_ID
        assert data["artifacts"][0] == {"path": "/out/0", "sha256": "aa", "size": 1, "localUri": ""}
        assert data["runtimeSec"] == 1.5
        assert ResultSubmission.from_dict(data) == self._submission("aa")

    def test_negative_runtime_rejected(self):
        with pytest.raises(ValueError, match="Runtime"):
            ResultSubmission(job_id=JOB_ID, artifacts=[], runtime_sec=-1)

    def test_artifact_requires_hash(self):
        with pytest.raises(ValueError, match="hash"):
            ResultArtifact(path="/out/x", sha256="", size=1, local_uri="")

    def test_job_result_from_submission(self):
        submission = self._submission("aa", "bb")
        result = JobResult.from_submission(submission)

        assert result.job_id == JOB_ID
        assert result.artifact_hash == "aa,bb"
        assert result.runtime_sec == 1.5
        assert result.payload == submission.to_dict()


class TestJobStateTransition:
    def test_defaults(self):
        transition = JobStateTransition(job_id=JOB_ID, to_status="FUNDED")
        assert transition.id
        assert transition.metadata == {}
        assert transition.from_status is None

    def test_from_dict_parses_json_metadata(self):
        transition = JobStateTransition.from_dict(
            {
                "id": "t-1",
                "job_id": JOB_ID,
                "to_status": "ACCEPTED",
                "metadata": '{"action": "release"}',
            }
        )
        assert transition.metadata == {"action": "release"}
