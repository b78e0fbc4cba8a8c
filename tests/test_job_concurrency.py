"""Concurrency tests for the job lifecycle engine.

Settlement calls on the fake ledger are given latency so that competing
transitions genuinely overlap.
"""

import threading
import time
from concurrent.futures import ThreadPoolExecutor

import pytest

from coordinator.config import CoordinatorConfig
from coordinator.jobs import (
    InvalidTransitionError,
    JobBusyError,
    JobService,
    SQLiteJobStorage,
)


def _attempt(fn, *args):
    try:
        return fn(*args)
    except InvalidTransitionError as e:
        return e


class TestSameJob:
    def test_concurrent_accepts_release_once(self, service, escrow, storage, job_at):
        job = job_at("RESULT_SUBMITTED")
        escrow.latency = 0.05

        with ThreadPoolExecutor(max_workers=5) as pool:
            outcomes = list(pool.map(lambda _: _attempt(service.accept_job, job.id), range(5)))

        successes = [o for o in outcomes if not isinstance(o, Exception)]
        assert len(successes) == 1
        assert all(isinstance(o, InvalidTransitionError) for o in outcomes if o not in successes)
        assert len(escrow.calls_to("release")) == 1
        assert storage.get_job(job.id).status == "ACCEPTED"

    def test_accept_and_cancel_race_has_one_winner(self, service, escrow, storage, job_at):
        job = job_at("RESULT_SUBMITTED")
        escrow.latency = 0.05

        with ThreadPoolExecutor(max_workers=2) as pool:
            accept = pool.submit(_attempt, service.accept_job, job.id)
            cancel = pool.submit(_attempt, service.cancel_job, job.id)
            outcomes = [accept.result(), cancel.result()]

        winners = [o for o in outcomes if not isinstance(o, Exception)]
        assert len(winners) == 1
        settled = escrow.calls_to("release") + escrow.calls_to("cancel")
        assert len(settled) == 1
        assert storage.get_job(job.id).status == winners[0].status

    def test_concurrent_matches_assign_one_provider(self, service, storage, job_at):
        job = job_at("FUNDED")
        providers = ["0x" + f"{n:02x}" * 20 for n in range(1, 9)]

        with ThreadPoolExecutor(max_workers=8) as pool:
            outcomes = list(pool.map(lambda p: _attempt(service.match_job, job.id, p), providers))

        winners = [o for o in outcomes if not isinstance(o, Exception)]
        assert len(winners) == 1
        assert storage.get_assignment(job.id).provider_addr in providers

    def test_settlement_on_busy_job_fails_fast(self, service, escrow, job_at):
        """accept/cancel do not wait out transition_lock_timeout_sec on a held job."""
        job = job_at("RESULT_SUBMITTED")
        escrow.latency = 0.5

        with ThreadPoolExecutor(max_workers=2) as pool:
            first = pool.submit(service.accept_job, job.id)
            time.sleep(0.1)
            begin = time.monotonic()
            with pytest.raises(JobBusyError):
                service.cancel_job(job.id)
            with pytest.raises(JobBusyError):
                service.accept_job(job.id)
            assert time.monotonic() - begin < 0.2
            assert first.result().status == "ACCEPTED"

        assert escrow.calls_to("cancel") == []
        assert len(escrow.calls_to("release")) == 1

    def test_other_transitions_use_configured_lock_timeout(self, storage, escrow, job_at, tmp_path):
        job = job_at("MATCHED")
        impatient = JobService(
            storage=storage,
            escrow=escrow,
            config=CoordinatorConfig(transition_lock_timeout_sec=0.05, db_path=tmp_path / "c.db"),
        )
        held = threading.Event()
        release = threading.Event()

        def hold_lock():
            with impatient._locks.hold(job.id):
                held.set()
                release.wait(5)

        thread = threading.Thread(target=hold_lock)
        thread.start()
        try:
            held.wait(5)
            with pytest.raises(JobBusyError, match="in progress"):
                impatient.match_job(job.id, "0x" + "dd" * 20)
        finally:
            release.set()
            thread.join()


class TestDifferentJobs:
    def test_settlements_on_different_jobs_overlap(self, service, escrow, job_at):
        jobs = [job_at("RESULT_SUBMITTED") for _ in range(4)]
        escrow.latency = 0.2

        start = time.monotonic()
        with ThreadPoolExecutor(max_workers=4) as pool:
            results = list(pool.map(lambda j: service.accept_job(j.id), jobs))
        elapsed = time.monotonic() - start

        assert all(r.status == "ACCEPTED" for r in results)
        # Serialized settlement would need at least 0.8s
        assert elapsed < 0.6

    def test_reads_are_not_blocked_by_settlement(self, service, escrow, job_at):
        busy = job_at("RESULT_SUBMITTED")
        other = job_at("FUNDED")
        escrow.latency = 0.3
        started = threading.Event()

        def accept():
            started.set()
            service.accept_job(busy.id)

        thread = threading.Thread(target=accept)
        thread.start()
        try:
            started.wait(1)
            begin = time.monotonic()
            assert service.get_job_view(other.id)["status"] == "FUNDED"
            assert service.match_job(other.id, "0x" + "dd" * 20).status == "MATCHED"
            assert time.monotonic() - begin < 0.25
        finally:
            thread.join()


class TestSQLiteConcurrency:
    def test_concurrent_accepts_on_sqlite(self, escrow, tmp_path, make_spec, make_submission):
        storage = SQLiteJobStorage(tmp_path / "coord.db")
        service = JobService(
            storage=storage,
            escrow=escrow,
            config=CoordinatorConfig(db_path=tmp_path / "coord.db"),
        )
        requester = "0x" + "aa" * 20
        job = service.submit_job(requester, make_spec())
        escrow.deposit(job.id, requester, "0.01")
        service.fund_job(job.id)
        service.match_job(job.id, "0x" + "bb" * 20)
        service.submit_result(make_submission(job.id))
        escrow.latency = 0.05

        with ThreadPoolExecutor(max_workers=4) as pool:
            outcomes = list(pool.map(lambda _: _attempt(service.accept_job, job.id), range(4)))

        assert sum(1 for o in outcomes if not isinstance(o, Exception)) == 1
        assert len(escrow.calls_to("release")) == 1
        assert storage.get_job(job.id).status == "ACCEPTED"
