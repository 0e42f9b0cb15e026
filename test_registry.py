import os
from datetime import timedelta

import pytest

from db import CONFIG_DEFAULTS, JobRegistry
from errors import DuplicateJobIdError
from models import JobStatus, Phase, PhaseInfo


def test_create_job_starts_pending(registry):
    job = registry.create_job("retrieve", {"targets": ["blob-1"]})

    assert job.id.startswith("job_")
    assert job.status == JobStatus.PENDING
    assert job.progress == 0
    assert job.started_at is None
    assert job.completed_at is None
    assert job.targets == ["blob-1"]


def test_generated_ids_are_unique(registry):
    ids = {registry.create_job("retrieve", {}).id for _ in range(20)}
    assert len(ids) == 20


def test_duplicate_job_id_is_rejected(registry):
    registry.create_job("retrieve", {"targets": ["a"]}, job_id="my-job")
    registry.update_progress("my-job", 40)

    with pytest.raises(DuplicateJobIdError) as excinfo:
        registry.create_job("fetch", {"targets": ["b"]}, job_id="my-job")

    assert excinfo.value.job_id == "my-job"
    original = registry.get_job("my-job")
    assert original.command == "retrieve"
    assert original.targets == ["a"]
    assert original.progress == 40


def test_get_unknown_job_returns_none(registry):
    assert registry.get_job("job_missing") is None


def test_list_jobs_keeps_insertion_order_and_filters(registry):
    first = registry.create_job("retrieve", {}, job_id="b-first")
    second = registry.create_job("retrieve", {}, job_id="a-second")
    third = registry.create_job("fetch", {}, job_id="c-third")
    registry.mark_terminal(second.id, JobStatus.FAILED, error="boom")

    assert [j.id for j in registry.list_jobs()] == [first.id, second.id, third.id]
    assert [j.id for j in registry.list_jobs(statuses=[JobStatus.FAILED])] == [second.id]
    assert [j.id for j in registry.list_jobs(statuses=[JobStatus.PENDING])] == [first.id, third.id]
    assert [j.id for j in registry.list_jobs(limit=2)] == [first.id, second.id]


def test_update_progress_moves_to_running_and_is_monotonic(registry):
    job = registry.create_job("retrieve", {})

    assert registry.update_progress(job.id, 50) is True
    running = registry.get_job(job.id)
    assert running.status == JobStatus.RUNNING
    assert running.started_at is not None

    registry.update_progress(job.id, 30)
    assert registry.get_job(job.id).progress == 50

    registry.update_progress(job.id, 70)
    again = registry.get_job(job.id)
    assert again.progress == 70
    assert again.started_at == running.started_at


def test_update_progress_records_phase_info(registry):
    job = registry.create_job("retrieve", {})
    info = PhaseInfo(operation_id="op-1", phase=Phase.DOWNLOADING, total_items=4, completed_items=1, failed_items=0)

    registry.update_progress(job.id, 25, info)

    stored = registry.get_job(job.id)
    assert stored.operation_id == "op-1"
    assert stored.phase == Phase.DOWNLOADING
    assert stored.total_items == 4
    assert stored.completed_items == 1


def test_update_progress_on_terminal_job_is_ignored(registry):
    job = registry.create_job("retrieve", {})
    registry.update_progress(job.id, 40)
    registry.mark_terminal(job.id, JobStatus.CANCELLED)

    assert registry.update_progress(job.id, 90) is False
    frozen = registry.get_job(job.id)
    assert frozen.status == JobStatus.CANCELLED
    assert frozen.progress == 40


def test_update_progress_unknown_job(registry):
    assert registry.update_progress("job_missing", 10) is False


def test_mark_terminal_first_write_wins(registry):
    job = registry.create_job("retrieve", {})
    registry.update_progress(job.id, 60)

    assert registry.mark_terminal(job.id, JobStatus.COMPLETED, result={"successful_items": 1}) is True
    assert registry.mark_terminal(job.id, JobStatus.FAILED, error="late callback") is False

    done = registry.get_job(job.id)
    assert done.status == JobStatus.COMPLETED
    assert done.progress == 100
    assert done.error is None
    assert done.completed_at is not None
    assert done.result == {"successful_items": 1}


def test_failed_job_keeps_last_progress_and_error(registry):
    job = registry.create_job("retrieve", {})
    registry.update_progress(job.id, 33)
    registry.mark_terminal(job.id, JobStatus.FAILED, error="all items failed")

    failed = registry.get_job(job.id)
    assert failed.progress == 33
    assert failed.error == "all items failed"


def test_error_is_only_stored_for_failed_jobs(registry):
    job = registry.create_job("retrieve", {})
    registry.mark_terminal(job.id, JobStatus.CANCELLED, error="ignored")
    assert registry.get_job(job.id).error is None


def test_mark_terminal_rejects_non_terminal_status(registry):
    job = registry.create_job("retrieve", {})
    with pytest.raises(ValueError):
        registry.mark_terminal(job.id, JobStatus.RUNNING)


def test_cancel_unknown_or_terminal_job_returns_false(registry):
    assert registry.cancel_job("job_missing") is False

    job = registry.create_job("retrieve", {})
    registry.mark_terminal(job.id, JobStatus.COMPLETED)
    assert registry.cancel_job(job.id) is False
    assert registry.get_job(job.id).status == JobStatus.COMPLETED


def test_cancel_unclaimed_pending_job_cancels_immediately(registry):
    job = registry.create_job("retrieve", {})

    assert registry.cancel_job(job.id) is True

    cancelled = registry.get_job(job.id)
    assert cancelled.status == JobStatus.CANCELLED
    assert cancelled.cancel_reason == "user"
    assert registry.get_metrics()["jobs_cancelled"] == 1


def test_cancel_running_job_sets_flag_and_signals_token(registry):
    job = registry.create_job("retrieve", {})
    token = registry.new_token(job.id)
    registry.update_progress(job.id, 10)

    assert registry.cancel_job(job.id) is True

    assert token.cancelled
    assert token.reason == "user"
    running = registry.get_job(job.id)
    assert running.status == JobStatus.RUNNING
    assert running.cancel_requested is True
    assert registry.requested_cancel_reason(job.id) == "user"


def test_token_observes_cancel_from_another_registry(registry, db_path):
    job = registry.create_job("retrieve", {})
    token = registry.new_token(job.id)
    registry.update_progress(job.id, 10)
    assert not token.cancelled

    JobRegistry(db_path).cancel_job(job.id, reason="timeout")

    assert token.wait(2.0) is True
    assert token.reason == "timeout"


def test_claim_job_succeeds_once(registry):
    job = registry.create_job("retrieve", {})

    assert registry.claim_job(job.id, 111) is True
    assert registry.claim_job(job.id, 222) is False
    assert registry.get_job(job.id).pid == 111


def test_claim_next_takes_oldest_unclaimed(registry):
    first = registry.create_job("retrieve", {})
    second = registry.create_job("retrieve", {})
    registry.claim_job(first.id, 1)

    assert registry.claim_next(2) == second.id
    assert registry.claim_next(3) is None


def test_metrics_count_terminal_outcomes(registry):
    for status in (JobStatus.COMPLETED, JobStatus.COMPLETED, JobStatus.FAILED):
        job = registry.create_job("retrieve", {})
        registry.mark_terminal(job.id, status, error="x")

    metrics = registry.get_metrics()
    assert metrics["jobs_completed"] == 2
    assert metrics["jobs_failed"] == 1
    assert registry.status_summary() == {"completed": 2, "failed": 1}


def test_cleanup_removes_only_old_terminal_jobs(registry):
    done = registry.create_job("retrieve", {})
    registry.mark_terminal(done.id, JobStatus.COMPLETED)
    with open(registry.log_path(done.id), "w") as f:
        f.write("log line\n")
    active = registry.create_job("retrieve", {})

    assert registry.cleanup_jobs(timedelta(days=1)) == 0
    assert registry.cleanup_jobs(timedelta(seconds=-1)) == 1

    assert registry.get_job(done.id) is None
    assert registry.get_job(active.id) is not None


def test_config_defaults_and_overrides(registry):
    assert registry.get_config("chunk_size") == CONFIG_DEFAULTS["chunk_size"]
    registry.set_config("chunk_size", "8")
    assert registry.get_config_number("chunk_size") == 8
    assert registry.list_config()["chunk_size"] == "8"
    assert registry.get_config("aggregator_url") is None


def test_snapshot_shape(registry):
    job = registry.create_job("retrieve", {"targets": ["a"]})
    snapshot = job.snapshot().to_dict()
    assert snapshot == {
        "id": job.id,
        "command": "retrieve",
        "status": "pending",
        "progress": 0,
        "createdAt": job.created_at,
    }

    info = PhaseInfo(operation_id="op", phase=Phase.COMPLETE, total_items=1, completed_items=1)
    registry.update_progress(job.id, 0, info)
    registry.mark_terminal(job.id, JobStatus.COMPLETED, phase_info=info)
    full = registry.get_job(job.id).snapshot().to_dict()
    assert full["status"] == "completed"
    assert full["progress"] == 100
    assert full["phase"] == "complete"
    assert full["totalItems"] == 1
    assert "startedAt" in full and "completedAt" in full
    assert "error" not in full


def test_cancel_job_with_dead_owner_cancels_immediately(registry, dead_pid):
    job = registry.create_job("retrieve", {})
    registry.claim_job(job.id, dead_pid)
    registry.update_progress(job.id, 20)

    assert registry.cancel_job(job.id) is True

    cancelled = registry.get_job(job.id)
    assert cancelled.status == JobStatus.CANCELLED
    assert cancelled.cancel_reason == "user"
    assert cancelled.progress == 20


def test_reap_orphans_finishes_jobs_of_dead_processes(registry, dead_pid):
    orphan = registry.create_job("retrieve", {})
    registry.claim_job(orphan.id, dead_pid)
    registry.update_progress(orphan.id, 10)
    asked = registry.create_job("retrieve", {})
    registry.claim_job(asked.id, dead_pid)
    registry.new_token(asked.id)
    registry.cancel_job(asked.id, reason="timeout")
    registry.release_token(asked.id)
    alive = registry.create_job("retrieve", {})
    registry.claim_job(alive.id, os.getpid())
    unclaimed = registry.create_job("retrieve", {})

    assert sorted(registry.reap_orphans()) == sorted([orphan.id, asked.id])

    failed = registry.get_job(orphan.id)
    assert failed.status == JobStatus.FAILED
    assert str(dead_pid) in failed.error
    assert registry.get_job(asked.id).status == JobStatus.CANCELLED
    assert registry.get_job(asked.id).cancel_reason == "timeout"
    assert registry.get_job(alive.id).status == JobStatus.PENDING
    assert registry.get_job(unclaimed.id).status == JobStatus.PENDING
    assert registry.reap_orphans() == []


def test_reap_orphans_can_target_specific_jobs(registry, dead_pid):
    first = registry.create_job("retrieve", {})
    second = registry.create_job("retrieve", {})
    registry.claim_job(first.id, dead_pid)
    registry.claim_job(second.id, dead_pid)

    assert registry.reap_orphans([second.id]) == [second.id]
    assert registry.get_job(first.id).status == JobStatus.PENDING
    assert registry.reap_orphans([]) == []
