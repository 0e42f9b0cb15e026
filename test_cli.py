import json

import pytest
from click.testing import CliRunner

import worker
from db import JobRegistry
from models import JobStatus
from retrievectl import cli


@pytest.fixture
def invoke(db_path, tmp_path):
    runner = CliRunner()
    out_dir = str(tmp_path / "out")

    def _invoke(*args):
        return runner.invoke(cli, ["--db", db_path, *args], catch_exceptions=False)

    _invoke.out_dir = out_dir
    return _invoke


def test_foreground_retrieve_succeeds(invoke, tmp_path):
    result = invoke("retrieve", "--mock", "a", "b", "-o", invoke.out_dir, "--progress-interval", "0.05")

    assert result.exit_code == 0, result.output
    assert "Retrieval summary:" in result.output
    assert "COMPLETED" in result.output
    assert (tmp_path / "out" / "b").read_bytes() == b"mock-blob:b"


def test_fetch_prints_blob_contents(invoke):
    result = invoke("fetch", "--mock", "blob-7", "--progress-interval", "0.05")

    assert result.exit_code == 0, result.output
    assert b"mock-blob:blob-7" in result.stdout_bytes


def test_failed_retrieval_exits_1(invoke):
    result = invoke("retrieve", "--mock", "bad-id", "-o", invoke.out_dir, "--progress-interval", "0.05")

    assert result.exit_code == 1
    assert "FAILED" in result.output


def test_timeout_exits_3(invoke, registry):
    result = invoke("retrieve", "--mock", "hang-1", "--timeout", "1", "-o", invoke.out_dir, "--progress-interval", "0.05")

    assert result.exit_code == 3
    job = registry.list_jobs()[-1]
    assert job.status == JobStatus.CANCELLED
    assert job.cancel_reason == "timeout"


def test_duplicate_job_id_exits_4(invoke, registry):
    first = invoke("retrieve", "--mock", "a", "--job-id", "nightly", "-o", invoke.out_dir, "--progress-interval", "0.05")
    assert first.exit_code == 0

    second = invoke("retrieve", "--mock", "b", "--job-id", "nightly", "-o", invoke.out_dir)

    assert second.exit_code == 4
    assert "already exists" in second.output
    assert registry.get_job("nightly").targets == ["a"]


def test_background_returns_job_id_immediately(invoke, registry, monkeypatch):
    spawned = []
    monkeypatch.setattr(worker, "spawn_detached", lambda job_id, db, log: spawned.append(job_id) or 1)

    result = invoke("retrieve", "--mock", "a", "--background", "--job-id", "bg-1")

    assert result.exit_code == 0, result.output
    assert "Job ID: bg-1" in result.output
    assert "retrievectl status bg-1" in result.output
    assert spawned == ["bg-1"]
    assert registry.get_job("bg-1").status == JobStatus.PENDING


def test_background_wait_reports_final_state(invoke, monkeypatch):
    def run_in_thread(job_id, db, log):
        worker.JobRunner(JobRegistry(db)).start_local(job_id)
        return 1

    monkeypatch.setattr(worker, "spawn_detached", run_in_thread)

    result = invoke(
        "retrieve", "--mock", "a", "b", "-b", "-w", "-o", invoke.out_dir, "--progress-interval", "0.05"
    )

    assert result.exit_code == 0, result.output
    assert "Background retrieve started" in result.output
    assert "[100%] completed" in result.output


def test_status_of_unknown_job_exits_4(invoke):
    result = invoke("status", "job_missing")
    assert result.exit_code == 4
    assert "not found" in result.output


def test_status_json_and_exit_code(invoke, registry):
    done = registry.create_job("retrieve", {"targets": ["a"]})
    registry.mark_terminal(done.id, JobStatus.COMPLETED)
    pending = registry.create_job("retrieve", {"targets": ["b"]})

    result = invoke("status", done.id, "--json")
    assert result.exit_code == 0
    assert json.loads(result.output)["status"] == "completed"

    result = invoke("status", pending.id)
    assert result.exit_code == 1
    assert "not yet started" in result.output


def test_status_summary(invoke, registry):
    job = registry.create_job("retrieve", {})
    registry.mark_terminal(job.id, JobStatus.FAILED, error="x")

    result = invoke("status")

    assert result.exit_code == 0
    assert "FAILED: 1" in result.output
    assert "Total Jobs Failed: 1" in result.output


def test_jobs_listing_and_filters(invoke, registry):
    assert "No jobs found." in invoke("jobs").output

    first = registry.create_job("retrieve", {"targets": ["a"]})
    second = registry.create_job("fetch", {"targets": ["b"]})
    registry.mark_terminal(second.id, JobStatus.FAILED, error="boom")

    listing = json.loads(invoke("jobs", "--json").output)
    assert [j["id"] for j in listing] == [first.id, second.id]
    assert listing[1]["error"] == "boom"

    failed = json.loads(invoke("jobs", "--json", "--status", "failed").output)
    assert [j["id"] for j in failed] == [second.id]

    active = invoke("jobs", "--active")
    assert first.id in active.output
    assert second.id not in active.output


def test_jobs_cleanup(invoke, registry):
    job = registry.create_job("retrieve", {})
    registry.mark_terminal(job.id, JobStatus.COMPLETED)

    result = invoke("jobs", "--cleanup", "--max-age", "1")

    assert result.exit_code == 0
    assert "Cleaned up 0 job(s)" in result.output
    assert registry.get_job(job.id) is not None


def test_cancel_exit_codes(invoke, registry):
    job = registry.create_job("retrieve", {"targets": ["a"]})

    result = invoke("cancel", job.id)
    assert result.exit_code == 0
    assert "Cancellation requested" in result.output
    assert registry.get_job(job.id).status == JobStatus.CANCELLED

    again = invoke("cancel", job.id)
    assert again.exit_code == 1
    assert "already cancelled" in again.output

    assert invoke("cancel", "job_missing").exit_code == 4


def test_logs_command(invoke, registry):
    job = registry.create_job("retrieve", {})
    assert "No log recorded" in invoke("logs", job.id).output

    with open(registry.log_path(job.id), "w") as f:
        f.write("worker started\n")

    assert invoke("logs", job.id).output == "worker started\n"
    assert invoke("logs", "job_missing").exit_code == 4


def test_config_set_get_and_validation(invoke):
    assert invoke("config", "set", "chunk-size", "8").exit_code == 0
    assert invoke("config", "get", "chunk-size").output.strip() == "8"

    assert invoke("config", "set", "chunk-size", "0").exit_code == 2
    assert invoke("config", "set", "dispatch", "cron").exit_code == 2
    assert invoke("config", "set", "aggregator-url", "not-a-url").exit_code == 2

    listing = invoke("config", "list").output
    assert "chunk-size = 8" in listing
    assert "aggregator-url = (unset)" in listing


def test_initdb(invoke, db_path):
    result = invoke("initdb")
    assert result.exit_code == 0
    assert db_path in result.output


def test_jobs_lists_every_job_by_default(invoke, registry):
    for _ in range(25):
        registry.create_job("retrieve", {"targets": ["a"]})

    assert len(json.loads(invoke("jobs", "--json").output)) == 25
    assert len(json.loads(invoke("jobs", "--json", "--limit", "5").output)) == 5


def test_cancel_needs_a_target(invoke, registry):
    job = registry.create_job("retrieve", {"targets": ["a"]})

    assert invoke("cancel").exit_code == 2
    assert invoke("cancel", job.id, "--all").exit_code == 2
    assert registry.get_job(job.id).status == JobStatus.PENDING


def test_cancel_all_dry_run_changes_nothing(invoke, registry):
    first = registry.create_job("retrieve", {"targets": ["a"]})
    second = registry.create_job("fetch", {"targets": ["b"]})
    finished = registry.create_job("fetch", {"targets": ["c"]})
    registry.mark_terminal(finished.id, JobStatus.COMPLETED)

    result = invoke("cancel", "--all", "--dry-run")

    assert result.exit_code == 0
    assert "Would cancel 2 job(s)" in result.output
    assert first.id in result.output and second.id in result.output
    assert finished.id not in result.output
    assert registry.get_job(first.id).status == JobStatus.PENDING


def test_cancel_all(invoke, registry):
    jobs = [registry.create_job("retrieve", {"targets": [t]}) for t in ("a", "b")]

    result = invoke("cancel", "--all")

    assert result.exit_code == 0
    assert "Cancelled 2 of 2 job(s)." in result.output
    assert all(registry.get_job(j.id).status == JobStatus.CANCELLED for j in jobs)


def test_cancel_by_pattern_and_command(invoke, registry):
    nightly = registry.create_job("retrieve", {"targets": ["blob-nightly"]}, job_id="nightly-1")
    report = registry.create_job("fetch", {"targets": ["REPORT-7"]})
    other = registry.create_job("fetch", {"targets": ["x"]})

    result = invoke("cancel", "--pattern", "report-*")
    assert result.exit_code == 0
    assert registry.get_job(report.id).status == JobStatus.CANCELLED
    assert registry.get_job(other.id).status == JobStatus.PENDING

    invoke("cancel", "--command", "retrieve")
    assert registry.get_job(nightly.id).status == JobStatus.CANCELLED
    assert registry.get_job(other.id).status == JobStatus.PENDING

    assert "No matching active jobs." in invoke("cancel", "--pattern", "nothing*").output


def test_status_latest(invoke, registry):
    assert invoke("status", "--latest").exit_code == 4

    registry.create_job("retrieve", {"targets": ["a"]})
    newest = registry.create_job("fetch", {"targets": ["b"]})

    result = invoke("status", "--latest")
    assert newest.id in result.output
    assert "fetch b" in result.output


def test_status_follow_until_finished(invoke, registry):
    registry.set_config("mock_delay_ms", "20")
    runner = worker.JobRunner(registry)
    job = runner.submit("retrieve", ["a", "b", "c"], mock=True)
    runner.start_local(job.id)

    result = invoke("status", job.id, "--follow", "--refresh", "0.05")

    assert result.exit_code == 0, result.output
    assert "[100%] completed" in result.output
    assert "COMPLETED" in result.output


def test_status_follow_needs_a_job(invoke):
    assert invoke("status", "--follow").exit_code == 2


def test_completion_during_timeout_grace_is_reported_as_success(invoke, monkeypatch):
    real_wait = worker.JobRunner.wait

    def wait_then_report_timeout(self, job_id, **kwargs):
        kwargs["timeout"] = None
        return worker.WaitResult(real_wait(self, job_id, **kwargs).job, True)

    monkeypatch.setattr(worker.JobRunner, "wait", wait_then_report_timeout)

    result = invoke("retrieve", "--mock", "a", "-o", invoke.out_dir, "--progress-interval", "0.05")

    assert result.exit_code == 0, result.output
    assert "timed out" not in result.output
