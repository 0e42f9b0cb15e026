import os
import signal
import subprocess
import sys
import threading
import time
from collections import namedtuple
from typing import Callable, List, Optional

from db import JobRegistry
from errors import JobNotFoundError
from executors import MockExecutor, get_executor
from log_config import get_logger, setup_logging
from models import Job, JobStatus, JobStatusSnapshot
from retriever import BackgroundDataRetriever, Sink

logger = get_logger(__name__)

CLI_SCRIPT = os.path.join(os.path.dirname(os.path.abspath(__file__)), "retrievectl.py")

# Seconds an idle pool worker sleeps before looking for work again
POLL_INTERVAL = 2

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CANCELLED = 2
EXIT_TIMEOUT = 3

WaitResult = namedtuple("WaitResult", ["job", "timed_out"])


def exit_code_for(result: WaitResult) -> int:
    """
    Maps the final job state to an exit code. The recorded state wins over the
    wait outcome, so a job that completed during the timeout grace period exits 0.
    """
    job = result.job
    if job.status == JobStatus.COMPLETED:
        return EXIT_OK
    if job.status == JobStatus.FAILED:
        return EXIT_FAILED
    if job.status == JobStatus.CANCELLED:
        return EXIT_TIMEOUT if job.cancel_reason == "timeout" else EXIT_CANCELLED
    return EXIT_TIMEOUT if result.timed_out else EXIT_FAILED


class FileSink:
    """Writes each fetched blob to ``<output_dir>/<target>``."""

    def __init__(self, output_dir: str):
        self.output_dir = output_dir

    def __call__(self, target: str, data: bytes) -> None:
        if os.path.basename(target) != target or target in (".", ".."):
            raise OSError(f"Refusing to write blob with unsafe name '{target}'")
        os.makedirs(self.output_dir, exist_ok=True)
        with open(os.path.join(self.output_dir, target), "wb") as f:
            f.write(data)


class JobRunner:
    """
    Bridges a CLI command to the background machinery: creates the job, starts it
    (in a detached process, a worker pool or the current process) and optionally
    waits for it.
    """

    def __init__(self, registry: JobRegistry):
        self.registry = registry

    def submit(
        self,
        command: str,
        targets: List[str],
        job_id: str = None,
        timeout: float = None,
        chunk_size: int = None,
        mock: bool = False,
        network: str = "testnet",
        output_dir: str = None,
    ) -> Job:
        if not targets:
            raise ValueError("At least one target is required")
        args = {
            "targets": list(targets),
            "timeout": timeout,
            "chunk_size": chunk_size,
            "mock": mock,
            "network": network,
            "output_dir": output_dir,
        }
        return self.registry.create_job(command, args, job_id=job_id)

    def build_retriever(self, job: Job, sink: Sink = None) -> BackgroundDataRetriever:
        registry = self.registry
        mock_delay = registry.get_config_number("mock_delay_ms") / 1000.0
        executor = None
        if not job.args.get("mock"):
            executor = get_executor(
                mock=False,
                network=job.args.get("network") or "testnet",
                aggregator_url=registry.get_config("aggregator_url"),
            )
        output_dir = job.args.get("output_dir")
        if sink is None and output_dir:
            sink = FileSink(output_dir)
        return BackgroundDataRetriever(
            registry,
            executor=executor,
            mock_executor=MockExecutor(delay=mock_delay),
            sink=sink,
            chunk_size=int(registry.get_config_number("chunk_size")),
            max_retries=int(registry.get_config_number("max_retries")),
            backoff_base=registry.get_config_number("backoff_base"),
        )

    def run_job(self, job_id: str, sink: Sink = None, claimed: bool = False) -> Job:
        """
        Claims ``job_id`` for this process and runs it to a terminal state.

        Returns the job unchanged if another worker already claimed it or it was
        cancelled before it could start. Pass ``claimed=True`` when the caller
        already holds the claim.
        """
        job = self.registry.get_job(job_id)
        if job is None:
            raise JobNotFoundError(f"Job '{job_id}' not found", {"job_id": job_id})
        if not claimed and not self.registry.claim_job(job_id, os.getpid()):
            logger.info("job_not_claimed", job_id=job_id, status=job.status.value)
            return self.registry.get_job(job_id)

        try:
            retriever = self.build_retriever(job, sink=sink)
        except Exception as e:
            self.registry.mark_terminal(job_id, JobStatus.FAILED, error=f"{type(e).__name__}: {e}")
            raise

        targets = job.targets
        timeout = job.args.get("timeout")
        mock = bool(job.args.get("mock"))
        try:
            if len(targets) == 1:
                operation_id = retriever.retrieve_single(
                    targets[0], timeout=timeout, mock=mock, job_id=job_id, command=job.command
                )
            else:
                operation_id = retriever.retrieve_batch(
                    targets,
                    timeout=timeout,
                    chunk_size=job.args.get("chunk_size"),
                    mock=mock,
                    job_id=job_id,
                    command=job.command,
                )
            retriever.wait(operation_id)
        except Exception as e:
            self.registry.mark_terminal(job_id, JobStatus.FAILED, error=f"{type(e).__name__}: {e}")
            raise
        finally:
            if retriever.executor is not None:
                retriever.executor.close()
        return self.registry.get_job(job_id)

    def start_local(self, job_id: str, sink: Sink = None) -> threading.Thread:
        """Runs the job on a thread of the current process (foreground commands)."""
        thread = threading.Thread(
            target=self._run_logged, args=(job_id, sink), name=f"job-{job_id}", daemon=True
        )
        thread.start()
        return thread

    def _run_logged(self, job_id, sink):
        try:
            self.run_job(job_id, sink=sink)
        except Exception as e:
            logger.error("job_run_failed", job_id=job_id, error=str(e))

    def dispatch(self, job_id: str) -> Optional[int]:
        """
        Hands a submitted job to a background host.

        With ``dispatch = spawn`` a detached worker process is launched and its pid
        returned; with ``dispatch = worker`` the job stays pending for the pool.
        """
        if self.registry.get_config("dispatch") == "worker":
            logger.info("job_queued_for_pool", job_id=job_id)
            return None
        return spawn_detached(job_id, self.registry.db_path, self.registry.log_path(job_id))

    def wait(
        self,
        job_id: str,
        timeout: float = None,
        interval: float = 1.0,
        on_progress: Callable[[JobStatusSnapshot], None] = None,
        grace: float = 5.0,
    ) -> WaitResult:
        """
        Polls the job until it is terminal or ``timeout`` seconds pass.

        On timeout the job is cancelled and given ``grace`` seconds to settle. A job
        whose owning process has died is finished as failed (or cancelled) instead
        of being waited on forever.
        """
        deadline = time.monotonic() + timeout if timeout else None
        last = None
        while True:
            job = self.registry.get_job(job_id)
            if job is None:
                raise JobNotFoundError(f"Job '{job_id}' not found", {"job_id": job_id})
            if job.pid is not None and not job.status.is_terminal and self.registry.reap_orphans([job_id]):
                job = self.registry.get_job(job_id)
            snapshot = job.snapshot()
            if on_progress is not None and snapshot != last:
                on_progress(snapshot)
                last = snapshot
            if job.status.is_terminal:
                return WaitResult(job, False)

            now = time.monotonic()
            if deadline is not None and now >= deadline:
                logger.warning("job_wait_timeout", job_id=job_id, timeout=timeout)
                self.registry.cancel_job(job_id, reason="timeout")
                return WaitResult(self.settle(job_id, grace, interval, on_progress, last), True)

            sleep_for = interval if deadline is None else min(interval, deadline - now)
            time.sleep(max(0.01, sleep_for))

    def settle(self, job_id, grace=5.0, interval=0.2, on_progress=None, last=None) -> Job:
        """Polls for up to ``grace`` seconds for a job that was asked to stop."""
        end = time.monotonic() + grace
        while True:
            job = self.registry.get_job(job_id)
            snapshot = job.snapshot()
            if on_progress is not None and snapshot != last:
                on_progress(snapshot)
                last = snapshot
            if job.status.is_terminal or time.monotonic() >= end:
                return job
            time.sleep(min(interval, 0.2))


def spawn_detached(job_id: str, db_path: str, log_path: str) -> int:
    """Starts ``retrievectl worker run-job`` in its own session so it outlives the caller."""
    cmd = [sys.executable, CLI_SCRIPT, "worker", "run-job", job_id]
    env = dict(os.environ, RETRIEVECTL_DB=os.path.abspath(db_path))
    with open(log_path, "ab") as log:
        process = subprocess.Popen(
            cmd,
            stdin=subprocess.DEVNULL,
            stdout=log,
            stderr=subprocess.STDOUT,
            env=env,
            start_new_session=True,
            close_fds=True,
        )
    logger.info("worker_spawned", job_id=job_id, pid=process.pid)
    return process.pid


def run_worker_process(worker_id, db_path=None, log_level=None):
    """
    Entry point for a single pool worker process.
    It handles its own lifecycle and signal handling.
    """
    setup_logging(log_level or "INFO")
    w = Worker(worker_id, JobRegistry(db_path))

    def shutdown(sig, frame):
        logger.info("worker_signal", worker_id=w.id, signal=sig)
        w.stop()

    signal.signal(signal.SIGINT, shutdown)
    signal.signal(signal.SIGTERM, shutdown)

    try:
        w.run()
    except Exception as e:
        logger.error("worker_crashed", worker_id=w.id, error=str(e))
    finally:
        logger.info("worker_stopped", worker_id=w.id)


class Worker:
    """Pool worker: claims pending jobs one at a time and runs them to completion."""

    def __init__(self, id, registry: JobRegistry):
        self.id = id
        self.registry = registry
        self.runner = JobRunner(registry)
        self.running = True
        logger.info("worker_starting", worker_id=self.id)

    def stop(self):
        """Stops the worker loop after the current job."""
        self.running = False

    def run(self):
        """The main worker loop."""
        while self.running:
            job_id = self.registry.claim_next(os.getpid())
            if job_id:
                logger.info("worker_processing", worker_id=self.id, job_id=job_id)
                try:
                    job = self.runner.run_job(job_id, claimed=True)
                except Exception as e:
                    # run_job already recorded the failure on the job
                    logger.error("worker_job_error", worker_id=self.id, job_id=job_id, error=str(e))
                    continue
                logger.info("worker_job_done", worker_id=self.id, job_id=job_id, status=job.status.value)
            else:
                time.sleep(POLL_INTERVAL)
