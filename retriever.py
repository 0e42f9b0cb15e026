"""
Background data retriever: runs one retrieval operation (a single blob or a
chunked batch) on its own thread and mirrors its progress into the job registry.
"""

import dataclasses
import threading
import time
import uuid
from collections import namedtuple
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Callable, Dict, List, Optional, Sequence

from cancellation import Watchdog
from db import JobRegistry
from errors import (
    RetrievalCancelled,
    RetrievalItemFailure,
    RetrievalOperationFailure,
    RetrievalTimeout,
    TransientRetrievalError,
)
from executors import MockExecutor, RetrievalExecutor
from log_config import get_logger
from models import JobStatus, Phase, RetrievalOperation

logger = get_logger(__name__)

ItemResult = namedtuple("ItemResult", ["target", "data", "error"])

# Called with (target, data) for every successfully fetched item
Sink = Callable[[str, bytes], None]

# Retry backoff is backoff_base ** attempt * RETRY_DELAY_UNIT seconds
RETRY_DELAY_UNIT = 0.1


class _Stopped(Exception):
    """Internal: the operation observed cancellation or its deadline."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class _Run:
    """Per-operation execution state that never leaves the retriever."""

    def __init__(self, op, targets, executor, token, timeout, sink):
        self.op = op
        self.targets = targets
        self.executor = executor
        self.token = token
        self.timeout = timeout
        self.sink = sink
        self.deadline = time.monotonic() + timeout if timeout else None
        self.started = time.monotonic()
        self.thread: Optional[threading.Thread] = None
        self.done = threading.Event()


class BackgroundDataRetriever:
    """
    Owns the retrieval state machine for each operation it starts.

    Phases advance queued -> downloading -> processing -> complete, or end in
    failed / cancelled. Chunks run in order; items inside a chunk run concurrently
    and each finished item bumps ``completed_items``.
    """

    def __init__(
        self,
        registry: JobRegistry,
        executor: RetrievalExecutor = None,
        mock_executor: RetrievalExecutor = None,
        sink: Sink = None,
        chunk_size: int = 5,
        max_retries: int = 3,
        backoff_base: float = 2.0,
    ):
        self.registry = registry
        self.executor = executor
        self.mock_executor = mock_executor or MockExecutor()
        self.sink = sink
        self.chunk_size = chunk_size
        self.max_retries = max_retries
        self.backoff_base = backoff_base
        self._runs: Dict[str, _Run] = {}
        self._lock = threading.Lock()

    # --- public operations ---

    def retrieve_single(
        self,
        target_id: str,
        timeout: float = None,
        mock: bool = False,
        job_id: str = None,
        command: str = "retrieve",
    ) -> str:
        """Starts fetching one item and returns its operation id immediately."""
        return self._submit([target_id], timeout=timeout, chunk_size=1, mock=mock, job_id=job_id, command=command)

    def retrieve_batch(
        self,
        items: Sequence[str],
        timeout: float = None,
        chunk_size: int = None,
        mock: bool = False,
        job_id: str = None,
        command: str = "retrieve",
    ) -> str:
        """Starts fetching ``items`` in ordered chunks and returns the operation id."""
        if not items:
            raise ValueError("A batch needs at least one item")
        chunk_size = chunk_size or self.chunk_size
        if chunk_size < 1:
            raise ValueError("chunk_size must be at least 1")
        return self._submit(list(items), timeout=timeout, chunk_size=chunk_size, mock=mock, job_id=job_id, command=command)

    def get_retrieval_status(self, operation_id: str) -> Optional[RetrievalOperation]:
        with self._lock:
            run = self._runs.get(operation_id)
            if run is None:
                return None
            return dataclasses.replace(run.op, errors=list(run.op.errors))

    def cancel_retrieval(self, operation_id: str) -> bool:
        """
        Requests cancellation. Returns False for unknown or already finished
        operations. An accepted request can still lose the race against an operation
        that finishes its last item first; the operation then stays complete.
        """
        with self._lock:
            run = self._runs.get(operation_id)
            if run is None or run.op.phase.is_terminal:
                return False
            job_id = run.op.job_id
        run.token.cancel("user")
        self.registry.cancel_job(job_id)
        return True

    def job_id_for(self, operation_id: str) -> Optional[str]:
        with self._lock:
            run = self._runs.get(operation_id)
            return run.op.job_id if run else None

    def wait(self, operation_id: str, timeout: float = None) -> Optional[RetrievalOperation]:
        """Blocks until the operation is terminal (or ``timeout``) and returns its state."""
        with self._lock:
            run = self._runs.get(operation_id)
        if run is None:
            return None
        run.done.wait(timeout)
        return self.get_retrieval_status(operation_id)

    # --- execution ---

    def _submit(self, targets, timeout, chunk_size, mock, job_id, command) -> str:
        executor = self.mock_executor if mock else self.executor
        if executor is None:
            raise RetrievalOperationFailure("No retrieval executor configured")

        if job_id is None:
            job = self.registry.create_job(
                command,
                {"targets": targets, "timeout": timeout, "chunk_size": chunk_size, "mock": mock},
            )
            job_id = job.id

        op = RetrievalOperation(
            operation_id=str(uuid.uuid4()),
            job_id=job_id,
            phase=Phase.QUEUED,
            total_items=len(targets),
            chunk_size=chunk_size,
        )
        token = self.registry.new_token(job_id)
        run = _Run(op, targets, executor, token, timeout, self.sink)
        with self._lock:
            self._runs[op.operation_id] = run

        logger.info(
            "retrieval_started",
            operation_id=op.operation_id,
            job_id=job_id,
            total_items=op.total_items,
            chunk_size=chunk_size,
        )
        run.thread = threading.Thread(
            target=self._execute, args=(run,), name=f"retrieval-{op.operation_id[:8]}", daemon=True
        )
        run.thread.start()
        return op.operation_id

    def _execute(self, run: _Run) -> None:
        op = run.op
        watchdog = None
        if run.timeout:
            watchdog = Watchdog(run.timeout, lambda: self._on_deadline(run)).start()
        try:
            if not self.registry.update_progress(op.job_id, 0, op.phase_info()):
                # Cancelled (or otherwise finished) before it ever started
                job = self.registry.get_job(op.job_id)
                reason = job.cancel_reason if job else None
                self._set_phase(run, Phase.CANCELLED, cancel_reason=reason or "user")
                return
            self._run_chunks(run)
            self._finish(run)
        except _Stopped as stop:
            self._set_phase(run, Phase.CANCELLED, cancel_reason=stop.reason)
            self.registry.mark_terminal(
                op.job_id,
                JobStatus.CANCELLED,
                result=self._summary(run),
                phase_info=op.phase_info(),
                cancel_reason=stop.reason,
            )
            logger.info("retrieval_cancelled", operation_id=op.operation_id, job_id=op.job_id, reason=stop.reason)
        except Exception as e:
            message = e.message if isinstance(e, RetrievalOperationFailure) else f"{type(e).__name__}: {e}"
            self._set_phase(run, Phase.FAILED)
            self.registry.mark_terminal(
                op.job_id,
                JobStatus.FAILED,
                error=message,
                result=self._summary(run),
                phase_info=op.phase_info(),
            )
            logger.error("retrieval_failed", operation_id=op.operation_id, job_id=op.job_id, error=message)
        finally:
            if watchdog is not None:
                watchdog.stop()
            self.registry.release_token(op.job_id)
            run.done.set()

    def _run_chunks(self, run: _Run) -> None:
        for index, chunk in enumerate(chunked(run.targets, run.op.chunk_size), start=1):
            self._check_stop(run)
            if run.op.phase == Phase.QUEUED:
                self._set_phase(run, Phase.DOWNLOADING)
                self._publish(run)

            stop = None
            fatal = None
            with ThreadPoolExecutor(max_workers=len(chunk), thread_name_prefix="item") as pool:
                futures = [pool.submit(self._fetch_item, run, target) for target in chunk]
                for future in as_completed(futures):
                    try:
                        result = future.result()
                    except _Stopped as e:
                        stop = stop or e
                        continue
                    except Exception as e:
                        if fatal is None:
                            fatal = e
                            # stop the rest of the chunk
                            run.token.cancel("fatal")
                        continue
                    self._record(run, result)
            if fatal is not None:
                raise fatal
            if stop is not None:
                raise stop

            logger.debug(
                "chunk_complete",
                operation_id=run.op.operation_id,
                chunk=index,
                completed=run.op.completed_items,
                total=run.op.total_items,
            )

    def _fetch_item(self, run: _Run, target: str) -> ItemResult:
        attempt = 0
        while True:
            self._check_stop(run)
            try:
                data = run.executor.fetch(target, run.deadline, run.token)
                if run.sink is not None:
                    run.sink(target, data)
                return ItemResult(target, data, None)
            except RetrievalCancelled:
                raise _Stopped(run.token.reason or "user")
            except RetrievalTimeout:
                run.token.cancel("timeout")
                raise _Stopped("timeout")
            except TransientRetrievalError as e:
                if attempt >= self.max_retries:
                    return ItemResult(target, None, e.message)
                attempt += 1
                delay = (self.backoff_base ** attempt) * RETRY_DELAY_UNIT
                logger.warning("item_retry", target=target, attempt=attempt, delay=delay, error=e.message)
                if run.token.wait(delay):
                    raise _Stopped(run.token.reason or "user")
            except RetrievalOperationFailure:
                raise
            except RetrievalItemFailure as e:
                return ItemResult(target, None, e.message)
            except OSError as e:
                # Sink failures (disk full, permissions) only lose this item
                return ItemResult(target, None, f"{type(e).__name__}: {e}")

    def _record(self, run: _Run, result: ItemResult) -> None:
        with self._lock:
            op = run.op
            op.completed_items += 1
            if result.error is None:
                op.bytes_transferred += len(result.data)
            else:
                op.failed_items += 1
                op.errors.append(f"{result.target}: {result.error}")
            progress = op.progress
            info = op.phase_info()
        if result.error is not None:
            logger.warning("item_failed", operation_id=op.operation_id, target=result.target, error=result.error)
        self.registry.update_progress(op.job_id, progress, info)

    def _finish(self, run: _Run) -> None:
        op = run.op
        self._set_phase(run, Phase.PROCESSING)
        self._publish(run)

        if op.failed_items == op.total_items:
            raise RetrievalOperationFailure(
                f"All {op.total_items} item(s) failed: {op.errors[0]}",
                {"errors": list(op.errors)},
            )

        # A cancel that arrives after the last item finished has no effect
        self._set_phase(run, Phase.COMPLETE)
        applied = self.registry.mark_terminal(
            op.job_id, JobStatus.COMPLETED, result=self._summary(run), phase_info=op.phase_info()
        )
        if not applied:
            logger.warning("job_already_terminal", operation_id=op.operation_id, job_id=op.job_id)
        logger.info(
            "retrieval_complete",
            operation_id=op.operation_id,
            job_id=op.job_id,
            successful=op.total_items - op.failed_items,
            failed=op.failed_items,
        )

    # --- helpers ---

    def _check_stop(self, run: _Run) -> None:
        if run.token.cancelled:
            raise _Stopped(run.token.reason or "user")
        if run.deadline is not None and time.monotonic() >= run.deadline:
            run.token.cancel("timeout")
            raise _Stopped("timeout")

    def _on_deadline(self, run: _Run) -> None:
        if run.op.phase.is_terminal:
            return
        logger.warning("retrieval_deadline_exceeded", operation_id=run.op.operation_id, timeout=run.timeout)
        run.token.cancel("timeout")
        self.registry.cancel_job(run.op.job_id, reason="timeout")

    def _set_phase(self, run: _Run, phase: Phase, cancel_reason: str = None) -> None:
        with self._lock:
            if run.op.phase.is_terminal:
                return
            run.op.phase = phase
            if cancel_reason:
                run.op.cancel_reason = cancel_reason

    def _publish(self, run: _Run) -> None:
        with self._lock:
            progress = run.op.progress
            info = run.op.phase_info()
        self.registry.update_progress(run.op.job_id, progress, info)

    def _summary(self, run: _Run) -> dict:
        with self._lock:
            op = run.op
            return {
                "operation_id": op.operation_id,
                "total_items": op.total_items,
                "successful_items": op.completed_items - op.failed_items,
                "failed_items": op.failed_items,
                "bytes_transferred": op.bytes_transferred,
                "chunks": -(-op.total_items // op.chunk_size),
                "duration": round(time.monotonic() - run.started, 3),
                "errors": list(op.errors),
            }


def chunked(items: List[str], size: int) -> List[List[str]]:
    return [items[i:i + size] for i in range(0, len(items), size)]
