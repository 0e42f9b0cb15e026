import subprocess
import sys
import time

import pytest

from db import JobRegistry
from executors import MockExecutor
from retriever import BackgroundDataRetriever


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "jobs.db")


@pytest.fixture
def registry(db_path):
    return JobRegistry(db_path)


@pytest.fixture
def retriever(registry):
    return BackgroundDataRetriever(
        registry,
        mock_executor=MockExecutor(delay=0.01),
        chunk_size=2,
        backoff_base=1.0,
    )


@pytest.fixture
def dead_pid():
    """The pid of a process that has already exited and been reaped."""
    process = subprocess.Popen([sys.executable, "-c", "pass"])
    process.wait()
    return process.pid


def wait_for(predicate, timeout=5.0, interval=0.02):
    """Polls ``predicate`` until it returns a truthy value or ``timeout`` passes."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        value = predicate()
        if value:
            return value
        time.sleep(interval)
    raise AssertionError(f"condition not met within {timeout}s")
