"""
Retrieval executors: perform one unit of work, fetching a single blob by id.

The retriever only talks to the ``RetrievalExecutor`` interface; ``--mock`` swaps
in ``MockExecutor`` instead of the HTTP one.
"""

import threading
import time
from abc import ABC, abstractmethod
from typing import Dict, Optional

import httpx

from cancellation import CancelToken, check_deadline
from errors import ConfigurationError, RetrievalItemFailure, RetrievalTimeout, TransientRetrievalError
from log_config import get_logger

logger = get_logger(__name__)

AGGREGATORS = {
    "testnet": "https://aggregator.walrus-testnet.walrus.space",
    "mainnet": "https://aggregator.walrus-mainnet.walrus.space",
}

# Upper bound for a single HTTP attempt when no deadline is set
REQUEST_TIMEOUT = 60.0
STREAM_CHUNK_SIZE = 64 * 1024


class RetrievalExecutor(ABC):
    @abstractmethod
    def fetch(self, target_id: str, deadline: Optional[float], cancel_token: CancelToken) -> bytes:
        """
        Fetches one item.

        ``deadline`` is a ``time.monotonic()`` value or None. Implementations raise
        RetrievalItemFailure (or TransientRetrievalError) for item errors,
        RetrievalTimeout when the deadline passes, and RetrievalCancelled when the
        token is cancelled mid-flight.
        """

    def close(self) -> None:
        pass


class MockExecutor(RetrievalExecutor):
    """
    Fast, deterministic executor for tests and ``--mock`` runs.

    Target naming drives behaviour:
      - ``bad-*`` / ``fail-*``: always fails
      - ``flaky-*``: fails transiently on the first attempt, then succeeds
      - ``hang-*``: never resolves; only cancellation or the deadline stops it
      - anything else: returns ``b"mock-blob:<target>"`` after ``delay`` seconds
    """

    def __init__(self, delay: float = 0.05):
        self.delay = delay
        self._attempts: Dict[str, int] = {}
        self._lock = threading.Lock()

    def fetch(self, target_id, deadline, cancel_token):
        with self._lock:
            attempt = self._attempts.get(target_id, 0) + 1
            self._attempts[target_id] = attempt

        if target_id.startswith("hang-"):
            while True:
                cancel_token.raise_if_cancelled()
                check_deadline(deadline)
                cancel_token.wait(0.05)

        if self.delay and cancel_token.wait(self._bounded(self.delay, deadline)):
            cancel_token.raise_if_cancelled()
        check_deadline(deadline)

        if target_id.startswith(("bad-", "fail-")):
            raise RetrievalItemFailure(f"Blob {target_id} not found")
        if target_id.startswith("flaky-") and attempt == 1:
            raise TransientRetrievalError(f"Connection reset while fetching {target_id}")
        return f"mock-blob:{target_id}".encode()

    @staticmethod
    def _bounded(delay, deadline):
        if deadline is None:
            return delay
        return max(0.0, min(delay, deadline - time.monotonic()))


class WalrusExecutor(RetrievalExecutor):
    """Downloads blobs from a Walrus aggregator over HTTP."""

    def __init__(self, aggregator_url: str, client: httpx.Client = None):
        if not aggregator_url:
            raise ConfigurationError("An aggregator URL is required for Walrus retrieval")
        self.aggregator_url = aggregator_url.rstrip("/")
        self.client = client or httpx.Client(base_url=self.aggregator_url, follow_redirects=True)

    def fetch(self, target_id, deadline, cancel_token):
        cancel_token.raise_if_cancelled()
        timeout = REQUEST_TIMEOUT
        if deadline is not None:
            timeout = min(timeout, deadline - time.monotonic())
            if timeout <= 0:
                raise RetrievalTimeout(f"Deadline exceeded before fetching {target_id}")

        url = f"/v1/blobs/{target_id}"
        received = bytearray()
        try:
            with self.client.stream("GET", url, timeout=timeout) as response:
                self._check_status(response, target_id)
                for chunk in response.iter_bytes(chunk_size=STREAM_CHUNK_SIZE):
                    received.extend(chunk)
                    cancel_token.raise_if_cancelled()
                    check_deadline(deadline)
        except httpx.TimeoutException as e:
            if deadline is not None and time.monotonic() >= deadline:
                raise RetrievalTimeout(f"Deadline exceeded while fetching {target_id}") from e
            raise TransientRetrievalError(f"Timed out fetching {target_id}: {e}") from e
        except httpx.TransportError as e:
            raise TransientRetrievalError(f"Network error fetching {target_id}: {e}") from e

        logger.debug("blob_fetched", target=target_id, size=len(received))
        return bytes(received)

    @staticmethod
    def _check_status(response: httpx.Response, target_id: str) -> None:
        status = response.status_code
        if status < 400:
            return
        if status == 404:
            raise RetrievalItemFailure(f"Blob {target_id} not found", {"status": status})
        if status == 429 or status >= 500:
            raise TransientRetrievalError(f"Aggregator returned {status} for {target_id}", {"status": status})
        raise RetrievalItemFailure(f"Aggregator returned {status} for {target_id}", {"status": status})

    def close(self):
        self.client.close()


def get_executor(mock: bool, network: str = "testnet", aggregator_url: str = None, mock_delay: float = 0.05):
    if mock:
        return MockExecutor(delay=mock_delay)
    url = aggregator_url or AGGREGATORS.get(network)
    if not url:
        raise ConfigurationError(f"Unknown network '{network}' and no aggregator-url configured")
    return WalrusExecutor(url)
