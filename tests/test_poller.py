"""
Unit tests for the operation poller.

Covers terminal outcomes, transient status-fetch retries, deadline handling
and prompt cancellation.
"""

import random
import threading
import time
from unittest.mock import MagicMock

from redis_clusterctl.errors import (
    AuthFailure,
    OperationTimeout,
    PollFailed,
    RemoteRejected,
    TransportError,
)
from redis_clusterctl.models import OperationHandle, Outcome
from redis_clusterctl.poller import OperationPoller, deadline_after

HANDLE = OperationHandle(operation_id="op-1", description="update cluster")


def pending(operation_id: str = "op-1") -> dict:
    return {"id": operation_id, "done": False}


def make_poller(client, interval_s: float = 0.001, **kwargs) -> OperationPoller:
    params = {
        "interval_s": interval_s,
        "jitter_s": 0.001,
        "max_retries": 3,
        "backoff_s": 0.001,
        "backoff_max_s": 0.002,
        "rng": random.Random(7),
    }
    params.update(kwargs)
    return OperationPoller(client, **params)


class TestTerminalOutcomes:
    """Test cases for operations that reach done."""

    def test_succeeds_after_several_polls(self):
        """Test that the poller keeps polling until the operation is done."""
        client = MagicMock()
        client.get_operation.side_effect = [
            pending(),
            pending(),
            {
                "id": "op-1",
                "done": True,
                "response": {"id": "cluster-1"},
                "metadata": {"clusterId": "cluster-1"},
            },
        ]

        result = make_poller(client).await_operation(HANDLE)

        assert result.outcome is Outcome.SUCCEEDED
        assert result.succeeded
        assert result.polls == 3
        assert result.response == {"id": "cluster-1"}
        assert result.metadata == {"clusterId": "cluster-1"}
        assert result.error is None

    def test_remote_error_is_failed(self):
        """Test that done with an error payload is a FAILED outcome."""
        client = MagicMock()
        client.get_operation.return_value = {
            "id": "op-1",
            "done": True,
            "error": {"code": 9, "message": "Quota exceeded"},
        }

        result = make_poller(client).await_operation(HANDLE)

        assert result.outcome is Outcome.FAILED
        assert isinstance(result.error, RemoteRejected)
        assert result.error.code == 9
        assert "Quota exceeded" in str(result.error)


class TestDeadline:
    """Test cases for operations that never finish."""

    def test_timeout_never_early_and_bounded(self):
        """Test that TIMEOUT arrives at or after the deadline, within one tick."""
        client = MagicMock()
        client.get_operation.return_value = pending()
        interval_s = 0.02
        poller = make_poller(client, interval_s=interval_s, jitter_s=0.0)

        started = time.monotonic()
        deadline = started + 0.1
        result = poller.await_operation(HANDLE, deadline=deadline)
        finished = time.monotonic()

        assert result.outcome is Outcome.TIMEOUT
        assert isinstance(result.error, OperationTimeout)
        assert finished >= deadline
        # Generous slack for slow CI machines
        assert finished - deadline < interval_s + 0.5

    def test_expired_deadline_polls_once(self):
        """Test that an already expired deadline still checks status once."""
        client = MagicMock()
        client.get_operation.return_value = pending()

        result = make_poller(client).await_operation(
            HANDLE, deadline=time.monotonic() - 1
        )

        assert result.outcome is Outcome.TIMEOUT
        assert client.get_operation.call_count == 1

    def test_long_interval_capped_by_deadline(self):
        """Test that the wait never overshoots the deadline by a full interval."""
        client = MagicMock()
        client.get_operation.return_value = pending()
        poller = make_poller(client, interval_s=30.0, jitter_s=0.0)

        started = time.monotonic()
        result = poller.await_operation(HANDLE, deadline=deadline_after(0.05))

        assert result.outcome is Outcome.TIMEOUT
        assert time.monotonic() - started < 5.0

    def test_deadline_after(self):
        """Test relative-to-absolute deadline conversion."""
        assert deadline_after(None) is None
        before = time.monotonic()
        deadline = deadline_after(10)
        assert before + 10 <= deadline <= time.monotonic() + 10


class TestTransientErrors:
    """Test cases for status-fetch failures."""

    def test_transient_errors_are_retried(self):
        """Test that transport blips below the retry budget are absorbed."""
        client = MagicMock()
        client.get_operation.side_effect = [
            TransportError("reset"),
            TransportError("reset"),
            {"id": "op-1", "done": True},
        ]

        result = make_poller(client).await_operation(HANDLE)

        assert result.outcome is Outcome.SUCCEEDED
        assert client.get_operation.call_count == 3

    def test_exhausted_retries_are_poll_failed(self):
        """Test that too many consecutive blips escalate to POLL_FAILED."""
        client = MagicMock()
        client.get_operation.side_effect = TransportError("unreachable")

        result = make_poller(client, max_retries=2).await_operation(HANDLE)

        assert result.outcome is Outcome.POLL_FAILED
        assert isinstance(result.error, PollFailed)
        # One initial attempt plus two retries
        assert client.get_operation.call_count == 3

    def test_retry_budget_resets_after_success(self):
        """Test that only consecutive failures count towards the budget."""
        client = MagicMock()
        client.get_operation.side_effect = [
            TransportError("reset"),
            TransportError("reset"),
            pending(),
            TransportError("reset"),
            TransportError("reset"),
            {"id": "op-1", "done": True},
        ]

        result = make_poller(client, max_retries=2).await_operation(HANDLE)

        assert result.outcome is Outcome.SUCCEEDED

    def test_status_rejection_is_poll_failed(self):
        """Test that a refused status fetch is reported, not raised."""
        client = MagicMock()
        client.get_operation.side_effect = RemoteRejected("not found", code=5)

        result = make_poller(client).await_operation(HANDLE)

        assert result.outcome is Outcome.POLL_FAILED
        assert isinstance(result.error, PollFailed)

    def test_auth_failure_is_failed(self):
        """Test that a credential failure while polling is a FAILED outcome."""
        client = MagicMock()
        client.get_operation.side_effect = AuthFailure("token expired")

        result = make_poller(client).await_operation(HANDLE)

        assert result.outcome is Outcome.FAILED
        assert isinstance(result.error, AuthFailure)
        assert client.get_operation.call_count == 1

    def test_retries_stop_at_deadline(self):
        """Test that backoff between blips never runs past the deadline."""
        client = MagicMock()
        client.get_operation.side_effect = TransportError("reset")
        poller = make_poller(
            client, max_retries=1000, backoff_s=0.01, backoff_max_s=0.01
        )

        started = time.monotonic()
        result = poller.await_operation(HANDLE, deadline=deadline_after(0.05))

        assert result.outcome is Outcome.TIMEOUT
        assert isinstance(result.error, OperationTimeout)
        assert time.monotonic() - started < 5.0

    def test_cancel_interrupts_backoff(self):
        """Test that cancelling during a retry backoff returns CANCELLED."""
        client = MagicMock()
        client.get_operation.side_effect = TransportError("reset")
        poller = make_poller(
            client, max_retries=5, backoff_s=30.0, backoff_max_s=30.0
        )
        cancel_event = threading.Event()
        timer = threading.Timer(0.05, cancel_event.set)

        started = time.monotonic()
        timer.start()
        try:
            result = poller.await_operation(HANDLE, cancel_event=cancel_event)
        finally:
            timer.cancel()

        assert result.outcome is Outcome.CANCELLED
        assert time.monotonic() - started < 5.0

    def test_fake_control_plane_transient_errors(self, control_plane, fast_poller):
        """Test retries against the in-memory control plane."""
        operation = control_plane.delete_cluster("cluster-missing")
        control_plane.transient_status_errors = 2

        result = fast_poller.await_operation(OperationHandle.from_api(operation))

        assert result.outcome is Outcome.SUCCEEDED
        assert control_plane.calls["get_operation"] == 3


class TestCancellation:
    """Test cases for caller cancellation."""

    def test_cancel_unblocks_wait_promptly(self):
        """Test that setting the event interrupts a long poll interval."""
        client = MagicMock()
        client.get_operation.return_value = pending()
        poller = make_poller(client, interval_s=30.0, jitter_s=0.0)
        cancel_event = threading.Event()
        timer = threading.Timer(0.05, cancel_event.set)

        started = time.monotonic()
        timer.start()
        try:
            result = poller.await_operation(HANDLE, cancel_event=cancel_event)
        finally:
            timer.cancel()

        assert result.outcome is Outcome.CANCELLED
        assert time.monotonic() - started < 5.0
        assert client.get_operation.call_count == 1

    def test_already_cancelled_issues_no_poll(self):
        """Test that a pre-set event returns before fetching status."""
        client = MagicMock()
        cancel_event = threading.Event()
        cancel_event.set()

        result = make_poller(client).await_operation(
            HANDLE, cancel_event=cancel_event
        )

        assert result.outcome is Outcome.CANCELLED
        assert result.polls == 0
        client.get_operation.assert_not_called()
