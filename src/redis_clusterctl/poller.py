"""
Operation poller for redis-clusterctl

Drives a single long-running remote operation to a terminal state by polling
its status until it is done, the deadline elapses or the caller cancels.
"""

import random
import threading
import time

from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    stop_when_event_set,
    wait_exponential,
)
from tenacity.stop import stop_base

from .client import ControlPlaneClient
from .constants import (
    DEFAULT_POLL_BACKOFF_MAX_S,
    DEFAULT_POLL_BACKOFF_S,
    DEFAULT_POLL_INTERVAL_S,
    DEFAULT_POLL_JITTER_S,
    DEFAULT_POLL_MAX_RETRIES,
)
from .errors import (
    AuthFailure,
    OperationTimeout,
    PollFailed,
    RemoteRejected,
    TransportError,
)
from .log import get_logger
from .models import OperationHandle, OperationResult, OperationStatus, Outcome

logger = get_logger(__name__)


def deadline_after(timeout_s: float | None) -> float | None:
    """Absolute monotonic deadline for a relative timeout"""
    if timeout_s is None:
        return None
    return time.monotonic() + timeout_s


class stop_at_deadline(stop_base):
    """Stop retrying once an absolute time.monotonic() deadline has passed"""

    def __init__(self, deadline: float | None):
        self.deadline = deadline

    def __call__(self, retry_state: RetryCallState) -> bool:
        return self.deadline is not None and time.monotonic() >= self.deadline


class OperationPoller:
    """
    Polls operation status at a fixed interval with bounded jitter

    Each status fetch is retried with tenacity on TransportError, backing off
    exponentially, up to max_retries times before the poll is reported as
    POLL_FAILED. Waiting happens on the cancellation event, so setting it
    unblocks the poller immediately.
    """

    def __init__(
        self,
        client: ControlPlaneClient,
        interval_s: float = DEFAULT_POLL_INTERVAL_S,
        jitter_s: float = DEFAULT_POLL_JITTER_S,
        max_retries: int = DEFAULT_POLL_MAX_RETRIES,
        backoff_s: float = DEFAULT_POLL_BACKOFF_S,
        backoff_max_s: float = DEFAULT_POLL_BACKOFF_MAX_S,
        rng: random.Random | None = None,
    ):
        self.client = client
        self.interval_s = interval_s
        self.jitter_s = jitter_s
        self.max_retries = max_retries
        self.backoff_s = backoff_s
        self.backoff_max_s = backoff_max_s
        self._rng = rng or random.Random()

    def await_operation(
        self,
        handle: OperationHandle,
        deadline: float | None = None,
        cancel_event: threading.Event | None = None,
    ) -> OperationResult:
        """
        Block until the operation reaches a terminal state

        Args:
            handle: Handle returned when the operation was submitted
            deadline: Absolute time.monotonic() deadline, None to wait forever
            cancel_event: Set by the caller to stop waiting

        Returns:
            OperationResult with outcome SUCCEEDED, FAILED, TIMEOUT,
            POLL_FAILED or CANCELLED. Cancelling or timing out does not stop
            the remote operation.
        """
        cancel_event = cancel_event or threading.Event()
        started = time.monotonic()
        polls = 0

        def result(outcome: Outcome, **kwargs) -> OperationResult:
            return OperationResult(
                handle=handle,
                outcome=outcome,
                polls=polls,
                elapsed_s=time.monotonic() - started,
                **kwargs,
            )

        while True:
            if cancel_event.is_set():
                logger.warning(
                    "Operation wait cancelled",
                    extra={"operation_id": handle.operation_id, "polls": polls},
                )
                return result(Outcome.CANCELLED)

            try:
                status = self._fetch_status(handle, deadline, cancel_event)
            except PollFailed as e:
                logger.error(
                    "Giving up on operation status",
                    extra={"operation_id": handle.operation_id, "error": str(e)},
                )
                return result(Outcome.POLL_FAILED, error=e)
            except TransportError:
                # Retrying stopped early on cancellation or the deadline
                if cancel_event.is_set():
                    continue
                return self._timeout(handle, result)
            except RemoteRejected as e:
                logger.error(
                    "Control plane refused operation status",
                    extra={"operation_id": handle.operation_id, "error": str(e)},
                )
                return result(Outcome.POLL_FAILED, error=PollFailed(str(e)))
            except AuthFailure as e:
                logger.error(
                    "No credentials to fetch operation status",
                    extra={"operation_id": handle.operation_id, "error": str(e)},
                )
                return result(Outcome.FAILED, error=e)

            polls += 1
            logger.trace(
                "Polled operation",
                extra={"operation_id": handle.operation_id, "done": status.done},
            )

            if status.done:
                if status.error:
                    return result(
                        Outcome.FAILED,
                        error=RemoteRejected(
                            status.error.get("message", "operation failed"),
                            code=status.error.get("code"),
                        ),
                        metadata=status.metadata,
                    )
                return result(
                    Outcome.SUCCEEDED,
                    response=status.response,
                    metadata=status.metadata,
                )

            if self._expired(deadline):
                return self._timeout(handle, result)

            delay = self.interval_s + self._rng.uniform(0, self.jitter_s)
            self._wait(delay, deadline, cancel_event)

    def _fetch_status(
        self,
        handle: OperationHandle,
        deadline: float | None,
        cancel_event: threading.Event,
    ) -> OperationStatus:
        """
        Fetch operation status, retrying transient transport errors

        Raises:
            PollFailed: max_retries consecutive retries all failed
            TransportError: Retrying stopped on cancellation or the deadline
        """
        attempts = 0

        def fetch():
            nonlocal attempts
            attempts += 1
            return self.client.get_operation(handle.operation_id)

        def log_retry(retry_state: RetryCallState) -> None:
            logger.debug(
                "Transient error fetching operation status",
                extra={
                    "operation_id": handle.operation_id,
                    "attempt": retry_state.attempt_number,
                    "error": str(retry_state.outcome.exception()),
                },
            )

        retrying = Retrying(
            retry=retry_if_exception_type(TransportError),
            stop=(
                stop_after_attempt(self.max_retries + 1)
                | stop_when_event_set(cancel_event)
                | stop_at_deadline(deadline)
            ),
            wait=wait_exponential(multiplier=self.backoff_s, max=self.backoff_max_s),
            sleep=lambda delay: self._wait(delay, deadline, cancel_event),
            before_sleep=log_retry,
            reraise=True,
        )

        try:
            return OperationStatus.from_api(retrying(fetch))
        except TransportError as e:
            if attempts <= self.max_retries:
                raise
            raise PollFailed(
                f"Status of operation {handle.operation_id} unavailable "
                f"after {attempts} attempts: {e}"
            ) from e

    def _expired(self, deadline: float | None) -> bool:
        return deadline is not None and time.monotonic() >= deadline

    def _timeout(self, handle: OperationHandle, result) -> OperationResult:
        logger.warning(
            "Deadline elapsed while operation still running",
            extra={"operation_id": handle.operation_id},
        )
        return result(
            Outcome.TIMEOUT,
            error=OperationTimeout(
                f"Operation {handle.operation_id} still running at deadline"
            ),
        )

    def _wait(
        self, delay: float, deadline: float | None, cancel_event: threading.Event
    ) -> None:
        if deadline is not None:
            delay = min(delay, max(deadline - time.monotonic(), 0.0))
        cancel_event.wait(delay)
