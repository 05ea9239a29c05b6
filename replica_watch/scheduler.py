"""
Verification scheduler for Replica Watcher.

Fans one change event out to every configured server, one worker thread
per server, and seals a ``VerificationReport`` once every worker has
answered. An optional batch timeout and the engine-wide ``CancelToken``
can seal a batch early; servers that had not answered by then get an
error verdict and whatever they produce later is dropped.

Batches are independent of each other. Two quick changes to the same file
give two batches that may finish in either order.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Iterable
from concurrent.futures import Future

from replica_watch.checker import ReplicationChecker
from replica_watch.errors import BatchCancelled
from replica_watch.models import (
    ChangeEvent,
    CheckVerdict,
    Outcome,
    ServerTarget,
    VerificationReport,
)

logger = logging.getLogger(__name__)


class CancelToken:
    """One-shot cancellation signal that wakes registered listeners."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._listeners: list[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        with self._lock:
            if self._event.is_set():
                return
            self._event.set()
            listeners, self._listeners = self._listeners, []
        for listener in listeners:
            try:
                listener()
            except Exception:
                logger.exception("Error in cancellation listener")

    def wait(self, timeout: float | None = None) -> bool:
        return self._event.wait(timeout)

    def add_listener(self, listener: Callable[[], None]) -> None:
        """Call *listener* on cancel (immediately if already cancelled)."""
        with self._lock:
            if not self._event.is_set():
                self._listeners.append(listener)
                return
        listener()

    def remove_listener(self, listener: Callable[[], None]) -> None:
        with self._lock:
            try:
                self._listeners.remove(listener)
            except ValueError:
                pass


class _Batch:
    """Collects verdicts for one event; doubles as its completion latch."""

    def __init__(self, event: ChangeEvent, servers: list[ServerTarget]):
        self.event = event
        self.servers = servers
        self.started_at = time.time()
        self._verdicts: dict[int, CheckVerdict] = {}
        self._cond = threading.Condition()
        self._sealed = False
        self._cancelled = False

    def deliver(self, index: int, verdict: CheckVerdict) -> None:
        with self._cond:
            if self._sealed:
                logger.debug(
                    "Discarding late verdict from %s for %s",
                    verdict.server, self.event.logical_name,
                )
                return
            self._verdicts[index] = verdict
            if len(self._verdicts) == len(self.servers):
                self._cond.notify_all()

    def cancel(self) -> None:
        with self._cond:
            self._cancelled = True
            self._cond.notify_all()

    def wait(self, timeout: float | None) -> None:
        """Block until every server answered, the batch is cancelled or *timeout* passes."""
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while len(self._verdicts) < len(self.servers) and not self._cancelled:
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    return
                self._cond.wait(remaining)

    def seal(self) -> VerificationReport:
        """Close the batch and build its report.

        Whether the batch timed out or was cancelled is decided here, under
        the lock, from what actually arrived: a batch with every verdict in
        is complete no matter why the wait ended.
        """
        with self._cond:
            self._sealed = True
            missing = len(self._verdicts) < len(self.servers)
            cancelled = missing and self._cancelled
            timed_out = missing and not self._cancelled
            reason = "cancelled" if cancelled else "timed out"
            verdicts = []
            for index, server in enumerate(self.servers):
                verdict = self._verdicts.get(index)
                if verdict is None:
                    verdict = CheckVerdict(
                        server=server.base_url,
                        target_uri="",
                        outcome=Outcome.ERROR,
                        detail=reason,
                        checked_at=time.time(),
                    )
                verdicts.append(verdict)
        return VerificationReport(
            event=self.event,
            verdicts=tuple(verdicts),
            started_at=self.started_at,
            completed_at=time.time(),
            timed_out=timed_out,
            cancelled=cancelled,
        )


class BatchHandle:
    """Handle to a batch running in the background."""

    def __init__(self, event: ChangeEvent, future: Future):
        self.event = event
        self._future = future

    def done(self) -> bool:
        return self._future.done()

    def result(self, timeout: float | None = None) -> VerificationReport:
        """Wait for the sealed report. Raises ``BatchCancelled`` on shutdown."""
        return self._future.result(timeout)

    def add_done_callback(self, fn: Callable[[BatchHandle], None]) -> None:
        self._future.add_done_callback(lambda _f: fn(self))


class VerificationScheduler:
    """
    Launches one checker per server for each change event.

    Parameters
    ----------
    checker : ReplicationChecker
        The checker every worker calls.
    batch_timeout : float, optional
        Upper bound on how long a batch may wait for its slowest server.
        ``None`` or zero waits for every server (each bounded by the probe
        timeout).
    cancel_token : CancelToken, optional
        Shared shutdown signal. A fresh token is created if omitted.
    """

    def __init__(
        self,
        checker: ReplicationChecker,
        batch_timeout: float | None = None,
        cancel_token: CancelToken | None = None,
    ):
        self._checker = checker
        self.batch_timeout = batch_timeout if batch_timeout and batch_timeout > 0 else None
        self.cancel_token = cancel_token or CancelToken()
        self._active = 0
        self._lock = threading.Lock()

    @property
    def active_batches(self) -> int:
        with self._lock:
            return self._active

    def verify(
        self,
        event: ChangeEvent,
        servers: Iterable[ServerTarget | str],
        timeout: float | None = None,
    ) -> VerificationReport:
        """Check *event* on every server and return the sealed report.

        *timeout* overrides ``batch_timeout`` for this call; zero or less
        means no limit.
        """
        targets = [s if isinstance(s, ServerTarget) else ServerTarget(s) for s in servers]
        if not targets:
            raise ValueError("No servers to verify against")
        timeout = self.batch_timeout if timeout is None else timeout
        if timeout is not None and timeout <= 0:
            timeout = None

        batch = _Batch(event, targets)
        self.cancel_token.add_listener(batch.cancel)
        with self._lock:
            self._active += 1
        try:
            logger.info(
                "Verifying %s %s on %d server(s)",
                event.kind.value, event.logical_name, len(targets),
            )
            for index, server in enumerate(targets):
                if self.cancel_token.cancelled:
                    break
                threading.Thread(
                    target=self._run_check,
                    args=(batch, index, server),
                    daemon=True,
                    name=f"Check-{server.host}-{event.logical_name}",
                ).start()

            batch.wait(timeout)
            report = batch.seal()
        finally:
            self.cancel_token.remove_listener(batch.cancel)
            with self._lock:
                self._active -= 1

        if report.timed_out:
            logger.warning("Batch for %s timed out after %gs", event.logical_name, timeout)
        if report.cancelled:
            raise BatchCancelled(report)
        logger.info("Verification complete: %s", report.summary())
        return report

    def verify_async(
        self,
        event: ChangeEvent,
        servers: Iterable[ServerTarget | str],
        callback: Callable[[VerificationReport], None] | None = None,
        timeout: float | None = None,
    ) -> BatchHandle:
        """
        Run ``verify`` in the background and return immediately.

        *callback* fires once with the sealed report. Cancelled batches do
        not reach the callback; their handle raises ``BatchCancelled``.
        """
        snapshot = list(servers)
        future: Future = Future()
        future.set_running_or_notify_cancel()

        def _run() -> None:
            try:
                report = self.verify(event, snapshot, timeout)
            except BaseException as exc:
                future.set_exception(exc)
                return
            future.set_result(report)
            if callback:
                try:
                    callback(report)
                except Exception:
                    logger.exception("Error in report callback for %s", event.logical_name)

        threading.Thread(
            target=_run, daemon=True, name=f"Batch-{event.logical_name}"
        ).start()
        return BatchHandle(event, future)

    def _run_check(self, batch: _Batch, index: int, server: ServerTarget) -> None:
        verdict = self._checker.check(batch.event, server, self.cancel_token)
        batch.deliver(index, verdict)
