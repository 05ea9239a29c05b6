"""
Replication engine for Replica Watcher.

Owns everything one monitoring session needs: the shared HTTP probe, the
checker and scheduler, the folder watcher and the cancellation token used
on shutdown. Change events from the watcher are dispatched to the
scheduler without blocking; sealed reports go to the configured sinks.

Reports for the same file can arrive out of order when changes come in
faster than servers answer. Each report stands on its own; sinks must not
assume they see them in the order the changes happened.
"""

import logging
import os
import threading
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field

from replica_watch.checker import ReplicationChecker
from replica_watch.config import Config
from replica_watch.errors import BatchCancelled
from replica_watch.models import (
    ChangeEvent,
    ChangeKind,
    EngineState,
    Outcome,
    VerificationReport,
)
from replica_watch.probe import HttpProbe
from replica_watch.scheduler import BatchHandle, CancelToken, VerificationScheduler
from replica_watch.watcher import FolderWatcher

logger = logging.getLogger(__name__)

ReportSink = Callable[[VerificationReport], None]

_HISTORY_LIMIT = 1000


@dataclass
class ReportHistory:
    """Append-only record of sealed reports with running totals."""
    total_reports: int = 0
    totals: dict[Outcome, int] = field(default_factory=lambda: {o: 0 for o in Outcome})
    last_report: VerificationReport | None = None
    history: list[VerificationReport] = field(default_factory=list)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def __call__(self, report: VerificationReport) -> None:
        self.record(report)

    def record(self, report: VerificationReport) -> None:
        with self._lock:
            self.history.append(report)
            self.total_reports += 1
            self.last_report = report
            for verdict in report.verdicts:
                self.totals[verdict.outcome] += 1
            # Keep last 1000 reports
            if len(self.history) > _HISTORY_LIMIT:
                self.history = self.history[-_HISTORY_LIMIT:]

    def snapshot(self) -> list[VerificationReport]:
        with self._lock:
            return list(self.history)


def log_report(report: VerificationReport) -> None:
    """Sink that writes one log line per verdict."""
    logger.info("Report: %s", report.summary())
    for verdict in report.verdicts:
        status = verdict.http_status if verdict.http_status is not None else "-"
        if verdict.outcome is Outcome.CONFIRMED:
            level = logging.INFO
        elif verdict.outcome is Outcome.ERROR:
            level = logging.ERROR
        else:
            level = logging.WARNING
        logger.log(
            level,
            "  %-14s %s [%s] %s",
            verdict.outcome.value.upper(),
            verdict.target_uri or verdict.server,
            status,
            verdict.detail,
        )


class ReplicationEngine:
    """
    Watches the source folder and verifies every change on every server.

    Parameters
    ----------
    config : Config
        Settings; the server list is re-read for every event.
    sinks : iterable of callables, optional
        Receive each sealed report. Defaults to ``log_report``.
    probe : HttpProbe, optional
        Injected probe (tests); otherwise built from *config*.
    """

    def __init__(
        self,
        config: Config,
        sinks: Iterable[ReportSink] | None = None,
        probe: HttpProbe | None = None,
    ):
        self.config = config
        self.history = ReportHistory()
        self._sinks: list[ReportSink] = list(sinks) if sinks is not None else [log_report]
        self._probe = probe
        self._owns_probe = probe is None
        self._cancel: CancelToken | None = None
        self._scheduler: VerificationScheduler | None = None
        self._watcher: FolderWatcher | None = None
        self._handles: set[BatchHandle] = set()
        self._state = EngineState.IDLE
        self._lock = threading.Lock()

    # ---- lifecycle ----

    @property
    def state(self) -> EngineState:
        with self._lock:
            return self._state

    def _source_root(self) -> str | None:
        folder = self.config.source_folder
        return os.path.abspath(folder) if folder else None

    def _build(self) -> VerificationScheduler:
        cfg = self.config
        if self._probe is None:
            self._probe = HttpProbe(
                timeout=cfg.probe_timeout,
                verify_tls=cfg.verify_tls,
                extra_headers=cfg.extra_headers,
                pool_size=max(10, len(cfg.servers)),
            )
        checker = ReplicationChecker(
            self._probe,
            source_root=self._source_root(),
            digest_algorithm=cfg.digest_algorithm,
            tiers=cfg.tiers,
            grace_seconds=cfg.grace_seconds,
        )
        self._cancel = CancelToken()
        self._scheduler = VerificationScheduler(
            checker,
            batch_timeout=cfg.batch_timeout,
            cancel_token=self._cancel,
        )
        return self._scheduler

    def start(self) -> None:
        """Start watching. Raises if not configured or already running."""
        cfg = self.config
        with self._lock:
            if self._state is not EngineState.IDLE:
                raise RuntimeError(f"Engine is {self._state.value}, cannot start")
            if not cfg.is_configured():
                raise RuntimeError("Replica Watcher is not configured (source folder and servers).")
            try:
                self._build()
                self._watcher = FolderWatcher(
                    source_folder=self._source_root(),
                    on_event=self.dispatch,
                    include_patterns=cfg.include_patterns,
                    exclude_patterns=cfg.exclude_patterns,
                    recursive=cfg.recursive,
                    settle_seconds=cfg.settle_seconds,
                )
                self._watcher.start()
            except Exception:
                self._watcher = None
                self._scheduler = None
                self._release_probe()
                raise
            self._state = EngineState.WATCHING
        logger.info(
            "Engine started: %d server(s), tiers=%s, digest=%s",
            len(cfg.servers), ",".join(cfg.tiers), cfg.digest_algorithm,
        )

    def stop(self) -> None:
        """Cancel in-flight batches, stop the watcher and release the probe.

        Does not wait for workers still blocked on the network; they are
        abandoned and their results discarded.
        """
        with self._lock:
            if self._state is not EngineState.WATCHING:
                return
            self._state = EngineState.SHUTTING_DOWN
            watcher, self._watcher = self._watcher, None
            cancel = self._cancel
        logger.info("Shutting down engine…")
        if cancel:
            cancel.cancel()
        if watcher:
            watcher.stop()
        self._release_probe()
        with self._lock:
            self._handles.clear()
            self._scheduler = None
            self._state = EngineState.IDLE
        logger.info("Engine stopped.")

    def _release_probe(self) -> None:
        if self._owns_probe and self._probe is not None:
            self._probe.close()
            self._probe = None

    # ---- dispatch ----

    @property
    def active_batches(self) -> int:
        with self._lock:
            return len(self._handles)

    def dispatch(self, event: ChangeEvent) -> BatchHandle | None:
        """Schedule verification of *event*; returns without waiting."""
        with self._lock:
            if self._state is not EngineState.WATCHING or self._scheduler is None:
                logger.info("Ignoring %s of %s: engine not watching", event.kind.value, event.logical_name)
                return None
            scheduler = self._scheduler
            servers = self.config.server_targets()
            if not servers:
                logger.warning("No servers configured; ignoring %s", event.logical_name)
                return None
            handle = scheduler.verify_async(event, servers, callback=self._deliver)
            self._handles.add(handle)
        handle.add_done_callback(self._forget)
        return handle

    def verify_now(self, path: str, kind: ChangeKind = ChangeKind.CHANGED) -> VerificationReport:
        """Verify one file immediately and block until its report is sealed."""
        servers = self.config.server_targets()
        if not servers:
            raise RuntimeError("No servers configured.")
        scheduler = self._scheduler or self._build()
        event = ChangeEvent.from_path(os.path.abspath(path), kind)
        report = scheduler.verify(event, servers)
        self._deliver(report)
        return report

    def close(self) -> None:
        """Release resources held by a one-off ``verify_now`` session."""
        self.stop()
        self._release_probe()

    def _forget(self, handle: BatchHandle) -> None:
        with self._lock:
            self._handles.discard(handle)
        if handle.done():
            try:
                handle.result(timeout=0)
            except BatchCancelled as exc:
                logger.info("Verification of %s cancelled", exc.report.event.logical_name)
            except Exception:
                logger.exception("Verification batch for %s failed", handle.event.logical_name)

    def _deliver(self, report: VerificationReport) -> None:
        self.history.record(report)
        for sink in self._sinks:
            try:
                sink(report)
            except Exception:
                logger.exception("Error in report sink %r", sink)
