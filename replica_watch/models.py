"""Value types shared by the verification engine.

Everything here is immutable once built: a verdict is written once by the
worker that produced it and a report is sealed before it reaches a sink.
"""

from __future__ import annotations

import os
from collections import Counter
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from urllib.parse import quote


class ChangeKind(str, Enum):
    """Kind of filesystem change delivered by the watcher."""

    CREATED = "created"
    CHANGED = "changed"
    DELETED = "deleted"
    RENAMED = "renamed"


class Outcome(str, Enum):
    """Terminal outcome of one (event, server) check."""

    CONFIRMED = "confirmed"
    NOT_REPLICATED = "not_replicated"
    STALE = "stale"
    ERROR = "error"


class EngineState(str, Enum):
    IDLE = "idle"
    WATCHING = "watching"
    SHUTTING_DOWN = "shutting_down"


@dataclass(frozen=True)
class ChangeEvent:
    """A single change notification for one file."""

    source_path: str
    logical_name: str
    kind: ChangeKind
    previous_name: str | None = None

    def __post_init__(self) -> None:
        if self.kind is ChangeKind.RENAMED and not self.previous_name:
            raise ValueError("Renamed events need a previous_name")
        if self.kind is not ChangeKind.RENAMED and self.previous_name:
            raise ValueError(f"previous_name is only valid for renames, not {self.kind.value}")

    @classmethod
    def from_path(
        cls,
        path: str | os.PathLike,
        kind: ChangeKind,
        previous_name: str | None = None,
    ) -> ChangeEvent:
        """Build an event whose logical name is the file name of *path*."""
        path = os.fspath(path)
        return cls(
            source_path=path,
            logical_name=os.path.basename(path),
            kind=kind,
            previous_name=previous_name,
        )


@dataclass(frozen=True)
class ServerTarget:
    """A remote web server addressed by its base URL."""

    base_url: str

    def __post_init__(self) -> None:
        url = (self.base_url or "").strip().rstrip("/")
        if not url:
            raise ValueError("Server base URL must not be empty")
        object.__setattr__(self, "base_url", url)

    @property
    def host(self) -> str:
        rest = self.base_url.split("://", 1)[-1]
        return rest.split("/", 1)[0]

    def url_for(self, relative_path: str) -> str:
        """Return the absolute URL of *relative_path* on this server."""
        rel = relative_path.replace("\\", "/").lstrip("/")
        return f"{self.base_url}/{quote(rel, safe='/')}"

    def __str__(self) -> str:
        return self.base_url


@dataclass(frozen=True)
class CheckVerdict:
    """Result of checking one server for one change event."""

    server: str
    target_uri: str
    outcome: Outcome
    detail: str
    http_status: int | None = None
    tier: str | None = None
    checked_at: float = 0.0

    @property
    def is_confirmed(self) -> bool:
        return self.outcome is Outcome.CONFIRMED

    @property
    def timestamp_str(self) -> str:
        """Human-readable timestamp of when the check finished."""
        if self.checked_at:
            return datetime.fromtimestamp(self.checked_at).strftime("%Y-%m-%d %H:%M:%S")
        return ""


@dataclass(frozen=True)
class VerificationReport:
    """All verdicts for one change event, one per targeted server.

    Verdicts appear in the order the servers were listed when the batch was
    launched, not in completion order.
    """

    event: ChangeEvent
    verdicts: tuple[CheckVerdict, ...]
    started_at: float
    completed_at: float
    timed_out: bool = False
    cancelled: bool = False

    @property
    def outcome_counts(self) -> dict[Outcome, int]:
        counts = Counter(v.outcome for v in self.verdicts)
        return {outcome: counts.get(outcome, 0) for outcome in Outcome}

    @property
    def all_confirmed(self) -> bool:
        return bool(self.verdicts) and all(v.is_confirmed for v in self.verdicts)

    @property
    def duration(self) -> float:
        return max(0.0, self.completed_at - self.started_at)

    def verdict_for(self, server: str) -> CheckVerdict | None:
        server = server.rstrip("/")
        for verdict in self.verdicts:
            if verdict.server == server:
                return verdict
        return None

    def summary(self) -> str:
        """One-line description suitable for a log or status line."""
        counts = self.outcome_counts
        parts = [
            f"{counts[o]} {o.value.replace('_', ' ')}" for o in Outcome if counts[o]
        ]
        flags = ""
        if self.timed_out:
            flags = " (timed out)"
        elif self.cancelled:
            flags = " (cancelled)"
        return (
            f"{self.event.kind.value} {self.event.logical_name}: "
            f"{', '.join(parts) or 'no servers'} in {self.duration:.1f}s{flags}"
        )
