"""
Replication checker for Replica Watcher.

Decides, for one change event and one server, whether the server already
serves the change. Deletions must come back 404. Everything else must be
present, then the tiers are tried in order, cheapest first:

  etag       compare the ETag header against the local digest (HEAD only)
  content    stream the file with GET and compare digests of both sides
  timestamp  compare Last-Modified against the local mtime, minus a grace

A tier whose inputs are missing (no header, unreadable file, failed GET)
hands over to the next one. ``check`` never raises; every failure becomes
an ``Outcome.ERROR`` verdict so one bad server cannot sink a batch.
"""

from __future__ import annotations

import hashlib
import logging
import os
import time
from datetime import datetime, timedelta, timezone
from pathlib import PurePath, PurePosixPath, PureWindowsPath
from typing import TYPE_CHECKING

from replica_watch.errors import HashMismatch, LocalIOError, NetworkError, ReplicaWatchError
from replica_watch.models import ChangeEvent, ChangeKind, CheckVerdict, Outcome, ServerTarget
from replica_watch.probe import HASH_CHUNK, HttpProbe, ProbeResponse

if TYPE_CHECKING:
    from replica_watch.scheduler import CancelToken

logger = logging.getLogger(__name__)

TIER_ETAG = "etag"
TIER_CONTENT = "content"
TIER_TIMESTAMP = "timestamp"
TIERS = (TIER_ETAG, TIER_CONTENT, TIER_TIMESTAMP)
DEFAULT_TIERS = TIERS
DEFAULT_GRACE_SECONDS = 5.0
DEFAULT_DIGEST = "sha256"


def file_digest(filepath: str | os.PathLike, algorithm: str = DEFAULT_DIGEST) -> str:
    """Return the hex digest of *filepath* using *algorithm*."""
    h = hashlib.new(algorithm)
    try:
        with open(filepath, "rb") as fh:
            while chunk := fh.read(HASH_CHUNK):
                h.update(chunk)
    except OSError as exc:
        raise LocalIOError(os.fspath(filepath), exc) from exc
    return h.hexdigest()


def normalise_etag(value: str) -> str:
    """Strip the weak-validator marker and quotes from an ETag value."""
    value = value.strip()
    if value[:2].upper() == "W/":
        value = value[2:]
    return value.strip().strip('"').strip("'").lower()


def _pure(path: str) -> PurePath:
    # UNC and drive-letter paths must be handled on any host OS
    if "\\" in path or (len(path) > 1 and path[1] == ":"):
        return PureWindowsPath(path)
    return PurePosixPath(path)


def relative_remote_path(event: ChangeEvent, source_root: str | None = None) -> str:
    """
    Path of the changed file relative to the watched root, '/'-separated.

    Directory structure below the root is preserved. Files outside the root
    (or when no root is known) map to their logical name.
    """
    if source_root:
        src = _pure(event.source_path)
        root = _pure(source_root)
        try:
            rel = src.relative_to(root)
        except ValueError:
            rel = None
        if rel is not None and rel.parts:
            return "/".join(rel.parts)
    return event.logical_name.replace("\\", "/").lstrip("/")


class _SourceFile:
    """Lazily read, cached view of the local file for one check."""

    def __init__(self, path: str, algorithm: str):
        self.path = path
        self._algorithm = algorithm
        self._digest: str | None = None
        self._error: LocalIOError | None = None

    def digest(self) -> str:
        if self._error is not None:
            raise self._error
        if self._digest is None:
            try:
                self._digest = file_digest(self.path, self._algorithm)
            except LocalIOError as exc:
                self._error = exc
                raise
        return self._digest

    def modified(self) -> datetime:
        try:
            mtime = os.stat(self.path).st_mtime
        except OSError as exc:
            raise LocalIOError(self.path, exc) from exc
        return datetime.fromtimestamp(mtime, tz=timezone.utc)


class ReplicationChecker:
    """
    Runs the verification protocol for one (event, server) pair.

    Parameters
    ----------
    probe : HttpProbe
        Shared HTTP probe.
    source_root : str, optional
        The watched folder; used to derive remote relative paths.
    digest_algorithm : str
        Any ``hashlib`` algorithm name. Default ``sha256``.
    tiers : sequence of str
        Tier order for present files. Any subset of ``TIERS``.
    grace_seconds : float
        Allowed lag when comparing timestamps.
    """

    def __init__(
        self,
        probe: HttpProbe,
        source_root: str | None = None,
        digest_algorithm: str = DEFAULT_DIGEST,
        tiers: tuple[str, ...] | list[str] = DEFAULT_TIERS,
        grace_seconds: float = DEFAULT_GRACE_SECONDS,
    ):
        tiers = tuple(t.strip().lower() for t in tiers)
        unknown = [t for t in tiers if t not in TIERS]
        if unknown:
            raise ValueError(f"Unknown verification tier(s): {', '.join(unknown)}")
        if not tiers:
            raise ValueError("At least one verification tier is required")
        hashlib.new(digest_algorithm)  # fail fast on unknown names

        self._probe = probe
        self.source_root = source_root
        self.digest_algorithm = digest_algorithm
        self.tiers = tiers
        self.grace = timedelta(seconds=max(0.0, grace_seconds))
        self._tier_methods = {
            TIER_ETAG: self._tier_etag,
            TIER_CONTENT: self._tier_content,
            TIER_TIMESTAMP: self._tier_timestamp,
        }

    def target_uri(self, event: ChangeEvent, server: ServerTarget) -> str:
        return server.url_for(relative_remote_path(event, self.source_root))

    def check(
        self,
        event: ChangeEvent,
        server: ServerTarget | str,
        cancel: CancelToken | None = None,
    ) -> CheckVerdict:
        """Verify *event* against *server*. Never raises."""
        name = str(server)
        uri = ""
        try:
            if not isinstance(server, ServerTarget):
                server = ServerTarget(server)
            name = server.base_url
            uri = self.target_uri(event, server)
            if event.kind is ChangeKind.DELETED:
                verdict = self._check_absent(name, uri)
            else:
                verdict = self._check_present(name, uri, event, cancel)
        except Exception as exc:
            logger.exception("Unexpected error checking %s on %s", event.logical_name, name)
            verdict = _verdict(name, uri, Outcome.ERROR, f"Unexpected error: {exc}")

        logger.debug("%s %s -> %s (%s)", name, uri, verdict.outcome.value, verdict.detail)
        return verdict

    # ---- deletion ----

    def _check_absent(self, server: str, uri: str) -> CheckVerdict:
        try:
            head = self._probe.head(uri)
        except NetworkError as exc:
            return _verdict(server, uri, Outcome.ERROR, str(exc))

        status = head.status_code
        if status == 404:
            return _verdict(server, uri, Outcome.CONFIRMED, "deletion propagated", status)
        if head.ok:
            return _verdict(server, uri, Outcome.NOT_REPLICATED, "file still present", status)
        return _verdict(server, uri, Outcome.ERROR, f"unexpected HTTP {status}", status)

    # ---- creation / change / rename ----

    def _check_present(
        self,
        server: str,
        uri: str,
        event: ChangeEvent,
        cancel: CancelToken | None,
    ) -> CheckVerdict:
        try:
            head = self._probe.head(uri)
        except NetworkError as exc:
            return _verdict(server, uri, Outcome.ERROR, str(exc))

        status = head.status_code
        if status == 404:
            return _verdict(server, uri, Outcome.NOT_REPLICATED, "not yet propagated", status)
        if not head.ok:
            return _verdict(server, uri, Outcome.ERROR, f"unexpected HTTP {status}", status)

        source = _SourceFile(event.source_path, self.digest_algorithm)
        last_error: tuple[str, ReplicaWatchError] | None = None
        for tier in self.tiers:
            if cancel is not None and cancel.cancelled:
                return _verdict(server, uri, Outcome.ERROR, "cancelled", status)
            try:
                detail = self._tier_methods[tier](head, source)
            except HashMismatch as exc:
                return _verdict(server, uri, Outcome.STALE, str(exc), status, tier)
            except ReplicaWatchError as exc:
                logger.debug("%s tier inconclusive for %s: %s", tier, uri, exc)
                last_error = (tier, exc)
                continue
            if detail is None:
                last_error = None
                continue
            outcome, text = detail
            return _verdict(server, uri, outcome, text, status, tier)

        if last_error is not None:
            tier, exc = last_error
            return _verdict(server, uri, Outcome.ERROR, f"{tier} check failed: {exc}", status, tier)
        return _verdict(
            server, uri, Outcome.CONFIRMED,
            "present, but no tier could compare content", status,
        )

    # ---- tiers ----
    # Each returns (outcome, detail), or None when it cannot decide.
    # Raising a ReplicaWatchError also means "undecided"; HashMismatch is final.

    def _tier_etag(self, head: ProbeResponse, source: _SourceFile):
        etag = head.etag
        if not etag:
            return None
        if normalise_etag(etag) == source.digest().lower():
            return Outcome.CONFIRMED, "ETag matches"
        logger.debug("ETag %s does not match local digest for %s", etag, source.path)
        return None

    def _tier_content(self, head: ProbeResponse, source: _SourceFile):
        local = source.digest()
        resp = self._probe.fetch_digest(head.uri, self.digest_algorithm, chunk_size=HASH_CHUNK)
        resp.raise_for_status()
        remote = resp.digest
        if remote != local:
            raise HashMismatch(local, remote)
        return Outcome.CONFIRMED, "content hash matches"

    def _tier_timestamp(self, head: ProbeResponse, source: _SourceFile):
        remote = head.last_modified
        if remote is None:
            return None
        local = source.modified()
        if remote >= local - self.grace:
            return Outcome.CONFIRMED, "timestamp current"
        behind = (local - remote).total_seconds()
        return Outcome.STALE, f"timestamp behind source by {behind:.0f}s"


def _verdict(
    server: str,
    uri: str,
    outcome: Outcome,
    detail: str,
    status: int | None = None,
    tier: str | None = None,
) -> CheckVerdict:
    return CheckVerdict(
        server=server,
        target_uri=uri,
        outcome=outcome,
        detail=detail,
        http_status=status,
        tier=tier,
        checked_at=time.time(),
    )
