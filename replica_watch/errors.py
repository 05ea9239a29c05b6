"""Exception taxonomy for Replica Watcher.

None of these cross the checker boundary: the checker turns each of them
into a verdict. Only ``BatchCancelled`` reaches scheduler callers.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from replica_watch.models import VerificationReport

# NetworkError causes
CAUSE_TIMEOUT = "Timeout"
CAUSE_CONNECT = "Connect"
CAUSE_TLS = "TLS"
CAUSE_REQUEST = "Request"


class ReplicaWatchError(Exception):
    """Base class for every error raised by this package."""


class NetworkError(ReplicaWatchError):
    """The request never produced an HTTP response."""

    def __init__(self, cause: str, message: str = ""):
        self.cause = cause
        self.message = message
        super().__init__(f"{cause}: {message}" if message else cause)


class HttpError(ReplicaWatchError):
    """The server answered with a non-2xx status."""

    def __init__(self, status_code: int, uri: str = ""):
        self.status_code = status_code
        self.uri = uri
        super().__init__(f"HTTP {status_code}" + (f" for {uri}" if uri else ""))


class HashMismatch(ReplicaWatchError):
    """Both sides were read and their digests differ."""

    def __init__(self, local: str, remote: str):
        self.local = local
        self.remote = remote
        super().__init__(f"content differs (src={local[:12]}… dst={remote[:12]}…)")


class LocalIOError(ReplicaWatchError):
    """The source file could not be read or stat'ed."""

    def __init__(self, path: str, cause: BaseException):
        self.path = path
        self.cause = cause
        super().__init__(f"cannot read {path}: {cause}")


class BatchCancelled(ReplicaWatchError):
    """The engine was shut down while a batch was in flight.

    ``report`` is the sealed report, with every unfinished server marked as
    an error.
    """

    def __init__(self, report: VerificationReport):
        self.report = report
        super().__init__(f"batch cancelled: {report.event.logical_name}")
