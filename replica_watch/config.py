"""Configuration management for Replica Watcher.

Stores and retrieves settings from a JSON config file in the
platform-appropriate application data directory.
"""

import hashlib
import json
import logging
import threading
from pathlib import Path
from typing import Any

from replica_watch.checker import DEFAULT_TIERS, TIERS
from replica_watch.models import ServerTarget
from replica_watch.platform_utils import (
    get_config_dir as _platform_config_dir,
)
from replica_watch.platform_utils import (
    get_log_path as _platform_log_path,
)

logger = logging.getLogger(__name__)

DEFAULT_CONFIG: dict[str, Any] = {
    "source_folder": "",
    "include_patterns": ["*"],  # file-name globs to verify
    "exclude_patterns": [],  # e.g. ["*.tmp", "~*"]
    "recursive": True,
    "servers": [],  # base URLs, e.g. ["https://web1.example.org/files"]
    # ---- verification ----
    "digest_algorithm": "sha256",
    "tiers": list(DEFAULT_TIERS),  # order of etag | content | timestamp
    "grace_seconds": 5,  # tolerated Last-Modified lag
    "probe_timeout_seconds": 10,  # per HEAD/GET request
    "batch_timeout_seconds": 0,  # whole fan-out (0 = wait for every server)
    "settle_seconds": 0,  # wait for writes to stop before checking (0 = off)
    # ---- HTTP ----
    "verify_tls": True,
    "extra_headers": {},
    # ---- logging ----
    "log_level": "INFO",
    "max_log_size_mb": 10,  # rotate log when it exceeds this size
    "log_backup_count": 3,  # number of rotated log files to keep
}


def get_config_dir() -> Path:
    """Return the platform-appropriate application config directory."""
    return _platform_config_dir()


def get_config_path() -> Path:
    """Return the path to the configuration file."""
    return get_config_dir() / "config.json"


def get_log_path() -> Path:
    """Return the path to the log file."""
    return _platform_log_path()


class Config:
    """Thread-safe configuration manager backed by a JSON file."""

    def __init__(self, path: Path | None = None):
        """Load config from *path*, falling back to the platform default."""
        self._path = Path(path) if path else get_config_path()
        self._lock = threading.RLock()
        self._data: dict[str, Any] = dict(DEFAULT_CONFIG)
        self.load()

    @property
    def path(self) -> Path:
        return self._path

    # ---- persistence ----

    def load(self) -> None:
        """Load configuration from disk, applying defaults for missing keys."""
        with self._lock:
            if self._path.exists():
                try:
                    with open(self._path, encoding="utf-8") as fh:
                        stored = json.load(fh)
                    if not isinstance(stored, dict):
                        raise ValueError("top-level JSON value must be an object")
                    # Merge stored values over defaults so new keys get defaults
                    self._data = {**DEFAULT_CONFIG, **stored}
                    logger.info("Configuration loaded from %s", self._path)
                except (ValueError, OSError) as exc:
                    logger.warning("Could not read config (%s); using defaults.", exc)
                    self._data = dict(DEFAULT_CONFIG)
            else:
                self._data = dict(DEFAULT_CONFIG)
                self.save()
                logger.info("Created default configuration at %s", self._path)

    def save(self) -> None:
        """Persist the current configuration to disk."""
        with self._lock:
            try:
                self._path.parent.mkdir(parents=True, exist_ok=True)
                with open(self._path, "w", encoding="utf-8") as fh:
                    json.dump(self._data, fh, indent=2)
                logger.info("Configuration saved.")
            except OSError as exc:
                logger.error("Failed to save configuration: %s", exc)

    def as_dict(self) -> dict[str, Any]:
        with self._lock:
            return json.loads(json.dumps(self._data))

    def _get(self, key: str) -> Any:
        with self._lock:
            return self._data.get(key, DEFAULT_CONFIG[key])

    def _set(self, key: str, value: Any) -> None:
        with self._lock:
            self._data[key] = value

    # ---- source ----

    @property
    def source_folder(self) -> str:
        """Return the watched source folder path."""
        return self._get("source_folder")

    @source_folder.setter
    def source_folder(self, value: str) -> None:
        self._set("source_folder", value.strip())

    @property
    def include_patterns(self) -> list[str]:
        """Glob patterns a file name must match to be verified."""
        return list(self._get("include_patterns")) or ["*"]

    @include_patterns.setter
    def include_patterns(self, value: list[str]) -> None:
        self._set("include_patterns", [p.strip() for p in value if p.strip()])

    @property
    def exclude_patterns(self) -> list[str]:
        """Return glob patterns used to skip files."""
        return list(self._get("exclude_patterns"))

    @exclude_patterns.setter
    def exclude_patterns(self, value: list[str]) -> None:
        self._set("exclude_patterns", [p.strip() for p in value if p.strip()])

    @property
    def recursive(self) -> bool:
        return bool(self._get("recursive"))

    @recursive.setter
    def recursive(self, value: bool) -> None:
        self._set("recursive", bool(value))

    # ---- servers ----

    @property
    def servers(self) -> list[str]:
        """Return the configured server base URLs, without trailing slashes."""
        return [s.strip().rstrip("/") for s in self._get("servers") if s and s.strip()]

    @servers.setter
    def servers(self, value: list[str]) -> None:
        urls = []
        for raw in value:
            if not raw or not raw.strip():
                continue
            url = ServerTarget(raw).base_url
            if url not in urls:
                urls.append(url)
        self._set("servers", urls)

    def server_targets(self) -> list[ServerTarget]:
        """Snapshot of the server list as targets."""
        return [ServerTarget(url) for url in self.servers]

    # ---- verification ----

    @property
    def digest_algorithm(self) -> str:
        """Return the hashlib digest name, falling back to sha256."""
        name = str(self._get("digest_algorithm")).lower()
        if name not in hashlib.algorithms_available:
            logger.warning("Unknown digest algorithm %r; using sha256.", name)
            return "sha256"
        return name

    @digest_algorithm.setter
    def digest_algorithm(self, value: str) -> None:
        value = value.strip().lower()
        if value not in hashlib.algorithms_available:
            raise ValueError(f"Unknown digest algorithm: {value}")
        self._set("digest_algorithm", value)

    @property
    def tiers(self) -> list[str]:
        """Return the tier order, dropping unknown names."""
        tiers = [str(t).lower() for t in self._get("tiers") if str(t).lower() in TIERS]
        return tiers or list(DEFAULT_TIERS)

    @tiers.setter
    def tiers(self, value: list[str]) -> None:
        tiers = [t.strip().lower() for t in value if t.strip()]
        unknown = [t for t in tiers if t not in TIERS]
        if unknown or not tiers:
            raise ValueError(f"Tiers must be a non-empty subset of {', '.join(TIERS)}")
        self._set("tiers", tiers)

    @property
    def grace_seconds(self) -> float:
        return float(self._get("grace_seconds"))

    @grace_seconds.setter
    def grace_seconds(self, value: float) -> None:
        self._set("grace_seconds", max(0.0, float(value)))

    @property
    def probe_timeout(self) -> float:
        """Return the per-request timeout in seconds."""
        return float(self._get("probe_timeout_seconds"))

    @probe_timeout.setter
    def probe_timeout(self, value: float) -> None:
        """Set the per-request timeout (minimum 1 s)."""
        self._set("probe_timeout_seconds", max(1.0, float(value)))

    @property
    def batch_timeout(self) -> float | None:
        """Return the whole-batch timeout, or None when unbounded."""
        value = float(self._get("batch_timeout_seconds") or 0)
        return value if value > 0 else None

    @batch_timeout.setter
    def batch_timeout(self, value: float | None) -> None:
        self._set("batch_timeout_seconds", max(0.0, float(value or 0)))

    @property
    def settle_seconds(self) -> float:
        return float(self._get("settle_seconds"))

    @settle_seconds.setter
    def settle_seconds(self, value: float) -> None:
        self._set("settle_seconds", max(0.0, float(value)))

    # ---- HTTP ----

    @property
    def verify_tls(self) -> bool:
        """Return whether server certificates are validated."""
        return bool(self._get("verify_tls"))

    @verify_tls.setter
    def verify_tls(self, value: bool) -> None:
        self._set("verify_tls", bool(value))

    @property
    def extra_headers(self) -> dict[str, str]:
        """Headers sent with every probe (none by default)."""
        return {str(k): str(v) for k, v in dict(self._get("extra_headers")).items()}

    @extra_headers.setter
    def extra_headers(self, value: dict[str, str]) -> None:
        self._set("extra_headers", dict(value))

    # ---- logging ----

    @property
    def log_level(self) -> str:
        """Return the current logging level name."""
        return str(self._get("log_level")).upper()

    @log_level.setter
    def log_level(self, value: str) -> None:
        self._set("log_level", value.upper())

    @property
    def max_log_size_mb(self) -> int:
        """Return the maximum log file size in MB before rotation."""
        return int(self._get("max_log_size_mb"))

    @max_log_size_mb.setter
    def max_log_size_mb(self, value: int) -> None:
        """Set the maximum log file size in MB (minimum 1)."""
        self._set("max_log_size_mb", max(1, int(value)))

    @property
    def log_backup_count(self) -> int:
        """Return the number of rotated log backups to keep."""
        return int(self._get("log_backup_count"))

    @log_backup_count.setter
    def log_backup_count(self, value: int) -> None:
        self._set("log_backup_count", max(0, int(value)))

    # ---- convenience ----

    def is_configured(self) -> bool:
        """Return True when a source folder and at least one server are set."""
        return bool(self.source_folder) and bool(self.servers)
