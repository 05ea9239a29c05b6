"""
Headless runner for Replica Watcher.

    replica-watcher start [--config PATH]
        Watch the source folder and verify every change until Ctrl-C.

    replica-watcher check FILE [--kind changed] [--config PATH]
        Verify one file once, print the report, exit 0 only if every
        server confirmed.

    replica-watcher show-config [--config PATH]
        Print the resolved configuration.
"""

import argparse
import json
import logging
import logging.handlers
import signal
import sys
import threading
from pathlib import Path

from replica_watch import __app_name__, __version__
from replica_watch.config import Config, get_log_path
from replica_watch.engine import ReplicationEngine
from replica_watch.models import ChangeKind, VerificationReport

logger = logging.getLogger(__name__)


def setup_logging(cfg: Config, log_path: Path | None = None) -> None:
    """Configure rotating file log and stderr handler."""
    log_path = log_path or get_log_path()
    level = getattr(logging, cfg.log_level, logging.INFO)
    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    fmt = logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")

    # Rotating file handler
    fh = logging.handlers.RotatingFileHandler(
        str(log_path),
        maxBytes=cfg.max_log_size_mb * 1024 * 1024,
        backupCount=cfg.log_backup_count,
        encoding="utf-8",
    )
    fh.setLevel(level)
    fh.setFormatter(fmt)
    root_logger.addHandler(fh)

    sh = logging.StreamHandler(sys.stderr)
    sh.setLevel(level)
    sh.setFormatter(fmt)
    root_logger.addHandler(sh)


def format_report(report: VerificationReport) -> str:
    lines = [report.summary()]
    for v in report.verdicts:
        status = v.http_status if v.http_status is not None else "-"
        lines.append(f"  {v.outcome.value.upper():<14} {v.server}  [{status}]  {v.detail}")
    return "\n".join(lines)


def _run_foreground(cfg: Config) -> int:
    """Run the engine in the foreground until SIGINT/SIGTERM."""
    engine = ReplicationEngine(cfg)
    try:
        engine.start()
    except (RuntimeError, FileNotFoundError, ValueError) as exc:
        logger.error("Cannot start: %s", exc)
        return 2

    stop = threading.Event()

    def _handler(sig, frame):
        stop.set()

    signal.signal(signal.SIGINT, _handler)
    signal.signal(signal.SIGTERM, _handler)

    print(f"{__app_name__} running (press Ctrl-C to stop)…")
    while not stop.wait(1):
        pass
    engine.stop()
    print(f"{__app_name__} stopped.")
    return 0


def _check_once(cfg: Config, path: str, kind: ChangeKind) -> int:
    engine = ReplicationEngine(cfg, sinks=[])
    try:
        report = engine.verify_now(path, kind)
    except (RuntimeError, ValueError) as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return 2
    finally:
        engine.close()
    print(format_report(report))
    return 0 if report.all_confirmed else 1


def _show_config(cfg: Config) -> int:
    print(f"# {cfg.path}")
    print(json.dumps(cfg.as_dict(), indent=2))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="replica-watcher",
        description="Verify that file changes have reached every replica web server.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--config", type=Path, default=None, help="Path to config.json")
    sub = parser.add_subparsers(dest="command")

    sub.add_parser("start", help="Watch the source folder in the foreground")

    check = sub.add_parser("check", help="Verify one file on every server")
    check.add_argument("path", help="Local path of the file")
    check.add_argument(
        "--kind",
        choices=[k.value for k in ChangeKind if k is not ChangeKind.RENAMED],
        default=ChangeKind.CHANGED.value,
        help="Treat the file as created, changed or deleted (default: changed)",
    )

    sub.add_parser("show-config", help="Print the resolved configuration")
    return parser


def main(argv: list[str] | None = None) -> int:
    """Entry point for the command line."""
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return 0

    cfg = Config(args.config)
    if args.command == "show-config":
        return _show_config(cfg)

    setup_logging(cfg)
    logger.info("%s %s (%s)", __app_name__, __version__, args.command)
    if args.command == "check":
        return _check_once(cfg, args.path, ChangeKind(args.kind))
    return _run_foreground(cfg)


if __name__ == "__main__":
    sys.exit(main())
