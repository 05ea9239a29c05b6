"""
Tests for the value types
"""
import time

import pytest

from replica_watch.models import (
    ChangeEvent,
    ChangeKind,
    CheckVerdict,
    Outcome,
    ServerTarget,
    VerificationReport,
)


class TestChangeEvent:

    def test_from_path_uses_file_name(self, tmp_path):
        event = ChangeEvent.from_path(tmp_path / "a" / "b.txt", ChangeKind.CREATED)
        assert event.logical_name == "b.txt"
        assert event.source_path.endswith("b.txt")
        assert event.previous_name is None

    def test_rename_requires_previous_name(self):
        with pytest.raises(ValueError):
            ChangeEvent("/x/new.txt", "new.txt", ChangeKind.RENAMED)

    def test_previous_name_only_for_renames(self):
        with pytest.raises(ValueError):
            ChangeEvent("/x/new.txt", "new.txt", ChangeKind.CHANGED, previous_name="old.txt")

    def test_events_are_immutable(self):
        event = ChangeEvent("/x/a.txt", "a.txt", ChangeKind.CHANGED)
        with pytest.raises(AttributeError):
            event.kind = ChangeKind.DELETED


class TestServerTarget:

    def test_trailing_slashes_removed(self):
        assert ServerTarget("https://web1.example.org/site///").base_url == "https://web1.example.org/site"

    def test_empty_url_rejected(self):
        with pytest.raises(ValueError):
            ServerTarget("  ")

    def test_url_for_converts_backslashes_and_quotes(self):
        server = ServerTarget("http://web1/")
        assert server.url_for("docs\\My Report.xml") == "http://web1/docs/My%20Report.xml"

    def test_host(self):
        assert ServerTarget("https://web1.example.org:8443/site").host == "web1.example.org:8443"


def _verdict(server, outcome):
    return CheckVerdict(server=server, target_uri=f"{server}/a.txt", outcome=outcome,
                        detail="x", checked_at=time.time())


class TestVerificationReport:

    def test_counts_and_summary(self):
        event = ChangeEvent("/x/a.txt", "a.txt", ChangeKind.CHANGED)
        report = VerificationReport(
            event=event,
            verdicts=(
                _verdict("http://a", Outcome.CONFIRMED),
                _verdict("http://b", Outcome.CONFIRMED),
                _verdict("http://c", Outcome.ERROR),
            ),
            started_at=100.0,
            completed_at=101.5,
        )
        assert report.outcome_counts[Outcome.CONFIRMED] == 2
        assert report.outcome_counts[Outcome.STALE] == 0
        assert not report.all_confirmed
        assert report.duration == pytest.approx(1.5)
        assert report.summary() == "changed a.txt: 2 confirmed, 1 error in 1.5s"
        assert report.verdict_for("http://c/").outcome is Outcome.ERROR
        assert report.verdict_for("http://zzz") is None

    def test_all_confirmed_needs_verdicts(self):
        event = ChangeEvent("/x/a.txt", "a.txt", ChangeKind.CHANGED)
        report = VerificationReport(event=event, verdicts=(), started_at=0, completed_at=0)
        assert not report.all_confirmed
