"""
Integration Tests for Apply Analysis

Tests cover:
- End-to-end application to files on disk
- Backups taken before writing
- Restore of both files when a write fails
- Events history and changelog side files
- Missing / malformed inputs
"""

import json
from unittest.mock import patch

import pytest

from overwatch.analyst.apply_analysis import (
    apply_analysis,
    append_changelog,
    load_events_history,
    PatchWriteError,
)


@pytest.fixture
def workspace(paths, sample_state, sample_opinion, sample_html):
    paths.state.write_text(json.dumps(sample_state), encoding="utf-8")
    paths.analysis.write_text(json.dumps(sample_opinion), encoding="utf-8")
    paths.html.write_text(sample_html, encoding="utf-8")
    return paths


class TestApplyAnalysis:

    def test_applies_to_disk(self, workspace, fixed_now):
        result = apply_analysis(workspace, now=fixed_now)

        state = json.loads(workspace.state.read_text(encoding="utf-8"))
        page = workspace.html.read_text(encoding="utf-8")
        assert result.change_count == 8
        assert state["thesis_scores"]["regulatory"]["status"] == "STRONG"
        assert state["kill_switches"]["rlusd_circulation"]["status"] == "WARNING"
        assert "Senate Banking advances market structure bill" in page
        assert "Thesis intact; regulatory path clearing." in page

    def test_backups_hold_previous_versions(self, workspace, sample_state, sample_html):
        apply_analysis(workspace)

        assert json.loads(workspace.state_backup.read_text(encoding="utf-8")) == sample_state
        assert workspace.html_backup.read_text(encoding="utf-8") == sample_html

    def test_side_files(self, workspace, fixed_now):
        apply_analysis(workspace, now=fixed_now)

        assert load_events_history(workspace) == ["senate banking advances market structure"]
        log = workspace.changelog.read_text(encoding="utf-8")
        assert log.startswith("\n--- 2026-02-20T14:30:00.000Z ---\n")
        assert "SCORECARD Regulatory Clarity: PROGRESSING → STRONG" in log
        assert "EVENTS: 1 new event(s) inserted into timeline" in log

    def test_second_run_changes_nothing(self, workspace, fixed_now):
        apply_analysis(workspace, now=fixed_now)
        page = workspace.html.read_text(encoding="utf-8")
        log = workspace.changelog.read_text(encoding="utf-8")

        result = apply_analysis(workspace, now=fixed_now)

        assert result.change_count == 0
        assert workspace.html.read_text(encoding="utf-8") == page
        assert workspace.changelog.read_text(encoding="utf-8") == log

    def test_html_write_failure_restores_both(self, workspace, sample_state, sample_html):
        with patch("overwatch.analyst.apply_analysis.atomic_write_text", side_effect=OSError("disk full")):
            with pytest.raises(PatchWriteError):
                apply_analysis(workspace)

        assert json.loads(workspace.state.read_text(encoding="utf-8")) == sample_state
        assert workspace.html.read_text(encoding="utf-8") == sample_html
        assert not workspace.changelog.exists()

    def test_without_html_updates_state_only(self, workspace):
        workspace.html.unlink()
        result = apply_analysis(workspace)

        assert result.html is None
        assert result.change_count == 3
        assert not workspace.html.exists()
        assert not workspace.html_backup.exists()

    def test_missing_analysis(self, workspace):
        workspace.analysis.unlink()
        assert apply_analysis(workspace) is None

    def test_unparseable_analysis(self, workspace, sample_state):
        workspace.analysis.write_text("{oops", encoding="utf-8")

        assert apply_analysis(workspace) is None
        assert json.loads(workspace.state.read_text(encoding="utf-8")) == sample_state

    def test_non_object_state(self, workspace):
        workspace.state.write_text("[]", encoding="utf-8")
        assert apply_analysis(workspace) is None


class TestSideFiles:

    def test_history_missing_or_broken(self, paths):
        assert load_events_history(paths) == []
        paths.events_history.write_text("not json", encoding="utf-8")
        assert load_events_history(paths) == []
        paths.events_history.write_text('{"a": 1}', encoding="utf-8")
        assert load_events_history(paths) == []

    def test_changelog_appends_blocks(self, paths, fixed_now):
        append_changelog(paths, ["A", "B"], fixed_now)
        append_changelog(paths, ["C"], fixed_now)

        log = paths.changelog.read_text(encoding="utf-8")
        assert log.count("--- 2026-02-20T14:30:00.000Z ---") == 2
        assert log.endswith("C\n")

    def test_changelog_noop_without_entries(self, paths):
        append_changelog(paths, [])
        assert not paths.changelog.exists()
