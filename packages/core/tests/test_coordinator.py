"""Tests for the review coordinator: triggers, dedup, concurrency, debounce and the pipeline."""

import asyncio
import dataclasses
import json
import re

import pytest

from prwarden_core.config import CoordinatorSettings
from prwarden_core.coordinator import ReviewCoordinator, new_tracking_id
from prwarden_core.errors import AnalysisProviderError, SourceControlError
from prwarden_core.gh.base import SourceControl
from prwarden_core.models import (
    PARSE_ERROR_FILE,
    PIPELINE_ERROR_FILE,
    Category,
    CheckConclusion,
    ExistingComment,
    FileDiff,
    FileStatus,
    Finding,
    ManualReviewRequested,
    PRSnapshot,
    PRTriggered,
    PullRequestRef,
    ReviewCommentCreated,
    ReviewSubmitted,
    Severity,
)
from prwarden_core.providers.base import BaseAnalyzer
from prwarden_core.reporting import format_inline_comment

PATCH = """\
@@ -1,3 +1,5 @@
 import os
+x = compute()
 y = 2
+z = x / y
 return z"""

SNAPSHOT = PRSnapshot(
    ref=PullRequestRef("acme", "shop", 1),
    title="Compute z",
    head_sha="e" * 40,
    author="alice",
    base_branch="main",
    files=(FileDiff("src/app.py", FileStatus.MODIFIED, PATCH, additions=2),),
)


def _raw(*findings):
    return json.dumps({"detailedFindings": list(findings), "reviewAssessment": "REVIEW_REQUIRED"})


class FakeSourceControl(SourceControl):
    def __init__(
        self, snapshot=SNAPSHOT, fetch_error=None, fail_summary=False, reject_inline=False, fail_check_runs=False
    ):
        self.snapshot = snapshot
        self.fetch_error = fetch_error
        self.fail_summary = fail_summary
        self.reject_inline = reject_inline
        self.fail_check_runs = fail_check_runs
        self.summaries = []
        self.inline = []
        self.check_runs = {}

    async def get_pr_snapshot(self, ref):
        if self.fetch_error is not None:
            raise self.fetch_error
        return dataclasses.replace(self.snapshot, ref=ref)

    async def post_summary_comment(self, ref, text):
        if self.fail_summary:
            raise SourceControlError("cannot post")
        self.summaries.append((ref, text))

    async def post_inline_comments(self, ref, head_sha, comments):
        self.inline.append((ref, head_sha, list(comments)))
        return [] if self.reject_inline else list(comments)

    async def start_check_run(self, ref, head_sha):
        if self.fail_check_runs:
            raise SourceControlError("Resource not accessible by integration")
        check_run_id = len(self.check_runs) + 1
        self.check_runs[check_run_id] = {"ref": ref, "head_sha": head_sha, "status": "in_progress"}
        return check_run_id

    async def complete_check_run(self, ref, check_run_id, conclusion, title, summary):
        self.check_runs[check_run_id].update(status="completed", conclusion=conclusion, title=title, summary=summary)


class FakeAnalyzer(BaseAnalyzer):
    def __init__(self, raw=None, error=None, gate=None):
        super().__init__()
        self.raw = raw if raw is not None else _raw()
        self.error = error
        self.gate = gate
        self.calls = 0

    async def run_analysis(self, snapshot):
        self.calls += 1
        gate = self.gate
        if gate is not None:
            await gate.wait()
        if self.error is not None:
            raise self.error
        return self.raw

    async def _call_api(self, system_prompt, user_prompt):
        raise NotImplementedError


def _settings(**kwargs):
    defaults = dict(
        debounce_seconds=0.05,
        concurrency_poll_seconds=0.01,
        concurrency_wait_seconds=5.0,
        shutdown_timeout_seconds=1.0,
    )
    defaults.update(kwargs)
    return CoordinatorSettings(**defaults)


def _coordinator(source=None, analyzer=None, **settings):
    return ReviewCoordinator(
        source_control=source or FakeSourceControl(),
        analyzer=analyzer or FakeAnalyzer(),
        settings=_settings(**settings),
    )


def _ref(number=1):
    return PullRequestRef("acme", "shop", number)


def _opened(number=1, action="opened", draft=False, base="main", is_bot=False):
    return PRTriggered(ref=_ref(number), action=action, draft=draft, base_branch=base, is_bot=is_bot)


async def _until(predicate, timeout=1.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


async def _drain(coordinator):
    while coordinator.state.running:
        await asyncio.gather(*list(coordinator.state.running), return_exceptions=True)


def test_tracking_id_format():
    assert re.fullmatch(r"ai-review-\d+-[0-9a-f]{9}", new_tracking_id())


class TestEventRouting:
    @pytest.mark.asyncio
    async def test_opened_pr_starts_review(self):
        coordinator = _coordinator()
        task = coordinator.handle_event(_opened())
        assert task is not None
        outcome = await task
        assert outcome.summary_posted is True
        assert coordinator.analyzer.calls == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "event",
        [
            _opened(action="closed"),
            _opened(action="edited"),
            _opened(draft=True),
            _opened(base="feature/x"),
            _opened(is_bot=True),
            ReviewSubmitted(ref=_ref(), is_bot=True),
            ReviewCommentCreated(ref=_ref(), is_bot=True),
            ManualReviewRequested(ref=_ref(), is_bot=True),
        ],
    )
    async def test_ignored_events(self, event):
        coordinator = _coordinator()
        assert coordinator.handle_event(event) is None
        assert coordinator.state.entries == {}
        assert coordinator.state.pending == {}

    @pytest.mark.asyncio
    async def test_drafts_reviewed_when_enabled(self):
        coordinator = _coordinator(review_draft_prs=True)
        task = coordinator.handle_event(_opened(draft=True))
        assert task is not None
        await task

    @pytest.mark.asyncio
    async def test_manual_request_starts_immediately(self):
        coordinator = _coordinator()
        task = coordinator.handle_event(ManualReviewRequested(ref=_ref()))
        assert coordinator.status()["entries"][0]["trigger_action"] == "manual"
        await task
        assert coordinator.analyzer.calls == 1


class TestDedup:
    @pytest.mark.asyncio
    async def test_simultaneous_triggers_run_once(self):
        coordinator = _coordinator()
        first = coordinator.handle_event(_opened())
        second = coordinator.handle_event(_opened(action="synchronize"))
        assert first is not None
        assert second is None
        await first
        assert coordinator.analyzer.calls == 1
        assert coordinator.state.entries == {}

    @pytest.mark.asyncio
    async def test_different_prs_run_concurrently(self):
        coordinator = _coordinator()
        tasks = [coordinator.handle_event(_opened(n)) for n in (1, 2, 3)]
        assert all(t is not None for t in tasks)
        await asyncio.gather(*tasks)
        assert coordinator.analyzer.calls == 3

    @pytest.mark.asyncio
    async def test_crashed_attempt_releases_entry(self):
        analyzer = FakeAnalyzer(error=AnalysisProviderError("provider down"))
        source = FakeSourceControl()
        coordinator = _coordinator(source, analyzer)

        outcome = await coordinator.handle_event(_opened())

        assert outcome.error == "provider down"
        assert outcome.result.findings[0].file == PIPELINE_ERROR_FILE
        assert outcome.summary_posted is True
        assert PIPELINE_ERROR_FILE in source.summaries[0][1]
        assert coordinator.state.entries == {}
        assert coordinator.state.active == 0

        analyzer.error = None
        outcome = await coordinator.handle_event(_opened(action="synchronize"))
        assert outcome.error is None
        assert analyzer.calls == 2

    @pytest.mark.asyncio
    async def test_error_comment_failure_is_only_logged(self):
        source = FakeSourceControl(fetch_error=SourceControlError("GitHub down"), fail_summary=True)
        coordinator = _coordinator(source)
        outcome = await coordinator.handle_event(_opened())
        assert outcome.error == "GitHub down"
        assert outcome.summary_posted is False
        assert coordinator.state.entries == {}

    @pytest.mark.asyncio
    async def test_review_now_returns_outcome_or_none_when_busy(self):
        gate = asyncio.Event()
        coordinator = _coordinator(analyzer=FakeAnalyzer(gate=gate))
        running = asyncio.create_task(coordinator.review_now(_ref()))
        await _until(lambda: coordinator.analyzer.calls == 1)

        assert await coordinator.review_now(_ref()) is None

        gate.set()
        outcome = await running
        assert outcome.tracking_id.startswith("ai-review-")
        assert outcome.summary_posted is True


class TestDebounce:
    @pytest.mark.asyncio
    async def test_burst_of_review_comments_runs_once(self):
        coordinator = _coordinator()
        handles = [coordinator.handle_event(ReviewCommentCreated(ref=_ref())) for _ in range(3)]
        assert all(h is not None for h in handles)
        assert list(coordinator.state.pending) == ["acme/shop#1"]

        await handles[-1]
        await _drain(coordinator)

        assert handles[0].cancelled() and handles[1].cancelled()
        assert coordinator.analyzer.calls == 1
        assert coordinator.state.pending == {}

    @pytest.mark.asyncio
    async def test_review_submitted_and_comment_share_one_timer(self):
        coordinator = _coordinator()
        coordinator.handle_event(ReviewSubmitted(ref=_ref()))
        last = coordinator.handle_event(ReviewCommentCreated(ref=_ref()))
        await last
        await _drain(coordinator)
        assert coordinator.analyzer.calls == 1

    @pytest.mark.asyncio
    async def test_timers_are_per_pull_request(self):
        coordinator = _coordinator()
        a = coordinator.handle_event(ReviewSubmitted(ref=_ref(1)))
        b = coordinator.handle_event(ReviewSubmitted(ref=_ref(2)))
        await asyncio.gather(a, b)
        await _drain(coordinator)
        assert coordinator.analyzer.calls == 2

    @pytest.mark.asyncio
    async def test_fired_timer_respects_dedup(self):
        gate = asyncio.Event()
        coordinator = _coordinator(analyzer=FakeAnalyzer(gate=gate))
        attempt = coordinator.handle_event(_opened())
        await _until(lambda: coordinator.analyzer.calls == 1)

        await coordinator.handle_event(ReviewCommentCreated(ref=_ref()))
        assert len(coordinator.state.running) == 1

        gate.set()
        await attempt
        assert coordinator.analyzer.calls == 1


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_ceiling_delays_but_does_not_drop(self):
        gate = asyncio.Event()
        coordinator = _coordinator(analyzer=FakeAnalyzer(gate=gate), max_concurrent_reviews=1)
        first = coordinator.handle_event(_opened(1))
        second = coordinator.handle_event(_opened(2))

        await _until(lambda: coordinator.analyzer.calls == 1)
        await asyncio.sleep(0.05)
        assert coordinator.analyzer.calls == 1
        status = coordinator.status()
        assert status["active_reviews"] == 1
        assert status["queue_size"] == 1
        assert len(status["entries"]) == 2

        gate.set()
        await asyncio.gather(first, second)
        assert coordinator.analyzer.calls == 2
        assert coordinator.state.active == 0

    @pytest.mark.asyncio
    async def test_proceeds_after_wait_limit(self):
        gate = asyncio.Event()
        coordinator = _coordinator(
            analyzer=FakeAnalyzer(gate=gate), max_concurrent_reviews=1, concurrency_wait_seconds=0.05
        )
        first = coordinator.handle_event(_opened(1))
        second = coordinator.handle_event(_opened(2))

        await _until(lambda: coordinator.analyzer.calls == 2)
        assert coordinator.state.active == 2

        gate.set()
        await asyncio.gather(first, second)


class TestReaping:
    @pytest.mark.asyncio
    async def test_stale_entries_reaped_and_replacement_kept(self):
        now = [1000.0]
        gate_one, gate_two = asyncio.Event(), asyncio.Event()
        analyzer = FakeAnalyzer(gate=gate_one)
        coordinator = ReviewCoordinator(FakeSourceControl(), analyzer, _settings(), clock=lambda: now[0])

        first = coordinator.handle_event(_opened())
        await _until(lambda: analyzer.calls == 1)
        assert coordinator.reap_stale() == []

        now[0] += 901
        assert coordinator.reap_stale() == ["acme/shop#1"]
        assert coordinator.state.entries == {}

        analyzer.gate = gate_two
        second = coordinator.handle_event(_opened(action="synchronize"))
        assert second is not None
        await _until(lambda: analyzer.calls == 2)
        second_id = coordinator.state.entries["acme/shop#1"].tracking_id

        gate_one.set()
        await first
        assert coordinator.state.entries["acme/shop#1"].tracking_id == second_id

        gate_two.set()
        await second
        assert coordinator.state.entries == {}

    @pytest.mark.asyncio
    async def test_run_reaper_loops(self):
        now = [0.0]
        gate = asyncio.Event()
        coordinator = ReviewCoordinator(
            FakeSourceControl(), FakeAnalyzer(gate=gate), _settings(stale_entry_seconds=10), clock=lambda: now[0]
        )
        attempt = coordinator.handle_event(_opened())
        now[0] = 11
        reaper = asyncio.create_task(coordinator.run_reaper(0.01))
        await _until(lambda: coordinator.state.entries == {})
        reaper.cancel()
        gate.set()
        await attempt


class TestShutdown:
    @pytest.mark.asyncio
    async def test_cancels_timers_and_waits_for_running(self):
        gate = asyncio.Event()
        coordinator = _coordinator(analyzer=FakeAnalyzer(gate=gate), debounce_seconds=10)
        timer = coordinator.handle_event(ReviewSubmitted(ref=_ref(2)))
        attempt = coordinator.handle_event(_opened(1))
        asyncio.get_running_loop().call_later(0.02, gate.set)

        await coordinator.shutdown(timeout=1.0)

        assert attempt.done()
        await asyncio.sleep(0)
        assert timer.cancelled()
        assert coordinator.state.pending == {}
        assert coordinator.handle_event(_opened(3)) is None
        assert coordinator.status()["accepting"] is False

    @pytest.mark.asyncio
    async def test_timeout_leaves_attempt_running(self):
        gate = asyncio.Event()
        coordinator = _coordinator(analyzer=FakeAnalyzer(gate=gate))
        attempt = coordinator.handle_event(_opened())
        await coordinator.shutdown(timeout=0.02)
        assert not attempt.done()
        gate.set()
        await attempt


class TestPipeline:
    @pytest.mark.asyncio
    async def test_findings_placed_relocated_or_kept_general(self):
        raw = _raw(
            {"file": "src/app.py", "line": 2, "issue": "compute() may raise", "severity": "MAJOR", "category": "BUG"},
            {"file": "src/app.py", "line": 7, "issue": "Division by zero", "severity": "CRITICAL"},
            {"file": "src/app.py", "line": 40, "issue": "Far from the diff"},
            {"file": "unknown.py", "line": 3, "issue": "Not in this PR"},
        )
        source = FakeSourceControl()
        coordinator = _coordinator(source, FakeAnalyzer(raw=raw))

        outcome = await coordinator.handle_event(_opened())

        exact, relocated, far, unknown = outcome.result.findings
        assert (exact.resolved_line, exact.posted) == (2, True)
        assert (relocated.line, relocated.resolved_line, relocated.posted) == (7, 4, True)
        assert far.resolved_line is None and far.posted is False
        assert unknown.resolved_line is None and unknown.posted is False

        (_, head_sha, comments), = source.inline
        assert head_sha == "e" * 40
        assert [(c.path, c.line) for c in comments] == [("src/app.py", 2), ("src/app.py", 4)]
        assert outcome.inline_posted == 2

        (_, summary), = source.summaries
        assert "### General remarks" in summary
        assert "`src/app.py:40`: Far from the diff" in summary
        assert "`unknown.py:3`: Not in this PR" in summary
        assert "compute() may raise" not in summary
        assert outcome.tracking_id in summary

    @pytest.mark.asyncio
    async def test_existing_identical_comment_not_repeated(self):
        finding = Finding("src/app.py", 2, "compute() may raise", Severity.MAJOR, Category.BUG, resolved_line=2)
        existing = ExistingComment(9, format_inline_comment(finding), "prwarden[bot]", path="src/app.py", line=2)
        source = FakeSourceControl(snapshot=dataclasses.replace(SNAPSHOT, existing_comments=(existing,)))
        raw = _raw(
            {"file": "src/app.py", "line": 2, "issue": "compute() may raise", "severity": "MAJOR", "category": "BUG"},
            {"file": "src/app.py", "line": 2, "issue": "compute() may raise", "severity": "MAJOR", "category": "BUG"},
        )
        coordinator = _coordinator(source, FakeAnalyzer(raw=raw))

        outcome = await coordinator.handle_event(_opened())

        assert source.inline[0][2] == []
        assert outcome.inline_posted == 0

    @pytest.mark.asyncio
    async def test_duplicate_findings_in_one_response_posted_once(self):
        raw = _raw(
            {"file": "src/app.py", "line": 4, "issue": "Division by zero"},
            {"file": "src/app.py", "line": 4, "issue": "Division by zero"},
        )
        source = FakeSourceControl()
        await _coordinator(source, FakeAnalyzer(raw=raw)).handle_event(_opened())
        assert len(source.inline[0][2]) == 1

    @pytest.mark.asyncio
    async def test_rejected_inline_comments_become_general_remarks(self):
        raw = _raw({"file": "src/app.py", "line": 2, "issue": "compute() may raise"})
        source = FakeSourceControl(reject_inline=True)
        outcome = await _coordinator(source, FakeAnalyzer(raw=raw)).handle_event(_opened())

        finding = outcome.result.findings[0]
        assert finding.posted is False
        assert finding.resolved_line is None
        assert "`src/app.py:2`: compute() may raise" in source.summaries[0][1]

    @pytest.mark.asyncio
    async def test_no_analyzable_files_short_circuits(self):
        snapshot = dataclasses.replace(
            SNAPSHOT,
            files=(
                FileDiff("gone.py", FileStatus.DELETED, "@@ -1 +0,0 @@\n-x"),
                FileDiff("huge.py", FileStatus.MODIFIED, None),
            ),
        )
        source = FakeSourceControl(snapshot=snapshot)
        coordinator = _coordinator(source)

        outcome = await coordinator.handle_event(_opened())

        assert outcome.skipped_reason == "no analyzable files"
        assert coordinator.analyzer.calls == 0
        assert source.summaries == [] and source.inline == []
        assert coordinator.state.entries == {}

    @pytest.mark.asyncio
    async def test_unparseable_response_posts_parse_error_summary(self):
        source = FakeSourceControl()
        outcome = await _coordinator(source, FakeAnalyzer(raw="Sorry, I can't help with that.")).handle_event(
            _opened()
        )

        assert outcome.error is None
        assert outcome.result.parse_error
        assert source.inline[0][2] == []
        assert PARSE_ERROR_FILE in source.summaries[0][1]

    @pytest.mark.asyncio
    async def test_window_setting_is_used(self):
        raw = _raw({"file": "src/app.py", "line": 7, "issue": "Division by zero"})
        outcome = await _coordinator(analyzer=FakeAnalyzer(raw=raw), line_window=2).handle_event(_opened())
        assert outcome.result.findings[0].resolved_line is None


class TestCheckRuns:
    @pytest.mark.asyncio
    async def test_completed_with_conclusion_from_result(self):
        raw = _raw({"file": "src/app.py", "line": 4, "issue": "Division by zero", "severity": "BLOCKER"})
        source = FakeSourceControl()
        outcome = await _coordinator(source, FakeAnalyzer(raw=raw)).handle_event(_opened())

        (run,) = source.check_runs.values()
        assert run["head_sha"] == "e" * 40
        assert run["status"] == "completed"
        assert run["conclusion"] is CheckConclusion.FAILURE
        assert run["title"] == "AI Code Review Completed"
        assert outcome.check_conclusion is CheckConclusion.FAILURE

    @pytest.mark.asyncio
    async def test_pipeline_error_fails_check_run(self):
        source = FakeSourceControl()
        analyzer = FakeAnalyzer(error=AnalysisProviderError("rate limited"))
        outcome = await _coordinator(source, analyzer).handle_event(_opened())

        (run,) = source.check_runs.values()
        assert run["conclusion"] is CheckConclusion.FAILURE
        assert run["title"] == "AI Code Review Failed"
        assert "rate limited" in run["summary"]
        assert outcome.error == "rate limited"

    @pytest.mark.asyncio
    async def test_check_run_failure_does_not_block_review(self):
        source = FakeSourceControl(fail_check_runs=True)
        outcome = await _coordinator(source).handle_event(_opened())

        assert outcome.error is None
        assert outcome.summary_posted is True
        assert outcome.check_conclusion is None

    @pytest.mark.asyncio
    async def test_disabled_and_skipped_reviews_create_no_check_run(self):
        source = FakeSourceControl()
        await _coordinator(source, check_runs=False).handle_event(_opened())
        assert source.check_runs == {}

        empty = FakeSourceControl(snapshot=dataclasses.replace(SNAPSHOT, files=()))
        await _coordinator(empty).handle_event(_opened())
        assert empty.check_runs == {}
