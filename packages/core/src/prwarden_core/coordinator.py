"""Per-pull-request review orchestration.

The coordinator decides, for each inbound trigger, whether to start a review
now, start one after a quiet period, or ignore it. Each review attempt runs
the pipeline fetch → analyze → normalize → place → post as its own task.

All state lives in a ``CoordinatorState`` owned by the coordinator and is only
touched from the event loop thread. Blocking GitHub calls happen in worker
threads inside the source-control client, never here, so no locking is needed.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import Callable

from prwarden_core.config import CoordinatorSettings
from prwarden_core.errors import SourceControlError
from prwarden_core.diff.line_map import DiffLineIndex, build_index, resolve_line
from prwarden_core.gh.base import SourceControl
from prwarden_core.models import (
    AnalysisResult,
    CheckConclusion,
    Finding,
    InlineComment,
    ManualReviewRequested,
    ProcessingEntry,
    PRSnapshot,
    PRTriggered,
    PullRequestRef,
    ReviewCommentCreated,
    ReviewOutcome,
    ReviewSubmitted,
    TriggerEvent,
)
from prwarden_core.normalizer import error_result, normalize
from prwarden_core.providers.base import BaseAnalyzer
from prwarden_core.reporting import (
    already_commented,
    build_check_run_summary,
    build_summary_comment,
    check_run_conclusion,
    format_inline_comment,
    human_review_stats,
)

logger = logging.getLogger(__name__)

PR_ACTIONS = frozenset({"opened", "reopened", "synchronize"})


def new_tracking_id() -> str:
    return f"ai-review-{int(time.time() * 1000)}-{uuid.uuid4().hex[:9]}"


class CoordinatorState:
    """Mutable bookkeeping for one coordinator."""

    def __init__(self):
        self.entries: dict[str, ProcessingEntry] = {}
        self.active = 0
        self.waiting = 0
        self.pending: dict[str, asyncio.Task] = {}
        self.running: set[asyncio.Task] = set()
        self.accepting = True


class ReviewCoordinator:
    def __init__(
        self,
        source_control: SourceControl,
        analyzer: BaseAnalyzer,
        settings: CoordinatorSettings | None = None,
        clock: Callable[[], float] = time.monotonic,
        bot_login: str | None = None,
    ):
        self.source_control = source_control
        self.analyzer = analyzer
        self.settings = settings or CoordinatorSettings()
        self.clock = clock
        self.bot_login = bot_login
        self.state = CoordinatorState()

    # ------------------------------------------------------------------ #
    # Triggers                                                             #
    # ------------------------------------------------------------------ #

    def handle_event(self, event: TriggerEvent) -> asyncio.Task | None:
        """Route one trigger event. Must be called from the event loop.

        Returns the task that was scheduled (a review attempt or a debounce
        timer), or None when the event was ignored.
        """
        if not self.state.accepting:
            logger.info("Shutting down; ignoring %s for %s", type(event).__name__, event.ref)
            return None
        if event.is_bot:
            logger.debug("Ignoring bot-authored %s for %s", type(event).__name__, event.ref)
            return None

        if isinstance(event, PRTriggered):
            if event.action not in PR_ACTIONS:
                logger.debug("Ignoring pull_request action %r for %s", event.action, event.ref)
                return None
            if event.draft and not self.settings.review_draft_prs:
                logger.info("Skipping draft PR %s", event.ref)
                return None
            if event.base_branch not in self.settings.target_branches:
                logger.info("Skipping %s: base branch %r is not a target branch", event.ref, event.base_branch)
                return None
            return self.start_review(event.ref, event.action)

        if isinstance(event, ManualReviewRequested):
            return self.start_review(event.ref, "manual")

        if isinstance(event, ReviewSubmitted):
            return self._debounce(event.ref, "review_submitted")
        if isinstance(event, ReviewCommentCreated):
            return self._debounce(event.ref, "review_comment")

        logger.warning("Unknown trigger event type: %s", type(event).__name__)
        return None

    def start_review(self, ref: PullRequestRef, action: str) -> asyncio.Task | None:
        """Register a processing entry and schedule one attempt, unless one is already in flight."""
        if not self.state.accepting:
            return None
        key = ref.fingerprint
        existing = self.state.entries.get(key)
        if existing is not None:
            logger.warning("[%s] %s is already being processed; ignoring %s", existing.tracking_id, key, action)
            return None

        entry = ProcessingEntry(key=key, tracking_id=new_tracking_id(), start_time=self.clock(), trigger_action=action)
        self.state.entries[key] = entry
        logger.info("[%s] Starting review of %s (trigger: %s)", entry.tracking_id, key, action)

        task = asyncio.get_running_loop().create_task(self._run_attempt(ref, entry), name=entry.tracking_id)
        self.state.running.add(task)
        task.add_done_callback(self.state.running.discard)
        return task

    async def review_now(self, ref: PullRequestRef, action: str = "manual") -> ReviewOutcome | None:
        """Run one attempt to completion. Returns None when an attempt is already in flight."""
        task = self.start_review(ref, action)
        if task is None:
            return None
        return await task

    def _debounce(self, ref: PullRequestRef, action: str) -> asyncio.Task:
        key = ref.fingerprint
        previous = self.state.pending.pop(key, None)
        if previous is not None:
            previous.cancel()
            logger.debug("Debounce timer for %s reset by %s", key, action)
        task = asyncio.get_running_loop().create_task(self._fire_after_quiet_period(ref, action))
        self.state.pending[key] = task
        logger.info("Re-analysis of %s scheduled in %.0fs (trigger: %s)", key, self.settings.debounce_seconds, action)
        return task

    async def _fire_after_quiet_period(self, ref: PullRequestRef, action: str) -> None:
        await asyncio.sleep(self.settings.debounce_seconds)
        key = ref.fingerprint
        if self.state.pending.get(key) is asyncio.current_task():
            del self.state.pending[key]
        self.start_review(ref, action)

    # ------------------------------------------------------------------ #
    # Attempt                                                              #
    # ------------------------------------------------------------------ #

    async def _run_attempt(self, ref: PullRequestRef, entry: ProcessingEntry) -> ReviewOutcome:
        try:
            await self._wait_for_capacity(entry)
            self.state.active += 1
            try:
                return await self._pipeline(ref, entry)
            finally:
                self.state.active -= 1
        finally:
            self._release(entry)

    async def _wait_for_capacity(self, entry: ProcessingEntry) -> None:
        s = self.settings
        if self.state.active < s.max_concurrent_reviews:
            return
        loop = asyncio.get_running_loop()
        deadline = loop.time() + s.concurrency_wait_seconds
        logger.info("[%s] %d review(s) active; waiting for a free slot", entry.tracking_id, self.state.active)
        self.state.waiting += 1
        try:
            while self.state.active >= s.max_concurrent_reviews and loop.time() < deadline:
                await asyncio.sleep(s.concurrency_poll_seconds)
        finally:
            self.state.waiting -= 1
        if self.state.active >= s.max_concurrent_reviews:
            logger.warning("[%s] No free slot after %.0fs; proceeding anyway", entry.tracking_id, s.concurrency_wait_seconds)

    def _release(self, entry: ProcessingEntry) -> None:
        current = self.state.entries.get(entry.key)
        if current is not None and current.tracking_id == entry.tracking_id:
            del self.state.entries[entry.key]
        else:
            logger.debug("[%s] Entry for %s was reaped or replaced; leaving it alone", entry.tracking_id, entry.key)

    async def _pipeline(self, ref: PullRequestRef, entry: ProcessingEntry) -> ReviewOutcome:
        tid = entry.tracking_id
        outcome = ReviewOutcome(tracking_id=tid, ref=ref)
        snapshot: PRSnapshot | None = None
        check_run_id: int | None = None
        started = time.monotonic()
        try:
            snapshot = await self.source_control.get_pr_snapshot(ref)
            if not snapshot.analyzable_files:
                logger.info("[%s] %s has no analyzable files; nothing to review", tid, ref)
                outcome.skipped_reason = "no analyzable files"
                return outcome

            check_run_id = await self._start_check_run(ref, snapshot.head_sha, tid)
            logger.info("[%s] Analyzing %d file(s) with %s", tid, len(snapshot.analyzable_files), self.analyzer.name)
            raw = await self.analyzer.run_analysis(snapshot)
            result = normalize(raw)
            outcome.result = result
            if result.parse_error:
                logger.warning("[%s] Analysis response could not be parsed: %s", tid, result.parse_error)

            placed = self._place_findings(snapshot, result)
            posted = await self.source_control.post_inline_comments(
                ref, snapshot.head_sha, [comment for _, comment in placed]
            )
            self._mark_posted(placed, posted)
            outcome.inline_posted = len(posted)

            stats = human_review_stats(snapshot.existing_comments, self.bot_login)
            body = build_summary_comment(snapshot, result, outcome.inline_posted, stats, tid)
            await self.source_control.post_summary_comment(ref, body)
            outcome.summary_posted = True
            await self._complete_check_run(
                ref,
                check_run_id,
                check_run_conclusion(result),
                "AI Code Review Completed",
                build_check_run_summary(result, outcome.inline_posted),
                outcome,
            )
            logger.info(
                "[%s] Review of %s complete: %d finding(s), %d inline, %.1fs",
                tid,
                ref,
                result.summary.total_issues,
                outcome.inline_posted,
                time.monotonic() - started,
            )
        except Exception as e:
            logger.exception("[%s] Review of %s failed: %s", tid, ref, e)
            outcome.error = str(e)
            outcome.result = error_result(f"The automated review failed: {e}")
            try:
                body = build_summary_comment(snapshot, outcome.result, tracking_id=tid)
                await self.source_control.post_summary_comment(ref, body)
                outcome.summary_posted = True
            except Exception as post_error:
                logger.error("[%s] Could not post error comment on %s: %s", tid, ref, post_error)
            await self._complete_check_run(
                ref,
                check_run_id,
                CheckConclusion.FAILURE,
                "AI Code Review Failed",
                f"An error occurred during the AI code review: {e}",
                outcome,
            )
        return outcome

    async def _start_check_run(self, ref: PullRequestRef, head_sha: str, tid: str) -> int | None:
        if not self.settings.check_runs:
            return None
        try:
            return await self.source_control.start_check_run(ref, head_sha)
        except SourceControlError as e:
            logger.warning("[%s] Could not create check run on %s: %s", tid, ref, e)
            return None

    async def _complete_check_run(
        self,
        ref: PullRequestRef,
        check_run_id: int | None,
        conclusion: CheckConclusion,
        title: str,
        summary: str,
        outcome: ReviewOutcome,
    ) -> None:
        if check_run_id is None:
            return
        try:
            await self.source_control.complete_check_run(ref, check_run_id, conclusion, title, summary)
        except SourceControlError as e:
            logger.warning("[%s] Could not complete check run %s on %s: %s", outcome.tracking_id, check_run_id, ref, e)
            return
        outcome.check_conclusion = conclusion

    def _place_findings(self, snapshot: PRSnapshot, result: AnalysisResult) -> list[tuple[Finding, InlineComment]]:
        """Resolve each finding to a commentable line and build the inline comments to post."""
        indexes: dict[str, DiffLineIndex] = {}
        queued: set[tuple] = set()
        placed: list[tuple[Finding, InlineComment]] = []
        for finding in result.findings:
            if finding.is_sentinel:
                continue
            f = snapshot.file(finding.file)
            if f is None:
                logger.debug("Finding on %s does not match a file in the pull request", finding.file)
                continue
            if finding.file not in indexes:
                indexes[finding.file] = build_index(f.patch)
            line = resolve_line(
                indexes[finding.file],
                finding.line,
                window=self.settings.line_window,
                prefer_after=self.settings.prefer_after,
            )
            finding.resolved_line = line
            if line is None:
                logger.debug("No commentable line near %s:%d", finding.file, finding.line)
                continue
            body = format_inline_comment(finding)
            if already_commented(snapshot.existing_comments, finding.file, line, body, queued):
                logger.debug("Skipping duplicate comment for %s:%d", finding.file, line)
                continue
            queued.add((finding.file, line, body.strip()))
            placed.append((finding, InlineComment(path=finding.file, line=line, body=body)))
        return placed

    @staticmethod
    def _mark_posted(placed: list[tuple[Finding, InlineComment]], posted: list[InlineComment]) -> None:
        accepted = set(posted)
        for finding, comment in placed:
            if comment in accepted:
                finding.posted = True
            else:
                # Rejected by GitHub: report it as a general remark instead.
                finding.resolved_line = None

    # ------------------------------------------------------------------ #
    # Housekeeping                                                         #
    # ------------------------------------------------------------------ #

    def reap_stale(self) -> list[str]:
        """Drop entries older than stale_entry_seconds and return their keys."""
        now = self.clock()
        stale = [
            entry
            for entry in self.state.entries.values()
            if now - entry.start_time > self.settings.stale_entry_seconds
        ]
        for entry in stale:
            logger.warning(
                "[%s] Reaping stale entry for %s (running for %.0fs)", entry.tracking_id, entry.key, now - entry.start_time
            )
            del self.state.entries[entry.key]
        return [entry.key for entry in stale]

    async def run_reaper(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            self.reap_stale()

    async def shutdown(self, timeout: float | None = None) -> None:
        """Stop accepting triggers, drop pending timers and wait for running attempts."""
        if timeout is None:
            timeout = self.settings.shutdown_timeout_seconds
        self.state.accepting = False
        for key, task in list(self.state.pending.items()):
            task.cancel()
            logger.info("Cancelled pending re-analysis of %s", key)
        self.state.pending.clear()

        running = list(self.state.running)
        if not running:
            return
        logger.info("Waiting up to %.0fs for %d running review(s)", timeout, len(running))
        _, not_done = await asyncio.wait(running, timeout=timeout)
        if not_done:
            logger.warning(
                "Shutdown timeout reached with %d review(s) still running: %s",
                len(not_done),
                ", ".join(sorted(t.get_name() for t in not_done)),
            )

    def status(self) -> dict:
        return {
            "accepting": self.state.accepting,
            "active_reviews": self.state.active,
            "queue_size": self.state.waiting,
            "max_concurrent": self.settings.max_concurrent_reviews,
            "pending_debounces": sorted(self.state.pending),
            "entries": [
                {
                    "key": e.key,
                    "tracking_id": e.tracking_id,
                    "trigger_action": e.trigger_action,
                    "started_at": e.started_at,
                }
                for e in self.state.entries.values()
            ],
        }
