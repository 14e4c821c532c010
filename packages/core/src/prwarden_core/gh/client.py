"""PyGithub-backed implementation of the SourceControl interface.

PyGithub is synchronous. Each public coroutine runs its blocking body in a
worker thread with ``asyncio.to_thread`` so a slow GitHub call never stalls
the event loop that drives every other review. The worker threads only see
the arguments they are given; coordinator state stays on the loop thread.
"""

from __future__ import annotations

import asyncio
import logging
import time

from github import GithubException

from prwarden_core.errors import SourceControlError
from prwarden_core.gh.base import SourceControl
from prwarden_core.gh.pull_request import (
    get_diff,
    get_issue_comments,
    get_pull,
    get_repo,
    get_review_comments,
    get_reviewers,
)
from prwarden_core.models import (
    CheckConclusion,
    ExistingComment,
    FileDiff,
    FileStatus,
    InlineComment,
    PRSnapshot,
    PullRequestRef,
)
from prwarden_core.utils.code import is_code_file, is_excluded

logger = logging.getLogger(__name__)

# Pause between individual posts when the bulk review was rejected.
_FALLBACK_POST_DELAY = 0.5


def _login(user) -> str:
    return user.login if user is not None else "ghost"


def _iso(value) -> str | None:
    return value.isoformat() if value is not None else None


class GitHubClient(SourceControl):
    def __init__(self, token: str | None, config: dict | None = None):
        config = config or {}
        self.token = token
        self.exclude_patterns: list[str] = list(config.get("exclude", []))
        self.max_files: int = int(config.get("max_files_to_analyze", 20))
        self.max_file_changes: int = int(config.get("max_file_changes", 100_000))
        self.batch_limit: int = int(config.get("batch_limit", 60))
        self.check_run_name: str = config.get("check_run_name") or "AI Code Review"
        self._repos: dict[str, object] = {}

    # ------------------------------------------------------------------ #
    # SourceControl                                                        #
    # ------------------------------------------------------------------ #

    async def get_pr_snapshot(self, ref: PullRequestRef) -> PRSnapshot:
        return await asyncio.to_thread(self._fetch_snapshot, ref)

    async def post_summary_comment(self, ref: PullRequestRef, text: str) -> None:
        await asyncio.to_thread(self._post_summary, ref, text)

    async def post_inline_comments(
        self,
        ref: PullRequestRef,
        head_sha: str,
        comments: list[InlineComment],
    ) -> list[InlineComment]:
        if not comments:
            return []
        return await asyncio.to_thread(self._post_inline, ref, head_sha, comments)

    async def start_check_run(self, ref: PullRequestRef, head_sha: str) -> int:
        return await asyncio.to_thread(self._start_check_run, ref, head_sha)

    async def complete_check_run(
        self,
        ref: PullRequestRef,
        check_run_id: int,
        conclusion: CheckConclusion,
        title: str,
        summary: str,
    ) -> None:
        await asyncio.to_thread(self._complete_check_run, ref, check_run_id, conclusion, title, summary)

    # ------------------------------------------------------------------ #
    # Blocking helpers (run in worker threads)                             #
    # ------------------------------------------------------------------ #

    def _repo(self, ref: PullRequestRef):
        repo = self._repos.get(ref.full_name)
        if repo is None:
            repo = get_repo(ref.full_name, token=self.token)
            self._repos[ref.full_name] = repo
        return repo

    def _pull(self, ref: PullRequestRef):
        try:
            return get_pull(self._repo(ref), ref.number)
        except GithubException as e:
            raise SourceControlError(f"Could not load pull request {ref}: {e}") from e

    def filter_files(self, files) -> list[FileDiff]:
        """Keep reviewable files, capped at max_files_to_analyze.

        Oversized files are kept without a patch so their findings degrade to
        general remarks instead of being dropped.
        """
        result: list[FileDiff] = []
        for f in files:
            if is_excluded(f.filename, self.exclude_patterns) or not is_code_file(f.filename):
                logger.debug("Skipping %s (excluded or not code)", f.filename)
                continue
            patch = f.patch
            if (f.changes or 0) > self.max_file_changes:
                logger.info("Dropping patch for %s: %d changes exceeds limit", f.filename, f.changes)
                patch = None
            result.append(
                FileDiff(
                    filename=f.filename,
                    status=FileStatus.from_github(f.status),
                    patch=patch,
                    additions=f.additions or 0,
                    deletions=f.deletions or 0,
                )
            )
            if len(result) >= self.max_files:
                break
        return result

    def _fetch_snapshot(self, ref: PullRequestRef) -> PRSnapshot:
        logger.info("Fetching PR data for %s", ref)
        pr = self._pull(ref)
        try:
            files = self.filter_files(sorted(get_diff(pr), key=lambda f: f.filename))
            comments = [
                ExistingComment(
                    id=c.id,
                    body=c.body or "",
                    user=_login(c.user),
                    created_at=_iso(c.created_at),
                    path=c.path,
                    # c.line is None for comments whose line no longer exists in the
                    # current diff (e.g. after a force-push). Fall back to original_line.
                    line=c.line if c.line is not None else getattr(c, "original_line", None),
                    kind="review",
                )
                for c in get_review_comments(pr)
            ]
            comments += [
                ExistingComment(
                    id=c.id,
                    body=c.body or "",
                    user=_login(c.user),
                    created_at=_iso(c.created_at),
                    kind="issue",
                )
                for c in get_issue_comments(pr)
            ]
            reviewers = get_reviewers(pr)
        except GithubException as e:
            raise SourceControlError(f"Failed to fetch PR data for {ref}: {e}") from e

        comments.sort(key=lambda c: c.created_at or "")
        return PRSnapshot(
            ref=ref,
            title=pr.title or "",
            body=pr.body or "",
            author=_login(pr.user),
            base_branch=pr.base.ref,
            head_branch=pr.head.ref,
            head_sha=pr.head.sha,
            url=pr.html_url or "",
            files=tuple(files),
            existing_comments=tuple(comments),
            reviewers=tuple(reviewers),
        )

    def _post_summary(self, ref: PullRequestRef, text: str) -> None:
        pr = self._pull(ref)
        try:
            comment = pr.create_issue_comment(text)
        except GithubException as e:
            raise SourceControlError(f"Failed to post summary comment on {ref}: {e}") from e
        logger.info("Summary comment posted on %s: %s", ref, comment.id)

    def _post_inline(self, ref: PullRequestRef, head_sha: str, comments: list[InlineComment]) -> list[InlineComment]:
        pr = self._pull(ref)
        try:
            commit = self._repo(ref).get_commit(head_sha)
        except GithubException as e:
            raise SourceControlError(f"Could not load head commit {head_sha[:7]} of {ref}: {e}") from e

        posted: list[InlineComment] = []
        batches = [comments[i : i + self.batch_limit] for i in range(0, len(comments), self.batch_limit)]
        for batch in batches:
            api_comments = [{"path": c.path, "line": c.line, "side": "RIGHT", "body": c.body} for c in batch]
            try:
                pr.create_review(commit=commit, body="", event="COMMENT", comments=api_comments)
                posted.extend(batch)
                logger.info("Posted %d inline comment(s) in one review on %s", len(batch), ref)
            except GithubException as e:
                logger.warning("Bulk review post failed on %s (%s); posting comments individually", ref, e)
                posted.extend(self._post_individually(pr, commit, ref, batch))
        return posted

    def _post_individually(self, pr, commit, ref: PullRequestRef, comments: list[InlineComment]) -> list[InlineComment]:
        posted: list[InlineComment] = []
        for i, c in enumerate(comments):
            if i > 0:
                time.sleep(_FALLBACK_POST_DELAY)
            try:
                pr.create_review_comment(body=c.body, commit=commit, path=c.path, line=c.line, side="RIGHT")
                posted.append(c)
            except GithubException as e:
                logger.error("Could not post comment on %s:%d: %s", c.path, c.line, e)
        logger.info("Fallback posting on %s: %d/%d comment(s) accepted", ref, len(posted), len(comments))
        return posted

    def _start_check_run(self, ref: PullRequestRef, head_sha: str) -> int:
        try:
            check_run = self._repo(ref).create_check_run(
                name=self.check_run_name,
                head_sha=head_sha,
                status="in_progress",
                output={"title": "AI review in progress", "summary": "AI review in progress..."},
            )
        except GithubException as e:
            raise SourceControlError(f"Could not create check run on {ref}: {e}") from e
        logger.info("Check run %s started on %s (%s)", check_run.id, ref, head_sha[:7])
        return check_run.id

    def _complete_check_run(
        self,
        ref: PullRequestRef,
        check_run_id: int,
        conclusion: CheckConclusion,
        title: str,
        summary: str,
    ) -> None:
        try:
            check_run = self._repo(ref).get_check_run(check_run_id)
            check_run.edit(
                status="completed",
                conclusion=conclusion.value,
                output={"title": title, "summary": summary},
            )
        except GithubException as e:
            raise SourceControlError(f"Could not complete check run {check_run_id} on {ref}: {e}") from e
        logger.info("Check run %s on %s completed: %s", check_run_id, ref, conclusion.value)
