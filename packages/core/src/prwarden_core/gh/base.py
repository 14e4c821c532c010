"""Source-control interface consumed by the review coordinator."""

from __future__ import annotations

from abc import ABC, abstractmethod

from prwarden_core.models import CheckConclusion, InlineComment, PRSnapshot, PullRequestRef


class SourceControl(ABC):
    @abstractmethod
    async def get_pr_snapshot(self, ref: PullRequestRef) -> PRSnapshot:
        """Fetch files, patches, existing comments and metadata for one pull request."""

    @abstractmethod
    async def post_summary_comment(self, ref: PullRequestRef, text: str) -> None:
        """Post one conversation comment on the pull request."""

    @abstractmethod
    async def post_inline_comments(
        self,
        ref: PullRequestRef,
        head_sha: str,
        comments: list[InlineComment],
    ) -> list[InlineComment]:
        """Post line-anchored review comments and return the ones that were accepted."""

    @abstractmethod
    async def start_check_run(self, ref: PullRequestRef, head_sha: str) -> int:
        """Create an in-progress check run on the head commit and return its id."""

    @abstractmethod
    async def complete_check_run(
        self,
        ref: PullRequestRef,
        check_run_id: int,
        conclusion: CheckConclusion,
        title: str,
        summary: str,
    ) -> None:
        """Mark a check run completed with the given conclusion and output."""
