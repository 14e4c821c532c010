"""Dry-run source control: reads the pull request for real, prints instead of posting."""

from __future__ import annotations

from rich.console import Console
from rich.markup import escape

from prwarden_core.diff.line_map import build_index, line_content
from prwarden_core.gh.client import GitHubClient
from prwarden_core.models import CheckConclusion, InlineComment, PRSnapshot, PullRequestRef

console = Console()


class ShadowGitHubClient(GitHubClient):
    def __init__(self, token: str | None, config: dict | None = None, out: Console | None = None):
        super().__init__(token, config)
        self.console = out or console
        self._snapshots: dict[str, PRSnapshot] = {}

    async def get_pr_snapshot(self, ref: PullRequestRef) -> PRSnapshot:
        snapshot = await super().get_pr_snapshot(ref)
        # Kept so printed comments can show the code they point at.
        self._snapshots[ref.fingerprint] = snapshot
        return snapshot

    async def post_summary_comment(self, ref: PullRequestRef, text: str) -> None:
        self.console.print(f"\n[bold]Shadow summary for {ref} (not posted)[/bold]\n")
        self.console.print(text, markup=False)

    async def start_check_run(self, ref: PullRequestRef, head_sha: str) -> int:
        self.console.print(
            f"[dim]Shadow mode: check run '{escape(self.check_run_name)}' would start on {head_sha[:7]}[/dim]"
        )
        return 0

    async def complete_check_run(
        self,
        ref: PullRequestRef,
        check_run_id: int,
        conclusion: CheckConclusion,
        title: str,
        summary: str,
    ) -> None:
        style = {"success": "green", "neutral": "yellow", "failure": "red"}[conclusion.value]
        self.console.print(
            f"\n[bold]Shadow check run for {ref}:[/bold] [{style}]{conclusion.value}[/{style}] ({escape(title)})"
        )
        self.console.print(summary, markup=False)

    async def post_inline_comments(
        self,
        ref: PullRequestRef,
        head_sha: str,
        comments: list[InlineComment],
    ) -> list[InlineComment]:
        if not comments:
            self.console.print("[yellow]Shadow mode: no inline comments generated.[/yellow]")
            return []
        self.console.print(f"\n[bold]Shadow review of {ref}: {len(comments)} inline comment(s) (not posted)[/bold]\n")
        snapshot = self._snapshots.get(ref.fingerprint)
        for c in comments:
            self.console.print(f"[bold cyan]{c.path}[/bold cyan]  line [bold]{c.line}[/bold]")
            f = snapshot.file(c.path) if snapshot else None
            code = line_content(build_index(f.patch), c.line).strip() if f else ""
            if code:
                self.console.print(f"  [dim]{escape(code)}[/dim]", highlight=False)
            self.console.print(f"  {c.body}", markup=False)
            self.console.print()
        # Report everything as posted so the summary reflects what a live run would do.
        return list(comments)
