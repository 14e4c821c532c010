"""review command: run one review of a pull request through the webhook pipeline."""

from __future__ import annotations

import asyncio

import click
from rich.console import Console

from prwarden_core.errors import ConfigError
from prwarden_core.models import PullRequestRef, ReviewOutcome

console = Console()


def _parse_repo(repo: str) -> tuple[str, str]:
    owner, sep, name = repo.partition("/")
    if not sep or not owner or not name or "/" in name:
        raise click.BadParameter("Expected owner/name.", param_hint="--repo")
    return owner, name


def _print_outcome(outcome: ReviewOutcome | None) -> None:
    if outcome is None:
        console.print("[yellow]A review of this pull request is already running.[/yellow]")
        return
    if outcome.skipped_reason:
        console.print(f"[yellow]Nothing to review: {outcome.skipped_reason}.[/yellow]")
        return
    if outcome.error:
        console.print(f"[red]Review failed ({outcome.tracking_id}): {outcome.error}[/red]")
        return
    total = outcome.result.summary.total_issues if outcome.result else 0
    console.print(
        f"\n[green]Review complete ({outcome.tracking_id}): {total} finding(s), "
        f"{outcome.inline_posted} inline comment(s).[/green]"
    )


@click.command("review")
@click.option("--repo", required=True, help="GitHub repository in owner/name format.")
@click.option("--pr", "pr_number", type=int, required=True, help="Pull request number.")
@click.option(
    "--model",
    type=click.Choice(["anthropic", "openai"]),
    default=None,
    help="AI model provider. Overrides config file.",
)
@click.option(
    "--shadow",
    "-s",
    is_flag=True,
    help="Dry-run mode: print review comments without posting to GitHub.",
)
@click.pass_context
def review_cmd(ctx, repo: str, pr_number: int, model: str | None, shadow: bool):
    """Review a single pull request now.

    Runs the same fetch, analysis and comment placement as the webhook
    receiver, then posts inline comments and a summary (or prints them with
    --shadow).
    """
    from prwarden_core.service import build_coordinator

    owner, name = _parse_repo(repo)
    config = ctx.obj["config"]
    if model is not None:
        config["model"] = model
    if not config.get("github_token"):
        raise click.UsageError(
            "No GitHub token found. Set GITHUB_TOKEN.\nCreate a token at https://github.com/settings/tokens"
        )

    try:
        coordinator = build_coordinator(config, shadow=shadow)
    except ConfigError as e:
        raise click.UsageError(str(e))

    outcome = asyncio.run(coordinator.review_now(PullRequestRef(owner, name, pr_number)))
    _print_outcome(outcome)
    if outcome is not None and outcome.error:
        ctx.exit(1)
