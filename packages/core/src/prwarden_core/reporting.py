"""Rendering of analysis results into GitHub comment bodies."""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime, timezone

from prwarden_core.models import (
    AnalysisResult,
    Assessment,
    Category,
    CheckConclusion,
    ExistingComment,
    Finding,
    HumanReviewStats,
    PRSnapshot,
    Severity,
)

# Lets later runs recognise their own summary comments.
SUMMARY_MARKER = "<!-- prwarden-summary -->"

ISSUE_KEYWORDS = ("bug", "issue", "problem", "error", "fix", "wrong", "incorrect")
SECURITY_KEYWORDS = ("security", "vulnerability", "exploit", "injection", "xss", "csrf", "auth")
QUALITY_KEYWORDS = ("refactor", "clean", "readable", "complex", "duplicate", "naming", "structure")

_SEVERITY_LABEL = {
    Severity.BLOCKER: "Blocker",
    Severity.CRITICAL: "Critical",
    Severity.MAJOR: "Major",
    Severity.MINOR: "Minor",
    Severity.INFO: "Info",
}

_CATEGORY_LABEL = {
    Category.BUG: "Bug",
    Category.VULNERABILITY: "Vulnerability",
    Category.SECURITY_HOTSPOT: "Security hotspot",
    Category.CODE_SMELL: "Code smell",
}

_ASSESSMENT_LABEL = {
    "PROPERLY_REVIEWED": "Properly reviewed",
    "NOT_PROPERLY_REVIEWED": "Not properly reviewed",
    "REVIEW_REQUIRED": "Review required",
}


def already_commented(
    existing_comments: Iterable[ExistingComment],
    file_path: str,
    file_line: int,
    comment_text: str,
    queued: set[tuple] | None = None,
) -> bool:
    """Check whether an identical comment already exists on the PR for this file+line.

    Checks both the PR's existing review comments and any comments queued in the
    current run (to catch duplicates within a single analysis).
    """
    text = comment_text.strip()
    if queued is not None and (file_path, file_line, text) in queued:
        return True
    for c in existing_comments:
        if c.path == file_path and c.line == file_line and text in c.body.strip():
            return True
    return False


def format_inline_comment(finding: Finding) -> str:
    body = (
        f"**[{finding.severity.value}] {_CATEGORY_LABEL[finding.category]}**\n\n"
        f"{finding.issue.strip()}"
    )
    if finding.suggestion.strip():
        body += f"\n\n**Suggestion:** {finding.suggestion.strip()}"
    if finding.resolved_line is not None and finding.resolved_line != finding.line:
        body += f"\n\n_Reported for line {finding.line}; placed on the nearest changed line._"
    return body


def human_review_stats(comments: Iterable[ExistingComment], bot_login: str | None = None) -> HumanReviewStats:
    """Count what human reviewers have already raised, by keyword."""
    human = [c for c in comments if c.user != bot_login and SUMMARY_MARKER not in c.body]
    issues = security = quality = 0
    for c in human:
        body = c.body.lower()
        if any(k in body for k in ISSUE_KEYWORDS):
            issues += 1
        if any(k in body for k in SECURITY_KEYWORDS):
            security += 1
        if any(k in body for k in QUALITY_KEYWORDS):
            quality += 1
    return HumanReviewStats(
        review_comments=len(human),
        issues_addressed=issues,
        security_issues=security,
        code_quality_issues=quality,
    )


def _verdict(result: AnalysisResult) -> str:
    summary = result.summary
    if summary.total_issues == 0:
        return "No issues found. The changes look good."
    parts = [
        f"{summary.by_severity[s]} {_SEVERITY_LABEL[s].lower()}" for s in Severity if summary.by_severity[s]
    ]
    issue_str = ", ".join(parts)
    if summary.by_severity[Severity.BLOCKER] or summary.by_severity[Severity.CRITICAL]:
        return f"{issue_str} issue(s). Changes required before merging."
    return f"{issue_str} issue(s) found."


def build_summary_comment(
    snapshot: PRSnapshot | None,
    result: AnalysisResult,
    inline_posted: int = 0,
    stats: HumanReviewStats | None = None,
    tracking_id: str | None = None,
) -> str:
    """Build the conversation comment that accompanies the inline comments.

    Findings that could not be anchored to a changed line are listed under
    general remarks, so nothing the analysis reported is lost.
    """
    summary = result.summary
    lines = ["## AI review summary\n"]

    if result.parse_error:
        lines.append("> The analysis response could not be parsed. Please review this pull request manually.\n")
    else:
        lines.append(f"> {_verdict(result)}\n")

    if snapshot is not None:
        reviewers = ", ".join(snapshot.reviewers) if snapshot.reviewers else "None yet"
        lines.append(
            f"**{len(snapshot.analyzable_files)}** file(s) analyzed · author `{snapshot.author}` · "
            f"reviewer(s): {reviewers}\n"
        )

    lines.append(
        f"**{summary.total_issues}** issue(s) · **{inline_posted}** inline comment(s) · "
        f"technical debt ~{summary.technical_debt_minutes} min\n"
    )

    if summary.total_issues:
        lines.append("| Blocker | Critical | Major | Minor | Info |")
        lines.append("|:-------:|:--------:|:-----:|:-----:|:----:|")
        lines.append("| " + " | ".join(str(summary.by_severity[s] or "-") for s in Severity) + " |")
        lines.append("")
        lines.append("| Bugs | Vulnerabilities | Security hotspots | Code smells |")
        lines.append("|:----:|:---------------:|:-----------------:|:-----------:|")
        lines.append("| " + " | ".join(str(summary.by_category[c] or "-") for c in Category) + " |")
        lines.append("")

    if stats is not None:
        lines.append(
            f"**Human review:** {stats.review_comments} comment(s), {stats.issues_addressed} raising issues, "
            f"{stats.security_issues} on security, {stats.code_quality_issues} on code quality.\n"
        )

    lines.append(f"**Assessment:** {_ASSESSMENT_LABEL[result.assessment.value]}\n")

    general = result.general_findings
    if general:
        lines.append("### General remarks\n")
        for i, f in enumerate(general, 1):
            location = f"`{f.file}`" if f.is_sentinel else f"`{f.file}:{f.line}`"
            lines.append(f"{i}. **[{f.severity.value}]** {location}: {f.issue.strip()}")
            if f.suggestion.strip():
                lines.append(f"   - _Suggestion:_ {f.suggestion.strip()}")
        lines.append("")

    if result.recommendation:
        lines.append(f"### Recommendation\n\n{result.recommendation.strip()}\n")

    generated = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")
    footer = f"_Generated at {generated}"
    if tracking_id:
        footer += f" · `{tracking_id}`"
    lines.append("---")
    lines.append(footer + "_")
    lines.append(SUMMARY_MARKER)
    return "\n".join(lines)


def check_run_conclusion(result: AnalysisResult) -> CheckConclusion:
    """Blockers fail the check, criticals leave it neutral, a clean assessment passes it."""
    by_severity = result.summary.by_severity
    if by_severity[Severity.BLOCKER]:
        return CheckConclusion.FAILURE
    if by_severity[Severity.CRITICAL]:
        return CheckConclusion.NEUTRAL
    if result.assessment is Assessment.PROPERLY_REVIEWED:
        return CheckConclusion.SUCCESS
    return CheckConclusion.NEUTRAL


def build_check_run_summary(result: AnalysisResult, inline_posted: int = 0) -> str:
    summary = result.summary
    lines = [
        _verdict(result),
        "",
        f"**{summary.total_issues}** issue(s) · **{inline_posted}** inline comment(s) · "
        f"technical debt ~{summary.technical_debt_minutes} min",
        "",
        f"**Assessment:** {_ASSESSMENT_LABEL[result.assessment.value]}",
    ]
    return "\n".join(lines)
