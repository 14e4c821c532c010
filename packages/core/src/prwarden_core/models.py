"""Domain records shared by the diff engine, the normalizer and the coordinator."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

# Synthetic file names used by findings that describe a failure rather than
# a location in the pull request. They are never placed inline.
PARSE_ERROR_FILE = "AI_ANALYSIS_ERROR"
PIPELINE_ERROR_FILE = "AI_REVIEW_PIPELINE"
SENTINEL_FILES = frozenset({PARSE_ERROR_FILE, PIPELINE_ERROR_FILE})


class Severity(Enum):
    BLOCKER = "BLOCKER"
    CRITICAL = "CRITICAL"
    MAJOR = "MAJOR"
    MINOR = "MINOR"
    INFO = "INFO"


class Category(Enum):
    BUG = "BUG"
    VULNERABILITY = "VULNERABILITY"
    SECURITY_HOTSPOT = "SECURITY_HOTSPOT"
    CODE_SMELL = "CODE_SMELL"


class Assessment(Enum):
    PROPERLY_REVIEWED = "PROPERLY_REVIEWED"
    NOT_PROPERLY_REVIEWED = "NOT_PROPERLY_REVIEWED"
    REVIEW_REQUIRED = "REVIEW_REQUIRED"


class CheckConclusion(Enum):
    SUCCESS = "success"
    NEUTRAL = "neutral"
    FAILURE = "failure"


class FileStatus(Enum):
    ADDED = "added"
    MODIFIED = "modified"
    DELETED = "deleted"

    @classmethod
    def from_github(cls, status: str | None) -> FileStatus:
        """Map GitHub's file status vocabulary onto the three states we track."""
        if status == "added":
            return cls.ADDED
        if status in ("removed", "deleted"):
            return cls.DELETED
        # renamed, copied, changed and unchanged files all carry new-side content.
        return cls.MODIFIED


@dataclass(frozen=True)
class PullRequestRef:
    owner: str
    repo: str
    number: int

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.repo}"

    @property
    def fingerprint(self) -> str:
        return f"{self.owner}/{self.repo}#{self.number}"

    def __str__(self) -> str:
        return self.fingerprint


@dataclass(frozen=True)
class FileDiff:
    filename: str
    status: FileStatus
    patch: str | None = None
    additions: int = 0
    deletions: int = 0


@dataclass(frozen=True)
class ExistingComment:
    id: int
    body: str
    user: str
    created_at: str | None = None
    path: str | None = None
    line: int | None = None
    kind: str = "issue"  # "review" (anchored to a line) | "issue" (conversation)


@dataclass(frozen=True)
class PRSnapshot:
    """Everything the pipeline needs about one pull request, fetched once per attempt."""

    ref: PullRequestRef
    title: str
    head_sha: str
    body: str = ""
    author: str = "unknown"
    base_branch: str = ""
    head_branch: str = ""
    url: str = ""
    files: tuple[FileDiff, ...] = ()
    existing_comments: tuple[ExistingComment, ...] = ()
    reviewers: tuple[str, ...] = ()

    @property
    def analyzable_files(self) -> list[FileDiff]:
        return [f for f in self.files if f.status is not FileStatus.DELETED and f.patch]

    def file(self, filename: str) -> FileDiff | None:
        for f in self.files:
            if f.filename == filename:
                return f
        return None


@dataclass
class Finding:
    file: str
    line: int
    issue: str
    severity: Severity = Severity.INFO
    category: Category = Category.CODE_SMELL
    suggestion: str = ""
    posted: bool = False
    resolved_line: int | None = None

    @property
    def is_sentinel(self) -> bool:
        return self.file in SENTINEL_FILES

    @property
    def is_inline(self) -> bool:
        return self.resolved_line is not None


@dataclass(frozen=True)
class AnalysisSummary:
    total_issues: int
    by_severity: dict[Severity, int]
    by_category: dict[Category, int]
    technical_debt_minutes: int


def summarize(findings: list[Finding], technical_debt_minutes: int | None = None) -> AnalysisSummary:
    """Count findings by severity and category.

    Counts are always derived from the list itself; callers may only supply the
    debt estimate, which defaults to 15 minutes per finding.
    """
    by_severity = {s: 0 for s in Severity}
    by_category = {c: 0 for c in Category}
    for f in findings:
        by_severity[f.severity] += 1
        by_category[f.category] += 1
    if technical_debt_minutes is None:
        technical_debt_minutes = len(findings) * 15
    return AnalysisSummary(
        total_issues=len(findings),
        by_severity=by_severity,
        by_category=by_category,
        technical_debt_minutes=technical_debt_minutes,
    )


@dataclass
class AnalysisResult:
    summary: AnalysisSummary
    findings: list[Finding] = field(default_factory=list)
    assessment: Assessment = Assessment.REVIEW_REQUIRED
    recommendation: str = ""
    parse_error: str | None = None

    @property
    def inline_findings(self) -> list[Finding]:
        return [f for f in self.findings if f.is_inline]

    @property
    def general_findings(self) -> list[Finding]:
        return [f for f in self.findings if not f.is_inline]


@dataclass(frozen=True)
class InlineComment:
    path: str
    line: int
    body: str


@dataclass(frozen=True)
class HumanReviewStats:
    review_comments: int = 0
    issues_addressed: int = 0
    security_issues: int = 0
    code_quality_issues: int = 0


@dataclass(frozen=True)
class ProcessingEntry:
    key: str
    tracking_id: str
    start_time: float
    trigger_action: str
    started_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())


@dataclass
class ReviewOutcome:
    tracking_id: str
    ref: PullRequestRef
    result: AnalysisResult | None = None
    inline_posted: int = 0
    summary_posted: bool = False
    error: str | None = None
    skipped_reason: str | None = None
    check_conclusion: CheckConclusion | None = None


# --------------------------------------------------------------------------- #
# Trigger events                                                               #
# --------------------------------------------------------------------------- #


@dataclass(frozen=True)
class PRTriggered:
    ref: PullRequestRef
    action: str
    draft: bool = False
    base_branch: str = ""
    is_bot: bool = False
    head_sha: str = ""


@dataclass(frozen=True)
class ReviewSubmitted:
    ref: PullRequestRef
    is_bot: bool = False


@dataclass(frozen=True)
class ReviewCommentCreated:
    ref: PullRequestRef
    is_bot: bool = False


@dataclass(frozen=True)
class ManualReviewRequested:
    ref: PullRequestRef
    is_bot: bool = False


TriggerEvent = PRTriggered | ReviewSubmitted | ReviewCommentCreated | ManualReviewRequested
