"""Base analyzer implementing the Template Method pattern.

All providers share the same analysis algorithm:
    run_analysis() → _build_system_prompt() + _build_user_prompt()
                   → _call_with_retry() → _call_api()   ← only this differs per provider

Subclasses implement two things only:
  - __init__: validate and store the async SDK client
  - _call_api: make one raw API call and return the text response

The raw text is returned untouched. Turning it into findings is the
normalizer's job, so a provider never has to guess what the model meant.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod

from prwarden_core.diff.line_map import LineKind, build_index
from prwarden_core.errors import AnalysisProviderError
from prwarden_core.models import PRSnapshot
from prwarden_core.utils.code import language_for

logger = logging.getLogger(__name__)

# Shared defaults; subclasses may override as class attributes if needed.
_MAX_RETRIES = 3
_RETRY_BASE_DELAY = 2.0
_MAX_TOKENS = 4096
_MAX_DIFF_CHARS = 8000
_MAX_COMMENTS_IN_PROMPT = 30


class BaseAnalyzer(ABC):
    MAX_RETRIES: int = _MAX_RETRIES
    RETRY_BASE_DELAY: float = _RETRY_BASE_DELAY
    MAX_TOKENS: int = _MAX_TOKENS

    def __init__(self, max_diff_chars: int = _MAX_DIFF_CHARS):
        self.max_diff_chars = max_diff_chars

    # ------------------------------------------------------------------ #
    # Public interface                                                     #
    # ------------------------------------------------------------------ #

    async def run_analysis(self, snapshot: PRSnapshot) -> str:
        """Analyze a pull request snapshot and return the model's raw text.

        Raises AnalysisProviderError once every retry has failed.
        """
        system = self._build_system_prompt()
        user = self._build_user_prompt(snapshot)
        return await self._call_with_retry(system, user)

    @property
    def name(self) -> str:
        return self.__class__.__name__

    # ------------------------------------------------------------------ #
    # Abstract: implement in each provider                                #
    # ------------------------------------------------------------------ #

    @abstractmethod
    async def _call_api(self, system_prompt: str, user_prompt: str) -> str:
        """Make a single API call and return the raw text response.

        It should raise on failure; _call_with_retry handles retries and logging.
        """

    # ------------------------------------------------------------------ #
    # Shared implementations                                               #
    # ------------------------------------------------------------------ #

    async def _call_with_retry(self, system_prompt: str, user_prompt: str) -> str:
        """Retry _call_api up to MAX_RETRIES times with exponential backoff."""
        last_error: Exception | None = None
        for attempt in range(self.MAX_RETRIES):
            try:
                return await self._call_api(system_prompt, user_prompt)
            except Exception as e:
                last_error = e
                if attempt == self.MAX_RETRIES - 1:
                    break
                delay = self.RETRY_BASE_DELAY * 2**attempt
                logger.warning(
                    "%s API error (attempt %d/%d): %s. Retrying in %.1fs...",
                    self.name,
                    attempt + 1,
                    self.MAX_RETRIES,
                    e,
                    delay,
                )
                await asyncio.sleep(delay)

        logger.error("%s API failed after %d attempts: %s", self.name, self.MAX_RETRIES, last_error)
        raise AnalysisProviderError(f"{self.name} failed after {self.MAX_RETRIES} attempts: {last_error}") from last_error

    def _build_system_prompt(self) -> str:
        return """You are an expert code reviewer applying SonarQube standards.
Analyze the pull request below and report issues that human reviewers have not already raised.

Rules:
- Only report issues on lines listed as commentable (lines added by this pull request).
- Use the exact new-file line numbers given in the commentable line listings.
- Also consider implications of removed lines, such as deleted null checks or dropped error handling.
- Do not repeat issues already raised in the existing review comments.
- Be concise and actionable. Respond with a single JSON object and nothing else."""

    def _build_user_prompt(self, snapshot: PRSnapshot) -> str:
        files = snapshot.analyzable_files
        file_sections = []
        diff_parts = []
        for f in files:
            index = build_index(f.patch)
            added = [
                line for hunk in index.hunks for line in hunk.lines if line.kind is LineKind.ADDED
            ]
            listing = "\n".join(f"  {line.new_line}: {line.content}" for line in added)
            file_sections.append(
                f"### {f.filename} ({language_for(f.filename)}, {f.status.value}, +{f.additions}/-{f.deletions})\n"
                f"Commentable lines:\n{listing or '  (none: deletions or context only)'}"
            )
            diff_parts.append(f"--- {f.filename}\n{f.patch}")

        diff = "\n".join(diff_parts)
        if len(diff) > self.max_diff_chars:
            diff = diff[: self.max_diff_chars] + "\n... [truncated for analysis]"

        comments = snapshot.existing_comments[-_MAX_COMMENTS_IN_PROMPT:]
        if comments:
            comment_lines = "\n".join(
                f"- {c.user}"
                + (f" on {c.path}:{c.line}" if c.path else "")
                + f": {c.body.strip()[:300]}"
                for c in comments
            )
        else:
            comment_lines = "No review comments yet."

        return f"""## Pull Request
Repository: {snapshot.ref.full_name}
PR #{snapshot.ref.number}: {snapshot.title}
Author: {snapshot.author}
Branches: {snapshot.head_branch} → {snapshot.base_branch}

## Description
{snapshot.body or 'No description'}

## Changed Files
{chr(10).join(file_sections)}

## Diff
{diff}

## Existing Review Comments
{comment_lines}

### Output Format:
Respond with **only** a valid JSON object:

{{
  "automatedAnalysis": {{
    "totalIssues": <integer>,
    "severityBreakdown": {{"blocker": 0, "critical": 0, "major": 0, "minor": 0, "info": 0}},
    "categories": {{"bugs": 0, "vulnerabilities": 0, "securityHotspots": 0, "codeSmells": 0}},
    "technicalDebtMinutes": <integer>
  }},
  "detailedFindings": [
    {{
      "file": "<path exactly as listed above>",
      "line": <commentable new-file line number>,
      "issue": "<what is wrong>",
      "severity": "<BLOCKER|CRITICAL|MAJOR|MINOR|INFO>",
      "category": "<BUG|VULNERABILITY|SECURITY_HOTSPOT|CODE_SMELL>",
      "suggestion": "<how to fix it; GitHub-flavored markdown>"
    }}
  ],
  "reviewAssessment": "<PROPERLY_REVIEWED|NOT_PROPERLY_REVIEWED|REVIEW_REQUIRED>",
  "recommendation": "<overall recommendation>"
}}

If there are no issues, return an empty "detailedFindings" list.
Do not return any text outside the JSON object."""
