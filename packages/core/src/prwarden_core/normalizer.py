"""Turn raw analysis-provider output into a schema-valid AnalysisResult.

Models are asked for a single JSON object but regularly wrap it in markdown
fences, add prose around it, leave trailing commas, sprinkle ``//`` comments,
rename fields, or report counts that do not match their own findings list.
``normalize`` absorbs all of that and never raises: when the text cannot be
parsed at all it returns a fallback result with a single synthetic finding,
which downstream code renders like any other result.
"""

from __future__ import annotations

import json
import logging
import math
import re
from typing import Any

from prwarden_core.models import (
    PARSE_ERROR_FILE,
    PIPELINE_ERROR_FILE,
    AnalysisResult,
    Assessment,
    Category,
    Finding,
    Severity,
    summarize,
)

logger = logging.getLogger(__name__)

# Accepted key synonyms per field, resolved by first match.
FINDING_FIELD_ALIASES: dict[str, tuple[str, ...]] = {
    "file": ("file", "filename", "file_name", "fileName", "path", "file_path", "filePath"),
    "line": ("line", "line_number", "lineNumber", "newLineNumber", "new_line", "start_line", "startLine"),
    "issue": ("issue", "message", "description", "problem", "comment", "title"),
    "severity": ("severity", "level", "priority"),
    "category": ("category", "type", "kind"),
    "suggestion": ("suggestion", "fix", "recommendation", "suggested_fix", "suggestedFix", "remediation"),
}

SECTION_ALIASES: dict[str, tuple[str, ...]] = {
    "summary": ("automatedAnalysis", "automated_analysis", "summary", "analysis"),
    "findings": ("detailedFindings", "detailed_findings", "findings", "issues"),
    "assessment": ("reviewAssessment", "review_assessment", "assessment"),
    "recommendation": ("recommendation", "recommendations", "overall_recommendation"),
}

_DEBT_ALIASES = ("technicalDebtMinutes", "technical_debt_minutes", "technicalDebt", "technical_debt")

_CATEGORY_SYNONYMS = {
    "BUGS": Category.BUG,
    "VULNERABILITIES": Category.VULNERABILITY,
    "SECURITY": Category.VULNERABILITY,
    "HOTSPOT": Category.SECURITY_HOTSPOT,
    "SECURITY_HOTSPOTS": Category.SECURITY_HOTSPOT,
    "SECURITYHOTSPOT": Category.SECURITY_HOTSPOT,
    "CODE_SMELLS": Category.CODE_SMELL,
    "CODESMELL": Category.CODE_SMELL,
    "SMELL": Category.CODE_SMELL,
}

_SEVERITY_SYNONYMS = {
    "HIGH": Severity.CRITICAL,
    "MEDIUM": Severity.MAJOR,
    "LOW": Severity.MINOR,
    "NITPICK": Severity.INFO,
    "INFORMATIONAL": Severity.INFO,
}

_FENCE_OPEN_RE = re.compile(r"^```[\w-]*\s*")
_FENCE_CLOSE_RE = re.compile(r"\s*```$")


def normalize(raw: str | None) -> AnalysisResult:
    """Parse provider output into an AnalysisResult. Total: never raises."""
    text = raw if isinstance(raw, str) else ("" if raw is None else str(raw))
    try:
        data = _load_object(text)
    except ValueError as e:
        logger.warning("Could not parse analysis response: %s. Preview: %r", e, text[:200])
        return parse_failure_result(str(e))

    try:
        return _build_result(data)
    except Exception as e:  # noqa: BLE001
        logger.exception("Unexpected error normalizing analysis response")
        return parse_failure_result(f"unexpected response structure: {e}")


def parse_failure_result(message: str) -> AnalysisResult:
    findings = [
        Finding(
            file=PARSE_ERROR_FILE,
            line=1,
            issue=(
                f"AI analysis failed: {message}. This could be due to API limits, "
                "service unavailability, or response format issues."
            ),
            severity=Severity.MAJOR,
            category=Category.CODE_SMELL,
            suggestion="Re-run the analysis. If the error persists, check the AI provider configuration.",
        )
    ]
    return AnalysisResult(
        summary=summarize(findings),
        findings=findings,
        assessment=Assessment.REVIEW_REQUIRED,
        recommendation=f"AI analysis could not be completed ({message}). Manual code review is recommended.",
        parse_error=message,
    )


def error_result(message: str) -> AnalysisResult:
    """Synthetic result posted when a pipeline stage fails outright."""
    findings = [
        Finding(
            file=PIPELINE_ERROR_FILE,
            line=1,
            issue=f"The automated review could not be completed: {message}",
            severity=Severity.CRITICAL,
            category=Category.CODE_SMELL,
            suggestion="Push a new commit or comment `/ai-review` to retry. Review this pull request manually.",
        )
    ]
    return AnalysisResult(
        summary=summarize(findings),
        findings=findings,
        assessment=Assessment.REVIEW_REQUIRED,
        recommendation="Automated review failed. Manual code review is required.",
    )


# --------------------------------------------------------------------------- #
# Text → dict                                                                  #
# --------------------------------------------------------------------------- #


def _load_object(raw: str) -> dict[str, Any]:
    text = raw.strip()
    text = _FENCE_OPEN_RE.sub("", text)
    text = _FENCE_CLOSE_RE.sub("", text)

    first = text.find("{")
    last = text.rfind("}")
    if first == -1 or last <= first:
        raise ValueError("no JSON object found in response")
    text = _strip_json_noise(text[first : last + 1])

    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise ValueError(f"response is not valid JSON after cleaning ({e.msg} at line {e.lineno})") from e
    except RecursionError as e:
        raise ValueError("response JSON is nested too deeply") from e
    if not isinstance(data, dict):
        raise ValueError("response JSON is not an object")
    return data


def _strip_json_noise(text: str) -> str:
    """Drop ``//`` and ``/* */`` comments and trailing commas outside string literals."""
    out: list[str] = []
    i, n = 0, len(text)
    in_string = False
    while i < n:
        ch = text[i]
        if in_string:
            out.append(ch)
            if ch == "\\" and i + 1 < n:
                out.append(text[i + 1])
                i += 2
                continue
            if ch == '"':
                in_string = False
            i += 1
            continue

        if ch == '"':
            in_string = True
            out.append(ch)
            i += 1
        elif text.startswith("//", i):
            end = text.find("\n", i)
            i = n if end == -1 else end
        elif text.startswith("/*", i):
            end = text.find("*/", i + 2)
            i = n if end == -1 else end + 2
        elif ch == ",":
            j = _skip_blank(text, i + 1)
            if j < n and text[j] in "}]":
                i += 1
            else:
                out.append(ch)
                i += 1
        else:
            out.append(ch)
            i += 1
    return "".join(out)


def _skip_blank(text: str, j: int) -> int:
    """Return the index of the next character that is neither whitespace nor part of a comment."""
    n = len(text)
    while j < n:
        if text[j].isspace():
            j += 1
        elif text.startswith("//", j):
            end = text.find("\n", j)
            j = n if end == -1 else end
        elif text.startswith("/*", j):
            end = text.find("*/", j + 2)
            j = n if end == -1 else end + 2
        else:
            break
    return j


# --------------------------------------------------------------------------- #
# dict → AnalysisResult                                                        #
# --------------------------------------------------------------------------- #


def _first(data: dict[str, Any], keys: tuple[str, ...]) -> Any:
    for key in keys:
        if key in data and data[key] is not None:
            return data[key]
    return None


def _build_result(data: dict[str, Any]) -> AnalysisResult:
    raw_findings = _first(data, SECTION_ALIASES["findings"])
    if not isinstance(raw_findings, list):
        if raw_findings is not None:
            logger.debug("Ignoring non-list findings section of type %s", type(raw_findings).__name__)
        raw_findings = []

    findings = [_normalize_finding(item) for item in raw_findings if isinstance(item, dict)]

    summary_section = _first(data, SECTION_ALIASES["summary"])
    debt = None
    if isinstance(summary_section, dict):
        debt = _coerce_debt(_first(summary_section, _DEBT_ALIASES))
        claimed = summary_section.get("totalIssues")
        if isinstance(claimed, int) and claimed != len(findings):
            logger.debug("Provider claimed %d issues but listed %d; using the list", claimed, len(findings))

    recommendation = _first(data, SECTION_ALIASES["recommendation"])
    if isinstance(recommendation, list):
        recommendation = "\n".join(str(r) for r in recommendation)

    return AnalysisResult(
        summary=summarize(findings, debt),
        findings=findings,
        assessment=_coerce_assessment(_first(data, SECTION_ALIASES["assessment"])),
        recommendation=str(recommendation).strip() if recommendation else "No recommendation provided.",
    )


def _normalize_finding(item: dict[str, Any]) -> Finding:
    fields = {name: _first(item, aliases) for name, aliases in FINDING_FIELD_ALIASES.items()}
    return Finding(
        file=str(fields["file"] or "unknown-file").strip(),
        line=_coerce_line(fields["line"]),
        issue=str(fields["issue"] or "No description provided.").strip(),
        severity=_coerce_severity(fields["severity"]),
        category=_coerce_category(fields["category"]),
        suggestion=str(fields["suggestion"] or "").strip(),
    )


def _coerce_line(value: Any) -> int:
    if isinstance(value, bool):
        return 1
    if isinstance(value, list) and value:
        value = value[0]
    try:
        line = int(str(value).strip()) if isinstance(value, str) else int(value)
    except (TypeError, ValueError, OverflowError):
        return 1
    return line if line > 0 else 1


def _enum_key(value: Any) -> str:
    return re.sub(r"[\s\-]+", "_", str(value).strip()).upper()


def _coerce_severity(value: Any) -> Severity:
    if value is None:
        return Severity.INFO
    key = _enum_key(value)
    try:
        return Severity(key)
    except ValueError:
        return _SEVERITY_SYNONYMS.get(key, Severity.INFO)


def _coerce_category(value: Any) -> Category:
    if value is None:
        return Category.CODE_SMELL
    key = _enum_key(value)
    try:
        return Category(key)
    except ValueError:
        return _CATEGORY_SYNONYMS.get(key, Category.CODE_SMELL)


def _coerce_assessment(value: Any) -> Assessment:
    if value is None:
        return Assessment.REVIEW_REQUIRED
    try:
        return Assessment(_enum_key(value))
    except ValueError:
        return Assessment.REVIEW_REQUIRED


def _coerce_debt(value: Any) -> int | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
        return None
    return int(value) if value >= 0 else None
