"""
Data-quality scoring over the rows sampled during schema inference.

Checks performed per field:
  1. Missing values (None or empty string) -- severity by percentage
  2. Duplicate values among non-null entries of primary-key fields

The score starts at 100 and loses a capped penalty per issue.
"""
from __future__ import annotations

import math
from typing import Any, Sequence

from smartbi.datasets.inference import hashable_value
from smartbi.datasets.models import Field, IssueType, QualityIssue, Severity

# severity -> (multiplier, cap)
_PENALTIES: dict[Severity, tuple[float, float]] = {
    Severity.HIGH: (0.8, 30.0),
    Severity.MEDIUM: (0.5, 20.0),
    Severity.LOW: (0.2, 10.0),
}


def _is_missing(value: Any) -> bool:
    return value is None or value == ""


def _missing_severity(percentage: float) -> Severity:
    if percentage > 50:
        return Severity.HIGH
    if percentage > 20:
        return Severity.MEDIUM
    return Severity.LOW


def analyze_quality(fields: Sequence[Field], rows: Sequence[dict[str, Any]]) -> list[QualityIssue]:
    """Return the quality issues found in *rows* for each of *fields*."""
    total = len(rows)
    if total == 0:
        return []

    issues: list[QualityIssue] = []
    for f in fields:
        values = [row.get(f.name) for row in rows]

        missing = sum(1 for v in values if _is_missing(v))
        if missing:
            percentage = missing / total * 100
            issues.append(QualityIssue(
                type=IssueType.MISSING_VALUES,
                field=f.name,
                count=missing,
                percentage=percentage,
                severity=_missing_severity(percentage),
                description=f"Field '{f.display_name}' has {missing} missing values.",
            ))

        if f.is_primary_key:
            present = [hashable_value(v) for v in values if not _is_missing(v)]
            duplicates = len(present) - len(set(present))
            if duplicates:
                issues.append(QualityIssue(
                    type=IssueType.DUPLICATE_RECORDS,
                    field=f.name,
                    count=duplicates,
                    percentage=duplicates / total * 100,
                    severity=Severity.HIGH,
                    description=f"Primary key '{f.display_name}' has {duplicates} duplicate values.",
                ))
    return issues


def quality_score(issues: Sequence[QualityIssue]) -> int:
    """Score 0-100; exactly 100 when there are no issues."""
    if not issues:
        return 100
    score = 100.0
    for issue in issues:
        multiplier, cap = _PENALTIES[issue.severity]
        score -= min(issue.percentage * multiplier, cap)
    # round half up
    return max(0, math.floor(score + 0.5))
