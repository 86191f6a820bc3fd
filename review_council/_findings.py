# Copyright (c) 2025. Review Council AI Analysis Engine.

"""Structured review findings: validation, normalisation and de-duplication."""

import json
import logging
from dataclasses import asdict, dataclass
from typing import Any, Iterable

from ._provider import ProviderResult

logger = logging.getLogger("review_council")

FINDING_TYPES = (
    "bug",
    "improvement",
    "praise",
    "suggestion",
    "design",
    "performance",
    "security",
    "code-style",
)

# Findings below this confidence are dropped
MIN_CONFIDENCE = 0.3

# Confidence assumed when a reviewer does not give one
DEFAULT_CONFIDENCE = 0.7


@dataclass(frozen=True)
class Finding:
    """A single review comment produced by a provider.

    Attributes:
        file: Path relative to the repository root.
        type: Category, one of FINDING_TYPES (unknown categories are kept as given).
        title: One-line summary.
        description: Body text.
        suggestion: How to fix or improve; empty for praise.
        line_start: First line, or None for a file-level finding.
        line_end: Last line (equals line_start for single-line findings).
        side: 'NEW' or 'OLD', which side of the diff the line numbers refer to.
        confidence: 0.0 to 1.0.
        provider: Provider id that produced the finding.
        model: Model that produced the finding.
        level: Analysis level that produced the finding.
    """

    file: str
    type: str
    title: str
    description: str = ""
    suggestion: str = ""
    line_start: int | None = None
    line_end: int | None = None
    side: str = "NEW"
    confidence: float = DEFAULT_CONFIDENCE
    provider: str | None = None
    model: str | None = None
    level: int | None = None

    @property
    def is_file_level(self) -> bool:
        return self.line_start is None

    @property
    def dedupe_key(self) -> tuple:
        return (self.file, self.line_start, self.line_end, self.type.lower(), self.title.strip().lower())

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _as_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    try:
        number = int(value)
    except (TypeError, ValueError):
        return None
    return number if number > 0 else None


def _as_confidence(value: Any) -> float:
    if value is None or isinstance(value, bool):
        return DEFAULT_CONFIDENCE
    try:
        return max(0.0, min(1.0, float(value)))
    except (TypeError, ValueError):
        return DEFAULT_CONFIDENCE


def normalize_finding(
    raw: Any,
    *,
    provider: str | None = None,
    model: str | None = None,
    level: int | None = None,
    file_level: bool = False,
) -> Finding | None:
    """Convert one suggestion object into a Finding.

    Returns:
        The Finding, or None if required fields are missing or the
        confidence is below MIN_CONFIDENCE.
    """
    if not isinstance(raw, dict):
        logger.warning(f"Skipping invalid suggestion: {raw!r}")
        return None

    file = raw.get("file")
    finding_type = raw.get("type")
    title = raw.get("title")
    if not (isinstance(file, str) and file and finding_type and title):
        logger.warning(f"Skipping invalid suggestion: {json.dumps(raw, default=str)[:300]}")
        return None

    confidence = _as_confidence(raw.get("confidence"))
    if confidence < MIN_CONFIDENCE:
        logger.info(f"Filtering low confidence suggestion: {title} ({confidence})")
        return None

    line_start = None if file_level else _as_int(raw.get("line", raw.get("line_start")))
    line_end = None
    if line_start is not None:
        line_end = _as_int(raw.get("lineEnd", raw.get("line_end"))) or line_start
        line_end = max(line_end, line_start)

    side = str(raw.get("old_or_new") or raw.get("side") or "NEW").upper()

    return Finding(
        file=file,
        type=str(finding_type),
        title=str(title),
        description=str(raw.get("description") or ""),
        suggestion=str(raw.get("suggestion") or ""),
        line_start=line_start,
        line_end=line_end,
        side=side if side in ("NEW", "OLD") else "NEW",
        confidence=confidence,
        provider=provider,
        model=model,
        level=level,
    )


def validate_suggestions(
    suggestions: Iterable[Any],
    *,
    provider: str | None = None,
    model: str | None = None,
    level: int | None = None,
    valid_files: Iterable[str] | None = None,
    file_level: bool = False,
) -> list[Finding]:
    """Normalise suggestions, dropping invalid ones and files outside ``valid_files``."""
    allowed = set(valid_files) if valid_files else None
    findings = []
    for raw in suggestions or []:
        finding = normalize_finding(raw, provider=provider, model=model, level=level, file_level=file_level)
        if finding is None:
            continue
        if allowed is not None and finding.file not in allowed:
            logger.info(f"Dropping suggestion for file outside the change: {finding.file}")
            continue
        findings.append(finding)
    return findings


def findings_from_result(
    result: ProviderResult,
    *,
    provider: str | None = None,
    model: str | None = None,
    level: int | None = None,
    valid_files: Iterable[str] | None = None,
) -> tuple[list[Finding], str | None]:
    """Pull findings and the reviewer's summary out of a provider result.

    Accepts ``{"suggestions": [...], "fileLevelSuggestions": [...], "summary": ...}``
    or a bare list of suggestions. Degraded results yield no findings.
    """
    if not result.parsed:
        return [], None

    data = result.data
    if isinstance(data, list):
        return validate_suggestions(
            data, provider=provider, model=model, level=level, valid_files=valid_files
        ), None
    if not isinstance(data, dict):
        return [], None

    findings = validate_suggestions(
        data.get("suggestions") or [],
        provider=provider, model=model, level=level, valid_files=valid_files,
    )
    findings += validate_suggestions(
        data.get("fileLevelSuggestions") or [],
        provider=provider, model=model, level=level, valid_files=valid_files, file_level=True,
    )
    summary = data.get("summary")
    return findings, summary if isinstance(summary, str) else None


def dedupe_findings(findings: Iterable[Finding]) -> list[Finding]:
    """Collapse findings on the same file, lines, type and title.

    The most confident copy wins; output keeps first-seen order.
    """
    best: dict[tuple, Finding] = {}
    for finding in findings:
        key = finding.dedupe_key
        current = best.get(key)
        if current is None or finding.confidence > current.confidence:
            best[key] = finding
    return list(best.values())
