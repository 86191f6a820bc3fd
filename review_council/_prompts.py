# Copyright (c) 2025. Review Council AI Analysis Engine.

"""Review prompts for the three analysis levels and the consolidation pass.

Every prompt comes in three tiers (fast, balanced, thorough) matching the
tier of the model that will run it. Balanced is the baseline; fast trims
the guidance and thorough asks for more deliberate reasoning.
"""

import json
from typing import TYPE_CHECKING, Iterable, Mapping

if TYPE_CHECKING:
    from ._findings import Finding
    from ._orchestrator import ReviewContext

PROMPT_TIERS = ("fast", "balanced", "thorough")

LEVEL_TITLES = {
    1: "Level 1 Review - Analyze Changes in Isolation",
    2: "Level 2 Review - Analyze Changes in File Context",
    3: "Level 3 Review - Analyze Changes in Codebase Context",
}

LEVEL_SCOPE = {
    1: (
        "Focus ONLY on the changed lines in the diff. Do not explore file context "
        "or surrounding unchanged code. This analysis should be fast."
    ),
    2: (
        "Read each modified file in full and check the changes against the rest of "
        "the file: consistency with existing patterns, error handling, naming, and "
        "interactions with unchanged code in the same file."
    ),
    3: (
        "Explore the wider codebase as needed: callers and callees of the changed "
        "code, related modules, tests and configuration. Look for architectural "
        "issues, broken contracts and missing updates elsewhere."
    ),
}

FOCUS_AREAS = """\
- Bugs or errors in the modified code
- Logic issues in the changes
- Security concerns and vulnerabilities
- Performance issues and optimizations
- Code style and naming convention violations
- Design issues
- Documentation issues
- Good practices worth praising"""

READ_ONLY_RULES = """\
You have READ-ONLY access to the repository. You may read files and run
read-only commands (cat, ls, find, grep, git diff, git log, git show).
Do NOT modify any files and do NOT run write commands (rm, mv, git commit, ...)."""

OUTPUT_SCHEMA = """\
Output ONLY valid JSON with no additional text, explanations, or markdown code
blocks. The response must start with { and end with }.

{
  "level": LEVEL,
  "suggestions": [{
    "file": "path/to/file",
    "line": 42,
    "lineEnd": 44,
    "old_or_new": "NEW",
    "type": "bug|improvement|praise|suggestion|design|performance|security|code-style",
    "title": "Brief title",
    "description": "Detailed explanation",
    "suggestion": "How to fix/improve (omit for praise)",
    "confidence": 0.0-1.0
  }],
  "fileLevelSuggestions": [{
    "file": "path/to/file",
    "type": "design",
    "title": "Brief title",
    "description": "Observation about the file as a whole",
    "suggestion": "How to improve",
    "confidence": 0.0-1.0
  }],
  "summary": "Brief summary of findings"
}"""

GUIDELINES = """\
- Use the NEW line numbers for added and context lines; use "OLD" only for deleted lines.
- Prefer line-level suggestions over file-level ones when a specific line is involved.
- Calibrate confidence honestly: 0.8+ for clear issues, 0.5-0.79 for likely issues.
- When uncertain, omit marginal suggestions rather than include them."""

# Extra guidance appended per tier; balanced adds nothing.
TIER_GUIDANCE = {
    "fast": (
        "## Speed\n"
        "Report only clear, high-confidence issues. Skip style nitpicks and keep "
        "descriptions to one or two sentences."
    ),
    "balanced": "",
    "thorough": (
        "## Reasoning Approach\n"
        "Before answering, trace how the changed code is reached and what it affects. "
        "Check edge cases (empty input, None, concurrency, error paths) and confirm "
        "each issue against the code before reporting it. Explain the impact in every "
        "description."
    ),
}

ORCHESTRATION_LEVEL = 4

ORCHESTRATION_TITLES = {
    "fast": "Quick AI Suggestion Orchestration",
    "balanced": "AI Suggestion Orchestration Task",
    "thorough": "Deep AI Suggestion Orchestration Task",
}

ORCHESTRATION_GUIDELINES = """\
### Merging
- Combine suggestions from different levels that describe the same issue into one.
- Keep the most precise line range and the clearest explanation.
- Drop suggestions that are wrong, duplicated or too marginal to act on.

### Priority
Order the result by importance: security, then bugs, then architecture, then
performance, then style.

### Balanced Output
- Keep at most 2-3 praise items; quality over quantity.
- Frame suggestions for a human reviewer ("Consider...") rather than as orders."""

ORCHESTRATION_REASONING = """\
### Reasoning Approach
- Weigh each suggestion against the others before keeping it.
- When levels contradict each other, keep the better-supported view and say why.
- When several levels agree on an issue, raise its confidence by 0.1-0.2 (max 1.0)."""

ORCHESTRATION_SCHEMA = """\
Output ONLY valid JSON with no additional text, explanations, or markdown code
blocks. The response must start with { and end with }.

{
  "level": "orchestrated",
  "suggestions": [{
    "file": "path/to/file",
    "line": 42,
    "lineEnd": 44,
    "old_or_new": "NEW",
    "type": "bug|improvement|praise|suggestion|design|performance|security|code-style",
    "title": "Brief title",
    "description": "Detailed explanation",
    "suggestion": "How to fix/improve (omit for praise)",
    "confidence": 0.0-1.0
  }],
  "fileLevelSuggestions": [{
    "file": "path/to/file",
    "type": "design",
    "title": "Brief title",
    "description": "Observation about the file as a whole",
    "suggestion": "How to improve",
    "confidence": 0.0-1.0
  }],
  "summary": "Two or three sentences on the change as a whole"
}

The summary speaks about the change itself. Do not mention analysis levels,
reviewers or this merging step."""


def _check_tier(tier: str) -> None:
    if tier not in PROMPT_TIERS:
        raise ValueError(f"Unknown prompt tier: {tier}")


def _file_list_section(changed_files: Iterable[str]) -> str | None:
    file_list = "\n".join(f"- {path}" for path in changed_files)
    if not file_list:
        return None
    return (
        "## Valid Files for Suggestions\n"
        "Only create suggestions for files in this list:\n"
        f"{file_list}"
    )


def _change_header(context: "ReviewContext") -> list[str]:
    header = [f"## Change: {context.title}" if context.title else "## Change"]
    if context.description:
        header.append(context.description.strip())
    sections = ["\n\n".join(header)]
    if context.custom_instructions:
        sections.append(f"## Repository Instructions\n{context.custom_instructions.strip()}")
    return sections


def build_prompt(level: int, context: "ReviewContext", tier: str = "balanced") -> str:
    """Render the review prompt for one analysis level.

    Args:
        level: 1, 2 or 3.
        context: The change under review.
        tier: Tier of the model that will run the prompt.

    Raises:
        ValueError: For an unknown level or tier.
    """
    if level not in LEVEL_TITLES:
        raise ValueError(f"Unknown analysis level: {level}")
    _check_tier(tier)

    sections = ["You are an expert code reviewer analyzing a proposed change."]
    sections.extend(_change_header(context))
    sections.append(f"# {LEVEL_TITLES[level]}\n{LEVEL_SCOPE[level]}")

    files = _file_list_section(context.changed_files)
    if files:
        sections.append(files)

    sections.append(f"## Analysis Focus Areas\n{FOCUS_AREAS}")
    sections.append(f"## Available Commands (READ-ONLY)\n{READ_ONLY_RULES}")
    sections.append(f"## Diff\n```diff\n{context.diff.rstrip()}\n```")
    sections.append(f"## Output Format\n{OUTPUT_SCHEMA.replace('LEVEL', str(level))}")
    sections.append(f"## Guidelines\n{GUIDELINES}")
    if TIER_GUIDANCE[tier]:
        sections.append(TIER_GUIDANCE[tier])

    return "\n\n".join(sections) + "\n"


def _finding_for_prompt(finding: "Finding") -> dict:
    data = finding.to_dict()
    for key in ("level", "provider", "model"):
        data.pop(key, None)
    return {key: value for key, value in data.items() if value not in (None, "")}


def build_orchestration_prompt(
    context: "ReviewContext",
    level_findings: Mapping[int, list["Finding"]],
    tier: str = "balanced",
) -> str:
    """Render the consolidation prompt that merges the per-level findings.

    Args:
        context: The change under review.
        level_findings: Findings of each completed level, keyed by level.
        tier: Tier of the consolidating model.

    Raises:
        ValueError: For an unknown tier.
    """
    _check_tier(tier)

    sections = [
        f"# {ORCHESTRATION_TITLES[tier]}",
        "You are merging the results of several code review passes over the same "
        "change into one curated list of suggestions.",
    ]
    sections.extend(_change_header(context))

    for level in sorted(level_findings):
        findings = level_findings[level]
        payload = json.dumps([_finding_for_prompt(f) for f in findings], indent=2)
        sections.append(
            f"## {LEVEL_TITLES.get(level, f'Level {level}')} ({len(findings)} suggestions)\n"
            f"```json\n{payload}\n```"
        )

    files = _file_list_section(context.changed_files)
    if files:
        sections.append(files)

    guidelines = ORCHESTRATION_GUIDELINES
    if tier == "thorough":
        guidelines += "\n\n" + ORCHESTRATION_REASONING
    elif tier == "fast":
        guidelines += "\n\nKeep only suggestions worth a reviewer's time."
    sections.append(f"## Guidelines\n{guidelines}")
    sections.append(f"## Output Format\n{ORCHESTRATION_SCHEMA}")

    return "\n\n".join(sections) + "\n"
