# Copyright (c) 2025. Review Council AI Analysis Engine.

"""Salvage a JSON payload from reviewer CLI output.

Reviewer CLIs wrap their answer differently: some print the JSON directly,
some stream JSON Lines with the text split across events, some wrap it in an
envelope object, and most models like to put it inside a Markdown code fence.
``extract_json`` tries an ordered list of strategies and reports which one
succeeded.
"""

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Callable

from ._logging import level_prefix

logger = logging.getLogger("review_council")

# Keys that mark an object as the review payload itself rather than an envelope
PAYLOAD_KEYS = ("suggestions", "fileLevelSuggestions", "summary")

# Keys of a single finding, which is also a payload rather than a wrapper
FINDING_KEYS = ("file", "title")

# Envelope fields tried, in order, when the payload is wrapped
ENVELOPE_KEYS = ("response", "content", "text", "result")

# Event types whose ``text`` field carries assistant output in JSON Lines streams
TEXT_EVENT_TYPES = ("text", "agent_message", "assistant_text")

# Nesting depth for envelope and JSON Lines recursion
MAX_DEPTH = 3

_JSON_FENCE = re.compile(r"```json\s*\n?(.*?)```", re.DOTALL | re.IGNORECASE)
_ANY_FENCE = re.compile(r"```[a-zA-Z]*\s*\n?(.*?)```", re.DOTALL)


@dataclass
class ExtractionResult:
    """Outcome of a JSON extraction attempt.

    Attributes:
        success: Whether a JSON object or array was recovered.
        data: The recovered payload.
        error: Why extraction failed.
        strategy: Name of the strategy that produced ``data``.
        text: On failure, the assistant text left once CLI wrappers were
            removed. This is the raw answer of a reviewer that replied in prose.
    """

    success: bool
    data: Any = None
    error: str | None = None
    strategy: str | None = None
    text: str | None = None


def _loads(text: str) -> Any:
    """Parse JSON, returning None for anything that is not an object or array."""
    try:
        value = json.loads(text)
    except (json.JSONDecodeError, ValueError):
        return None
    return value if isinstance(value, (dict, list)) else None


def _is_wrapper(value: Any) -> bool:
    """A CLI wrapper object (envelope or stream event) rather than a review payload."""
    if not isinstance(value, dict):
        return False
    if any(key in value for key in PAYLOAD_KEYS + FINDING_KEYS):
        return False
    if "type" in value:
        return True
    return any(isinstance(value.get(key), (str, dict, list)) for key in ENVELOPE_KEYS)


def _not_found(text: str) -> ExtractionResult:
    return ExtractionResult(success=False, error="No valid JSON found in response", text=text)


def parse_direct(text: str, level: Any, depth: int) -> ExtractionResult | None:
    """Whole output is JSON. Wrappers fall through to the envelope strategy."""
    value = _loads(text.strip())
    if value is None or _is_wrapper(value):
        return None
    return ExtractionResult(success=True, data=value)


def _event_text(event: dict) -> str | None:
    if event.get("type") in ("item.started", "item.updated"):
        return None
    for candidate in (event, event.get("part"), event.get("item")):
        if (
            isinstance(candidate, dict)
            and candidate.get("type") in TEXT_EVENT_TYPES
            and isinstance(candidate.get("text"), str)
        ):
            return candidate["text"]
    return None


def _stream_events(text: str) -> list[dict] | None:
    """The events of a JSON Lines stream, or None when the output is not one."""
    lines = [line.strip() for line in text.splitlines() if line.strip()]
    events = []
    for line in lines:
        event = _loads(line) if line.startswith("{") else None
        if isinstance(event, dict):
            events.append(event)
    if len(events) < 2 or len(events) * 2 < len(lines):
        return None
    return events


def parse_json_lines(text: str, level: Any, depth: int) -> ExtractionResult | None:
    """Accumulate text events across JSON Lines output and parse the joined text.

    The events themselves are never taken as the payload; a stream whose
    text holds no JSON is a failure carrying that text.
    """
    events = _stream_events(text)
    if events is None:
        return None

    pieces = [piece for piece in map(_event_text, events) if piece]
    joined = "".join(pieces)
    if not joined.strip():
        return _not_found(joined)
    inner = extract_json(joined, level=level, depth=depth + 1)
    return inner if inner.success else _not_found(joined if inner.text is None else inner.text)


def parse_envelope(text: str, level: Any, depth: int) -> ExtractionResult | None:
    """Unwrap ``response`` / ``content`` / ``text`` / ``result`` fields.

    As with streams, the envelope itself is never taken as the payload.
    """
    value = _loads(text.strip())
    if not _is_wrapper(value):
        return None

    unwrapped = None
    for key in ENVELOPE_KEYS:
        field_value = value.get(key)
        if isinstance(field_value, (dict, list)):
            return ExtractionResult(success=True, data=field_value)
        if isinstance(field_value, str) and field_value.strip():
            inner = extract_json(field_value, level=level, depth=depth + 1)
            if inner.success:
                return inner
            if unwrapped is None:
                unwrapped = field_value if inner.text is None else inner.text
    return _not_found(unwrapped or "")


def parse_code_fence(text: str, level: Any, depth: int) -> ExtractionResult | None:
    """JSON inside a Markdown code fence; ```json fences win over bare ones."""
    for pattern in (_JSON_FENCE, _ANY_FENCE):
        for match in pattern.finditer(text):
            value = _loads(match.group(1).strip())
            if value is not None:
                return ExtractionResult(success=True, data=value)
    return None


def parse_brace_span(text: str, level: Any, depth: int) -> ExtractionResult | None:
    """Everything from the first ``{`` to the last ``}``."""
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end <= start:
        return None
    value = _loads(text[start:end + 1])
    return ExtractionResult(success=True, data=value) if value is not None else None


def _balanced_object_end(text: str, start: int) -> int:
    """Index just past the object opening at ``start``, or -1 if it never closes."""
    depth = 0
    in_string = False
    escaped = False
    for index in range(start, len(text)):
        char = text[index]
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
        elif char == '"':
            in_string = True
        elif char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                return index + 1
    return -1


def parse_balanced_braces(text: str, level: Any, depth: int) -> ExtractionResult | None:
    """First brace-balanced span that parses as a JSON object."""
    start = text.find("{")
    while start != -1:
        end = _balanced_object_end(text, start)
        if end != -1:
            value = _loads(text[start:end])
            if value is not None:
                return ExtractionResult(success=True, data=value)
        start = text.find("{", start + 1)
    return None


Strategy = Callable[[str, Any, int], ExtractionResult | None]

# Order matters: earlier strategies are stricter.
STRATEGIES: list[tuple[str, Strategy]] = [
    ("direct", parse_direct),
    ("json_lines", parse_json_lines),
    ("envelope", parse_envelope),
    ("code_fence", parse_code_fence),
    ("brace_span", parse_brace_span),
    ("balanced_braces", parse_balanced_braces),
]


def extract_json(text: str | None, level: Any = None, depth: int = 0) -> ExtractionResult:
    """Extract a JSON object or array from free-form reviewer output.

    Args:
        text: Raw process output.
        level: Analysis level, used for log prefixes only.
        depth: Current recursion depth for nested envelopes.

    Returns:
        ExtractionResult; ``success`` is False when no strategy matched.

    Example:
        >>> extract_json('Here you go:\\n```json\\n{"suggestions": []}\\n```').strategy
        'code_fence'
    """
    if not text or not text.strip():
        return ExtractionResult(success=False, error="Empty response")

    if depth > MAX_DEPTH:
        return ExtractionResult(success=False, error="Maximum nesting depth exceeded")

    unwrapped = text
    for name, strategy in STRATEGIES:
        result = strategy(text, level, depth)
        if result is None:
            continue
        if result.success:
            result.strategy = name
            if depth == 0:
                logger.debug(f"{level_prefix(level)} Extracted JSON using strategy '{result.strategy}'")
            return result
        # A recognised wrapper was already searched; its text is the answer.
        unwrapped = result.text
        break

    if depth == 0:
        logger.warning(
            f"{level_prefix(level)} No JSON found in response ({len(text)} chars)"
        )
    return _not_found(unwrapped)
