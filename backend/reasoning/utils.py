"""Text helpers shared by the reasoning client, conversations and lanes.

This module provides:
- extract_json_from_response: Pull a JSON object out of free-form model output
- count_tokens_estimate: ~4 characters per token heuristic
- clip_text: Bound a prompt section to a character budget
- window_transcript: Choose which turns accompany a remote call
- coerce_confidence: Normalize a model-reported confidence into [0, 1]
"""

import json
import re
from collections.abc import Sequence
from typing import Any

import structlog

logger = structlog.get_logger()


def _extract_balanced_json_objects(text: str) -> list[str]:
    """Extract balanced JSON object candidates from arbitrary text."""
    candidates: list[str] = []
    n = len(text)

    for start in range(n):
        if text[start] != "{":
            continue

        depth = 0
        in_string = False
        escaped = False

        for end in range(start, n):
            ch = text[end]

            if in_string:
                if escaped:
                    escaped = False
                elif ch == "\\":
                    escaped = True
                elif ch == '"':
                    in_string = False
                continue

            if ch == '"':
                in_string = True
            elif ch == "{":
                depth += 1
            elif ch == "}":
                depth -= 1
                if depth == 0:
                    candidates.append(text[start : end + 1])
                    break

    return candidates


def extract_json_from_response(response: str) -> dict[str, Any] | None:
    """Extract a JSON object from a model response that may contain extra text.

    Tries, in order: the whole response, fenced ```json blocks, then the
    first balanced ``{...}`` object that parses.

    Args:
        response: The full response text

    Returns:
        Parsed JSON dict if found, None otherwise
    """
    def try_parse(candidate: str) -> dict[str, Any] | None:
        try:
            parsed = json.loads(candidate)
        except json.JSONDecodeError:
            return None
        return parsed if isinstance(parsed, dict) else None

    if not response:
        return None

    parsed = try_parse(response.strip())
    if parsed is not None:
        return parsed

    fence_pattern = r"```(?:json)?\s*([\s\S]*?)\s*```"
    for match in re.finditer(fence_pattern, response, re.IGNORECASE):
        fenced_body = match.group(1).strip()
        parsed = try_parse(fenced_body)
        if parsed is not None:
            return parsed
        for candidate in _extract_balanced_json_objects(fenced_body):
            parsed = try_parse(candidate)
            if parsed is not None:
                return parsed

    for candidate in _extract_balanced_json_objects(response):
        parsed = try_parse(candidate)
        if parsed is not None:
            return parsed

    return None


def count_tokens_estimate(text: str) -> int:
    """Estimate token count for a text string (~4 characters per token)."""
    return len(text) // 4


def clip_text(text: str, max_chars: int) -> str:
    """Clip text to ``max_chars``, marking the cut."""
    if len(text) <= max_chars:
        return text
    marker = "\n...[truncated]"
    return text[: max(0, max_chars - len(marker))] + marker


def window_transcript(
    messages: Sequence[dict[str, str]],
    max_messages: int,
    max_tokens: int,
) -> list[dict[str, str]]:
    """Select the transcript slice sent with a remote call.

    Keeps the opening message (it carries the original problem statement)
    and as many of the most recent messages as fit both limits. A note
    replaces the dropped middle.

    Args:
        messages: Chronological chat messages (``role``/``content`` dicts).
        max_messages: Maximum number of messages to keep, note included.
        max_tokens: Token estimate ceiling for the kept messages.

    Returns:
        The windowed message list.
    """
    if not messages:
        return []

    total_tokens = sum(count_tokens_estimate(m.get("content", "")) for m in messages)
    if len(messages) <= max_messages and total_tokens <= max_tokens:
        return list(messages)

    first = messages[0]
    used_tokens = count_tokens_estimate(first.get("content", ""))
    # Reserve one slot for the opening message and one for the note.
    slots = max(0, max_messages - 2)
    recent: list[dict[str, str]] = []
    for message in reversed(messages[1:]):
        if len(recent) >= slots:
            break
        cost = count_tokens_estimate(message.get("content", ""))
        if recent and used_tokens + cost > max_tokens:
            break
        recent.append(message)
        used_tokens += cost
    recent.reverse()

    dropped = len(messages) - 1 - len(recent)
    if dropped <= 0:
        return [first, *recent]

    note = {
        "role": "user",
        "content": f"[Note: {dropped} earlier turns omitted for context limits.]",
    }
    logger.debug(
        "transcript_windowed",
        original_messages=len(messages),
        kept_messages=len(recent) + 1,
        dropped=dropped,
    )
    return [first, note, *recent]


def coerce_confidence(value: Any, default: float = 0.0) -> float:
    """Normalize a reported confidence into [0, 1].

    Accepts fractions (0.8) and percentages (80); anything unparseable
    yields ``default``.
    """
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    if number != number:  # NaN
        return default
    if 1.0 < number <= 100.0:
        number /= 100.0
    return min(1.0, max(0.0, number))


def coerce_str_list(value: Any) -> list[str]:
    """Turn a model-provided list (or single value) into a list of strings."""
    if value is None:
        return []
    if isinstance(value, str):
        return [value] if value.strip() else []
    if isinstance(value, (list, tuple)):
        return [item if isinstance(item, str) else json.dumps(item, sort_keys=True) for item in value]
    return [str(value)]
