"""Balanced-brace scanning for JSON objects embedded in free text."""

from __future__ import annotations

import json
from typing import Iterator


def _match_brace(text: str, begin: int) -> int | None:
    """Return the index just past the brace closing the one at `begin`."""
    depth = 0
    in_string = False
    escaped = False
    for i in range(begin, len(text)):
        ch = text[i]
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
                return i + 1
    return None


def iter_balanced_objects(text: str, start: int = 0) -> Iterator[tuple[int, int]]:
    """Yield (begin, end) spans of balanced {...} substrings, left to right."""
    begin = text.find("{", start)
    while begin != -1:
        end = _match_brace(text, begin)
        if end is not None:
            yield begin, end
            begin = text.find("{", end)
        else:
            begin = text.find("{", begin + 1)


def find_balanced_object(text: str, start: int = 0) -> tuple[int, int] | None:
    """Span of the first balanced {...} at or after `start`, or None."""
    return next(iter_balanced_objects(text, start), None)


def load_first_object(text: str) -> dict:
    """Parse the first embedded JSON object in `text`.

    Candidates that are balanced but not valid JSON (prose like "{like this}")
    are skipped. Raises ValueError when nothing usable is found.
    """
    last_error: Exception | None = None
    found = False
    for begin, end in iter_balanced_objects(text):
        found = True
        try:
            parsed = json.loads(text[begin:end])
        except json.JSONDecodeError as e:
            last_error = e
            continue
        if isinstance(parsed, dict):
            return parsed
    if not found:
        raise ValueError("No JSON object found in model output.")
    raise ValueError(f"Embedded JSON object could not be parsed: {last_error}")
