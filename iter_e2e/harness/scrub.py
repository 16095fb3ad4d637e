# Where: iter_e2e/harness/scrub.py
# What: Pure helpers that turn terminal output from driver containers into JSON.
# Why: Exec output carries ANSI escapes and readline markers around the payload.
from __future__ import annotations

import json
import re
from typing import Any

# CSI sequences, OSC sequences terminated by BEL, and readline start/end markers.
_CONTROL_RE = re.compile(r"\x1b\[[0-9;?]*[a-zA-Z]|\x1b\].*?\x07|\x01|\x02")


def strip_control_sequences(text: str) -> str:
    return _CONTROL_RE.sub("", text)


def find_json_start(text: str) -> int:
    """Index of the first ``{`` or ``[``, or -1."""
    positions = [pos for pos in (text.find("{"), text.find("[")) if pos >= 0]
    return min(positions) if positions else -1


def extract_json(output: str) -> Any:
    """
    Decode the first JSON value embedded in ``output``.

    Text before the value (shell noise, curl progress) and after it is
    ignored. Raises ValueError when no JSON value can be found.
    """
    cleaned = strip_control_sequences(output)
    start = find_json_start(cleaned)
    if start < 0:
        raise ValueError(f"No JSON found in output: {cleaned[:200]!r}")
    try:
        value, _ = json.JSONDecoder().raw_decode(cleaned, start)
    except json.JSONDecodeError as exc:
        raise ValueError(f"Invalid JSON in output: {exc}") from exc
    return value
