"""Shared utilities for parsing LLM responses."""

from __future__ import annotations

import json
import re

_FENCED_BLOCK = re.compile(r"```(?:json)?\s*([\s\S]*?)```")
_TRAILING_COMMA = re.compile(r",\s*([}\]])")


def _loads_object(text: str) -> dict:
    """json.loads that only accepts a JSON object; tolerates trailing commas."""
    for candidate in (text, _TRAILING_COMMA.sub(r"\1", text)):
        try:
            data = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(data, dict):
            return data
    raise ValueError("no JSON object")


def parse_llm_json(raw: str) -> dict:
    """Parse JSON from an LLM response, handling code fences and preamble text.

    Tries in order:
    1. The contents of the first markdown code fence (anywhere in the reply)
    2. The whole reply
    3. The substring between the first '{' and the last '}'
    4. Return empty dict

    Each attempt also retries with trailing commas removed.
    """
    if not raw:
        return {}

    text = raw.strip()
    attempts = []

    fenced = _FENCED_BLOCK.search(text)
    if fenced:
        attempts.append(fenced.group(1).strip())
    attempts.append(text)

    start = text.find("{")
    end = text.rfind("}") + 1
    if start >= 0 and end > start:
        attempts.append(text[start:end])

    for attempt in attempts:
        try:
            return _loads_object(attempt)
        except ValueError:
            continue

    return {}
