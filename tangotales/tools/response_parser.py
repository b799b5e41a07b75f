"""Tolerant JSON extraction from free-form model answers.

Stages, each tried only if the previous one failed:

1. strip markdown code fences and parse strictly;
2. parse the first balanced top-level ``{...}`` block;
3. repair common breakage (smart quotes, bare keys, single quotes,
   trailing commas) and parse once more.

``parse_model_response`` never raises; it returns ``ParseSuccess`` or
``ParseFailure``.
"""
from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any, Iterable, Union

from loguru import logger

from tangotales.tools.web_utils import infer_link_type, is_valid_url

_FENCE_RE = re.compile(r"^\s*```(?:json|JSON)?\s*\n?(.*?)\n?\s*```\s*$", re.DOTALL)
_BARE_KEY_RE = re.compile(r"([{,]\s*)([A-Za-z_]\w*)(\s*:)")
_TRAILING_COMMA_RE = re.compile(r",(\s*[}\]])")
_SMART_QUOTES = str.maketrans({"“": '"', "”": '"', "‘": "'", "’": "'"})


@dataclass(slots=True)
class ParseSuccess:
    data: dict[str, Any]
    stage: str
    missing_fields: list[str] = field(default_factory=list)

    ok = True


@dataclass(slots=True)
class ParseFailure:
    diagnostic: str
    raw_preview: str = ""

    ok = False


ParseResult = Union[ParseSuccess, ParseFailure]


def strip_code_fences(text: str) -> str:
    stripped = text.strip()
    match = _FENCE_RE.match(stripped)
    if match:
        return match.group(1).strip()
    return stripped.replace("```json", "").replace("```", "").strip()


def extract_first_object(text: str) -> str | None:
    """First balanced ``{...}`` substring, ignoring braces inside strings."""
    start = text.find("{")
    while start != -1:
        depth = 0
        in_string = False
        escaped = False
        quote = ""
        for index in range(start, len(text)):
            char = text[index]
            if in_string:
                if escaped:
                    escaped = False
                elif char == "\\":
                    escaped = True
                elif char == quote:
                    in_string = False
                continue
            if char in ('"', "'"):
                in_string = True
                quote = char
            elif char == "{":
                depth += 1
            elif char == "}":
                depth -= 1
                if depth == 0:
                    return text[start : index + 1]
        start = text.find("{", start + 1)
    return None


def _string_end(text: str, start: int) -> int:
    """Index just past the string literal opening at ``start``."""
    quote = text[start]
    escaped = False
    for index in range(start + 1, len(text)):
        char = text[index]
        if escaped:
            escaped = False
        elif char == "\\":
            escaped = True
        elif char == quote:
            return index + 1
    return len(text)


def quote_bare_keys(text: str) -> str:
    """Quote ``key:`` identifiers that sit outside string literals."""
    parts: list[str] = []
    outside = 0
    index = 0
    while index < len(text):
        if text[index] in ('"', "'"):
            parts.append(_BARE_KEY_RE.sub(r'\1"\2"\3', text[outside:index]))
            end = _string_end(text, index)
            parts.append(text[index:end])
            index = outside = end
            continue
        index += 1
    parts.append(_BARE_KEY_RE.sub(r'\1"\2"\3', text[outside:]))
    return "".join(parts)


def repair_json(text: str) -> str:
    repaired = text.translate(_SMART_QUOTES)
    repaired = quote_bare_keys(repaired)
    if '"' not in repaired.replace('\\"', ""):
        repaired = repaired.replace("'", '"')
    else:
        # Single-quoted keys and values only; apostrophes inside words stay.
        repaired = re.sub(r"(?<![\w\"])'([^'\"]*)'(?![\w\"])", r'"\1"', repaired)
    repaired = _TRAILING_COMMA_RE.sub(r"\1", repaired)
    return repaired


def _loads_object(text: str) -> dict[str, Any] | None:
    try:
        value = json.loads(text)
    except (json.JSONDecodeError, TypeError):
        return None
    return value if isinstance(value, dict) else None


def find_missing_fields(data: dict[str, Any], required_fields: Iterable[str]) -> list[str]:
    missing = []
    for name in required_fields:
        value = data.get(name)
        if value is None or (isinstance(value, str) and not value.strip()):
            missing.append(name)
    return missing


def parse_model_response(text: str | None, required_fields: Iterable[str] = ()) -> ParseResult:
    required = list(required_fields)
    if not text or not text.strip():
        return ParseFailure(diagnostic="Empty response text")

    preview = text.strip()[:200]
    unfenced = strip_code_fences(text)

    data = _loads_object(unfenced)
    stage = "strict"

    if data is None:
        candidate = extract_first_object(unfenced)
        if candidate is None:
            return ParseFailure(diagnostic="No JSON object found in response", raw_preview=preview)
        data = _loads_object(candidate)
        stage = "substring"

        if data is None:
            data = _loads_object(repair_json(candidate))
            stage = "repaired"

    if data is None:
        logger.debug(f"JSON repair failed for response: {preview!r}")
        return ParseFailure(diagnostic="JSON parse failed after repair attempts", raw_preview=preview)

    return ParseSuccess(data=data, stage=stage, missing_fields=find_missing_fields(data, required))


def normalize_recording_links(data: dict[str, Any]) -> dict[str, Any]:
    """Coerce ``links`` on each recording into ``[{url, type, title?}]``.

    Relative or malformed URLs are dropped.
    """
    recordings = data.get("notableRecordings")
    if not isinstance(recordings, list):
        return data

    for recording in recordings:
        if not isinstance(recording, dict):
            continue
        raw_links = recording.get("links")
        if raw_links is None:
            recording["links"] = []
            continue
        if isinstance(raw_links, (str, dict)):
            raw_links = [raw_links]
        if not isinstance(raw_links, list):
            recording["links"] = []
            continue

        links = []
        for raw in raw_links:
            if isinstance(raw, str):
                url, title, link_type = raw.strip(), None, None
            elif isinstance(raw, dict):
                url = str(raw.get("url") or raw.get("uri") or "").strip()
                title = raw.get("title")
                link_type = raw.get("type")
            else:
                continue
            if not is_valid_url(url):
                continue
            link = {"url": url, "type": link_type or infer_link_type(url)}
            if title:
                link["title"] = str(title)
            links.append(link)
        recording["links"] = links
    return data
