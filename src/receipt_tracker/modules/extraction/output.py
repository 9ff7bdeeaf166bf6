from __future__ import annotations

import json
import re
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Any

_FENCE_BLOCK_RE = re.compile(r"```(?:json)?[ \t]*([\s\S]*?)```", re.IGNORECASE)
_FENCE_MARKER_RE = re.compile(r"```(?:json)?", re.IGNORECASE)
_TRAILING_COMMA_RE = re.compile(r",\s*([}\]])")
_SMART_QUOTES = str.maketrans(
    {
        "“": '"',
        "”": '"',
        "„": '"',
        "‘": "'",
        "’": "'",
    }
)


def extract_json_text(text: Any) -> str:
    """
    Best-effort JSON text out of a model response.

    Prefers the interior of a ``` fence, then the widest {...} span, then the
    text with stray fence markers removed. Never raises; the result may still
    be invalid JSON.
    """
    if text is None:
        return ""
    s = text if isinstance(text, str) else str(text)

    m = _FENCE_BLOCK_RE.search(s)
    if m:
        return m.group(1).strip()

    start = s.find("{")
    end = s.rfind("}")
    if start != -1 and end > start:
        return s[start : end + 1]

    return _FENCE_MARKER_RE.sub("", s).strip()


def repair_json_text(text: str) -> str:
    """Fix the formatting slips models make most often: BOM, smart quotes, trailing commas."""
    s = (text or "").lstrip("﻿").translate(_SMART_QUOTES)
    return _TRAILING_COMMA_RE.sub(r"\1", s).strip()


def _loads_object(text: str) -> dict[str, Any] | None:
    if not text or not text.strip():
        return None
    try:
        obj = json.loads(text)
    except (ValueError, RecursionError):
        return None
    return obj if isinstance(obj, dict) else None


@dataclass(frozen=True)
class ParseStrategy:
    name: str
    parse: Callable[[str], dict[str, Any] | None]


@dataclass(frozen=True)
class ParsedOutput:
    payload: dict[str, Any]
    strategy: str


DEFAULT_PARSE_STRATEGIES: tuple[ParseStrategy, ...] = (
    ParseStrategy("direct", lambda text: _loads_object(text.strip())),
    ParseStrategy("extracted", lambda text: _loads_object(extract_json_text(text))),
    ParseStrategy(
        "repaired", lambda text: _loads_object(repair_json_text(extract_json_text(text)))
    ),
)


def parse_model_output(
    text: str | None,
    *,
    strategies: Sequence[ParseStrategy] = DEFAULT_PARSE_STRATEGIES,
) -> ParsedOutput | None:
    """Run the strategies in order; the first one that yields a JSON object wins."""
    raw = text or ""
    for strategy in strategies:
        payload = strategy.parse(raw)
        if payload is not None:
            return ParsedOutput(payload=payload, strategy=strategy.name)
    return None
