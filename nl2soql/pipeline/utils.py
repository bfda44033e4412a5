from __future__ import annotations

import json
import re
from typing import Any, Iterable, Optional


def levenshtein(a: str, b: str) -> int:
    if a == b:
        return 0
    if not a:
        return len(b)
    if not b:
        return len(a)
    previous = list(range(len(b) + 1))
    for i, ca in enumerate(a, start=1):
        current = [i]
        for j, cb in enumerate(b, start=1):
            cost = 0 if ca == cb else 1
            current.append(min(previous[j] + 1, current[j - 1] + 1, previous[j - 1] + cost))
        previous = current
    return previous[-1]


def similarity(a: str, b: str) -> float:
    """Edit-distance similarity in [0, 1], case-insensitive."""
    if not a or not b:
        return 0.0
    a_low, b_low = a.lower(), b.lower()
    return 1.0 - levenshtein(a_low, b_low) / max(len(a_low), len(b_low))


def jaccard(a: Iterable[str], b: Iterable[str]) -> float:
    left, right = set(a), set(b)
    if not left and not right:
        return 0.0
    return len(left & right) / len(left | right)


def clean_block(text: str) -> str:
    stripped = text.strip()
    if stripped.startswith("```"):
        stripped = stripped[stripped.find("\n") + 1 :] if "\n" in stripped else stripped.lstrip("`")
    if stripped.endswith("```"):
        stripped = stripped[: stripped.rfind("```")]
    return stripped.strip()


def safe_json_loads(text: str) -> Optional[Any]:
    try:
        return json.loads(clean_block(text))
    except Exception:
        return None

_FENCED_SOQL = re.compile(r"```(?:soql|sql)\s*\n(.*?)```", re.IGNORECASE | re.DOTALL)
_FENCED_ANY = re.compile(r"```[a-zA-Z]*\s*\n(.*?)```", re.DOTALL)
_RAW_SELECT = re.compile(r"\bSELECT\b[\s\S]+?\bFROM\b[\s\S]*?(?=\n\s*\n|```|$)", re.IGNORECASE)


def extract_soql_block(text: str) -> Optional[str]:
    """Pull the query out of a model response: fenced soql/sql first, then a bare SELECT."""
    if not text:
        return None
    match = _FENCED_SOQL.search(text)
    if match:
        return match.group(1).strip().rstrip(";").strip()
    for block in _FENCED_ANY.findall(text):
        if re.search(r"\bSELECT\b", block, re.IGNORECASE):
            return block.strip().rstrip(";").strip()
    match = _RAW_SELECT.search(text)
    if match:
        return match.group(0).strip().rstrip(";").strip()
    return None


def strip_string_literals(text: str) -> str:
    return re.sub(r"'(?:\\.|[^'\\])*'|\"(?:\\.|[^\"\\])*\"", " ", text)


__all__ = [
    "levenshtein",
    "similarity",
    "jaccard",
    "clean_block",
    "safe_json_loads",
    "extract_soql_block",
    "strip_string_literals",
]
