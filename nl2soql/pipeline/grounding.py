"""Entity grounding: resolve literal values from a request against known data.

Tier 1 uses only what is already in memory (patterns, the synonym dictionary,
picklist values and labels of the context objects). Tier 2 runs a sanitized
instance search and is attempted only when Tier 1 has no confident answer.
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Sequence, Tuple

from .config import (
    CONFIDENT_MATCH,
    FUZZY_MATCH_THRESHOLD,
    INSTANCE_SEARCH_TIMEOUT,
    SOSL_MIN_TERM_LENGTH,
    SOSL_RESULT_LIMIT,
)
from .lexicon import (
    CATEGORY_CONFIDENCE_MODIFIERS,
    DATE_LITERALS,
    DATE_NATURAL_MAP,
    DEFAULT_CATEGORY_MODIFIER,
    PRIORITY_KEYWORDS,
    SOSL_OBJECT_FIELDS,
    SOSL_TARGET_OBJECTS,
    STATUS_KEYWORDS,
    SYNONYM_INDEX,
)
from .schema_graph import InstanceRecord, SchemaGraphClient, SchemaObject
from .utils import levenshtein, similarity

logger = logging.getLogger(__name__)


class GroundingType(str, Enum):
    EXACT = "exact"
    SYNONYM = "synonym"
    FUZZY = "fuzzy"
    INSTANCE_VERIFIED = "instance_verified"
    PATTERN = "pattern"


class GroundingSource(str, Enum):
    METADATA = "metadata"
    INSTANCE_SEARCH = "instance_search"


@dataclass(frozen=True)
class GroundingResult:
    candidate: str
    value: Optional[str] = None
    type: Optional[GroundingType] = None
    source: Optional[GroundingSource] = None
    confidence: float = 0.0
    evidence: Tuple[str, ...] = ()
    object_name: Optional[str] = None
    field_name: Optional[str] = None
    suggested_filter: Optional[str] = None

    @property
    def grounded(self) -> bool:
        return self.value is not None

    @classmethod
    def ungrounded(cls, candidate: str, evidence: Sequence[str] = ()) -> "GroundingResult":
        return cls(candidate=candidate, evidence=tuple(evidence))

    def to_dict(self) -> Dict[str, object]:
        return {
            "candidate": self.candidate,
            "value": self.value,
            "type": self.type.value if self.type else None,
            "source": self.source.value if self.source else None,
            "confidence": round(self.confidence, 3),
            "object": self.object_name,
            "field": self.field_name,
            "suggested_filter": self.suggested_filter,
            "evidence": list(self.evidence),
        }

    def hint(self) -> str:
        """One-line rendering for prompts."""
        if not self.grounded:
            return f'"{self.candidate}": ungrounded (do not invent a filter value)'
        target = ".".join(p for p in (self.object_name, self.field_name) if p)
        where = f" on {target}" if target else ""
        text = f'"{self.candidate}" -> "{self.value}"{where} ({self.type.value if self.type else "?"}, {self.confidence:.2f})'
        if self.suggested_filter:
            text += f"; filter: {self.suggested_filter}"
        return text


# --- patterns --------------------------------------------------------------

_RECORD_ID = re.compile(r"^[a-zA-Z0-9]{15}([a-zA-Z0-9]{3})?$")
_ISO_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_CURRENCY = re.compile(r"^\$?[\d,]+(\.\d{2})?$")
_SCALED_NUMBER = re.compile(r"^(\d+(?:\.\d+)?)\s*([kKmMbB])?$")
_EMAIL = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_PHONE = re.compile(r"^[\d\s\-+().]{7,}$")
_URL = re.compile(r"^https?://.+", re.IGNORECASE)
_SCALE = {"k": 1_000, "m": 1_000_000, "b": 1_000_000_000}


@dataclass(frozen=True)
class PatternMatch:
    kind: str
    normalized: str
    original: str
    confidence: float


def _format_number(value: float) -> str:
    return str(int(value)) if value == int(value) else str(value)


def match_pattern(value: str) -> Optional[PatternMatch]:
    trimmed = value.strip()
    if not trimmed:
        return None
    # Record ids are mixed alphanumerics; a plain 15-letter word is not one.
    if _RECORD_ID.match(trimmed) and re.search(r"\d", trimmed):
        return PatternMatch("record_id", trimmed, value, 0.95)
    upper = trimmed.upper()
    if upper in DATE_LITERALS:
        return PatternMatch("date_literal", upper, value, 0.98)
    lowered = trimmed.lower()
    if lowered in DATE_NATURAL_MAP:
        return PatternMatch("date_literal", DATE_NATURAL_MAP[lowered], value, 0.95)
    if _ISO_DATE.match(trimmed):
        return PatternMatch("date_value", trimmed, value, 0.95)
    if _CURRENCY.match(trimmed) and ("$" in trimmed or "," in trimmed):
        return PatternMatch("currency", _format_number(float(trimmed.replace("$", "").replace(",", ""))), value, 0.9)
    scaled = _SCALED_NUMBER.match(trimmed)
    if scaled:
        number = float(scaled.group(1)) * _SCALE.get((scaled.group(2) or "").lower(), 1)
        return PatternMatch("number", _format_number(number), value, 0.9)
    if _EMAIL.match(trimmed):
        return PatternMatch("email", lowered, value, 0.95)
    digits = re.sub(r"\D", "", trimmed)
    if _PHONE.match(trimmed) and len(digits) >= 7:
        return PatternMatch("phone", digits, value, 0.85)
    if _URL.match(trimmed):
        return PatternMatch("url", trimmed, value, 0.95)
    return None


_PATTERN_FILTERS = {
    "record_id": ("Id", "Id = '{v}'"),
    "date_literal": ("CreatedDate", "CreatedDate = {v}"),
    "date_value": ("CreatedDate", "CreatedDate = {v}"),
    "currency": ("Amount", "Amount >= {v}"),
    "number": ("Amount", "Amount >= {v}"),
    "email": ("Email", "Email = '{v}'"),
    "phone": ("Phone", "Phone LIKE '%{v}%'"),
    "url": ("Website", "Website = '{v}'"),
}


def _pattern_result(candidate: str, match: PatternMatch) -> GroundingResult:
    field_name, template = _PATTERN_FILTERS[match.kind]
    value = match.normalized[-10:] if match.kind == "phone" else match.normalized
    return GroundingResult(
        candidate=candidate,
        value=match.normalized,
        type=GroundingType.PATTERN,
        source=GroundingSource.METADATA,
        confidence=match.confidence,
        evidence=(f"pattern:{match.kind}",),
        field_name=field_name,
        suggested_filter=template.format(v=value),
    )


# --- instance search -------------------------------------------------------

_SOSL_DANGEROUS = re.compile(r"[{}\\'\"?&|!()^~*:]")
_SOSL_RESERVED = re.compile(r"\b(AND|OR|NOT)\b", re.IGNORECASE)


def sanitize_sosl_term(term: str) -> str:
    """Strip characters and operators that could escape a ``FIND {...}`` clause."""
    if not term:
        return ""
    cleaned = _SOSL_DANGEROUS.sub("", term)
    cleaned = _SOSL_RESERVED.sub("", cleaned)
    cleaned = re.sub(r"\s+", " ", cleaned).strip()
    if len(cleaned) < SOSL_MIN_TERM_LENGTH:
        return ""
    return cleaned


def is_valid_sosl_term(term: str) -> bool:
    return bool(term) and len(term) >= SOSL_MIN_TERM_LENGTH and bool(re.search(r"[A-Za-z0-9]", term))


def build_sosl_query(term: str, objects: Sequence[str], limit: int = SOSL_RESULT_LIMIT) -> str:
    if not is_valid_sosl_term(term):
        raise ValueError(f'Invalid SOSL term: "{term}"')
    returning = []
    for obj in objects:
        fields = ("Id", "Name") + SOSL_OBJECT_FIELDS.get(obj, ())
        returning.append(f"{obj}({', '.join(fields)} LIMIT {limit})")
    return f"FIND {{{term}}} IN NAME FIELDS RETURNING {', '.join(returning)}"


def name_match(term: str, name: str) -> Tuple[float, int]:
    """Best (similarity, edit distance) of ``term`` against a name or a same-width run of its words."""
    term_low = term.lower().strip()
    options = [name.lower().strip()]
    words = [w for w in re.split(r"\s+", options[0]) if w]
    width = len(term_low.split())
    if 0 < width < len(words):
        options.extend(" ".join(words[i : i + width]) for i in range(len(words) - width + 1))
    best = (0.0, max(len(term_low), 1))
    for option in options:
        score = similarity(term_low, option)
        distance = levenshtein(term_low, option)
        if score > best[0] or (score == best[0] and distance < best[1]):
            best = (score, distance)
    return best


# --- service ---------------------------------------------------------------


class GroundingService:
    def __init__(
        self,
        graph: SchemaGraphClient,
        *,
        fuzzy_threshold: float = FUZZY_MATCH_THRESHOLD,
        confident_match: float = CONFIDENT_MATCH,
        search_timeout: float = INSTANCE_SEARCH_TIMEOUT,
        result_limit: int = SOSL_RESULT_LIMIT,
        enable_instance_search: bool = True,
    ) -> None:
        self.graph = graph
        self.fuzzy_threshold = fuzzy_threshold
        self.confident_match = confident_match
        self.search_timeout = search_timeout
        self.result_limit = result_limit
        self.enable_instance_search = enable_instance_search

    async def ground_entity(
        self,
        candidate: str,
        objects: Sequence[SchemaObject] = (),
        *,
        scope: Optional[Sequence[str]] = None,
        tenant: Optional[str] = None,
    ) -> GroundingResult:
        term = candidate.strip()
        if not term:
            return GroundingResult.ungrounded(candidate)
        tier_one = self.tier_one(term, objects)
        best = tier_one[0] if tier_one else None
        if best is not None and best.confidence > self.confident_match:
            return best
        if self.enable_instance_search:
            names = list(scope) if scope else [o.api_name for o in objects] or list(SOSL_TARGET_OBJECTS)
            verified = await self.tier_two(term, names, tenant=tenant)
            if verified is not None:
                return verified
        if best is not None:
            return best
        logger.debug("no grounding for %r", term)
        return GroundingResult.ungrounded(candidate, ("tier1:no match", "tier2:no match"))

    async def ground_values(
        self,
        candidates: Sequence[str],
        objects: Sequence[SchemaObject] = (),
        *,
        scope: Optional[Sequence[str]] = None,
        tenant: Optional[str] = None,
    ) -> List[GroundingResult]:
        return list(
            await asyncio.gather(
                *(self.ground_entity(c, objects, scope=scope, tenant=tenant) for c in candidates)
            )
        )

    def tier_one(self, term: str, objects: Sequence[SchemaObject]) -> List[GroundingResult]:
        """Metadata matches ranked by confidence; no I/O."""
        results: List[GroundingResult] = []
        pattern = match_pattern(term)
        if pattern is not None:
            results.append(_pattern_result(term, pattern))
        results.extend(self._synonym_matches(term))
        results.extend(self._picklist_matches(term, objects))
        results.extend(self._label_matches(term, objects))
        results.sort(key=lambda r: r.confidence, reverse=True)
        return results

    def _synonym_matches(self, term: str) -> List[GroundingResult]:
        lowered = term.lower()
        results: List[GroundingResult] = []
        api_name = SYNONYM_INDEX.get(lowered) or SYNONYM_INDEX.get(lowered.rstrip("s"))
        if api_name:
            results.append(
                GroundingResult(
                    candidate=term,
                    value=api_name,
                    type=GroundingType.SYNONYM,
                    source=GroundingSource.METADATA,
                    confidence=0.9,
                    evidence=(f"synonym:{lowered}->{api_name}",),
                    object_name=api_name,
                    suggested_filter=f"FROM {api_name}",
                )
            )
        for keywords, field_name, confidence in (
            (PRIORITY_KEYWORDS, "Priority", 0.9),
            (STATUS_KEYWORDS, "Status", 0.85),
        ):
            if lowered in keywords:
                value = keywords[lowered]
                results.append(
                    GroundingResult(
                        candidate=term,
                        value=value,
                        type=GroundingType.SYNONYM,
                        source=GroundingSource.METADATA,
                        confidence=confidence,
                        evidence=(f"keyword:{lowered}",),
                        field_name=field_name,
                        suggested_filter=f"{field_name} = '{value}'",
                    )
                )
        return results

    def _picklist_matches(self, term: str, objects: Sequence[SchemaObject]) -> List[GroundingResult]:
        lowered = term.lower()
        results: List[GroundingResult] = []
        for obj in objects:
            modifier = CATEGORY_CONFIDENCE_MODIFIERS.get(obj.category or "", DEFAULT_CATEGORY_MODIFIER)
            for fld in obj.fields:
                if not fld.picklist_values:
                    continue
                for value in fld.picklist_values:
                    if value.lower() == lowered:
                        kind, confidence = GroundingType.EXACT, 0.95 * modifier
                    else:
                        score = similarity(term, value)
                        if score < self.fuzzy_threshold:
                            continue
                        kind, confidence = GroundingType.FUZZY, 0.8 * score * modifier
                    results.append(
                        GroundingResult(
                            candidate=term,
                            value=value,
                            type=kind,
                            source=GroundingSource.METADATA,
                            confidence=confidence,
                            evidence=(f"picklist:{obj.api_name}.{fld.api_name}.{value}",),
                            object_name=obj.api_name,
                            field_name=fld.api_name,
                            suggested_filter=f"{fld.api_name} = '{value}'",
                        )
                    )
        return results

    def _label_matches(self, term: str, objects: Sequence[SchemaObject]) -> List[GroundingResult]:
        lowered = term.lower()
        results: List[GroundingResult] = []
        for obj in objects:
            if lowered in {obj.api_name.lower(), obj.label.lower()}:
                results.append(
                    GroundingResult(
                        candidate=term,
                        value=obj.api_name,
                        type=GroundingType.EXACT,
                        source=GroundingSource.METADATA,
                        confidence=0.9,
                        evidence=(f"object:{obj.api_name}",),
                        object_name=obj.api_name,
                        suggested_filter=f"FROM {obj.api_name}",
                    )
                )
            for fld in obj.fields:
                if fld.label.lower() == lowered:
                    results.append(
                        GroundingResult(
                            candidate=term,
                            value=fld.api_name,
                            type=GroundingType.EXACT,
                            source=GroundingSource.METADATA,
                            confidence=0.8,
                            evidence=(f"field label:{obj.api_name}.{fld.api_name}",),
                            object_name=obj.api_name,
                            field_name=fld.api_name,
                        )
                    )
        return results

    async def tier_two(
        self, term: str, scope: Sequence[str], *, tenant: Optional[str] = None
    ) -> Optional[GroundingResult]:
        sanitized = sanitize_sosl_term(term)
        if not is_valid_sosl_term(sanitized):
            logger.debug("term %r unusable for instance search after sanitizing", term)
            return None
        query = build_sosl_query(sanitized, scope, self.result_limit)
        try:
            records = await asyncio.wait_for(
                self.graph.search_instance_records(query, tenant=tenant), timeout=self.search_timeout
            )
        except asyncio.TimeoutError:
            logger.warning("instance search timed out after %.1fs for %r", self.search_timeout, sanitized)
            return None
        except Exception as exc:
            logger.warning("instance search failed for %r: %s", sanitized, exc)
            return None
        return self._best_record(term, sanitized, query, records, scope)

    def _best_record(
        self,
        term: str,
        sanitized: str,
        query: str,
        records: Sequence[InstanceRecord],
        scope: Sequence[str],
    ) -> Optional[GroundingResult]:
        priority = {name: idx for idx, name in enumerate(scope)}
        ranked = []
        for record in records:
            score, distance = name_match(sanitized, record.name)
            if score >= self.fuzzy_threshold:
                ranked.append((distance, priority.get(record.object_type, len(priority)), record))
        if not ranked:
            return None
        ranked.sort(key=lambda item: (item[0], item[1]))
        record = ranked[0][2]
        return GroundingResult(
            candidate=term,
            value=record.name,
            type=GroundingType.INSTANCE_VERIFIED,
            source=GroundingSource.INSTANCE_SEARCH,
            confidence=self.confident_match,
            evidence=(
                f"search:{query}",
                f"object:{record.object_type}",
                f"record:{record.object_type}/{record.record_id} {record.name}",
            ),
            object_name=record.object_type,
            field_name="Name",
            suggested_filter=f"Name LIKE '{sanitized}%'",
        )


__all__ = [
    "GroundingType",
    "GroundingSource",
    "GroundingResult",
    "PatternMatch",
    "match_pattern",
    "sanitize_sosl_term",
    "is_valid_sosl_term",
    "build_sosl_query",
    "name_match",
    "GroundingService",
]
