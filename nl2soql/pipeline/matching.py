from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence

from .config import MAX_EDIT_DISTANCE, MIN_TERM_LENGTH
from .schema_graph import ParentRelationship, SchemaField
from .utils import levenshtein


@dataclass(frozen=True)
class MatchResult:
    found: bool
    corrected_name: Optional[str] = None
    suggestion: Optional[str] = None


@dataclass(frozen=True)
class RelationshipMatch:
    found: bool
    relationships: Sequence[ParentRelationship] = ()
    suggestion: Optional[str] = None
    suggested_target: Optional[str] = None

    @property
    def targets(self) -> List[str]:
        return [r.target_object for r in self.relationships]


def find_closest_match(
    name: str,
    candidates: Iterable[str],
    *,
    max_distance: int = MAX_EDIT_DISTANCE,
) -> Optional[str]:
    """Exact, then prefix, then substring, then the nearest candidate within ``max_distance`` edits."""
    pool = [c for c in candidates if c]
    lowered = name.lower()
    for cand in pool:
        if cand.lower() == lowered:
            return cand
    if len(lowered) >= MIN_TERM_LENGTH:
        for cand in pool:
            if cand.lower().startswith(lowered):
                return cand
        for cand in pool:
            if lowered in cand.lower():
                return cand
    best: Optional[str] = None
    best_distance = max_distance + 1
    for cand in pool:
        distance = levenshtein(lowered, cand.lower())
        if distance < best_distance:
            best, best_distance = cand, distance
    return best


def find_field_match(name: str, fields: Sequence[SchemaField]) -> MatchResult:
    lowered = name.lower()
    for fld in fields:
        if fld.api_name.lower() == lowered:
            return MatchResult(found=True, corrected_name=fld.api_name)
    for fld in fields:
        if fld.label and fld.label.lower() == lowered:
            # Labels are not valid in queries; the api name is the fix.
            return MatchResult(found=False, suggestion=fld.api_name)
    return MatchResult(found=False, suggestion=find_closest_match(name, [f.api_name for f in fields]))


def find_relationship_match(part: str, relationships: Sequence[ParentRelationship]) -> RelationshipMatch:
    lowered = part.lower()
    by_name = [r for r in relationships if r.relationship_name.lower() == lowered]
    if by_name:
        return RelationshipMatch(found=True, relationships=tuple(by_name))

    by_target = [r for r in relationships if r.target_object.lower() == lowered]
    if by_target:
        # Navigating by object name instead of relationship name still needs the relationship name.
        rel = by_target[0]
        if rel.relationship_name.lower() == lowered:
            return RelationshipMatch(found=True, relationships=tuple(by_target))
        return RelationshipMatch(found=False, suggestion=rel.relationship_name, suggested_target=rel.target_object)

    best: Optional[ParentRelationship] = None
    best_distance = MAX_EDIT_DISTANCE + 1
    for rel in relationships:
        distance = levenshtein(lowered, rel.relationship_name.lower())
        if distance < best_distance:
            best, best_distance = rel, distance
    if best is None and len(lowered) >= MIN_TERM_LENGTH:
        for rel in relationships:
            name = rel.relationship_name.lower()
            if name.startswith(lowered) or lowered in name:
                best = rel
                break
    if best is not None:
        return RelationshipMatch(found=False, suggestion=best.relationship_name, suggested_target=best.target_object)
    return RelationshipMatch(found=False)


__all__ = [
    "MatchResult",
    "RelationshipMatch",
    "find_closest_match",
    "find_field_match",
    "find_relationship_match",
]
