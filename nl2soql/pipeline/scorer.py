from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass
from typing import Dict, List, Optional, Protocol, Sequence, Tuple

from .config import GRAPH_WEIGHT, JUNCTION_BONUS, LEXICAL_WEIGHT, MIN_TERM_LENGTH, SEMANTIC_WEIGHT
from .lexicon import STANDARD_OBJECT_SYNONYMS, STOPWORDS
from .schema_graph import SchemaField, SchemaGraphClient, SchemaObject
from .utils import jaccard

logger = logging.getLogger(__name__)

EXACT_MATCH = 10
PARTIAL_MATCH = 5
DESCRIPTION_MATCH = 2
REFERENCE_MATCH = 1


class EmbeddingCapability(Protocol):
    async def embed(self, text: str) -> List[float]:
        ...


def query_terms(query: str, min_length: int = MIN_TERM_LENGTH) -> List[str]:
    terms = []
    for raw in query.lower().split():
        term = "".join(ch for ch in raw if ch.isalnum() or ch == "_")
        if len(term) >= min_length and term not in STOPWORDS and term not in terms:
            terms.append(term)
    return terms


def field_relevance(fld: SchemaField, terms: Sequence[str], min_length: int = MIN_TERM_LENGTH) -> int:
    score = 0
    api = fld.api_name.lower()
    label = fld.label.lower()
    for term in terms:
        if len(term) < min_length:
            continue
        if term in (api, label):
            score += EXACT_MATCH
        elif term in api or term in label:
            score += PARTIAL_MATCH
        elif fld.description and term in fld.description.lower():
            score += DESCRIPTION_MATCH
    if fld.is_reference:
        score += REFERENCE_MATCH
    return score


def lexical_score(obj: SchemaObject, terms: Sequence[str]) -> float:
    """Term containment against an object's names, synonyms, description and field labels, in [0, 1]."""
    names = {obj.api_name.lower(), obj.label.lower()}
    synonyms = {s.lower() for s in STANDARD_OBJECT_SYNONYMS.get(obj.api_name, ())}
    field_words = {f.label.lower() for f in obj.fields} | {f.api_name.lower() for f in obj.fields}
    total = 0
    for term in terms:
        singular = term[:-1] if term.endswith("s") else term
        if term in names or singular in names or term in synonyms or singular in synonyms:
            total += EXACT_MATCH
        elif any(term in n or singular in n for n in names):
            total += PARTIAL_MATCH
        elif obj.description and term in obj.description.lower():
            total += DESCRIPTION_MATCH
        elif term in field_words or singular in field_words:
            total += REFERENCE_MATCH
    return min(1.0, total / EXACT_MATCH)


def graph_score(obj: SchemaObject, selected: Sequence[str]) -> Tuple[float, bool]:
    """Jaccard of the object's neighbours against the selected set, and whether it joins two of them."""
    chosen = set(selected)
    if not chosen:
        return 0.0, False
    neighbours = obj.neighbors()
    linked = {r.target_object for r in obj.parent_relationships} & chosen
    return jaccard(neighbours, chosen), len(linked) >= 2


def cosine(a: Sequence[float], b: Sequence[float]) -> float:
    if not a or not b or len(a) != len(b):
        return 0.0
    dot = sum(x * y for x, y in zip(a, b))
    norm = math.sqrt(sum(x * x for x in a)) * math.sqrt(sum(y * y for y in b))
    if norm == 0:
        return 0.0
    return max(0.0, dot / norm)


@dataclass(frozen=True)
class ScoredCandidate:
    name: str
    score: float
    lexical: float
    semantic: Optional[float]
    graph: float
    is_junction: bool = False


@dataclass(frozen=True)
class ScoreReport:
    candidates: Tuple[ScoredCandidate, ...]
    vector_available: bool

    def names(self) -> List[str]:
        return [c.name for c in self.candidates]


class HybridNeighborScorer:
    """Ranks candidate objects by lexical, vector and graph-structure signals."""

    def __init__(
        self,
        graph: SchemaGraphClient,
        embedder: Optional[EmbeddingCapability] = None,
        *,
        lexical_weight: float = LEXICAL_WEIGHT,
        semantic_weight: float = SEMANTIC_WEIGHT,
        graph_weight: float = GRAPH_WEIGHT,
        junction_bonus: float = JUNCTION_BONUS,
    ) -> None:
        self.graph = graph
        self.embedder = embedder
        self.lexical_weight = lexical_weight
        self.semantic_weight = semantic_weight
        self.graph_weight = graph_weight
        self.junction_bonus = junction_bonus

    async def score(
        self,
        query: str,
        candidates: Sequence[SchemaObject],
        selected: Sequence[str],
        tenant: Optional[str] = None,
    ) -> ScoreReport:
        unique: Dict[str, SchemaObject] = {}
        for obj in candidates:
            unique.setdefault(obj.api_name, obj)
        if not unique:
            return ScoreReport((), self.embedder is not None)

        vector_task = asyncio.ensure_future(self._semantic_scores(query, list(unique), tenant))
        terms = query_terms(query)
        partial = {name: (lexical_score(obj, terms),) + graph_score(obj, selected) for name, obj in unique.items()}
        try:
            semantic = await vector_task
        except Exception as exc:
            logger.warning("vector signal unavailable, scoring with lexical + graph only: %s", exc)
            semantic = None

        if semantic is None:
            remaining = self.lexical_weight + self.graph_weight
            lexical_w = self.lexical_weight / remaining if remaining else 0.0
            graph_w = self.graph_weight / remaining if remaining else 0.0
            semantic_w = 0.0
        else:
            lexical_w, semantic_w, graph_w = self.lexical_weight, self.semantic_weight, self.graph_weight

        scored: List[ScoredCandidate] = []
        for name, (lexical, structure, is_junction) in partial.items():
            vector = semantic.get(name, 0.0) if semantic is not None else None
            total = lexical_w * lexical + graph_w * structure + semantic_w * (vector or 0.0)
            if is_junction:
                total += self.junction_bonus
            scored.append(ScoredCandidate(name, total, lexical, vector, structure, is_junction))
        scored.sort(key=lambda c: (-c.score, c.name))
        logger.debug(
            "scored %d candidates (vectors=%s): %s",
            len(scored),
            semantic is not None,
            ", ".join(f"{c.name}={c.score:.3f}" for c in scored[:5]),
        )
        return ScoreReport(tuple(scored), semantic is not None)

    async def _semantic_scores(
        self, query: str, names: List[str], tenant: Optional[str]
    ) -> Optional[Dict[str, float]]:
        if self.embedder is None:
            logger.debug("no embedder configured; vector signal disabled")
            return None
        # Exact lookup for the candidate set; no approximate top-K search.
        stored, query_vector = await asyncio.gather(
            self.graph.get_field_embeddings(names, tenant=tenant),
            self.embedder.embed(query),
        )
        if not stored or not query_vector:
            logger.warning("no stored embeddings for %d candidates", len(names))
            return None
        return {name: cosine(query_vector, stored[name]) for name in names if name in stored}


__all__ = [
    "EXACT_MATCH",
    "PARTIAL_MATCH",
    "DESCRIPTION_MATCH",
    "REFERENCE_MATCH",
    "EmbeddingCapability",
    "query_terms",
    "field_relevance",
    "lexical_score",
    "graph_score",
    "cosine",
    "ScoredCandidate",
    "ScoreReport",
    "HybridNeighborScorer",
]
