from __future__ import annotations

import asyncio
import logging
import re
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Callable, Dict, FrozenSet, Iterable, List, Mapping, Optional, Sequence, Set, Tuple

from .config import (
    CACHE_MAX_ENTRIES,
    CACHE_SIMILARITY_THRESHOLD,
    CACHE_TTL_SECONDS,
    HUB_OBJECT_MAX_NEIGHBORS,
    HUB_OBJECT_THRESHOLD,
    MAX_FIELDS_PER_OBJECT,
    MAX_NEIGHBORS,
    MIN_PERIPHERAL_RELEVANCE,
    MIN_TERM_LENGTH,
)
from .errors import CapabilityFailure
from .grounding import GroundingResult, GroundingService
from .lexicon import CORE_FIELDS, JUNCTION_PHRASES, STOPWORDS, SYNONYM_INDEX
from .schema_graph import ObjectSummary, SchemaField, SchemaGraphClient, SchemaObject
from .scorer import HybridNeighborScorer, field_relevance, lexical_score, query_terms
from .soql_ast import QueryAst
from .utils import jaccard

logger = logging.getLogger(__name__)


# --- query analysis --------------------------------------------------------


@dataclass(frozen=True)
class ExtractedTerms:
    entities: Tuple[str, ...] = ()
    values: Tuple[str, ...] = ()


@dataclass(frozen=True)
class RelationshipIntent:
    kind: str
    source: str
    target: str
    phrase: str


_VALUE_KEYWORDS = (
    "high", "medium", "low", "critical", "urgent", "normal",
    "open", "closed", "new", "pending", "escalated", "won", "lost", "active", "inactive",
)
_COMPANY_PATTERNS = (
    re.compile(r"(?:for|from|at)\s+(\w+)\s+(?:deals?|accounts?|opportunit(?:y|ies)|cases?|contacts?)", re.IGNORECASE),
    re.compile(r"(\w+)\s+(?:deals?|accounts?|opportunit(?:y|ies)|cases?)\s+(?:owned|with|where)", re.IGNORECASE),
)
_NOT_NAMES = frozenset({"the", "all", "my", "our", "their", "some", "any", "open", "closed", "new", "these", "those"})
_CUSTOM_NAME = re.compile(r"\b(\w+__c)\b", re.IGNORECASE)
_CAPITALIZED = re.compile(r"\b([A-Z][a-z]+(?:[A-Z][a-z]+)*)\b")
_QUOTED = re.compile(r"[\"']([^\"']{2,})[\"']")
_SKIP_CAPITALIZED = frozenset({"The", "Show", "Get", "Find", "All", "With", "From", "And", "For", "List", "How", "What", "Which", "Who"})


def extract_potential_entities(query: str) -> ExtractedTerms:
    """Syntactic candidates: custom names, capitalized words, quoted values, status words, company phrases."""
    entities: List[str] = []
    values: List[str] = []
    for word in query.lower().split():
        cleaned = re.sub(r"[^a-z0-9_]", "", word)
        if cleaned in _VALUE_KEYWORDS:
            values.append(cleaned.capitalize())
    for pattern in _COMPANY_PATTERNS:
        for match in pattern.finditer(query):
            name = match.group(1)
            if name.lower() not in _NOT_NAMES and name.lower() not in STOPWORDS:
                values.append(name)
    for match in _QUOTED.finditer(query):
        values.append(match.group(1).strip())
    entities.extend(m.group(1) for m in _CUSTOM_NAME.finditer(query))
    for match in _CAPITALIZED.finditer(query):
        word = match.group(1)
        if len(word) > 2 and word not in _SKIP_CAPITALIZED:
            entities.append(word)
            values.append(word)
    return ExtractedTerms(tuple(dict.fromkeys(entities)), tuple(dict.fromkeys(values)))


_PARENT_PATTERNS = (
    re.compile(r"(\w+)\s+with\s+(?:their\s+)?(\w+)\s+(?:name|id|details?|info(?:rmation)?)"),
    re.compile(r"(\w+)\s+including\s+(\w+)\s+(?:name|id|details?)"),
    re.compile(r"(\w+)\s+and\s+(?:their\s+)?(\w+)\s+(?:name|id)"),
)
_CHILD_PATTERNS = (
    re.compile(r"(\w+)\s+that\s+have\s+(\w+s)\b"),
    re.compile(r"(\w+)\s+with\s+(?:their\s+)?(?:all\s+)?(\w+s)\b(?!\s+(?:name|id|details?))"),
    re.compile(r"(\w+)\s+and\s+(?:their\s+)?(\w+s)\b(?!\s+(?:name|id))"),
    re.compile(r"(\w+)\s+(?:including|showing)\s+(?:all\s+)?(?:related\s+)?(\w+s)\b"),
)


def _title(word: str) -> str:
    cleaned = re.sub(r"[^a-z0-9_]", "", word.lower())
    return cleaned[:1].upper() + cleaned[1:]


def detect_relationship_intent(query: str) -> List[RelationshipIntent]:
    """Parent lookups ("contacts with their account name") vs child lists ("accounts with their opportunities")."""
    lowered = query.lower()
    intents: List[RelationshipIntent] = []
    seen: Set[Tuple[str, str, str]] = set()
    for kind, patterns in (("parent_lookup", _PARENT_PATTERNS), ("child_subquery", _CHILD_PATTERNS)):
        for pattern in patterns:
            for match in pattern.finditer(lowered):
                source, target = _title(match.group(1)), _title(match.group(2))
                key = (kind, source, target)
                if source == target or key in seen:
                    continue
                seen.add(key)
                intents.append(RelationshipIntent(kind, source, target, match.group(0)))
    return intents


# --- context value ---------------------------------------------------------


@dataclass(frozen=True)
class ContextStats:
    object_count: int = 0
    field_count: int = 0
    relationship_count: int = 0


def _stats(objects: Sequence[SchemaObject]) -> ContextStats:
    return ContextStats(
        object_count=len(objects),
        field_count=sum(len(o.fields) for o in objects),
        relationship_count=sum(len(o.parent_relationships) + len(o.child_relationships) for o in objects),
    )


def _lookup(catalog: Mapping[str, SchemaObject], name: str) -> Optional[SchemaObject]:
    if name in catalog:
        return catalog[name]
    lowered = name.lower()
    for key, obj in catalog.items():
        if key.lower() == lowered:
            return obj
    return None


@dataclass(frozen=True)
class SchemaContext:
    """Schema bundle for one request.

    ``objects`` carry prompt-pruned field lists; ``catalog`` holds full details
    and is what validation reads.
    """

    objects: Tuple[SchemaObject, ...] = ()
    catalog: Mapping[str, SchemaObject] = field(default_factory=lambda: MappingProxyType({}))
    known_objects: Tuple[str, ...] = ()
    grounding: Tuple[GroundingResult, ...] = ()
    context_object_names: Tuple[str, ...] = ()
    relationship_intents: Tuple[RelationshipIntent, ...] = ()
    stats: ContextStats = ContextStats()
    degraded: bool = False
    tenant: Optional[str] = None

    @classmethod
    def from_objects(
        cls,
        objects: Sequence[SchemaObject],
        *,
        known_objects: Optional[Iterable[str]] = None,
        grounding: Sequence[GroundingResult] = (),
        tenant: Optional[str] = None,
    ) -> "SchemaContext":
        catalog = {o.api_name: o for o in objects}
        known = tuple(known_objects) if known_objects is not None else tuple(catalog)
        return cls(
            objects=tuple(objects),
            catalog=MappingProxyType(catalog),
            known_objects=known,
            grounding=tuple(grounding),
            context_object_names=tuple(catalog),
            stats=_stats(objects),
            tenant=tenant,
        )

    def get(self, name: str) -> Optional[SchemaObject]:
        return _lookup(self.catalog, name)

    def is_known(self, name: str) -> bool:
        lowered = name.lower()
        return any(n.lower() == lowered for n in self.known_objects) or self.get(name) is not None

    def object_names(self) -> List[str]:
        return [o.api_name for o in self.objects]

    def grounded_values(self) -> Set[str]:
        return {g.value.lower() for g in self.grounding if g.value}


# --- cache -----------------------------------------------------------------


def normalize_query(query: str) -> str:
    return " ".join(query.lower().split())


def cache_terms(query: str) -> FrozenSet[str]:
    tokens = re.sub(r"[^a-z0-9\s]", "", query.lower()).split()
    return frozenset(t for t in tokens if len(t) > 2 and t not in STOPWORDS)


@dataclass
class _CacheEntry:
    key: str
    terms: FrozenSet[str]
    context: SchemaContext
    created_at: float


class SchemaContextCache:
    """Per-tenant LRU of assembled contexts with TTL and near-duplicate lookup."""

    def __init__(
        self,
        *,
        ttl: float = CACHE_TTL_SECONDS,
        max_entries: int = CACHE_MAX_ENTRIES,
        similarity_threshold: float = CACHE_SIMILARITY_THRESHOLD,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl = ttl
        self.max_entries = max_entries
        self.similarity_threshold = similarity_threshold
        self._clock = clock
        self._lock = threading.Lock()
        self._tenants: Dict[Optional[str], "OrderedDict[str, _CacheEntry]"] = {}

    def get(self, query: str, tenant: Optional[str] = None) -> Optional[SchemaContext]:
        key = normalize_query(query)
        terms = cache_terms(query)
        now = self._clock()
        with self._lock:
            entries = self._tenants.get(tenant)
            if not entries:
                return None
            for stale in [k for k, e in entries.items() if now - e.created_at > self.ttl]:
                del entries[stale]
            entry = entries.get(key)
            if entry is None and terms:
                for candidate in reversed(list(entries.values())):
                    if jaccard(terms, candidate.terms) >= self.similarity_threshold:
                        entry = candidate
                        break
            if entry is None:
                return None
            entries.move_to_end(entry.key)
            logger.debug("context cache hit for %r (tenant=%s)", query, tenant)
            return entry.context

    def put(self, query: str, context: SchemaContext, tenant: Optional[str] = None) -> None:
        key = normalize_query(query)
        with self._lock:
            entries = self._tenants.setdefault(tenant, OrderedDict())
            entries[key] = _CacheEntry(key, cache_terms(query), context, self._clock())
            entries.move_to_end(key)
            while len(entries) > self.max_entries:
                entries.popitem(last=False)

    def invalidate_for_tenant(self, tenant: Optional[str]) -> None:
        with self._lock:
            # Swap the whole bucket so readers never see a half-cleared tenant.
            self._tenants.pop(tenant, None)
        logger.info("invalidated schema context cache for tenant %s", tenant)

    def clear(self) -> None:
        with self._lock:
            self._tenants = {}

    def size(self, tenant: Optional[str] = None) -> int:
        with self._lock:
            return len(self._tenants.get(tenant, ()))


# --- field pruning + prompt formatting -------------------------------------


def filter_important_fields(
    fields: Sequence[SchemaField], query: str = "", max_fields: int = MAX_FIELDS_PER_OBJECT
) -> Tuple[SchemaField, ...]:
    """Core fields and OwnerId first, then the most query-relevant rest."""
    always = set(CORE_FIELDS) | {"OwnerId"}
    must = [f for f in fields if f.api_name in always]
    terms = query_terms(query) if query else []
    rest = sorted(
        (f for f in fields if f.api_name not in always),
        key=lambda f: (-field_relevance(f, terms, MIN_TERM_LENGTH), f.api_name),
    )
    return tuple(must + rest[: max(0, max_fields - len(must))])


EFFICIENCY_RULES = """\
1. PARENT LOOKUP (preferred): dot notation in SELECT, e.g. SELECT Id, Account.Name FROM Contact.
   Never use a sub-query for a parent: (SELECT Name FROM Account) is invalid.
2. SEMI-JOIN FILTER: filter parents by child criteria without returning children,
   e.g. SELECT Id, Name FROM Account WHERE Id IN (SELECT AccountId FROM Case WHERE Status = 'Open').
3. CHILD SUB-QUERY: only when the request asks for a list of related children,
   e.g. SELECT Id, Name, (SELECT Id, Subject FROM Cases) FROM Account."""

DATE_GUIDANCE = """\
DATE FIELDS: use SOQL date literals (TODAY, LAST_N_DAYS:30, THIS_MONTH, ...) instead of computed dates."""

POLYMORPHIC_GUIDANCE = """\
POLYMORPHIC FIELDS: WhoId/WhatId/OwnerId are id fields; Who/What/Owner are relationship names.
- Never navigate the id field (Task.WhoId.Name is invalid).
- Use TYPEOF on the relationship: SELECT TYPEOF Who WHEN Contact THEN FirstName, LastName END FROM Task.
- Filter the target type with Relationship.Type, e.g. WHERE What.Type = 'Account'."""


def _describe_field(fld: SchemaField) -> str:
    if fld.picklist_values:
        return f"{fld.api_name}({fld.type}:{'|'.join(fld.picklist_values[:5])})"
    if fld.is_polymorphic:
        return f"{fld.api_name}(POLYMORPHIC:{fld.relationship_name or 'relationship'}->{'/'.join(fld.reference_to[:3])})"
    if fld.is_reference and fld.relationship_name:
        return f"{fld.api_name}(reference:{fld.relationship_name}->{'/'.join(fld.reference_to)})"
    return f"{fld.api_name}({fld.type})"


def format_schema_for_prompt(context: SchemaContext, tables: Optional[Sequence[str]] = None) -> str:
    objects = list(context.objects)
    if tables:
        wanted = {t.lower() for t in tables}
        objects = [o for o in objects if o.api_name.lower() in wanted] or objects
    if not objects:
        return "No specific schema context available. Use standard object names."
    names = {o.api_name for o in objects}
    has_dates = any(f.type in {"date", "datetime"} or f.api_name == "CreatedDate" for o in objects for f in o.fields)
    has_polymorphic = any(f.is_polymorphic for o in objects for f in o.fields)
    lines = [EFFICIENCY_RULES]
    if has_dates:
        lines.append(DATE_GUIDANCE)
    if has_polymorphic:
        lines.append(POLYMORPHIC_GUIDANCE)
    lines.append("")
    lines.append("SCHEMA:")
    for obj in objects:
        category = f" [{obj.category}]" if obj.category else ""
        lines.append(f"{obj.api_name} ({obj.label}){category}:")
        lines.append("  Fields: " + ", ".join(_describe_field(f) for f in obj.fields))
        parents = sorted({f"{r.relationship_name}->{r.target_object}" for r in obj.parent_relationships if r.target_object in names})
        if parents:
            lines.append("  Parents: " + ", ".join(parents))
        children = [f"{c.relationship_name}->{c.child_object}" for c in obj.child_relationships if c.child_object in names]
        if children:
            lines.append("  Children: " + ", ".join(children))
    if context.relationship_intents:
        lines.append("")
        lines.append("RELATIONSHIP HINTS:")
        for intent in context.relationship_intents:
            style = "dot notation" if intent.kind == "parent_lookup" else "child sub-query"
            lines.append(f"- \"{intent.phrase}\": {intent.source} -> {intent.target} ({style})")
    return "\n".join(lines)


# --- assembler -------------------------------------------------------------


def _singular(word: str) -> str:
    if word.endswith("ies") and len(word) > 4:
        return word[:-3] + "y"
    if word.endswith("s") and not word.endswith("ss") and len(word) > 3:
        return word[:-1]
    return word


def _referenced_objects(ast: QueryAst, catalog: Mapping[str, SchemaObject]) -> List[str]:
    names = [ast.main_object]
    names.extend(s.query.main_object for s in ast.semi_joins())
    main = _lookup(catalog, ast.main_object)
    if main is not None:
        for sub in ast.subqueries():
            rel = main.get_child(sub.relationship)
            if rel is not None:
                names.append(rel.child_object)
        for item in ast.typeof_fields():
            names.extend(r.target_object for r in main.parents_named(item.relationship))
        for _clause, path in ast.field_references():
            current = [main]
            for segment in path.split(".")[:-1]:
                targets = [r.target_object for obj in current for r in obj.parents_named(segment)]
                names.extend(targets)
                current = [o for o in (_lookup(catalog, t) for t in targets) if o is not None]
                if not current:
                    break
    return list(dict.fromkeys(names))


class SchemaContextAssembler:
    def __init__(
        self,
        graph: SchemaGraphClient,
        scorer: HybridNeighborScorer,
        grounding: GroundingService,
        *,
        cache: Optional[SchemaContextCache] = None,
        max_neighbors: int = MAX_NEIGHBORS,
        hub_threshold: int = HUB_OBJECT_THRESHOLD,
        hub_max_neighbors: int = HUB_OBJECT_MAX_NEIGHBORS,
        min_relevance: float = MIN_PERIPHERAL_RELEVANCE,
        max_fields: int = MAX_FIELDS_PER_OBJECT,
    ) -> None:
        self.graph = graph
        self.scorer = scorer
        self.grounding = grounding
        self.cache = cache or SchemaContextCache()
        self.max_neighbors = max_neighbors
        self.hub_threshold = hub_threshold
        self.hub_max_neighbors = hub_max_neighbors
        self.min_relevance = min_relevance
        self.max_fields = max_fields

    async def assemble(self, query: str, tenant: Optional[str] = None) -> SchemaContext:
        cached = self.cache.get(query, tenant)
        if cached is not None:
            context = await self._reuse(cached, query, tenant)
            if context is cached:
                return cached
        else:
            context = await self._build(query, tenant)
        self.cache.put(query, context, tenant)
        return context

    def on_schema_changed(self, tenant: Optional[str] = None) -> None:
        self.cache.invalidate_for_tenant(tenant)

    async def _reuse(self, cached: SchemaContext, query: str, tenant: Optional[str]) -> SchemaContext:
        """Keep a cached object selection; values and intents always come from ``query``."""
        extracted = extract_potential_entities(query)
        intents = tuple(detect_relationship_intent(query))
        if tuple(g.candidate for g in cached.grounding) == extracted.values and intents == cached.relationship_intents:
            return cached
        full = [_lookup(cached.catalog, o.api_name) or o for o in cached.objects]
        scope = list(cached.context_object_names)
        grounding = await self.grounding.ground_values(list(extracted.values), full, scope=scope or None, tenant=tenant)
        pruned = tuple(replace(o, fields=filter_important_fields(o.fields, query, self.max_fields)) for o in full)
        logger.debug("reusing cached object selection for %r with fresh grounding", query)
        return replace(
            cached,
            objects=pruned,
            grounding=tuple(grounding),
            relationship_intents=intents,
            stats=_stats(pruned),
        )

    async def hydrate(self, context: SchemaContext, ast: QueryAst, tenant: Optional[str] = None) -> SchemaContext:
        """Fetch details for objects ``ast`` references that the catalog lacks; returns a new context."""
        catalog: Dict[str, SchemaObject] = dict(context.catalog)
        for _ in range(3):
            wanted = [
                n for n in _referenced_objects(ast, catalog) if _lookup(catalog, n) is None and context.is_known(n)
            ]
            if not wanted:
                break
            fetched = await self._fetch(wanted, tenant)
            if not fetched:
                break
            catalog.update({o.api_name: o for o in fetched})
        if len(catalog) == len(context.catalog):
            return context
        logger.debug("hydrated %d objects for %s", len(catalog) - len(context.catalog), ast.main_object)
        return replace(context, catalog=MappingProxyType(catalog))

    async def _fetch(self, names: Sequence[str], tenant: Optional[str]) -> List[SchemaObject]:
        try:
            details = await asyncio.gather(*(self.graph.get_object_detail(n, tenant=tenant) for n in names))
        except CapabilityFailure:
            raise
        except Exception as exc:
            raise CapabilityFailure("graph", f"object details unavailable: {exc}") from exc
        return [d for d in details if d is not None]

    async def _list_objects(self, tenant: Optional[str]) -> List[ObjectSummary]:
        try:
            return list(await self.graph.list_objects(tenant))
        except CapabilityFailure:
            raise
        except Exception as exc:
            raise CapabilityFailure("graph", f"object catalog unavailable: {exc}") from exc

    def _seed_names(self, query: str, summaries: Sequence[ObjectSummary], extracted: ExtractedTerms) -> List[str]:
        by_name: Dict[str, str] = {}
        for summary in summaries:
            by_name.setdefault(summary.api_name.lower(), summary.api_name)
            if summary.label:
                by_name.setdefault(summary.label.lower(), summary.api_name)
        known = {s.api_name for s in summaries}
        words = [re.sub(r"[^a-z0-9_]", "", w) for w in query.lower().split()]
        words = [w for w in words if w]
        seeds: List[str] = []

        def _add(name: Optional[str]) -> None:
            if name and name in known and name not in seeds:
                seeds.append(name)

        for idx, word in enumerate(words):
            for size in (3, 2):
                phrase = " ".join(words[idx : idx + size])
                if len(phrase.split()) == size:
                    key = _singular(phrase)
                    _add(by_name.get(phrase) or by_name.get(key) or SYNONYM_INDEX.get(phrase) or SYNONYM_INDEX.get(key))
            if len(word) < MIN_TERM_LENGTH or word in STOPWORDS:
                continue
            single = _singular(word)
            _add(by_name.get(word) or by_name.get(single) or SYNONYM_INDEX.get(word) or SYNONYM_INDEX.get(single))
        for entity in extracted.entities:
            _add(by_name.get(entity.lower()))
        for pattern, junction in JUNCTION_PHRASES:
            if re.search(pattern, query, re.IGNORECASE):
                _add(junction)
        return seeds

    async def _build(self, query: str, tenant: Optional[str]) -> SchemaContext:
        summaries = await self._list_objects(tenant)
        known = tuple(s.api_name for s in summaries)
        labels = {s.api_name: s.label for s in summaries}
        extracted = extract_potential_entities(query)
        intents = tuple(detect_relationship_intent(query))
        seed_names = self._seed_names(query, summaries, extracted)
        seeds = await self._fetch(seed_names, tenant)
        seed_set = {s.api_name for s in seeds}

        terms = query_terms(query)
        neighbour_names: List[str] = []
        for seed in seeds:
            around = sorted(n for n in seed.neighbors() if n not in seed_set and n in labels)
            if len(around) > self.hub_threshold:
                # Hubs only contribute their most query-like neighbours.
                around.sort(key=lambda n: -lexical_score(SchemaObject(api_name=n, label=labels.get(n, n)), terms))
                around = around[: self.hub_max_neighbors]
            neighbour_names.extend(n for n in around if n not in neighbour_names)
        neighbours = await self._fetch(neighbour_names, tenant)

        report = await self.scorer.score(query, neighbours, [s.api_name for s in seeds], tenant)
        chosen = [c.name for c in report.candidates if c.score >= self.min_relevance][: self.max_neighbors]
        by_name = {o.api_name: o for o in neighbours}
        selected = list(seeds) + [by_name[n] for n in chosen]
        degraded = self.scorer.embedder is not None and bool(neighbours) and not report.vector_available
        if degraded:
            logger.warning("schema context for %r built without vector similarity", query)

        scope = [s.api_name for s in seeds]
        grounding = await self.grounding.ground_values(list(extracted.values), selected, scope=scope or None, tenant=tenant)
        pruned = tuple(replace(o, fields=filter_important_fields(o.fields, query, self.max_fields)) for o in selected)
        catalog = {o.api_name: o for o in list(seeds) + list(neighbours)}
        context = SchemaContext(
            objects=pruned,
            catalog=MappingProxyType(catalog),
            known_objects=known,
            grounding=tuple(grounding),
            context_object_names=tuple(scope),
            relationship_intents=intents,
            stats=_stats(pruned),
            degraded=degraded,
            tenant=tenant,
        )
        logger.debug(
            "assembled context: %d objects, %d fields, %d relationships",
            context.stats.object_count,
            context.stats.field_count,
            context.stats.relationship_count,
        )
        return context


__all__ = [
    "ExtractedTerms",
    "RelationshipIntent",
    "extract_potential_entities",
    "detect_relationship_intent",
    "ContextStats",
    "SchemaContext",
    "SchemaContextCache",
    "normalize_query",
    "cache_terms",
    "filter_important_fields",
    "format_schema_for_prompt",
    "SchemaContextAssembler",
]
