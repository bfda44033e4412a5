import pytest

from nl2soql.pipeline.context import (
    SchemaContext,
    SchemaContextAssembler,
    SchemaContextCache,
    cache_terms,
    detect_relationship_intent,
    extract_potential_entities,
    filter_important_fields,
    format_schema_for_prompt,
)
from nl2soql.pipeline.grounding import GroundingService
from nl2soql.pipeline.scorer import HybridNeighborScorer
from nl2soql.pipeline.soql_ast import QueryAst


class StubEmbedder:
    async def embed(self, text):
        return [1.0, 0.0]


def _assembler(graph, *, embedder=None, instance_search=False, **kwargs):
    return SchemaContextAssembler(
        graph,
        HybridNeighborScorer(graph, embedder),
        GroundingService(graph, enable_instance_search=instance_search),
        **kwargs,
    )


def test_extract_potential_entities():
    terms = extract_potential_entities("Show open cases for Acme deals with Priority__c")
    assert terms.entities == ("Priority__c", "Acme")
    assert terms.values == ("Open", "Acme")


def test_quoted_values_are_extracted():
    terms = extract_potential_entities("accounts named 'Globex Inc'")
    assert "Globex Inc" in terms.values


def test_parent_lookup_intent():
    intents = detect_relationship_intent("contacts with their account name")
    assert len(intents) == 1
    assert intents[0].kind == "parent_lookup"
    assert (intents[0].source, intents[0].target) == ("Contacts", "Account")


def test_child_subquery_intent():
    intents = detect_relationship_intent("accounts with their opportunities")
    assert [(i.kind, i.source, i.target) for i in intents] == [("child_subquery", "Accounts", "Opportunities")]


def test_cache_terms_drop_stopwords():
    assert cache_terms("Show me accounts in Texas!") == frozenset({"accounts", "texas"})


class TestSchemaContextCache:
    def setup_method(self):
        self.now = [0.0]
        self.cache = SchemaContextCache(ttl=10, max_entries=2, clock=lambda: self.now[0])
        self.context = SchemaContext()

    def test_normalized_hit_per_tenant(self):
        self.cache.put("Show me accounts in Texas", self.context, tenant="t1")
        assert self.cache.get("show me   ACCOUNTS in texas", tenant="t1") is self.context
        assert self.cache.get("show me accounts in texas", tenant="t2") is None

    def test_near_duplicate_hit(self):
        self.cache.put("Show me accounts in Texas", self.context)
        assert self.cache.get("list accounts in texas") is self.context
        assert self.cache.get("show accounts in ohio") is None

    def test_ttl_expiry(self):
        self.cache.put("accounts in texas", self.context)
        self.now[0] = 11.0
        assert self.cache.get("accounts in texas") is None
        assert self.cache.size() == 0

    def test_lru_eviction(self):
        self.cache.put("accounts in texas", self.context)
        self.cache.put("contacts in ohio", self.context)
        self.cache.put("cases by priority", self.context)
        assert self.cache.size() == 2
        assert self.cache.get("accounts in texas") is None
        assert self.cache.get("cases by priority") is self.context

    def test_invalidate_for_tenant(self):
        self.cache.put("accounts in texas", self.context, tenant="t1")
        self.cache.put("accounts in texas", self.context, tenant="t2")
        self.cache.invalidate_for_tenant("t1")
        assert self.cache.size("t1") == 0
        assert self.cache.size("t2") == 1


def test_filter_important_fields(graph):
    account = graph.objects()["Account"]
    kept = filter_important_fields(account.fields, "industry revenue", 7)
    assert {f.api_name for f in kept} == {
        "Id", "Name", "OwnerId", "CreatedDate", "SystemModstamp", "Industry", "AnnualRevenue",
    }
    assert [f.api_name for f in kept][-2:] == ["Industry", "AnnualRevenue"]


def test_prompt_schema_describes_polymorphic_and_picklist_fields(full_context):
    task = format_schema_for_prompt(full_context, tables=["Task"])
    assert "WhoId(POLYMORPHIC:Who->Contact/Lead)" in task
    assert "POLYMORPHIC FIELDS" in task
    assert "SCHEMA:\nTask (Task)" in task

    account = format_schema_for_prompt(full_context, tables=["Account"])
    assert "Industry(picklist:Technology|Finance|Healthcare|Retail|Manufacturing)" in account
    assert "POLYMORPHIC FIELDS" not in account


def test_prompt_schema_without_objects():
    assert format_schema_for_prompt(SchemaContext()).startswith("No specific schema context available")


@pytest.mark.asyncio
async def test_assemble_seeds_neighbours_and_cache(graph):
    assembler = _assembler(graph)
    context = await assembler.assemble("show accounts with their opportunities")

    assert context.object_names()[:2] == ["Account", "Opportunity"]
    assert context.context_object_names == ("Account", "Opportunity")
    assert [i.kind for i in context.relationship_intents] == ["child_subquery"]
    assert "User" in context.catalog
    assert "EntityDefinition" in context.known_objects
    assert not context.degraded
    assert context.stats.object_count == len(context.objects)

    assert await assembler.assemble("show accounts with their opportunities") is context
    assembler.on_schema_changed()
    assert await assembler.assemble("show accounts with their opportunities") is not context


@pytest.mark.asyncio
async def test_junction_phrase_seeds_junction_object(graph):
    context = await _assembler(graph).assemble("opportunities Jane Doe is working on")
    assert "OpportunityTeamMember" in context.context_object_names


@pytest.mark.asyncio
async def test_missing_vectors_mark_context_degraded(graph):
    context = await _assembler(graph, embedder=StubEmbedder()).assemble("show accounts")
    assert context.degraded
    assert "Account" in context.object_names()


@pytest.mark.asyncio
async def test_hub_objects_keep_most_relevant_neighbours(graph):
    assembler = _assembler(graph, hub_threshold=2, hub_max_neighbors=1)
    context = await assembler.assemble("accounts")
    assert set(context.catalog) == {"Account", "AccountTeamMember"}


@pytest.mark.asyncio
async def test_instance_search_grounds_extracted_company(graph):
    context = await _assembler(graph, instance_search=True).assemble("cases for Acme accounts")
    acme = [g for g in context.grounding if g.candidate == "Acme"]
    assert len(acme) == 1
    assert acme[0].value == "Acme Corporation"
    assert acme[0].object_name == "Account"


@pytest.mark.asyncio
async def test_near_duplicate_request_gets_its_own_grounding(graph):
    assembler = _assembler(graph, instance_search=True)
    tail = "accounts with open opportunities owned by sales team in region west stage negotiation amount budget"
    first = await assembler.assemble(f"Microsoft {tail}")
    second = await assembler.assemble(f"Acme {tail}")

    assert second is not first
    assert second.object_names() == first.object_names()
    assert {g.candidate for g in first.grounding} >= {"Microsoft"}
    candidates = {g.candidate: g for g in second.grounding}
    assert "Microsoft" not in candidates
    assert candidates["Acme"].value == "Acme Corporation"
    assert "microsoft corp" not in second.grounded_values()
    # The re-grounded context is cached under its own request.
    assert await assembler.assemble(f"Acme {tail}") is second


@pytest.mark.asyncio
async def test_hydrate_adds_referenced_objects(graph):
    account = graph.objects()["Account"]
    context = SchemaContext.from_objects([account], known_objects=list(graph.objects()))
    ast, errors = QueryAst.parse(
        "SELECT Id, Owner.Name, (SELECT LastName FROM Contacts) FROM Account "
        "WHERE Id IN (SELECT AccountId FROM Case)"
    )
    assert errors == []

    hydrated = await _assembler(graph).hydrate(context, ast)

    assert {"User", "Contact", "Case"} <= set(hydrated.catalog)
    assert list(context.catalog) == ["Account"]
    assert hydrated.objects == context.objects


@pytest.mark.asyncio
async def test_hydrate_without_missing_objects_returns_same_context(full_context, graph):
    ast, _ = QueryAst.parse("SELECT Id FROM Account")
    assert await _assembler(graph).hydrate(full_context, ast) is full_context
