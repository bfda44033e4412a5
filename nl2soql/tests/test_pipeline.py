import asyncio
import json
from pathlib import Path

import pytest

from nl2soql.pipeline.compiler import CompilationStatus, NL2SOQLPipeline
from nl2soql.pipeline.run_logger import RunLogger
from nl2soql.pipeline.schema_graph import InMemorySchemaGraph

SAMPLE_SCHEMA = Path(__file__).resolve().parents[1] / "sample_schema.json"

GUESSED_ID_DRAFT = "SELECT Id FROM Contact WHERE AccountId = '001000000000001AAA' LIMIT 10"


class FakeCompletion:
    """Planner gets a fixed JSON plan, the coder pops drafts in order (the last one repeats)."""

    def __init__(self, tables=("Account",), drafts=(), *, plan_error=None, code_delay=0.0, slow_from=0):
        self.plan = {"summary": "test plan", "relevant_tables": list(tables)}
        self.drafts = list(drafts)
        self.plan_error = plan_error
        self.code_delay = code_delay
        self.slow_from = slow_from
        self.calls = []

    async def complete(self, role, payload):
        self.calls.append((role, payload))
        if role == "plan":
            if self.plan_error is not None:
                raise self.plan_error
            return json.dumps(self.plan)
        attempt = sum(1 for r, _ in self.calls if r == "code") - 1
        if self.code_delay and attempt >= self.slow_from:
            await asyncio.sleep(self.code_delay)
        return self.drafts[min(attempt, len(self.drafts) - 1)]

    def code_prompts(self):
        return [p["user"] for r, p in self.calls if r == "code"]


class UnreachableGraph(InMemorySchemaGraph):
    """Object details fail like a dropped connection; optionally the catalog too."""

    def __init__(self, fail_listing=False):
        super().__init__()
        self.load(json.loads(SAMPLE_SCHEMA.read_text(encoding="utf-8")))
        self.fail_listing = fail_listing

    async def list_objects(self, tenant=None):
        if self.fail_listing:
            raise ConnectionError("graph down")
        return await super().list_objects(tenant)

    async def get_object_detail(self, api_name, tenant=None):
        raise ConnectionError("graph down")


def _pipeline(graph, completion, **kwargs):
    kwargs.setdefault("enable_instance_search", False)
    return NL2SOQLPipeline(graph, completion, **kwargs)


@pytest.mark.asyncio
async def test_aggregate_draft_is_repaired(graph):
    completion = FakeCompletion(drafts=["```soql\nSELECT Industry, COUNT(Id) FROM Account\n```"])
    result = await _pipeline(graph, completion).compile("number of accounts per industry")

    assert result.status is CompilationStatus.VALID
    assert result.soql == "SELECT Industry, COUNT(Id) FROM Account GROUP BY Industry LIMIT 1000"
    assert result.repair_passes_used == 1
    assert result.regenerations_used == 0
    assert list(result.corrections) == ["Added Industry to GROUP BY", "Applied LIMIT 1000"]
    assert result.errors == []
    assert result.plan.relevant_tables == ("Account",)
    phases = [e["phase"] for e in result.timeline]
    assert phases[:3] == ["context", "plan", "draft"]
    assert phases[-1] == "final"


@pytest.mark.asyncio
async def test_parse_failure_regenerates_with_feedback(graph):
    completion = FakeCompletion(
        drafts=["SELECT Id FROM Account WHERE Name IS NULL", "SELECT Id, Name FROM Account LIMIT 10"]
    )
    result = await _pipeline(graph, completion).compile("accounts without a name")

    assert result.status is CompilationStatus.VALID
    assert result.soql == "SELECT Id, Name FROM Account LIMIT 10"
    assert result.regenerations_used == 1
    prompts = completion.code_prompts()
    assert len(prompts) == 2
    assert 'compare with "= null"' in prompts[-1]
    assert "Problems with the previous attempt (fix all of them):\nnone" in prompts[0]


@pytest.mark.asyncio
async def test_junction_dot_path_becomes_semi_join(graph):
    completion = FakeCompletion(
        tables=["Opportunity"],
        drafts=["SELECT Id, Name FROM Opportunity WHERE OpportunityTeamMember.User.Name = 'Jane Doe'"],
    )
    result = await _pipeline(graph, completion).compile("opportunities Jane Doe is working on")

    assert result.status is CompilationStatus.VALID
    assert result.plan.relevant_tables == ("Opportunity", "OpportunityTeamMember")
    assert result.soql == (
        "SELECT Id, Name FROM Opportunity WHERE Id IN "
        "(SELECT OpportunityId FROM OpportunityTeamMember WHERE User.Name = 'Jane Doe') LIMIT 1000"
    )


@pytest.mark.asyncio
async def test_unparseable_draft_falls_back_to_token_extraction(graph):
    completion = FakeCompletion(drafts=["SELECT Name Industry FROM Account"])
    result = await _pipeline(graph, completion, max_regenerations=0).compile("account names and industries")

    assert result.status is CompilationStatus.DEGRADED
    assert result.tolerant
    assert result.soql == "SELECT Name, Industry, Id, CreatedDate, SystemModstamp FROM Account"
    assert any(m.rule == "parse" for m in result.diagnostics)


@pytest.mark.asyncio
async def test_draft_without_query_fails(graph):
    completion = FakeCompletion(drafts=["I cannot answer that"])
    result = await _pipeline(graph, completion, max_regenerations=0).compile("accounts")

    assert result.status is CompilationStatus.FAILED
    assert result.soql is None
    assert not result.tolerant


@pytest.mark.asyncio
async def test_exhausted_budget_returns_best_attempt(graph):
    completion = FakeCompletion(drafts=[GUESSED_ID_DRAFT])
    result = await _pipeline(graph, completion, max_regenerations=1).compile("contacts of the first account")

    assert result.status is CompilationStatus.DEGRADED
    assert result.soql == GUESSED_ID_DRAFT
    assert result.regenerations_used == 1
    assert [e.rule for e in result.errors] == ["literals"]
    assert "exhausted" in [e["phase"] for e in result.timeline]
    assert len(completion.code_prompts()) == 2
    assert "Record ids must not be guessed" in completion.code_prompts()[-1]


@pytest.mark.asyncio
async def test_planner_failure_is_reported(graph):
    completion = FakeCompletion(plan_error=RuntimeError("service unavailable"))
    result = await _pipeline(graph, completion).compile("accounts")

    assert result.status is CompilationStatus.FAILED
    assert result.plan is None
    assert [m.rule for m in result.diagnostics] == ["capability"]


@pytest.mark.asyncio
async def test_invalid_plan_fails(graph):
    completion = FakeCompletion(tables=())
    result = await _pipeline(graph, completion).compile("accounts")

    assert result.status is CompilationStatus.FAILED
    assert [m.rule for m in result.diagnostics] == ["plan"]


@pytest.mark.asyncio
async def test_deadline_without_any_draft_fails(graph):
    completion = FakeCompletion(drafts=["SELECT Id FROM Account LIMIT 10"], code_delay=5.0)
    result = await _pipeline(graph, completion, deadline=0.2).compile("accounts")

    assert result.status is CompilationStatus.FAILED
    assert [m.rule for m in result.diagnostics] == ["deadline"]


@pytest.mark.asyncio
async def test_deadline_after_a_draft_returns_degraded(graph):
    completion = FakeCompletion(drafts=[GUESSED_ID_DRAFT], code_delay=5.0, slow_from=1)
    result = await _pipeline(graph, completion, deadline=0.5).compile("contacts of the first account")

    assert result.status is CompilationStatus.DEGRADED
    assert result.soql == GUESSED_ID_DRAFT
    assert result.diagnostics[-1].rule == "deadline"


@pytest.mark.asyncio
async def test_completion_timeout_is_a_capability_failure(graph):
    completion = FakeCompletion(drafts=["SELECT Id FROM Account LIMIT 10"], code_delay=1.0)
    result = await _pipeline(graph, completion, deadline=10.0, completion_timeout=0.05).compile("accounts")

    assert result.status is CompilationStatus.FAILED
    assert [m.rule for m in result.diagnostics] == ["capability"]


@pytest.mark.asyncio
@pytest.mark.parametrize("fail_listing", [True, False])
async def test_unreachable_graph_fails_with_diagnostics(fail_listing):
    completion = FakeCompletion(drafts=["SELECT Id FROM Account LIMIT 10"])
    result = await _pipeline(UnreachableGraph(fail_listing), completion).compile("accounts")

    assert result.status is CompilationStatus.FAILED
    assert result.soql is None
    assert [m.rule for m in result.diagnostics] == ["capability"]
    assert result.diagnostics[0].message.startswith("graph:")
    assert "graph down" in result.diagnostics[0].message
    assert completion.calls == []


@pytest.mark.asyncio
async def test_context_is_cached_until_schema_changes(graph):
    completion = FakeCompletion(drafts=["SELECT Id FROM Account LIMIT 10"])
    graph.load(json.loads(SAMPLE_SCHEMA.read_text(encoding="utf-8")), tenant="acme")
    pipeline = _pipeline(graph, completion)

    result = await pipeline.compile("accounts", tenant="acme")
    assert result.status is CompilationStatus.VALID
    await pipeline.compile("accounts", tenant="acme")
    assert pipeline.assembler.cache.size("acme") == 1

    pipeline.on_schema_changed("acme")
    assert pipeline.assembler.cache.size("acme") == 0


def test_run_wraps_compile(graph):
    completion = FakeCompletion(drafts=["SELECT Id FROM Account LIMIT 10"])
    result = _pipeline(graph, completion).run("accounts")
    assert result.status is CompilationStatus.VALID
    assert result.to_dict()["status"] == "valid"


@pytest.mark.asyncio
async def test_run_artifacts_are_written(graph, tmp_path):
    completion = FakeCompletion(drafts=["SELECT Id FROM Account LIMIT 10"])
    logger = RunLogger(base_dir=str(tmp_path))
    await _pipeline(graph, completion, run_logger=logger).compile("accounts")

    run_dir = logger.run_dir
    assert run_dir is not None and run_dir.parent == tmp_path
    for name in ("metadata.json", "timeline.json", "timeline.txt", "usage.json", "summary.json"):
        assert (run_dir / name).exists()
    summary = json.loads((run_dir / "summary.json").read_text(encoding="utf-8"))
    assert summary["status"] == "valid"
    assert summary["soql"] == "SELECT Id FROM Account LIMIT 10"
    assert "FINAL RESULT" in (run_dir / "timeline.txt").read_text(encoding="utf-8")
