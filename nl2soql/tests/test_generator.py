import json

import pytest

from nl2soql.pipeline.context import SchemaContext
from nl2soql.pipeline.errors import CapabilityFailure
from nl2soql.pipeline.generator import Coder, Planner, QueryPlan, enforce_plan, required_junctions


class RecordingCompletion:
    def __init__(self, responses):
        self.responses = dict(responses)
        self.calls = []

    async def complete(self, role, payload):
        self.calls.append((role, payload))
        response = self.responses[role]
        if isinstance(response, Exception):
            raise response
        return response


def test_plan_parses_fenced_camel_case_json():
    raw = '```json\n{"summary": "Count accounts", "relevantTables": ["Account", "Account"], "joinLogic": "none"}\n```'
    plan, errors = QueryPlan.parse(raw)

    assert errors == []
    assert plan.relevant_tables == ("Account",)
    assert plan.join_logic == "none"


def test_plan_embedded_in_prose():
    plan, errors = QueryPlan.parse('Here is the plan: {"summary": "x", "relevant_tables": ["Case"]} Thanks.')
    assert errors == []
    assert plan.relevant_tables == ("Case",)


def test_plan_rejects_non_json_and_empty_tables():
    assert QueryPlan.parse("not json at all") == (None, ["planner did not return a JSON object"])
    assert QueryPlan.parse('{"summary": "x", "relevant_tables": []}') == (None, ["plan lists no relevant tables"])


def test_required_junctions():
    assert required_junctions("opportunities Jane Doe is working on") == ["OpportunityTeamMember"]
    assert required_junctions("show the account team for Acme") == ["AccountTeamMember"]
    assert required_junctions("open cases") == []


def test_enforce_plan_adds_junction_and_drops_unknown_tables(full_context):
    plan = QueryPlan(
        "Opportunities for a user",
        relevant_tables=("opportunity", "Widget__c"),
        relevant_columns=("Opportunity.Name", "Widget__c.Size__c"),
    )
    enforced = enforce_plan(plan, "opportunities Jane Doe is working on", full_context)

    assert enforced.relevant_tables == ("Opportunity", "OpportunityTeamMember")
    assert enforced.relevant_columns == ("Opportunity.Name",)


def test_enforce_plan_falls_back_to_context_seed(graph):
    context = SchemaContext.from_objects([graph.objects()["Case"]])
    enforced = enforce_plan(QueryPlan("x", relevant_tables=("Widget__c",)), "widgets", context)
    assert enforced.relevant_tables == ("Case",)


@pytest.mark.asyncio
async def test_planner_returns_enforced_plan(full_context):
    completion = RecordingCompletion(
        {"plan": json.dumps({"summary": "Team deals", "relevant_tables": ["Opportunity"]})}
    )
    trace = {}
    plan, errors = await Planner(completion).plan("opportunities Jane Doe is working on", full_context, trace)

    assert errors == []
    assert plan.relevant_tables == ("Opportunity", "OpportunityTeamMember")
    role, payload = completion.calls[0]
    assert role == "plan"
    assert payload["system"] == Planner.SYSTEM
    assert "opportunities Jane Doe is working on" in payload["user"]
    assert trace["prompt"] == payload["user"]


@pytest.mark.asyncio
async def test_planner_wraps_completion_errors(full_context):
    completion = RecordingCompletion({"plan": RuntimeError("rate limited")})
    with pytest.raises(CapabilityFailure) as excinfo:
        await Planner(completion).plan("accounts", full_context)
    assert excinfo.value.capability == "completion"


@pytest.mark.asyncio
async def test_coder_extracts_query_and_reason(full_context):
    completion = RecordingCompletion(
        {"code": "Group by industry.\n```soql\nSELECT Industry, COUNT(Id) FROM Account GROUP BY Industry;\n```"}
    )
    plan = QueryPlan("Count accounts per industry", relevant_tables=("Account",))

    candidate = await Coder(completion).draft(
        "number of accounts per industry", plan, full_context, feedback=["missing GROUP BY"]
    )

    assert candidate.query == "SELECT Industry, COUNT(Id) FROM Account GROUP BY Industry"
    assert candidate.reason == "Group by industry."
    assert candidate.metadata["feedback"] == ["missing GROUP BY"]
    user = completion.calls[0][1]["user"]
    assert "- missing GROUP BY" in user
    assert "Account (Account)" in user
    assert "Opportunity (Opportunity)" not in user


@pytest.mark.asyncio
async def test_coder_keeps_unfenced_text_for_the_parser(full_context):
    completion = RecordingCompletion({"code": "I cannot answer that"})
    plan = QueryPlan("x", relevant_tables=("Account",))
    candidate = await Coder(completion).draft("accounts", plan, full_context)
    assert candidate.query == "I cannot answer that"
    assert candidate.reason is None
