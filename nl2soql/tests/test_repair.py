import unittest
from pathlib import Path

from nl2soql.pipeline.context import SchemaContext
from nl2soql.pipeline.mutations import ApplyLimit, SwapField
from nl2soql.pipeline.refiner import RepairEngine, RepairState, classify
from nl2soql.pipeline.schema_graph import InMemorySchemaGraph
from nl2soql.pipeline.soql_ast import QueryAst
from nl2soql.pipeline.validators import Severity, SoqlValidator, ValidationMessage

SAMPLE_SCHEMA = Path(__file__).resolve().parents[1] / "sample_schema.json"


def _error(action=None, message="broken"):
    return ValidationMessage(Severity.ERROR, message, "fields", action)


class ScriptedValidator:
    """Returns pre-baked message lists, one per validate() call."""

    def __init__(self, *rounds):
        self.rounds = list(rounds)
        self.calls = 0

    def validate(self, _ast, _context):
        idx = min(self.calls, len(self.rounds) - 1)
        self.calls += 1
        return list(self.rounds[idx])


def _parse(query):
    ast, errors = QueryAst.parse(query)
    assert not errors, errors
    return ast


class RepairEngineTests(unittest.TestCase):
    def setUp(self) -> None:
        graph = InMemorySchemaGraph.from_json(SAMPLE_SCHEMA)
        self.context = SchemaContext.from_objects(list(graph.objects().values()))
        self.engine = RepairEngine(SoqlValidator())

    def test_aggregate_repair_then_limit(self):
        outcome = self.engine.run(_parse("SELECT Industry, COUNT(Id) FROM Account"), self.context)

        self.assertIs(outcome.state, RepairState.VALID)
        self.assertEqual(outcome.ast.render(), "SELECT Industry, COUNT(Id) FROM Account GROUP BY Industry LIMIT 1000")
        self.assertEqual(outcome.passes, 1)
        self.assertEqual(list(outcome.corrections), ["Added Industry to GROUP BY", "Applied LIMIT 1000"])
        self.assertEqual(outcome.errors, [])
        # The governor warning stays next to the applied limit.
        self.assertTrue(any(m.rule == "governor" for m in outcome.diagnostics))
        self.assertEqual([e["phase"] for e in outcome.events], ["repair", "limit"])

    def test_object_and_field_fixed_in_one_pass(self):
        outcome = self.engine.run(_parse("SELECT Id, Nmae FROM Acount"), self.context)

        self.assertIs(outcome.state, RepairState.VALID)
        self.assertEqual(outcome.ast.render(), "SELECT Id, Name FROM Account LIMIT 1000")
        self.assertEqual(outcome.passes, 1)
        self.assertEqual(
            list(outcome.corrections),
            ['Object "Acount" replaced with "Account"', 'Field "Nmae" replaced with "Name"', "Applied LIMIT 1000"],
        )

    def test_junction_rewritten_as_semi_join(self):
        outcome = self.engine.run(
            _parse("SELECT Id, Name FROM Opportunity WHERE OpportunityTeamMember.User.Name = 'Jane Doe'"),
            self.context,
        )

        self.assertIs(outcome.state, RepairState.VALID)
        self.assertEqual(
            outcome.ast.render(),
            "SELECT Id, Name FROM Opportunity WHERE Id IN "
            "(SELECT OpportunityId FROM OpportunityTeamMember WHERE User.Name = 'Jane Doe') LIMIT 1000",
        )

    def test_id_like_filter_moves_to_name(self):
        outcome = self.engine.run(
            _parse("SELECT Id FROM Opportunity WHERE OwnerId LIKE 'Jane%' LIMIT 10"), self.context
        )
        self.assertIs(outcome.state, RepairState.VALID)
        self.assertEqual(outcome.ast.render(), "SELECT Id FROM Opportunity WHERE Owner.Name LIKE 'Jane%' LIMIT 10")

    def test_picklist_literal_corrected(self):
        outcome = self.engine.run(
            _parse("SELECT Id FROM Account WHERE Industry = 'Tech' LIMIT 10"), self.context
        )
        self.assertIs(outcome.state, RepairState.VALID)
        self.assertIn("Industry = 'Technology'", outcome.ast.render())

    def test_error_without_action_needs_regeneration(self):
        ast = _parse("SELECT Id FROM Contact WHERE AccountId = '001000000000001AAA' LIMIT 10")
        outcome = self.engine.run(ast, self.context)

        self.assertIs(outcome.state, RepairState.NEEDS_REGENERATION)
        self.assertEqual(outcome.passes, 0)
        self.assertEqual(outcome.ast, ast)
        self.assertEqual([e.rule for e in outcome.errors], ["literals"])

    def test_own_object_qualifier_keeps_filter_meaning(self):
        outcome = self.engine.run(
            _parse("SELECT Id, Name FROM Account WHERE Account.Name LIKE 'Microsoft%'"), self.context
        )
        self.assertIs(outcome.state, RepairState.VALID)
        self.assertEqual(
            outcome.ast.render(), "SELECT Id, Name FROM Account WHERE Account.Name LIKE 'Microsoft%' LIMIT 1000"
        )

        outcome = self.engine.run(_parse("SELECT Id FROM Contact WHERE Contact.Name = 'Jane' LIMIT 10"), self.context)
        self.assertIs(outcome.state, RepairState.VALID)
        self.assertEqual(outcome.corrections, ())

    def test_valid_query_untouched(self):
        ast = _parse("SELECT Id, Name FROM User")
        outcome = self.engine.run(ast, self.context)
        self.assertIs(outcome.state, RepairState.VALID)
        self.assertEqual(outcome.ast, ast)
        self.assertEqual(outcome.corrections, ())


class RepairLoopBoundsTests(unittest.TestCase):
    def setUp(self) -> None:
        self.ast = _parse("SELECT Id FROM Account")
        self.context = SchemaContext()

    def test_rolls_back_when_errors_increase(self):
        validator = ScriptedValidator([_error(ApplyLimit(10))], [_error(), _error()])
        outcome = RepairEngine(validator).run(self.ast, self.context)

        self.assertIs(outcome.state, RepairState.NEEDS_REGENERATION)
        self.assertEqual(outcome.reason, "repair increased errors")
        self.assertEqual(outcome.ast, self.ast)
        self.assertEqual(len(outcome.errors), 1)
        self.assertTrue(outcome.events[-1]["rolled_back"])
        self.assertEqual(outcome.corrections, ())

    def test_stalls_after_equal_error_counts(self):
        validator = ScriptedValidator([_error(ApplyLimit(10))])
        outcome = RepairEngine(validator, stall_limit=2).run(self.ast, self.context)

        self.assertIs(outcome.state, RepairState.NEEDS_REGENERATION)
        self.assertEqual(outcome.reason, "repair stalled")
        self.assertEqual(outcome.passes, 2)

    def test_pass_budget(self):
        rounds = [[_error(ApplyLimit(n), f"e{n}") for n in range(count)] for count in (5, 4, 3, 2)]
        validator = ScriptedValidator(*rounds)
        outcome = RepairEngine(validator, max_passes=2).run(self.ast, self.context)

        self.assertIs(outcome.state, RepairState.NEEDS_REGENERATION)
        self.assertEqual(outcome.reason, "pass budget spent")
        self.assertEqual(outcome.passes, 2)
        self.assertEqual(len(outcome.errors), 3)

    def test_passes_used_counts_against_budget(self):
        validator = ScriptedValidator([_error(ApplyLimit(10))], [])
        outcome = RepairEngine(validator, max_passes=3).run(self.ast, self.context, passes_used=3)
        self.assertEqual(outcome.reason, "pass budget spent")
        self.assertEqual(outcome.passes, 3)
        self.assertEqual(validator.calls, 1)

    def test_error_counts_never_increase_across_accepted_passes(self):
        rounds = [[_error(SwapField(f"F{i}", f"G{i}"), f"e{i}") for i in range(count)] for count in (4, 3, 3, 1, 0)]
        outcome = RepairEngine(ScriptedValidator(*rounds), max_passes=5, stall_limit=3).run(self.ast, self.context)

        self.assertIs(outcome.state, RepairState.VALID)
        self.assertLessEqual(outcome.passes, 5)
        for event in outcome.events:
            if event["phase"] == "repair" and not event.get("rolled_back"):
                self.assertLessEqual(event["errors_after"], event["errors_before"])


def test_classify():
    warning = ValidationMessage(Severity.WARNING, "w", "governor", ApplyLimit(1000), 1000)
    assert classify([]) is RepairState.VALID
    assert classify([warning]) is RepairState.VALID
    assert classify([_error(ApplyLimit(5))]) is RepairState.REPAIRABLE
    assert classify([_error(ApplyLimit(5)), _error()]) is RepairState.NEEDS_REGENERATION
