import pytest

from nl2soql.pipeline.context import SchemaContext
from nl2soql.pipeline.grounding import GroundingResult
from nl2soql.pipeline.mutations import (
    AddGroupBy,
    ApplyLimit,
    FixParentPath,
    ReplaceLiteral,
    RewriteSemiJoin,
    StripAliasKeyword,
    SwapField,
    SwapMainObject,
)
from nl2soql.pipeline.schema_graph import SchemaField, SchemaObject
from nl2soql.pipeline.soql_ast import QueryAst
from nl2soql.pipeline.validators import Severity, SoqlValidator, check_raw_syntax, errors_of


def _validate(query, context):
    ast, errors = QueryAst.parse(query)
    assert errors == [], errors
    return SoqlValidator().validate(ast, context)


def _errors(messages):
    return errors_of(messages)


def _warnings(messages):
    return [m for m in messages if m.severity is Severity.WARNING]


def test_aggregate_without_group_by(full_context):
    messages = _validate("SELECT Industry, COUNT(Id) FROM Account", full_context)

    errors = _errors(messages)
    assert len(errors) == 1
    assert errors[0].rule == "aggregates"
    assert "Field 'Industry' is selected but not present in the GROUP BY clause" in errors[0].message
    assert errors[0].action == AddGroupBy(("Industry",))
    assert _warnings(messages) == []


def test_aggregate_with_group_by_only_warns_on_volume(full_context):
    messages = _validate("SELECT Industry, COUNT(Id) FROM Account GROUP BY Industry", full_context)

    assert _errors(messages) == []
    warnings = _warnings(messages)
    assert len(warnings) == 1
    assert warnings[0].rule == "governor"


def test_grouped_field_pair(full_context):
    assert _errors(_validate("SELECT Name, COUNT(Id) FROM Account GROUP BY Name", full_context)) == []

    errors = _errors(_validate("SELECT Name, Industry, COUNT(Id) FROM Account GROUP BY Name", full_context))
    assert len(errors) == 1
    assert "Industry" in errors[0].message
    assert errors[0].action == AddGroupBy(("Industry",))


def test_tolabel_is_grouped_by_its_field(full_context):
    messages = _validate("SELECT toLabel(Industry), COUNT(Id) FROM Account GROUP BY Industry LIMIT 10", full_context)
    assert messages == []


def test_junction_dot_notation_is_rejected(full_context):
    messages = _validate(
        "SELECT Id, Name FROM Opportunity WHERE OpportunityTeamMember.User.Name = 'Jane Doe'", full_context
    )

    errors = _errors(messages)
    assert len(errors) == 1
    assert errors[0].rule == "junctions"
    assert "OpportunityTeamMember" in errors[0].message
    assert errors[0].action == RewriteSemiJoin(
        "OpportunityTeamMember.User.Name", "OpportunityTeamMember", "OpportunityId"
    )


def test_junction_semi_join_is_accepted(full_context):
    messages = _validate(
        "SELECT Id, Name FROM Opportunity WHERE Id IN "
        "(SELECT OpportunityId FROM OpportunityTeamMember WHERE User.Name = 'Jane Doe') LIMIT 100",
        full_context,
    )
    assert messages == []


@pytest.mark.parametrize(
    "query",
    [
        "SELECT Id, Name FROM Account WHERE Account.Name LIKE 'Microsoft%' LIMIT 10",
        "SELECT Id FROM Contact WHERE Contact.Name = 'Jane' LIMIT 10",
        "SELECT Id, Contact.Account.Name FROM Contact LIMIT 10",
    ],
)
def test_own_object_qualifier_is_accepted(full_context, query):
    assert _validate(query, full_context) == []


def test_own_object_qualifier_keeps_prefix_in_suggestion(full_context):
    errors = _errors(_validate("SELECT Id FROM Account WHERE Account.Nmae = 'Acme' LIMIT 10", full_context))
    assert len(errors) == 1
    assert errors[0].rule == "relationships"
    assert errors[0].action == FixParentPath("Account.Nmae", "Account.Name")


def test_rewrite_semi_join_action_renders_valid_filter(full_context):
    ast, _ = QueryAst.parse("SELECT Id, Name FROM Opportunity WHERE OpportunityTeamMember.User.Name = 'Jane Doe'")
    rewritten = RewriteSemiJoin("OpportunityTeamMember.User.Name", "OpportunityTeamMember", "OpportunityId").apply(ast)

    assert rewritten.render() == (
        "SELECT Id, Name FROM Opportunity WHERE Id IN "
        "(SELECT OpportunityId FROM OpportunityTeamMember WHERE User.Name = 'Jane Doe')"
    )
    assert _errors(SoqlValidator().validate(rewritten, full_context)) == []


def test_governor_suggests_default_limit(full_context):
    messages = _validate("SELECT Id, Name FROM Account", full_context)

    assert _errors(messages) == []
    warnings = _warnings(messages)
    assert len(warnings) == 1
    assert warnings[0].suggested_limit == 1000
    assert warnings[0].action == ApplyLimit(1000)
    assert "120000" in warnings[0].message


def test_governor_action_applies_suggested_limit(full_context):
    ast, _ = QueryAst.parse("SELECT Id, Subject FROM Case")
    warnings = _warnings(SoqlValidator().validate(ast, full_context))
    assert len(warnings) == 1

    limited = warnings[0].action.apply(ast)
    assert limited.limit == warnings[0].suggested_limit
    assert SoqlValidator().validate(limited, full_context) == []


def test_governor_caps_oversized_limit(full_context):
    warnings = _warnings(_validate("SELECT Id FROM Account LIMIT 60000", full_context))
    assert [w.suggested_limit for w in warnings] == [50000]


def test_governor_skips_small_objects(full_context):
    assert _validate("SELECT Id FROM User", full_context) == []


def test_governor_flags_leading_wildcard(full_context):
    warnings = _warnings(_validate("SELECT Id FROM Account WHERE Name LIKE '%soft' LIMIT 10", full_context))
    assert len(warnings) == 1
    assert "Leading wildcard" in warnings[0].message


def test_unknown_field_suggests_closest(full_context):
    errors = _errors(_validate("SELECT Id, Nmae FROM Account LIMIT 10", full_context))
    assert len(errors) == 1
    assert errors[0].rule == "fields"
    assert 'Did you mean "Name"?' in errors[0].message
    assert errors[0].action == SwapField("Nmae", "Name")


def test_field_label_points_to_api_name(full_context):
    errors = _errors(_validate("SELECT Id, Stage FROM Opportunity LIMIT 10", full_context))
    assert len(errors) == 1
    assert errors[0].action == SwapField("Stage", "StageName")


def test_unknown_object_suggests_closest(full_context):
    errors = _errors(_validate("SELECT Id FROM Acount LIMIT 10", full_context))
    assert len(errors) == 1
    assert errors[0].rule == "objects"
    assert errors[0].action == SwapMainObject("Acount", "Account")


def test_unknown_object_without_candidate(full_context):
    errors = _errors(_validate("SELECT Id FROM Zzqqxxv LIMIT 10", full_context))
    assert [e.rule for e in errors] == ["objects"]
    assert errors[0].action is None


def test_parent_path_by_object_name_suggests_relationship(full_context):
    errors = _errors(_validate("SELECT Id, User.Name FROM Account LIMIT 10", full_context))
    assert len(errors) == 1
    assert errors[0].rule == "relationships"
    assert 'Did you mean "Owner"' in errors[0].message


def test_polymorphic_owner_resolves_common_fields(full_context):
    assert _validate("SELECT Id, Owner.Name FROM Case LIMIT 10", full_context) == []


def test_typeof_unknown_branch(full_context):
    errors = _errors(
        _validate("SELECT Id, TYPEOF What WHEN Lead THEN Name END FROM Task LIMIT 10", full_context)
    )
    assert len(errors) == 1
    assert "Unknown object type" in errors[0].message


def test_typeof_known_branches(full_context):
    messages = _validate(
        "SELECT Id, TYPEOF What WHEN Account THEN Name, Industry WHEN Opportunity THEN Amount END FROM Task LIMIT 10",
        full_context,
    )
    assert messages == []


def test_subquery_child_relationship_suggestion(full_context):
    errors = _errors(_validate("SELECT Id, (SELECT Id FROM Contact) FROM Account LIMIT 10", full_context))
    assert len(errors) == 1
    assert errors[0].rule == "subqueries"
    assert 'Did you mean "Contacts"?' in errors[0].message


def test_tooling_object_restrictions(full_context):
    messages = _validate("SELECT Id, QualifiedApiName FROM EntityDefinition LIMIT 10", full_context)
    errors = _errors(messages)
    assert [e.rule for e in errors] == ["tooling"]
    assert "LIMIT" in errors[0].message
    assert _warnings(messages) == []


def test_invalid_picklist_value_with_suggestion(full_context):
    errors = _errors(_validate("SELECT Id FROM Account WHERE Industry = 'Tech' LIMIT 10", full_context))
    assert len(errors) == 1
    assert errors[0].rule == "picklists"
    assert errors[0].action == ReplaceLiteral("Industry", "Tech", "Technology")


def test_invalid_picklist_value_lists_valid_values(full_context):
    errors = _errors(_validate("SELECT Id FROM Account WHERE Industry = 'Aerospace' LIMIT 10", full_context))
    assert len(errors) == 1
    assert errors[0].action is None
    assert "Valid values" in errors[0].message


def test_guessed_id_literal_is_an_error(full_context):
    errors = _errors(
        _validate("SELECT Id FROM Contact WHERE AccountId = '001000000000001AAA' LIMIT 10", full_context)
    )
    assert [e.rule for e in errors] == ["literals"]
    assert errors[0].action is None


def test_grounded_id_literal_is_allowed(graph):
    context = SchemaContext.from_objects(
        list(graph.objects().values()),
        grounding=[GroundingResult(candidate="001000000000001AAA", value="001000000000001AAA")],
    )
    messages = _validate("SELECT Id FROM Contact WHERE AccountId = '001000000000001AAA' LIMIT 10", context)
    assert _errors(messages) == []


def test_guessed_id_without_standard_prefix(full_context):
    errors = _errors(
        _validate("SELECT Id FROM Opportunity WHERE AccountId = 'a0B000000000001AAA' LIMIT 10", full_context)
    )
    assert [e.rule for e in errors] == ["literals"]


def test_placeholder_id_is_an_error(full_context):
    errors = _errors(_validate("SELECT Id FROM Opportunity WHERE OwnerId = '005XXXX' LIMIT 10", full_context))
    assert [e.rule for e in errors] == ["literals"]


def test_picklist_value_shaped_like_id_is_allowed():
    region = SchemaObject(
        api_name="Region__c",
        fields=(
            SchemaField("Id", type="id"),
            SchemaField("Code__c", type="picklist", picklist_values=("001EMEA", "002APAC")),
        ),
        record_count=10,
    )
    context = SchemaContext.from_objects([region])
    assert _validate("SELECT Id FROM Region__c WHERE Code__c = '001EMEA'", context) == []


def test_like_on_id_field_points_to_name(full_context):
    errors = _errors(_validate("SELECT Id FROM Opportunity WHERE OwnerId LIKE 'Jane%' LIMIT 10", full_context))
    assert len(errors) == 1
    assert errors[0].rule == "syntax"
    assert errors[0].action == SwapField("OwnerId", "Owner.Name", clauses=("WHERE",))


def test_alias_keyword_is_an_error(full_context):
    errors = _errors(_validate("SELECT COUNT(Id) AS total FROM Account", full_context))
    assert len(errors) == 1
    assert errors[0].action == StripAliasKeyword()


def test_having_requires_group_by(full_context):
    errors = _errors(_validate("SELECT COUNT(Id) FROM Account HAVING COUNT(Id) > 1", full_context))
    assert any("HAVING requires a GROUP BY" in e.message for e in errors)


def test_validation_is_idempotent(full_context):
    ast, _ = QueryAst.parse("SELECT Industry, Nmae, COUNT(Id) FROM Account WHERE Industry = 'Tech'")
    validator = SoqlValidator()
    assert validator.validate(ast, full_context) == validator.validate(ast, full_context)


def test_known_but_undescribed_object_is_not_an_error(graph):
    account = graph.objects()["Account"]
    context = SchemaContext.from_objects([account], known_objects=["Account", "Contact"])
    messages = _validate("SELECT Id FROM Contact LIMIT 10", context)
    assert messages == []


@pytest.mark.parametrize(
    "text, fragment",
    [
        ("SELECT Id FROM Account WHERE Name IS NULL", "IS NULL"),
        ("SELECT Id FROM Account WHERE Name IS NOT EMPTY", "IS EMPTY"),
        ("SELECT COUNT(*) FROM Account", "COUNT(*)"),
        ("SELECT a.Id FROM Account a JOIN Contact c ON a.Id = c.AccountId", "JOIN"),
        ("SELECT Id FROM Account WHERE Name = :name", "Bind variables"),
        ("SELECT Id FROM Account UNION SELECT Id FROM Lead", "UNION"),
    ],
)
def test_check_raw_syntax(text, fragment):
    messages = check_raw_syntax(text)
    assert any(fragment in m.message for m in messages)
    assert all(m.is_error for m in messages)


def test_check_raw_syntax_clean_query():
    assert check_raw_syntax("SELECT Id FROM Account WHERE Name = 'Acme' LIMIT 10") == []
