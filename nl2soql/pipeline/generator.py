from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .context import SchemaContext, format_schema_for_prompt
from .errors import CapabilityFailure
from .lexicon import JUNCTION_PHRASES
from .openai_client import CompletionCapability
from .utils import clean_block, extract_soql_block, safe_json_loads

logger = logging.getLogger(__name__)


@dataclass
class CandidateQuery:
    query: str
    reason: Optional[str] = None
    raw: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class QueryPlan:
    summary: str
    relevant_tables: Tuple[str, ...] = ()
    relevant_columns: Tuple[str, ...] = ()
    join_logic: Optional[str] = None
    global_context: Optional[str] = None

    @classmethod
    def parse(cls, text: str) -> Tuple[Optional["QueryPlan"], List[str]]:
        data = safe_json_loads(text)
        if data is None:
            match = re.search(r"\{[\s\S]*\}", text or "")
            data = safe_json_loads(match.group(0)) if match else None
        if not isinstance(data, dict):
            return None, ["planner did not return a JSON object"]

        def _strings(*keys: str) -> Tuple[str, ...]:
            for key in keys:
                raw = data.get(key)
                if isinstance(raw, list):
                    return tuple(dict.fromkeys(str(x).strip() for x in raw if str(x).strip()))
            return ()

        tables = _strings("relevant_tables", "relevantTables")
        if not tables:
            return None, ["plan lists no relevant tables"]
        plan = cls(
            summary=str(data.get("summary") or "No summary provided"),
            relevant_tables=tables,
            relevant_columns=_strings("relevant_columns", "relevantColumns"),
            join_logic=data.get("join_logic") or data.get("joinLogic"),
            global_context=data.get("global_context") or data.get("globalContext"),
        )
        return plan, []

    def to_dict(self) -> Dict[str, Any]:
        return {
            "summary": self.summary,
            "relevant_tables": list(self.relevant_tables),
            "relevant_columns": list(self.relevant_columns),
            "join_logic": self.join_logic,
            "global_context": self.global_context,
        }


def required_junctions(query: str) -> List[str]:
    found: List[str] = []
    for pattern, junction in JUNCTION_PHRASES:
        if re.search(pattern, query, re.IGNORECASE) and junction not in found:
            found.append(junction)
    return found


def enforce_plan(plan: QueryPlan, query: str, context: SchemaContext) -> QueryPlan:
    """Add junction tables the wording requires and drop tables the context cannot confirm."""
    tables = list(plan.relevant_tables)
    for junction in required_junctions(query):
        if junction not in tables and context.is_known(junction):
            logger.debug("plan: adding required junction %s", junction)
            tables.append(junction)
    kept: List[str] = []
    for table in tables:
        obj = context.get(table)
        if obj is not None:
            kept.append(obj.api_name)
        elif context.is_known(table):
            kept.append(table)
        else:
            logger.debug("plan: dropping unknown table %s", table)
    if not kept and context.context_object_names:
        kept.append(context.context_object_names[0])
    kept = list(dict.fromkeys(kept))
    lowered = {t.lower() for t in kept}
    columns = tuple(c for c in plan.relevant_columns if c.split(".")[0].lower() in lowered)
    return QueryPlan(plan.summary, tuple(kept), columns, plan.join_logic, plan.global_context)


class Planner:
    SYSTEM = (
        "You plan Salesforce SOQL queries. You do not write code.\n"
        "- Junction objects are mandatory when the wording implies them:\n"
        "  'working on'/'collaborating'/'assigned to'/'team member' (opportunities) -> OpportunityTeamMember;\n"
        "  'contact role'/'contact on deal' -> OpportunityContactRole; 'account team' -> AccountTeamMember;\n"
        "  'case team'/'working the case' -> CaseTeamMember.\n"
        "- 'owned by <name>' means the Owner relationship (Owner.Name); never OwnerId LIKE.\n"
        "- Only list objects present in the schema below; always include the primary object.\n"
        "- Prefer tables and fields named in the grounding notes.\n"
        "- Emit strictly the JSON shape requested."
    )

    USER_TEMPLATE = """Request: "{query}"

Schema:
{schema}

Grounding notes:
{grounding}

Emit JSON:
{{
  "summary": "Retrieve ...",
  "relevant_tables": ["Opportunity", "Account"],
  "relevant_columns": ["Opportunity.Name", "Account.Name"],
  "join_logic": "how the tables connect",
  "global_context": "anything the coder must know"
}}
"""

    def __init__(self, completion: CompletionCapability) -> None:
        self.completion = completion

    async def plan(self, query: str, context: SchemaContext, trace: Optional[dict] = None) -> Tuple[Optional[QueryPlan], List[str]]:
        user = self.USER_TEMPLATE.format(
            query=query,
            schema=format_schema_for_prompt(context),
            grounding=grounding_notes(context),
        )
        if trace is not None:
            trace["prompt"] = user
        try:
            raw = await self.completion.complete("plan", {"system": self.SYSTEM, "user": user})
        except CapabilityFailure:
            raise
        except Exception as exc:
            raise CapabilityFailure("completion", f"planner call failed: {exc}") from exc
        if trace is not None:
            trace["raw"] = raw
        plan, errors = QueryPlan.parse(raw)
        if plan is None:
            return None, errors
        return enforce_plan(plan, query, context), []


def grounding_notes(context: SchemaContext) -> str:
    lines = [f"- {g.hint()}" for g in context.grounding if g.grounded]
    return "\n".join(lines) if lines else "none"


WORKED_EXAMPLES = """\
Request: accounts in the technology industry with their open cases
```soql
SELECT Id, Name, (SELECT Id, Subject FROM Cases WHERE IsClosed = false) FROM Account WHERE Industry = 'Technology'
```

Request: opportunities Jane Doe is working on
```soql
SELECT Id, Name, StageName FROM Opportunity WHERE Id IN (SELECT OpportunityId FROM OpportunityTeamMember WHERE User.Name = 'Jane Doe')
```

Request: number of accounts per industry
```soql
SELECT Industry, COUNT(Id) FROM Account GROUP BY Industry
```

Request: tasks with the name of the related contact or lead
```soql
SELECT Id, Subject, TYPEOF Who WHEN Contact THEN FirstName, LastName WHEN Lead THEN Name, Company END FROM Task LIMIT 1000
```"""


class Coder:
    SYSTEM = (
        "You are an expert Salesforce developer translating a plan into one SOQL query.\n"
        "- Use only the objects and fields in the pruned schema; never invent fields.\n"
        "- Parent fields use dot notation (Account.Name); child lists use a sub-query on the child relationship name.\n"
        "- Junction objects (OpportunityTeamMember, OpportunityContactRole, AccountTeamMember, CaseTeamMember) are reached "
        "with a semi-join: WHERE Id IN (SELECT OpportunityId FROM OpportunityTeamMember WHERE ...). "
        "Never navigate downwards like OpportunityTeamMember.User.Name.\n"
        "- No AS keyword for aliases, no bind variables, no JOIN, UNION, EXCEPT, INTERSECT, EXISTS or IS NULL.\n"
        "- Sub-queries in WHERE must follow IN or NOT IN.\n"
        "- Every non-aggregated selected field must appear in GROUP BY when aggregates are used.\n"
        "- Use the entity hints as literal filter values.\n"
        "- Explain the strategy briefly, then give the final query in a ```soql block."
    )

    USER_TEMPLATE = """Worked examples:
{examples}

Request: "{query}"

Plan:
{plan}

Pruned schema:
{schema}

Entity hints:
{hints}

Problems with the previous attempt (fix all of them):
{feedback}
"""

    def __init__(self, completion: CompletionCapability) -> None:
        self.completion = completion

    async def draft(
        self,
        query: str,
        plan: QueryPlan,
        context: SchemaContext,
        feedback: Sequence[str] = (),
        trace: Optional[dict] = None,
    ) -> CandidateQuery:
        feedback_items = list(feedback)[-8:]
        user = self.USER_TEMPLATE.format(
            examples=WORKED_EXAMPLES,
            query=query,
            plan=json.dumps(plan.to_dict(), indent=2),
            schema=format_schema_for_prompt(context, tables=plan.relevant_tables),
            hints=grounding_notes(context),
            feedback="- " + "\n- ".join(feedback_items) if feedback_items else "none",
        )
        if trace is not None:
            trace["prompt"] = user
        try:
            raw = await self.completion.complete("code", {"system": self.SYSTEM, "user": user})
        except CapabilityFailure:
            raise
        except Exception as exc:
            raise CapabilityFailure("completion", f"coder call failed: {exc}") from exc
        if trace is not None:
            trace["raw"] = raw
        soql = extract_soql_block(raw)
        if soql is None:
            # Kept for debuggability; the parser reports what is wrong with it.
            soql = clean_block(raw)
            reason = None
        else:
            reason = raw.split("```")[0].strip() or None
        return CandidateQuery(query=soql, reason=reason, raw=raw, metadata={"feedback": feedback_items})


__all__ = [
    "CandidateQuery",
    "QueryPlan",
    "required_junctions",
    "enforce_plan",
    "grounding_notes",
    "Planner",
    "Coder",
    "WORKED_EXAMPLES",
]
