from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Sequence, Set, Tuple

from .config import DEFAULT_LIMIT, MAX_ROW_CEILING
from .context import SchemaContext
from .lexicon import ID_FIELD_RELATIONSHIPS, KNOWN_JUNCTIONS, TOOLING_API_OBJECTS
from .matching import find_closest_match, find_field_match, find_relationship_match
from .mutations import (
    AddGroupBy,
    ApplyLimit,
    FixParentPath,
    FixSubqueryField,
    RepairAction,
    ReplaceLiteral,
    RewriteSemiJoin,
    StripAliasKeyword,
    SwapChildRelationship,
    SwapField,
    SwapMainObject,
)
from .schema_graph import SchemaField, SchemaObject
from .soql_ast import (
    FieldRef,
    FunctionCall,
    QueryAst,
    has_logical_operator,
    item_signature,
    normalize_signature,
)


class Severity(str, Enum):
    ERROR = "error"
    WARNING = "warning"


@dataclass(frozen=True)
class ValidationMessage:
    severity: Severity
    message: str
    rule: str
    action: Optional[RepairAction] = None
    suggested_limit: Optional[int] = None

    @property
    def is_error(self) -> bool:
        return self.severity is Severity.ERROR

    def to_dict(self) -> Dict[str, object]:
        data: Dict[str, object] = {"severity": self.severity.value, "rule": self.rule, "message": self.message}
        if self.action is not None:
            data["action"] = self.action.describe()
        if self.suggested_limit is not None:
            data["suggested_limit"] = self.suggested_limit
        return data


def _error(rule: str, message: str, action: Optional[RepairAction] = None) -> ValidationMessage:
    return ValidationMessage(Severity.ERROR, message, rule, action)


def _warning(
    rule: str, message: str, action: Optional[RepairAction] = None, suggested_limit: Optional[int] = None
) -> ValidationMessage:
    return ValidationMessage(Severity.WARNING, message, rule, action, suggested_limit)


def errors_of(messages: Sequence[ValidationMessage]) -> List[ValidationMessage]:
    return [m for m in messages if m.is_error]


# --- raw text checks (used when a draft does not parse) --------------------

_RAW_PATTERNS: Tuple[Tuple[str, str], ...] = (
    (r"\bIS\s+(NOT\s+)?EMPTY\b", 'SOQL does not support "IS EMPTY" / "IS NOT EMPTY"; use a semi-join such as Id IN (SELECT ... FROM ...)'),
    (r"\bIS\s+(NOT\s+)?NULL\b", 'SOQL does not support "IS NULL"; compare with "= null" or "!= null"'),
    (r"\bEXISTS\s*\(", 'SOQL does not support "EXISTS"; use Id IN (SELECT ... FROM ...)'),
    (r"\b(AND|OR|WHERE)\s*\(\s*SELECT\b", "Sub-queries cannot be used as boolean conditions; use Id IN (SELECT ... FROM ...)"),
    (r"\b(UNION|EXCEPT|INTERSECT)\b", "SOQL does not support UNION, EXCEPT or INTERSECT; run separate queries"),
    (r"\b(INNER|LEFT|RIGHT|OUTER|CROSS)?\s*JOIN\b", "SOQL has no JOIN; use relationship paths (Account.Name) or sub-queries"),
    (r"(?<![\w'])=\s*:[A-Za-z_]", "Bind variables are not allowed; inline the literal value"),
)


def check_raw_syntax(text: str) -> List[ValidationMessage]:
    """Pattern checks over raw text, for drafts the parser rejected."""
    messages: List[ValidationMessage] = []
    upper = (text or "").upper()
    for pattern, message in _RAW_PATTERNS:
        if re.search(pattern, upper):
            messages.append(_error("syntax", message))
    if re.search(r"\bHAVING\b", upper) and not re.search(r"\bGROUP\s+BY\b", upper):
        messages.append(_error("syntax", "HAVING requires a GROUP BY clause"))
    if re.search(r"\bCOUNT\s*\(\s*\*\s*\)", upper):
        messages.append(_error("syntax", "COUNT(*) is not valid SOQL; use COUNT() or COUNT(Id)"))
    return messages


# --- path walking ----------------------------------------------------------


@dataclass(frozen=True)
class _PathCheck:
    ok: bool
    message: Optional[str] = None
    corrected: Optional[str] = None
    field: Optional[SchemaField] = None


_POLYMORPHIC_COMMON_FIELDS = frozenset({"id", "name", "type", "firstname", "lastname", "alias"})


def _is_own_name(segment: str, obj: SchemaObject) -> bool:
    # A relationship of the same name wins over the object-name qualifier.
    return segment.lower() == obj.api_name.lower() and not obj.parents_named(segment)


def _split_own_prefix(path: str, obj: SchemaObject) -> Tuple[List[str], List[str]]:
    """Split off a leading ``Account.`` qualifier on a path rooted at Account."""
    parts = path.split(".")
    if len(parts) > 1 and _is_own_name(parts[0], obj):
        return parts[:1], parts[1:]
    return [], parts


def _walk_path(start: SchemaObject, path: str, context: SchemaContext) -> _PathCheck:
    """Follow ``Rel.Rel.Field`` from ``start``; objects missing from the context end the walk as ok."""
    prefix, parts = _split_own_prefix(path, start)
    current: List[SchemaObject] = [start]
    for idx, part in enumerate(parts[:-1]):
        relationships = [r for obj in current for r in obj.parent_relationships]
        match = find_relationship_match(part, relationships)
        if not match.found:
            owner = current[0].api_name
            message = f'Relationship "{part}" not found on {owner}'
            corrected = None
            if match.suggestion:
                target = f" (targets {match.suggested_target})" if match.suggested_target else ""
                message += f'. Did you mean "{match.suggestion}"{target}?'
                corrected = ".".join(prefix + parts[:idx] + [match.suggestion] + parts[idx + 1 :])
            else:
                available = sorted({r.relationship_name for r in relationships})[:8]
                if available:
                    message += f". Available relationships: {', '.join(available)}"
            return _PathCheck(False, message, corrected)
        targets = [context.get(t) for t in dict.fromkeys(match.targets)]
        resolved = [t for t in targets if t is not None]
        if not resolved:
            return _PathCheck(True)
        current = resolved
    name = parts[-1]
    for obj in current:
        fld = obj.get_field(name)
        if fld is not None:
            return _PathCheck(True, field=fld)
    if len(current) > 1 and name.lower() in _POLYMORPHIC_COMMON_FIELDS:
        return _PathCheck(True)
    owner = current[0]
    match = find_field_match(name, owner.fields)
    message = f'Field "{name}" not found on {owner.api_name}'
    corrected = None
    if match.suggestion:
        message += f'. Did you mean "{match.suggestion}"?'
        corrected = ".".join(prefix + parts[:-1] + [match.suggestion])
    return _PathCheck(False, message, corrected)


def _junction_for(segment: str, main: SchemaObject, context: SchemaContext) -> Optional[str]:
    """Junction object named by the first segment of a dot path, if it is one."""
    if main.parents_named(segment) or _is_own_name(segment, main):
        return None
    lowered = segment.lower()
    for name in KNOWN_JUNCTIONS:
        if name.lower() == lowered:
            return name
    for child in main.child_relationships:
        if child.relationship_name.lower() == lowered or child.child_object.lower() == lowered:
            return child.child_object
    return None


def _link_field(junction: str, main: SchemaObject, context: SchemaContext) -> Optional[str]:
    known = KNOWN_JUNCTIONS.get(junction)
    if known and known[0].lower() == main.api_name.lower():
        return known[1]
    detail = context.get(junction)
    if detail is not None:
        for fld in detail.fields:
            if main.api_name in fld.reference_to:
                return fld.api_name
    for child in main.child_relationships:
        if child.child_object == junction and child.field_api_name:
            return child.field_api_name
    return None


# Standard key prefixes: 001 Account, 003 Contact, 005 User, 006 Opportunity.
_KEY_PREFIX = re.compile(r"^00[1356]")
_ID_LIKE = re.compile(r"^[a-zA-Z0-9]{3}[a-zA-Z0-9]{12}([a-zA-Z0-9]{3})?$")
_PICKLIST_OPERATORS = frozenset({"=", "!=", "<>", "IN", "NOT IN", "INCLUDES", "EXCLUDES"})


def _looks_like_id(literal: str) -> bool:
    """15 or 18 character record ids, plus placeholders such as '005XXXX' on a standard key prefix."""
    if _KEY_PREFIX.match(literal):
        return True
    return bool(_ID_LIKE.match(literal)) and any(ch.isdigit() for ch in literal[:3])


def _picklist_values(owner: Optional[SchemaObject], path: str, context: SchemaContext) -> Set[str]:
    if owner is None:
        return set()
    fld = _walk_path(owner, path, context).field
    if fld is None or not fld.is_picklist:
        return set()
    return {v.lower() for v in fld.picklist_values}


class SoqlValidator:
    """Rule engine over a parsed query and its schema context.

    Pure: every rule reads the AST and context only. Errors carry a repair
    action when a deterministic fix exists.
    """

    def __init__(self, *, default_limit: int = DEFAULT_LIMIT, max_rows: int = MAX_ROW_CEILING) -> None:
        self.default_limit = default_limit
        self.max_rows = max_rows

    def validate(self, ast: QueryAst, context: SchemaContext) -> List[ValidationMessage]:
        messages: List[ValidationMessage] = []
        messages.extend(self._check_syntax(ast))
        main, object_messages = self._resolve_main(ast, context)
        main_name = main.api_name if main is not None else ast.main_object
        messages.extend(self._check_tooling(ast, main_name))
        messages.extend(object_messages)
        if main is not None:
            messages.extend(self._check_paths(ast, main, context))
            messages.extend(self._check_typeof(ast, main, context))
            messages.extend(self._check_subqueries(ast, main, context))
            messages.extend(self._check_junctions(ast, main, context))
        messages.extend(self._check_aggregates(ast))
        messages.extend(self._check_semi_joins(ast, context))
        messages.extend(self._check_literals(ast, main, context))
        if main is not None:
            messages.extend(self._check_picklists(ast, main, context))
        messages.extend(self._check_governor(ast, main, main_name))
        return messages

    # rules

    def _check_syntax(self, ast: QueryAst) -> List[ValidationMessage]:
        messages: List[ValidationMessage] = []
        aliased = [i for i in ast.fields if isinstance(i, (FieldRef, FunctionCall)) and i.alias_keyword]
        plain_aliases = [i for i in ast.fields if isinstance(i, FieldRef) and i.alias]
        if aliased or plain_aliases:
            messages.append(
                _error(
                    "syntax",
                    'SOQL does not use "AS" for aliases; write "COUNT(Id) total" and do not alias plain fields',
                    StripAliasKeyword(),
                )
            )
        for comparison in ast.comparisons():
            if comparison.is_bind:
                messages.append(
                    _error("syntax", f"Bind variable {comparison.value} in filter on {comparison.field}; inline the literal value")
                )
        if ast.having and not ast.group_by:
            messages.append(_error("syntax", "HAVING requires a GROUP BY clause"))
        for comparison in ast.comparisons():
            if comparison.operator != "LIKE":
                continue
            last = comparison.field.split(".")[-1].lower()
            if not last.endswith("id") or last in {"recordid", "recordtypeid"}:
                continue
            values = comparison.literals()
            if values and all(_ID_LIKE.match(v.strip("%")) for v in values):
                continue
            relationship = ID_FIELD_RELATIONSHIPS.get(last)
            prefix = comparison.field.rsplit(".", 1)[0] + "." if "." in comparison.field else ""
            message = f"ID fields like {comparison.field} hold record ids, not names"
            action: Optional[RepairAction] = None
            if relationship:
                name_path = f"{prefix}{relationship}.Name"
                message += f"; filter on {name_path} instead"
                action = SwapField(comparison.field, name_path, clauses=("WHERE",))
            messages.append(_error("syntax", message, action))
        return messages

    def _resolve_main(
        self, ast: QueryAst, context: SchemaContext
    ) -> Tuple[Optional[SchemaObject], List[ValidationMessage]]:
        detail = context.get(ast.main_object)
        if detail is not None:
            return detail, []
        known = list(context.known_objects) + [n for n in context.catalog if n not in context.known_objects]
        if any(n.lower() == ast.main_object.lower() for n in known):
            # Known but not described; nothing object-specific can be checked.
            return None, []
        suggestion = find_closest_match(ast.main_object, known)
        if suggestion:
            message = f'Object "{ast.main_object}" not found in the metadata graph. Did you mean "{suggestion}"?'
            return context.get(suggestion), [_error("objects", message, SwapMainObject(ast.main_object, suggestion))]
        message = f'Object "{ast.main_object}" not found in the metadata graph'
        return None, [_error("objects", message)]

    def _check_tooling(self, ast: QueryAst, main_name: str) -> List[ValidationMessage]:
        if main_name not in TOOLING_API_OBJECTS:
            return []
        problems: List[str] = []
        if any(f.name.lower() == "count" for f in ast.aggregates()):
            problems.append("COUNT()")
        if ast.group_by:
            problems.append("GROUP BY")
        if ast.limit is not None:
            problems.append("LIMIT")
        if ast.offset is not None:
            problems.append("OFFSET")
        if has_logical_operator(ast.where, "OR"):
            problems.append("OR")
        if any(c.operator in {"!=", "<>"} for c in ast.comparisons()):
            problems.append("!=")
        return [_error("tooling", f"{main_name} is a Tooling API object and does not support {p}") for p in problems]

    def _check_paths(self, ast: QueryAst, main: SchemaObject, context: SchemaContext) -> List[ValidationMessage]:
        messages: List[ValidationMessage] = []
        aliases = {i.alias.lower() for i in ast.fields if isinstance(i, FunctionCall) and i.alias}
        seen: Set[str] = set()
        for _clause, path in ast.field_references():
            key = path.lower()
            if key in seen or key in aliases:
                continue
            seen.add(key)
            if "." in path and _junction_for(path.split(".")[0], main, context):
                continue
            check = _walk_path(main, path, context)
            if check.ok:
                continue
            if "." in path:
                action = FixParentPath(path, check.corrected) if check.corrected else None
                messages.append(_error("relationships", check.message or path, action))
            else:
                action = SwapField(path, check.corrected) if check.corrected else None
                messages.append(_error("fields", check.message or path, action))
        return messages

    def _check_typeof(self, ast: QueryAst, main: SchemaObject, context: SchemaContext) -> List[ValidationMessage]:
        messages: List[ValidationMessage] = []
        for item in ast.typeof_fields():
            relationships = main.parents_named(item.relationship)
            if not relationships:
                messages.append(_error("relationships", f'TYPEOF relationship "{item.relationship}" not found on {main.api_name}'))
                continue
            targets = {r.target_object.lower(): r.target_object for r in relationships}
            for branch in item.branches:
                if branch.object_type.lower() not in targets:
                    messages.append(
                        _error(
                            "relationships",
                            f'Unknown object type "{branch.object_type}" in TYPEOF {item.relationship}; '
                            f"expected one of {', '.join(sorted(targets.values()))}",
                        )
                    )
                    continue
                detail = context.get(targets[branch.object_type.lower()])
                if detail is None:
                    continue
                for name in branch.fields:
                    if not detail.has_field(name):
                        messages.append(
                            _error("fields", f'Field "{name}" not found on {detail.api_name} in TYPEOF clause')
                        )
        return messages

    def _check_subqueries(self, ast: QueryAst, main: SchemaObject, context: SchemaContext) -> List[ValidationMessage]:
        messages: List[ValidationMessage] = []
        for sub in ast.subqueries():
            written = sub.relationship
            rel = main.get_child(written)
            if rel is None:
                names = [c.relationship_name for c in main.child_relationships]
                suggestion = find_closest_match(written, names)
                if suggestion:
                    messages.append(
                        _error(
                            "subqueries",
                            f'Child relationship "{written}" not found on {main.api_name}. Did you mean "{suggestion}"?',
                            SwapChildRelationship(written, suggestion),
                        )
                    )
                    rel = main.get_child(suggestion)
                else:
                    messages.append(_error("subqueries", f'Child relationship "{written}" not found on {main.api_name}'))
                    continue
            child = context.get(rel.child_object) if rel is not None else None
            if child is None:
                continue
            seen: Set[str] = set()
            for _clause, path in sub.query.field_references():
                if path.lower() in seen:
                    continue
                seen.add(path.lower())
                check = _walk_path(child, path, context)
                if check.ok:
                    continue
                message = f"{check.message} in {written} sub-query"
                action: Optional[RepairAction] = None
                if check.corrected:
                    action = FixSubqueryField(written, path, check.corrected)
                messages.append(_error("subqueries", message, action))
        return messages

    def _check_junctions(self, ast: QueryAst, main: SchemaObject, context: SchemaContext) -> List[ValidationMessage]:
        messages: List[ValidationMessage] = []
        where_paths = {c.field.lower() for c in ast.comparisons()}
        seen: Set[str] = set()
        for clause, path in ast.field_references():
            if "." not in path or path.lower() in seen:
                continue
            junction = _junction_for(path.split(".")[0], main, context)
            if junction is None:
                continue
            seen.add(path.lower())
            link = _link_field(junction, main, context)
            rest = path.partition(".")[2]
            example = f"Id IN (SELECT {link or '<lookup>'} FROM {junction} WHERE {rest} = ...)"
            message = (
                f"{junction} is a junction or child object of {main.api_name} and cannot be reached "
                f"with dot notation ({path}); use {example}"
            )
            action: Optional[RepairAction] = None
            if clause == "WHERE" and link and path.lower() in where_paths:
                action = RewriteSemiJoin(path, junction, link)
            messages.append(_error("junctions", message, action))
        return messages

    def _check_aggregates(self, ast: QueryAst) -> List[ValidationMessage]:
        if not ast.has_aggregates():
            return []
        messages: List[ValidationMessage] = []
        if ast.typeof_fields():
            messages.append(_error("aggregates", "TYPEOF clauses cannot be used with aggregate functions"))
        grouped = {normalize_signature(g) for g in ast.group_by}
        for item in ast.fields:
            if isinstance(item, FunctionCall) and item.is_aggregate:
                continue
            if not isinstance(item, (FieldRef, FunctionCall)):
                continue
            signature = item_signature(item)
            if signature in grouped:
                continue
            if isinstance(item, FieldRef):
                display = item.path
                group_expr = item.path
            else:
                display = item.expression()
                # toLabel(Industry) groups by Industry; CALENDAR_YEAR(CreatedDate) groups by itself.
                unwrapped = signature is not None and "(" not in signature
                group_expr = item.args[0] if unwrapped and item.args else display
            messages.append(
                _error(
                    "aggregates",
                    f"Field '{display}' is selected but not present in the GROUP BY clause. "
                    "When using aggregate functions, all non-aggregated fields must be included in the GROUP BY clause.",
                    AddGroupBy((group_expr,)),
                )
            )
        return messages

    def _check_semi_joins(self, ast: QueryAst, context: SchemaContext) -> List[ValidationMessage]:
        messages: List[ValidationMessage] = []
        for semi in ast.semi_joins():
            inner = semi.query
            detail = context.get(inner.main_object)
            if detail is None:
                known = list(context.known_objects) + list(context.catalog)
                if any(n.lower() == inner.main_object.lower() for n in known):
                    continue
                suggestion = find_closest_match(inner.main_object, known)
                hint = f'. Did you mean "{suggestion}"?' if suggestion else ""
                messages.append(
                    _error("semi_joins", f'Object "{inner.main_object}" in semi-join sub-query not found{hint}')
                )
                continue
            if len(inner.fields) != 1 or not isinstance(inner.fields[0], FieldRef):
                messages.append(
                    _error("semi_joins", f"Semi-join sub-query on {detail.api_name} must select exactly one Id or lookup field")
                )
            seen: Set[str] = set()
            for _clause, path in inner.field_references():
                if path.lower() in seen:
                    continue
                seen.add(path.lower())
                check = _walk_path(detail, path, context)
                if not check.ok:
                    messages.append(_error("semi_joins", f"{check.message} in semi-join sub-query"))
        return messages

    def _check_literals(
        self, ast: QueryAst, main: Optional[SchemaObject], context: SchemaContext
    ) -> List[ValidationMessage]:
        grounded = context.grounded_values()
        scoped = [(main, c) for c in ast.comparisons()]
        for semi in ast.semi_joins():
            inner = context.get(semi.query.main_object)
            scoped.extend((inner, c) for c in semi.query.comparisons())
        messages: List[ValidationMessage] = []
        for owner, comparison in scoped:
            allowed = _picklist_values(owner, comparison.field, context)
            for literal in comparison.literals():
                if not _looks_like_id(literal) or literal.lower() in grounded or literal.lower() in allowed:
                    continue
                messages.append(
                    _error(
                        "literals",
                        f'Found ID literal "{literal}" in filter on {comparison.field}. Record ids must not be guessed; '
                        "filter on a Name field (e.g. Owner.Name LIKE '...') or use a semi-join",
                    )
                )
        return messages

    def _check_picklists(self, ast: QueryAst, main: SchemaObject, context: SchemaContext) -> List[ValidationMessage]:
        messages: List[ValidationMessage] = []
        for comparison in ast.comparisons():
            if comparison.operator not in _PICKLIST_OPERATORS:
                continue
            check = _walk_path(main, comparison.field, context)
            fld = check.field
            if fld is None or not fld.is_picklist or not fld.picklist_values:
                continue
            allowed = {v.lower() for v in fld.picklist_values}
            for literal in comparison.literals():
                if literal.lower() in allowed:
                    continue
                closest = find_closest_match(literal, fld.picklist_values)
                message = f'Invalid picklist value "{literal}" for {comparison.field}'
                if closest:
                    message += f'. Did you mean "{closest}"?'
                    messages.append(_error("picklists", message, ReplaceLiteral(comparison.field, literal, closest)))
                else:
                    sample = ", ".join(fld.picklist_values[:10])
                    messages.append(_error("picklists", f"{message}. Valid values: {sample}"))
        return messages

    def _check_governor(
        self, ast: QueryAst, main: Optional[SchemaObject], main_name: str
    ) -> List[ValidationMessage]:
        messages: List[ValidationMessage] = []
        for comparison in ast.comparisons():
            if comparison.operator == "LIKE" and any(v.startswith("%") for v in comparison.literals()):
                messages.append(
                    _warning("governor", f"Leading wildcard on {comparison.field} prevents index use and may scan every row")
                )
        if main_name in TOOLING_API_OBJECTS:
            return messages
        if ast.has_aggregates() and not ast.group_by:
            return messages
        volume = main.record_count if main is not None else None
        if ast.limit is None:
            if volume is not None and volume <= self.max_rows:
                return messages
            size = f" and {main_name} holds about {volume} records" if volume is not None else ""
            messages.append(
                _warning(
                    "governor",
                    f'Query has no LIMIT clause{size}; add "LIMIT {self.default_limit}" to stay within governor limits',
                    ApplyLimit(self.default_limit),
                    self.default_limit,
                )
            )
        elif ast.limit > self.max_rows:
            messages.append(
                _warning(
                    "governor",
                    f"LIMIT {ast.limit} exceeds the {self.max_rows} row ceiling",
                    ApplyLimit(self.max_rows),
                    self.max_rows,
                )
            )
        return messages


__all__ = [
    "Severity",
    "ValidationMessage",
    "SoqlValidator",
    "check_raw_syntax",
    "errors_of",
]
