"""Named, pure AST edits used by the repair loop.

Each action is a frozen value with ``apply(ast) -> QueryAst``; applying never
mutates its input.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, replace
from typing import ClassVar, Iterable, List, Tuple, Union

from .soql_ast import (
    Comparison,
    Condition,
    FieldRef,
    FunctionCall,
    QueryAst,
    SemiJoin,
    SubqueryField,
    map_leaves,
)

ALL_CLAUSES: Tuple[str, ...] = ("SELECT", "WHERE", "GROUP BY", "ORDER BY")


def _replace_path(expr: str, original: str, replacement: str) -> str:
    pattern = re.compile(rf"(?<![\w.]){re.escape(original)}(?![\w.])", re.IGNORECASE)
    return pattern.sub(replacement, expr)


def _swap_paths(ast: QueryAst, original: str, replacement: str, clauses: Iterable[str]) -> QueryAst:
    wanted = set(clauses)
    fields = ast.fields
    where = ast.where
    group_by = ast.group_by
    order_by = ast.order_by
    if "SELECT" in wanted:
        updated = []
        for item in ast.fields:
            if isinstance(item, FieldRef):
                item = replace(item, path=_replace_path(item.path, original, replacement))
            elif isinstance(item, FunctionCall):
                item = replace(item, args=tuple(_replace_path(a, original, replacement) for a in item.args))
            updated.append(item)
        fields = tuple(updated)
    if "WHERE" in wanted and ast.where is not None:
        where = map_leaves(ast.where, lambda leaf: replace(leaf, field=_replace_path(leaf.field, original, replacement)))
    if "GROUP BY" in wanted:
        group_by = tuple(_replace_path(g, original, replacement) for g in ast.group_by)
    if "ORDER BY" in wanted:
        order_by = tuple(replace(o, field=_replace_path(o.field, original, replacement)) for o in ast.order_by)
    return replace(ast, fields=fields, where=where, group_by=group_by, order_by=order_by)


@dataclass(frozen=True)
class SwapMainObject:
    kind: ClassVar[str] = "swap_main_object"
    original: str
    replacement: str

    def apply(self, ast: QueryAst) -> QueryAst:
        if ast.main_object.lower() != self.original.lower():
            return ast
        return replace(ast, main_object=self.replacement)

    def describe(self) -> str:
        return f'Object "{self.original}" replaced with "{self.replacement}"'


@dataclass(frozen=True)
class SwapField:
    kind: ClassVar[str] = "swap_field"
    original: str
    replacement: str
    clauses: Tuple[str, ...] = ALL_CLAUSES

    def apply(self, ast: QueryAst) -> QueryAst:
        return _swap_paths(ast, self.original, self.replacement, self.clauses)

    def describe(self) -> str:
        return f'Field "{self.original}" replaced with "{self.replacement}"'


@dataclass(frozen=True)
class FixParentPath:
    kind: ClassVar[str] = "fix_parent_path"
    original: str
    corrected: str

    def apply(self, ast: QueryAst) -> QueryAst:
        return _swap_paths(ast, self.original, self.corrected, ALL_CLAUSES)

    def describe(self) -> str:
        return f'Lookup path "{self.original}" corrected to "{self.corrected}"'


@dataclass(frozen=True)
class FixSubqueryField:
    kind: ClassVar[str] = "fix_subquery_field"
    relationship: str
    original: str
    replacement: str

    def apply(self, ast: QueryAst) -> QueryAst:
        fields = []
        for item in ast.fields:
            if isinstance(item, SubqueryField) and item.relationship.lower() == self.relationship.lower():
                item = SubqueryField(_swap_paths(item.query, self.original, self.replacement, ALL_CLAUSES))
            fields.append(item)
        return replace(ast, fields=tuple(fields))

    def describe(self) -> str:
        return f'Field "{self.original}" in {self.relationship} sub-query replaced with "{self.replacement}"'


@dataclass(frozen=True)
class SwapChildRelationship:
    kind: ClassVar[str] = "swap_child_relationship"
    original: str
    replacement: str

    def apply(self, ast: QueryAst) -> QueryAst:
        fields = []
        for item in ast.fields:
            if isinstance(item, SubqueryField) and item.relationship.lower() == self.original.lower():
                item = SubqueryField(replace(item.query, main_object=self.replacement))
            fields.append(item)
        return replace(ast, fields=tuple(fields))

    def describe(self) -> str:
        return f'Child relationship "{self.original}" replaced with "{self.replacement}"'


@dataclass(frozen=True)
class AddGroupBy:
    kind: ClassVar[str] = "add_group_by"
    fields: Tuple[str, ...]

    def apply(self, ast: QueryAst) -> QueryAst:
        present = {g.lower() for g in ast.group_by}
        extra = tuple(f for f in self.fields if f.lower() not in present)
        if not extra:
            return ast
        return replace(ast, group_by=ast.group_by + extra)

    def describe(self) -> str:
        return f"Added {', '.join(self.fields)} to GROUP BY"


@dataclass(frozen=True)
class ApplyLimit:
    kind: ClassVar[str] = "apply_limit"
    limit: int

    def apply(self, ast: QueryAst) -> QueryAst:
        return replace(ast, limit=self.limit)

    def describe(self) -> str:
        return f"Applied LIMIT {self.limit}"


@dataclass(frozen=True)
class StripAliasKeyword:
    kind: ClassVar[str] = "strip_alias_keyword"

    def apply(self, ast: QueryAst) -> QueryAst:
        fields = []
        for item in ast.fields:
            if isinstance(item, FieldRef) and item.alias:
                # Plain fields cannot be aliased at all.
                item = FieldRef(item.path)
            elif isinstance(item, FunctionCall) and item.alias_keyword:
                item = replace(item, alias_keyword=False)
            fields.append(item)
        return replace(ast, fields=tuple(fields))

    def describe(self) -> str:
        return "Removed AS keyword from select aliases"


@dataclass(frozen=True)
class ReplaceLiteral:
    kind: ClassVar[str] = "replace_literal"
    field: str
    original: str
    replacement: str

    def apply(self, ast: QueryAst) -> QueryAst:
        quoted = "'" + self.original.replace("'", "\\'") + "'"
        fixed = "'" + self.replacement.replace("'", "\\'") + "'"

        def _fix(leaf):
            if isinstance(leaf, Comparison) and leaf.field.lower() == self.field.lower():
                return replace(leaf, value=leaf.value.replace(quoted, fixed))
            return leaf

        return replace(ast, where=map_leaves(ast.where, _fix))

    def describe(self) -> str:
        return f"Value '{self.original}' for {self.field} replaced with '{self.replacement}'"


@dataclass(frozen=True)
class RewriteSemiJoin:
    kind: ClassVar[str] = "rewrite_semi_join"
    path: str
    junction: str
    link_field: str
    parent_field: str = "Id"

    def apply(self, ast: QueryAst) -> QueryAst:
        rest = self.path.partition(".")[2]

        def _rewrite(leaf) -> Condition:
            if isinstance(leaf, Comparison) and leaf.field.lower() == self.path.lower():
                inner = QueryAst(
                    main_object=self.junction,
                    fields=(FieldRef(self.link_field),),
                    where=Comparison(rest, leaf.operator, leaf.value),
                )
                return SemiJoin(self.parent_field, inner)
            return leaf

        return replace(ast, where=map_leaves(ast.where, _rewrite))

    def describe(self) -> str:
        return f"Rewrote {self.path} as {self.parent_field} IN (SELECT {self.link_field} FROM {self.junction} ...)"


RepairAction = Union[
    SwapMainObject,
    SwapField,
    FixParentPath,
    FixSubqueryField,
    SwapChildRelationship,
    AddGroupBy,
    ApplyLimit,
    StripAliasKeyword,
    ReplaceLiteral,
    RewriteSemiJoin,
]


def _action_order(action: "RepairAction") -> int:
    # Object swaps first; child relationship renames last so sub-query field fixes still find their target.
    if isinstance(action, SwapMainObject):
        return 0
    if isinstance(action, SwapChildRelationship):
        return 2
    return 1


def apply_actions(ast: QueryAst, actions: Iterable[RepairAction]) -> QueryAst:
    """Apply every distinct action; the input AST is left untouched."""
    unique: List[RepairAction] = []
    for action in actions:
        if action not in unique:
            unique.append(action)
    unique.sort(key=_action_order)
    result = ast
    for action in unique:
        result = action.apply(result)
    return result


__all__ = [
    "ALL_CLAUSES",
    "SwapMainObject",
    "SwapField",
    "FixParentPath",
    "FixSubqueryField",
    "SwapChildRelationship",
    "AddGroupBy",
    "ApplyLimit",
    "StripAliasKeyword",
    "ReplaceLiteral",
    "RewriteSemiJoin",
    "RepairAction",
    "apply_actions",
]
