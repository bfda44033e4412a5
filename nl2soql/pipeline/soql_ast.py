from __future__ import annotations

import re
from dataclasses import dataclass, replace
from typing import Callable, Iterable, Iterator, List, Optional, Sequence, Tuple, Union

from .lexicon import AGGREGATE_FUNCTIONS, CORE_FIELDS, DATE_LITERALS, SOQL_KEYWORDS, TRANSPARENT_FUNCTIONS
from .schema_graph import SchemaObject
from .utils import strip_string_literals


# --- select items ---------------------------------------------------------


@dataclass(frozen=True)
class FieldRef:
    path: str
    alias: Optional[str] = None
    alias_keyword: bool = False

    @property
    def parts(self) -> List[str]:
        return self.path.split(".")

    def render(self, *, with_alias_keyword: bool = True) -> str:
        return _with_alias(self.path, self.alias, self.alias_keyword and with_alias_keyword)


@dataclass(frozen=True)
class FunctionCall:
    name: str
    args: Tuple[str, ...] = ()
    alias: Optional[str] = None
    alias_keyword: bool = False

    @property
    def is_aggregate(self) -> bool:
        return self.name.lower() in AGGREGATE_FUNCTIONS

    def expression(self) -> str:
        return f"{self.name}({', '.join(self.args)})"

    def render(self, *, with_alias_keyword: bool = True) -> str:
        return _with_alias(self.expression(), self.alias, self.alias_keyword and with_alias_keyword)


@dataclass(frozen=True)
class SubqueryField:
    query: "QueryAst"

    @property
    def relationship(self) -> str:
        return self.query.main_object

    def render(self, **_kwargs) -> str:
        return f"({self.query.render()})"


@dataclass(frozen=True)
class TypeOfBranch:
    object_type: str
    fields: Tuple[str, ...]


@dataclass(frozen=True)
class TypeOfField:
    relationship: str
    branches: Tuple[TypeOfBranch, ...]
    else_fields: Tuple[str, ...] = ()

    def render(self, **_kwargs) -> str:
        parts = [f"TYPEOF {self.relationship}"]
        for branch in self.branches:
            parts.append(f"WHEN {branch.object_type} THEN {', '.join(branch.fields)}")
        if self.else_fields:
            parts.append(f"ELSE {', '.join(self.else_fields)}")
        parts.append("END")
        return " ".join(parts)


SelectItem = Union[FieldRef, FunctionCall, SubqueryField, TypeOfField]


def _with_alias(expr: str, alias: Optional[str], keyword: bool) -> str:
    if not alias:
        return expr
    return f"{expr} AS {alias}" if keyword else f"{expr} {alias}"


# --- filter tree ----------------------------------------------------------


@dataclass(frozen=True)
class Comparison:
    field: str
    operator: str
    value: str

    @property
    def is_bind(self) -> bool:
        return self.value.startswith(":")

    def literals(self) -> List[str]:
        """String literal contents of the right-hand side (one per list element)."""
        return [_unquote(m) for m in re.findall(r"'(?:\\.|[^'\\])*'", self.value)]


@dataclass(frozen=True)
class SemiJoin:
    field: str
    query: "QueryAst"
    negated: bool = False


@dataclass(frozen=True)
class Logical:
    operator: str
    operands: Tuple["Condition", ...]


@dataclass(frozen=True)
class Not:
    operand: "Condition"


Condition = Union[Comparison, SemiJoin, Logical, Not]


@dataclass(frozen=True)
class OrderItem:
    field: str
    direction: str = "ASC"
    nulls: Optional[str] = None

    def render(self) -> str:
        text = f"{self.field} {self.direction}"
        if self.nulls:
            text += f" NULLS {self.nulls}"
        return text


def _unquote(raw: str) -> str:
    return raw[1:-1].replace("\\'", "'").replace("\\\\", "\\")


def iter_leaves(cond: Optional[Condition]) -> Iterator[Union[Comparison, SemiJoin]]:
    if cond is None:
        return
    if isinstance(cond, (Comparison, SemiJoin)):
        yield cond
    elif isinstance(cond, Logical):
        for operand in cond.operands:
            yield from iter_leaves(operand)
    elif isinstance(cond, Not):
        yield from iter_leaves(cond.operand)


def map_leaves(
    cond: Optional[Condition], fn: Callable[[Union[Comparison, SemiJoin]], Condition]
) -> Optional[Condition]:
    if cond is None:
        return None
    if isinstance(cond, (Comparison, SemiJoin)):
        return fn(cond)
    if isinstance(cond, Logical):
        return Logical(cond.operator, tuple(map_leaves(o, fn) for o in cond.operands))  # type: ignore[misc]
    return Not(map_leaves(cond.operand, fn))  # type: ignore[arg-type]


def has_logical_operator(cond: Optional[Condition], operator: str) -> bool:
    if isinstance(cond, Logical):
        return cond.operator == operator or any(has_logical_operator(o, operator) for o in cond.operands)
    if isinstance(cond, Not):
        return has_logical_operator(cond.operand, operator)
    return False


def render_condition(cond: Condition, *, nested: bool = False) -> str:
    if isinstance(cond, Comparison):
        return f"{cond.field} {cond.operator} {cond.value}"
    if isinstance(cond, SemiJoin):
        keyword = "NOT IN" if cond.negated else "IN"
        return f"{cond.field} {keyword} ({cond.query.render()})"
    if isinstance(cond, Logical):
        inner = f" {cond.operator} ".join(render_condition(o, nested=True) for o in cond.operands)
        return f"({inner})" if nested else inner
    return f"NOT ({render_condition(cond.operand)})"


# --- signatures -----------------------------------------------------------


_TRANSPARENT_CALL = re.compile(r"^(\w+)\((.*)\)$")


def normalize_signature(expr: str) -> str:
    """Lowercased, whitespace-free signature with display-only wrappers removed."""
    sig = re.sub(r"\s+", "", expr).lower()
    while True:
        match = _TRANSPARENT_CALL.match(sig)
        if not match or match.group(1) not in TRANSPARENT_FUNCTIONS:
            return sig
        sig = match.group(2).split(",")[0]


def item_signature(item: SelectItem) -> Optional[str]:
    if isinstance(item, FieldRef):
        return normalize_signature(item.path)
    if isinstance(item, FunctionCall):
        return normalize_signature(item.expression())
    return None


# --- query ----------------------------------------------------------------


@dataclass(frozen=True)
class QueryAst:
    main_object: str
    fields: Tuple[SelectItem, ...] = ()
    where: Optional[Condition] = None
    group_by: Tuple[str, ...] = ()
    having: Optional[str] = None
    order_by: Tuple[OrderItem, ...] = ()
    limit: Optional[int] = None
    offset: Optional[int] = None
    scope: Optional[str] = None
    tolerant: bool = False

    @classmethod
    def parse(cls, query: str) -> Tuple[Optional["QueryAst"], List[str]]:
        text = (query or "").strip().rstrip(";").strip()
        if not text:
            return None, ["empty query"]
        tokens, errors = _tokenize(text)
        if errors:
            return None, errors
        parser = _Parser(tokens)
        try:
            ast = parser.parse_query(depth=0)
            parser.expect_end()
        except _ParseError as exc:
            return None, [str(exc)]
        return ast, []

    def render(self) -> str:
        parts = ["SELECT " + ", ".join(item.render() for item in self.fields), f"FROM {self.main_object}"]
        if self.scope:
            parts.append(f"USING SCOPE {self.scope}")
        if self.where is not None:
            parts.append("WHERE " + render_condition(self.where))
        if self.group_by:
            parts.append("GROUP BY " + ", ".join(self.group_by))
        if self.having:
            parts.append(f"HAVING {self.having}")
        if self.order_by:
            parts.append("ORDER BY " + ", ".join(o.render() for o in self.order_by))
        if self.limit is not None:
            parts.append(f"LIMIT {self.limit}")
        if self.offset is not None:
            parts.append(f"OFFSET {self.offset}")
        return " ".join(parts)

    def with_changes(self, **changes) -> "QueryAst":
        return replace(self, **changes)

    def aggregates(self) -> List[FunctionCall]:
        return [f for f in self.fields if isinstance(f, FunctionCall) and f.is_aggregate]

    def has_aggregates(self) -> bool:
        return bool(self.aggregates())

    def subqueries(self) -> List[SubqueryField]:
        return [f for f in self.fields if isinstance(f, SubqueryField)]

    def typeof_fields(self) -> List[TypeOfField]:
        return [f for f in self.fields if isinstance(f, TypeOfField)]

    def comparisons(self) -> List[Comparison]:
        return [leaf for leaf in iter_leaves(self.where) if isinstance(leaf, Comparison)]

    def semi_joins(self) -> List[SemiJoin]:
        return [leaf for leaf in iter_leaves(self.where) if isinstance(leaf, SemiJoin)]

    def field_references(self) -> List[Tuple[str, str]]:
        """(clause, path) for every field path this query (not its sub-queries) touches."""
        refs: List[Tuple[str, str]] = []
        for item in self.fields:
            if isinstance(item, FieldRef):
                refs.append(("SELECT", item.path))
            elif isinstance(item, FunctionCall):
                refs.extend(("SELECT", p) for p in _paths_in_args(item.args))
        for leaf in iter_leaves(self.where):
            refs.extend(("WHERE", p) for p in _paths_in_expr(leaf.field))
        for expr in self.group_by:
            refs.extend(("GROUP BY", p) for p in _paths_in_expr(expr))
        for order in self.order_by:
            refs.extend(("ORDER BY", p) for p in _paths_in_expr(order.field))
        return refs


def _paths_in_args(args: Sequence[str]) -> List[str]:
    paths: List[str] = []
    for arg in args:
        paths.extend(_paths_in_expr(arg))
    return paths


def _paths_in_expr(expr: str) -> List[str]:
    """Field paths inside an expression like ``CALENDAR_YEAR(CreatedDate)`` or ``Account.Name``."""
    paths: List[str] = []
    for match in re.finditer(r"([A-Za-z_][A-Za-z0-9_]*(?:\.[A-Za-z_][A-Za-z0-9_]*)*)(\s*\()?", strip_string_literals(expr)):
        if match.group(2):
            continue
        token = match.group(1)
        if token.upper() in SOQL_KEYWORDS:
            continue
        paths.append(token)
    return paths


# --- tokenizer ------------------------------------------------------------


@dataclass(frozen=True)
class _Token:
    kind: str
    text: str

    @property
    def upper(self) -> str:
        return self.text.upper()


_TOKEN_PATTERN = re.compile(
    r"""
    (?P<ws>\s+)
    | (?P<string>'(?:\\.|[^'\\])*')
    | (?P<datetime>\d{4}-\d{2}-\d{2}(?:T\d{2}:\d{2}:\d{2}(?:\.\d+)?(?:Z|[+-]\d{2}:\d{2})?)?)
    | (?P<number>-?\d+(?:\.\d+)?)
    | (?P<bind>:[A-Za-z_][A-Za-z0-9_]*)
    | (?P<ident>[A-Za-z_][A-Za-z0-9_]*(?:\.[A-Za-z_][A-Za-z0-9_]*)*(?::\d+)?)
    | (?P<op><=|>=|!=|<>|=|<|>)
    | (?P<punct>[(),])
    """,
    re.VERBOSE,
)

_CLAUSE_KEYWORDS = frozenset(
    {"FROM", "WHERE", "GROUP", "HAVING", "ORDER", "LIMIT", "OFFSET", "USING", "WITH", "FOR", "UNION", "EXCEPT", "INTERSECT"}
)


def _tokenize(text: str) -> Tuple[List[_Token], List[str]]:
    tokens: List[_Token] = []
    pos = 0
    while pos < len(text):
        match = _TOKEN_PATTERN.match(text, pos)
        if not match:
            return [], [f"unexpected character {text[pos]!r} at position {pos}"]
        kind = match.lastgroup or ""
        if kind != "ws":
            tokens.append(_Token(kind, match.group(0)))
        pos = match.end()
    return tokens, []


class _ParseError(Exception):
    pass


class _Parser:
    def __init__(self, tokens: List[_Token]) -> None:
        self.tokens = tokens
        self.pos = 0

    # token helpers
    def peek(self, offset: int = 0) -> Optional[_Token]:
        idx = self.pos + offset
        return self.tokens[idx] if idx < len(self.tokens) else None

    def at(self, *words: str) -> bool:
        tok = self.peek()
        return tok is not None and tok.upper in words

    def at_punct(self, char: str) -> bool:
        tok = self.peek()
        return tok is not None and tok.kind == "punct" and tok.text == char

    def advance(self) -> _Token:
        tok = self.peek()
        if tok is None:
            raise _ParseError("unexpected end of query")
        self.pos += 1
        return tok

    def expect_word(self, word: str) -> None:
        tok = self.advance()
        if tok.upper != word:
            raise _ParseError(f"expected {word} but found '{tok.text}'")

    def expect_punct(self, char: str) -> None:
        tok = self.advance()
        if tok.kind != "punct" or tok.text != char:
            raise _ParseError(f"expected '{char}' but found '{tok.text}'")

    def expect_ident(self, what: str) -> str:
        tok = self.advance()
        if tok.kind != "ident":
            raise _ParseError(f"expected {what} but found '{tok.text}'")
        return tok.text

    def expect_end(self) -> None:
        tok = self.peek()
        if tok is not None:
            if tok.upper in {"UNION", "EXCEPT", "INTERSECT"}:
                raise _ParseError(f"{tok.upper} is not supported in SOQL")
            raise _ParseError(f"unexpected token '{tok.text}' after end of query")

    # grammar
    def parse_query(self, depth: int) -> QueryAst:
        self.expect_word("SELECT")
        fields = self.parse_select_list(depth)
        self.expect_word("FROM")
        main_object = self.expect_ident("object name")
        if "." in main_object:
            raise _ParseError(f"invalid object name '{main_object}'")
        scope = None
        if self.at("USING"):
            self.advance()
            self.expect_word("SCOPE")
            scope = self.expect_ident("scope name")
        where = None
        if self.at("WHERE"):
            self.advance()
            where = self.parse_or(depth)
        if self.at("WITH"):
            raise _ParseError("WITH clauses are not supported")
        group_by: Tuple[str, ...] = ()
        if self.at("GROUP"):
            self.advance()
            self.expect_word("BY")
            if self.at("ROLLUP", "CUBE"):
                raise _ParseError("GROUP BY ROLLUP/CUBE is not supported")
            group_by = tuple(self.parse_expression_list())
        having = None
        if self.at("HAVING"):
            self.advance()
            having = self.parse_raw_until({"ORDER", "LIMIT", "OFFSET", "FOR"})
        order_by: Tuple[OrderItem, ...] = ()
        if self.at("ORDER"):
            self.advance()
            self.expect_word("BY")
            order_by = tuple(self.parse_order_list())
        limit = self.parse_int_clause("LIMIT")
        offset = self.parse_int_clause("OFFSET")
        if self.at("FOR"):
            raise _ParseError("FOR VIEW/REFERENCE/UPDATE is not supported")
        return QueryAst(
            main_object=main_object,
            fields=tuple(fields),
            where=where,
            group_by=group_by,
            having=having,
            order_by=order_by,
            limit=limit,
            offset=offset,
            scope=scope,
        )

    def parse_int_clause(self, word: str) -> Optional[int]:
        if not self.at(word):
            return None
        self.advance()
        tok = self.advance()
        if tok.kind != "number" or not tok.text.isdigit():
            raise _ParseError(f"{word} expects a non-negative integer but found '{tok.text}'")
        return int(tok.text)

    def parse_select_list(self, depth: int) -> List[SelectItem]:
        items: List[SelectItem] = [self.parse_select_item(depth)]
        while self.at_punct(","):
            self.advance()
            items.append(self.parse_select_item(depth))
        tok = self.peek()
        if tok is not None and tok.upper != "FROM":
            raise _ParseError(f"expected ',' or FROM but found '{tok.text}'")
        return items

    def parse_select_item(self, depth: int) -> SelectItem:
        if self.at_punct("("):
            if depth > 0:
                raise _ParseError("sub-queries can only be nested one level deep")
            self.advance()
            sub = self.parse_query(depth + 1)
            self.expect_punct(")")
            return SubqueryField(sub)
        if self.at("TYPEOF"):
            return self.parse_typeof()
        name = self.expect_ident("field")
        if name.upper() in _CLAUSE_KEYWORDS:
            raise _ParseError(f"expected a field but found '{name}'")
        if self.at_punct("("):
            args = self.parse_call_args()
            alias, keyword = self.parse_alias()
            return FunctionCall(name=name, args=tuple(args), alias=alias, alias_keyword=keyword)
        alias, keyword = self.parse_alias()
        return FieldRef(path=name, alias=alias, alias_keyword=keyword)

    def parse_alias(self) -> Tuple[Optional[str], bool]:
        if self.at("AS"):
            self.advance()
            return self.expect_ident("alias"), True
        tok = self.peek()
        if tok is not None and tok.kind == "ident" and tok.upper not in _CLAUSE_KEYWORDS and "." not in tok.text:
            # "Id Name FROM ..." is a missing comma, not an alias, unless it follows a function call.
            if self.tokens[self.pos - 1].text == ")":
                self.advance()
                return tok.text, False
            raise _ParseError(f"expected ',' before '{tok.text}'")
        return None, False

    def parse_call_args(self) -> List[str]:
        self.expect_punct("(")
        args: List[str] = []
        current: List[_Token] = []
        depth = 0
        while True:
            tok = self.advance()
            if tok.kind == "punct" and tok.text == "(":
                depth += 1
            elif tok.kind == "punct" and tok.text == ")":
                if depth == 0:
                    break
                depth -= 1
            elif tok.kind == "punct" and tok.text == "," and depth == 0:
                args.append(_join_tokens(current))
                current = []
                continue
            current.append(tok)
        if current:
            args.append(_join_tokens(current))
        return args

    def parse_typeof(self) -> TypeOfField:
        self.expect_word("TYPEOF")
        relationship = self.expect_ident("relationship")
        branches: List[TypeOfBranch] = []
        else_fields: Tuple[str, ...] = ()
        while self.at("WHEN"):
            self.advance()
            object_type = self.expect_ident("object type")
            self.expect_word("THEN")
            branches.append(TypeOfBranch(object_type, tuple(self.parse_plain_fields())))
        if self.at("ELSE"):
            self.advance()
            else_fields = tuple(self.parse_plain_fields())
        self.expect_word("END")
        if not branches:
            raise _ParseError(f"TYPEOF {relationship} needs at least one WHEN branch")
        return TypeOfField(relationship, tuple(branches), else_fields)

    def parse_plain_fields(self) -> List[str]:
        fields = [self.expect_ident("field")]
        while self.at_punct(","):
            self.advance()
            fields.append(self.expect_ident("field"))
        return fields

    def parse_expression(self) -> str:
        name = self.expect_ident("field")
        if self.at_punct("("):
            return f"{name}({', '.join(self.parse_call_args())})"
        return name

    def parse_expression_list(self) -> List[str]:
        exprs = [self.parse_expression()]
        while self.at_punct(","):
            self.advance()
            exprs.append(self.parse_expression())
        return exprs

    def parse_order_list(self) -> List[OrderItem]:
        items: List[OrderItem] = []
        while True:
            expr = self.parse_expression()
            direction = "ASC"
            nulls = None
            if self.at("ASC", "DESC"):
                direction = self.advance().upper
            if self.at("NULLS"):
                self.advance()
                if not self.at("FIRST", "LAST"):
                    raise _ParseError("NULLS must be followed by FIRST or LAST")
                nulls = self.advance().upper
            items.append(OrderItem(expr, direction, nulls))
            if not self.at_punct(","):
                return items
            self.advance()

    def parse_raw_until(self, stop_words: Iterable[str]) -> str:
        stops = set(stop_words)
        collected: List[_Token] = []
        depth = 0
        while True:
            tok = self.peek()
            if tok is None:
                break
            if depth == 0 and (tok.upper in stops or (tok.kind == "punct" and tok.text == ")")):
                break
            if tok.kind == "punct" and tok.text == "(":
                depth += 1
            elif tok.kind == "punct" and tok.text == ")":
                depth -= 1
            collected.append(self.advance())
        if not collected:
            raise _ParseError("empty HAVING clause")
        return _join_tokens(collected)

    # conditions
    def parse_or(self, depth: int) -> Condition:
        operands = [self.parse_and(depth)]
        while self.at("OR"):
            self.advance()
            operands.append(self.parse_and(depth))
        return operands[0] if len(operands) == 1 else Logical("OR", tuple(operands))

    def parse_and(self, depth: int) -> Condition:
        operands = [self.parse_not(depth)]
        while self.at("AND"):
            self.advance()
            operands.append(self.parse_not(depth))
        return operands[0] if len(operands) == 1 else Logical("AND", tuple(operands))

    def parse_not(self, depth: int) -> Condition:
        if self.at("NOT"):
            self.advance()
            return Not(self.parse_not(depth))
        return self.parse_primary(depth)

    def parse_primary(self, depth: int) -> Condition:
        if self.at_punct("("):
            nxt = self.peek(1)
            if nxt is not None and nxt.upper == "SELECT":
                raise _ParseError("sub-queries cannot be used as boolean conditions; use Id IN (SELECT ...)")
            self.advance()
            cond = self.parse_or(depth)
            self.expect_punct(")")
            return cond
        if self.at("EXISTS"):
            raise _ParseError("EXISTS is not supported; use Id IN (SELECT ...)")
        field = self.parse_expression()
        tok = self.advance()
        if tok.kind == "op":
            return Comparison(field, tok.text, self.parse_value())
        word = tok.upper
        if word == "LIKE":
            return Comparison(field, "LIKE", self.parse_value())
        if word in {"IN", "NOT"}:
            negated = word == "NOT"
            if negated:
                self.expect_word("IN")
            self.expect_punct("(")
            if self.at("SELECT"):
                if depth > 0:
                    raise _ParseError("semi-joins cannot be nested inside other sub-queries")
                sub = self.parse_query(depth + 1)
                self.expect_punct(")")
                return SemiJoin(field, sub, negated)
            values = self.parse_value_list()
            return Comparison(field, "NOT IN" if negated else "IN", f"({', '.join(values)})")
        if word in {"INCLUDES", "EXCLUDES"}:
            self.expect_punct("(")
            values = self.parse_value_list()
            return Comparison(field, word, f"({', '.join(values)})")
        if word == "IS":
            raise _ParseError("IS NULL / IS NOT EMPTY are not supported; compare with = null or use a semi-join")
        raise _ParseError(f"expected an operator after '{field}' but found '{tok.text}'")

    def parse_value_list(self) -> List[str]:
        values = [self.parse_value()]
        while self.at_punct(","):
            self.advance()
            values.append(self.parse_value())
        self.expect_punct(")")
        return values

    def parse_value(self) -> str:
        tok = self.advance()
        if tok.kind in {"string", "number", "datetime", "bind"}:
            return tok.text
        if tok.kind == "ident":
            base = tok.upper.split(":")[0]
            if tok.upper in {"TRUE", "FALSE", "NULL"}:
                return tok.text.lower() if tok.upper == "NULL" else tok.text.upper()
            if base in DATE_LITERALS or base.startswith(("LAST_N_", "NEXT_N_", "N_")):
                return tok.text.upper()
            raise _ParseError(f"unquoted literal '{tok.text}'; string values must be in single quotes")
        raise _ParseError(f"expected a value but found '{tok.text}'")


def _join_tokens(tokens: Sequence[_Token]) -> str:
    out: List[str] = []
    prev: Optional[_Token] = None
    for tok in tokens:
        if prev is None or tok.text in {")", ","} or prev.text == "(":
            out.append(tok.text)
        elif tok.text == "(" and prev.kind == "ident":
            out.append(tok.text)
        else:
            out.append(" " + tok.text)
        prev = tok
    return "".join(out)


# --- tolerant extraction --------------------------------------------------


_MAIN_OBJECT = re.compile(r"\bFROM\s+([a-zA-Z][a-zA-Z0-9_]*)", re.IGNORECASE)
_LOOSE_TOKEN = re.compile(r"\b[a-zA-Z][a-zA-Z0-9_]*(?:\.[a-zA-Z0-9_]+)?\b")


def extract_main_object(text: str) -> Optional[str]:
    match = _MAIN_OBJECT.search(text or "")
    return match.group(1) if match else None


def extract_columns_loose(text: str, valid_fields: Iterable[str]) -> List[str]:
    """Field names mentioned in possibly malformed query text, in order of appearance."""
    by_lower = {f.lower(): f for f in valid_fields}
    if not text or not by_lower:
        return []
    found: List[str] = []
    for token in _LOOSE_TOKEN.findall(strip_string_literals(text)):
        if token.upper() in SOQL_KEYWORDS:
            continue
        name = by_lower.get(token.split(".")[-1].lower())
        if name and name not in found:
            found.append(name)
    return found


def tolerant_extract(
    text: str, resolve: Callable[[str], Optional[SchemaObject]]
) -> Tuple[Optional[QueryAst], List[str]]:
    """Degraded projection-only query built from tokens; ``None`` when no main object resolves."""
    raw_object = extract_main_object(text)
    if not raw_object:
        return None, ["no FROM <object> clause found in draft"]
    obj = resolve(raw_object)
    if obj is None:
        return None, [f'Object "{raw_object}" not found in the metadata graph']
    names = obj.field_names()
    fields = extract_columns_loose(text, names)
    for core in CORE_FIELDS:
        actual = obj.get_field(core)
        if actual and actual.api_name not in fields:
            fields.append(actual.api_name)
    if not fields:
        fields = ["Id"]
    ast = QueryAst(main_object=obj.api_name, fields=tuple(FieldRef(f) for f in fields), tolerant=True)
    return ast, []


__all__ = [
    "FieldRef",
    "FunctionCall",
    "SubqueryField",
    "TypeOfBranch",
    "TypeOfField",
    "SelectItem",
    "Comparison",
    "SemiJoin",
    "Logical",
    "Not",
    "Condition",
    "OrderItem",
    "QueryAst",
    "iter_leaves",
    "map_leaves",
    "has_logical_operator",
    "render_condition",
    "normalize_signature",
    "item_signature",
    "extract_main_object",
    "extract_columns_loose",
    "tolerant_extract",
]
