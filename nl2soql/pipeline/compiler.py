"""Natural language → SOQL compiler.

Flow:
1) SchemaContextAssembler: pick relevant objects (lexical, vector and graph
   signals), prune fields, ground literal values.
2) Planner → Coder: one completion each; the coder drafts SOQL from the plan
   and the pruned schema.
3) Parse → validate → deterministic repair, bounded; unrepairable drafts go
   back to the coder with the diagnostics as feedback.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Dict, List, Optional, Sequence, Tuple, TypeVar

from .config import COMPLETION_TIMEOUT, DEFAULT_DEADLINE, MAX_REGENERATIONS, MAX_REPAIR_PASSES
from .context import SchemaContext, SchemaContextAssembler, SchemaContextCache, format_schema_for_prompt
from .errors import CapabilityFailure, DeadlineExceeded
from .generator import Coder, Planner, QueryPlan
from .grounding import GroundingService
from .openai_client import CompletionCapability, OpenAICompletion, OpenAIEmbedder, reset_usage_log, usage_totals
from .refiner import RepairEngine, RepairOutcome, RepairState
from .run_logger import RunLogger
from .schema_graph import SchemaGraphClient
from .scorer import EmbeddingCapability, HybridNeighborScorer
from .soql_ast import QueryAst, extract_main_object, tolerant_extract
from .validators import Severity, SoqlValidator, ValidationMessage, check_raw_syntax, errors_of

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CompilationStatus(str, Enum):
    VALID = "valid"
    DEGRADED = "degraded"
    FAILED = "failed"


@dataclass(frozen=True)
class CompilationResult:
    soql: Optional[str]
    plan: Optional[QueryPlan]
    diagnostics: Tuple[ValidationMessage, ...]
    status: CompilationStatus
    repair_passes_used: int = 0
    regenerations_used: int = 0
    corrections: Tuple[str, ...] = ()
    timeline: Tuple[Dict[str, Any], ...] = ()
    tolerant: bool = False

    @property
    def errors(self) -> List[ValidationMessage]:
        return errors_of(self.diagnostics)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "soql": self.soql,
            "status": self.status.value,
            "plan": self.plan.to_dict() if self.plan else None,
            "diagnostics": [m.to_dict() for m in self.diagnostics],
            "repair_passes_used": self.repair_passes_used,
            "regenerations_used": self.regenerations_used,
            "corrections": list(self.corrections),
            "tolerant": self.tolerant,
        }


def _diagnostic(rule: str, message: str) -> ValidationMessage:
    return ValidationMessage(Severity.ERROR, message, rule)


@dataclass
class _Run:
    """Mutable bookkeeping for one compile call."""

    query: str
    timeline: List[Dict[str, Any]] = field(default_factory=list)
    plan: Optional[QueryPlan] = None
    best: Optional[RepairOutcome] = None
    passes: int = 0
    regenerations: int = 0
    corrections: List[str] = field(default_factory=list)

    def record(self, outcome: RepairOutcome) -> None:
        self.passes += outcome.passes
        self.corrections.extend(outcome.corrections)
        self.timeline.extend(dict(e, attempt=self.regenerations) for e in outcome.events)
        if self.best is None or len(outcome.errors) <= len(self.best.errors):
            self.best = outcome

    def result(
        self,
        status: CompilationStatus,
        *,
        soql: Optional[str] = None,
        diagnostics: Sequence[ValidationMessage] = (),
        tolerant: bool = False,
    ) -> CompilationResult:
        self.timeline.append({"phase": "final", "status": status.value, "soql": soql})
        return CompilationResult(
            soql=soql,
            plan=self.plan,
            diagnostics=tuple(diagnostics),
            status=status,
            repair_passes_used=self.passes,
            regenerations_used=self.regenerations,
            corrections=tuple(self.corrections),
            timeline=tuple(self.timeline),
            tolerant=tolerant,
        )

    def degraded(self, extra: Sequence[ValidationMessage] = ()) -> CompilationResult:
        if self.best is None:
            return self.result(CompilationStatus.FAILED, diagnostics=extra)
        return self.result(
            CompilationStatus.DEGRADED,
            soql=self.best.ast.render(),
            diagnostics=list(self.best.diagnostics) + list(extra),
        )


class NL2SOQLPipeline:
    def __init__(
        self,
        graph: SchemaGraphClient,
        completion: CompletionCapability,
        *,
        embedder: Optional[EmbeddingCapability] = None,
        assembler: Optional[SchemaContextAssembler] = None,
        cache: Optional[SchemaContextCache] = None,
        validator: Optional[SoqlValidator] = None,
        max_repair_passes: int = MAX_REPAIR_PASSES,
        max_regenerations: int = MAX_REGENERATIONS,
        deadline: float = DEFAULT_DEADLINE,
        completion_timeout: Optional[float] = COMPLETION_TIMEOUT,
        enable_instance_search: bool = True,
        run_logger: Optional[RunLogger] = None,
    ) -> None:
        self.graph = graph
        if assembler is None:
            scorer = HybridNeighborScorer(graph, embedder)
            grounding = GroundingService(graph, enable_instance_search=enable_instance_search)
            assembler = SchemaContextAssembler(graph, scorer, grounding, cache=cache)
        self.assembler = assembler
        self.planner = Planner(completion)
        self.coder = Coder(completion)
        self.validator = validator or SoqlValidator()
        self.engine = RepairEngine(self.validator, max_passes=max_repair_passes)
        self.max_regenerations = max_regenerations
        self.deadline = deadline
        self.completion_timeout = completion_timeout
        self.run_logger = run_logger

    @classmethod
    def with_openai(cls, graph: SchemaGraphClient, **kwargs: Any) -> "NL2SOQLPipeline":
        kwargs.setdefault("embedder", OpenAIEmbedder())
        return cls(graph, OpenAICompletion(timeout=kwargs.get("completion_timeout")), **kwargs)

    def on_schema_changed(self, tenant: Optional[str] = None) -> None:
        """Drop every cached context for ``tenant`` after its metadata drifted."""
        self.assembler.on_schema_changed(tenant)

    def run(self, query: str, tenant: Optional[str] = None, *, deadline: Optional[float] = None) -> CompilationResult:
        return asyncio.run(self.compile(query, tenant, deadline=deadline))

    async def compile(
        self, query: str, tenant: Optional[str] = None, *, deadline: Optional[float] = None
    ) -> CompilationResult:
        loop = asyncio.get_running_loop()
        expires = loop.time() + (deadline if deadline is not None else self.deadline)
        run = _Run(query)
        reset_usage_log()
        try:
            result = await self._compile(run, tenant, expires)
        except DeadlineExceeded as exc:
            logger.warning("deadline reached while compiling %r: %s", query, exc)
            result = run.degraded([_diagnostic("deadline", str(exc))])
        except CapabilityFailure as exc:
            logger.warning("compilation of %r aborted: %s", query, exc)
            result = run.result(
                CompilationStatus.FAILED,
                diagnostics=list(run.best.diagnostics if run.best else ()) + [_diagnostic("capability", str(exc))],
            )
        self._log_run(run, result)
        return result

    async def _bounded(self, awaitable: Awaitable[T], expires: float, timeout: Optional[float] = None) -> T:
        loop = asyncio.get_running_loop()
        remaining = expires - loop.time()
        if remaining <= 0:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise DeadlineExceeded("deadline exceeded before the next step")
        deadline_bound = timeout is None or remaining <= timeout
        limit = remaining if deadline_bound else timeout
        try:
            return await asyncio.wait_for(awaitable, limit)
        except asyncio.TimeoutError as exc:
            if deadline_bound:
                raise DeadlineExceeded("deadline exceeded waiting on an external call") from exc
            raise CapabilityFailure("completion", f"no response within {timeout:.1f}s") from exc

    async def _compile(self, run: _Run, tenant: Optional[str], expires: float) -> CompilationResult:
        query = run.query
        context = await self._bounded(self.assembler.assemble(query, tenant), expires)
        run.timeline.append(
            {
                "phase": "context",
                "objects": context.object_names(),
                "grounding": [g.hint() for g in context.grounding if g.grounded],
                "degraded": context.degraded,
            }
        )
        if self.run_logger is not None:
            self.run_logger.start(query, format_schema_for_prompt(context), {"tenant": tenant})

        plan, plan_errors = await self._bounded(self.planner.plan(query, context), expires, self.completion_timeout)
        run.plan = plan
        run.timeline.append({"phase": "plan", "plan": plan.to_dict() if plan else None, "errors": plan_errors})
        if plan is None:
            return run.result(CompilationStatus.FAILED, diagnostics=[_diagnostic("plan", e) for e in plan_errors])

        feedback: List[str] = []
        while True:
            candidate = await self._bounded(
                self.coder.draft(query, plan, context, feedback), expires, self.completion_timeout
            )
            ast, parse_errors = QueryAst.parse(candidate.query)
            run.timeline.append(
                {"phase": "draft", "attempt": run.regenerations, "query": candidate.query, "parse_errors": parse_errors}
            )

            if ast is None:
                raw_messages = check_raw_syntax(candidate.query)
                if run.regenerations < self.max_regenerations:
                    feedback = parse_errors + [m.message for m in raw_messages]
                    self._regenerate(run, "draft did not parse")
                    continue
                return await self._tolerant(run, candidate.query, parse_errors, raw_messages, context, tenant, expires)

            context = await self._bounded(self.assembler.hydrate(context, ast, tenant), expires)
            outcome = self.engine.run(ast, context)
            run.record(outcome)
            if outcome.state is RepairState.VALID:
                return run.result(CompilationStatus.VALID, soql=outcome.ast.render(), diagnostics=outcome.diagnostics)
            if run.regenerations >= self.max_regenerations:
                logger.warning(
                    "budgets exhausted for %r with %d outstanding errors", query, len(run.best.errors if run.best else ())
                )
                run.timeline.append({"phase": "exhausted", "state": RepairState.EXHAUSTED.value})
                return run.degraded()
            feedback = [m.message for m in outcome.errors]
            self._regenerate(run, outcome.reason or "unrepairable errors")

    def _regenerate(self, run: _Run, reason: str) -> None:
        run.regenerations += 1
        run.timeline.append({"phase": "regenerate", "attempt": run.regenerations, "reason": reason})
        logger.debug("regenerating draft %d: %s", run.regenerations, reason)

    async def _tolerant(
        self,
        run: _Run,
        text: str,
        parse_errors: List[str],
        raw_messages: List[ValidationMessage],
        context: SchemaContext,
        tenant: Optional[str],
        expires: float,
    ) -> CompilationResult:
        diagnostics = [_diagnostic("parse", e) for e in parse_errors] + raw_messages
        if run.best is not None:
            # A validated AST from an earlier draft beats token extraction.
            return run.degraded(diagnostics)
        raw_object = extract_main_object(text)
        if raw_object and context.get(raw_object) is None and context.is_known(raw_object):
            context = await self._bounded(self.assembler.hydrate(context, QueryAst(main_object=raw_object), tenant), expires)
        ast, errors = tolerant_extract(text, context.get)
        if ast is None:
            return run.result(CompilationStatus.FAILED, diagnostics=diagnostics + [_diagnostic("parse", e) for e in errors])
        logger.warning("draft for %r never parsed; fell back to token extraction", run.query)
        messages = self.validator.validate(ast, context)
        return run.result(
            CompilationStatus.DEGRADED, soql=ast.render(), diagnostics=diagnostics + list(messages), tolerant=True
        )

    def _log_run(self, run: _Run, result: CompilationResult) -> None:
        if self.run_logger is None or self.run_logger.run_dir is None:
            return
        self.run_logger.log_timeline(run.query, list(result.timeline), self.max_regenerations)
        self.run_logger.log_usage(usage_totals())
        self.run_logger.finalize(result.status.value, {"soql": result.soql, "corrections": list(result.corrections)})


__all__ = ["CompilationStatus", "CompilationResult", "NL2SOQLPipeline"]
