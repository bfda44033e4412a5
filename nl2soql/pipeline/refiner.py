from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Sequence, Tuple

from .config import MAX_REPAIR_PASSES, STALL_LIMIT
from .context import SchemaContext
from .mutations import ApplyLimit, RepairAction, apply_actions
from .soql_ast import QueryAst
from .validators import SoqlValidator, ValidationMessage, errors_of

logger = logging.getLogger(__name__)


class RepairState(str, Enum):
    VALID = "valid"
    REPAIRABLE = "repairable"
    NEEDS_REGENERATION = "needs_regeneration"
    EXHAUSTED = "exhausted"


@dataclass(frozen=True)
class RepairOutcome:
    state: RepairState
    ast: QueryAst
    diagnostics: Tuple[ValidationMessage, ...]
    passes: int = 0
    corrections: Tuple[str, ...] = ()
    events: Tuple[Dict[str, Any], ...] = ()
    reason: str = ""

    @property
    def errors(self) -> List[ValidationMessage]:
        return errors_of(self.diagnostics)


def classify(messages: Sequence[ValidationMessage]) -> RepairState:
    errors = errors_of(messages)
    if not errors:
        return RepairState.VALID
    if all(m.action is not None for m in errors):
        return RepairState.REPAIRABLE
    return RepairState.NEEDS_REGENERATION


def _distinct(actions: Sequence[RepairAction]) -> List[RepairAction]:
    unique: List[RepairAction] = []
    for action in actions:
        if action not in unique:
            unique.append(action)
    return unique


class RepairEngine:
    """Deterministic validate/repair loop over one AST.

    Synchronous and pure: no I/O, so a pass is never interrupted. Error counts
    are non-increasing across accepted passes; a pass that adds errors is
    rolled back. Regeneration is left to the caller.
    """

    def __init__(
        self,
        validator: SoqlValidator,
        *,
        max_passes: int = MAX_REPAIR_PASSES,
        stall_limit: int = STALL_LIMIT,
    ) -> None:
        self.validator = validator
        self.max_passes = max_passes
        self.stall_limit = stall_limit

    def run(self, ast: QueryAst, context: SchemaContext, *, passes_used: int = 0) -> RepairOutcome:
        messages = self.validator.validate(ast, context)
        passes = passes_used
        stalls = 0
        corrections: List[str] = []
        events: List[Dict[str, Any]] = []

        while True:
            state = classify(messages)
            errors = errors_of(messages)
            if state is RepairState.VALID:
                return self._finish_valid(ast, context, messages, passes, corrections, events)
            if state is RepairState.NEEDS_REGENERATION:
                return self._outcome(state, ast, messages, passes, corrections, events, "unrepairable errors")
            if passes >= self.max_passes:
                logger.warning("repair pass budget (%d) spent with %d errors left", self.max_passes, len(errors))
                return self._outcome(
                    RepairState.NEEDS_REGENERATION, ast, messages, passes, corrections, events, "pass budget spent"
                )

            actions = _distinct([m.action for m in errors if m.action is not None])
            candidate = apply_actions(ast, actions)
            passes += 1
            candidate_messages = self.validator.validate(candidate, context)
            after = len(errors_of(candidate_messages))
            events.append(
                {
                    "phase": "repair",
                    "pass": passes,
                    "errors_before": len(errors),
                    "errors_after": after,
                    "actions": [a.describe() for a in actions],
                    "query": candidate.render(),
                }
            )
            if after > len(errors):
                logger.debug("repair pass %d raised errors %d -> %d; rolled back", passes, len(errors), after)
                events[-1]["rolled_back"] = True
                return self._outcome(
                    RepairState.NEEDS_REGENERATION, ast, messages, passes, corrections, events, "repair increased errors"
                )
            stalls = stalls + 1 if after == len(errors) else 0
            corrections.extend(a.describe() for a in actions)
            ast, messages = candidate, candidate_messages
            if stalls >= self.stall_limit and errors_of(messages):
                logger.debug("repair stalled for %d passes", stalls)
                return self._outcome(
                    RepairState.NEEDS_REGENERATION, ast, messages, passes, corrections, events, "repair stalled"
                )

    def _finish_valid(
        self,
        ast: QueryAst,
        context: SchemaContext,
        messages: List[ValidationMessage],
        passes: int,
        corrections: List[str],
        events: List[Dict[str, Any]],
    ) -> RepairOutcome:
        limits = [m for m in messages if not m.is_error and isinstance(m.action, ApplyLimit)]
        if not limits:
            return self._outcome(RepairState.VALID, ast, messages, passes, corrections, events)
        candidate = limits[0].action.apply(ast)
        recheck = self.validator.validate(candidate, context)
        if errors_of(recheck):
            return self._outcome(RepairState.VALID, ast, messages, passes, corrections, events)
        corrections.append(limits[0].action.describe())
        events.append({"phase": "limit", "query": candidate.render()})
        # The governor warning stays in the diagnostics next to the applied correction.
        kept = [m for m in recheck if m not in limits] + limits
        return self._outcome(RepairState.VALID, candidate, kept, passes, corrections, events)

    @staticmethod
    def _outcome(
        state: RepairState,
        ast: QueryAst,
        messages: Sequence[ValidationMessage],
        passes: int,
        corrections: Sequence[str],
        events: Sequence[Dict[str, Any]],
        reason: str = "",
    ) -> RepairOutcome:
        return RepairOutcome(state, ast, tuple(messages), passes, tuple(corrections), tuple(events), reason)


__all__ = ["RepairState", "RepairOutcome", "RepairEngine", "classify"]
