"""Stage machines for opportunities and AI-strategy reviews.

Both workflows share one shape: a linear run of stages walked one step at a
time with ``forward``/``backward``, ending at a branch point from which named
verbs jump to branch targets. A branch target can only ``reopen`` back to the
branch point, optionally after stepping ``forward`` into a continuation stage.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum

from agencydesk.pipeline.errors import InvalidTransition


FORWARD = "forward"
BACKWARD = "backward"
REOPEN = "reopen"


class Stage(str, Enum):
    PROSPECTING = "prospecting"
    QUALIFICATION = "qualification"
    PROPOSAL = "proposal"
    NEGOTIATION = "negotiation"
    CLOSED_WON = "closed_won"
    CLOSED_LOST = "closed_lost"


class Transition(str, Enum):
    FORWARD = "forward"
    BACKWARD = "backward"
    WON = "won"
    LOST = "lost"
    REOPEN = "reopen"


class StrategyStatus(str, Enum):
    CREATED = "created"
    UNDER_REVIEW = "under_review"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXECUTING = "executing"


class StrategyTransition(str, Enum):
    FORWARD = "forward"
    BACKWARD = "backward"
    APPROVE = "approve"
    REJECT = "reject"
    REOPEN = "reopen"


def _value(item: str | Enum) -> str:
    return item.value if isinstance(item, Enum) else str(item)


@dataclass(frozen=True)
class StageChange:
    from_stage: str
    to_stage: str
    transition: str


class LinearBranchMachine:
    def __init__(
        self,
        name: str,
        linear: tuple[str, ...],
        branches: Mapping[str, str],
        continuations: Mapping[str, str] | None = None,
    ) -> None:
        if not linear:
            raise ValueError("a stage machine needs at least one linear stage")
        continuations = dict(continuations or {})
        if set(branches.values()) & set(linear):
            raise ValueError("branch targets must not repeat linear stages")
        if not set(continuations).issubset(branches.values()):
            raise ValueError("continuations must start from a branch target")

        self.name = name
        self.linear = tuple(linear)
        self.branch_point = self.linear[-1]
        self.branches = dict(branches)
        self.continuations = continuations
        self.stages: tuple[str, ...] = self.linear + tuple(self.branches.values()) + tuple(continuations.values())
        if len(set(self.stages)) != len(self.stages):
            raise ValueError("stage names must be unique")
        self._moves = self._build_moves()

    @property
    def initial(self) -> str:
        return self.linear[0]

    def _build_moves(self) -> dict[str, dict[str, str]]:
        moves: dict[str, dict[str, str]] = {stage: {} for stage in self.stages}
        for index, stage in enumerate(self.linear):
            if index + 1 < len(self.linear):
                moves[stage][FORWARD] = self.linear[index + 1]
            if index > 0:
                moves[stage][BACKWARD] = self.linear[index - 1]
        moves[self.branch_point].update(self.branches)

        for target in self.branches.values():
            moves[target][REOPEN] = self.branch_point
            if target in self.continuations:
                moves[target][FORWARD] = self.continuations[target]
        for parent, child in self.continuations.items():
            moves[child][BACKWARD] = parent
        return moves

    def is_stage(self, stage: str | Enum) -> bool:
        return _value(stage) in self._moves

    def allowed(self, stage: str | Enum) -> list[str]:
        return list(self._moves.get(_value(stage), {}))

    def resolve(self, current: str | Enum, transition: str | Enum) -> StageChange:
        """Compute the target of ``transition`` from ``current`` or raise ``InvalidTransition``."""
        current_value = _value(current)
        verb = _value(transition)
        target = self._moves.get(current_value, {}).get(verb)
        if target is None:
            raise InvalidTransition(current_value, verb, self.allowed(current_value))
        return StageChange(from_stage=current_value, to_stage=target, transition=verb)


PIPELINE_MACHINE = LinearBranchMachine(
    "pipeline",
    linear=(
        Stage.PROSPECTING.value,
        Stage.QUALIFICATION.value,
        Stage.PROPOSAL.value,
        Stage.NEGOTIATION.value,
    ),
    branches={
        Transition.WON.value: Stage.CLOSED_WON.value,
        Transition.LOST.value: Stage.CLOSED_LOST.value,
    },
)

STRATEGY_MACHINE = LinearBranchMachine(
    "strategy",
    linear=(StrategyStatus.CREATED.value, StrategyStatus.UNDER_REVIEW.value),
    branches={
        StrategyTransition.APPROVE.value: StrategyStatus.APPROVED.value,
        StrategyTransition.REJECT.value: StrategyStatus.REJECTED.value,
    },
    continuations={StrategyStatus.APPROVED.value: StrategyStatus.EXECUTING.value},
)

STAGE_ORDER: tuple[str, ...] = PIPELINE_MACHINE.stages
TERMINAL_STAGES = frozenset({Stage.CLOSED_WON.value, Stage.CLOSED_LOST.value})
