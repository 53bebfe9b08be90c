from __future__ import annotations

import pytest

from agencydesk.pipeline.errors import InvalidTransition
from agencydesk.pipeline.stages import (
    PIPELINE_MACHINE,
    STAGE_ORDER,
    STRATEGY_MACHINE,
    LinearBranchMachine,
    Stage,
    StrategyStatus,
    Transition,
)


LINEAR = ["prospecting", "qualification", "proposal", "negotiation"]


def test_stage_order_matches_board_columns() -> None:
    assert STAGE_ORDER == (
        "prospecting",
        "qualification",
        "proposal",
        "negotiation",
        "closed_won",
        "closed_lost",
    )
    assert PIPELINE_MACHINE.initial == Stage.PROSPECTING.value


@pytest.mark.parametrize("index", range(len(LINEAR) - 1))
def test_forward_then_backward_returns_to_start(index: int) -> None:
    stage = LINEAR[index]
    forward = PIPELINE_MACHINE.resolve(stage, Transition.FORWARD)
    assert forward.to_stage == LINEAR[index + 1]

    backward = PIPELINE_MACHINE.resolve(forward.to_stage, Transition.BACKWARD)
    assert backward.to_stage == stage


def test_prospecting_cannot_go_backward() -> None:
    with pytest.raises(InvalidTransition) as exc_info:
        PIPELINE_MACHINE.resolve("prospecting", "backward")

    assert exc_info.value.current_stage == "prospecting"
    assert exc_info.value.allowed == ["forward"]


def test_negotiation_forward_is_not_a_close() -> None:
    with pytest.raises(InvalidTransition):
        PIPELINE_MACHINE.resolve("negotiation", "forward")


@pytest.mark.parametrize("stage", ["prospecting", "qualification", "proposal"])
@pytest.mark.parametrize("verb", ["won", "lost"])
def test_close_is_only_allowed_from_negotiation(stage: str, verb: str) -> None:
    with pytest.raises(InvalidTransition):
        PIPELINE_MACHINE.resolve(stage, verb)


def test_close_and_reopen_round_trip() -> None:
    won = PIPELINE_MACHINE.resolve("negotiation", "won")
    assert won.to_stage == "closed_won"
    assert PIPELINE_MACHINE.resolve(won.to_stage, "reopen").to_stage == "negotiation"

    lost = PIPELINE_MACHINE.resolve("negotiation", "lost")
    assert lost.to_stage == "closed_lost"
    assert PIPELINE_MACHINE.resolve(lost.to_stage, "reopen").to_stage == "negotiation"


@pytest.mark.parametrize("stage", ["closed_won", "closed_lost"])
@pytest.mark.parametrize("verb", ["forward", "backward", "won", "lost"])
def test_closed_stages_only_reopen(stage: str, verb: str) -> None:
    assert PIPELINE_MACHINE.allowed(stage) == ["reopen"]
    with pytest.raises(InvalidTransition):
        PIPELINE_MACHINE.resolve(stage, verb)


@pytest.mark.parametrize("stage", LINEAR)
def test_open_stages_cannot_reopen(stage: str) -> None:
    with pytest.raises(InvalidTransition):
        PIPELINE_MACHINE.resolve(stage, "reopen")


def test_resolve_does_not_depend_on_previous_calls() -> None:
    first = PIPELINE_MACHINE.resolve("proposal", "forward")
    PIPELINE_MACHINE.resolve("qualification", "backward")
    second = PIPELINE_MACHINE.resolve("proposal", "forward")
    assert first == second


def test_unknown_stage_has_no_transitions() -> None:
    assert PIPELINE_MACHINE.allowed("archived") == []
    assert not PIPELINE_MACHINE.is_stage("archived")
    with pytest.raises(InvalidTransition) as exc_info:
        PIPELINE_MACHINE.resolve("archived", "forward")
    assert exc_info.value.allowed == []


def test_available_transitions_per_stage() -> None:
    assert PIPELINE_MACHINE.allowed("qualification") == ["forward", "backward"]
    assert PIPELINE_MACHINE.allowed("negotiation") == ["backward", "won", "lost"]


def test_strategy_machine_flow() -> None:
    assert STRATEGY_MACHINE.stages == ("created", "under_review", "approved", "rejected", "executing")
    assert STRATEGY_MACHINE.initial == StrategyStatus.CREATED.value

    assert STRATEGY_MACHINE.resolve("created", "forward").to_stage == "under_review"
    assert STRATEGY_MACHINE.resolve("under_review", "backward").to_stage == "created"
    assert STRATEGY_MACHINE.resolve("under_review", "approve").to_stage == "approved"
    assert STRATEGY_MACHINE.resolve("under_review", "reject").to_stage == "rejected"
    assert STRATEGY_MACHINE.resolve("approved", "forward").to_stage == "executing"
    assert STRATEGY_MACHINE.resolve("executing", "backward").to_stage == "approved"
    assert STRATEGY_MACHINE.resolve("approved", "reopen").to_stage == "under_review"
    assert STRATEGY_MACHINE.resolve("rejected", "reopen").to_stage == "under_review"


@pytest.mark.parametrize(
    ("stage", "verb"),
    [
        ("created", "approve"),
        ("created", "backward"),
        ("rejected", "forward"),
        ("executing", "forward"),
        ("executing", "reopen"),
        ("under_review", "forward"),
    ],
)
def test_strategy_machine_rejects_illegal_moves(stage: str, verb: str) -> None:
    with pytest.raises(InvalidTransition):
        STRATEGY_MACHINE.resolve(stage, verb)


def test_machine_rejects_overlapping_stage_names() -> None:
    with pytest.raises(ValueError):
        LinearBranchMachine("broken", linear=("a", "b"), branches={"done": "a"})

    with pytest.raises(ValueError):
        LinearBranchMachine("broken", linear=("a", "b"), branches={"done": "c"}, continuations={"x": "y"})
