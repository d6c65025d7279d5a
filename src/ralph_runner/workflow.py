"""Fixed unit sequences for the two workflows and their applicability rules."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Optional

from .models import UNIT_SEQUENCE, Unit


@dataclass(frozen=True)
class UnitContext:
    """Facts the conditional units are decided on."""

    iteration: int
    guardrails_present: bool
    self_improvement_every: int


UnitCondition = Callable[[UnitContext], bool]


def _guardrails_present(ctx: UnitContext) -> bool:
    return ctx.guardrails_present


def _self_improvement_due(ctx: UnitContext) -> bool:
    every = ctx.self_improvement_every
    return every > 0 and ctx.iteration % every == 0


@dataclass(frozen=True)
class WorkflowUnit:
    unit: Unit
    condition: Optional[UnitCondition] = None

    def applies(self, ctx: UnitContext) -> bool:
        return self.condition is None or self.condition(ctx)


@dataclass(frozen=True)
class Workflow:
    name: str
    units: tuple[WorkflowUnit, ...]

    def __contains__(self, unit: object) -> bool:
        return any(item.unit == unit for item in self.units)

    @property
    def first(self) -> Unit:
        return self.units[0].unit

    def first_applicable(self, start: Unit, ctx: UnitContext) -> Optional[Unit]:
        """First unit at or after ``start`` whose condition holds, or None past the end."""
        begin = UNIT_SEQUENCE.index(start)
        for item in self.units:
            if UNIT_SEQUENCE.index(item.unit) >= begin and item.applies(ctx):
                return item.unit
        return None


PLAN_AND_IMPLEMENT = Workflow(
    name="Plan and Implement",
    units=(
        WorkflowUnit(Unit.PLAN),
        WorkflowUnit(Unit.IMPLEMENT),
        WorkflowUnit(Unit.GUARDRAIL, condition=_guardrails_present),
        WorkflowUnit(Unit.CLEANUP),
        WorkflowUnit(Unit.COMMIT),
    ),
)

REVIEW_AND_SELF_IMPROVE = Workflow(
    name="Clean up and Review",
    units=(
        WorkflowUnit(Unit.REFACTOR),
        WorkflowUnit(Unit.SELF_IMPROVEMENT, condition=_self_improvement_due),
    ),
)

WORKFLOWS: tuple[Workflow, ...] = (PLAN_AND_IMPLEMENT, REVIEW_AND_SELF_IMPROVE)


def workflow_for(unit: Unit) -> Workflow:
    for workflow in WORKFLOWS:
        if unit in workflow:
            return workflow
    raise ValueError(f"Unit {unit.value} belongs to no workflow")


def next_unit(unit: Unit) -> Optional[Unit]:
    """The unit after ``unit`` in its own workflow, ignoring conditions."""
    units = [item.unit for item in workflow_for(unit).units]
    position = units.index(unit)
    return units[position + 1] if position + 1 < len(units) else None
