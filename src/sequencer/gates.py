"""Gate evaluation.

A gate is a pure predicate over upstream stage statuses, the trigger context
and run parameters. ``evaluate`` has no side effects, so re-evaluating the
same gate against the same inputs always gives the same answer.
"""

from __future__ import annotations

from collections.abc import Iterator, Mapping

from sequencer.models import (
    TRIGGER_FIELDS,
    AlwaysGate,
    AndGate,
    EqualsGate,
    GateExpression,
    NotEqualsGate,
    NotGate,
    OrGate,
    ParamValue,
    StageStatus,
    StatusIsGate,
    TriggerContext,
)


def _normalize(value: ParamValue | None) -> str | None:
    if value is None:
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def evaluate(
    gate: GateExpression,
    statuses: Mapping[str, StageStatus],
    trigger: TriggerContext,
) -> bool:
    """Evaluate *gate* against stage *statuses* and the *trigger*."""
    if isinstance(gate, AlwaysGate):
        return True
    if isinstance(gate, EqualsGate):
        return _normalize(trigger.lookup(gate.field)) == _normalize(gate.value)
    if isinstance(gate, NotEqualsGate):
        return _normalize(trigger.lookup(gate.field)) != _normalize(gate.value)
    if isinstance(gate, StatusIsGate):
        return statuses.get(gate.stage) in gate.statuses
    if isinstance(gate, AndGate):
        return all(evaluate(g, statuses, trigger) for g in gate.all)
    if isinstance(gate, OrGate):
        return any(evaluate(g, statuses, trigger) for g in gate.any)
    if isinstance(gate, NotGate):
        return not evaluate(gate.expr, statuses, trigger)
    msg = f"Unsupported gate: {gate!r}"
    raise TypeError(msg)


def _walk(gate: GateExpression) -> Iterator[GateExpression]:
    yield gate
    if isinstance(gate, AndGate):
        for child in gate.all:
            yield from _walk(child)
    elif isinstance(gate, OrGate):
        for child in gate.any:
            yield from _walk(child)
    elif isinstance(gate, NotGate):
        yield from _walk(gate.expr)


def referenced_stages(gate: GateExpression) -> set[str]:
    """Stage names a gate reads the status of."""
    return {g.stage for g in _walk(gate) if isinstance(g, StatusIsGate)}


def referenced_fields(gate: GateExpression) -> set[str]:
    """Trigger/param paths a gate compares, e.g. ``trigger.action``."""
    return {
        g.field for g in _walk(gate) if isinstance(g, (EqualsGate, NotEqualsGate))
    }


def field_problem(path: str) -> str | None:
    """Describe why *path* is not an addressable gate field, or None."""
    namespace, _, key = path.partition(".")
    if namespace == "trigger":
        if key not in TRIGGER_FIELDS:
            return f"unknown trigger field {path!r}"
        return None
    if namespace == "params":
        return None if key else f"empty parameter name in {path!r}"
    return f"gate field {path!r} must start with 'trigger.' or 'params.'"


def default_gate(needs: list[str], run_on_failure: bool = False) -> GateExpression:
    """Implicit gate: every need succeeded, or always for failure handlers."""
    if run_on_failure or not needs:
        return AlwaysGate()
    return AndGate(all=[status_is(n, StageStatus.SUCCEEDED) for n in needs])


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------


def always() -> AlwaysGate:
    return AlwaysGate()


def equals(field: str, value: ParamValue) -> EqualsGate:
    return EqualsGate(field=field, value=value)


def not_equals(field: str, value: ParamValue) -> NotEqualsGate:
    return NotEqualsGate(field=field, value=value)


def status_is(stage: str, *statuses: StageStatus | str) -> StatusIsGate:
    return StatusIsGate(stage=stage, statuses=list(statuses))


def all_of(*gates: GateExpression) -> AndGate:
    return AndGate(all=list(gates))


def any_of(*gates: GateExpression) -> OrGate:
    return OrGate(any=list(gates))


def negate(gate: GateExpression) -> NotGate:
    return NotGate(expr=gate)
