# tests/test_context.py
"""Unit tests for dae_core.context.

Covers:
- Legal and illegal phase transitions (non-ALGEBRAIC phases only from ALGEBRAIC)
- Restoration of phase and time by exit_phase / phase_scope on every exit path
- Nested Jacobian counter behavior
- Error-stage override and restoration
"""

from __future__ import annotations

import pytest

from dae_core.context import ErrorStage, EvaluationContext, EvaluationPhase
from dae_core.errors import ContextError

# -------------------------------------------------------------------
# Phase transitions
# -------------------------------------------------------------------


def test_new_context_is_algebraic() -> None:
    """A fresh context rests in ALGEBRAIC with no error stage."""
    ctx = EvaluationContext()
    assert ctx.is_algebraic
    assert ctx.phase is EvaluationPhase.ALGEBRAIC
    assert ctx.error_stage is ErrorStage.NONE
    assert ctx.jacobian_evals == 0


def test_enter_non_algebraic_from_non_algebraic_raises() -> None:
    """Entering EVENT_SEARCH while in ODE is illegal."""
    ctx = EvaluationContext()
    ctx.enter_phase(EvaluationPhase.ODE)
    with pytest.raises(ContextError, match="EVENT_SEARCH"):
        ctx.enter_phase(EvaluationPhase.EVENT_SEARCH)
    assert ctx.phase is EvaluationPhase.ODE


def test_exit_phase_restores_previous_phase_and_time() -> None:
    """exit_phase returns to the phase and time recorded at entry."""
    ctx = EvaluationContext()
    ctx.time = 0.25
    handle = ctx.enter_phase(EvaluationPhase.ODE, time=1.5)
    assert ctx.phase is EvaluationPhase.ODE
    assert ctx.time == 1.5

    ctx.exit_phase(handle)
    assert ctx.phase is EvaluationPhase.ALGEBRAIC
    assert ctx.time == 0.25


def test_algebraic_can_be_entered_from_any_phase() -> None:
    """Returning to ALGEBRAIC is always allowed and is undone by exit_phase."""
    ctx = EvaluationContext()
    outer = ctx.enter_phase(EvaluationPhase.JACOBIAN)
    inner = ctx.enter_phase(EvaluationPhase.ALGEBRAIC)
    assert ctx.is_algebraic

    ctx.exit_phase(inner)
    assert ctx.phase is EvaluationPhase.JACOBIAN
    ctx.exit_phase(outer)
    assert ctx.is_algebraic


def test_exit_with_stale_handle_raises() -> None:
    """A handle only closes the phase it opened."""
    ctx = EvaluationContext()
    handle = ctx.enter_phase(EvaluationPhase.ODE)
    ctx.exit_phase(handle)
    with pytest.raises(ContextError):
        ctx.exit_phase(handle)


def test_phase_scope_restores_on_exception() -> None:
    """phase_scope restores the phase even when the body raises."""
    ctx = EvaluationContext()
    with pytest.raises(RuntimeError, match="boom"):
        with ctx.phase_scope(EvaluationPhase.EVENT_SEARCH, time=2.0):
            assert ctx.phase is EvaluationPhase.EVENT_SEARCH
            raise RuntimeError("boom")
    assert ctx.is_algebraic
    assert ctx.time is None


# -------------------------------------------------------------------
# Jacobian counter
# -------------------------------------------------------------------


def test_bump_counter_is_noop_outside_jacobian() -> None:
    """The nested counter only moves while in JACOBIAN."""
    ctx = EvaluationContext()
    ctx.bump_jacobian_counter()
    with ctx.phase_scope(EvaluationPhase.ODE):
        ctx.bump_jacobian_counter()
    assert ctx.jacobian_evals == 0


def test_entering_jacobian_resets_counter() -> None:
    """Each JACOBIAN entry starts counting from zero."""
    ctx = EvaluationContext()
    with ctx.phase_scope(EvaluationPhase.JACOBIAN):
        for _ in range(3):
            ctx.bump_jacobian_counter()
        assert ctx.jacobian_evals == 3
    assert ctx.jacobian_evals == 3

    with ctx.phase_scope(EvaluationPhase.JACOBIAN):
        assert ctx.jacobian_evals == 0


# -------------------------------------------------------------------
# Error stage
# -------------------------------------------------------------------


def test_stage_scope_yields_saved_stage_and_restores() -> None:
    """stage_scope overrides the error stage and restores it on exit."""
    ctx = EvaluationContext()
    with ctx.stage_scope(ErrorStage.INTEGRATOR) as saved:
        assert saved is ErrorStage.NONE
        assert ctx.error_stage is ErrorStage.INTEGRATOR
        with ctx.stage_scope(ErrorStage.EVENT_SEARCH) as inner_saved:
            assert inner_saved is ErrorStage.INTEGRATOR
        assert ctx.error_stage is ErrorStage.INTEGRATOR
    assert ctx.error_stage is ErrorStage.NONE


def test_repr_names_phase_and_stage() -> None:
    """repr shows the phase and error stage by name."""
    ctx = EvaluationContext()
    text = repr(ctx)
    assert "ALGEBRAIC" in text
    assert "NONE" in text
