# dae_core/src/dae_core/context.py
"""Evaluation context: which phase of computation is currently active.

Model code can be re-entered recursively while a step is in progress: the
engine evaluates the residual (ODE phase), searches for zero crossings
(event-search phase) and assembles Jacobians, whose perturbed residual
evaluations arrive while the Jacobian phase is still active. The context
records the active phase so model code (and diagnostics) can tell those
situations apart.

Rules:
    - ALGEBRAIC is the resting phase.
    - Any non-ALGEBRAIC phase may only be entered from ALGEBRAIC.
    - Returning to ALGEBRAIC is always allowed.
    - While in JACOBIAN, each perturbed residual evaluation bumps a nested
      counter (reset on entry) so the base evaluation can be distinguished
      from the perturbed ones.

Each integration session owns its own EvaluationContext and passes it by
reference to the adapters; there is no process-wide context.
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Final

from .errors import ContextError

_ILLEGAL_TRANSITION_MSG: Final[str] = (
    "Cannot enter phase {target} while in phase {current}; "
    "non-algebraic phases can only be entered from ALGEBRAIC"
)
_STALE_HANDLE_MSG: Final[str] = (
    "Phase handle for {entered} does not match the current phase {current}"
)


class EvaluationPhase(Enum):
    """Phase of computation currently active."""

    ALGEBRAIC = "algebraic"
    ODE = "ode"
    EVENT_SEARCH = "event-search"
    JACOBIAN = "jacobian"


class ErrorStage(Enum):
    """Activity reported by a fatal-error handler."""

    NONE = "none"
    INTEGRATOR = "integrator"
    EVENT_SEARCH = "event-search"


@dataclass(frozen=True, slots=True)
class PhaseHandle:
    """Token returned by enter_phase and consumed by exit_phase.

    Attributes:
        entered: Phase that was entered.
        previous: Phase active before the entry.
        previous_time: Context time recorded before the entry.
    """

    entered: EvaluationPhase
    previous: EvaluationPhase
    previous_time: float | None


class EvaluationContext:
    """Phase tag, nested Jacobian counter and error stage of one session."""

    __slots__ = ("error_stage", "jacobian_evals", "phase", "time")

    def __init__(self) -> None:
        self.phase = EvaluationPhase.ALGEBRAIC
        self.error_stage = ErrorStage.NONE
        self.jacobian_evals = 0
        self.time: float | None = None

    def __repr__(self) -> str:
        return (
            f"EvaluationContext(phase={self.phase.name}, "
            f"error_stage={self.error_stage.name}, "
            f"jacobian_evals={self.jacobian_evals})"
        )

    @property
    def is_algebraic(self) -> bool:
        """True while no evaluation phase is active."""
        return self.phase is EvaluationPhase.ALGEBRAIC

    def enter_phase(
        self,
        phase: EvaluationPhase,
        *,
        time: float | None = None,
    ) -> PhaseHandle:
        """Enter a phase and return a handle that restores the previous one.

        Args:
            phase: Phase to enter.
            time: Optional evaluation time to record on the context.

        Raises:
            ContextError: If phase is not ALGEBRAIC and the current phase is not
                ALGEBRAIC.

        Returns:
            Handle to pass to exit_phase.
        """
        if phase is not EvaluationPhase.ALGEBRAIC and not self.is_algebraic:
            raise ContextError(
                _ILLEGAL_TRANSITION_MSG.format(
                    target=phase.name,
                    current=self.phase.name,
                )
            )

        handle = PhaseHandle(entered=phase, previous=self.phase, previous_time=self.time)
        self.phase = phase
        if time is not None:
            self.time = float(time)
        if phase is EvaluationPhase.JACOBIAN:
            self.jacobian_evals = 0
        return handle

    def exit_phase(self, handle: PhaseHandle) -> None:
        """Restore the phase recorded by the matching enter_phase.

        Args:
            handle: Handle returned by enter_phase.

        Raises:
            ContextError: If the current phase is not the one the handle entered.
        """
        if self.phase is not handle.entered:
            raise ContextError(
                _STALE_HANDLE_MSG.format(
                    entered=handle.entered.name,
                    current=self.phase.name,
                )
            )
        self.phase = handle.previous
        self.time = handle.previous_time

    def bump_jacobian_counter(self) -> None:
        """Count one nested evaluation; no-op outside the JACOBIAN phase."""
        if self.phase is EvaluationPhase.JACOBIAN:
            self.jacobian_evals += 1

    @contextmanager
    def phase_scope(
        self,
        phase: EvaluationPhase,
        *,
        time: float | None = None,
    ) -> Iterator[PhaseHandle]:
        """Enter phase for the duration of a with-block."""
        handle = self.enter_phase(phase, time=time)
        try:
            yield handle
        finally:
            self.exit_phase(handle)

    @contextmanager
    def stage_scope(self, stage: ErrorStage) -> Iterator[ErrorStage]:
        """Override the error stage for a with-block; yields the saved stage."""
        saved = self.error_stage
        self.error_stage = stage
        try:
            yield saved
        finally:
            self.error_stage = saved
