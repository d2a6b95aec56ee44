# dae_core/src/dae_core/adapter.py
"""Residual and root callbacks handed to the engine.

The engine calls these with its own signature, (t, y, yp, out) -> status. Each
call runs one model callback sequence against the ModelFacade under the
session's EvaluationContext:

    residual: phase ODE,          error stage INTEGRATOR
              external inputs -> input equations -> explicit ODE
              out = f(t, y) - yp
    root:     phase EVENT_SEARCH, error stage EVENT_SEARCH
              external inputs -> input equations -> zero-crossing equations
              -> zero-crossing indicators

The phase is only switched when the context is ALGEBRAIC. A residual evaluated
from inside the Jacobian assembly therefore stays in the JACOBIAN phase (and
bumps the nested counter). Simulation time, error stage and phase are restored
on every exit path.

A ModelEvaluationFault arrives here as a failed EvalStatus. It is logged,
remembered as last_fault and reported to the engine as RESIDUAL_FAILURE.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import AbstractContextManager, contextmanager, nullcontext
from typing import TYPE_CHECKING

import numpy as np

from .context import ErrorStage, EvaluationContext, EvaluationPhase
from .engine import CALLBACK_SUCCESS, RESIDUAL_FAILURE

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from .errors import ModelEvaluationFault
    from .model import EvalStatus, ModelFacade

    FloatArray = NDArray[np.floating]

logger = logging.getLogger(__name__)


class ResidualAdapter:
    """Engine-facing residual/root callbacks with fault containment."""

    def __init__(self, model: ModelFacade, context: EvaluationContext) -> None:
        """
        Initialize ResidualAdapter.

        Args:
            model: Model facade of the session.
            context: Evaluation context owned by the session.
        """
        self.model = model
        self.context = context
        self._ode_out: FloatArray = np.zeros(model.n_states, dtype=model.data.dtype)
        self.last_fault: ModelEvaluationFault | None = None
        self.n_faults = 0

    # ------------------------------------------------------------------
    # Save/restore helpers
    # ------------------------------------------------------------------

    def _phase_guard(
        self,
        phase: EvaluationPhase,
        t: float,
    ) -> AbstractContextManager[object]:
        # Only switch away from ALGEBRAIC; nested calls keep the outer phase.
        if self.context.is_algebraic:
            return self.context.phase_scope(phase, time=t)
        return nullcontext()

    @contextmanager
    def _time_override(self, t: float) -> Iterator[None]:
        data = self.model.data
        saved = data.time
        data.time = float(t)
        try:
            yield
        finally:
            data.time = saved

    def _contain(self, status: EvalStatus, t: float) -> int:
        """Convert a callback status into an engine status code."""
        if status.ok:
            return CALLBACK_SUCCESS
        self.last_fault = status.fault
        self.n_faults += 1
        logger.warning(
            "Model evaluation failed during %s at time %.15g: %s",
            self.context.error_stage.value,
            t,
            status.fault,
        )
        return RESIDUAL_FAILURE

    # ------------------------------------------------------------------
    # Engine callbacks
    # ------------------------------------------------------------------

    def residual(
        self,
        t: float,
        y: FloatArray,
        yp: FloatArray,
        out: FloatArray,
    ) -> int:
        """Residual F(t, y, yp) = f(t, y) - yp written into out.

        Args:
            t: Evaluation time.
            y: Candidate state.
            yp: Candidate derivative.
            out: Residual output buffer, shape (n_states,).

        Returns:
            CALLBACK_SUCCESS, or RESIDUAL_FAILURE if the model raised a fault.
        """
        with (
            self._phase_guard(EvaluationPhase.ODE, t),
            self._time_override(t),
            self.context.stage_scope(ErrorStage.INTEGRATOR),
        ):
            self.context.bump_jacobian_counter()
            status = self.model.prepare_inputs(t, y)
            if status.ok:
                status = self.model.evaluate_ode(t, y, self._ode_out)
            if status.ok:
                np.subtract(self._ode_out, yp, out=out)
            return self._contain(status, t)

    def root(
        self,
        t: float,
        y: FloatArray,
        yp: FloatArray,  # noqa: ARG002
        out: FloatArray,
    ) -> int:
        """Zero-crossing indicators at (t, y) written into out.

        The zero-crossing equations are always evaluated before the indicators,
        even when the model leaves them empty.

        Args:
            t: Evaluation time.
            y: Candidate state.
            yp: Candidate derivative (unused by the model).
            out: Indicator output buffer, shape (n_zero_crossings,).

        Returns:
            CALLBACK_SUCCESS, or RESIDUAL_FAILURE if the model raised a fault.
        """
        with (
            self._phase_guard(EvaluationPhase.EVENT_SEARCH, t),
            self._time_override(t),
            self.context.stage_scope(ErrorStage.EVENT_SEARCH),
        ):
            self.context.bump_jacobian_counter()
            status = self.model.prepare_inputs(t, y)
            if status.ok:
                status = self.model.evaluate_zero_crossing_equations(t, y)
            if status.ok:
                status = self.model.evaluate_zero_crossings(t, y, out)
            return self._contain(status, t)
