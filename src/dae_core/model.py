# dae_core/src/dae_core/model.py
"""Model callback facade and live simulation buffers.

The generated model supplies plain callables (explicit ODE right-hand side,
input updates, zero-crossing functions, an optional sparsity pattern). This
module binds them to the live buffers of one model instance and exposes them
to the adapters through a small, uniform surface.

Fault channel:
    Model code signals a fatal condition (violated assert, domain error) by
    raising ModelEvaluationFault; a plain assert or an arithmetic or value error
    in a model callable counts the same (see CONTAINED_MODEL_ERRORS). Every
    facade method catches these immediately and returns an EvalStatus instead,
    so each frame between the model and the adapter boundary sees an explicit
    status and propagates it. Nothing unwinds through the engine.

Buffer layout:
    SimulationData.real_vars is the combined buffer
        [states (n) | derivatives (n) | algebraic (m)]
    and SimulationData.states / .derivatives are views into it. Those views are
    what the session registers with the engine, so the engine writes straight
    into the live simulation state.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Final

import numpy as np
import numpy.typing as npt

from .errors import ModelEvaluationFault

if TYPE_CHECKING:
    from numpy.typing import DTypeLike, NDArray

    from .sparsity import SparsityPattern

logger = logging.getLogger(__name__)


# Error / message constants -------------------------------------------------

_N_STATES_ERROR = "n_states must be non-negative; got {n}"
_NOMINAL_SHAPE_ERROR = "nominal shape {actual} does not match ({expected},)"
_NAMES_LEN_ERROR = "state_names length {actual} does not match n_states {expected}"
_ODE_SHAPE_ERROR = "ode returned shape {actual}; expected ({expected},)"
_ZC_SHAPE_ERROR = "zero_crossings returned shape {actual}; expected ({expected},)"
_ZC_MISSING_ERROR = "n_zero_crossings={n} but no zero_crossings function was given"
_PATTERN_SIZE_ERROR = "sparsity pattern is {rows}x{cols}; expected {expected}x{expected}"
_WRAPPED_FAULT_MSG = "{kind} in model code: {msg}"


# Typing helpers ------------------------------------------------------------

FloatArray = npt.NDArray[np.floating[Any]]

OdeFunction = Callable[[float, FloatArray], FloatArray]
InputFunction = Callable[[float, FloatArray], None]
ExternalInputFunction = Callable[[float], None]
ZeroCrossingEquations = Callable[[float, FloatArray], None]
ZeroCrossingFunction = Callable[[float, FloatArray], FloatArray]
SparsityProvider = Callable[[], "SparsityPattern | None"]


@dataclass(frozen=True, slots=True)
class EvalStatus:
    """Result of one model callback sequence.

    Attributes:
        fault: The contained fault, or None on success.
    """

    fault: ModelEvaluationFault | None = None

    @property
    def ok(self) -> bool:
        """True if the callback sequence completed."""
        return self.fault is None


EVAL_OK: Final[EvalStatus] = EvalStatus()

# Exceptions from model callables that count as a model fault. A plain
# ``assert`` or a domain error in generated code is contained like an explicit
# ModelEvaluationFault.
CONTAINED_MODEL_ERRORS: Final[tuple[type[Exception], ...]] = (
    ModelEvaluationFault,
    AssertionError,
    ArithmeticError,
    ValueError,
)


def contain_fault(exc: Exception) -> EvalStatus:
    """Wrap an exception raised by model code into a failed EvalStatus.

    Args:
        exc: Exception caught from a model callable.

    Returns:
        EvalStatus carrying a ModelEvaluationFault; any other exception type is
        wrapped, with the original kept as ``__cause__``.
    """
    if isinstance(exc, ModelEvaluationFault):
        return EvalStatus(fault=exc)
    fault = ModelEvaluationFault(_WRAPPED_FAULT_MSG.format(kind=type(exc).__name__, msg=exc))
    fault.__cause__ = exc
    return EvalStatus(fault=fault)


@dataclass(frozen=True, slots=True)
class ModelFunctions:
    """Callables supplied by the generated model.

    Attributes:
        ode: Explicit right-hand side, ode(t, x) -> dx/dt with shape (n_states,).
        update_inputs: Input-equation update, update_inputs(t, x).
        external_inputs: Refresh of externally driven time-varying inputs,
            external_inputs(t).
        zero_crossing_equations: Equations the indicators depend on,
            zero_crossing_equations(t, x).
        zero_crossings: Event indicators, zero_crossings(t, x) -> g with shape
            (n_zero_crossings,).
        n_zero_crossings: Number of event conditions.
        sparsity_pattern: Provider of the Jacobian sparsity pattern, or None when
            the model ships no pattern.
    """

    ode: OdeFunction
    update_inputs: InputFunction | None = None
    external_inputs: ExternalInputFunction | None = None
    zero_crossing_equations: ZeroCrossingEquations | None = None
    zero_crossings: ZeroCrossingFunction | None = None
    n_zero_crossings: int = 0
    sparsity_pattern: SparsityProvider | None = None


class SimulationData:
    """Live buffers of one model instance."""

    def __init__(
        self,
        n_states: int,
        *,
        n_algebraic: int = 0,
        start_time: float = 0.0,
        nominal: Sequence[float] | NDArray[np.floating] | None = None,
        state_names: Sequence[str] | None = None,
        dtype: DTypeLike = np.float64,
    ) -> None:
        """
        Initialize SimulationData.

        Args:
            n_states: Number of continuous states.
            n_algebraic: Number of additional real variables after the derivatives.
            start_time: Initial simulation time.
            nominal: Per-state nominal magnitudes (default 1.0).
            state_names: Per-state names used in diagnostics.
            dtype: Floating-point dtype of the buffers.

        Raises:
            ValueError: if sizes are inconsistent.
        """
        if n_states < 0:
            raise ValueError(_N_STATES_ERROR.format(n=n_states))

        self.n_states = int(n_states)
        self.dtype = np.dtype(dtype)
        self.time = float(start_time)

        n = self.n_states
        self.real_vars: FloatArray = np.zeros(2 * n + int(n_algebraic), dtype=self.dtype)
        self.states: FloatArray = self.real_vars[:n]
        self.derivatives: FloatArray = self.real_vars[n : 2 * n]

        if nominal is None:
            self.nominal = np.ones(n, dtype=self.dtype)
        else:
            self.nominal = np.asarray(nominal, dtype=self.dtype)
            if self.nominal.shape != (n,):
                raise ValueError(
                    _NOMINAL_SHAPE_ERROR.format(actual=self.nominal.shape, expected=n)
                )

        if state_names is None:
            self.state_names = tuple(f"x[{i}]" for i in range(n))
        else:
            if len(state_names) != n:
                raise ValueError(
                    _NAMES_LEN_ERROR.format(actual=len(state_names), expected=n)
                )
            self.state_names = tuple(state_names)

        # Sampling bookkeeping shared with the event handler upstream.
        self.sample_activated = False
        self.next_sample_event = float("inf")

    def set_states(self, states: Sequence[float] | NDArray[np.floating]) -> None:
        """Copy values into the live state view (the view itself is kept)."""
        np.copyto(self.states, np.asarray(states, dtype=self.dtype))


class ModelFacade:
    """Uniform, fault-contained access to the model callables."""

    def __init__(self, functions: ModelFunctions, data: SimulationData) -> None:
        """
        Initialize ModelFacade.

        Args:
            functions: Model callables.
            data: Live buffers of the model instance.

        Raises:
            ValueError: if event indicators are declared without a function.
        """
        if functions.n_zero_crossings > 0 and functions.zero_crossings is None:
            raise ValueError(_ZC_MISSING_ERROR.format(n=functions.n_zero_crossings))

        self.functions = functions
        self.data = data

    @property
    def n_states(self) -> int:
        """Number of continuous states."""
        return self.data.n_states

    @property
    def n_zero_crossings(self) -> int:
        """Number of event conditions."""
        return int(self.functions.n_zero_crossings)

    # ------------------------------------------------------------------
    # Callback sequences
    # ------------------------------------------------------------------

    def refresh_external_inputs(self, t: float) -> EvalStatus:
        """Refresh externally driven time-varying inputs."""
        fn = self.functions.external_inputs
        if fn is None:
            return EVAL_OK
        try:
            fn(float(t))
        except CONTAINED_MODEL_ERRORS as exc:
            return contain_fault(exc)
        return EVAL_OK

    def update_inputs(self, t: float, x: FloatArray) -> EvalStatus:
        """Evaluate the model's input equations."""
        fn = self.functions.update_inputs
        if fn is None:
            return EVAL_OK
        try:
            fn(float(t), x)
        except CONTAINED_MODEL_ERRORS as exc:
            return contain_fault(exc)
        return EVAL_OK

    def prepare_inputs(self, t: float, x: FloatArray) -> EvalStatus:
        """Refresh external inputs, then evaluate the input equations."""
        status = self.refresh_external_inputs(t)
        if not status.ok:
            return status
        return self.update_inputs(t, x)

    def evaluate_ode(self, t: float, x: FloatArray, out: FloatArray) -> EvalStatus:
        """Evaluate the explicit right-hand side into out.

        Raises:
            ValueError: if the ODE function returns an array of the wrong shape.
        """
        try:
            dx = np.asarray(self.functions.ode(float(t), x), dtype=self.data.dtype)
        except CONTAINED_MODEL_ERRORS as exc:
            return contain_fault(exc)
        if dx.shape != (self.n_states,):
            raise ValueError(_ODE_SHAPE_ERROR.format(actual=dx.shape, expected=self.n_states))
        np.copyto(out, dx)
        return EVAL_OK

    def evaluate_zero_crossing_equations(self, t: float, x: FloatArray) -> EvalStatus:
        """Evaluate the equations the event indicators depend on."""
        fn = self.functions.zero_crossing_equations
        if fn is None:
            return EVAL_OK
        try:
            fn(float(t), x)
        except CONTAINED_MODEL_ERRORS as exc:
            return contain_fault(exc)
        return EVAL_OK

    def evaluate_zero_crossings(
        self,
        t: float,
        x: FloatArray,
        out: FloatArray,
    ) -> EvalStatus:
        """Evaluate event indicators into out.

        Raises:
            ValueError: if the indicator function returns the wrong shape.
        """
        fn = self.functions.zero_crossings
        if fn is None:
            return EVAL_OK
        try:
            g = np.asarray(fn(float(t), x), dtype=self.data.dtype)
        except CONTAINED_MODEL_ERRORS as exc:
            return contain_fault(exc)
        if g.shape != (self.n_zero_crossings,):
            raise ValueError(
                _ZC_SHAPE_ERROR.format(actual=g.shape, expected=self.n_zero_crossings)
            )
        np.copyto(out, g)
        return EVAL_OK

    # ------------------------------------------------------------------
    # Sparsity pattern acquisition
    # ------------------------------------------------------------------

    def acquire_sparsity_pattern(self) -> SparsityPattern | None:
        """Load and validate the model's sparsity pattern.

        Returns:
            The validated pattern, or None if the model ships none or loading it
            failed.
        """
        provider = self.functions.sparsity_pattern
        if provider is None:
            return None
        try:
            pattern = provider()
            if pattern is None:
                return None
            if (pattern.n_rows, pattern.n_cols) != (self.n_states, self.n_states):
                raise ValueError(
                    _PATTERN_SIZE_ERROR.format(
                        rows=pattern.n_rows, cols=pattern.n_cols, expected=self.n_states
                    )
                )
            pattern.validate()
        except CONTAINED_MODEL_ERRORS as exc:
            logger.info("Sparsity pattern could not be loaded: %s", exc)
            return None
        return pattern
