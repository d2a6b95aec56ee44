# dae_core/src/dae_core/jacobian.py
"""Finite-difference Jacobians of the DAE residual.

The engine asks for the iteration matrix

    J = dF/dy + cj * dF/dyp

where cj is its current leading coefficient. For the residual F = f(t, y) - yp
handled here dF/dyp = -I, so J is the finite-difference approximation of
df/dy with cj subtracted from the diagonal.

Perturbation of state j (IDA/DASSL convention):

    delta_j = sqrt(eps) * max(|y_j|, |h * yp_j|, |1 / ewt_j|)
    delta_j = +delta_j if h * yp_j >= 0 else -delta_j
    delta_j = (y_j + delta_j) - y_j          (representable offset)

with h the engine's current step size and ewt its error weights.

Strategies (a closed set, chosen once per session by resolve_jacobian_method):
    - DenseNumericJacobian:   one residual evaluation per column, n + 1 total.
    - ColoredNumericJacobian: all columns of one color perturbed together, one
                              residual evaluation per color, n_colors + 1 total.
    - internal numerical:     no callback; the engine differences internally.

Symbolic variants are recognized names but are not implemented; they are
demoted to the engine's internal differencing.
"""

from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Final, Protocol

import numpy as np

from .context import EvaluationContext, EvaluationPhase
from .engine import CALLBACK_SUCCESS
from .errors import raise_unknown_jacobian_method

if TYPE_CHECKING:
    from collections.abc import Callable

    from numpy.typing import DTypeLike, NDArray

    from .engine import ResidualCallback
    from .sparsity import IndexArray, SparsityPattern

    FloatArray = NDArray[np.floating]

logger = logging.getLogger(__name__)

_SQRT_EPS: Final[float] = float(np.sqrt(np.finfo(np.float64).eps))

_SYMBOLIC_UNSUPPORTED_MSG: Final[str] = (
    "The symbolic jacobian ('{method}') is not implemented; "
    "switching to the engine's internal numerical jacobian."
)
_PATTERN_MISSING_MSG: Final[str] = (
    "Sparsity pattern is not available or failed to initialize; "
    "switching from '{method}' to the dense numerical jacobian."
)
_JAC_SHAPE_ERROR: Final[str] = "Jacobian output shape {actual} does not match ({n}, {n})"
_PATTERN_SIZE_ERROR: Final[str] = "pattern is {rows}x{cols}; expected {expected}x{expected}"


class JacobianMethod(Enum):
    """Recognized Jacobian method names."""

    COLORED_NUMERICAL = "coloredNumerical"
    NUMERICAL = "numerical"
    COLORED_SYMBOLICAL = "coloredSymbolical"
    SYMBOLICAL = "symbolical"
    INTERNAL_NUMERICAL = "internalNumerical"

    @property
    def description(self) -> str:
        """Human-readable description."""
        return _METHOD_DESCRIPTIONS[self]

    @property
    def is_symbolic(self) -> bool:
        """True for the analytically differentiated variants."""
        return self in (JacobianMethod.COLORED_SYMBOLICAL, JacobianMethod.SYMBOLICAL)

    @property
    def needs_pattern(self) -> bool:
        """True for variants that require a sparsity pattern."""
        return self in (
            JacobianMethod.COLORED_NUMERICAL,
            JacobianMethod.COLORED_SYMBOLICAL,
            JacobianMethod.SYMBOLICAL,
        )


_METHOD_DESCRIPTIONS: Final[dict[JacobianMethod, str]] = {
    JacobianMethod.COLORED_NUMERICAL: "colored numerical jacobian",
    JacobianMethod.NUMERICAL: "dense numerical jacobian",
    JacobianMethod.COLORED_SYMBOLICAL: "colored symbolic jacobian",
    JacobianMethod.SYMBOLICAL: "symbolic jacobian",
    JacobianMethod.INTERNAL_NUMERICAL: "internal numerical jacobian",
}

DEFAULT_JACOBIAN_METHOD: Final[JacobianMethod] = JacobianMethod.COLORED_NUMERICAL


# =============================================================================
# Method selection
# =============================================================================


@dataclass(frozen=True, slots=True)
class JacobianPlan:
    """Resolved Jacobian method.

    Attributes:
        requested: Method named by the configuration (or the default).
        method: Method after demotions.
        pattern: Sparsity pattern for the colored method, otherwise None.
    """

    requested: JacobianMethod
    method: JacobianMethod
    pattern: SparsityPattern | None = None


def parse_jacobian_method(name: str | None) -> JacobianMethod:
    """Look up a configured method name.

    Args:
        name: Configured name, or None for the default.

    Raises:
        ConfigurationError: If the name is not recognized.

    Returns:
        The matching JacobianMethod.
    """
    if name is None:
        return DEFAULT_JACOBIAN_METHOD
    for method in JacobianMethod:
        if method.value == name:
            return method
    raise_unknown_jacobian_method(
        str(name),
        options=((m.value, m.description) for m in JacobianMethod),
    )


def resolve_jacobian_method(
    name: str | None,
    *,
    pattern_provider: Callable[[], SparsityPattern | None],
) -> JacobianPlan:
    """Resolve the configured method through the fallback chain.

    Symbolic variants demote to the internal numerical method. The colored
    numerical method demotes to the dense numerical method when no pattern can
    be obtained. Demotions emit a RuntimeWarning.

    Args:
        name: Configured method name, or None for the default.
        pattern_provider: Returns the model's sparsity pattern, or None.

    Raises:
        ConfigurationError: If the name is not recognized.

    Returns:
        JacobianPlan with the final method and pattern.
    """
    requested = parse_jacobian_method(name)
    method = requested
    pattern: SparsityPattern | None = None

    if requested.is_symbolic:
        warnings.warn(
            _SYMBOLIC_UNSUPPORTED_MSG.format(method=requested.value),
            RuntimeWarning,
            stacklevel=2,
        )
        method = JacobianMethod.INTERNAL_NUMERICAL
    elif requested.needs_pattern:
        pattern = pattern_provider()
        if pattern is None:
            warnings.warn(
                _PATTERN_MISSING_MSG.format(method=requested.value),
                RuntimeWarning,
                stacklevel=2,
            )
            method = JacobianMethod.NUMERICAL

    logger.info("jacobian is calculated by %s", method.description)
    return JacobianPlan(requested=requested, method=method, pattern=pattern)


# =============================================================================
# Workspace and strategies
# =============================================================================


class CorrectorState(Protocol):
    """Engine queries needed while assembling a Jacobian."""

    def current_step(self) -> float:
        """Step size currently being attempted."""
        ...

    def error_weights(self, out: FloatArray) -> None:
        """Write the current error weights into out."""
        ...


@dataclass(slots=True)
class JacobianWorkspace:
    """Session-owned scratch buffers for Jacobian assembly.

    Attributes:
        inv_delta: Reciprocal perturbation of each column.
        saved: Saved state values of the perturbed columns.
        residual_tmp: Residual at the perturbed state.
        residual_base: Residual at the unperturbed state (when not supplied).
        error_weights: Engine error weights, refreshed on every assembly.
    """

    inv_delta: FloatArray
    saved: FloatArray
    residual_tmp: FloatArray
    residual_base: FloatArray
    error_weights: FloatArray

    @classmethod
    def allocate(cls, n: int, dtype: DTypeLike = np.float64) -> JacobianWorkspace:
        """Allocate all buffers for n states."""
        return cls(
            inv_delta=np.zeros(n, dtype=dtype),
            saved=np.zeros(n, dtype=dtype),
            residual_tmp=np.zeros(n, dtype=dtype),
            residual_base=np.zeros(n, dtype=dtype),
            error_weights=np.ones(n, dtype=dtype),
        )

    @property
    def n(self) -> int:
        """Number of states the buffers are sized for."""
        return int(self.saved.size)


class _FiniteDifferenceJacobian:
    """Shared plumbing of the numerical strategies."""

    method: JacobianMethod

    def __init__(
        self,
        residual: ResidualCallback,
        *,
        context: EvaluationContext,
        corrector: CorrectorState,
        workspace: JacobianWorkspace,
    ) -> None:
        self._residual = residual
        self.context = context
        self.corrector = corrector
        self.workspace = workspace
        self.n = workspace.n

    def __call__(
        self,
        t: float,
        cj: float,
        y: FloatArray,
        yp: FloatArray,
        res: FloatArray,
        out: FloatArray,
    ) -> int:
        """Engine-facing callback; see compute."""
        return self.compute(t, cj, y, yp, out, residual=res)

    def compute(
        self,
        t: float,
        cj: float,
        y: FloatArray,
        yp: FloatArray,
        out: FloatArray,
        *,
        residual: FloatArray | None = None,
    ) -> int:
        """Assemble dF/dy - cj * I into out.

        y is perturbed in place during assembly and restored before returning.

        Args:
            t: Evaluation time.
            cj: Leading coefficient supplied by the engine.
            y: Current state.
            yp: Current derivative.
            out: Dense output matrix, shape (n, n).
            residual: Residual at (t, y, yp), if already known; otherwise it is
                evaluated first.

        Raises:
            ValueError: If out has the wrong shape.

        Returns:
            CALLBACK_SUCCESS, or the failing residual status.
        """
        if out.shape != (self.n, self.n):
            raise ValueError(_JAC_SHAPE_ERROR.format(actual=out.shape, n=self.n))

        ws = self.workspace
        step = float(self.corrector.current_step())
        self.corrector.error_weights(ws.error_weights)

        with self.context.phase_scope(EvaluationPhase.JACOBIAN, time=t):
            if residual is None:
                status = self._residual(t, y, yp, ws.residual_base)
                if status != CALLBACK_SUCCESS:
                    return status
                base = ws.residual_base
            else:
                base = residual

            status = self._assemble(t, y, yp, base, step, out)

        if status != CALLBACK_SUCCESS:
            return status

        diag = np.arange(self.n)
        out[diag, diag] -= cj

        if logger.isEnabledFor(logging.DEBUG):
            logger.debug("%s at time %.15g:\n%s", self.method.description, t, out)
        return CALLBACK_SUCCESS

    def _set_perturbation(
        self,
        cols: IndexArray,
        y: FloatArray,
        yp: FloatArray,
        step: float,
    ) -> None:
        """Perturb y[cols] in place; save originals and 1/delta in the workspace."""
        ws = self.workspace
        y_cols = y[cols]
        h_yp = step * yp[cols]
        delta = _SQRT_EPS * np.maximum(
            np.maximum(np.abs(y_cols), np.abs(h_yp)),
            np.abs(1.0 / ws.error_weights[cols]),
        )
        delta = np.where(h_yp >= 0.0, delta, -delta)
        delta = (y_cols + delta) - y_cols

        ws.saved[cols] = y_cols
        y[cols] = y_cols + delta
        ws.inv_delta[cols] = 1.0 / delta

    def _evaluate_perturbed(
        self,
        t: float,
        cols: IndexArray,
        y: FloatArray,
        yp: FloatArray,
    ) -> int:
        """Evaluate the residual at the perturbed y, then restore y[cols]."""
        ws = self.workspace
        try:
            return self._residual(t, y, yp, ws.residual_tmp)
        finally:
            y[cols] = ws.saved[cols]

    def _assemble(
        self,
        t: float,
        y: FloatArray,
        yp: FloatArray,
        base: FloatArray,
        step: float,
        out: FloatArray,
    ) -> int:
        raise NotImplementedError


class DenseNumericJacobian(_FiniteDifferenceJacobian):
    """Column-by-column finite differences; n + 1 residual evaluations."""

    method = JacobianMethod.NUMERICAL

    def _assemble(
        self,
        t: float,
        y: FloatArray,
        yp: FloatArray,
        base: FloatArray,
        step: float,
        out: FloatArray,
    ) -> int:
        ws = self.workspace
        for j in range(self.n):
            col = np.array([j], dtype=np.intp)
            self._set_perturbation(col, y, yp, step)
            status = self._evaluate_perturbed(t, col, y, yp)
            if status != CALLBACK_SUCCESS:
                return status
            out[:, j] = (ws.residual_tmp - base) * ws.inv_delta[j]
        return CALLBACK_SUCCESS


class ColoredNumericJacobian(_FiniteDifferenceJacobian):
    """Colored finite differences; n_colors + 1 residual evaluations."""

    method = JacobianMethod.COLORED_NUMERICAL

    def __init__(
        self,
        residual: ResidualCallback,
        *,
        context: EvaluationContext,
        corrector: CorrectorState,
        workspace: JacobianWorkspace,
        pattern: SparsityPattern,
    ) -> None:
        super().__init__(
            residual,
            context=context,
            corrector=corrector,
            workspace=workspace,
        )
        if (pattern.n_rows, pattern.n_cols) != (self.n, self.n):
            raise ValueError(
                _PATTERN_SIZE_ERROR.format(
                    rows=pattern.n_rows, cols=pattern.n_cols, expected=self.n
                )
            )
        pattern.validate()
        self.pattern = pattern
        self._groups = pattern.color_groups()

    @property
    def n_colors(self) -> int:
        """Number of colors in the pattern."""
        return int(self.pattern.n_colors)

    def _assemble(
        self,
        t: float,
        y: FloatArray,
        yp: FloatArray,
        base: FloatArray,
        step: float,
        out: FloatArray,
    ) -> int:
        ws = self.workspace
        pattern = self.pattern
        out.fill(0.0)
        for cols in self._groups:
            self._set_perturbation(cols, y, yp, step)
            status = self._evaluate_perturbed(t, cols, y, yp)
            if status != CALLBACK_SUCCESS:
                return status
            for j in cols:
                rows = pattern.rows_of(int(j))
                out[rows, j] = (ws.residual_tmp[rows] - base[rows]) * ws.inv_delta[j]
        return CALLBACK_SUCCESS


JacobianStrategy = DenseNumericJacobian | ColoredNumericJacobian


def build_jacobian(
    plan: JacobianPlan,
    residual: ResidualCallback,
    *,
    context: EvaluationContext,
    corrector: CorrectorState,
    workspace: JacobianWorkspace,
) -> JacobianStrategy | None:
    """Instantiate the strategy for a resolved plan.

    Args:
        plan: Resolved Jacobian plan.
        residual: Residual callback used for the perturbed evaluations.
        context: Session evaluation context.
        corrector: Source of the engine's step size and error weights.
        workspace: Session-owned scratch buffers.

    Returns:
        The strategy to register with the engine, or None for the engine's
        internal differencing.
    """
    if plan.method is JacobianMethod.COLORED_NUMERICAL and plan.pattern is not None:
        return ColoredNumericJacobian(
            residual,
            context=context,
            corrector=corrector,
            workspace=workspace,
            pattern=plan.pattern,
        )
    if plan.method is JacobianMethod.NUMERICAL:
        return DenseNumericJacobian(
            residual,
            context=context,
            corrector=corrector,
            workspace=workspace,
        )
    return None
