# dae_core/src/dae_core/engine.py
"""Interface of the external implicit DAE-solving engine.

The engine owns the corrector (Newton iteration, error control, step-size
selection). dae_core only consumes it through the DAEEngine protocol below and
hands it three callbacks:

    residual(t, y, yp, out) -> status      F(t, y, yp) written into out
    root(t, y, yp, out) -> status          event indicators written into out
    jacobian(t, cj, y, yp, res, out) -> status
                                           dF/dy + cj * dF/dyp written into out

Callback status convention: 0 on success, a negative value for an
unrecoverable failure. Engine status codes follow the IDA numbering so that an
IDA-backed implementation can pass its flags through unchanged.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum, IntEnum
from typing import Protocol, TypeAlias, runtime_checkable

import numpy as np
from numpy.typing import NDArray

FloatArray: TypeAlias = NDArray[np.floating]

ResidualCallback: TypeAlias = Callable[[float, FloatArray, FloatArray, FloatArray], int]
RootCallback: TypeAlias = Callable[[float, FloatArray, FloatArray, FloatArray], int]
JacobianCallback: TypeAlias = Callable[
    [float, float, FloatArray, FloatArray, FloatArray, FloatArray], int
]
ErrorHandler: TypeAlias = Callable[[int, str, str, str], None]

CALLBACK_SUCCESS = 0
RESIDUAL_FAILURE = -1


class EngineStatus(IntEnum):
    """Return codes of DAEEngine.advance (IDA numbering)."""

    SUCCESS = 0
    TSTOP_RETURN = 1
    ROOT_RETURN = 2
    TOO_MUCH_WORK = -1
    TOO_MUCH_ACC = -2
    ERR_FAIL = -3
    CONV_FAIL = -4
    LSETUP_FAIL = -6
    LSOLVE_FAIL = -7
    RES_FAIL = -8
    REP_RES_ERR = -9
    RTFUNC_FAIL = -10
    ILL_INPUT = -22


class StatisticKind(Enum):
    """Counters the engine exposes through query_statistic."""

    STEPS = "steps"
    RESIDUAL_EVALS = "residual_evals"
    JACOBIAN_EVALS = "jacobian_evals"
    ERROR_TEST_FAILS = "error_test_fails"
    NONLINEAR_CONV_FAILS = "nonlinear_conv_fails"


@dataclass(frozen=True, slots=True)
class EngineResult:
    """Outcome of one advance call.

    Attributes:
        status: Engine status code (see EngineStatus).
        time: Time reached by the engine.
    """

    status: int
    time: float


@runtime_checkable
class DAEEngine(Protocol):
    """Minimal engine interface required by IntegrationSession."""

    def initialize(
        self,
        residual: ResidualCallback,
        root: RootCallback | None,
        *,
        t0: float,
        y: FloatArray,
        yp: FloatArray,
        rtol: float,
        atol: FloatArray,
        n_roots: int,
    ) -> None:
        """Allocate engine memory and register residual/root callbacks.

        y and yp are the live simulation buffers; the engine writes its solution
        into them in place.
        """
        ...

    def reinitialize(self, t0: float, y: FloatArray, yp: FloatArray) -> None:
        """Restart from (t0, y, yp), discarding the internal step history."""
        ...

    def set_jacobian(self, jacobian: JacobianCallback | None) -> None:
        """Register a Jacobian callback; None selects the built-in differencing."""
        ...

    def set_error_handler(self, handler: ErrorHandler) -> None:
        """Register a handler for engine error messages."""
        ...

    def advance(self, tout: float) -> EngineResult:
        """Integrate towards tout and return the status and time reached."""
        ...

    def current_step(self) -> float:
        """Step size currently being attempted."""
        ...

    def error_weights(self, out: FloatArray) -> None:
        """Write the current per-state error weights into out."""
        ...

    def query_statistic(self, kind: StatisticKind) -> int | None:
        """Return a counter value, or None if the engine cannot provide it."""
        ...

    def dispose(self) -> None:
        """Release engine memory."""
        ...
