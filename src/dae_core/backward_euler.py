# dae_core/src/dae_core/backward_euler.py
"""Reference engine: variable-step backward Euler (BDF1) with root finding.

This is a compact implementation of the DAEEngine protocol so sessions can run
without a compiled SUNDIALS/IDA installation. It is intended for tests and
small models, not as a general-purpose corrector:

- fixed order one (backward Euler), dense linear algebra only;
- Newton iteration on F(t_n+1, y, (y - y_n) / h) = 0 with the iteration matrix
  dF/dy + cj * dF/dyp, cj = 1 / h, factorized once per step attempt
  (scipy.linalg.lu_factor / lu_solve);
- local error estimate 0.5 * (y_n+1 - y_pred) against the explicit Euler
  predictor, weighted RMS norm with ewt_i = 1 / (rtol * |y_i| + atol_i);
- steps are clamped so each advance lands exactly on tout;
- zero crossings are located on the linear interpolant of the last step with
  scipy.optimize.brentq.

Status codes and statistics follow the IDA conventions in dae_core.engine.
Unlike IDAReInit, reinitialize keeps the counters, so statistics stay
monotonic over a whole simulation.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Final

import numpy as np
from scipy.linalg import lu_factor, lu_solve
from scipy.optimize import brentq

from .engine import (
    CALLBACK_SUCCESS,
    EngineResult,
    EngineStatus,
    StatisticKind,
)

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from .engine import (
        ErrorHandler,
        FloatArray,
        JacobianCallback,
        ResidualCallback,
        RootCallback,
    )

logger = logging.getLogger(__name__)

_MODULE: Final[str] = "BackwardEulerEngine"
_SQRT_EPS: Final[float] = float(np.sqrt(np.finfo(np.float64).eps))
_UROUND: Final[float] = float(np.finfo(np.float64).eps)

_NOT_INITIALIZED_MSG = "advance called before initialize"
_ATOL_SHAPE_MSG = "atol shape {actual} does not match state shape {expected}"
_MAX_STEPS_MSG = "At t = {t:.15g}, mxstep steps taken before reaching tout = {tout:.15g}"
_ERR_FAIL_MSG = "At t = {t:.15g}, the error test failed repeatedly or with |h| = hmin"
_CONV_FAIL_MSG = "At t = {t:.15g}, the corrector convergence failed repeatedly"
_RES_FAIL_MSG = "At t = {t:.15g}, the residual function failed unrecoverably"
_JAC_FAIL_MSG = "At t = {t:.15g}, the jacobian function failed unrecoverably"
_ROOT_FAIL_MSG = "At t = {t:.15g}, the root function failed"


@dataclass(slots=True, frozen=True)
class BackwardEulerConfig:
    """Configuration for BackwardEulerEngine.

    Attributes:
        h_init: Initial step size; if None, estimated from tout and yp.
        h_min: Minimum step size.
        h_max: Maximum step size.
        max_steps: Maximum number of internal steps per advance call.
        max_newton_iters: Maximum Newton iterations per step attempt.
        newton_tol: Convergence threshold on the weighted Newton update norm.
        max_error_fails: Maximum error-test failures per step.
        max_conv_fails: Maximum convergence failures per step.
        safety: Safety factor applied to step-size updates.
        fac_min: Minimum multiplicative change factor.
        fac_max: Maximum multiplicative change factor.
    """

    h_init: float | None = None
    h_min: float = 1e-14
    h_max: float = float("inf")
    max_steps: int = 500
    max_newton_iters: int = 4
    newton_tol: float = 0.33
    max_error_fails: int = 10
    max_conv_fails: int = 10
    safety: float = 0.9
    fac_min: float = 0.2
    fac_max: float = 2.0


class _RootFunctionFailed(Exception):
    """Internal signal: the root callback failed during root location."""


def _wrms(v: FloatArray, ewt: FloatArray) -> float:
    if v.size == 0:
        return 0.0
    return float(np.sqrt(np.mean((v * ewt) ** 2)))


class BackwardEulerEngine:
    """Reference DAEEngine implementation."""

    def __init__(self, config: BackwardEulerConfig | None = None) -> None:
        """Initialize BackwardEulerEngine.

        Args:
            config: Optional engine configuration.
        """
        self.config = config or BackwardEulerConfig()
        self._initialized = False
        self._jacobian: JacobianCallback | None = None
        self._error_handler: ErrorHandler | None = None

        self._stats: dict[StatisticKind, int] = dict.fromkeys(StatisticKind, 0)
        self._h: float | None = None
        self._h_attempt = 0.0
        self.t = 0.0

    # ------------------------------------------------------------------
    # Protocol: setup
    # ------------------------------------------------------------------

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
        """Allocate work arrays and register the residual/root callbacks.

        Raises:
            ValueError: If atol does not match the state shape.
        """
        atol_arr = np.asarray(atol, dtype=float)
        if atol_arr.shape != y.shape:
            raise ValueError(_ATOL_SHAPE_MSG.format(actual=atol_arr.shape, expected=y.shape))

        self._residual = residual
        self._root = root if n_roots > 0 else None
        self.rtol = float(rtol)
        self.atol = atol_arr.copy()
        self.n_roots = int(n_roots)

        n = int(y.size)
        self.n = n
        self._y_new = np.zeros(n)
        self._yp_new = np.zeros(n)
        self._y_pred = np.zeros(n)
        self._y_old = np.zeros(n)
        self._res = np.zeros(n)
        self._res_dq = np.zeros(n)
        self._ewt = np.ones(n)
        self._jac = np.zeros((n, n))
        self._y_interp = np.zeros(n)

        self._g_prev = np.zeros(self.n_roots)
        self._g_new = np.zeros(self.n_roots)
        self._g_tmp = np.zeros(self.n_roots)
        self._root_info = np.zeros(self.n_roots, dtype=int)

        self._initialized = True
        self.reinitialize(t0, y, yp)

    def reinitialize(self, t0: float, y: FloatArray, yp: FloatArray) -> None:
        """Restart from (t0, y, yp); y and yp become the solution buffers."""
        self.t = float(t0)
        self._y = y
        self._yp = yp
        self._h = self.config.h_init
        self._g_valid = False
        self._root_info.fill(0)

    def set_jacobian(self, jacobian: JacobianCallback | None) -> None:
        """Register a Jacobian callback, or None for internal differencing."""
        self._jacobian = jacobian

    def set_error_handler(self, handler: ErrorHandler) -> None:
        """Register a handler for engine error messages."""
        self._error_handler = handler

    def dispose(self) -> None:
        """Release work arrays."""
        self._initialized = False
        self._jacobian = None

    # ------------------------------------------------------------------
    # Protocol: queries
    # ------------------------------------------------------------------

    def current_step(self) -> float:
        """Step size currently being attempted."""
        return float(self._h_attempt)

    def error_weights(self, out: FloatArray) -> None:
        """Write the current error weights into out."""
        np.copyto(out, self._ewt)

    def query_statistic(self, kind: StatisticKind) -> int | None:
        """Return a counter value."""
        return int(self._stats[kind])

    def root_info(self) -> NDArray[np.int_]:
        """Direction (+1/-1) of each indicator that fired at the last root, else 0."""
        return self._root_info.copy()

    # ------------------------------------------------------------------
    # Protocol: advance
    # ------------------------------------------------------------------

    def advance(self, tout: float) -> EngineResult:
        """Integrate to tout, stopping early at a zero crossing."""
        if not self._initialized:
            self._report(EngineStatus.ILL_INPUT, "advance", _NOT_INITIALIZED_MSG)
            return EngineResult(EngineStatus.ILL_INPUT, self.t)

        tout = float(tout)
        if tout <= self.t:
            return EngineResult(EngineStatus.SUCCESS, self.t)

        if self._root is not None and not self._g_valid:
            if self._root(self.t, self._y, self._yp, self._g_prev) != CALLBACK_SUCCESS:
                self._report(EngineStatus.RTFUNC_FAIL, "advance", _ROOT_FAIL_MSG.format(t=self.t))
                return EngineResult(EngineStatus.RTFUNC_FAIL, self.t)
            self._g_valid = True

        self._update_weights(self._y)
        if self._h is None:
            self._h = self._initial_step(tout)

        n_steps = 0
        while self.t < tout:
            if n_steps >= self.config.max_steps:
                msg = _MAX_STEPS_MSG.format(t=self.t, tout=tout)
                self._report(EngineStatus.TOO_MUCH_WORK, "advance", msg)
                return EngineResult(EngineStatus.TOO_MUCH_WORK, self.t)

            status = self._step(tout)
            if status != EngineStatus.SUCCESS:
                return EngineResult(status, self.t)
            n_steps += 1

            if self._root is not None:
                status = self._check_roots()
                if status != EngineStatus.SUCCESS:
                    return EngineResult(status, self.t)

        return EngineResult(EngineStatus.SUCCESS, self.t)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _report(self, code: int, function: str, msg: str) -> None:
        if self._error_handler is not None:
            self._error_handler(int(code), _MODULE, function, msg)

    def _update_weights(self, y: FloatArray) -> None:
        np.reciprocal(self.rtol * np.abs(y) + self.atol, out=self._ewt)

    def _initial_step(self, tout: float) -> float:
        h0 = 1e-3 * (tout - self.t)
        yp_norm = _wrms(self._yp, self._ewt)
        if yp_norm * h0 > 0.5:
            h0 = 0.5 / yp_norm
        return float(min(max(h0, self.config.h_min), self.config.h_max))

    def _step(self, tout: float) -> int:
        """Take one accepted step (with internal retries) towards tout."""
        cfg = self.config
        h = float(min(self._h or cfg.h_min, cfg.h_max))
        n_err_fail = 0
        n_conv_fail = 0

        while True:
            remaining = tout - self.t
            if h >= remaining * (1.0 - 4.0 * _UROUND):
                h = remaining
            self._h_attempt = h

            status = self._solve_corrector(h)
            if status < 0:
                return status
            if status > 0:
                self._stats[StatisticKind.NONLINEAR_CONV_FAILS] += 1
                n_conv_fail += 1
                h *= 0.25
                if n_conv_fail >= cfg.max_conv_fails or h < cfg.h_min:
                    self._report(EngineStatus.CONV_FAIL, "advance", _CONV_FAIL_MSG.format(t=self.t))
                    return EngineStatus.CONV_FAIL
                logger.debug("corrector failed at t=%.15g; retrying with h=%g", self.t, h)
                continue

            # Local error: 0.5 * (corrected - predicted) for backward Euler.
            err = 0.5 * _wrms(self._y_new - self._y_pred, self._ewt)
            if err > 1.0:
                self._stats[StatisticKind.ERROR_TEST_FAILS] += 1
                n_err_fail += 1
                h *= max(cfg.fac_min, cfg.safety / np.sqrt(err))
                if n_err_fail >= cfg.max_error_fails or h < cfg.h_min:
                    self._report(EngineStatus.ERR_FAIL, "advance", _ERR_FAIL_MSG.format(t=self.t))
                    return EngineStatus.ERR_FAIL
                logger.debug("error test failed at t=%.15g (err=%g); h=%g", self.t, err, h)
                continue

            np.copyto(self._y_old, self._y)
            self._t_old = self.t
            np.copyto(self._y, self._y_new)
            np.copyto(self._yp, self._yp_new)
            self.t = self.t + h if h != remaining else tout
            self._stats[StatisticKind.STEPS] += 1

            fac = cfg.fac_max if err == 0.0 else cfg.safety / np.sqrt(err)
            self._h = float(min(h * min(cfg.fac_max, max(cfg.fac_min, fac)), cfg.h_max))
            self._update_weights(self._y)
            return EngineStatus.SUCCESS

    def _eval_residual(self, t: float, y: FloatArray, yp: FloatArray, out: FloatArray) -> int:
        self._stats[StatisticKind.RESIDUAL_EVALS] += 1
        return self._residual(t, y, yp, out)

    def _solve_corrector(self, h: float) -> int:
        """Newton iteration for one step attempt.

        Returns:
            0 on convergence, 1 for a recoverable failure (retry with smaller h),
            or a negative EngineStatus.
        """
        cfg = self.config
        t_new = self.t + h
        cj = 1.0 / h

        np.multiply(self._yp, h, out=self._y_pred)
        self._y_pred += self._y
        np.copyto(self._y_new, self._y_pred)
        np.copyto(self._yp_new, self._yp)

        status = self._eval_residual(t_new, self._y_new, self._yp_new, self._res)
        if status < 0:
            self._report(EngineStatus.RES_FAIL, "advance", _RES_FAIL_MSG.format(t=t_new))
            return EngineStatus.RES_FAIL
        if status > 0:
            return 1

        status = self._setup_jacobian(t_new, cj)
        if status != CALLBACK_SUCCESS:
            return status
        lu_piv = lu_factor(self._jac, check_finite=False)
        if np.any(np.diag(lu_piv[0]) == 0.0):
            return 1

        prev_norm: float | None = None
        for _ in range(cfg.max_newton_iters):
            delta = lu_solve(lu_piv, -self._res, check_finite=False)
            if not np.all(np.isfinite(delta)):
                return 1
            self._y_new += delta
            self._yp_new += cj * delta

            norm = _wrms(delta, self._ewt)
            if norm <= cfg.newton_tol:
                return 0
            if prev_norm is not None and norm > 0.9 * prev_norm:
                return 1
            prev_norm = norm

            status = self._eval_residual(t_new, self._y_new, self._yp_new, self._res)
            if status < 0:
                self._report(EngineStatus.RES_FAIL, "advance", _RES_FAIL_MSG.format(t=t_new))
                return EngineStatus.RES_FAIL
            if status > 0:
                return 1
        return 1

    def _setup_jacobian(self, t_new: float, cj: float) -> int:
        self._stats[StatisticKind.JACOBIAN_EVALS] += 1
        if self._jacobian is not None:
            status = self._jacobian(t_new, cj, self._y_new, self._yp_new, self._res, self._jac)
            if status < 0:
                self._report(EngineStatus.LSETUP_FAIL, "advance", _JAC_FAIL_MSG.format(t=t_new))
                return EngineStatus.LSETUP_FAIL
            return 1 if status > 0 else CALLBACK_SUCCESS
        return self._difference_quotient_jacobian(t_new, cj)

    def _difference_quotient_jacobian(self, t_new: float, cj: float) -> int:
        """Internal dense differencing of dF/dy + cj * dF/dyp."""
        h = self._h_attempt
        y = self._y_new
        yp = self._yp_new
        for j in range(self.n):
            yj, ypj = y[j], yp[j]
            inc = _SQRT_EPS * max(abs(yj), abs(h * ypj), 1.0 / self._ewt[j])
            if h * ypj < 0.0:
                inc = -inc
            inc = (yj + inc) - yj
            y[j] = yj + inc
            yp[j] = ypj + cj * inc
            try:
                status = self._eval_residual(t_new, y, yp, self._res_dq)
            finally:
                y[j] = yj
                yp[j] = ypj
            if status < 0:
                self._report(EngineStatus.LSETUP_FAIL, "advance", _RES_FAIL_MSG.format(t=t_new))
                return EngineStatus.LSETUP_FAIL
            if status > 0:
                return 1
            self._jac[:, j] = (self._res_dq - self._res) / inc
        return CALLBACK_SUCCESS

    # ------------------------------------------------------------------
    # Root finding
    # ------------------------------------------------------------------

    def _interpolate(self, t: float) -> FloatArray:
        frac = (t - self._t_old) / (self.t - self._t_old)
        np.subtract(self._y, self._y_old, out=self._y_interp)
        self._y_interp *= frac
        self._y_interp += self._y_old
        return self._y_interp

    def _g_at(self, t: float, idx: int) -> float:
        y = self._interpolate(t)
        if self._root is None or self._root(t, y, self._yp, self._g_tmp) != CALLBACK_SUCCESS:
            raise _RootFunctionFailed
        return float(self._g_tmp[idx])

    def _check_roots(self) -> int:
        """Detect sign changes over the last step and stop at the earliest root."""
        if self._root is None:
            return EngineStatus.SUCCESS
        if self._root(self.t, self._y, self._yp, self._g_new) != CALLBACK_SUCCESS:
            self._report(EngineStatus.RTFUNC_FAIL, "advance", _ROOT_FAIL_MSG.format(t=self.t))
            return EngineStatus.RTFUNC_FAIL

        fired = (self._g_prev != 0.0) & (
            (self._g_new == 0.0) | (np.sign(self._g_new) != np.sign(self._g_prev))
        )
        if not np.any(fired):
            np.copyto(self._g_prev, self._g_new)
            return EngineStatus.SUCCESS

        t_lo, t_hi = self._t_old, self.t
        ttol = 100.0 * _UROUND * max(abs(t_hi), t_hi - t_lo)
        crossing_times: dict[int, float] = {}
        try:
            for idx in np.flatnonzero(fired):
                i = int(idx)
                if self._g_new[i] == 0.0:
                    crossing_times[i] = t_hi
                    continue
                t_cross = float(brentq(self._g_at, t_lo, t_hi, args=(i,), xtol=1e-14))
                # Report the root on the far side of the sign change.
                if np.sign(self._g_at(t_cross, i)) == np.sign(self._g_prev[i]):
                    t_cross = min(t_cross + ttol, t_hi)
                crossing_times[i] = t_cross
        except _RootFunctionFailed:
            self._report(EngineStatus.RTFUNC_FAIL, "advance", _ROOT_FAIL_MSG.format(t=self.t))
            return EngineStatus.RTFUNC_FAIL
        t_root = min(crossing_times.values())

        y_root = self._interpolate(t_root)
        if self._root(t_root, y_root, self._yp, self._g_new) != CALLBACK_SUCCESS:
            self._report(EngineStatus.RTFUNC_FAIL, "advance", _ROOT_FAIL_MSG.format(t=t_root))
            return EngineStatus.RTFUNC_FAIL

        # Indicators whose crossing lies at t_root (within the root tolerance).
        tol = 1e-12 * max(1.0, abs(t_root))
        self._root_info.fill(0)
        for idx, t_cross in crossing_times.items():
            if t_cross - t_root <= tol:
                self._root_info[idx] = 1 if self._g_prev[idx] < 0.0 else -1

        np.copyto(self._y, y_root)
        self.t = t_root
        self._h_attempt = 0.0

        np.copyto(self._g_prev, self._g_new)
        self._g_prev[self._root_info != 0] = 0.0
        logger.debug("root found at t=%.15g", t_root)
        return EngineStatus.ROOT_RETURN
