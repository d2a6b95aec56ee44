# tests/test_backward_euler.py
"""Tests for the reference engine dae_core.backward_euler.BackwardEulerEngine."""

from __future__ import annotations

import numpy as np
import pytest

from dae_core.backward_euler import BackwardEulerConfig, BackwardEulerEngine
from dae_core.engine import (
    CALLBACK_SUCCESS,
    RESIDUAL_FAILURE,
    DAEEngine,
    EngineStatus,
    StatisticKind,
)

RATES = np.array([1.0, 3.0])


def _decay_residual(
    t: float, y: np.ndarray, yp: np.ndarray, out: np.ndarray,  # noqa: ARG001
) -> int:
    out[:] = -RATES * y - yp
    return CALLBACK_SUCCESS


def _time_root(t: float, y: np.ndarray, yp: np.ndarray, out: np.ndarray) -> int:  # noqa: ARG001
    out[0] = t - 0.55
    return CALLBACK_SUCCESS


def _make_engine(
    *,
    residual=_decay_residual,  # noqa: ANN001
    root=None,  # noqa: ANN001
    n_roots: int = 0,
    rtol: float = 1e-6,
    config: BackwardEulerConfig | None = None,
) -> tuple[BackwardEulerEngine, np.ndarray, np.ndarray]:
    y = np.array([1.0, 1.0])
    yp = -RATES * y
    engine = BackwardEulerEngine(config)
    engine.initialize(
        residual,
        root,
        t0=0.0,
        y=y,
        yp=yp,
        rtol=rtol,
        atol=np.full(2, rtol),
        n_roots=n_roots,
    )
    return engine, y, yp


# -------------------------------------------------------------------
# Protocol / setup
# -------------------------------------------------------------------


def test_engine_satisfies_protocol() -> None:
    """BackwardEulerEngine is a DAEEngine."""
    assert isinstance(BackwardEulerEngine(), DAEEngine)


def test_advance_before_initialize_is_ill_input() -> None:
    """advance needs initialize first."""
    messages: list[tuple[int, str, str, str]] = []
    engine = BackwardEulerEngine()
    engine.set_error_handler(lambda *args: messages.append(args))

    result = engine.advance(1.0)

    assert result.status == EngineStatus.ILL_INPUT
    assert messages
    assert messages[0][0] == EngineStatus.ILL_INPUT


def test_initialize_checks_atol_shape() -> None:
    """atol must match the state vector."""
    engine = BackwardEulerEngine()
    with pytest.raises(ValueError, match="atol shape"):
        engine.initialize(
            _decay_residual,
            None,
            t0=0.0,
            y=np.ones(2),
            yp=np.zeros(2),
            rtol=1e-6,
            atol=np.ones(3),
            n_roots=0,
        )


# -------------------------------------------------------------------
# Integration accuracy
# -------------------------------------------------------------------


def test_decay_accuracy_and_exact_landing() -> None:
    """Integrates y' = -k y to t = 1 in macro-steps, landing exactly on each tout."""
    engine, y, yp = _make_engine()
    touts = np.round(np.linspace(0.1, 1.0, 10), 12)

    for tout in touts:
        result = engine.advance(float(tout))
        assert result.status == EngineStatus.SUCCESS
        assert result.time == float(tout)

    assert np.allclose(y, np.exp(-RATES), atol=5e-3)
    assert np.allclose(yp, -RATES * y, atol=5e-3)


def test_statistics_are_counted() -> None:
    """Steps, residual and Jacobian evaluations are all counted."""
    engine, _, _ = _make_engine()
    engine.advance(0.5)

    steps = engine.query_statistic(StatisticKind.STEPS)
    assert steps is not None
    assert steps > 0
    assert engine.query_statistic(StatisticKind.RESIDUAL_EVALS) >= steps
    assert engine.query_statistic(StatisticKind.JACOBIAN_EVALS) >= steps
    assert engine.query_statistic(StatisticKind.ERROR_TEST_FAILS) >= 0


def test_registered_jacobian_is_used() -> None:
    """A registered Jacobian callback replaces the internal differencing."""
    calls = {"n": 0}

    def jacobian(t, cj, y, yp, res, out) -> int:  # noqa: ANN001, ARG001
        calls["n"] += 1
        out[:] = np.diag(-RATES) - cj * np.eye(2)
        return CALLBACK_SUCCESS

    engine, y, _ = _make_engine()
    engine.set_jacobian(jacobian)
    residual_before = engine.query_statistic(StatisticKind.RESIDUAL_EVALS)

    result = engine.advance(0.2)

    assert result.status == EngineStatus.SUCCESS
    assert calls["n"] == engine.query_statistic(StatisticKind.JACOBIAN_EVALS)
    assert engine.query_statistic(StatisticKind.RESIDUAL_EVALS) > residual_before
    assert np.allclose(y, np.exp(-RATES * 0.2), atol=5e-3)


def test_tout_not_ahead_returns_immediately() -> None:
    """tout <= t is a no-op success."""
    engine, _, _ = _make_engine()
    result = engine.advance(0.0)
    assert result.status == EngineStatus.SUCCESS
    assert result.time == 0.0
    assert engine.query_statistic(StatisticKind.STEPS) == 0


# -------------------------------------------------------------------
# Failures
# -------------------------------------------------------------------


def test_residual_failure_is_reported() -> None:
    """A negative residual status ends advance with RES_FAIL."""
    messages: list[tuple[int, str, str, str]] = []

    def failing(t: float, y: np.ndarray, yp: np.ndarray, out: np.ndarray) -> int:  # noqa: ARG001
        return RESIDUAL_FAILURE

    engine, _, _ = _make_engine(residual=failing)
    engine.set_error_handler(lambda *args: messages.append(args))

    result = engine.advance(0.1)

    assert result.status == EngineStatus.RES_FAIL
    assert result.time == 0.0
    assert messages[0][1] == "BackwardEulerEngine"


def test_too_much_work() -> None:
    """max_steps bounds the internal steps per advance."""
    engine, _, _ = _make_engine(config=BackwardEulerConfig(h_init=1e-6, max_steps=3))
    result = engine.advance(1.0)
    assert result.status == EngineStatus.TOO_MUCH_WORK
    assert 0.0 < result.time < 1.0
    assert engine.query_statistic(StatisticKind.STEPS) == 3


# -------------------------------------------------------------------
# Root finding
# -------------------------------------------------------------------


def test_root_check_without_root_callback_is_a_no_op() -> None:
    """Without indicators the root check reports success and leaves root_info empty."""
    engine, _, _ = _make_engine()
    assert engine.advance(0.1).status == EngineStatus.SUCCESS
    assert engine._check_roots() == EngineStatus.SUCCESS
    assert engine.root_info().size == 0


def test_root_is_located_and_not_reported_twice() -> None:
    """g = t - 0.55 stops advance at 0.55; continuing does not re-report it."""
    engine, y, _ = _make_engine(root=_time_root, n_roots=1)

    first = engine.advance(0.5)
    assert first.status == EngineStatus.SUCCESS

    second = engine.advance(0.6)
    assert second.status == EngineStatus.ROOT_RETURN
    assert second.time == pytest.approx(0.55, abs=1e-10)
    assert engine.root_info().tolist() == [1]
    assert np.allclose(y, np.exp(-RATES * 0.55), atol=5e-3)

    third = engine.advance(0.6)
    assert third.status == EngineStatus.SUCCESS
    assert third.time == pytest.approx(0.6)


def test_root_function_failure() -> None:
    """A failing root callback ends advance with RTFUNC_FAIL."""

    def failing_root(
        t: float, y: np.ndarray, yp: np.ndarray, out: np.ndarray,  # noqa: ARG001
    ) -> int:
        return RESIDUAL_FAILURE

    engine, _, _ = _make_engine(root=failing_root, n_roots=1)
    assert engine.advance(0.1).status == EngineStatus.RTFUNC_FAIL


def test_reinitialize_rebinds_buffers() -> None:
    """After reinitialize the engine writes into the new buffers."""
    engine, y_old, _ = _make_engine()
    engine.advance(0.1)
    steps = engine.query_statistic(StatisticKind.STEPS)

    y_new = np.array([2.0, 2.0])
    yp_new = -RATES * y_new
    engine.reinitialize(0.1, y_new, yp_new)
    y_frozen = y_old.copy()
    engine.advance(0.2)

    assert np.array_equal(y_old, y_frozen)
    assert np.allclose(y_new, 2.0 * np.exp(-RATES * 0.1), atol=1e-2)
    assert engine.query_statistic(StatisticKind.STEPS) > steps
