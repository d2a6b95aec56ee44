"""Global pytest configuration and shared fixtures for dae_core."""

from __future__ import annotations

from collections.abc import Callable, Iterable
from typing import Final

import numpy as np
import pytest

from dae_core.engine import EngineResult, EngineStatus, StatisticKind
from dae_core.model import ModelFunctions, SimulationData

DECAY_RATES: Final[np.ndarray] = np.array([1.0, 2.0])
DECAY_X0: Final[np.ndarray] = np.array([1.0, 0.5])


# -----------------------------------------------------------------------------
# Global markers registration safety (for local pytest runs)
# -----------------------------------------------------------------------------


def pytest_configure(config: pytest.Config) -> None:
    """Register custom markers used by the test suite."""
    config.addinivalue_line(
        "markers",
        "integration: mark test as running full sessions with the reference engine",
    )


# -----------------------------------------------------------------------------
# Model fixtures
# -----------------------------------------------------------------------------


def decay_ode(t: float, x: np.ndarray) -> np.ndarray:  # noqa: ARG001
    """dx/dt = -k * x, elementwise."""
    return -DECAY_RATES * x


def make_decay_data(start_time: float = 0.0) -> SimulationData:
    """SimulationData for the 2-state decay model at DECAY_X0."""
    data = SimulationData(2, start_time=start_time, state_names=("x", "y"))
    data.set_states(DECAY_X0)
    return data


@pytest.fixture
def decay_functions() -> ModelFunctions:
    """2-state linear decay without events."""
    return ModelFunctions(ode=decay_ode)


@pytest.fixture
def decay_event_functions() -> ModelFunctions:
    """2-state linear decay with one indicator crossing zero at t = 0.55."""
    return ModelFunctions(
        ode=decay_ode,
        zero_crossings=lambda t, x: np.array([t - 0.55]),  # noqa: ARG005
        n_zero_crossings=1,
    )


@pytest.fixture
def decay_data() -> SimulationData:
    """Fresh live buffers for the decay model."""
    return make_decay_data()


@pytest.fixture
def decay_rates() -> np.ndarray:
    """Decay rates of the 2-state model."""
    return DECAY_RATES.copy()


# -----------------------------------------------------------------------------
# Stub engine
# -----------------------------------------------------------------------------


class StubEngine:
    """Scripted DAEEngine for driver tests.

    advance() pops results from the script; an optional on_advance hook can
    mutate the registered buffers first.
    """

    def __init__(
        self,
        script: Iterable[tuple[int, float]] = (),
        *,
        step: float = 1e-3,
    ) -> None:
        self.script = [EngineResult(int(status), float(t)) for status, t in script]
        self.step = step
        self.advance_calls: list[float] = []
        self.reinit_calls: list[tuple[float, np.ndarray, np.ndarray]] = []
        self.initialized = False
        self.disposed = False
        self.jacobian = None
        self.error_handler = None
        self.stats = dict.fromkeys(StatisticKind, 0)
        self.on_advance: Callable[[float], None] | None = None

    def initialize(  # noqa: PLR0913
        self, residual, root, *, t0, y, yp, rtol, atol, n_roots,  # noqa: ANN001
    ) -> None:
        self.residual = residual
        self.root = root
        self.t = t0
        self.y = y
        self.yp = yp
        self.rtol = rtol
        self.atol = atol
        self.n_roots = n_roots
        self.initialized = True

    def reinitialize(self, t0, y, yp) -> None:  # noqa: ANN001
        self.reinit_calls.append((t0, y, yp))
        self.y = y
        self.yp = yp

    def set_jacobian(self, jacobian) -> None:  # noqa: ANN001
        self.jacobian = jacobian

    def set_error_handler(self, handler) -> None:  # noqa: ANN001
        self.error_handler = handler

    def advance(self, tout: float) -> EngineResult:
        self.advance_calls.append(tout)
        if self.on_advance is not None:
            self.on_advance(tout)
        result = self.script.pop(0) if self.script else EngineResult(EngineStatus.SUCCESS, tout)
        self.stats[StatisticKind.STEPS] += 1
        return result

    def current_step(self) -> float:
        return self.step

    def error_weights(self, out: np.ndarray) -> None:
        out.fill(1e6)

    def query_statistic(self, kind: StatisticKind) -> int | None:
        return self.stats[kind]

    def dispose(self) -> None:
        self.disposed = True


@pytest.fixture
def stub_engine() -> StubEngine:
    """Stub engine that reaches tout on every advance call."""
    return StubEngine()


@pytest.fixture
def make_stub_engine() -> type[StubEngine]:
    """StubEngine class, for tests that script advance results."""
    return StubEngine
