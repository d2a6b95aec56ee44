# dae_core/src/dae_core/session.py
"""Integration session: allocation, engine registration, stepping, teardown.

A session binds one model instance to one engine for the duration of an
integration. It owns every per-integration resource: the evaluation context,
the adapters, the Jacobian workspace and strategy, the absolute tolerances and
the step driver. Nothing is shared between sessions.

Typical use::

    with IntegrationSession.create(functions, data, engine, settings) as session:
        while data.time < t_end:
            session.step(0.1)
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Final

import numpy as np

from .adapter import ResidualAdapter
from .config import IntegratorSettings, SessionConfig
from .context import EvaluationContext
from .errors import ConfigurationError, SessionStateError
from .jacobian import (
    JacobianPlan,
    JacobianWorkspace,
    build_jacobian,
    resolve_jacobian_method,
)
from .model import ModelFacade
from .stepper import StepDriver

if TYPE_CHECKING:
    from types import TracebackType

    from .engine import DAEEngine, FloatArray
    from .jacobian import JacobianStrategy
    from .model import ModelFunctions, SimulationData
    from .stepper import SolverStatistics, StepResult, StepState

logger = logging.getLogger(__name__)

_TOLERANCE_ERROR: Final[str] = "tolerance must be positive; got {tol}"
_DISPOSED_ERROR: Final[str] = "session has been disposed"


def _as_session_config(
    settings: SessionConfig | IntegratorSettings | None,
) -> SessionConfig:
    if settings is None:
        return SessionConfig()
    if isinstance(settings, IntegratorSettings):
        return settings.to_session_config()
    return settings


def absolute_tolerances(
    tolerance: float,
    nominal: FloatArray,
    *,
    min_nominal: float = 1e-32,
) -> FloatArray:
    """Per-state absolute tolerances: tolerance * max(|nominal_i|, min_nominal)."""
    return tolerance * np.maximum(np.abs(nominal), min_nominal)


class IntegrationSession:
    """Per-integration workspace registered with one engine."""

    def __init__(
        self,
        *,
        model: ModelFacade,
        engine: DAEEngine,
        config: SessionConfig,
        context: EvaluationContext,
        adapter: ResidualAdapter,
        plan: JacobianPlan,
        jacobian: JacobianStrategy | None,
        workspace: JacobianWorkspace,
        atol: FloatArray,
    ) -> None:
        """Use IntegrationSession.create; this only stores the parts."""
        self.model = model
        self.engine = engine
        self.config = config
        self.context = context
        self.adapter = adapter
        self.plan = plan
        self.jacobian = jacobian
        self.workspace = workspace
        self.atol = atol
        self.driver = StepDriver(
            engine,
            model,
            context,
            max_advance_calls=config.max_advance_calls,
        )
        self._disposed = False

    @classmethod
    def create(
        cls,
        functions: ModelFunctions,
        data: SimulationData,
        engine: DAEEngine,
        settings: SessionConfig | IntegratorSettings | None = None,
    ) -> IntegrationSession:
        """Allocate a session and register it with the engine.

        The derivatives are evaluated once at the start point so the engine
        starts from a consistent (y, yp) pair.

        Args:
            functions: Model callables.
            data: Live buffers of the model instance.
            engine: Engine to integrate with; initialized here.
            settings: Session settings, or None for defaults.

        Raises:
            ConfigurationError: If the tolerance or the Jacobian method name is
                invalid.
            ModelEvaluationFault: If the initial derivative evaluation fails.

        Returns:
            The ready-to-step session.
        """
        config = _as_session_config(settings)
        if not config.tolerance > 0.0:
            raise ConfigurationError(_TOLERANCE_ERROR.format(tol=config.tolerance))

        model = ModelFacade(functions, data)
        context = EvaluationContext()
        adapter = ResidualAdapter(model, context)

        plan = resolve_jacobian_method(
            config.jacobian_method,
            pattern_provider=model.acquire_sparsity_pattern,
        )

        atol = absolute_tolerances(
            config.tolerance,
            data.nominal,
            min_nominal=config.min_nominal,
        )
        if logger.isEnabledFor(logging.DEBUG):
            for name, value in zip(data.state_names, atol, strict=True):
                logger.debug("%s: abstol = %g", name, value)

        workspace = JacobianWorkspace.allocate(model.n_states, data.dtype)
        jacobian = build_jacobian(
            plan,
            adapter.residual,
            context=context,
            corrector=engine,
            workspace=workspace,
        )

        session = cls(
            model=model,
            engine=engine,
            config=config,
            context=context,
            adapter=adapter,
            plan=plan,
            jacobian=jacobian,
            workspace=workspace,
            atol=atol,
        )
        session.driver.refresh_derivatives()

        n_roots = model.n_zero_crossings
        engine.initialize(
            adapter.residual,
            adapter.root if n_roots > 0 else None,
            t0=data.time,
            y=data.states,
            yp=data.derivatives,
            rtol=config.tolerance,
            atol=atol,
            n_roots=n_roots,
        )
        engine.set_error_handler(session._on_engine_message)
        engine.set_jacobian(jacobian)

        logger.info(
            "integration session started at time %.15g: %d states, %d zero crossings, "
            "tolerance %g",
            data.time,
            model.n_states,
            n_roots,
            config.tolerance,
        )
        return session

    # ------------------------------------------------------------------
    # Engine message sink
    # ------------------------------------------------------------------

    def _on_engine_message(self, code: int, module: str, function: str, msg: str) -> None:
        level = logging.WARNING if code >= 0 else logging.ERROR
        logger.log(level, "%s %s (%d): %s", module, function, code, msg)

    # ------------------------------------------------------------------
    # Read access
    # ------------------------------------------------------------------

    @property
    def data(self) -> SimulationData:
        """Live buffers of the model instance."""
        return self.model.data

    @property
    def time(self) -> float:
        """Current simulation time."""
        return self.model.data.time

    @property
    def statistics(self) -> SolverStatistics:
        """Accumulated solver statistics."""
        return self.driver.statistics

    @property
    def state(self) -> StepState:
        """Lifecycle state of the step driver."""
        return self.driver.state

    @property
    def initial_solution_set(self) -> bool:
        """True while the engine holds a consistent starting solution.

        A step that starts with did_event_step set clears it and reinitializes
        the engine from the live buffers before advancing.
        """
        return self.driver.initial_solution_set

    @property
    def did_event_step(self) -> bool:
        """True if the next step has to reinitialize the engine after an event."""
        return self.driver.did_event_step

    @did_event_step.setter
    def did_event_step(self, value: bool) -> None:
        self.driver.did_event_step = bool(value)

    @property
    def disposed(self) -> bool:
        """True once dispose has been called."""
        return self._disposed

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def _require_open(self) -> None:
        if self._disposed:
            raise SessionStateError(_DISPOSED_ERROR)

    def step(self, step_size: float) -> StepResult:
        """Advance by step_size (see StepDriver.step).

        Raises:
            SessionStateError: If the session has been disposed.
        """
        self._require_open()
        return self.driver.step(step_size)

    def request_stop(self) -> None:
        """Ask the running or next step to stop before its next advance call."""
        self.driver.request_stop()

    def reinitialize(self) -> None:
        """Restart the engine from the live buffers (see StepDriver.reinitialize).

        Clears a FAILED state.

        Raises:
            SessionStateError: If the session has been disposed.
        """
        self._require_open()
        self.driver.reinitialize()

    def dispose(self) -> None:
        """Release the engine. Calling dispose twice is a no-op."""
        if self._disposed:
            return
        self.engine.dispose()
        self._disposed = True
        logger.info(
            "integration session disposed at time %.15g: %s",
            self.model.data.time,
            self.statistics.as_dict(),
        )

    def __enter__(self) -> IntegrationSession:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.dispose()


# Function-style entry points -------------------------------------------------


def session_init(
    functions: ModelFunctions,
    data: SimulationData,
    engine: DAEEngine,
    settings: SessionConfig | IntegratorSettings | None = None,
) -> IntegrationSession:
    """Create a session; see IntegrationSession.create."""
    return IntegrationSession.create(functions, data, engine, settings)


def session_step(session: IntegrationSession, step_size: float) -> StepResult:
    """Advance a session by one macro-step."""
    return session.step(step_size)


def session_dispose(session: IntegrationSession) -> None:
    """Dispose a session."""
    session.dispose()
